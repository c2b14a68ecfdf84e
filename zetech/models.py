import uuid
from datetime import datetime, timezone

from sqlalchemy import Column, String, Integer, Boolean, DateTime, ForeignKey, JSON, Text
from zetech.database import Base

TERMINAL_STATUSES = frozenset({"success", "failed", "cancelled", "refunded"})


def utcnow() -> datetime:
    """Naive UTC timestamp, the form SQLite stores."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def new_id() -> str:
    return str(uuid.uuid4())


class Transaction(Base):
    __tablename__ = "transactions"

    id = Column(String(36), primary_key=True, default=new_id)
    transaction_id = Column(String, unique=True, index=True, nullable=False)   # caller-generated
    user_id = Column(String, index=True, nullable=False)
    type = Column(String(16), nullable=False, default="payment")  # payment | refund | subscription | trial | api_usage
    status = Column(String(16), nullable=False, default="attempted", index=True)
    amount = Column(Integer)
    currency = Column(String(3), default="KES")
    description = Column(Text)
    payment_method = Column(String)
    payment_provider = Column(String)
    provider_transaction_id = Column(String, index=True)   # Daraja CheckoutRequestID
    error_message = Column(Text)
    success_message = Column(Text)
    meta = Column("metadata", JSON, default=dict)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)
    processed_at = Column(DateTime)
    expires_at = Column(DateTime, index=True)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


class Payment(Base):
    __tablename__ = "payments"

    id = Column(String(36), primary_key=True, default=new_id)
    user_id = Column(String, index=True, nullable=False)
    transaction_id = Column(String, index=True)
    amount = Column(Integer, nullable=False)
    currency = Column(String(3), default="KES")
    duration = Column(String(16))
    phone_number = Column(String(16))
    payment_method = Column(String, default="mpesa")
    checkout_request_id = Column(String, unique=True, index=True)
    merchant_request_id = Column(String)
    mpesa_receipt_number = Column(String)
    status = Column(String(16), nullable=False, default="pending")  # pending | completed | failed | cancelled
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)
    completed_at = Column(DateTime)


class ApiKey(Base):
    __tablename__ = "api_keys"

    id = Column(String(36), primary_key=True, default=new_id)
    user_id = Column(String, index=True, nullable=False)
    name = Column(String, nullable=False)
    key_value = Column(String, unique=True, index=True, nullable=False)
    duration = Column(String(16), nullable=False)  # 1_week | 30_days | 60_days | forever | trial_7_days
    expires_at = Column(DateTime)                  # NULL never expires
    is_active = Column(Boolean, nullable=False, default=False)
    is_trial = Column(Boolean, nullable=False, default=False)
    status = Column(String(16), default="inactive")  # active | inactive | paused | expired
    payment_status = Column(String(16))
    payment_id = Column(String(36), ForeignKey("payments.id"), index=True)
    price_ksh = Column(Integer)
    paused_until = Column(DateTime)
    paused_reason = Column(Text)
    usage_count = Column(Integer, nullable=False, default=0)
    last_used_at = Column(DateTime)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)


class Notification(Base):
    __tablename__ = "notifications"

    id = Column(String(36), primary_key=True, default=new_id)
    user_id = Column(String, index=True, nullable=False)
    title = Column(String, nullable=False)
    message = Column(Text, nullable=False)
    type = Column(String(16), nullable=False, default="info")        # success | info | warning | error
    priority = Column(String(16), nullable=False, default="normal")  # low | normal | high
    is_read = Column(Boolean, nullable=False, default=False)
    read_at = Column(DateTime)
    created_at = Column(DateTime, nullable=False, default=utcnow)
