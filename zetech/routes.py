import logging
import secrets
import time
from datetime import timedelta
from typing import Optional

from fastapi import APIRouter, Depends, Query
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from zetech.auth import verify_token
from zetech.config import Settings, get_settings
from zetech.database import get_db
from zetech.errors import (
    DuplicateTransactionError,
    NotFoundError,
    PaymentInitiationError,
    PersistenceError,
    ZetechError,
)
from zetech.keys import compute_expiry, generate_key_value, key_state, mask_key, verify_key
from zetech.models import ApiKey, Payment, Transaction, utcnow
from zetech.mpesa_service import DarajaClient, account_reference, get_gateway, normalize_phone
from zetech.notifications import list_notifications
from zetech.reconciliation import GatewayOutcome, find_transaction, reconcile
from zetech.schemas import (
    ApiKeyRequest,
    NotificationOut,
    PaymentInitResponse,
    PaymentRequest,
    StatusQueryRequest,
    StatusQueryResponse,
    TransactionListResponse,
    TransactionOut,
)

logger = logging.getLogger(__name__)

router = APIRouter()


def new_transaction_id() -> str:
    return f"TXN_{int(time.time() * 1000)}_{secrets.token_hex(4)}"


def _replay(db: Session, transaction: Transaction):
    """Answer a repeated initiation with the records created the first time."""
    if transaction.status == "failed" or not transaction.provider_transaction_id:
        return JSONResponse(
            status_code=400,
            content={
                "success": False,
                "error": transaction.error_message or "STK push failed",
                "transaction_id": transaction.transaction_id,
            },
        )

    payment = db.query(Payment).filter_by(checkout_request_id=transaction.provider_transaction_id).first()
    api_key = db.query(ApiKey).filter_by(payment_id=payment.id).first() if payment else None
    return PaymentInitResponse(
        message="Payment already initiated",
        checkout_request_id=transaction.provider_transaction_id,
        transaction_id=transaction.transaction_id,
        payment_id=payment.id if payment else None,
        api_key_id=api_key.id if api_key else None,
    )


@router.post("/mpesa/payments", response_model=PaymentInitResponse)
def create_payment_api(
    request: PaymentRequest,
    user_id: str = Depends(verify_token),
    db: Session = Depends(get_db),
    gateway: DarajaClient = Depends(get_gateway),
    settings: Settings = Depends(get_settings),
):
    if request.transaction_id:
        existing = db.query(Transaction).filter_by(transaction_id=request.transaction_id).first()
        if existing:
            if existing.user_id != user_id:
                raise DuplicateTransactionError()
            return _replay(db, existing)

    transaction_id = request.transaction_id or new_transaction_id()

    try:
        return _initiate(request, user_id, transaction_id, db, gateway, settings)
    except ZetechError:
        raise
    except Exception as exc:
        logger.exception("Error in M-Pesa payment for %s", transaction_id)
        raise PaymentInitiationError(str(exc), details={"transaction_id": transaction_id}) from exc


def _initiate(request, user_id, transaction_id, db, gateway, settings):
    phone = normalize_phone(request.phone_number)
    reference = account_reference(transaction_id)
    logger.info("Initiating M-Pesa payment for user %s, amount: %s %s", user_id, request.amount, settings.currency)

    push = gateway.stk_push(
        phone_number=phone,
        amount=request.amount,
        account_reference=reference,
        description=f"Payment for {request.duration} API key",
    )

    now = utcnow()
    metadata = {
        "duration": request.duration,
        "api_key_name": request.api_key_name,
        "phone_number": phone,
        "account_reference": reference,
    }

    if not push.accepted:
        error = push.error_message or push.response_description or "STK push failed"
        db.add(Transaction(
            transaction_id=transaction_id,
            user_id=user_id,
            type="payment",
            status="failed",
            amount=request.amount,
            currency=settings.currency,
            description=f"Failed payment for {request.duration} API key - {request.api_key_name}",
            payment_method="mpesa",
            payment_provider="safaricom",
            error_message=error,
            meta={**metadata, "response_code": push.response_code},
        ))
        _commit(db, transaction_id)
        logger.warning("STK push rejected for %s: %s", transaction_id, error)
        return JSONResponse(
            status_code=400,
            content={
                "success": False,
                "error": error,
                "response_code": push.response_code,
                "transaction_id": transaction_id,
            },
        )

    checkout_id = push.checkout_request_id
    transaction = Transaction(
        transaction_id=transaction_id,
        user_id=user_id,
        type="payment",
        status="pending",
        amount=request.amount,
        currency=settings.currency,
        description=f"Payment for {request.duration} API key - {request.api_key_name}",
        payment_method="mpesa",
        payment_provider="safaricom",
        provider_transaction_id=checkout_id,
        meta={**metadata, "checkout_request_id": checkout_id},
        expires_at=now + timedelta(minutes=settings.transaction_ttl_minutes),
    )
    payment = Payment(
        user_id=user_id,
        transaction_id=transaction_id,
        amount=request.amount,
        currency=settings.currency,
        duration=request.duration,
        phone_number=phone,
        checkout_request_id=checkout_id,
        merchant_request_id=push.merchant_request_id,
        status="pending",
    )
    try:
        db.add(transaction)
        db.add(payment)
        db.flush()

        # inactive until the payment succeeds
        api_key = ApiKey(
            user_id=user_id,
            name=request.api_key_name,
            key_value=generate_key_value(),
            duration=request.duration,
            expires_at=compute_expiry(request.duration, now),
            is_active=False,
            is_trial=False,
            status="inactive",
            payment_status="pending",
            payment_id=payment.id,
            price_ksh=request.amount,
        )
        db.add(api_key)
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        # the payer was already prompted and the callback will find no row
        logger.error(
            "STK push accepted but not recorded: transaction=%s checkout=%s merchant_request=%s "
            "user=%s phone=%s amount=%s %s reference=%s: %s",
            transaction_id, checkout_id, push.merchant_request_id,
            user_id, phone, request.amount, settings.currency, reference, exc,
        )
        raise PersistenceError(
            "Failed to create transaction record",
            details={"transaction_id": transaction_id, "checkout_request_id": checkout_id},
        ) from exc

    logger.info("STK push sent for %s (checkout %s)", transaction_id, checkout_id)
    return PaymentInitResponse(
        checkout_request_id=checkout_id,
        transaction_id=transaction_id,
        payment_id=payment.id,
        api_key_id=api_key.id,
    )


def _commit(db: Session, transaction_id: str):
    try:
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        logger.error("Failed to record transaction %s: %s", transaction_id, exc)
        raise PersistenceError(
            "Failed to create transaction record",
            details={"transaction_id": transaction_id},
        ) from exc


@router.post("/mpesa/query", response_model=StatusQueryResponse)
def query_payment_status(
    request: StatusQueryRequest,
    db: Session = Depends(get_db),
    gateway: DarajaClient = Depends(get_gateway),
):
    checkout_id = request.checkout_request_id
    result = gateway.stk_query(checkout_id)

    try:
        transaction = find_transaction(db, checkout_id)
    except NotFoundError as exc:
        logger.error("Transaction not found in database for checkout %s", checkout_id)
        exc.details["mpesa_response"] = result.raw()
        raise

    if result.has_result:
        transaction = reconcile(db, checkout_id, GatewayOutcome.from_query(result), source="query").transaction
    else:
        logger.info(
            "No final result yet for %s: %s",
            checkout_id,
            result.error_message or result.result_desc or result.response_description,
        )

    return StatusQueryResponse(
        transaction=TransactionOut.model_validate(transaction),
        mpesa_response=result.raw(),
    )


@router.get("/transactions", response_model=TransactionListResponse)
def list_transactions(
    limit: int = Query(50, ge=1, le=100),
    offset: int = Query(0, ge=0),
    status: Optional[str] = None,
    transaction_type: Optional[str] = Query(None, alias="type"),
    user_id: str = Depends(verify_token),
    db: Session = Depends(get_db),
):
    query = db.query(Transaction).filter(Transaction.user_id == user_id)
    if status:
        query = query.filter(Transaction.status == status)
    if transaction_type:
        query = query.filter(Transaction.type == transaction_type)

    total = query.count()
    rows = query.order_by(Transaction.created_at.desc()).offset(offset).limit(limit).all()
    return TransactionListResponse(
        transactions=[TransactionOut.model_validate(row) for row in rows],
        total=total,
    )


@router.get("/transactions/by-checkout/{checkout_request_id}", response_model=TransactionOut)
def get_transaction_by_checkout_id(
    checkout_request_id: str,
    user_id: str = Depends(verify_token),
    db: Session = Depends(get_db),
):
    transaction = find_transaction(db, checkout_request_id)
    if transaction.user_id != user_id:
        raise NotFoundError("Transaction not found", details={"checkout_request_id": checkout_request_id})
    return transaction


@router.get("/notifications")
def get_notifications(
    unread_only: bool = False,
    user_id: str = Depends(verify_token),
    db: Session = Depends(get_db),
):
    rows = list_notifications(db, user_id, unread_only=unread_only)
    return {
        "success": True,
        "notifications": [NotificationOut.model_validate(row) for row in rows],
    }


@router.post("/api-keys/verify")
def verify_api_key(request: ApiKeyRequest, db: Session = Depends(get_db)):
    """Used by the bot to check a key before serving a request."""
    if not request.api_key:
        return JSONResponse(status_code=400, content={"valid": False, "error": "API key is required"})

    result = verify_key(db, request.api_key)
    if not result.valid:
        logger.info("API key %s rejected: %s", mask_key(request.api_key), result.error)
        return JSONResponse(status_code=401, content=result.to_dict())
    return result.to_dict()


@router.post("/api-keys/status")
def inspect_api_key(request: ApiKeyRequest, db: Session = Depends(get_db)):
    if not request.api_key:
        return JSONResponse(status_code=400, content={"success": False, "message": "API key is required"})

    api_key = db.query(ApiKey).filter_by(key_value=request.api_key).first()
    if api_key is None:
        raise NotFoundError("API key not found or invalid", details={"exists": False})

    state = key_state(api_key)
    return {
        "success": True,
        "exists": True,
        "valid": state["valid"],
        "api_key_info": {
            "id": api_key.id,
            "name": api_key.name,
            "duration": api_key.duration,
            "status": state["status"],
            "is_active": api_key.is_active,
            "is_trial": api_key.is_trial,
            "is_expired": state["is_expired"],
            "is_paused": state["is_paused"],
            "expires_at": api_key.expires_at,
            "created_at": api_key.created_at,
            "last_used_at": api_key.last_used_at,
            "usage_count": api_key.usage_count or 0,
            "price_ksh": api_key.price_ksh or 0,
            "paused_until": api_key.paused_until,
            "paused_reason": api_key.paused_reason,
            "payment_status": api_key.payment_status,
            "user_id": api_key.user_id,
        },
    }
