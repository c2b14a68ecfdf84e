"""
Payment reconciliation.

Both the gateway callback and the client-driven status query end up here. The
first observer of a final result moves the transaction, its payment row and its
API key to the matching state in one unit of work; once a transaction is
terminal, later results for the same checkout request are ignored.
"""
import logging
from dataclasses import dataclass
from typing import Optional, Union

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from zetech.errors import NotFoundError, PersistenceError
from zetech.models import TERMINAL_STATUSES, ApiKey, Payment, Transaction, utcnow
from zetech.notifications import build_payment_notification
from zetech.schemas import StkCallback, StkQueryResponse

logger = logging.getLogger(__name__)

SUCCESS_RESULT_CODE = 0
CANCELLED_RESULT_CODE = 1032

SUCCESS_MESSAGE = "Payment completed successfully"
CANCELLED_MESSAGE = "Transaction was cancelled by user"
FAILED_MESSAGE = "Transaction failed"

# transaction status -> payments.status / api_keys.payment_status
PAYMENT_STATUS = {
    "success": "completed",
    "cancelled": "cancelled",
    "failed": "failed",
}


def map_result_code(result_code: Union[int, str]) -> str:
    code = int(str(result_code).strip())
    if code == SUCCESS_RESULT_CODE:
        return "success"
    if code == CANCELLED_RESULT_CODE:
        return "cancelled"
    return "failed"


@dataclass
class GatewayOutcome:
    status: str
    result_code: int
    description: str = ""
    receipt_number: Optional[str] = None

    @classmethod
    def from_result(cls, result_code, description=None, receipt_number=None) -> "GatewayOutcome":
        return cls(
            status=map_result_code(result_code),
            result_code=int(str(result_code).strip()),
            description=description or "",
            receipt_number=receipt_number,
        )

    @classmethod
    def from_callback(cls, callback: StkCallback) -> "GatewayOutcome":
        receipt = callback.metadata_value("MpesaReceiptNumber")
        return cls.from_result(
            callback.result_code,
            callback.result_desc,
            str(receipt) if receipt is not None else None,
        )

    @classmethod
    def from_query(cls, query: StkQueryResponse) -> "GatewayOutcome":
        receipt = (query.model_extra or {}).get("MpesaReceiptNumber")
        return cls.from_result(query.result_code, query.result_desc, receipt)


@dataclass
class ReconcileResult:
    transaction: Transaction
    changed: bool


def find_transaction(db: Session, checkout_request_id: str) -> Transaction:
    transaction = db.query(Transaction).filter_by(provider_transaction_id=checkout_request_id).first()
    if transaction is None:
        raise NotFoundError(
            "Transaction not found in database",
            details={"checkout_request_id": checkout_request_id},
        )
    return transaction


def _ignore(transaction: Transaction, outcome: GatewayOutcome, checkout_request_id: str, source: str) -> ReconcileResult:
    logger.info(
        "Ignoring %s result %s for %s: transaction %s already %s",
        source, outcome.status, checkout_request_id,
        transaction.transaction_id, transaction.status,
    )
    return ReconcileResult(transaction, changed=False)


def reconcile(db: Session, checkout_request_id: str, outcome: GatewayOutcome, source: str) -> ReconcileResult:
    """
    Apply a final gateway outcome to the local rows for a checkout request.

    Raises NotFoundError when no transaction carries the checkout id and
    PersistenceError when the updates cannot be committed.
    """
    transaction = find_transaction(db, checkout_request_id)

    if transaction.is_terminal:
        return _ignore(transaction, outcome, checkout_request_id, source)

    now = utcnow()
    status = outcome.status

    # Only a row that is still non-terminal in storage can be claimed. Zero rows
    # means another reconcile committed a final status after our read.
    try:
        claimed = (
            db.query(Transaction)
            .filter(Transaction.id == transaction.id)
            .filter(Transaction.status.notin_(sorted(TERMINAL_STATUSES)))
            .update({"status": status, "updated_at": now}, synchronize_session=False)
        )
    except SQLAlchemyError as exc:
        db.rollback()
        logger.error("Failed to claim %s result for %s: %s", source, checkout_request_id, exc)
        raise PersistenceError(
            "Failed to update payment records",
            details={"checkout_request_id": checkout_request_id},
        ) from exc

    if not claimed:
        db.rollback()
        db.refresh(transaction)
        return _ignore(transaction, outcome, checkout_request_id, source)

    transaction.status = status
    transaction.updated_at = now
    meta = dict(transaction.meta or {})
    meta["result_code"] = outcome.result_code
    meta["reconciled_by"] = source
    if status == "success":
        transaction.success_message = SUCCESS_MESSAGE
        transaction.processed_at = now
        if outcome.receipt_number:
            meta["receipt_number"] = outcome.receipt_number
    elif status == "cancelled":
        transaction.error_message = CANCELLED_MESSAGE
    else:
        transaction.error_message = outcome.description or FAILED_MESSAGE
    transaction.meta = meta

    payment = db.query(Payment).filter_by(checkout_request_id=checkout_request_id).first()
    api_key = None
    if payment is None:
        logger.warning("No payment row for checkout %s", checkout_request_id)
    else:
        payment.status = PAYMENT_STATUS[status]
        payment.updated_at = now
        if status == "success":
            payment.mpesa_receipt_number = outcome.receipt_number
            payment.completed_at = now

        api_key = db.query(ApiKey).filter_by(payment_id=payment.id).first()
        if api_key is None:
            logger.warning("No API key linked to payment %s", payment.id)
        else:
            api_key.payment_status = PAYMENT_STATUS[status]
            api_key.is_active = status == "success"
            api_key.status = "active" if status == "success" else "inactive"
            api_key.updated_at = now

    key_name = api_key.name if api_key is not None else (transaction.meta or {}).get("api_key_name")
    db.add(build_payment_notification(
        transaction.user_id,
        status,
        transaction.amount,
        transaction.currency,
        key_name,
        reason=transaction.error_message,
    ))

    try:
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        logger.error("Failed to persist %s result for %s: %s", source, checkout_request_id, exc)
        raise PersistenceError(
            "Failed to update payment records",
            details={"checkout_request_id": checkout_request_id},
        ) from exc

    db.refresh(transaction)
    logger.info(
        "Transaction %s reconciled to %s via %s",
        transaction.transaction_id, status, source,
    )
    return ReconcileResult(transaction, changed=True)
