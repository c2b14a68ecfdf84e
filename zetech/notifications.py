"""
User notifications raised when a payment reaches a final outcome.
"""
import logging
from typing import Dict, List, Optional

from sqlalchemy.orm import Session

from zetech.models import Notification

logger = logging.getLogger(__name__)

_TEMPLATES: Dict[str, Dict[str, str]] = {
    "success": {
        "title": "Payment Successful! 🎉",
        "message": "Your payment of {currency} {amount} was received. "
                   "Your API key \"{key_name}\" is now active and ready to use.",
        "type": "success",
        "priority": "high",
    },
    "cancelled": {
        "title": "Payment Cancelled",
        "message": "You cancelled the M-Pesa payment for \"{key_name}\". You can try again anytime.",
        "type": "info",
        "priority": "normal",
    },
    "failed": {
        "title": "Payment Failed",
        "message": "Your M-Pesa payment for \"{key_name}\" could not be completed: {reason}",
        "type": "error",
        "priority": "high",
    },
}


def build_payment_notification(
    user_id: str,
    status: str,
    amount: Optional[int],
    currency: Optional[str],
    key_name: Optional[str],
    reason: Optional[str] = None,
) -> Notification:
    template = _TEMPLATES[status]
    message = template["message"].format(
        amount=amount if amount is not None else "",
        currency=currency or "KES",
        key_name=key_name or "API key",
        reason=reason or "Transaction failed",
    )
    return Notification(
        user_id=user_id,
        title=template["title"],
        message=message,
        type=template["type"],
        priority=template["priority"],
    )


def list_notifications(db: Session, user_id: str, unread_only: bool = False, limit: int = 50) -> List[Notification]:
    query = db.query(Notification).filter(Notification.user_id == user_id)
    if unread_only:
        query = query.filter(Notification.is_read.is_(False))
    return query.order_by(Notification.created_at.desc()).limit(limit).all()
