"""
API keys: duration tiers, key generation and validity checks.
"""
import logging
import secrets
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from sqlalchemy.orm import Session

from zetech.models import ApiKey, utcnow

logger = logging.getLogger(__name__)

KEY_PREFIX = "ztmd_"

# None means the key never expires
DURATION_DAYS: Dict[str, Optional[int]] = {
    "1_week": 7,
    "30_days": 30,
    "60_days": 60,
    "forever": None,
    "trial_7_days": 7,
}


def compute_expiry(duration: str, now: Optional[datetime] = None) -> Optional[datetime]:
    if duration not in DURATION_DAYS:
        raise ValueError(f"Unknown duration tier: {duration}")
    days = DURATION_DAYS[duration]
    if days is None:
        return None
    return (now or utcnow()) + timedelta(days=days)


def generate_key_value() -> str:
    return KEY_PREFIX + secrets.token_urlsafe(24)


def mask_key(key_value: str) -> str:
    return key_value[:10] + "..."


def key_state(api_key: ApiKey, now: Optional[datetime] = None) -> Dict[str, Any]:
    """Overall status of a key: inactive, expired, paused or active, in that order."""
    now = now or utcnow()
    is_expired = api_key.expires_at is not None and api_key.expires_at <= now
    is_paused = api_key.paused_until is not None and api_key.paused_until > now

    if not api_key.is_active:
        status = "inactive"
    elif is_expired:
        status = "expired"
    elif is_paused:
        status = "paused"
    else:
        status = "active"

    return {
        "status": status,
        "is_expired": is_expired,
        "is_paused": is_paused,
        "valid": status == "active",
    }


class KeyVerification:
    """Result of checking a presented key value."""

    def __init__(self, valid: bool, api_key: Optional[ApiKey] = None, error: Optional[str] = None):
        self.valid = valid
        self.api_key = api_key
        self.error = error

    def to_dict(self) -> Dict[str, Any]:
        if not self.valid:
            return {"valid": False, "error": self.error}
        return {
            "valid": True,
            "user_id": self.api_key.user_id,
            "key_name": self.api_key.name,
            "expires_at": self.api_key.expires_at.isoformat() if self.api_key.expires_at else None,
        }


def verify_key(db: Session, key_value: str, now: Optional[datetime] = None) -> KeyVerification:
    """
    Check a key presented by the bot client.

    A valid key gets its last_used_at and usage_count updated.
    """
    now = now or utcnow()
    logger.info("Verifying API key: %s", mask_key(key_value))

    api_key = db.query(ApiKey).filter_by(key_value=key_value).first()
    if api_key is None:
        return KeyVerification(False, error="Invalid API key")
    if not api_key.is_active:
        return KeyVerification(False, api_key, error="API key is inactive")
    if api_key.expires_at is not None and api_key.expires_at <= now:
        return KeyVerification(False, api_key, error="API key has expired")

    api_key.last_used_at = now
    api_key.usage_count = (api_key.usage_count or 0) + 1
    db.commit()

    logger.info("API key verified for user %s", api_key.user_id)
    return KeyVerification(True, api_key)
