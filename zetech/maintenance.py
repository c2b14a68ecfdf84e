"""
Periodic maintenance: expire API keys past their end date and purge stale,
never-completed transactions.

Run from cron or a scheduler:

    python -m zetech.maintenance all
"""
import argparse
import logging
import sys
from datetime import datetime
from typing import Optional

from sqlalchemy.orm import Session

from zetech.database import SessionLocal
from zetech.models import TERMINAL_STATUSES, ApiKey, Transaction, utcnow

logger = logging.getLogger(__name__)


def deactivate_expired_keys(db: Session, now: Optional[datetime] = None) -> int:
    now = now or utcnow()
    expired = (
        db.query(ApiKey)
        .filter(ApiKey.is_active.is_(True))
        .filter(ApiKey.expires_at.isnot(None))
        .filter(ApiKey.expires_at <= now)
        .all()
    )
    for api_key in expired:
        api_key.is_active = False
        api_key.status = "expired"
        api_key.updated_at = now
    db.commit()

    logger.info("Deactivated %d expired API keys", len(expired))
    return len(expired)


def cleanup_expired_transactions(db: Session, now: Optional[datetime] = None) -> int:
    now = now or utcnow()
    deleted = (
        db.query(Transaction)
        .filter(Transaction.expires_at.isnot(None))
        .filter(Transaction.expires_at < now)
        .filter(Transaction.status.notin_(sorted(TERMINAL_STATUSES)))
        .delete(synchronize_session=False)
    )
    db.commit()

    logger.info("Removed %d expired transactions", deleted)
    return deleted


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="ZETECH payment maintenance jobs")
    parser.add_argument("job", choices=["expire-keys", "cleanup", "all"])
    args = parser.parse_args(argv)

    logging.basicConfig(level=logging.INFO, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s")

    db = SessionLocal()
    try:
        if args.job in ("expire-keys", "all"):
            deactivate_expired_keys(db)
        if args.job in ("cleanup", "all"):
            cleanup_expired_transactions(db)
    finally:
        db.close()
    return 0


if __name__ == "__main__":
    sys.exit(main())
