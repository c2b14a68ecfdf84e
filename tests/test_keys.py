from datetime import datetime, timedelta

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from zetech.database import Base
from zetech.keys import compute_expiry, generate_key_value, key_state, verify_key
from zetech.maintenance import cleanup_expired_transactions, deactivate_expired_keys
from zetech.models import ApiKey, Transaction

SQLALCHEMY_DATABASE_URL = "sqlite:///./test_keys.db"
engine = create_engine(SQLALCHEMY_DATABASE_URL, connect_args={
                       "check_same_thread": False})
TestingSessionLocal = sessionmaker(
    autocommit=False, autoflush=False, bind=engine)

NOW = datetime(2024, 6, 1, 12, 0, 0)


@pytest.fixture
def db():
    Base.metadata.create_all(bind=engine)
    session = TestingSessionLocal()
    yield session
    session.close()
    Base.metadata.drop_all(bind=engine)


def make_key(db, key_value="ztmd_abc", **fields):
    values = {
        "user_id": "user-1",
        "name": "Bot",
        "duration": "30_days",
        "is_active": True,
        "status": "active",
    }
    values.update(fields)
    api_key = ApiKey(key_value=key_value, **values)
    db.add(api_key)
    db.commit()
    return api_key


@pytest.mark.parametrize("duration, days", [
    ("1_week", 7),
    ("30_days", 30),
    ("60_days", 60),
    ("trial_7_days", 7),
])
def test_compute_expiry(duration, days):
    assert compute_expiry(duration, NOW) == NOW + timedelta(days=days)


def test_forever_never_expires():
    assert compute_expiry("forever", NOW) is None


def test_unknown_duration():
    with pytest.raises(ValueError):
        compute_expiry("90_days", NOW)


def test_generated_keys_are_prefixed_and_unique():
    keys = {generate_key_value() for _ in range(50)}

    assert len(keys) == 50
    assert all(key.startswith("ztmd_") for key in keys)


def test_key_state_order():
    api_key = ApiKey(is_active=True, expires_at=NOW - timedelta(days=1), paused_until=NOW + timedelta(days=1))
    assert key_state(api_key, NOW)["status"] == "expired"

    api_key.expires_at = None
    assert key_state(api_key, NOW)["status"] == "paused"

    api_key.paused_until = None
    assert key_state(api_key, NOW) == {"status": "active", "is_expired": False, "is_paused": False, "valid": True}

    api_key.is_active = False
    assert key_state(api_key, NOW)["status"] == "inactive"


def test_verify_valid_key_updates_usage(db):
    make_key(db, expires_at=NOW + timedelta(days=3))

    result = verify_key(db, "ztmd_abc", NOW)

    assert result.valid is True
    assert result.to_dict()["key_name"] == "Bot"
    api_key = db.query(ApiKey).one()
    assert api_key.last_used_at == NOW
    assert api_key.usage_count == 1


def test_verify_expired_key(db):
    make_key(db, expires_at=NOW)

    result = verify_key(db, "ztmd_abc", NOW)

    assert result.to_dict() == {"valid": False, "error": "API key has expired"}
    assert db.query(ApiKey).one().last_used_at is None


def test_verify_unknown_key(db):
    assert verify_key(db, "ztmd_missing", NOW).error == "Invalid API key"


def test_deactivate_expired_keys(db):
    make_key(db, "ztmd_old", expires_at=NOW - timedelta(minutes=1))
    make_key(db, "ztmd_new", expires_at=NOW + timedelta(days=1))
    make_key(db, "ztmd_forever", duration="forever", expires_at=None)

    assert deactivate_expired_keys(db, NOW) == 1

    old = db.query(ApiKey).filter_by(key_value="ztmd_old").one()
    assert old.is_active is False
    assert old.status == "expired"
    assert db.query(ApiKey).filter_by(is_active=True).count() == 2


def test_cleanup_expired_transactions_keeps_terminal_rows(db):
    db.add_all([
        Transaction(transaction_id="stale", user_id="u", status="pending", expires_at=NOW - timedelta(minutes=1)),
        Transaction(transaction_id="attempt", user_id="u", status="attempted", expires_at=NOW - timedelta(hours=1)),
        Transaction(transaction_id="done", user_id="u", status="success", expires_at=NOW - timedelta(hours=1)),
        Transaction(transaction_id="fresh", user_id="u", status="pending", expires_at=NOW + timedelta(minutes=5)),
    ])
    db.commit()

    assert cleanup_expired_transactions(db, NOW) == 2

    remaining = {row.transaction_id for row in db.query(Transaction).all()}
    assert remaining == {"done", "fresh"}
