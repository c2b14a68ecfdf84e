import pytest
from jose import jwt
from zetech.auth import verify_token
from zetech.config import Settings
from zetech.errors import UnauthenticatedError

SETTINGS = Settings(jwt_secret="test-secret")


def make_token(secret="test-secret", **claims):
    payload = {"sub": "user-123", "aud": "authenticated"}
    payload.update(claims)
    return jwt.encode({k: v for k, v in payload.items() if v is not None}, secret, algorithm="HS256")


def test_valid_token_returns_user_id():
    assert verify_token(f"Bearer {make_token()}", SETTINGS) == "user-123"


def test_wrong_secret():
    with pytest.raises(UnauthenticatedError, match="Invalid user token"):
        verify_token(f"Bearer {make_token(secret='other')}", SETTINGS)


def test_wrong_audience():
    with pytest.raises(UnauthenticatedError):
        verify_token(f"Bearer {make_token(aud='anon')}", SETTINGS)


def test_missing_subject():
    with pytest.raises(UnauthenticatedError, match="Invalid user token"):
        verify_token(f"Bearer {make_token(sub=None)}", SETTINGS)


def test_missing_header():
    with pytest.raises(UnauthenticatedError, match="Missing authorization header") as excinfo:
        verify_token(None, SETTINGS)

    assert excinfo.value.status_code == 401


def test_not_a_bearer_token():
    with pytest.raises(UnauthenticatedError, match="Invalid or missing token"):
        verify_token(f"Basic {make_token()}", SETTINGS)
