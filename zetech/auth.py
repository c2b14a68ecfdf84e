from typing import Optional

from fastapi import Depends, Header
from jose import jwt, JWTError

from zetech.config import Settings, get_settings
from zetech.errors import UnauthenticatedError


def verify_token(
    authorization: Optional[str] = Header(None),
    settings: Settings = Depends(get_settings),
) -> str:
    """Validate the bearer JWT and return the caller's user id (the `sub` claim)."""
    if not authorization:
        raise UnauthenticatedError("Missing authorization header")

    parts = authorization.split()
    if len(parts) != 2 or parts[0].lower() != "bearer":
        raise UnauthenticatedError("Invalid or missing token")

    try:
        claims = jwt.decode(
            parts[1],
            settings.jwt_secret,
            algorithms=[settings.jwt_algorithm],
            audience=settings.jwt_audience or None,
            options={"verify_aud": bool(settings.jwt_audience)},
        )
    except JWTError:
        raise UnauthenticatedError("Invalid user token")

    user_id = claims.get("sub")
    if not user_id:
        raise UnauthenticatedError("Invalid user token")
    return user_id
