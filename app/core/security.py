"""Access token handling shared by the HTTP API and the notification socket."""

from datetime import UTC, datetime, timedelta
from typing import Any

from jose import JWTError, jwt

from app.config import settings

TOKEN_TYPE = "access"


def create_access_token(
    data: dict[str, Any],
    expires_delta: timedelta | None = None,
) -> str:
    """
    Sign an access token.

    Login lives outside this service; the token only has to carry the
    user id as ``sub``.

    Args:
        data: Claims to include, at least ``sub``
        expires_delta: Lifetime, defaults to ACCESS_TOKEN_EXPIRE_MINUTES

    Returns:
        Encoded JWT
    """
    issued_at = datetime.now(UTC)
    lifetime = expires_delta or timedelta(minutes=settings.access_token_expire_minutes)
    claims = {**data, "iat": issued_at, "exp": issued_at + lifetime, "type": TOKEN_TYPE}

    return jwt.encode(claims, settings.jwt_secret_key, algorithm=settings.jwt_algorithm)


def decode_access_token(token: str) -> dict[str, Any] | None:
    """Return the claims of a valid, unexpired access token, else None."""
    try:
        payload = jwt.decode(token, settings.jwt_secret_key, algorithms=[settings.jwt_algorithm])
    except JWTError:
        return None

    if payload.get("type") != TOKEN_TYPE:
        return None
    return payload


def user_id_from_token(token: str) -> int | None:
    """Return the numeric user id carried in an access token, if valid."""
    payload = decode_access_token(token)
    if payload is None:
        return None

    try:
        return int(payload["sub"])
    except (KeyError, TypeError, ValueError):
        return None
