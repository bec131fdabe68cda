"""
Security Module
===============

JWT access token validation. Tokens are issued by the auth backend
(Supabase) and signed with the shared project secret; this service only
reads the ``sub`` claim to identify the user whose entitlement is asked for.
"""

from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from jose import JWTError, jwt

from app.config import settings


def create_access_token(
    data: dict[str, Any],
    expires_delta: Optional[timedelta] = None,
) -> str:
    """
    Create a JWT access token.

    Used by service-to-service callers and the test-suite; end-user tokens
    come from the auth backend.

    Args:
        data: Payload data to encode (must include ``sub``)
        expires_delta: Custom expiration time (optional)

    Returns:
        Encoded JWT token string
    """
    to_encode = data.copy()

    if expires_delta:
        expire = datetime.now(timezone.utc) + expires_delta
    else:
        expire = datetime.now(timezone.utc) + timedelta(
            minutes=settings.JWT_ACCESS_TOKEN_EXPIRE_MINUTES
        )

    to_encode.update({
        "exp": expire,
        "iat": datetime.now(timezone.utc),
        "type": "access",
    })

    return jwt.encode(
        to_encode,
        settings.JWT_SECRET,
        algorithm=settings.JWT_ALGORITHM,
    )


def decode_token(token: str) -> Optional[dict[str, Any]]:
    """
    Decode and validate a JWT token.

    Args:
        token: JWT token string

    Returns:
        Decoded payload if valid, None otherwise
    """
    try:
        return jwt.decode(
            token,
            settings.JWT_SECRET,
            algorithms=[settings.JWT_ALGORITHM],
            options={"verify_aud": False},
        )
    except JWTError:
        return None


def user_id_from_token(token: str) -> Optional[str]:
    """Return the ``sub`` claim of a valid access token, or None."""
    payload = decode_token(token)
    if payload is None:
        return None
    # Supabase tokens carry role="authenticated" instead of type="access"
    if payload.get("type", "access") != "access":
        return None
    subject = payload.get("sub")
    return str(subject) if subject else None
