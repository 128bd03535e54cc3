"""JWT access token creation and verification.

Tokens are issued by the identity layer; this service only verifies them.
``create_access_token`` exists for tooling and tests.
"""

import uuid
from datetime import datetime, timedelta, timezone

from jose import jwt

from app.config import settings


def create_access_token(
    user_id: uuid.UUID | str,
    email: str | None = None,
    expires_delta: timedelta | None = None,
    **claims,
) -> str:
    """Create a short-lived access token.

    Args:
        user_id: The user's UUID; stored as the ``sub`` claim.
        email: Stored as the ``email`` claim, used to provision new users.
        expires_delta: Custom expiration duration. Defaults to
            ``settings.jwt_access_token_expire_minutes`` minutes.

    Returns:
        Encoded JWT string.
    """
    now = datetime.now(timezone.utc)
    expire = now + (expires_delta or timedelta(minutes=settings.jwt_access_token_expire_minutes))
    to_encode = {"sub": str(user_id), "exp": expire, "iat": now, "type": "access", **claims}
    if email is not None:
        to_encode["email"] = email
    return jwt.encode(to_encode, settings.jwt_secret_key, algorithm=settings.jwt_algorithm)


def decode_token(token: str) -> dict:
    """Decode and verify a JWT token.

    Raises:
        jose.JWTError: If the token is invalid, expired, or malformed.
    """
    return jwt.decode(token, settings.jwt_secret_key, algorithms=[settings.jwt_algorithm])
