"""FastAPI authentication dependencies for route protection."""

import logging
import uuid
from dataclasses import dataclass

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.auth.tokens import decode_token
from app.database import get_db
from app.models.subscription import Subscription
from app.models.user import User
from app.services.subscription_service import get_or_create_subscription

logger = logging.getLogger(__name__)

# Optional bearer so a missing token is a 401 rather than FastAPI's default 403
_bearer_scheme = HTTPBearer(auto_error=False)


def _credentials_exception(detail: str = "Could not validate credentials") -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


async def _get_user(db: AsyncSession, user_id: uuid.UUID) -> User | None:
    result = await db.execute(select(User).where(User.id == user_id))
    return result.scalar_one_or_none()


async def _provision_user(db: AsyncSession, user_id: uuid.UUID, payload: dict) -> User | None:
    """Create the user row (and free subscription) on first sight of a token subject."""
    email: str | None = payload.get("email")
    if not email:
        return None

    user = User(id=user_id, email=email, name=payload.get("name"), is_active=True)
    db.add(user)
    try:
        await db.flush()
    except IntegrityError:
        # Another request provisioned the same user first
        await db.rollback()
        return await _get_user(db, user_id)

    await get_or_create_subscription(db, user)
    await db.commit()
    logger.info("Provisioned user %s (%s)", user_id, email)
    return user


@dataclass(frozen=True)
class TokenIdentity:
    """A validated access token: the subject's user id and its claims."""

    user_id: uuid.UUID
    claims: dict


async def get_token_identity(
    credentials: HTTPAuthorizationCredentials | None = Depends(_bearer_scheme),
) -> TokenIdentity:
    """Validate the Bearer token without touching the database.

    Raises:
        HTTPException 401: If the token is missing, invalid, expired, or of the wrong type.
    """
    if credentials is None:
        raise _credentials_exception("Not authenticated")

    try:
        payload = decode_token(credentials.credentials)
    except JWTError:
        raise _credentials_exception() from None

    # Refresh tokens are never accepted here
    token_type: str | None = payload.get("type")
    if token_type not in (None, "access"):
        raise _credentials_exception("Invalid token type")

    sub: str | None = payload.get("sub")
    if sub is None:
        raise _credentials_exception()

    try:
        user_id = uuid.UUID(sub)
    except ValueError:
        raise _credentials_exception() from None

    return TokenIdentity(user_id=user_id, claims=payload)


async def load_user(db: AsyncSession, identity: TokenIdentity) -> User:
    """Return the active user behind ``identity``, provisioning unknown subjects.

    Raises:
        HTTPException 401: The subject is unknown and the token carries no ``email``.
        HTTPException 403: If the user account is inactive.
    """
    user = await _get_user(db, identity.user_id)
    if user is None:
        user = await _provision_user(db, identity.user_id, identity.claims)
    if user is None:
        raise _credentials_exception()

    if not user.is_active:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Account is inactive",
        )

    return user


async def get_current_user(
    identity: TokenIdentity = Depends(get_token_identity),
    db: AsyncSession = Depends(get_db),
) -> User:
    """Return the authenticated user for a valid Bearer token."""
    return await load_user(db, identity)


async def get_current_subscription(
    db: AsyncSession = Depends(get_db),
    user: User = Depends(get_current_user),
) -> Subscription:
    """The authenticated user's subscription row, provisioned as free if missing."""
    return await get_or_create_subscription(db, user)
