"""
FastAPI dependencies for authentication, authorization and shared services.

Dependencies are reusable functions that FastAPI injects into route handlers:

  get_current_user (JWT -> User)
      └── require_admin (User -> User)        [ADMIN role]

  get_session_factory    fresh sessions for polling (sees worker commits)
  get_catalog            payable target registry
  get_provider_registry  provider adapters by name (lives in app.providers)

Role-based access control:
  - MEMBER: creates payments and reads only their own transactions and
    client secrets.
  - ADMIN: reads every transaction and performs operator actions (refunds,
    capture, cancel, dead-letter retry).

Tests replace the service dependencies through app.dependency_overrides.
"""

import uuid
from functools import lru_cache

from fastapi import Depends, HTTPException, status
from fastapi.security import OAuth2PasswordBearer
from jose import JWTError
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.catalog import TargetCatalog, build_default_catalog
from app.database import AsyncSessionLocal, get_db
from app.models.user import User, UserType
from app.security import decode_access_token


# Reads the "Authorization: Bearer <token>" header; tokenUrl feeds Swagger UI's Authorize button
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/auth/login")


async def get_current_user(
    token: str = Depends(oauth2_scheme),
    db: AsyncSession = Depends(get_db),
) -> User:
    """
    Extract and validate the JWT token, then return the corresponding User.

    Raises:
        HTTPException 401: If the token is invalid or the user doesn't exist.
    """
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )

    try:
        payload = decode_access_token(token)
        user_id_str: str | None = payload.get("sub")
        if user_id_str is None:
            raise credentials_exception
        user_id = uuid.UUID(user_id_str)
    except (JWTError, ValueError):
        raise credentials_exception

    result = await db.execute(select(User).where(User.id == user_id))
    user = result.scalar_one_or_none()

    if user is None or not user.is_active:
        raise credentials_exception

    return user


async def require_admin(
    user: User = Depends(get_current_user),
) -> User:
    """
    Require the authenticated user to have the ADMIN role.

    Raises:
        HTTPException 403: If the user is not an admin.
    """
    if user.user_type != UserType.ADMIN:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin access required",
        )
    return user


def get_session_factory() -> async_sessionmaker:
    return AsyncSessionLocal


@lru_cache
def get_catalog() -> TargetCatalog:
    return build_default_catalog()
