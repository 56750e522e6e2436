"""
Authentication service: signup and login business logic.

This module contains the core auth logic, separated from HTTP concerns.
The router calls these functions and translates the results into HTTP
responses.

Signup flow:
  1. Check if email is already registered
  2. Hash the password with Argon2id
  3. Create the User as a MEMBER (admins are promoted by an operator)
  4. Return a JWT token so the user is immediately logged in

Login flow:
  1. Look up user by email
  2. Verify password against stored hash
  3. Return a JWT token

Login returns the same error for "wrong password", "email not found" and
"account disabled" to prevent user enumeration.
"""

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.exceptions import DuplicateEmailError, InvalidCredentialsError
from app.models.user import User, UserType
from app.security import hash_password, verify_password, create_access_token


async def signup(
    db: AsyncSession,
    email: str,
    password: str,
    full_name: str | None = None,
) -> tuple[User, str]:
    """
    Register a new member.

    Returns:
        Tuple of (User instance, JWT token string).

    Raises:
        DuplicateEmailError: If the email is already registered.
    """
    result = await db.execute(select(User).where(User.email == email))
    if result.scalar_one_or_none():
        raise DuplicateEmailError(email)

    user = User(
        email=email,
        hashed_password=hash_password(password),
        full_name=full_name,
        user_type=UserType.MEMBER,
    )
    db.add(user)
    # Flush to get user.id assigned for the token subject
    await db.flush()

    token = create_access_token(data={"sub": str(user.id)})
    return user, token


async def login(
    db: AsyncSession,
    email: str,
    password: str,
) -> tuple[User, str]:
    """
    Authenticate a user and return a JWT token.

    Raises:
        InvalidCredentialsError: If email doesn't exist, the password is
            wrong, or the account is disabled.
    """
    result = await db.execute(select(User).where(User.email == email))
    user = result.scalar_one_or_none()

    if not user:
        raise InvalidCredentialsError()

    if not verify_password(password, user.hashed_password):
        raise InvalidCredentialsError()

    if not user.is_active:
        raise InvalidCredentialsError()

    token = create_access_token(data={"sub": str(user.id)})
    return user, token
