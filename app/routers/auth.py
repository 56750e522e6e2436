"""
Authentication router: signup and login endpoints.

These are the only public endpoints besides /health and the provider
webhooks. Everything else requires a valid JWT token.

Endpoints:
  POST /auth/signup    Register a new member and get a token
  POST /auth/login     Authenticate and get a token

Plaintext passwords exist only in memory during request processing; they
are hashed before any database operation and never logged.
"""

from fastapi import APIRouter, Depends, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.database import get_db
from app.schemas.auth import (
    LoginRequest,
    SignupRequest,
    SignupResponse,
    TokenResponse,
)
from app.services import auth_service

router = APIRouter()


@router.post(
    "/signup",
    response_model=SignupResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Register a new user",
)
async def signup(
    request: SignupRequest,
    db: AsyncSession = Depends(get_db),
):
    """
    Register a new member. Returns a JWT token so the user is immediately
    logged in after signup.

    - **email**: Must be a valid email format and not already registered
    - **password**: Minimum 8 characters
    """
    user, token = await auth_service.signup(
        db=db,
        email=request.email,
        password=request.password,
        full_name=request.full_name,
    )

    return SignupResponse(
        user_id=user.id,
        email=user.email,
        user_type=user.user_type.value,
        token=token,
    )


@router.post(
    "/login",
    response_model=TokenResponse,
    summary="Authenticate and get a token",
)
async def login(
    request: LoginRequest,
    db: AsyncSession = Depends(get_db),
):
    """
    Authenticate with email and password.

        Authorization: Bearer <token>

    The token expires after ACCESS_TOKEN_EXPIRE_MINUTES (default: 30).
    """
    _, token = await auth_service.login(
        db=db,
        email=request.email,
        password=request.password,
    )
    return TokenResponse(token=token)
