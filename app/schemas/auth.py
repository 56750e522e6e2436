"""
Pydantic schemas for authentication endpoints (signup and login).

Pydantic validates incoming data automatically: if a required field is
missing or the wrong type, FastAPI returns a 422 error before our code
even runs.
"""

import uuid

from pydantic import BaseModel, EmailStr, Field


class SignupRequest(BaseModel):
    """Request body for POST /auth/signup."""
    email: EmailStr
    password: str = Field(min_length=8)
    full_name: str | None = Field(None, max_length=200)


class LoginRequest(BaseModel):
    """Request body for POST /auth/login."""
    email: EmailStr
    password: str


class TokenResponse(BaseModel):
    """Response body for successful login."""
    token: str
    token_type: str = "bearer"


class SignupResponse(BaseModel):
    """Response body for successful signup: user info + JWT."""
    user_id: uuid.UUID
    email: str
    user_type: str
    token: str
    token_type: str = "bearer"
