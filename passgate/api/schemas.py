from __future__ import annotations

from datetime import datetime
from typing import Any, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

from passgate.service.validation import (
    MAX_PASSWORD_LENGTH,
    MAX_TOKEN_LENGTH,
    normalize_currency_code,
    normalize_email,
    normalize_full_name,
    validate_password_strength,
)

_VALID_ERROR_CODES = frozenset({
    "bad_request",
    "unauthorized",
    "not_found",
    "validation_error",
    "conflict",
    "unavailable",
    "server_error",
})


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str = Field(..., description="Stable error code")
    message: str
    details: Optional[Any] = None  # object, array, or null

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    """API envelope format."""

    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


class SignupRequest(BaseModel):
    full_name: str = Field(..., max_length=255)
    email: str
    password: str
    currency_code: Optional[str] = Field(default=None, max_length=3)

    @field_validator("full_name")
    @classmethod
    def _validate_full_name(cls, value: str) -> str:
        return normalize_full_name(value)

    @field_validator("email")
    @classmethod
    def _validate_signup_email(cls, value: str) -> str:
        return normalize_email(value)

    @field_validator("password")
    @classmethod
    def _validate_password(cls, value: str) -> str:
        return validate_password_strength(value)

    @field_validator("currency_code")
    @classmethod
    def _validate_currency(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        return normalize_currency_code(value)


class LoginRequest(BaseModel):
    email: str
    password: str = Field(..., min_length=1, max_length=MAX_PASSWORD_LENGTH)

    @field_validator("email")
    @classmethod
    def _validate_login_email(cls, value: str) -> str:
        return normalize_email(value)


class TokenRefreshRequest(BaseModel):
    """Refresh and logout bodies; browsers send the token as a cookie instead."""

    refresh_token: Optional[str] = Field(default=None, max_length=MAX_TOKEN_LENGTH)


class ForgotPasswordRequest(BaseModel):
    email: str

    @field_validator("email")
    @classmethod
    def _validate_forgot_password_email(cls, value: str) -> str:
        return normalize_email(value)


class PasswordResetConfirm(BaseModel):
    token: str = Field(..., min_length=1, max_length=MAX_TOKEN_LENGTH)
    new_password: str

    @field_validator("new_password")
    @classmethod
    def _validate_new_password(cls, value: str) -> str:
        return validate_password_strength(value)


class EmailVerificationRequest(BaseModel):
    token: str = Field(..., min_length=1, max_length=MAX_TOKEN_LENGTH)


class UserResponse(BaseModel):
    id: str
    email: str
    full_name: str
    currency_code: str
    avatar_url: Optional[str] = None
    email_verified: bool
    onboarding_completed: bool
    last_login_at: Optional[datetime] = None
    created_at: Optional[datetime] = None


class AuthResponse(BaseModel):
    """Login and signup payload; the refresh token travels only in its cookie."""

    access_token: str
    token_type: str = "bearer"
    access_expires_at: datetime
    refresh_expires_at: datetime
    user: Optional[UserResponse] = None


class MessageResponse(BaseModel):
    message: str
