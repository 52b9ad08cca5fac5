"""Request and response bodies for /auth endpoints."""

from __future__ import annotations

import re
from datetime import datetime

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator

from authcore.models.user import Role

PASSWORD_MIN_LEN = 8
PASSWORD_MAX_LEN = 128
PASSWORD_RULE = (
    "password must be at least 8 characters long and contain at least "
    "1 letter, 1 number, and 1 special character"
)


def check_password_strength(value: str) -> str:
    if not (
        re.search(r"\d", value) and re.search(r"[a-zA-Z]", value) and re.search(r"[\W_]", value)
    ):
        raise ValueError(PASSWORD_RULE)
    return value


class SignupBody(BaseModel):
    email: EmailStr
    password: str = Field(min_length=PASSWORD_MIN_LEN, max_length=PASSWORD_MAX_LEN)

    @field_validator("password")
    @classmethod
    def validate_password(cls, v: str) -> str:
        return check_password_strength(v)


class LoginBody(BaseModel):
    email: EmailStr
    password: str = Field(min_length=1, max_length=PASSWORD_MAX_LEN)


class ForgotPasswordBody(BaseModel):
    email: EmailStr


class ResetPasswordBody(BaseModel):
    token: str = Field(min_length=1)
    password: str = Field(min_length=PASSWORD_MIN_LEN, max_length=PASSWORD_MAX_LEN)
    confirm_password: str = Field(max_length=PASSWORD_MAX_LEN)

    @field_validator("password")
    @classmethod
    def validate_password(cls, v: str) -> str:
        return check_password_strength(v)


class VerifyEmailBody(BaseModel):
    token: str | None = None


class UserOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    email: str
    role: Role
    is_verified: bool
    created_at: datetime


class AccessTokenOut(BaseModel):
    token: str
    expires: datetime


class RefreshTokenOut(BaseModel):
    # The refresh token value is delivered only in the HttpOnly cookie.
    expires: datetime


class TokensOut(BaseModel):
    access: AccessTokenOut
    refresh: RefreshTokenOut


class SignupResponse(BaseModel):
    message: str
    user: UserOut
    verification_token: str | None = None
    tokens: TokensOut


class LoginResponse(BaseModel):
    user: UserOut
    tokens: TokensOut


class RefreshResponse(BaseModel):
    tokens: TokensOut


class MessageResponse(BaseModel):
    message: str
