"""Auth: signup, login, refresh, verify-email, forgot/reset password, me."""

import logging
from typing import Annotated

from fastapi import APIRouter, Depends, Request, Response
from fastapi import status as http_status

from authcore.api.deps import get_auth_service, get_current_user, get_rate_limit_guard, get_settings
from authcore.config import Settings
from authcore.core import rate_limit
from authcore.core.errors import validation_error
from authcore.core.rate_limit import RateLimitGuard, get_client_ip
from authcore.models.user import User
from authcore.schemas.auth import (
    AccessTokenOut,
    ForgotPasswordBody,
    LoginBody,
    LoginResponse,
    MessageResponse,
    RefreshResponse,
    RefreshTokenOut,
    ResetPasswordBody,
    SignupBody,
    SignupResponse,
    TokensOut,
    UserOut,
    VerifyEmailBody,
)
from authcore.services.auth import AuthService
from authcore.services.tokens import AuthTokens

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/auth", tags=["auth"])

REFRESH_COOKIE = "refreshToken"
REFRESH_COOKIE_PATH = "/api/v1/auth"
FORGOT_PASSWORD_MESSAGE = "If the email exists, a password reset link has been sent"

Auth = Annotated[AuthService, Depends(get_auth_service)]
Guard = Annotated[RateLimitGuard, Depends(get_rate_limit_guard)]
AppSettings = Annotated[Settings, Depends(get_settings)]


def _tokens_out(tokens: AuthTokens) -> TokensOut:
    return TokensOut(
        access=AccessTokenOut(token=tokens.access.token, expires=tokens.access.expires),
        refresh=RefreshTokenOut(expires=tokens.refresh.expires),
    )


def _set_refresh_cookie(response: Response, settings: Settings, tokens: AuthTokens) -> None:
    response.set_cookie(
        REFRESH_COOKIE,
        tokens.refresh.token,
        max_age=settings.refresh_token_max_age_seconds,
        path=REFRESH_COOKIE_PATH,
        httponly=True,
        secure=settings.is_production,
        samesite="strict",
    )


@router.post(
    "/signup",
    response_model=SignupResponse,
    status_code=http_status.HTTP_201_CREATED,
    summary="Create an account and send a verification email",
    responses={
        400: {"description": "User with this email already exists"},
        422: {"description": "Invalid email or weak password"},
        429: {"description": "Too many signup attempts"},
    },
)
async def signup(
    request: Request,
    response: Response,
    body: SignupBody,
    auth: Auth,
    guard: Guard,
    settings: AppSettings,
) -> SignupResponse:
    email = str(body.email).strip()
    async with guard.protect(rate_limit.SIGNUP, request, email):
        result = await auth.signup(email, body.password, ip_address=get_client_ip(request))
    _set_refresh_cookie(response, settings, result.tokens)
    return SignupResponse(
        message=f"Sent a verification email to {result.user.email}",
        user=UserOut.model_validate(result.user),
        # Exposed outside production so the flow can be exercised without a mailbox.
        verification_token=None if settings.is_production else result.verification_token.token,
        tokens=_tokens_out(result.tokens),
    )


@router.post(
    "/login",
    response_model=LoginResponse,
    summary="Login with email and password",
    responses={
        401: {"description": "Incorrect email or password"},
        429: {"description": "Too many login attempts"},
    },
)
async def login(
    request: Request,
    response: Response,
    body: LoginBody,
    auth: Auth,
    guard: Guard,
    settings: AppSettings,
) -> LoginResponse:
    email = str(body.email).strip()
    async with guard.protect(rate_limit.LOGIN, request, email):
        user, tokens = await auth.login(email, body.password, ip_address=get_client_ip(request))
    _set_refresh_cookie(response, settings, tokens)
    return LoginResponse(user=UserOut.model_validate(user), tokens=_tokens_out(tokens))


@router.post(
    "/refresh",
    response_model=RefreshResponse,
    summary="Exchange the refresh cookie for a new token pair (single use)",
    responses={
        401: {"description": "Refresh token missing, invalid or expired"},
    },
)
async def refresh_tokens(
    request: Request,
    response: Response,
    auth: Auth,
    settings: AppSettings,
) -> RefreshResponse:
    _, tokens = await auth.refresh(request.cookies.get(REFRESH_COOKIE), ip_address=get_client_ip(request))
    _set_refresh_cookie(response, settings, tokens)
    return RefreshResponse(tokens=_tokens_out(tokens))


async def _verify_email(request: Request, token: str | None, auth: AuthService, guard: RateLimitGuard) -> MessageResponse:
    async with guard.protect(rate_limit.VERIFY_EMAIL, request, token):
        await auth.verify_email(token, ip_address=get_client_ip(request))
    return MessageResponse(message="Email verified successfully")


@router.get(
    "/verify-email",
    response_model=MessageResponse,
    summary="Verify email address with the token from the verification link",
    responses={400: {"description": "Invalid or expired verification token"}, 422: {"description": "Token is required"}},
)
async def verify_email_link(
    request: Request,
    auth: Auth,
    guard: Guard,
    token: str | None = None,
) -> MessageResponse:
    return await _verify_email(request, token, auth, guard)


@router.post(
    "/verify-email",
    response_model=MessageResponse,
    summary="Verify email address (token in query or body)",
    responses={400: {"description": "Invalid or expired verification token"}, 422: {"description": "Token is required"}},
)
async def verify_email(
    request: Request,
    auth: Auth,
    guard: Guard,
    token: str | None = None,
    body: VerifyEmailBody | None = None,
) -> MessageResponse:
    return await _verify_email(request, token or (body.token if body else None), auth, guard)


@router.post(
    "/resend-verification",
    response_model=MessageResponse,
    summary="Send a fresh verification email to the current user",
    responses={400: {"description": "Email is already verified"}, 401: {"description": "Not authenticated"}},
)
async def resend_verification(
    user: Annotated[User, Depends(get_current_user)],
    auth: Auth,
) -> MessageResponse:
    await auth.resend_verification_email(user.id)
    return MessageResponse(message=f"Sent a verification email to {user.email}")


@router.post(
    "/forgot-password",
    response_model=MessageResponse,
    summary="Request a password reset link",
    responses={200: {"description": "Same response whether or not the account exists"}},
)
async def forgot_password(
    request: Request,
    body: ForgotPasswordBody,
    auth: Auth,
    guard: Guard,
) -> MessageResponse:
    email = str(body.email).strip()
    async with guard.protect(rate_limit.FORGOT_PASSWORD, request, email):
        await auth.forgot_password(email, ip_address=get_client_ip(request))
    return MessageResponse(message=FORGOT_PASSWORD_MESSAGE)


@router.post(
    "/reset-password",
    response_model=MessageResponse,
    summary="Set a new password with a reset token",
    responses={400: {"description": "Passwords do not match or invalid reset token"}},
)
async def reset_password(
    request: Request,
    body: ResetPasswordBody,
    auth: Auth,
    guard: Guard,
) -> MessageResponse:
    async with guard.protect(rate_limit.RESET_PASSWORD, request, body.token):
        if body.password != body.confirm_password:
            raise validation_error("Passwords do not match", status_code=400)
        await auth.reset_password(body.token, body.password, ip_address=get_client_ip(request))
    return MessageResponse(message="Password reset successfully. You can now log in.")


@router.get(
    "/me",
    response_model=UserOut,
    summary="Get current authenticated user",
    responses={
        401: {"description": "Not authenticated or invalid token"},
    },
)
async def me(user: Annotated[User, Depends(get_current_user)]) -> UserOut:
    return UserOut.model_validate(user)
