"""
Auth flows: signup, login, refresh, email verification, forgot/reset password.

Each flow opens its own unit of work so that multi-step writes commit together or not
at all. Client-facing failures are AuthErrors; token failures are collapsed to one
generic message per flow so callers cannot tell why a token was rejected.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from authcore.config import Settings
from authcore.core.auth import hash_password, verify_password
from authcore.core.errors import conflict, internal, not_found, unauthorized, validation_error
from authcore.db.session import unit_of_work
from authcore.models.token import TokenType
from authcore.models.user import Role, User
from authcore.services.audit import log_action
from authcore.services.email import EmailDeliveryError, EmailService, redact_email
from authcore.services.tokens import AuthTokens, TokenError, TokenResponse, TokenService

logger = logging.getLogger(__name__)

EMAIL_TAKEN = "User with this email already exists"
INVALID_CREDENTIALS = "Incorrect email or password"
INVALID_REFRESH = "Invalid or expired refresh token"
INVALID_ACCESS = "Invalid access token"
INVALID_VERIFICATION = "Invalid or expired verification token"
INVALID_RESET = "Invalid or expired reset token"
ALREADY_VERIFIED = "Email is already verified"


@dataclass(frozen=True)
class SignupResult:
    user: User
    verification_token: TokenResponse
    tokens: AuthTokens


class AuthService:
    def __init__(
        self,
        settings: Settings,
        session_maker: async_sessionmaker[AsyncSession],
        tokens: TokenService,
        email: EmailService,
    ) -> None:
        self._settings = settings
        self._session_maker = session_maker
        self._tokens = tokens
        self._email = email
        self._dummy_hash: str | None = None

    def _hash(self, password: str) -> str:
        return hash_password(password, self._settings.bcrypt_rounds)

    def _burn_password_check(self, password: str) -> None:
        # Same bcrypt cost whether or not the account exists.
        if self._dummy_hash is None:
            self._dummy_hash = self._hash("not-a-real-password")
        verify_password(password, self._dummy_hash)

    @staticmethod
    async def get_user_by_email(session: AsyncSession, email: str) -> User | None:
        r = await session.execute(select(User).where(User.email == email))
        return r.scalar_one_or_none()

    async def signup(self, email: str, password: str, ip_address: str | None = None) -> SignupResult:
        async with unit_of_work(self._session_maker) as session:
            if await self.get_user_by_email(session, email) is not None:
                raise conflict(EMAIL_TAKEN, status_code=400)
            user = User(email=email, password_hash=self._hash(password), role=Role.USER, is_verified=False)
            session.add(user)
            try:
                await session.flush()
            except IntegrityError:
                # Lost a race with a concurrent signup for the same email.
                logger.info("Signup unique constraint hit for %s", redact_email(email))
                raise conflict(EMAIL_TAKEN, status_code=400) from None
            verification = await self._tokens.generate_verification_token(session, user.id, user.role)
            await log_action(session, user.id, "signup", "user", user.id, ip_address=ip_address)

        # The user and its verification token are committed; a mail failure does not undo them.
        try:
            await self._email.send_verification_email(user.email, verification.token)
        except EmailDeliveryError:
            raise internal("Error sending verification email") from None

        async with unit_of_work(self._session_maker) as session:
            tokens = await self._tokens.generate_auth_tokens(session, user)
        logger.info("User %s signed up", user.id)
        return SignupResult(user=user, verification_token=verification, tokens=tokens)

    async def login(self, email: str, password: str, ip_address: str | None = None) -> tuple[User, AuthTokens]:
        async with unit_of_work(self._session_maker) as session:
            user = await self.get_user_by_email(session, email)
            if user is None:
                self._burn_password_check(password)
                ok = False
            else:
                ok = verify_password(password, user.password_hash)
            if ok:
                tokens = await self._tokens.generate_auth_tokens(session, user)
                await log_action(session, user.id, "login", "user", user.id, ip_address=ip_address)
            else:
                await log_action(
                    session,
                    user.id if user else None,
                    "login_failed",
                    "user",
                    details={"email": redact_email(email)},
                    ip_address=ip_address,
                )
        if not ok:
            raise unauthorized(INVALID_CREDENTIALS)
        return user, tokens

    async def refresh(self, encrypted_refresh_token: str | None, ip_address: str | None = None) -> tuple[User, AuthTokens]:
        if not encrypted_refresh_token:
            raise unauthorized("Refresh token not found")
        try:
            async with unit_of_work(self._session_maker) as session:
                user, tokens = await self._tokens.refresh_auth_tokens(session, encrypted_refresh_token)
                await log_action(session, user.id, "refresh", "refresh_token", user.id, ip_address=ip_address)
        except TokenError as e:
            logger.info("Refresh rejected (%s)", e.reason.value)
            raise unauthorized(INVALID_REFRESH) from None
        return user, tokens

    async def verify_email(self, token: str | None, ip_address: str | None = None) -> None:
        if not token:
            raise validation_error("Token is required")
        try:
            async with unit_of_work(self._session_maker) as session:
                row = await self._tokens.verify_token(session, token, TokenType.VERIFICATION)
                user = await session.get(User, row.user_id)
                if user is None:
                    raise not_found("User not found")
                if user.is_verified:
                    raise validation_error(ALREADY_VERIFIED, status_code=400)
                user.is_verified = True
                await self._tokens.consume_token(session, row)
                await log_action(session, user.id, "verify_email", "user", user.id, ip_address=ip_address)
        except TokenError as e:
            logger.info("Verification token rejected (%s)", e.reason.value)
            raise validation_error(INVALID_VERIFICATION, status_code=400) from None
        logger.info("Email verified for user %s", user.id)

    async def resend_verification_email(self, user_id: int) -> None:
        async with unit_of_work(self._session_maker) as session:
            user = await session.get(User, user_id)
            if user is None:
                raise not_found("User not found")
            if user.is_verified:
                raise validation_error(ALREADY_VERIFIED, status_code=400)
            verification = await self._tokens.generate_verification_token(session, user.id, user.role)
        try:
            await self._email.send_verification_email(user.email, verification.token)
        except EmailDeliveryError:
            raise internal("Error sending verification email") from None

    async def forgot_password(self, email: str, ip_address: str | None = None) -> None:
        """Always returns normally so the response never reveals whether the account exists."""
        async with unit_of_work(self._session_maker) as session:
            user = await self.get_user_by_email(session, email)
            if user is None:
                logger.info("Password reset requested for unknown email %s", redact_email(email))
                return
            reset = await self._tokens.generate_reset_password_token(session, user.id, user.role)
            await log_action(session, user.id, "forgot_password", "user", user.id, ip_address=ip_address)
        try:
            await self._email.send_password_reset_email(user.email, reset.token)
        except EmailDeliveryError:
            logger.error("Password reset email for user %s was not delivered", user.id)

    async def reset_password(self, token: str | None, password: str, ip_address: str | None = None) -> None:
        if not token:
            raise validation_error("Token is required")
        try:
            async with unit_of_work(self._session_maker) as session:
                row = await self._tokens.verify_token(session, token, TokenType.RESET_PASSWORD)
                user = await session.get(User, row.user_id)
                if user is None:
                    raise not_found("User not found")
                user.password_hash = self._hash(password)
                await self._tokens.consume_token(session, row)
                revoked = await self._tokens.revoke_refresh_tokens(session, user.id)
                await log_action(
                    session,
                    user.id,
                    "reset_password",
                    "user",
                    user.id,
                    details={"revoked_sessions": revoked},
                    ip_address=ip_address,
                )
        except TokenError as e:
            logger.info("Reset token rejected (%s)", e.reason.value)
            raise validation_error(INVALID_RESET, status_code=400) from None
        logger.info("Password reset for user %s", user.id)

    async def get_user_from_access_token(self, session: AsyncSession, token: str) -> User:
        try:
            user_id = self._tokens.decode_access_token(token)
        except TokenError:
            raise unauthorized(INVALID_ACCESS) from None
        user = await session.get(User, user_id)
        if user is None:
            raise unauthorized(INVALID_ACCESS)
        return user
