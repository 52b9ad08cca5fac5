"""
Token issuance, verification and refresh-token rotation.

Access, verification and reset-password tokens are signed with JWT_SECRET; refresh
tokens with JWT_REFRESH_SECRET. Refresh tokens are encrypted per user before they are
stored or handed out, so the cookie value is ciphertext and the signed JWT never
leaves the server. Every method that writes takes the caller's session and joins its
unit of work; none of them commit.
"""

from __future__ import annotations

import enum
import hmac
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from authcore.config import Settings
from authcore.core.auth import ExpiredSignatureError, JWTError, decode_jwt, encode_jwt, fingerprint
from authcore.models.refresh_token import RefreshToken
from authcore.models.token import Token, TokenType
from authcore.models.user import Role, User
from authcore.services.crypto import DecryptionError, EncryptionEngine, binding_info_for

logger = logging.getLogger(__name__)


class TokenFailure(str, enum.Enum):
    NOT_FOUND = "not_found"
    EXPIRED = "expired"
    SIGNATURE_INVALID = "signature_invalid"
    WRONG_TYPE = "wrong_type"


class TokenError(Exception):
    """A presented token was rejected. Callers must not reveal `reason` to clients."""

    def __init__(self, reason: TokenFailure) -> None:
        super().__init__(f"Token rejected: {reason.value}")
        self.reason = reason


@dataclass(frozen=True)
class TokenResponse:
    token: str
    expires: datetime


@dataclass(frozen=True)
class AuthTokens:
    access: TokenResponse
    # refresh.token is the encrypted refresh token (hex ciphertext)
    refresh: TokenResponse


def _as_utc(dt: datetime) -> datetime:
    # SQLite hands back naive datetimes; everything is stored in UTC.
    return dt if dt.tzinfo is not None else dt.replace(tzinfo=timezone.utc)


def _role_value(role: Role | str) -> str:
    return role.value if isinstance(role, Role) else str(role)


class TokenService:
    def __init__(self, settings: Settings, engine: EncryptionEngine) -> None:
        self._settings = settings
        self._engine = engine

    def _secret_for(self, token_type: TokenType) -> str:
        if token_type is TokenType.REFRESH:
            return self._settings.jwt_refresh_secret
        return self._settings.jwt_secret

    def generate_token(
        self,
        user_id: int,
        role: Role | str,
        token_type: TokenType,
        expires: datetime,
        secret: str | None = None,
        email: str | None = None,
    ) -> str:
        return encode_jwt(
            user_id,
            _role_value(role),
            token_type.value,
            expires,
            secret or self._secret_for(token_type),
            self._settings.jwt_algorithm,
            email=email,
        )

    async def save_token(
        self,
        session: AsyncSession,
        token: str,
        user_id: int,
        expires: datetime,
        token_type: TokenType,
        revoked: bool = False,
    ) -> Token:
        row = Token(user_id=user_id, token=token, type=token_type, expires_at=expires, revoked=revoked)
        session.add(row)
        await session.flush()
        return row

    async def generate_auth_tokens(self, session: AsyncSession, user: User) -> AuthTokens:
        now = datetime.now(timezone.utc)
        access_expires = now + timedelta(minutes=self._settings.jwt_access_expiration_minutes)
        access = self.generate_token(user.id, user.role, TokenType.ACCESS, access_expires)
        if self._settings.persist_access_tokens:
            await self.save_token(session, access, user.id, access_expires, TokenType.ACCESS)

        refresh_expires = now + timedelta(days=self._settings.jwt_refresh_expiration_days)
        refresh_plain = self.generate_token(
            user.id, user.role, TokenType.REFRESH, refresh_expires, email=user.email
        )
        sealed = await self._engine.encrypt_async(refresh_plain, binding_info_for(user.email, user.id))
        session.add(
            RefreshToken(
                user_id=user.id,
                token_hash=fingerprint(sealed.ciphertext),
                encrypted_token=sealed.ciphertext,
                iv=sealed.iv,
                salt=sealed.salt,
                auth_tag=sealed.auth_tag,
                expires_at=refresh_expires,
            )
        )
        await session.flush()
        return AuthTokens(
            access=TokenResponse(token=access, expires=access_expires),
            refresh=TokenResponse(token=sealed.ciphertext, expires=refresh_expires),
        )

    async def _generate_one_off(
        self, session: AsyncSession, user_id: int, role: Role | str, token_type: TokenType, minutes: int
    ) -> TokenResponse:
        expires = datetime.now(timezone.utc) + timedelta(minutes=minutes)
        token = self.generate_token(user_id, role, token_type, expires)
        await self.save_token(session, token, user_id, expires, token_type)
        return TokenResponse(token=token, expires=expires)

    async def generate_verification_token(self, session: AsyncSession, user_id: int, role: Role | str) -> TokenResponse:
        return await self._generate_one_off(
            session, user_id, role, TokenType.VERIFICATION, self._settings.jwt_verification_expiration_minutes
        )

    async def generate_reset_password_token(
        self, session: AsyncSession, user_id: int, role: Role | str
    ) -> TokenResponse:
        return await self._generate_one_off(
            session, user_id, role, TokenType.RESET_PASSWORD, self._settings.jwt_reset_password_expiration_minutes
        )

    def _decode(self, token: str, token_type: TokenType) -> dict:
        try:
            payload = decode_jwt(token, self._secret_for(token_type), self._settings.jwt_algorithm)
        except ExpiredSignatureError:
            raise TokenError(TokenFailure.EXPIRED) from None
        except JWTError:
            raise TokenError(TokenFailure.SIGNATURE_INVALID) from None
        if payload.get("type") != token_type.value:
            raise TokenError(TokenFailure.WRONG_TYPE)
        return payload

    def decode_access_token(self, token: str) -> int:
        """Stateless check of an access token; returns the subject user id."""
        payload = self._decode(token, TokenType.ACCESS)
        try:
            return int(payload["sub"])
        except (KeyError, TypeError, ValueError):
            raise TokenError(TokenFailure.SIGNATURE_INVALID) from None

    async def verify_token(self, session: AsyncSession, token: str, token_type: TokenType) -> Token:
        """
        Check signature, expiry and type, then find the live stored record.
        Raises TokenError; a consumed token fails NOT_FOUND because consumption deletes it.
        """
        payload = self._decode(token, token_type)
        try:
            user_id = int(payload["sub"])
        except (KeyError, TypeError, ValueError):
            raise TokenError(TokenFailure.SIGNATURE_INVALID) from None
        r = await session.execute(
            select(Token).where(
                Token.token == token,
                Token.user_id == user_id,
                Token.type == token_type,
                Token.revoked.is_(False),
            )
        )
        row = r.scalars().first()
        if row is None:
            raise TokenError(TokenFailure.NOT_FOUND)
        if _as_utc(row.expires_at) <= datetime.now(timezone.utc):
            raise TokenError(TokenFailure.EXPIRED)
        return row

    async def consume_token(self, session: AsyncSession, row: Token) -> None:
        """Delete a verified token. Fails NOT_FOUND if a concurrent request consumed it first."""
        result = await session.execute(delete(Token).where(Token.id == row.id))
        if result.rowcount != 1:
            raise TokenError(TokenFailure.NOT_FOUND)

    async def refresh_auth_tokens(self, session: AsyncSession, encrypted_refresh_token: str) -> tuple[User, AuthTokens]:
        """
        Single-use rotation: find, decrypt and verify the presented refresh token, delete its
        record, then mint a new pair. Must run inside one unit of work: a failure after the
        delete rolls back to the old record, so at most one valid refresh token exists.
        """
        r = await session.execute(
            select(RefreshToken).where(
                RefreshToken.token_hash == fingerprint(encrypted_refresh_token),
                RefreshToken.revoked.is_(False),
            )
        )
        row = r.scalar_one_or_none()
        if row is None or not hmac.compare_digest(row.encrypted_token, encrypted_refresh_token):
            raise TokenError(TokenFailure.NOT_FOUND)
        if _as_utc(row.expires_at) <= datetime.now(timezone.utc):
            raise TokenError(TokenFailure.EXPIRED)

        user = await session.get(User, row.user_id)
        if user is None:
            raise TokenError(TokenFailure.NOT_FOUND)
        try:
            plain = await self._engine.decrypt_async(
                row.encrypted_token, row.iv, row.salt, row.auth_tag, binding_info_for(user.email, user.id)
            )
        except DecryptionError:
            logger.warning("Refresh token for user_id=%s failed decryption", user.id)
            raise TokenError(TokenFailure.SIGNATURE_INVALID) from None
        payload = self._decode(plain, TokenType.REFRESH)
        if payload.get("sub") != str(user.id):
            raise TokenError(TokenFailure.SIGNATURE_INVALID)

        result = await session.execute(delete(RefreshToken).where(RefreshToken.id == row.id))
        if result.rowcount != 1:
            # Lost the race against a concurrent rotation of the same token.
            raise TokenError(TokenFailure.NOT_FOUND)
        tokens = await self.generate_auth_tokens(session, user)
        return user, tokens

    async def revoke_refresh_tokens(self, session: AsyncSession, user_id: int) -> int:
        """Delete every refresh token of a user; returns how many were removed."""
        result = await session.execute(delete(RefreshToken).where(RefreshToken.user_id == user_id))
        return result.rowcount or 0
