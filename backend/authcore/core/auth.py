"""Password hashing and JWT creation/verification."""

import hashlib
import secrets
from datetime import datetime, timezone
from typing import Any

import bcrypt
from jose import ExpiredSignatureError, JWTError, jwt

__all__ = [
    "ExpiredSignatureError",
    "JWTError",
    "decode_jwt",
    "encode_jwt",
    "fingerprint",
    "hash_password",
    "verify_password",
]


def hash_password(password: str, rounds: int = 10) -> str:
    """Hash password with bcrypt. Bytes truncated to 72 (bcrypt limit)."""
    pwd_bytes = password.encode("utf-8")[:72]
    hashed = bcrypt.hashpw(pwd_bytes, bcrypt.gensalt(rounds=rounds))
    return hashed.decode("utf-8")


def verify_password(plain_password: str, password_hash: str) -> bool:
    """Verify password with bcrypt. Plain password truncated to 72 bytes."""
    plain_bytes = plain_password.encode("utf-8")[:72]
    try:
        return bcrypt.checkpw(plain_bytes, password_hash.encode("utf-8"))
    except (ValueError, TypeError):
        return False


def encode_jwt(
    subject: str | int,
    role: str,
    token_type: str,
    expires: datetime,
    secret: str,
    algorithm: str = "HS256",
    **extra_claims: Any,
) -> str:
    """Sign {sub, role, iat, exp, type, jti} (plus any extra claims) with an HMAC secret."""
    payload: dict[str, Any] = {
        "sub": str(subject),
        "role": role,
        "iat": datetime.now(timezone.utc),
        "exp": expires,
        "type": token_type,
        "jti": secrets.token_urlsafe(12),
    }
    payload.update({k: v for k, v in extra_claims.items() if v is not None})
    result = jwt.encode(payload, secret, algorithm=algorithm)
    return result if isinstance(result, str) else result.decode("utf-8")


def decode_jwt(token: str, secret: str, algorithm: str = "HS256") -> dict[str, Any]:
    """Verify signature and expiry. Raises ExpiredSignatureError or JWTError."""
    return jwt.decode(token, secret, algorithms=[algorithm])


def fingerprint(value: str) -> str:
    """SHA256 hex digest, used to index long opaque token values."""
    return hashlib.sha256(value.encode("utf-8")).hexdigest()
