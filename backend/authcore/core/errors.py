"""
Error taxonomy for the auth core.

Every expected failure is an AuthError tagged with one ErrorKind; the kind fixes the
default HTTP status and whether the message is safe to show to clients. The set of
kinds is closed: the boundary handler maps each one explicitly.
"""

from __future__ import annotations

import enum


class ErrorKind(str, enum.Enum):
    VALIDATION = "validation"
    CONFLICT = "conflict"
    UNAUTHORIZED = "unauthorized"
    NOT_FOUND = "not_found"
    TOO_MANY_REQUESTS = "too_many_requests"
    INTERNAL = "internal"


DEFAULT_STATUS: dict[ErrorKind, int] = {
    ErrorKind.VALIDATION: 422,
    ErrorKind.CONFLICT: 409,
    ErrorKind.UNAUTHORIZED: 401,
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.TOO_MANY_REQUESTS: 429,
    ErrorKind.INTERNAL: 500,
}


class AuthError(Exception):
    def __init__(
        self,
        kind: ErrorKind,
        message: str,
        *,
        status_code: int | None = None,
        headers: dict[str, str] | None = None,
    ) -> None:
        super().__init__(message)
        self.kind = kind
        self.message = message
        self.status_code = status_code or DEFAULT_STATUS[kind]
        self.headers = headers

    @property
    def is_operational(self) -> bool:
        """False for unexpected faults whose message must not reach clients in production."""
        return self.kind is not ErrorKind.INTERNAL

    @property
    def counts_as_failure(self) -> bool:
        """True for client errors that rate limiting should count against the caller."""
        return self.kind is not ErrorKind.TOO_MANY_REQUESTS and 400 <= self.status_code < 500

    def __repr__(self) -> str:
        return f"AuthError({self.kind.value}, {self.status_code}, {self.message!r})"


def validation_error(message: str, status_code: int = 422) -> AuthError:
    return AuthError(ErrorKind.VALIDATION, message, status_code=status_code)


def conflict(message: str, status_code: int = 409) -> AuthError:
    return AuthError(ErrorKind.CONFLICT, message, status_code=status_code)


def unauthorized(message: str) -> AuthError:
    return AuthError(ErrorKind.UNAUTHORIZED, message)


def not_found(message: str) -> AuthError:
    return AuthError(ErrorKind.NOT_FOUND, message)


def too_many_requests(message: str, retry_after: int | None = None) -> AuthError:
    headers = {"Retry-After": str(max(1, retry_after))} if retry_after is not None else None
    return AuthError(ErrorKind.TOO_MANY_REQUESTS, message, headers=headers)


def internal(message: str) -> AuthError:
    return AuthError(ErrorKind.INTERNAL, message)
