from authcore.models.user import Role, User
from authcore.models.token import Token, TokenType
from authcore.models.refresh_token import RefreshToken
from authcore.models.audit_log import AuditLog

__all__ = [
    "Role",
    "User",
    "Token",
    "TokenType",
    "RefreshToken",
    "AuditLog",
]
