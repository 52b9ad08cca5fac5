from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from authcore.models.audit_log import AuditLog

SENSITIVE_FIELDS = ("password", "token", "secret", "hash")
MASK = "***MASKED***"


def mask_sensitive(data: Any) -> Any:
    """Recursively mask values whose key looks like a credential."""
    if isinstance(data, list):
        return [mask_sensitive(item) for item in data]
    if not isinstance(data, dict):
        return data
    cleaned = {}
    for key, value in data.items():
        if any(f in str(key).lower() for f in SENSITIVE_FIELDS):
            cleaned[key] = MASK
        else:
            cleaned[key] = mask_sensitive(value)
    return cleaned


async def log_action(
    session: AsyncSession,
    user_id: int | None,
    action: str,
    resource: str,
    resource_id: str | None = None,
    details: dict | None = None,
    ip_address: str | None = None,
) -> None:
    session.add(
        AuditLog(
            user_id=user_id,
            action=action,
            resource=resource,
            resource_id=str(resource_id) if resource_id is not None else None,
            details=mask_sensitive(details) if details else None,
            ip_address=ip_address[:45] if ip_address else None,
        )
    )
    await session.flush()
