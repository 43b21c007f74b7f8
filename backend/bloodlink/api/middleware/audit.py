from typing import Any, Optional

from fastapi import Request
from sqlalchemy.ext.asyncio import AsyncSession

from bloodlink.models.audit_log import AuditLog


async def log_audit(
    action: str,
    resource: str,
    resource_id: Any = None,
    user_id=None,
    details: Optional[str] = None,
    request: Optional[Request] = None,
    db: AsyncSession = None,
):
    """Record a mutation in the caller's transaction; it commits with the change."""
    ip = request.client.host if request and request.client else None
    user_agent = request.headers.get("user-agent") if request else None

    audit = AuditLog(
        user_id=user_id,
        action=action,
        resource=resource,
        resource_id=str(resource_id) if resource_id else None,
        details=details,
        ip_address=ip,
        user_agent=user_agent,
    )
    db.add(audit)
    await db.flush()
