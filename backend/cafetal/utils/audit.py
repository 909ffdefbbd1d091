"""Lightweight helper for recording audit log entries.

Usage:
    await record_audit(
        db, ctx, action="refund", resource_type="payment",
        resource_id=payment.id,
        details={"changes": diff_fields(before, payment)},
    )

The row is added to the current session and committed with the
enclosing transaction; no extra flush is performed.
"""

from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import Any, Iterable

from sqlalchemy.ext.asyncio import AsyncSession

from cafetal.models.audit_log import AuditLog
from cafetal.services.context import RequestContext

AUDIT_ACTIONS = ("create", "update", "refund", "webhook_update", "cancel", "renew")


def _jsonable(value: Any) -> Any:
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, (date, datetime)):
        return value.isoformat()
    return value


def snapshot(obj: Any, fields: Iterable[str]) -> dict[str, Any]:
    """Capture the given attributes of an ORM object before mutating it."""
    return {name: getattr(obj, name) for name in fields}


def diff_fields(before: dict[str, Any], obj: Any) -> dict[str, list]:
    """Return {field: [old, new]} for every captured field that changed."""
    changes = {}
    for name, old in before.items():
        new = getattr(obj, name)
        if old != new:
            changes[name] = [_jsonable(old), _jsonable(new)]
    return changes


async def record_audit(
    db: AsyncSession,
    ctx: RequestContext,
    *,
    action: str,
    resource_type: str,
    resource_id: str,
    details: dict | None = None,
) -> None:
    """Append an audit entry to the current DB session."""
    if action not in AUDIT_ACTIONS:
        raise ValueError(f"Unknown audit action: {action!r}")

    entry = AuditLog(
        actor_id=ctx.actor_id,
        correlation_id=ctx.correlation_id,
        ip_address=ctx.ip_address,
        action=action,
        resource_type=resource_type,
        resource_id=resource_id,
        details={k: _jsonable(v) for k, v in (details or {}).items()},
        created_at=ctx.now(),
    )
    db.add(entry)
