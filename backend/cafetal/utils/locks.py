"""Row locking for billing mutations.

Every mutating read goes through ``lock_row``: the row is selected
``FOR UPDATE`` (a no-op on SQLite) and the identity map is refreshed
so the caller validates against the committed state, not a stale copy.

The ``version`` column on payments and subscriptions backs this up;
``flush_versioned`` turns a lost optimistic race into a
ConcurrentUpdateError the caller can retry.
"""

from __future__ import annotations

from typing import TypeVar

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from cafetal.middleware.exceptions import ConcurrentUpdateError, NotFoundError

T = TypeVar("T")


async def lock_row(
    db: AsyncSession,
    model: type[T],
    row_id: str,
    *options,
    resource: str | None = None,
) -> T:
    """Select one row FOR UPDATE or raise NotFoundError."""
    stmt = (
        select(model)
        .where(model.id == row_id)
        .options(*options)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    row = (await db.execute(stmt)).scalar_one_or_none()
    if row is None:
        raise NotFoundError(resource or model.__name__, row_id)
    return row


async def flush_versioned(db: AsyncSession, resource: str, row_id: str) -> None:
    """Flush pending changes, mapping a version mismatch to ConcurrentUpdateError."""
    try:
        await db.flush()
    except StaleDataError as e:
        raise ConcurrentUpdateError(resource, row_id) from e
