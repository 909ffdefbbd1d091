"""AuditLog: append-only trail of billing mutations.

One row per state-changing call, written in the same transaction as
the change it describes.  Billing code writes these rows and never
reads them back to make decisions.
"""

import uuid
from datetime import datetime

from sqlalchemy import DateTime, JSON, String
from sqlalchemy.orm import Mapped, mapped_column

from cafetal.database import Base


class AuditLog(Base):
    __tablename__ = "audit_logs"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )

    # ── Who ────────────────────────────────────────────────────
    # user id, or "gateway:<provider>" for webhook-driven changes
    actor_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    correlation_id: Mapped[str | None] = mapped_column(String(64))
    ip_address: Mapped[str | None] = mapped_column(String(45))

    # ── What ───────────────────────────────────────────────────
    # create | update | refund | webhook_update | cancel | renew
    action: Mapped[str] = mapped_column(String(30), nullable=False, index=True)

    # ── Target ─────────────────────────────────────────────────
    # payment | subscription
    resource_type: Mapped[str] = mapped_column(String(30), nullable=False, index=True)
    resource_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)

    # ── Context ────────────────────────────────────────────────
    # {"changes": {"status": ["pending", "completed"]}, ...}
    details: Mapped[dict | None] = mapped_column(JSON)

    # ── Timestamp ──────────────────────────────────────────────
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False, index=True
    )
