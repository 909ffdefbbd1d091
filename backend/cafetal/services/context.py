"""Explicit call context passed into every billing service call.

Services never look at the HTTP request.  The router (or the webhook
endpoint, or a test) builds a RequestContext and hands it down; the
audit writer and all timestamps read from it.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable


def utcnow() -> datetime:
    """Naive UTC timestamp, matching the DateTime columns."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


@dataclass(frozen=True)
class RequestContext:
    actor_id: str
    correlation_id: str | None = None
    ip_address: str | None = None
    clock: Callable[[], datetime] = field(default=utcnow, repr=False, compare=False)

    def now(self) -> datetime:
        return self.clock()


def gateway_context(
    provider: str,
    correlation_id: str | None = None,
    ip_address: str | None = None,
) -> RequestContext:
    """Context for changes driven by the payment gateway itself."""
    return RequestContext(
        actor_id=f"gateway:{provider}",
        correlation_id=correlation_id,
        ip_address=ip_address,
    )
