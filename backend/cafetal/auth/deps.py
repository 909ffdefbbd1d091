"""FastAPI dependencies for authentication, authorization and call context.

Dependencies:
  get_current_actor        → decode JWT, return the Actor it describes
  require_permission(...)  → restrict to actors holding the listed permissions
  get_request_context(...) → RequestContext for the billing services
"""

from dataclasses import dataclass, field

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import OAuth2PasswordBearer

from cafetal.auth.jwt import decode_token
from cafetal.auth.permissions import has_permission
from cafetal.services.context import RequestContext

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/api/auth/login")


@dataclass
class Actor:
    id: str
    role: str | None = None
    permissions: list[str] = field(default_factory=list)


# ── Core actor dependency ───────────────────────────────────

async def get_current_actor(token: str = Depends(oauth2_scheme)) -> Actor:
    """Decode the bearer token issued by the platform auth service."""
    payload = decode_token(token)
    actor_id: str | None = payload.get("sub")
    if not actor_id or payload.get("type") != "access":
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return Actor(
        id=actor_id,
        role=payload.get("role"),
        permissions=list(payload.get("permissions", [])),
    )


# ── Permission-based access control ─────────────────────────

def require_permission(*perms: str):
    """Dependency factory: restrict to actors who hold ALL listed permissions.

    Usage:
        @router.post("/{payment_id}/refund")
        async def refund(actor: Actor = Depends(require_permission("payments.write"))):
            ...
    """
    async def _check(actor: Actor = Depends(get_current_actor)) -> Actor:
        missing = [p for p in perms if not has_permission(actor.permissions, p)]
        if missing:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Missing permissions: {', '.join(missing)}",
            )
        return actor

    return _check


# ── Call context ────────────────────────────────────────────

def client_ip(request: Request) -> str | None:
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else None


def get_request_context(*perms: str):
    """Dependency factory: authorize, then build the services' RequestContext."""
    async def _context(
        request: Request,
        actor: Actor = Depends(require_permission(*perms)),
    ) -> RequestContext:
        return RequestContext(
            actor_id=actor.id,
            correlation_id=getattr(request.state, "request_id", None),
            ip_address=client_ip(request),
        )

    return _context
