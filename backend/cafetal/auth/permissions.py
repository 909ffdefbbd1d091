"""Billing permissions carried in the platform's access tokens.

Tokens are issued by the platform auth service; billing only reads the
``permissions`` claim.

Permission naming: `<resource>.<action>`
  Resources: payments, subscriptions, billing_reports
  Actions:   read, write
"""

from __future__ import annotations


# ── All known permissions ───────────────────────────────────

ALL_PERMISSIONS: set[str] = {
    "payments.read",
    "payments.write",          # create, process, refund, refresh
    "subscriptions.read",
    "subscriptions.write",     # create, cancel, reactivate, renew
    "billing_reports.read",    # stats and recurring-revenue metrics
}


# ── Role → default permissions ──────────────────────────────

ROLE_DEFAULTS: dict[str, set[str]] = {
    "admin": ALL_PERMISSIONS.copy(),

    "billing_viewer": {
        "payments.read",
        "subscriptions.read",
        "billing_reports.read",
    },
}


def resolve_permissions(role: str, extra: list[str] | None = None) -> list[str]:
    """Role defaults plus any explicitly granted known permissions, sorted."""
    base = ROLE_DEFAULTS.get(role, set()).copy()
    base.update(p for p in (extra or []) if p in ALL_PERMISSIONS)
    return sorted(base)


def has_permission(user_permissions: list[str] | set[str], required: str) -> bool:
    """Check whether a permission set satisfies a requirement."""
    return required in user_permissions
