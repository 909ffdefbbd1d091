"""Aggregate model imports for Alembic auto-detection."""

from cafetal.models.grower import CoffeeGrower  # noqa: F401
from cafetal.models.plan import SubscriptionPlan  # noqa: F401
from cafetal.models.subscription import Subscription  # noqa: F401
from cafetal.models.payment import Payment  # noqa: F401
from cafetal.models.audit_log import AuditLog  # noqa: F401
