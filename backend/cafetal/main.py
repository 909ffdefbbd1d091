import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from cafetal.config import settings
from cafetal.middleware.exceptions import register_exception_handlers
from cafetal.middleware.request_id import RequestIDMiddleware
from cafetal.routers import health, payments, subscriptions, webhooks
from cafetal.utils.cache import close_redis

logging.basicConfig(
    level=logging.DEBUG if settings.debug else logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger("cafetal")


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Billing service starting (gateway: %s)", settings.gateway_provider)
    yield
    await close_redis()
    logger.info("Billing service stopped")


app = FastAPI(
    title="Cafetal Billing",
    description="Payment and subscription lifecycle for the coffee-farm platform",
    version="0.1.0",
    lifespan=lifespan,
)

# ── Exception Handlers ───────────────────────────────────────
register_exception_handlers(app)

# ── Middleware (outermost first) ─────────────────────────────
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.allowed_origins.split(","),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Correlation id for audit entries
app.add_middleware(RequestIDMiddleware)

# ── Routers ──────────────────────────────────────────────────
app.include_router(health.router)
app.include_router(payments.router, prefix="/api/payments", tags=["payments"])
app.include_router(subscriptions.router, prefix="/api/subscriptions", tags=["subscriptions"])
app.include_router(webhooks.router, prefix="/api/webhooks", tags=["webhooks"])
