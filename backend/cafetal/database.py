"""Database engine, session factory, and declarative base.

One session per request:
  - get_db()  → yields a session, commits on success, rolls back on error

Services flush inside the request transaction and never commit on
their own, except where a write must survive the error raised right
after it (see services.payments.process_with_gateway).
"""

from sqlalchemy.ext.asyncio import (
    AsyncSession,
    create_async_engine,
    async_sessionmaker,
)
from sqlalchemy.orm import DeclarativeBase

from cafetal.config import settings

_engine_kwargs: dict = {"echo": settings.debug}
if not settings.database_url.startswith("sqlite"):
    _engine_kwargs.update({"pool_size": 20, "max_overflow": 10, "pool_pre_ping": True})

engine = create_async_engine(settings.database_url, **_engine_kwargs)

async_session = async_sessionmaker(
    engine, class_=AsyncSession, expire_on_commit=False
)


class Base(DeclarativeBase):
    """Declarative base for every cafetal table."""
    pass


async def get_db() -> AsyncSession:
    """Yield a session wrapped in a single transaction."""
    async with async_session() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
