"""
Order Store access: async engine, session factory and dialect helpers.

Every core service receives an AsyncSession from here (FastAPI dependency
or `async_session()` in background jobs). Tables are created on startup via
init_db(); production deployments are expected to run migrations instead.
"""
import logging

from sqlalchemy import text
from sqlalchemy.dialects.postgresql import insert as postgresql_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker
from sqlalchemy.orm import DeclarativeBase

from config import settings

logger = logging.getLogger(__name__)


class Base(DeclarativeBase):
    """Declarative base for all ORM models."""
    pass


# ── Engine ──────────────────────────────────────────────────────────

# sqlite:///... → sqlite+aiosqlite:///..., postgresql://... → postgresql+asyncpg://...
_raw_url = settings.database_url
if _raw_url.startswith("sqlite:///"):
    _async_url = _raw_url.replace("sqlite:///", "sqlite+aiosqlite:///", 1)
elif _raw_url.startswith("postgresql://"):
    _async_url = _raw_url.replace("postgresql://", "postgresql+asyncpg://", 1)
else:
    _async_url = _raw_url

engine = create_async_engine(
    _async_url,
    echo=False,
    future=True,
)

async_session = async_sessionmaker(
    engine, class_=AsyncSession, expire_on_commit=False
)


# ── Helpers ─────────────────────────────────────────────────────────

async def init_db() -> None:
    """Create all tables. Called once on server startup."""
    import db_models  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    logger.info("Order store tables created (or already exist)")


async def get_db() -> AsyncSession:
    """FastAPI dependency — yields an async session."""
    async with async_session() as session:
        try:
            yield session
        finally:
            await session.close()


async def ping(db: AsyncSession) -> bool:
    """Round-trip a trivial statement; used by the health endpoint."""
    await db.execute(text("SELECT 1"))
    return True


def upsert_insert(db: AsyncSession, model):
    """
    Dialect-specific INSERT supporting on_conflict_do_nothing().

    Only SQLite and PostgreSQL are supported; both expose the same
    on_conflict_do_nothing(index_elements=...) API.
    """
    dialect = db.get_bind().dialect.name
    if dialect == "postgresql":
        return postgresql_insert(model)
    if dialect == "sqlite":
        return sqlite_insert(model)
    raise NotImplementedError(f"Upsert not supported for dialect {dialect!r}")
