# ============================================================================
# core/database.py - Async engine, session factory and schema bootstrap
# ============================================================================

import logging
from typing import AsyncGenerator

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from app.core.config import settings

logger = logging.getLogger(__name__)


class Base(DeclarativeBase):
    pass


engine = create_async_engine(settings.DATABASE_URL, pool_pre_ping=True)
async_session_maker = async_sessionmaker(engine, expire_on_commit=False)


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    async with async_session_maker() as session:
        try:
            yield session
        except Exception:
            await session.rollback()
            raise


async def init_db(bind=None):
    """Create tables and, on PostgreSQL, install the invoice access policies."""
    # Models must be imported so their tables are registered on Base.metadata
    from app.models import invoice, payment, user  # noqa: F401
    from app.core.rls import install_policies

    target = bind or engine
    async with target.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
        if conn.dialect.name == "postgresql":
            await install_policies(conn)
            logger.info("Row-level security policies installed on invoices")
