"""
Engine and session factory.

Routes never touch `async_session` directly: they depend on
get_session_factory, which tests override with a scratch database.
"""

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from school_ops.config import settings
from school_ops.db.models import Base

engine = create_async_engine(settings.database_url, echo=settings.sql_echo, pool_pre_ping=True)

async_session = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
    autoflush=False,
)


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    return async_session


async def init_db() -> None:
    """Create missing tables; existing ones are left as they are (see migrate.py)."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
