"""Database engine, session factory and declarative base.

Only the SQL local-store backend touches the database; profile data lives
in Supabase and is reached through the service layer.
"""

from sqlalchemy.ext.asyncio import (
    AsyncSession,
    create_async_engine,
    async_sessionmaker,
)
from sqlalchemy.orm import DeclarativeBase

from akshayapatra.config import settings

engine = create_async_engine(
    settings.database_url,
    echo=settings.debug,
    pool_pre_ping=True,
)

async_session = async_sessionmaker(
    engine, class_=AsyncSession, expire_on_commit=False
)


class Base(DeclarativeBase):
    pass


async def create_tables(bind=engine) -> None:
    """Create the store tables if missing (called from the app lifespan)."""
    from akshayapatra.models import local_entry  # noqa: F401  (register model)

    async with bind.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
