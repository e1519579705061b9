"""
Database engine for the clusters and environments tables.

Production runs on PostgreSQL through asyncpg; tests point DATABASE_URL at
an in-memory aiosqlite database. The tables are owned by the user-facing API
as well, so ``create_tables`` only creates what is missing.
"""
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base

from .config import get_settings

settings = get_settings()

engine = create_async_engine(
    settings.database_url,
    echo=False,
    future=True,
    pool_pre_ping=True,  # Status writes follow long cluster calls; drop stale connections
    pool_recycle=3600,
    connect_args={
        "command_timeout": 60,
        "server_settings": {
            "application_name": "devpocket-orchestrator",
            "jit": "off",
        }
    } if settings.database_url.startswith("postgresql") else {}
)

AsyncSessionLocal = async_sessionmaker(
    engine, class_=AsyncSession, expire_on_commit=False
)

Base = declarative_base()


async def create_tables(bind: Optional[AsyncEngine] = None) -> None:
    """Create the clusters and environments tables if they do not exist."""
    from . import models  # noqa: F401  (register tables on Base)

    async with (bind or engine).begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
