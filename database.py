# database.py
# Establishes connection to the settlement database (Postgres, SQLite in tests) and ORM setup.

from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker, AsyncEngine
from sqlalchemy.orm import declarative_base
from sqlalchemy.pool import NullPool

from config import settings

SQLALCHEMY_DATABASE_URL = settings.DATABASE_URL

Base = declarative_base()


def get_db_url():
    """Get the database URL for Alembic and maintenance scripts."""
    return settings.DATABASE_URL


def build_engine(database_url: str = SQLALCHEMY_DATABASE_URL, echo: bool = settings.SQL_ECHO) -> AsyncEngine:
    """
    Create the async engine for a database URL.

    asyncpg gets the server settings and SSL mode; aiosqlite (tests, local runs)
    takes no connect args.
    """
    if database_url.startswith("postgresql+asyncpg"):
        # NullPool: No pooling, creates new connection for each request (safest for async)
        # asyncpg SSL mode: "prefer" = try SSL but don't fail if unavailable
        return create_async_engine(
            database_url,
            echo=echo,
            poolclass=NullPool,
            connect_args={
                "timeout": 30,
                "server_settings": {"application_name": "settlement_engine"},
                "ssl": "prefer"
            }
        )
    return create_async_engine(database_url, echo=echo)


def build_sessionmaker(bind: AsyncEngine) -> async_sessionmaker:
    return async_sessionmaker(
        bind=bind,
        autocommit=False,
        autoflush=False,
        expire_on_commit=False  # records are handed back to callers after commit
    )


async def create_tables(bind: AsyncEngine) -> None:
    """
    Create the settlement tables if they don't exist.

    For production, use the Alembic migrations instead.
    """
    import models  # noqa: F401  registers the mappers on Base

    async with bind.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

