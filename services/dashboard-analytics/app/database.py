from typing import Any, AsyncIterator

from fastapi import Request
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base
from sqlalchemy.pool import StaticPool

Base = declarative_base()


def build_engine(database_url: str) -> AsyncEngine:
    """Create the engine for the aggregation store.

    An in-memory SQLite database exists only as long as its connection, so it
    is pinned to a single shared connection.
    """
    if database_url.startswith("sqlite") and ":memory:" in database_url:
        return create_async_engine(
            database_url,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
    return create_async_engine(database_url, pool_pre_ping=True)


def build_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


async def create_schema(engine: AsyncEngine) -> None:
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


def dialect_insert(session: AsyncSession, table: Any) -> Any:
    """INSERT construct of the session's dialect, for ON CONFLICT upserts."""
    dialect = session.get_bind().dialect.name
    if dialect == "postgresql":
        return postgresql.insert(table)
    if dialect == "sqlite":
        return sqlite.insert(table)
    raise NotImplementedError(f"Upserts are not supported on {dialect}")


async def get_db(request: Request) -> AsyncIterator[AsyncSession]:
    """Dependency to get a DB session for a request."""
    async with request.app.state.session_factory() as session:
        yield session
