from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any, AsyncIterator

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from ncrelay.core.config import Settings, get_settings


def engine_options(settings: Settings) -> dict[str, Any]:
    """Engine kwargs for the configured backend.

    PostgreSQL gets a bounded pool and an optional server-side statement
    timeout. In-memory SQLite shares a single connection so every session
    sees the same database.
    """
    url = settings.database_url
    if url.startswith("sqlite"):
        if ":memory:" not in url:
            return {}
        return {"poolclass": StaticPool, "connect_args": {"check_same_thread": False}}
    options: dict[str, Any] = {
        "pool_pre_ping": True,
        "pool_size": max(1, int(settings.api_db_pool_size)),
        "max_overflow": max(0, int(settings.api_db_max_overflow)),
        "pool_timeout": 30,
        "pool_recycle": 1800,
    }
    if settings.api_db_statement_timeout_ms > 0:
        options["connect_args"] = {
            "server_settings": {"statement_timeout": str(int(settings.api_db_statement_timeout_ms))}
        }
    return options


settings = get_settings()
engine = create_async_engine(settings.database_url, **engine_options(settings))
SessionLocal = async_sessionmaker(engine, expire_on_commit=False)


@asynccontextmanager
async def get_session() -> AsyncIterator[AsyncSession]:
    async with SessionLocal() as session:
        yield session


def pool_stats() -> dict[str, int | None]:
    # StaticPool and NullPool lack size counters; report None rather than guessing.
    pool = engine.sync_engine.pool
    counters: dict[str, int | None] = {}
    for key, attr in (
        ("size", "size"),
        ("checked_out", "checkedout"),
        ("checked_in", "checkedin"),
        ("overflow", "overflow"),
    ):
        fn = getattr(pool, attr, None)
        counters[key] = int(fn()) if callable(fn) else None
    return counters
