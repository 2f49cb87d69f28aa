from __future__ import annotations

import os

# Point the engine at an in-memory database before any ncrelay module builds it.
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["QUEUE_WORKER_CONCURRENCY"] = "1"
os.environ.pop("OPERATOR_API_TOKEN", None)

import pytest  # noqa: E402

from ncrelay.core.config import get_settings  # noqa: E402
from ncrelay.domain.models import Base  # noqa: E402
from ncrelay.persistence.db import engine  # noqa: E402
from ncrelay.services.notifications import coordination  # noqa: E402
from ncrelay.services.telemetry import reset_telemetry  # noqa: E402


@pytest.fixture(autouse=True)
async def fresh_schema() -> None:
    # Every test starts from empty tables; disposing drops the in-memory database.
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield
    await engine.dispose()


@pytest.fixture(autouse=True)
def isolate_settings_and_telemetry() -> None:
    get_settings.cache_clear()
    reset_telemetry()
    yield
    get_settings.cache_clear()


@pytest.fixture(autouse=True)
def no_redis(monkeypatch) -> None:
    # Tests never reach Redis; coordination falls back to in-process behavior.
    async def _no_redis():  # type: ignore[override]
        return None

    monkeypatch.setattr(coordination, "_redis_or_none", _no_redis)
