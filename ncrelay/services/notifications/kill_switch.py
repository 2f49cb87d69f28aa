from __future__ import annotations

from datetime import datetime, timezone
import logging

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from ncrelay.core.config import get_settings
from ncrelay.core.errors import StoreError
from ncrelay.domain.models import SystemSetting


logger = logging.getLogger(__name__)

QUEUE_PROCESSING_ENABLED_KEY = "queue_processing_enabled"
_QUEUE_PROCESSING_DESCRIPTION = "Enable or disable automatic notification queue processing"
_TRUE_VALUES = {"1", "true", "yes", "on"}


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


async def get_system_setting(session: AsyncSession, key: str) -> str | None:
    result = await session.execute(
        select(SystemSetting.value).where(SystemSetting.key == key).execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def set_system_setting(
    session: AsyncSession,
    key: str,
    value: str,
    *,
    description: str | None = None,
) -> None:
    # Upsert by primary key so toggling twice never creates duplicate rows.
    try:
        row = await session.get(SystemSetting, key, populate_existing=True)
        if row is None:
            session.add(SystemSetting(key=key, value=value, description=description, updated_at=_utc_now()))
        else:
            row.value = value
            if description is not None:
                row.description = description
            row.updated_at = _utc_now()
        await session.commit()
    except SQLAlchemyError as exc:
        await session.rollback()
        raise StoreError(f"failed to write system setting {key}: {exc}") from exc


async def is_queue_processing_enabled(session: AsyncSession) -> bool:
    # Fall back to the configured default until an operator writes the switch.
    value = await get_system_setting(session, QUEUE_PROCESSING_ENABLED_KEY)
    if value is None:
        return bool(get_settings().queue_processing_enabled_default)
    return value.strip().lower() in _TRUE_VALUES


async def set_queue_processing_enabled(session: AsyncSession, enabled: bool) -> bool:
    await set_system_setting(
        session,
        QUEUE_PROCESSING_ENABLED_KEY,
        "true" if enabled else "false",
        description=_QUEUE_PROCESSING_DESCRIPTION,
    )
    logger.info("queue_processing_toggled enabled=%s", enabled)
    return enabled
