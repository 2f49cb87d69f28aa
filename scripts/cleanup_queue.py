from __future__ import annotations

import argparse
import asyncio

from ncrelay.core.config import get_settings
from ncrelay.persistence.db import SessionLocal
from ncrelay.services.notifications.retention import cleanup_old_notifications


async def _run_cleanup(max_age_days: int) -> None:
    # Purge completed/failed queue rows beyond retention.
    async with SessionLocal() as session:
        deleted = await cleanup_old_notifications(session, max_age_days=max_age_days)
        print(f"deleted_notifications={deleted}")


def main() -> None:
    parser = argparse.ArgumentParser(description="Delete terminal queued notifications older than retention")
    parser.add_argument("--max-age-days", type=int, default=None)
    args = parser.parse_args()

    settings = get_settings()
    max_age_days = args.max_age_days if args.max_age_days is not None else settings.queue_retention_days
    asyncio.run(_run_cleanup(max_age_days))


if __name__ == "__main__":
    main()
