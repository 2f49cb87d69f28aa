from __future__ import annotations

import argparse
import asyncio

from ncrelay.core.logging import configure_logging
from ncrelay.services.notifications.worker import (
    run_queue_cleanup_cycle,
    run_queue_processing_cycle,
    run_queue_scheduler_loop,
)


async def _main(once: bool) -> None:
    # Boot a dedicated delivery loop so retries and cleanup run independently from API handlers.
    configure_logging()
    if once:
        processed = await run_queue_processing_cycle()
        cleaned = await run_queue_cleanup_cycle()
        for key, value in processed.items():
            print(f"{key}={value}")
        print(f"cleanup_status={cleaned['status']}")
        print(f"deleted={cleaned['deleted']}")
        return
    await run_queue_scheduler_loop()


def main() -> None:
    parser = argparse.ArgumentParser(description="Run the notification queue scheduler loop")
    parser.add_argument("--once", action="store_true", help="run one processing and cleanup cycle, then exit")
    args = parser.parse_args()
    asyncio.run(_main(args.once))


if __name__ == "__main__":
    main()
