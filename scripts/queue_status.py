from __future__ import annotations

import argparse
import asyncio

from ncrelay.persistence.db import SessionLocal
from ncrelay.services.notifications.health import queue_health
from ncrelay.services.notifications.kill_switch import set_queue_processing_enabled


async def _run(enable: bool, disable: bool) -> None:
    async with SessionLocal() as session:
        if enable or disable:
            enabled = await set_queue_processing_enabled(session, enable)
            print(f"processing_enabled={enabled}")
            return
        health = await queue_health(session)
        print(f"status={health.status}")
        print(f"processing_enabled={health.processing_enabled}")
        for status, count in health.counts.items():
            print(f"{status}={count}")
        print(f"stuck_processing={health.stuck_processing}")
        for reason in health.reasons:
            print(f"reason={reason}")


def main() -> None:
    parser = argparse.ArgumentParser(description="Show queue health or flip the processing kill switch")
    toggle = parser.add_mutually_exclusive_group()
    toggle.add_argument("--enable", action="store_true")
    toggle.add_argument("--disable", action="store_true")
    args = parser.parse_args()
    asyncio.run(_run(args.enable, args.disable))


if __name__ == "__main__":
    main()
