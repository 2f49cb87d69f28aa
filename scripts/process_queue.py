from __future__ import annotations

import argparse
import asyncio

from ncrelay.core.logging import configure_logging
from ncrelay.services.notifications.coordination import enqueue_queue_job
from ncrelay.services.notifications.queue import process_queue


async def _run(limit: int | None, enqueue: bool) -> None:
    configure_logging()
    if enqueue:
        # Hand the pass to the arq worker instead of delivering from this process.
        job_id = await enqueue_queue_job("process_notification_queue", limit=limit)
        print(f"enqueued={job_id is not None}")
        print(f"job_id={job_id}")
        return
    result = await process_queue(limit=limit, trigger="cli")
    for key, value in result.as_dict().items():
        print(f"{key}={value}")


def main() -> None:
    parser = argparse.ArgumentParser(description="Deliver one batch of due queued notifications")
    parser.add_argument("--limit", type=int, default=None)
    parser.add_argument("--enqueue", action="store_true", help="enqueue an arq job instead of running inline")
    args = parser.parse_args()
    asyncio.run(_run(args.limit, args.enqueue))


if __name__ == "__main__":
    main()
