from __future__ import annotations

import argparse
import asyncio
from uuid import uuid4

from ncrelay.domain.models import Integration
from ncrelay.persistence.db import SessionLocal


async def _seed(args: argparse.Namespace) -> None:
    # Register a delivery target so enqueue has somewhere to send.
    integration_id = args.id or uuid4().hex
    async with SessionLocal() as session:
        session.add(
            Integration(
                id=integration_id,
                tenant_id=args.tenant_id,
                name=args.name,
                platform=args.platform,
                webhook_url=args.webhook_url,
                content_type=args.content_type,
                enabled=True,
                max_retries=args.max_retries,
            )
        )
        await session.commit()
    print(f"integration_id={integration_id}")


def main() -> None:
    parser = argparse.ArgumentParser(description="Register an integration webhook target")
    parser.add_argument("--id", default=None)
    parser.add_argument("--tenant-id", default=None)
    parser.add_argument("--name", required=True)
    parser.add_argument("--platform", default="slack")
    parser.add_argument("--webhook-url", required=True)
    parser.add_argument("--content-type", default="application/json")
    parser.add_argument("--max-retries", type=int, default=None)
    args = parser.parse_args()
    asyncio.run(_seed(args))


if __name__ == "__main__":
    main()
