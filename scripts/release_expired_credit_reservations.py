from __future__ import annotations

import argparse
import asyncio

from revgrowth.core.logging import configure_logging
from revgrowth.persistence.db import SessionLocal
from revgrowth.services.credits import get_credit_ledger


async def sweep(limit: int) -> None:
    async with SessionLocal() as session:
        released = await get_credit_ledger().release_expired(session, limit=limit)
        print(f"released_credit_reservations={released}")


def main() -> None:
    parser = argparse.ArgumentParser(description="Release credit reservations past their TTL")
    parser.add_argument("--limit", type=int, default=500)
    args = parser.parse_args()
    configure_logging()
    asyncio.run(sweep(args.limit))


if __name__ == "__main__":
    main()
