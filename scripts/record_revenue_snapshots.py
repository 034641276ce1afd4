from __future__ import annotations

import argparse
import asyncio

from revgrowth.core.logging import configure_logging
from revgrowth.persistence.db import SessionLocal
from revgrowth.services.credits.catalog import billing_period_for
from revgrowth.services.program import month_bounds, run_snapshot_cycle


async def _run(year_month: str, tenant_id: str | None) -> int:
    # Record one monthly snapshot per active enrollment and evaluate graduation.
    period_start, period_end = month_bounds(year_month)
    report = await run_snapshot_cycle(
        SessionLocal,
        period_start=period_start,
        period_end=period_end,
        tenant_id=tenant_id,
    )
    print(f"recorded={report.recorded}")
    print(f"replayed={report.replayed}")
    print(f"graduated={report.graduated}")
    print(f"failed={len(report.failed)}")
    return 1 if report.failed else 0


def main() -> None:
    parser = argparse.ArgumentParser(description="Record program revenue snapshots for a month")
    parser.add_argument("--year-month", default=None, help="YYYY-MM; defaults to the current UTC month")
    parser.add_argument("--tenant", default=None, help="Limit the run to one tenant id")
    args = parser.parse_args()
    configure_logging()
    year_month = args.year_month or billing_period_for()
    raise SystemExit(asyncio.run(_run(year_month, args.tenant)))


if __name__ == "__main__":
    main()
