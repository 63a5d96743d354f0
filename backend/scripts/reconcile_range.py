#!/usr/bin/env python3
"""
Re-run marketing reconciliation and sales aggregation for a tenant over a
date range, e.g. after late-arriving orders or a fixed ad-id mapping.
Source data is not re-fetched; only the reconciled tables are rebuilt.

Run from backend directory:
  python scripts/reconcile_range.py --tenant <uuid> --since 2025-03-01 --until 2025-03-07
  python scripts/reconcile_range.py --tenant <uuid> --team <uuid> --since 2025-03-01 --until 2025-03-01 --skip-aggregate
"""

import argparse
import asyncio
import logging
import sys
import uuid
from pathlib import Path

# Ensure backend root is on path
backend_root = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(backend_root))

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger("reconcile_range")


async def reconcile_range(tenant_id: uuid.UUID, since: str, until: str, team_id=None, aggregate: bool = True) -> int:
    from redis.exceptions import RedisError

    from recon_engine.database import async_session, dispose_engine
    from recon_engine.errors import AggregationError, ReconciliationError
    from recon_engine.services.cache import CacheStore
    from recon_engine.services.date_range import get_date_array, parse_date, validate_range
    from recon_engine.services.reconcile_marketing import reconcile_day
    from recon_engine.services.reconcile_sales import aggregate_day

    validate_range(parse_date(since, "since"), parse_date(until, "until"))
    cache = CacheStore()
    failures = 0
    try:
        async with async_session() as db:
            for date in get_date_array(since, until):
                try:
                    stats = await reconcile_day(db, tenant_id, date, team_id=team_id, cache=cache)
                    await db.commit()
                    print(f"  {date}: {stats['ad_rows']} ad rows, {stats['synthetic_rows']} unmatched orders")
                except ReconciliationError as e:
                    await db.rollback()
                    failures += 1
                    print(f"  {date}: reconciliation failed, aggregation skipped ({e})")
                    continue

                if not aggregate:
                    continue
                try:
                    stats = await aggregate_day(db, tenant_id, date, team_id=team_id, cache=cache)
                    await db.commit()
                    print(f"  {date}: {stats['campaigns']} campaigns, {stats['unmatched_groups']} unmatched groups")
                except AggregationError as e:
                    await db.rollback()
                    failures += 1
                    print(f"  {date}: aggregation failed ({e})")
    finally:
        try:
            await cache.close()
        except RedisError as e:
            logger.warning(f"Cache close failed: {e}")
        await dispose_engine()
    return failures


def main():
    parser = argparse.ArgumentParser(description="Rebuild reconciled rows for a tenant and date range")
    parser.add_argument("--tenant", required=True, help="Tenant UUID")
    parser.add_argument("--team", default=None, help="Restrict to one team (UUID)")
    parser.add_argument("--since", required=True, help="First day, YYYY-MM-DD")
    parser.add_argument("--until", required=True, help="Last day, YYYY-MM-DD (inclusive)")
    parser.add_argument("--skip-aggregate", action="store_true", help="Only rebuild ad-level rows")
    args = parser.parse_args()

    try:
        tenant_id = uuid.UUID(args.tenant)
        team_id = uuid.UUID(args.team) if args.team else None
    except ValueError as e:
        parser.error(f"invalid UUID: {e}")

    from recon_engine.errors import ValidationError

    print(f"Reconciling tenant {tenant_id} from {args.since} to {args.until}...")
    try:
        failures = asyncio.run(
            reconcile_range(tenant_id, args.since, args.until, team_id=team_id, aggregate=not args.skip_aggregate)
        )
    except ValidationError as e:
        parser.error(str(e))
    if failures:
        print(f"Done with {failures} failed step(s).")
        sys.exit(1)
    print("Done.")


if __name__ == "__main__":
    main()
