"""
Sales aggregation — rolls reconciled_ad_rows up to campaign level.

aggregate_day() groups one tenant/day of ad rows by campaign_id. Rows without
a campaign (synthetic unmatched orders) become their own group keyed by ad_id
and flagged is_unmatched. Like reconciliation, the day is rebuilt from scratch:
groups that no longer exist are deleted.
"""

import logging
import uuid
from typing import Optional

from redis.exceptions import RedisError
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from recon_engine.errors import AggregationError
from recon_engine.models import RECONCILED_NUMERIC_FIELDS, ReconciledAdRow, ReconciledCampaignRow

logger = logging.getLogger(__name__)

UNASSIGNED_CAMPAIGN = "__unassigned__"


def group_ad_rows(rows: list[ReconciledAdRow], team_id: Optional[uuid.UUID] = None) -> dict[str, dict]:
    """Pure roll-up step: {campaign_id: column values}."""
    groups: dict[str, dict] = {}
    for row in rows:
        campaign_id = (row.campaign_id or "").strip()
        has_campaign = bool(campaign_id)
        key = campaign_id if has_campaign else (row.ad_id or UNASSIGNED_CAMPAIGN)

        group = groups.get(key)
        if group is None:
            group = {
                "campaign_name": row.campaign_name or row.ad_name or row.campaign_id or row.ad_id or None,
                "mapping": row.mapping or None,
                "is_unmatched": not has_campaign,
                "team_id": row.team_id or team_id,
                "ad_count": 0,
            }
            group.update(dict.fromkeys(RECONCILED_NUMERIC_FIELDS, 0))
            groups[key] = group

        group["ad_count"] += 1
        if not group["mapping"] and row.mapping:
            group["mapping"] = row.mapping
        for field in RECONCILED_NUMERIC_FIELDS:
            group[field] += getattr(row, field) or 0

    return groups


async def aggregate_day(
    db: AsyncSession,
    tenant_id: uuid.UUID,
    date: str,
    team_id: Optional[uuid.UUID] = None,
    cache=None,
) -> dict:
    """
    Rebuild reconciled_campaign_rows for one tenant/day (optionally one team).
    Flushes, does not commit. Raises AggregationError.
    """
    try:
        query = select(ReconciledAdRow).where(ReconciledAdRow.tenant_id == tenant_id, ReconciledAdRow.date == date)
        if team_id:
            query = query.where(ReconciledAdRow.team_id == team_id)
        ad_rows = (await db.execute(query.order_by(ReconciledAdRow.ad_id))).scalars().all()

        groups = group_ad_rows(list(ad_rows), team_id)

        existing_result = await db.execute(
            select(ReconciledCampaignRow).where(
                ReconciledCampaignRow.tenant_id == tenant_id,
                ReconciledCampaignRow.date == date,
            )
        )
        existing = {r.campaign_id: r for r in existing_result.scalars().all()}

        for campaign_id, values in groups.items():
            row = existing.get(campaign_id)
            if row:
                for column, value in values.items():
                    setattr(row, column, value)
            else:
                db.add(ReconciledCampaignRow(tenant_id=tenant_id, date=date, campaign_id=campaign_id, **values))

        stale = [
            row for campaign_id, row in existing.items()
            if campaign_id not in groups and (team_id is None or row.team_id == team_id)
        ]
        for row in stale:
            await db.delete(row)

        await db.flush()
    except SQLAlchemyError as exc:
        raise AggregationError(f"Campaign aggregation failed for {date}: {exc}") from exc

    if cache is not None:
        try:
            await cache.bump_version(tenant_id)
        except RedisError as e:
            logger.warning(f"Analytics version bump failed for tenant {tenant_id}: {e}")

    unmatched = sum(1 for g in groups.values() if g["is_unmatched"])
    logger.info(
        f"Aggregated sales for tenant {tenant_id} on {date}: "
        f"{len(groups) - unmatched} campaigns, {unmatched} unmatched groups from {len(ad_rows)} ad rows"
    )
    return {
        "date": date,
        "ad_rows": len(ad_rows),
        "campaigns": len(groups) - unmatched,
        "unmatched_groups": unmatched,
        "deleted_rows": len(stale),
    }
