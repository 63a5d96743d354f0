"""
Meta Insight Service — parses Graph API insight rows and upserts them into
meta_ad_insights, keyed by (tenant, account, ad, date).

Ad and campaign names follow the naming convention
  PRODUCT_FORMAT_TEAMCODE_ASSOCIATE_VARIANT   (ad)
  ..._..._..._..._MAPPING                     (campaign, 5th token)
which is where marketing associate, team code and mapping come from.
"""

import logging
import uuid
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from recon_engine.errors import PersistenceError
from recon_engine.models import MetaAdInsight
from recon_engine.utils import to_float, to_int

logger = logging.getLogger(__name__)

_CHUNK = 500


def extract_marketing_associate(ad_name: Optional[str]) -> Optional[str]:
    """EVIL EYE_UGC_1001_ALY_001 -> ALY (4th token)."""
    if not ad_name:
        return None
    parts = ad_name.split("_")
    if len(parts) >= 4:
        return parts[3].strip() or None
    return None


def extract_team_code(ad_name: Optional[str]) -> Optional[str]:
    """EVIL EYE_UGC_1001_ALY_001 -> 1001 (3rd token)."""
    if not ad_name:
        return None
    parts = ad_name.split("_")
    if len(parts) >= 3:
        return parts[2].strip() or None
    return None


def extract_mapping_from_campaign(campaign_name: Optional[str]) -> Optional[str]:
    """5th non-empty underscore token of the campaign name, lowercased."""
    if not campaign_name:
        return None
    tokens = [t.strip() for t in campaign_name.split("_") if t.strip()]
    if len(tokens) >= 5:
        return tokens[4].lower()
    return None


def _parse_created_time(value) -> Optional[datetime]:
    """Graph timestamps look like 2025-01-31T09:15:00+0800; stored as naive UTC."""
    if not value or not isinstance(value, str):
        return None
    for fmt in ("%Y-%m-%dT%H:%M:%S%z", "%Y-%m-%dT%H:%M:%S.%f%z"):
        try:
            parsed = datetime.strptime(value, fmt)
        except ValueError:
            continue
        return parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return None


def parse_meta_insight(raw: dict, account_id: str, multiplier: float = 1.0) -> dict:
    """Map one Graph insight row to MetaAdInsight column values."""
    leads = 0
    for action in raw.get("actions") or []:
        if isinstance(action, dict) and action.get("action_type") == "landing_page_view":
            leads = to_int(action.get("value"))
            break

    # Multiplier converts non-PHP account spend; anything invalid means "as reported"
    factor = multiplier if isinstance(multiplier, (int, float)) and 0 < multiplier < float("inf") else 1.0

    ad_name = raw.get("ad_name") or ""
    campaign_name = raw.get("campaign_name") or ""
    return {
        "account_id": str(account_id),
        "campaign_id": str(raw.get("campaign_id") or ""),
        "campaign_name": campaign_name,
        "adset_id": str(raw.get("adset_id") or ""),
        "ad_id": str(raw.get("ad_id") or ""),
        "ad_name": ad_name,
        "date": raw.get("date_start") or "",
        "spend": to_float(raw.get("spend")) * factor,
        "clicks": to_int(raw.get("clicks")),
        "link_clicks": to_int(raw.get("inline_link_clicks")),
        "impressions": to_int(raw.get("impressions")),
        "leads": leads,
        "marketing_associate": extract_marketing_associate(ad_name),
        "team_code": extract_team_code(ad_name),
        "mapping": extract_mapping_from_campaign(campaign_name),
        "date_created": _parse_created_time(raw.get("created_time")),
    }


async def upsert_meta_insights(
    db: AsyncSession,
    tenant_id: uuid.UUID,
    account_id: str,
    raw_insights: list[dict],
    team_id: Optional[uuid.UUID] = None,
    multiplier: float = 1.0,
) -> int:
    """
    Upsert insight rows for one ad account. Only rows with spend > 0 are kept.
    Returns the number of rows written. Flushes, does not commit.
    """
    parsed: dict[tuple[str, str], dict] = {}
    for raw in raw_insights or []:
        row = parse_meta_insight(raw, account_id, multiplier)
        if row["spend"] <= 0 or not row["ad_id"] or not row["date"]:
            continue
        parsed[(row["ad_id"], row["date"])] = row  # later duplicates win

    if not parsed:
        return 0

    try:
        existing: dict[tuple[str, str], MetaAdInsight] = {}
        keys = list(parsed.keys())
        dates = sorted({d for _, d in keys})
        for i in range(0, len(keys), _CHUNK):
            ad_ids = [ad for ad, _ in keys[i:i + _CHUNK]]
            result = await db.execute(
                select(MetaAdInsight).where(
                    MetaAdInsight.tenant_id == tenant_id,
                    MetaAdInsight.account_id == str(account_id),
                    MetaAdInsight.ad_id.in_(ad_ids),
                    MetaAdInsight.date.in_(dates),
                )
            )
            for insight in result.scalars().all():
                existing[(insight.ad_id, insight.date)] = insight

        for key, values in parsed.items():
            insight = existing.get(key)
            if insight:
                for field, value in values.items():
                    setattr(insight, field, value)
                insight.team_id = team_id
            else:
                db.add(MetaAdInsight(tenant_id=tenant_id, team_id=team_id, **values))

        await db.flush()
    except SQLAlchemyError as exc:
        raise PersistenceError(f"Failed to store Meta insights for account {account_id}: {exc}") from exc

    logger.info(f"Stored {len(parsed)} Meta insight rows for account {account_id} (tenant {tenant_id})")
    return len(parsed)
