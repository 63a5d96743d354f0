"""
Marketing reconciliation — joins one day of Meta ad spend to POS orders.

reconcile_day() rebuilds reconciled_ad_rows for a (tenant, date) from the raw
meta_ad_insights and pos_orders tables:

- ad spend and orders are joined on normalize_ad_id(ad_id) == normalize_ad_id(p_utm_content)
- each ad row carries the order-status buckets, COD sums and fee estimates of its orders
- every order no ad claims becomes its own synthetic row "{shop_id}-{pos_order_id}"
  with zero spend, so revenue never disappears from the totals
- rows from a previous run that are no longer produced are deleted

The day is recomputed from scratch each time, so re-running after late data
(or twice in a row) converges on the same rows.
"""

import logging
import uuid
from dataclasses import dataclass, field
from typing import Optional

from redis.exceptions import RedisError
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from recon_engine.errors import ReconciliationError
from recon_engine.models import MetaAdInsight, PosOrder, ReconciledAdRow
from recon_engine.normalize import normalize_ad_id

logger = logging.getLogger(__name__)

# Per-order fee estimates (PHP)
SHIPPING_FEE = 60.0
FULFILLMENT_FEE = 25.0
INSURANCE_FEE = 5.0
COD_FEE_RATE = 0.0224

UNMATCHED_AD_NAME = "POS Unmatched Order"

# Pancake order status -> bucket
STATUS_BUCKETS = {
    0: "unconfirmed",
    1: "confirmed",
    11: "restocking",
    9: "waiting_pickup",
    2: "shipped",
    3: "delivered",
    6: "canceled",
    4: "rts",
    5: "rts",
}
BUCKETS = ("unconfirmed", "confirmed", "restocking", "waiting_pickup", "shipped", "delivered", "canceled", "rts")
# Buckets whose COGS is tracked separately
COGS_BUCKETS = ("canceled", "restocking", "rts", "delivered")


@dataclass
class OrderBucket:
    """Running totals for a set of orders sharing a join key."""

    purchases: int = 0
    processed: int = 0
    cod: float = 0.0
    cogs: float = 0.0
    counts: dict = field(default_factory=lambda: dict.fromkeys(BUCKETS, 0))
    cods: dict = field(default_factory=lambda: dict.fromkeys(BUCKETS, 0.0))
    bucket_cogs: dict = field(default_factory=lambda: dict.fromkeys(COGS_BUCKETS, 0.0))
    orders: list = field(default_factory=list)

    def add(self, order: PosOrder) -> None:
        cod = order.cod or 0.0
        cogs = order.cogs or 0.0
        self.purchases += 1
        self.cod += cod
        self.cogs += cogs
        if order.tracking:
            self.processed += 1
        bucket = STATUS_BUCKETS.get(order.status if order.status is not None else -1)
        if bucket:
            self.counts[bucket] += 1
            self.cods[bucket] += cod
            if bucket in self.bucket_cogs:
                self.bucket_cogs[bucket] += cogs
        self.orders.append({"shop_id": order.shop_id, "pos_order_id": order.pos_order_id, "cod": cod})

    def metrics(self) -> dict:
        """Column values for the order side of a reconciled row."""
        canceled = self.counts["canceled"]
        non_canceled = max(self.purchases - canceled, 0)
        settled = self.counts["shipped"] + self.counts["delivered"] + self.counts["rts"]
        eligible_cod = max(self.cod - self.cods["rts"] - self.cods["canceled"], 0.0)

        values = {
            "purchases_pos": self.purchases,
            "processed_purchases_pos": self.processed,
            "net_purchases_pos": max(self.purchases - canceled - self.counts["restocking"], 0),
            "cod_pos": self.cod,
            "cogs_pos": self.cogs,
            "sf_pos": non_canceled * SHIPPING_FEE,
            "ff_pos": non_canceled * FULFILLMENT_FEE,
            "if_pos": non_canceled * INSURANCE_FEE,
            "sf_sdr_pos": settled * SHIPPING_FEE,
            "ff_sdr_pos": settled * FULFILLMENT_FEE,
            "if_sdr_pos": settled * INSURANCE_FEE,
            "cod_fee_pos": eligible_cod * COD_FEE_RATE,
            "cod_fee_delivered_pos": self.cods["delivered"] * COD_FEE_RATE,
            "matched_orders": list(self.orders),
            "shops": sorted({o["shop_id"] for o in self.orders}),
        }
        for bucket in BUCKETS:
            values[f"{bucket}_count"] = self.counts[bucket]
            values[f"{bucket}_cod_pos"] = self.cods[bucket]
        for bucket in COGS_BUCKETS:
            values[f"cogs_{bucket}_pos"] = self.bucket_cogs[bucket]
        return values


def _ad_side(insights: list[MetaAdInsight], norm: str) -> dict:
    """Spend/engagement values for one ad id; several accounts reporting the same ad are summed."""
    first = insights[0]
    return {
        "normalized_ad_id": norm or None,
        "is_synthetic": False,
        "account_id": first.account_id,
        "campaign_id": first.campaign_id or "",
        "campaign_name": first.campaign_name or "",
        "adset_id": first.adset_id or "",
        "ad_name": first.ad_name or "",
        "marketing_associate": first.marketing_associate,
        "team_code": first.team_code,
        "mapping": first.mapping,
        "date_created": first.date_created,
        "spend": sum(i.spend or 0.0 for i in insights),
        "clicks": sum(i.clicks or 0 for i in insights),
        "link_clicks": sum(i.link_clicks or 0 for i in insights),
        "impressions": sum(i.impressions or 0 for i in insights),
        "leads": sum(i.leads or 0 for i in insights),
    }


def _synthetic_side(order: PosOrder) -> dict:
    return {
        "normalized_ad_id": None,
        "is_synthetic": True,
        "account_id": "",
        "campaign_id": "",
        "campaign_name": "",
        "adset_id": "",
        "ad_name": UNMATCHED_AD_NAME,
        "marketing_associate": None,
        "team_code": None,
        "mapping": order.mapping,
        "date_created": None,
        "spend": 0.0,
        "clicks": 0,
        "link_clicks": 0,
        "impressions": 0,
        "leads": 0,
    }


def build_reconciled_rows(
    insights: list[MetaAdInsight],
    orders: list[PosOrder],
    team_id: Optional[uuid.UUID] = None,
) -> dict[str, dict]:
    """
    Pure matching step: {ad_id: column values} for one tenant/day.
    Inputs should be in a stable order; the first ad id (sorted) holding a
    normalized id receives that id's orders, so COD is attributed exactly once.
    """
    by_ad: dict[str, list[MetaAdInsight]] = {}
    for insight in insights:
        by_ad.setdefault(insight.ad_id, []).append(insight)

    norm_owner: dict[str, str] = {}
    ad_norm: dict[str, str] = {}
    for ad_id in sorted(by_ad):
        norm = normalize_ad_id(ad_id)
        ad_norm[ad_id] = norm
        if norm and norm not in norm_owner:
            norm_owner[norm] = ad_id

    matched: dict[str, OrderBucket] = {}
    unmatched: list[PosOrder] = []
    for order in orders:
        norm = normalize_ad_id(order.p_utm_content)
        if norm and norm in norm_owner:
            matched.setdefault(norm, OrderBucket()).add(order)
        else:
            unmatched.append(order)

    rows: dict[str, dict] = {}
    for ad_id in sorted(by_ad):
        group = by_ad[ad_id]
        norm = ad_norm[ad_id]
        bucket = matched.get(norm) if norm_owner.get(norm) == ad_id else None
        values = _ad_side(group, norm)
        values.update((bucket or OrderBucket()).metrics())
        values["team_id"] = group[0].team_id or team_id
        rows[ad_id] = values

    for order in unmatched:
        bucket = OrderBucket()
        bucket.add(order)
        values = _synthetic_side(order)
        values.update(bucket.metrics())
        values["team_id"] = order.team_id or team_id
        rows[f"{order.shop_id}-{order.pos_order_id}"] = values

    return rows


async def reconcile_day(
    db: AsyncSession,
    tenant_id: uuid.UUID,
    date: str,
    team_id: Optional[uuid.UUID] = None,
    cache=None,
) -> dict:
    """
    Rebuild reconciled_ad_rows for one tenant/day (optionally one team).
    Flushes, does not commit. Raises ReconciliationError.
    """
    try:
        insight_q = select(MetaAdInsight).where(MetaAdInsight.tenant_id == tenant_id, MetaAdInsight.date == date)
        order_q = select(PosOrder).where(PosOrder.tenant_id == tenant_id, PosOrder.date_local == date)
        if team_id:
            insight_q = insight_q.where(MetaAdInsight.team_id == team_id)
            order_q = order_q.where(PosOrder.team_id == team_id)

        insights = (await db.execute(
            insight_q.order_by(MetaAdInsight.ad_id, MetaAdInsight.account_id)
        )).scalars().all()
        orders = (await db.execute(
            order_q.order_by(PosOrder.shop_id, PosOrder.pos_order_id)
        )).scalars().all()

        rows = build_reconciled_rows(list(insights), list(orders), team_id)

        # Unique key is (tenant, date, ad_id) regardless of team, so look up tenant-wide
        existing_result = await db.execute(
            select(ReconciledAdRow).where(ReconciledAdRow.tenant_id == tenant_id, ReconciledAdRow.date == date)
        )
        existing = {r.ad_id: r for r in existing_result.scalars().all()}
        for ad_id, values in rows.items():
            row = existing.get(ad_id)
            if row:
                for column, value in values.items():
                    setattr(row, column, value)
            else:
                db.add(ReconciledAdRow(tenant_id=tenant_id, date=date, ad_id=ad_id, **values))

        stale = [
            row for ad_id, row in existing.items()
            if ad_id not in rows and (team_id is None or row.team_id == team_id)
        ]
        for row in stale:
            await db.delete(row)

        await db.flush()
    except SQLAlchemyError as exc:
        raise ReconciliationError(f"Reconciliation failed for {date}: {exc}") from exc

    synthetic = sum(1 for v in rows.values() if v["is_synthetic"])
    stats = {
        "date": date,
        "insights": len(insights),
        "orders": len(orders),
        "ad_rows": len(rows) - synthetic,
        "synthetic_rows": synthetic,
        "deleted_rows": len(stale),
    }

    if cache is not None:
        try:
            await cache.bump_version(tenant_id)
        except RedisError as e:
            logger.warning(f"Analytics version bump failed for tenant {tenant_id}: {e}")

    logger.info(
        f"Reconciled marketing for tenant {tenant_id} on {date}: "
        f"{stats['ad_rows']} ad rows, {synthetic} unmatched orders, {stats['deleted_rows']} stale rows removed"
    )
    return stats
