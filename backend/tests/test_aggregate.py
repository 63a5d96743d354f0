"""
Tests for the campaign-level roll-up (aggregate_day).
"""

import pytest
from sqlalchemy import select

from recon_engine.models import MetaAdInsight, ReconciledCampaignRow
from recon_engine.services.reconcile_marketing import reconcile_day
from recon_engine.services.reconcile_sales import aggregate_day
from factories import TENANT, insight_row, order_row

DAY = "2025-03-01"


async def _campaigns(db) -> dict[str, ReconciledCampaignRow]:
    result = await db.execute(
        select(ReconciledCampaignRow).where(ReconciledCampaignRow.tenant_id == TENANT, ReconciledCampaignRow.date == DAY)
    )
    return {r.campaign_id: r for r in result.scalars().all()}


async def _seed(db):
    db.add_all([
        insight_row("120210000000000001", spend=100.0, campaign_id="camp-1"),
        insight_row("120210000000000002", spend=50.0, campaign_id="camp-1", clicks=3),
        insight_row("120210000000000003", spend=25.0, campaign_id="camp-2", campaign_name="Other"),
        order_row("1", utm="120210000000000001", cod=400.0),
        order_row("2", utm="120210000000000002", cod=600.0, status=3),
        order_row("3", utm=None, cod=250.0),
    ])
    await db.commit()
    await reconcile_day(db, TENANT, DAY)
    await db.commit()


@pytest.mark.anyio
async def test_groups_by_campaign_and_sums_fields(db):
    await _seed(db)

    stats = await aggregate_day(db, TENANT, DAY)
    await db.commit()

    rows = await _campaigns(db)
    camp1 = rows["camp-1"]
    assert camp1.ad_count == 2
    assert camp1.spend == 150.0
    assert camp1.clicks == 13
    assert camp1.cod_pos == 1000.0
    assert camp1.purchases_pos == 2
    assert camp1.delivered_count == 1
    assert camp1.is_unmatched is False

    assert rows["camp-2"].spend == 25.0
    assert rows["camp-2"].purchases_pos == 0
    assert stats["campaigns"] == 2 and stats["unmatched_groups"] == 1


@pytest.mark.anyio
async def test_unmatched_orders_form_their_own_groups(db):
    await _seed(db)

    await aggregate_day(db, TENANT, DAY)
    await db.commit()

    unmatched = (await _campaigns(db))["shop-a-3"]
    assert unmatched.is_unmatched is True
    assert unmatched.spend == 0
    assert unmatched.cod_pos == 250.0
    assert unmatched.campaign_name == "POS Unmatched Order"


@pytest.mark.anyio
async def test_totals_match_ad_level(db):
    await _seed(db)

    await aggregate_day(db, TENANT, DAY)
    await db.commit()

    rows = (await _campaigns(db)).values()
    assert sum(r.cod_pos for r in rows) == 1250.0
    assert sum(r.spend for r in rows) == 175.0
    assert sum(r.ad_count for r in rows) == 4


@pytest.mark.anyio
async def test_campaigns_that_disappear_are_deleted(db):
    await _seed(db)
    await aggregate_day(db, TENANT, DAY)
    await db.commit()

    # camp-2's only ad is gone after a re-pull
    insight = (await db.execute(
        select(MetaAdInsight).where(MetaAdInsight.campaign_id == "camp-2")
    )).scalar_one()
    await db.delete(insight)
    await db.commit()
    await reconcile_day(db, TENANT, DAY)
    stats = await aggregate_day(db, TENANT, DAY)
    await db.commit()

    assert "camp-2" not in await _campaigns(db)
    assert stats["deleted_rows"] == 1


@pytest.mark.anyio
async def test_empty_day_produces_no_rows(db):
    stats = await aggregate_day(db, TENANT, DAY)
    await db.commit()

    assert await _campaigns(db) == {}
    assert stats["ad_rows"] == 0
