"""
Tests for marketing reconciliation (reconcile_day) and the pure matching step.
"""

import pytest
from sqlalchemy import select

from recon_engine.models import ReconciledAdRow
from recon_engine.services.reconcile_marketing import (
    COD_FEE_RATE,
    FULFILLMENT_FEE,
    SHIPPING_FEE,
    UNMATCHED_AD_NAME,
    build_reconciled_rows,
    reconcile_day,
)
from factories import TENANT, OTHER_TENANT, insight_row, order_row

DAY = "2025-03-01"


async def _rows(db, tenant_id=TENANT, date=DAY) -> dict[str, ReconciledAdRow]:
    result = await db.execute(
        select(ReconciledAdRow).where(ReconciledAdRow.tenant_id == tenant_id, ReconciledAdRow.date == date)
    )
    return {r.ad_id: r for r in result.scalars().all()}


@pytest.mark.anyio
async def test_utm_variant_merges_into_single_row(db):
    db.add(insight_row("120210000111222333", spend=250.0))
    db.add(order_row("9001", utm="camp_ad_id=120210000111222333_v2", cod=799.0))
    await db.commit()

    stats = await reconcile_day(db, TENANT, DAY)
    await db.commit()

    rows = await _rows(db)
    assert list(rows) == ["120210000111222333"]
    row = rows["120210000111222333"]
    assert row.spend == 250.0
    assert row.cod_pos == 799.0
    assert row.purchases_pos == 1
    assert row.is_synthetic is False
    assert stats["ad_rows"] == 1 and stats["synthetic_rows"] == 0


@pytest.mark.anyio
async def test_order_without_identifier_becomes_synthetic_row(db):
    db.add(order_row("77", shop_id="shop-x", utm=None, cod=300.0))
    await db.commit()

    await reconcile_day(db, TENANT, DAY)
    await db.commit()

    rows = await _rows(db)
    row = rows["shop-x-77"]
    assert row.is_synthetic is True
    assert row.ad_name == UNMATCHED_AD_NAME
    assert row.spend == 0 and row.clicks == 0 and row.impressions == 0
    assert row.cod_pos == 300.0
    assert row.purchases_pos == 1


@pytest.mark.anyio
async def test_cod_is_conserved_across_matched_and_synthetic_rows(db):
    db.add(insight_row("120210000111222333"))
    db.add(insight_row("120210000999888777", campaign_id="c-2"))
    orders = [
        order_row("1", utm="120210000111222333", cod=100.0),
        order_row("2", utm="ad_id=120210000111222333", cod=200.0),
        order_row("3", utm="120210000999888777", cod=300.0, status=6),
        order_row("4", utm="unknown-campaign", cod=400.0),
        order_row("5", shop_id="shop-b", utm=None, cod=500.0),
    ]
    db.add_all(orders)
    await db.commit()

    await reconcile_day(db, TENANT, DAY)
    await db.commit()

    rows = await _rows(db)
    assert sum(r.cod_pos for r in rows.values()) == pytest.approx(sum(o.cod for o in orders))
    assert sum(r.purchases_pos for r in rows.values()) == len(orders)
    assert rows["120210000111222333"].purchases_pos == 2
    assert rows["120210000999888777"].canceled_count == 1
    assert {"shop-a-4", "shop-b-5"} <= set(rows)


@pytest.mark.anyio
async def test_reconcile_is_idempotent(db):
    db.add(insight_row("120210000111222333"))
    db.add_all([order_row("1", utm="120210000111222333"), order_row("2", utm=None)])
    await db.commit()

    await reconcile_day(db, TENANT, DAY)
    await db.commit()
    first = {k: (r.id, r.cod_pos, r.purchases_pos, r.spend) for k, r in (await _rows(db)).items()}

    stats = await reconcile_day(db, TENANT, DAY)
    await db.commit()
    second = {k: (r.id, r.cod_pos, r.purchases_pos, r.spend) for k, r in (await _rows(db)).items()}

    assert first == second
    assert stats["deleted_rows"] == 0


@pytest.mark.anyio
async def test_rows_no_longer_produced_are_removed(db):
    order = order_row("42", utm=None)
    db.add(order)
    await db.commit()
    await reconcile_day(db, TENANT, DAY)
    await db.commit()
    assert "shop-a-42" in await _rows(db)

    # The order now carries an ad id that matches a late-arriving insight
    db.add(insight_row("120210000111222333"))
    order.p_utm_content = "120210000111222333"
    await db.commit()

    stats = await reconcile_day(db, TENANT, DAY)
    await db.commit()
    rows = await _rows(db)
    assert "shop-a-42" not in rows
    assert rows["120210000111222333"].purchases_pos == 1
    assert stats["deleted_rows"] == 1


@pytest.mark.anyio
async def test_other_tenants_are_untouched(db):
    db.add(order_row("1", utm=None, tenant_id=OTHER_TENANT))
    db.add(order_row("2", utm=None))
    await db.commit()

    await reconcile_day(db, TENANT, DAY)
    await db.commit()

    assert list(await _rows(db)) == ["shop-a-2"]
    assert await _rows(db, tenant_id=OTHER_TENANT) == {}


@pytest.mark.anyio
async def test_reconcile_bumps_analytics_version(db, cache, fake_redis):
    db.add(order_row("1", utm=None))
    await db.commit()

    await reconcile_day(db, TENANT, DAY, cache=cache)

    assert fake_redis.store[f"test:analytics:{TENANT}:version"] == "1"


def test_fee_estimates_follow_status_buckets():
    insights = [insight_row("120210000111222333")]
    orders = [
        order_row("1", utm="120210000111222333", cod=1000.0, status=3),  # delivered
        order_row("2", utm="120210000111222333", cod=500.0, status=6),   # canceled
        order_row("3", utm="120210000111222333", cod=200.0, status=4),   # returned
        order_row("4", utm="120210000111222333", cod=300.0, status=11),  # restocking
    ]

    row = build_reconciled_rows(insights, orders)["120210000111222333"]

    assert row["purchases_pos"] == 4
    assert row["net_purchases_pos"] == 2
    assert row["sf_pos"] == 3 * SHIPPING_FEE
    assert row["ff_pos"] == 3 * FULFILLMENT_FEE
    assert row["sf_sdr_pos"] == 2 * SHIPPING_FEE
    assert row["cod_fee_pos"] == pytest.approx((2000.0 - 200.0 - 500.0) * COD_FEE_RATE)
    assert row["cod_fee_delivered_pos"] == pytest.approx(1000.0 * COD_FEE_RATE)
    assert row["cogs_canceled_pos"] == 100.0
    assert row["delivered_cod_pos"] == 1000.0


def test_shared_normalized_id_attributes_orders_once():
    insights = [insight_row("120210000111222333"), insight_row("ad_id=120210000111222333")]
    orders = [order_row("1", utm="120210000111222333", cod=100.0)]

    rows = build_reconciled_rows(insights, orders)

    assert sum(r["cod_pos"] for r in rows.values()) == 100.0
    assert rows["120210000111222333"]["cod_pos"] == 100.0
    assert rows["ad_id=120210000111222333"]["cod_pos"] == 0
