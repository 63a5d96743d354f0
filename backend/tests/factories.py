"""
Row builders and raw provider payloads for tests.
"""

import uuid
from typing import Optional

from recon_engine.models import (
    ExecutionStatus,
    MetaAdAccount,
    PosOrder,
    PosStore,
    TriggerType,
    Workflow,
    WorkflowExecution,
    MetaAdInsight,
)
from recon_engine.services.date_range import get_total_days

TENANT = uuid.UUID("11111111-1111-1111-1111-111111111111")
OTHER_TENANT = uuid.UUID("22222222-2222-2222-2222-222222222222")


async def add_workflow(db, tenant_id=TENANT, pos=True, meta=False, **overrides) -> Workflow:
    values = {
        "tenant_id": tenant_id,
        "name": "Daily pull",
        "enabled": True,
        "sources": {
            "meta": {"enabled": meta, "rate_limit_ms": 0},
            "pos": {"enabled": pos, "rate_limit_ms": 0},
        },
        "date_range": {"type": "relative", "days": 1},
    }
    values.update(overrides)
    workflow = Workflow(**values)
    db.add(workflow)
    await db.commit()
    return workflow


async def add_execution(
    db,
    workflow: Workflow,
    since="2025-03-01",
    until="2025-03-03",
    status=ExecutionStatus.PENDING,
    **overrides,
) -> WorkflowExecution:
    values = {
        "workflow_id": workflow.id,
        "tenant_id": workflow.tenant_id,
        "team_id": workflow.team_id,
        "trigger_type": TriggerType.MANUAL.value,
        "status": ExecutionStatus(status).value,
        "date_range_since": since,
        "date_range_until": until,
        "total_days": get_total_days(since, until),
        "errors": [],
    }
    values.update(overrides)
    execution = WorkflowExecution(**values)
    db.add(execution)
    await db.commit()
    return execution


async def add_store(db, shop_id: str, tenant_id=TENANT, api_key: Optional[str] = "pos-key", **overrides) -> PosStore:
    store = PosStore(tenant_id=tenant_id, shop_id=shop_id, name=f"Shop {shop_id}", api_key=api_key, **overrides)
    db.add(store)
    await db.commit()
    return store


async def add_account(db, account_id: str, tenant_id=TENANT, access_token: Optional[str] = "meta-token", **overrides) -> MetaAdAccount:
    account = MetaAdAccount(tenant_id=tenant_id, account_id=account_id, access_token=access_token, **overrides)
    db.add(account)
    await db.commit()
    return account


def insight_row(ad_id: str, date: str = "2025-03-01", spend: float = 100.0, tenant_id=TENANT, **overrides) -> MetaAdInsight:
    values = {
        "tenant_id": tenant_id,
        "account_id": "555",
        "campaign_id": "c-1",
        "campaign_name": "BRAND_PH_CONV_2025_agriblast",
        "adset_id": "as-1",
        "ad_id": ad_id,
        "ad_name": "EVIL EYE_UGC_1001_ALY_001",
        "date": date,
        "spend": spend,
        "clicks": 10,
        "link_clicks": 5,
        "impressions": 1000,
        "leads": 2,
    }
    values.update(overrides)
    return MetaAdInsight(**values)


def order_row(
    order_id: str,
    shop_id: str = "shop-a",
    date: str = "2025-03-01",
    utm: Optional[str] = None,
    cod: float = 500.0,
    status: int = 1,
    tenant_id=TENANT,
    **overrides,
) -> PosOrder:
    values = {
        "tenant_id": tenant_id,
        "shop_id": shop_id,
        "pos_order_id": order_id,
        "date_local": date,
        "status": status,
        "cod": cod,
        "cogs": 100.0,
        "total_quantity": 1,
        "p_utm_content": utm,
        "mapping": "agriblast",
        "items": [],
    }
    values.update(overrides)
    return PosOrder(**values)


def raw_pos_order(order_id: str, date: str = "2025-03-01", cod: float = 500.0, utm: Optional[str] = None, status: int = 1) -> dict:
    """Pancake API order placed at 10:00 Manila time on `date`."""
    return {
        "id": order_id,
        "status": status,
        "inserted_at": f"{date}T02:00:00",
        "cod": cod,
        "p_utm_content": utm,
        "items": [{"quantity": 1, "note_product": "Agriblast-120"}],
        "partner": {"extend_code": f"TRK-{order_id}"},
    }


def raw_meta_insight(ad_id: str, date: str = "2025-03-01", spend: str = "150.50") -> dict:
    """Graph API insight row."""
    return {
        "ad_id": ad_id,
        "ad_name": "EVIL EYE_UGC_1001_ALY_001",
        "adset_id": "as-1",
        "campaign_id": "c-1",
        "campaign_name": "BRAND_PH_CONV_2025_agriblast",
        "date_start": date,
        "spend": spend,
        "clicks": "12",
        "inline_link_clicks": "7",
        "impressions": "1500",
        "actions": [{"action_type": "landing_page_view", "value": "4"}],
    }
