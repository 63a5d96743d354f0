"""
POS Order Service — parses Pancake POS orders and upserts them into
pos_orders, keyed by (tenant, shop, order id).
"""

import logging
import re
import uuid
from datetime import datetime, timezone
from typing import Optional
from zoneinfo import ZoneInfo

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from recon_engine.config import get_settings
from recon_engine.errors import PersistenceError
from recon_engine.models import PosOrder
from recon_engine.utils import to_float, to_int

logger = logging.getLogger(__name__)

_CHUNK = 500
_LEADING_LETTERS = re.compile(r"^([A-Za-z\s]+)")
_NOT_NUMERIC = re.compile(r"[^0-9.\-]")


class SkipOrder(Exception):
    """Raised by parse_pos_order for orders that must not be stored."""


def extract_mapping(note_product: Optional[str]) -> Optional[str]:
    """"Agriblast-100" -> "agriblast"."""
    if not note_product or not isinstance(note_product, str):
        return None
    match = _LEADING_LETTERS.match(note_product)
    if match and match.group(1).strip():
        return match.group(1).strip().lower()
    first = note_product.split("-")[0].strip()
    return first.lower() or None


def note_product_cogs(note_product: Optional[str], quantity) -> float:
    """"Agriblast-100" with quantity 2 -> 200.0; quantity below 1 counts as 1."""
    if not note_product or not isinstance(note_product, str):
        return 0.0
    parts = note_product.split("-")
    if len(parts) < 2:
        return 0.0
    cleaned = _NOT_NUMERIC.sub("", parts[1])
    try:
        unit = float(cleaned)
    except ValueError:
        return 0.0
    return unit * max(to_int(quantity), 1)


def _parse_inserted_at(value) -> Optional[datetime]:
    """Pancake inserted_at is UTC without offset, e.g. 2025-03-01T02:14:05.123."""
    if not value or not isinstance(value, str):
        return None
    text = value.strip().replace("Z", "+00:00")
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def parse_pos_order(raw: dict, tz_name: Optional[str] = None) -> dict:
    """Map one Pancake order to PosOrder column values. Raises SkipOrder."""
    status = raw.get("status")
    if str(status) == "0" and raw.get("shopify_abandon_checkout_id"):
        raise SkipOrder("abandoned checkout")

    order_id = raw.get("id")
    if order_id in (None, ""):
        raise SkipOrder("missing order id")

    inserted_at = _parse_inserted_at(raw.get("inserted_at"))
    if inserted_at is None:
        raise SkipOrder("missing inserted_at")
    tz = ZoneInfo(tz_name or get_settings().timezone)
    date_local = inserted_at.astimezone(tz).date().isoformat()

    items = [i for i in (raw.get("items") or []) if isinstance(i, dict)]
    cogs = 0.0
    total_quantity = 0
    for item in items:
        quantity = to_int(item.get("quantity"))
        total_quantity += quantity
        cogs += note_product_cogs(item.get("note_product"), quantity)

    mapping = extract_mapping(items[0].get("note_product")) if items else None

    partner = raw.get("partner")
    tracking = None
    if isinstance(partner, dict):
        tracking = partner.get("extend_code") or partner.get("extendCode") or None

    return {
        "pos_order_id": str(order_id),
        "inserted_at": inserted_at.replace(tzinfo=None),
        "date_local": date_local,
        "status": to_int(status, -1) if status is not None else None,
        "status_name": raw.get("status_name"),
        "cod": to_float(raw.get("cod")),
        "cogs": cogs,
        "total_quantity": total_quantity,
        "p_utm_content": raw.get("p_utm_content"),
        "p_utm_campaign": raw.get("p_utm_campaign"),
        "tracking": str(tracking) if tracking else None,
        "mapping": mapping,
        "items": [
            {
                "product_id": item.get("product_id"),
                "quantity": item.get("quantity"),
                "note_product": item.get("note_product"),
                "variation_name": (item.get("variation_info") or {}).get("name"),
            }
            for item in items
        ],
    }


async def upsert_pos_orders(
    db: AsyncSession,
    tenant_id: uuid.UUID,
    shop_id: str,
    raw_orders: list[dict],
    team_id: Optional[uuid.UUID] = None,
) -> int:
    """
    Upsert orders for one shop. Returns the number of rows written.
    Flushes, does not commit.
    """
    tz_name = get_settings().timezone
    parsed: dict[str, dict] = {}
    skipped = 0
    for raw in raw_orders or []:
        try:
            row = parse_pos_order(raw, tz_name)
        except SkipOrder:
            skipped += 1
            continue
        parsed[row["pos_order_id"]] = row

    if not parsed:
        if skipped:
            logger.info(f"POS shop {shop_id}: skipped {skipped} orders, nothing to store")
        return 0

    try:
        existing: dict[str, PosOrder] = {}
        order_ids = list(parsed.keys())
        for i in range(0, len(order_ids), _CHUNK):
            result = await db.execute(
                select(PosOrder).where(
                    PosOrder.tenant_id == tenant_id,
                    PosOrder.shop_id == str(shop_id),
                    PosOrder.pos_order_id.in_(order_ids[i:i + _CHUNK]),
                )
            )
            for order in result.scalars().all():
                existing[order.pos_order_id] = order

        for order_id, values in parsed.items():
            order = existing.get(order_id)
            if order:
                for field, value in values.items():
                    setattr(order, field, value)
                order.team_id = team_id
            else:
                db.add(PosOrder(tenant_id=tenant_id, team_id=team_id, shop_id=str(shop_id), **values))

        await db.flush()
    except SQLAlchemyError as exc:
        raise PersistenceError(f"Failed to store POS orders for shop {shop_id}: {exc}") from exc

    logger.info(f"Stored {len(parsed)} POS orders for shop {shop_id} (tenant {tenant_id}, skipped {skipped})")
    return len(parsed)
