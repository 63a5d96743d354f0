"""
Pancake POS provider — orders for one shop, windowed by local day.
"""

import logging

from recon_engine.errors import AuthError, FetchError
from recon_engine.providers.base import ProviderType, SourceProvider
from recon_engine.services.date_range import local_day_bounds
from recon_engine.utils import to_int

logger = logging.getLogger(__name__)

MAX_PAGES = 1000


class PancakePosProvider(SourceProvider):
    provider_type = ProviderType.PANCAKE_POS
    source = "pos"

    @property
    def base_url(self) -> str:
        return self.settings.pancake_pos_api_base.rstrip("/")

    def _api_key(self) -> str:
        api_key = self.credentials.get("api_key")
        if not api_key:
            raise AuthError("Invalid credentials: api_key is required")
        return api_key

    async def _fetch_all(self, shop_id: str, date: str) -> list[dict]:
        """Orders inserted during the local day, across page_number/total_pages."""
        api_key = self._api_key()
        start, end = local_day_bounds(date, self.settings.timezone)
        url = f"{self.base_url}/shops/{shop_id}/orders"

        orders: list[dict] = []
        current_page = 1
        total_pages = 1
        async with self._client() as http:
            while current_page <= total_pages:
                if current_page > MAX_PAGES:
                    raise FetchError(f"Pagination exceeded {MAX_PAGES} pages for shop {shop_id}")
                params = {
                    "api_key": api_key,
                    "updateStatus": "inserted_at",
                    "startDateTime": str(start),
                    "endDateTime": str(end),
                    "page_number": str(current_page),
                }
                data = await self._get_json(http, url, params)

                page_orders = data.get("orders")
                if not isinstance(page_orders, list):
                    page_orders = data.get("data") if isinstance(data.get("data"), list) else []
                orders.extend(o for o in page_orders if isinstance(o, dict))

                page_num = to_int(data.get("page_number"), current_page)
                total_pages = to_int(data.get("total_pages"), total_pages)
                current_page = max(page_num, current_page) + 1

        logger.info(f"POS shop {shop_id} on {date}: {len(orders)} orders")
        return orders

    async def test_connection(self, shop_id: str | None = None) -> dict:
        """List accessible shops; when shop_id is given, verify it is among them."""
        try:
            api_key = self._api_key()
            async with self._client() as http:
                data = await self._get_json(http, f"{self.base_url}/shops", {"api_key": api_key})
        except (AuthError, FetchError) as exc:
            return {"success": False, "message": "Connection test failed", "details": {"error": str(exc)}}

        shops = data.get("shops")
        if not data.get("success", True) or not isinstance(shops, list):
            return {"success": False, "message": "Invalid API response", "details": {}}

        if shop_id:
            selected = next((s for s in shops if str(s.get("id")) == str(shop_id)), None)
            if not selected:
                return {
                    "success": False,
                    "message": "Configured shop not found or access denied",
                    "details": {
                        "shop_id": shop_id,
                        "available_shops": [{"id": s.get("id"), "name": s.get("name")} for s in shops],
                    },
                }
            return {
                "success": True,
                "message": "Successfully connected to Pancake POS",
                "details": {"shop_id": selected.get("id"), "shop_name": selected.get("name"), "total_shops": len(shops)},
            }

        return {
            "success": True,
            "message": "Successfully authenticated with Pancake POS",
            "details": {
                "total_shops": len(shops),
                "shops": [{"id": s.get("id"), "name": s.get("name")} for s in shops],
            },
        }
