"""
Meta Ads provider — ad-level daily insights from the Graph API.
"""

import json
import logging

from recon_engine.errors import AuthError, FetchError
from recon_engine.providers.base import ProviderType, SourceProvider

logger = logging.getLogger(__name__)

INSIGHT_FIELDS = (
    "account_id,campaign_id,adset_id,ad_id,ad_name,campaign_name,spend,"
    "inline_link_clicks,clicks,impressions,actions,date_start,date_stop,created_time"
)

# Hard stop for runaway paging.next chains
MAX_PAGES = 500


class MetaAdsProvider(SourceProvider):
    provider_type = ProviderType.META_ADS
    source = "meta"

    @property
    def base_url(self) -> str:
        return self.settings.meta_graph_api_base.rstrip("/")

    def _access_token(self) -> str:
        token = self.credentials.get("access_token")
        if not token:
            raise AuthError("Invalid credentials: access_token is required")
        return token

    async def _fetch_all(self, account_id: str, date: str) -> list[dict]:
        """All insight rows for act_{account_id} on one day, following paging.next."""
        token = self._access_token()
        account_id = str(account_id).removeprefix("act_")
        url = f"{self.base_url}/act_{account_id}/insights"
        params = {
            "level": "ad",
            "time_increment": "1",
            "time_range": json.dumps({"since": date, "until": date}),
            "fields": INSIGHT_FIELDS,
            "timezone": self.settings.timezone,
            "limit": "500",
            "access_token": token,
        }

        insights: list[dict] = []
        pages = 0
        async with self._client() as http:
            while url:
                pages += 1
                if pages > MAX_PAGES:
                    raise FetchError(f"Pagination exceeded {MAX_PAGES} pages for account {account_id}")
                data = await self._get_json(http, url, params)
                rows = data.get("data")
                if isinstance(rows, list):
                    insights.extend(r for r in rows if isinstance(r, dict))

                next_url = (data.get("paging") or {}).get("next")
                if next_url:
                    # paging.next carries the full query; keep the token explicit
                    url, params = next_url, {"access_token": token}
                else:
                    url = None

        logger.info(f"Meta account {account_id} on {date}: {len(insights)} insight rows ({pages} pages)")
        return insights

    async def test_connection(self) -> dict:
        """Verify the access token by reading /me."""
        try:
            token = self._access_token()
            async with self._client() as http:
                me = await self._get_json(http, f"{self.base_url}/me", {"fields": "id,name", "access_token": token})
            return {
                "success": True,
                "message": "Successfully connected to Meta Ads",
                "details": {"user_id": me.get("id"), "name": me.get("name")},
            }
        except (AuthError, FetchError) as exc:
            return {"success": False, "message": "Connection test failed", "details": {"error": str(exc)}}
