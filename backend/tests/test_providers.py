"""
Tests for the Meta Ads and Pancake POS providers (httpx.MockTransport, no network).
"""

import json
from unittest.mock import AsyncMock, call

import httpx
import pytest

from recon_engine.config import Settings
from recon_engine.errors import AuthError, FetchError, TransientFetchError, ValidationError
from recon_engine.providers.base import ProviderType
from recon_engine.providers.meta_ads import MetaAdsProvider
from recon_engine.providers.pancake_pos import PancakePosProvider
from recon_engine.providers.registry import get_provider
from factories import raw_meta_insight, raw_pos_order


@pytest.fixture
def settings():
    return Settings(
        meta_graph_api_base="https://graph.test/v23.0",
        pancake_pos_api_base="https://pos.test/api/v1",
        fetch_retry_backoff="2,5,10",
        timezone="Asia/Manila",
    )


def _pos(settings, handler, sleep=None, credentials=None):
    return PancakePosProvider(
        credentials if credentials is not None else {"api_key": "k"},
        settings=settings,
        transport=httpx.MockTransport(handler),
        sleep=sleep or AsyncMock(),
    )


def _meta(settings, handler, sleep=None, credentials=None):
    return MetaAdsProvider(
        credentials if credentials is not None else {"access_token": "t"},
        settings=settings,
        transport=httpx.MockTransport(handler),
        sleep=sleep or AsyncMock(),
    )


# ── Retry policy ──────────────────────────────────────────────────────

@pytest.mark.anyio
async def test_persistent_503_retries_on_schedule_then_errors(settings):
    calls = []

    def handler(request):
        calls.append(request)
        return httpx.Response(503, json={"message": "upstream down"})

    sleep = AsyncMock()
    result = await _pos(settings, handler, sleep=sleep).fetch("shop-a", "2025-03-01")

    assert len(calls) == 4
    assert sleep.await_args_list == [call(2.0), call(5.0), call(10.0)]
    assert isinstance(result.error, TransientFetchError)
    assert result.error.status_code == 503
    assert "upstream down" in str(result.error)
    assert result.records == []


@pytest.mark.anyio
async def test_recovers_after_transient_failures(settings):
    responses = iter([
        httpx.Response(429, json={"message": "slow down"}),
        httpx.Response(500, text="boom"),
        httpx.Response(200, json={"orders": [raw_pos_order("1")], "page_number": 1, "total_pages": 1}),
    ])
    sleep = AsyncMock()

    result = await _pos(settings, lambda request: next(responses), sleep=sleep).fetch("shop-a", "2025-03-01")

    assert result.ok
    assert [o["id"] for o in result.records] == ["1"]
    assert sleep.await_args_list == [call(2.0), call(5.0)]


@pytest.mark.anyio
async def test_network_errors_are_retried(settings):
    attempts = {"n": 0}

    def handler(request):
        attempts["n"] += 1
        if attempts["n"] == 1:
            raise httpx.ConnectError("connection refused", request=request)
        return httpx.Response(200, json={"data": []})

    result = await _meta(settings, handler).fetch("555", "2025-03-01")

    assert result.ok
    assert attempts["n"] == 2


@pytest.mark.anyio
async def test_client_errors_are_not_retried(settings):
    calls = []

    def handler(request):
        calls.append(request)
        return httpx.Response(400, json={"error": {"message": "Invalid OAuth access token"}})

    sleep = AsyncMock()
    result = await _meta(settings, handler, sleep=sleep).fetch("555", "2025-03-01")

    assert len(calls) == 1
    sleep.assert_not_awaited()
    assert type(result.error) is FetchError
    assert result.error.status_code == 400
    assert "Invalid OAuth access token" in str(result.error)


@pytest.mark.anyio
async def test_empty_schedule_means_single_attempt(settings):
    settings = settings.model_copy(update={"fetch_retry_backoff": ""})
    calls = []

    def handler(request):
        calls.append(request)
        return httpx.Response(502)

    result = await _pos(settings, handler).fetch("shop-a", "2025-03-01")

    assert len(calls) == 1
    assert isinstance(result.error, TransientFetchError)


# ── Input validation ──────────────────────────────────────────────────

@pytest.mark.anyio
async def test_future_and_malformed_dates_rejected_without_requests(settings):
    handler = AsyncMock(side_effect=AssertionError("no request expected"))
    provider = _pos(settings, handler)

    future = await provider.fetch("shop-a", "2999-01-01")
    malformed = await provider.fetch("shop-a", "03/01/2025")

    assert isinstance(future.error, ValidationError)
    assert isinstance(malformed.error, ValidationError)


@pytest.mark.anyio
async def test_missing_credentials_is_auth_error(settings):
    result = await _meta(settings, lambda r: httpx.Response(200, json={}), credentials={}).fetch("555", "2025-03-01")
    assert isinstance(result.error, AuthError)


# ── Meta paging ───────────────────────────────────────────────────────

@pytest.mark.anyio
async def test_meta_follows_paging_next(settings):
    seen = []

    def handler(request):
        seen.append(request.url)
        if request.url.path == "/v23.0/act_555/insights":
            return httpx.Response(200, json={
                "data": [raw_meta_insight("1001")],
                "paging": {"next": "https://graph.test/v23.0/act_555/insights/page2?after=abc"},
            })
        return httpx.Response(200, json={"data": [raw_meta_insight("1002"), "junk"], "paging": {}})

    result = await _meta(settings, handler).fetch("act_555", "2025-03-01")

    assert [r["ad_id"] for r in result.records] == ["1001", "1002"]
    first = seen[0].params
    assert first["level"] == "ad"
    assert json.loads(first["time_range"]) == {"since": "2025-03-01", "until": "2025-03-01"}
    assert first["access_token"] == "t"
    assert seen[1].params["after"] == "abc"
    assert seen[1].params["access_token"] == "t"


# ── Pancake paging ────────────────────────────────────────────────────

@pytest.mark.anyio
async def test_pancake_walks_total_pages_within_local_day(settings):
    pages = []

    def handler(request):
        page = int(request.url.params["page_number"])
        pages.append(page)
        assert request.url.params["startDateTime"] == "1740758400"
        assert request.url.params["endDateTime"] == "1740844799"
        return httpx.Response(200, json={
            "orders": [raw_pos_order(f"{page}-a"), raw_pos_order(f"{page}-b")],
            "page_number": page,
            "total_pages": 3,
        })

    result = await _pos(settings, handler).fetch("shop-a", "2025-03-01")

    assert pages == [1, 2, 3]
    assert len(result.records) == 6


@pytest.mark.anyio
async def test_pancake_test_connection_checks_shop(settings):
    def handler(request):
        return httpx.Response(200, json={"success": True, "shops": [{"id": 7, "name": "Main"}]})

    found = await _pos(settings, handler).test_connection(shop_id="7")
    missing = await _pos(settings, handler).test_connection(shop_id="8")

    assert found["success"] is True
    assert found["details"]["shop_name"] == "Main"
    assert missing["success"] is False
    assert missing["details"]["available_shops"] == [{"id": 7, "name": "Main"}]


def test_registry_resolves_known_types(settings):
    assert isinstance(get_provider("meta_ads", {}, settings=settings), MetaAdsProvider)
    assert isinstance(get_provider(ProviderType.PANCAKE_POS, {}, settings=settings), PancakePosProvider)
    with pytest.raises(ValueError):
        get_provider("shopify", {}, settings=settings)
