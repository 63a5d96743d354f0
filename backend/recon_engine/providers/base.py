"""
Source provider contract — fetch one entity (ad account / shop) for one day.

Providers never raise out of fetch(): every failure, after the retry budget
for transient ones, comes back as FetchResult.error so the caller can record
it against that entity and move on to the next one.
"""

import asyncio
import enum
import logging
from dataclasses import dataclass, field
from datetime import date as date_cls, datetime
from typing import Any, Awaitable, Callable, Optional
from zoneinfo import ZoneInfo

import httpx
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    wait_chain,
    wait_fixed,
    wait_none,
)

from recon_engine.config import Settings, get_settings
from recon_engine.errors import FetchError, TransientFetchError, ValidationError, WorkflowError

logger = logging.getLogger(__name__)


class ProviderType(str, enum.Enum):
    META_ADS = "meta_ads"
    PANCAKE_POS = "pancake_pos"


@dataclass
class FetchResult:
    entity_id: str
    date: str
    records: list[dict] = field(default_factory=list)
    error: Optional[WorkflowError] = None

    @property
    def ok(self) -> bool:
        return self.error is None


def parse_day(value: str) -> date_cls:
    """Strict YYYY-MM-DD parse; raises ValidationError."""
    try:
        return datetime.strptime(value, "%Y-%m-%d").date()
    except (TypeError, ValueError):
        raise ValidationError(f"Invalid date {value!r}, expected YYYY-MM-DD")


class SourceProvider:
    """Base class: shared HTTP, retry and error-boundary handling."""

    provider_type: ProviderType
    source: str = ""  # short name used in execution errors: "meta" / "pos"

    def __init__(
        self,
        credentials: dict,
        settings: Optional[Settings] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sleep: Optional[Callable[[float], Awaitable[Any]]] = None,
    ):
        self.credentials = credentials or {}
        self.settings = settings or get_settings()
        self._transport = transport
        self._sleep = sleep or asyncio.sleep

    # ── Public contract ───────────────────────────────────────────────

    async def fetch(self, entity_id: str, date: str) -> FetchResult:
        """Fetch all records for one entity and one local day. Never raises."""
        try:
            self._validate_date(date)
            records = await self._fetch_all(entity_id, date)
            return FetchResult(entity_id=entity_id, date=date, records=records)
        except WorkflowError as exc:
            logger.warning(f"{self.source} fetch failed for {entity_id} on {date}: {exc}")
            return FetchResult(entity_id=entity_id, date=date, error=exc)
        except Exception as exc:
            logger.error(f"{self.source} fetch crashed for {entity_id} on {date}: {exc}", exc_info=True)
            return FetchResult(
                entity_id=entity_id,
                date=date,
                error=FetchError(f"Unexpected {type(exc).__name__}: {exc}"),
            )

    async def test_connection(self) -> dict:
        raise NotImplementedError

    # ── Subclass hooks ────────────────────────────────────────────────

    async def _fetch_all(self, entity_id: str, date: str) -> list[dict]:
        raise NotImplementedError

    # ── Helpers ───────────────────────────────────────────────────────

    def _validate_date(self, date: str) -> None:
        day = parse_day(date)
        today = datetime.now(ZoneInfo(self.settings.timezone)).date()
        if day > today:
            raise ValidationError(f"Date {date} is in the future")

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.settings.http_timeout_seconds, transport=self._transport)

    def _retrying(self) -> AsyncRetrying:
        schedule = self.settings.retry_backoff_schedule
        wait = wait_chain(*[wait_fixed(s) for s in schedule]) if schedule else wait_none()
        return AsyncRetrying(
            retry=retry_if_exception_type(TransientFetchError),
            stop=stop_after_attempt(len(schedule) + 1),
            wait=wait,
            sleep=self._sleep,
            before_sleep=self._log_retry,
            reraise=True,
        )

    def _log_retry(self, retry_state: RetryCallState) -> None:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        delay = retry_state.next_action.sleep if retry_state.next_action else 0
        logger.info(
            f"{self.source} request retry {retry_state.attempt_number} in {delay:.0f}s: {exc}"
        )

    async def _get_json(self, http: httpx.AsyncClient, url: str, params: Optional[dict] = None) -> dict:
        """GET with retry on 429 / 5xx / network errors; other 4xx fail immediately."""
        async for attempt in self._retrying():
            with attempt:
                return await self._send(http, url, params)
        raise FetchError(f"No response from {url}")  # unreachable with reraise=True

    async def _send(self, http: httpx.AsyncClient, url: str, params: Optional[dict]) -> dict:
        try:
            response = await http.get(url, params=params)
        except httpx.TransportError as exc:
            raise TransientFetchError(f"Network error: {type(exc).__name__}: {exc}") from exc

        status = response.status_code
        if status == 429 or status >= 500:
            raise TransientFetchError(f"HTTP {status}: {self._error_text(response)}", status_code=status)
        if status >= 400:
            raise FetchError(f"HTTP {status}: {self._error_text(response)}", status_code=status)

        try:
            data = response.json()
        except ValueError as exc:
            raise FetchError(f"Invalid JSON response (HTTP {status})", status_code=status) from exc
        if not isinstance(data, dict):
            raise FetchError(f"Unexpected response shape: {type(data).__name__}", status_code=status)
        return data

    @staticmethod
    def _error_text(response: httpx.Response) -> str:
        """Best human-readable error from a provider response."""
        try:
            body = response.json()
        except ValueError:
            return (response.text or response.reason_phrase or "")[:300]
        if isinstance(body, dict):
            err = body.get("error")
            if isinstance(err, dict) and err.get("message"):
                return str(err["message"])[:300]
            if body.get("message"):
                return str(body["message"])[:300]
        return str(body)[:300]
