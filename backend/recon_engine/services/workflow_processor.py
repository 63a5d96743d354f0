"""
Workflow execution processor — runs one execution end to end.

For each date (oldest first) and each enabled source (meta, then pos), every
source entity is one unit of work: fetch the day from the provider, upsert
the rows, then commit the execution's counters and error list. After the
sources, the day is reconciled (marketing rows) and aggregated (campaign
rows).

Failures are contained at the smallest scope that makes sense:
- one entity fails (fetch, credentials, storage) -> error recorded, next entity
- reconciliation fails for a date -> error recorded, aggregation skipped
- anything unclassified -> execution FAILED, counters and errors kept

Cancellation is cooperative: the persisted status is re-read before each
date, before each entity and after each source. Cancel latency is therefore
at most one entity fetch.
"""

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional

from redis.exceptions import RedisError
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from recon_engine.config import Settings, get_settings
from recon_engine.crypto import decrypt_credentials
from recon_engine.errors import (
    AggregationError,
    AuthError,
    ExecutionError,
    PersistenceError,
    ReconciliationError,
    WorkflowSystemError,
    summarize_errors,
)
from recon_engine.models import (
    ExecutionStatus,
    LogLevel,
    MetaAdAccount,
    PosStore,
    TERMINAL_STATUSES,
    Workflow,
    WorkflowExecution,
)
from recon_engine.providers.base import FetchResult
from recon_engine.providers.registry import SOURCE_PROVIDERS, get_provider
from recon_engine.services import events, execution_state, workflow_queue
from recon_engine.services.cache import CacheStore, empty_snapshot
from recon_engine.services.date_range import get_date_array
from recon_engine.services.events import EventSink
from recon_engine.services.meta_insight_service import upsert_meta_insights
from recon_engine.services.pos_order_service import upsert_pos_orders
from recon_engine.services.reconcile_marketing import reconcile_day
from recon_engine.services.reconcile_sales import aggregate_day
from recon_engine.services.workflow_log import create_log
from recon_engine.utils import elapsed_ms, short_error, utcnow

logger = logging.getLogger(__name__)

SOURCE_ORDER = ("meta", "pos")


@dataclass
class SourceEntity:
    """Snapshot of an ad account / shop, detached from the session."""

    source: str
    entity_id: str
    name: Optional[str]
    team_id: Optional[uuid.UUID]
    credentials: dict = field(default_factory=dict)
    credential_error: Optional[AuthError] = None
    multiplier: float = 1.0


@dataclass
class RunPlan:
    dates: list[str]
    entities: dict[str, list[SourceEntity]]
    rate_limit_ms: dict[str, int]

    @property
    def units_per_day(self) -> int:
        return max(sum(len(v) for v in self.entities.values()), 1)

    @property
    def total_units(self) -> int:
        return len(self.dates) * self.units_per_day


class ExecutionCancelled(Exception):
    """Raised at a checkpoint once the persisted status reads CANCELLED."""


def source_enabled(sources: dict, source: str) -> bool:
    cfg = (sources or {}).get(source) or {}
    return bool(cfg.get("enabled", False))


def _entity_filter(sources: dict, source: str) -> list[str]:
    cfg = (sources or {}).get(source) or {}
    ids = cfg.get("account_ids") if source == "meta" else cfg.get("shop_ids")
    return [str(i) for i in ids or []]


def _snapshot_entity(model: MetaAdAccount | PosStore) -> SourceEntity:
    if isinstance(model, MetaAdAccount):
        entity = SourceEntity(
            source="meta",
            entity_id=model.account_id,
            name=model.name,
            team_id=model.team_id,
            multiplier=model.currency_multiplier or 1.0,
        )
    else:
        entity = SourceEntity(source="pos", entity_id=model.shop_id, name=model.name, team_id=model.team_id)
    try:
        entity.credentials = decrypt_credentials(model)
    except AuthError as exc:
        entity.credential_error = exc
    return entity


class WorkflowProcessor:
    """Processes a single execution against one session."""

    def __init__(
        self,
        db: AsyncSession,
        cache: Optional[CacheStore] = None,
        event_sink: Optional[EventSink] = None,
        settings: Optional[Settings] = None,
        provider_factory: Callable[..., Any] = get_provider,
        sleep: Optional[Callable[[float], Awaitable[Any]]] = None,
        dispatch_next: Optional[Callable[..., Awaitable[Any]]] = None,
        allow_inline: bool = True,
    ):
        self.db = db
        self.cache = cache
        self.events = event_sink
        self.settings = settings or get_settings()
        self.provider_factory = provider_factory
        self._sleep = sleep or asyncio.sleep
        self._dispatch_next = dispatch_next or workflow_queue.enqueue_next_pending_for_tenant
        self.allow_inline = allow_inline

        self.execution: Optional[WorkflowExecution] = None
        self.errors: list[dict] = []
        self.units_done = 0
        self.total_units = 0
        self.snapshot: dict = empty_snapshot()
        self._status_checked_at: Optional[float] = None

    # ── Entry point ───────────────────────────────────────────────────

    async def process(self, execution_id: uuid.UUID) -> Optional[str]:
        """Run the execution. Returns its final status (or PENDING if deferred)."""
        execution = await execution_state.get_execution(self.db, execution_id)
        if execution is None:
            logger.warning(f"Execution {execution_id} not found, nothing to process")
            return None
        if execution.status in TERMINAL_STATUSES:
            logger.info(f"Execution {execution_id} already {execution.status}, skipping")
            return execution.status
        if execution.status == ExecutionStatus.RUNNING.value and not self._is_stale(execution):
            logger.info(f"Execution {execution_id} is already running elsewhere, skipping")
            return execution.status

        self.execution = execution
        self.errors = list(execution.errors or [])
        tenant_id = execution.tenant_id

        try:
            if not await self._claim():
                return self.execution.status
            return await self._run()
        finally:
            try:
                await self._dispatch_next(self.db, tenant_id, self.cache, allow_inline=self.allow_inline)
            except Exception as e:
                logger.error(f"Could not dispatch next pending execution for tenant {tenant_id}: {e}")

    def _is_stale(self, execution: WorkflowExecution) -> bool:
        age_ms = elapsed_ms(execution.updated_at or execution.created_at)
        return age_ms is not None and age_ms > self.settings.workflow_execution_stale_minutes * 60_000

    async def _claim(self) -> bool:
        """
        PENDING -> RUNNING, or take over a stalled RUNNING execution. False when
        another execution of the tenant holds the slot.

        Every date is walked from the start on each attempt, so counters and
        errors left by an earlier attempt are reset in the same statement.
        """
        execution = self.execution
        execution_id, tenant_id = execution.id, execution.tenant_id
        resuming = execution.status == ExecutionStatus.RUNNING.value
        values = {"days_processed": 0, "meta_fetched": 0, "pos_fetched": 0, "errors": []}
        if not resuming:
            values["started_at"] = utcnow()
        try:
            claimed = await execution_state.transition(
                self.db,
                execution_id,
                ExecutionStatus.RUNNING,
                [execution.status],
                **values,
            )
            await self.db.commit()
        except IntegrityError:
            await self.db.rollback()
            await self._release_dispatch()
            logger.info(f"Execution {execution_id} deferred: tenant {tenant_id} already has a running execution")
            return False
        if not claimed:
            await self.db.refresh(execution)
            logger.info(f"Execution {execution_id} not claimable (status {execution.status})")
            return False
        self.errors = []
        if resuming:
            logger.info(f"Execution {execution_id} resumed after a stalled run, counters reset")
        return True

    async def _release_dispatch(self) -> None:
        """Deferred: back to never-dispatched so the tenant's next-pending handoff picks it up again."""
        execution = self.execution
        await execution_state.clear_dispatch(self.db, execution.id)
        await self.db.commit()
        await self.db.refresh(execution)
        if self.cache is not None:
            try:
                await self.cache.clear_job_marker(execution.id)
            except RedisError as e:
                logger.warning(f"Job marker cleanup failed for execution {execution.id}: {e}")

    async def _run(self) -> str:
        execution = self.execution
        try:
            workflow = await self.db.get(Workflow, execution.workflow_id)
            if workflow is None:
                raise WorkflowSystemError(f"Workflow {execution.workflow_id} no longer exists")
            plan = await self._plan(workflow)
            return await self._execute(plan)
        except ExecutionCancelled:
            return await self._finish_cancelled()
        except Exception as exc:
            logger.error(f"Execution {execution.id} failed: {exc}", exc_info=True)
            return await self._finish_failed(exc)

    # ── Planning ──────────────────────────────────────────────────────

    async def _plan(self, workflow: Workflow) -> RunPlan:
        execution = self.execution
        sources = dict(workflow.sources or {})
        dates = get_date_array(execution.date_range_since, execution.date_range_until)

        entities: dict[str, list[SourceEntity]] = {}
        if source_enabled(sources, "meta"):
            entities["meta"] = await self._load_entities(MetaAdAccount, MetaAdAccount.account_id, sources, "meta")
        if source_enabled(sources, "pos"):
            entities["pos"] = await self._load_entities(PosStore, PosStore.shop_id, sources, "pos")

        defaults = {"meta": self.settings.meta_rate_limit_delay_ms, "pos": self.settings.pos_rate_limit_delay_ms}
        rate_limit_ms = {}
        for source in SOURCE_ORDER:
            configured = ((sources.get(source) or {}).get("rate_limit_ms"))
            rate_limit_ms[source] = int(configured) if configured is not None else defaults[source]

        return RunPlan(dates=dates, entities=entities, rate_limit_ms=rate_limit_ms)

    async def _load_entities(self, model, key_column, sources: dict, source: str) -> list[SourceEntity]:
        execution = self.execution
        query = select(model).where(model.tenant_id == execution.tenant_id, model.is_active.is_(True))
        if execution.team_id:
            query = query.where(model.team_id == execution.team_id)
        wanted = _entity_filter(sources, source)
        if wanted:
            query = query.where(key_column.in_(wanted))
        rows = (await self.db.execute(query.order_by(key_column))).scalars().all()
        return [_snapshot_entity(row) for row in rows]

    # ── Main loop ─────────────────────────────────────────────────────

    async def _execute(self, plan: RunPlan) -> str:
        execution = self.execution
        self.total_units = plan.total_units
        execution.total_days = len(plan.dates)
        await self._log(
            events.EXECUTION_STARTED,
            f"Execution started: {len(plan.dates)} day(s), {plan.total_units} unit(s)",
            details={
                "since": execution.date_range_since,
                "until": execution.date_range_until,
                "sources": sorted(plan.entities),
                "total_units": plan.total_units,
            },
        )
        await self.db.commit()
        await self._emit(events.EXECUTION_STARTED, {
            "total_days": len(plan.dates),
            "total_units": plan.total_units,
            "units_per_day": plan.units_per_day,
        })

        for date in plan.dates:
            await self._checkpoint()
            await self._start_date(date, plan)

            for source in SOURCE_ORDER:
                if source not in plan.entities:
                    continue
                entities = plan.entities[source]
                for index, entity in enumerate(entities):
                    await self._checkpoint()
                    await self._process_entity(date, entity)
                    if index < len(entities) - 1:
                        await self._rate_limit(plan.rate_limit_ms[source])
                await self._checkpoint()

            if not any(plan.entities.values()):
                await self._complete_unit(None)

            await self._reconcile_date(date)
            execution.days_processed = (execution.days_processed or 0) + 1
            await self.db.commit()

        await self._checkpoint()
        return await self._finish_completed()

    async def _start_date(self, date: str, plan: RunPlan) -> None:
        self.snapshot = empty_snapshot(
            date,
            meta_total=len(plan.entities.get("meta", [])),
            pos_total=len(plan.entities.get("pos", [])),
        )
        await self._cache_progress()
        await self._emit(events.EXECUTION_DATE_STARTED, {"date": date})

    async def _process_entity(self, date: str, entity: SourceEntity) -> None:
        """One unit of work: fetch, persist, commit counters. Never raises for entity-level failures."""
        execution = self.execution
        if entity.credential_error is not None:
            await self._record_error(date, entity.source, entity.credential_error, entity.entity_id)
            await self._complete_unit(entity.source)
            return

        provider = self.provider_factory(SOURCE_PROVIDERS[entity.source], entity.credentials, settings=self.settings)
        result: FetchResult = await provider.fetch(entity.entity_id, date)
        if not result.ok:
            await self._record_error(date, entity.source, result.error, entity.entity_id)
            await self._complete_unit(entity.source)
            return

        try:
            if entity.source == "meta":
                written = await upsert_meta_insights(
                    self.db, execution.tenant_id, entity.entity_id, result.records,
                    team_id=entity.team_id, multiplier=entity.multiplier,
                )
                execution.meta_fetched = (execution.meta_fetched or 0) + written
                fetched_event = events.EXECUTION_META_FETCHED
            else:
                written = await upsert_pos_orders(
                    self.db, execution.tenant_id, entity.entity_id, result.records, team_id=entity.team_id,
                )
                execution.pos_fetched = (execution.pos_fetched or 0) + written
                fetched_event = events.EXECUTION_POS_FETCHED
        except PersistenceError as exc:
            await self._rollback()
            await self._record_error(date, entity.source, exc, entity.entity_id)
            await self._complete_unit(entity.source)
            return

        await self._complete_unit(entity.source)
        await self._emit(fetched_event, {
            "date": date,
            "entity_id": entity.entity_id,
            "fetched": len(result.records),
            "stored": written,
        })

    async def _complete_unit(self, source: Optional[str]) -> None:
        """Persist authoritative counters, then the progress snapshot and event."""
        execution = self.execution
        self.units_done += 1
        if source:
            field_name = f"{source}_processed"
            self.snapshot[field_name] = int(self.snapshot.get(field_name) or 0) + 1
        execution.errors = list(self.errors)
        await self.db.commit()

        await self._cache_progress()
        await self._emit(events.EXECUTION_PROGRESS, self.progress_payload())

    async def _reconcile_date(self, date: str) -> None:
        if not self.settings.workflow_reconcile_enabled:
            return
        execution = self.execution
        try:
            stats = await reconcile_day(self.db, execution.tenant_id, date, team_id=execution.team_id, cache=self.cache)
            await self.db.commit()
        except ReconciliationError as exc:
            await self._rollback()
            await self._record_error(date, "reconcile", exc)
            await self._log(
                events.EXECUTION_RECONCILE_SALES_SKIPPED,
                f"Sales aggregation skipped for {date}: marketing reconciliation failed",
                level=LogLevel.WARN,
                details={"date": date},
            )
            execution.errors = list(self.errors)
            await self.db.commit()
            await self._emit(events.EXECUTION_RECONCILE_SALES_SKIPPED, {"date": date, "reason": short_error(exc)})
            return
        await self._emit(events.MARKETING_UPDATED, stats)

        try:
            await aggregate_day(self.db, execution.tenant_id, date, team_id=execution.team_id, cache=self.cache)
            await self.db.commit()
        except AggregationError as exc:
            await self._rollback()
            await self._record_error(date, "aggregate", exc)
            execution.errors = list(self.errors)
            await self.db.commit()

    async def _rate_limit(self, delay_ms: int) -> None:
        if delay_ms and delay_ms > 0:
            await self._sleep(delay_ms / 1000)

    # ── Cancellation ──────────────────────────────────────────────────

    async def _checkpoint(self) -> None:
        """Raise ExecutionCancelled if the persisted status says so."""
        interval = self.settings.workflow_cancel_poll_seconds
        now = time.monotonic()
        if interval > 0 and self._status_checked_at is not None and now - self._status_checked_at < interval:
            return
        self._status_checked_at = now
        status = await execution_state.fetch_status(self.db, self.execution.id)
        if status == ExecutionStatus.CANCELLED.value:
            raise ExecutionCancelled()

    # ── Terminal states ───────────────────────────────────────────────

    async def _finish_completed(self) -> str:
        execution = self.execution
        values = execution_state.terminal_values(execution)
        changed = await execution_state.transition(
            self.db, execution.id, ExecutionStatus.COMPLETED, [ExecutionStatus.RUNNING],
            errors=list(self.errors), **values,
        )
        if not changed:
            await self.db.commit()
            await self.db.refresh(execution)
            if execution.status == ExecutionStatus.CANCELLED.value:
                return await self._finish_cancelled()
            return execution.status

        summary = summarize_errors(self.errors)
        if self.errors:
            event, message, level = (
                events.EXECUTION_COMPLETED_WITH_ERRORS,
                f"Execution completed with {summary['total']} error(s)",
                LogLevel.WARN,
            )
        else:
            event, message, level = events.EXECUTION_COMPLETED, "Execution completed", LogLevel.INFO
        await self._log(event, message, level=level, details=self._final_details(summary))
        await self.db.commit()
        logger.info(
            f"Execution {execution.id} completed: {execution.days_processed}/{execution.total_days} days, "
            f"meta {execution.meta_fetched}, pos {execution.pos_fetched}, {len(self.errors)} errors"
        )
        await self._emit(event, self._final_details(summary))
        return ExecutionStatus.COMPLETED.value

    async def _finish_cancelled(self) -> str:
        execution = self.execution
        await self.db.commit()
        await self.db.refresh(execution)
        if execution.completed_at is None:
            values = execution_state.terminal_values(execution)
            await execution_state.transition(
                self.db, execution.id, ExecutionStatus.CANCELLED, [ExecutionStatus.CANCELLED], **values,
            )
        await self._log(
            events.EXECUTION_CANCELLED,
            f"Execution cancelled after {self.units_done}/{self.total_units} unit(s)",
            level=LogLevel.WARN,
            details={"units_done": self.units_done, "total_units": self.total_units},
        )
        await self.db.commit()
        logger.info(f"Execution {execution.id} cancelled after {self.units_done}/{self.total_units} units")
        await self._emit(events.EXECUTION_CANCELLED, {"units_done": self.units_done, "total_units": self.total_units})
        return ExecutionStatus.CANCELLED.value

    async def _finish_failed(self, exc: Exception) -> str:
        execution = self.execution
        await self._rollback()
        message = short_error(exc)
        changed = await execution_state.mark_failed(
            self.db, execution, source="system", message=message,
            kind=getattr(exc, "kind", "system"),
        )
        if changed:
            self.errors = list(execution.errors or [])
            await self._log(events.EXECUTION_FAILED, f"Execution failed: {message}", level=LogLevel.ERROR)
        await self.db.commit()
        await self.db.refresh(execution)
        if changed:
            await self._emit(events.EXECUTION_FAILED, {"error": message, "summary": summarize_errors(self.errors)})
        return execution.status

    def _final_details(self, summary: dict) -> dict:
        execution = self.execution
        return {
            "days_processed": execution.days_processed,
            "total_days": execution.total_days,
            "meta_fetched": execution.meta_fetched,
            "pos_fetched": execution.pos_fetched,
            "duration": execution.duration,
            "errors": summary,
        }

    # ── Helpers ───────────────────────────────────────────────────────

    async def _rollback(self) -> None:
        """Drop the failed unit's writes and reload the execution's committed state."""
        await self.db.rollback()
        await self.db.refresh(self.execution)

    async def _record_error(self, date: str, source: str, exc: Exception, entity_id: Optional[str] = None) -> None:
        error = ExecutionError(
            date=date,
            source=source,
            message=short_error(exc),
            entity_id=entity_id,
            kind=getattr(exc, "kind", "system"),
        ).to_dict()
        self.errors.append(error)
        label = f"{source} {entity_id}" if entity_id else source
        logger.warning(f"Execution {self.execution.id}: {label} failed for {date}: {error['message']}")
        await self._log(events.EXECUTION_ERROR, f"{label} failed for {date}: {error['message']}",
                        level=LogLevel.ERROR, details=error)
        await self._emit(events.EXECUTION_ERROR, error)

    async def _log(self, event: str, message: str, level: LogLevel = LogLevel.INFO, details: Optional[dict] = None):
        await create_log(self.db, self.execution.id, self.execution.tenant_id, event, message, level=level, details=details)

    async def _emit(self, event: str, payload: Optional[dict] = None) -> None:
        if self.events is not None:
            await self.events.emit(self.execution.id, event, payload, tenant_id=self.execution.tenant_id)

    async def _cache_progress(self) -> None:
        if self.cache is None:
            return
        try:
            self.snapshot = await self.cache.set_progress(self.execution.id, self.snapshot)
        except RedisError as e:
            logger.warning(f"Progress snapshot write failed for execution {self.execution.id}: {e}")

    def progress_payload(self) -> dict:
        execution = self.execution
        return {
            "progress": {"current": self.units_done, "total": self.total_units},
            "day_progress": self.snapshot,
            "days_processed": execution.days_processed,
            "total_days": execution.total_days,
            "meta_fetched": execution.meta_fetched,
            "pos_fetched": execution.pos_fetched,
            "error_count": len(self.errors),
        }


async def run_execution(execution_id: uuid.UUID, allow_inline: bool = True) -> Optional[str]:
    """Open a session plus cache/event clients and process one execution."""
    from recon_engine.database import async_session

    cache = CacheStore()
    sink = EventSink()
    try:
        async with async_session() as db:
            processor = WorkflowProcessor(db, cache, sink, allow_inline=allow_inline)
            return await processor.process(execution_id)
    finally:
        await cache.close()
        await sink.close()


async def get_progress(execution: WorkflowExecution, cache: Optional[CacheStore] = None) -> dict:
    """
    Progress view for the API: the cached per-day snapshot (if any) merged
    with the authoritative counters from the execution row.
    """
    snapshot = None
    if cache is not None:
        try:
            snapshot = await cache.get_progress(execution.id)
        except RedisError as e:
            logger.warning(f"Progress snapshot read failed for execution {execution.id}: {e}")
    return {
        "execution_id": str(execution.id),
        "status": execution.status,
        "days_processed": execution.days_processed or 0,
        "total_days": execution.total_days or 0,
        "meta_fetched": execution.meta_fetched or 0,
        "pos_fetched": execution.pos_fetched or 0,
        "error_count": len(execution.errors or []),
        "day_progress": snapshot,
        "started_at": execution.started_at.isoformat() if execution.started_at else None,
        "completed_at": execution.completed_at.isoformat() if execution.completed_at else None,
        "duration": execution.duration,
    }
