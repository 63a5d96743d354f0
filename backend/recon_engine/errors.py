"""
Error taxonomy for workflow executions.

Per-entity and per-date failures are collected as ExecutionError records on
the execution row and never abort the run. Anything that escapes that
containment is treated as a WorkflowSystemError and fails the whole execution.
"""

from dataclasses import dataclass, asdict, field
from typing import Optional


class WorkflowError(Exception):
    """Base class for classified workflow failures."""

    kind = "workflow"


class ValidationError(WorkflowError):
    """Bad date format, future date, malformed workflow config."""

    kind = "validation"


class FetchError(WorkflowError):
    """A source fetch failed without a retryable cause (4xx other than 429)."""

    kind = "fetch"

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class TransientFetchError(FetchError):
    """429, 5xx or network failure. Retried per backoff schedule before surfacing."""

    kind = "transient_fetch"


class AuthError(WorkflowError):
    """Entity credentials missing or undecryptable."""

    kind = "auth"


class PersistenceError(WorkflowError):
    kind = "persistence"


class ReconciliationError(WorkflowError):
    kind = "reconciliation"


class AggregationError(WorkflowError):
    kind = "aggregation"


class WorkflowSystemError(WorkflowError):
    """Unclassified failure; aborts the execution."""

    kind = "system"


class InvalidTransitionError(WorkflowError):
    """Requested status change is not allowed from the execution's current state."""

    kind = "transition"


@dataclass
class ExecutionError:
    """One structured entry of an execution's error list."""

    date: str
    source: str
    message: str
    entity_id: Optional[str] = None
    kind: str = field(default="fetch")

    def to_dict(self) -> dict:
        data = asdict(self)
        if data["entity_id"] is None:
            data.pop("entity_id")
        return data


def summarize_errors(errors: list[dict]) -> dict:
    """
    Compact view of an execution's error list for completion events:
    counts per source and up to 5 failing ad accounts / shops.
    """
    by_source: dict[str, int] = {}
    accounts: list[str] = []
    shops: list[str] = []
    for err in errors or []:
        source = err.get("source") or "unknown"
        by_source[source] = by_source.get(source, 0) + 1
        entity_id = err.get("entity_id")
        if not entity_id:
            continue
        if source == "meta" and entity_id not in accounts:
            accounts.append(entity_id)
        elif source == "pos" and entity_id not in shops:
            shops.append(entity_id)
    return {
        "total": len(errors or []),
        "by_source": by_source,
        "accounts": accounts[:5],
        "shops": shops[:5],
    }
