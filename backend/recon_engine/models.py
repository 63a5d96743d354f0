"""
Workflow Execution & Reconciliation — Database Models
Workflow configuration, execution tracking, raw source data (Meta insights,
POS orders) and the two reconciled fact tables built from them.
Every row is tenant-owned; nothing here is shared across tenants.
"""

import uuid
import enum
from datetime import datetime, timezone
from sqlalchemy import (
    String, Text, Float, Integer, Boolean, DateTime, Uuid,
    JSON, ForeignKey, Index, UniqueConstraint, text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship
from recon_engine.database import Base


def _utcnow() -> datetime:
    """Naive UTC now — matches DB columns (TIMESTAMP WITHOUT TIME ZONE)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


# ══════════════════════════════════════════════════════════════════════
#  ENUMS
# ══════════════════════════════════════════════════════════════════════

class ExecutionStatus(str, enum.Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


ACTIVE_STATUSES = (ExecutionStatus.PENDING.value, ExecutionStatus.RUNNING.value)
TERMINAL_STATUSES = (
    ExecutionStatus.COMPLETED.value,
    ExecutionStatus.FAILED.value,
    ExecutionStatus.CANCELLED.value,
)


class TriggerType(str, enum.Enum):
    MANUAL = "manual"
    SCHEDULED = "scheduled"


class DateRangeType(str, enum.Enum):
    RELATIVE = "relative"
    ABSOLUTE = "absolute"
    ROLLING = "rolling"


class LogLevel(str, enum.Enum):
    INFO = "info"
    WARN = "warn"
    ERROR = "error"


# ══════════════════════════════════════════════════════════════════════
#  WORKFLOWS
# ══════════════════════════════════════════════════════════════════════

class Workflow(Base):
    """
    Tenant-owned data-pull configuration.

    sources: {"meta": {"enabled": true, "rate_limit_ms": 3000, "account_ids": [...]},
              "pos":  {"enabled": true, "rate_limit_ms": 3000, "shop_ids": [...]}}
    date_range: {"type": "relative", "days": 3} | {"type": "absolute", "since": ..., "until": ...}
                | {"type": "rolling", "offset_days": 1}
    """
    __tablename__ = "workflows"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)
    team_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=True, index=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=True)
    enabled: Mapped[bool] = mapped_column(Boolean, default=True)
    schedule: Mapped[str] = mapped_column(String(120), nullable=True)  # 5-field cron
    sources: Mapped[dict] = mapped_column(JSON, default=dict)
    date_range: Mapped[dict] = mapped_column(JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow, onupdate=_utcnow)

    executions = relationship("WorkflowExecution", back_populates="workflow", cascade="all, delete-orphan")


class WorkflowExecution(Base):
    """One run of a workflow over a concrete [since, until] date range."""
    __tablename__ = "workflow_executions"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    workflow_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("workflows.id", ondelete="CASCADE"), nullable=False)
    tenant_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    team_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=True)
    trigger_type: Mapped[str] = mapped_column(String(20), default=TriggerType.MANUAL.value)
    status: Mapped[str] = mapped_column(String(20), default=ExecutionStatus.PENDING.value)
    date_range_since: Mapped[str] = mapped_column(String(10), nullable=False)  # YYYY-MM-DD
    date_range_until: Mapped[str] = mapped_column(String(10), nullable=False)
    total_days: Mapped[int] = mapped_column(Integer, default=0)
    days_processed: Mapped[int] = mapped_column(Integer, default=0)
    meta_fetched: Mapped[int] = mapped_column(Integer, default=0)
    pos_fetched: Mapped[int] = mapped_column(Integer, default=0)
    errors: Mapped[list] = mapped_column(JSON, default=list)
    dispatch_mode: Mapped[str] = mapped_column(String(10), nullable=True)  # None until dispatched; "queue" | "inline"
    started_at: Mapped[datetime] = mapped_column(DateTime, nullable=True)
    completed_at: Mapped[datetime] = mapped_column(DateTime, nullable=True)
    duration: Mapped[int] = mapped_column(Integer, nullable=True)  # milliseconds
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow, onupdate=_utcnow)

    workflow = relationship("Workflow", back_populates="executions")
    logs = relationship("WorkflowExecutionLog", back_populates="execution", cascade="all, delete-orphan")

    __table_args__ = (
        Index("ix_workflow_executions_tenant_status", "tenant_id", "status"),
        Index("ix_workflow_executions_status_updated", "status", "updated_at"),
        Index("ix_workflow_executions_workflow_created", "workflow_id", "created_at"),
        # Single-flight: at most one running execution per tenant
        Index(
            "uq_workflow_executions_tenant_running",
            "tenant_id",
            unique=True,
            postgresql_where=text("status = 'running'"),
            sqlite_where=text("status = 'running'"),
        ),
    )


class WorkflowExecutionLog(Base):
    """Durable per-execution log line (mirrors the events streamed live)."""
    __tablename__ = "workflow_execution_logs"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    execution_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("workflow_executions.id", ondelete="CASCADE"), nullable=False
    )
    tenant_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    level: Mapped[str] = mapped_column(String(10), default=LogLevel.INFO.value)
    event: Mapped[str] = mapped_column(String(100), nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    details: Mapped[dict] = mapped_column("metadata", JSON, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow)

    execution = relationship("WorkflowExecution", back_populates="logs")

    __table_args__ = (
        Index("ix_workflow_execution_logs_execution_created", "execution_id", "created_at"),
    )


# ══════════════════════════════════════════════════════════════════════
#  SOURCE ENTITIES (credentials stored Fernet-encrypted)
# ══════════════════════════════════════════════════════════════════════

class MetaAdAccount(Base):
    """Meta ad account the tenant pulls insights from."""
    __tablename__ = "meta_ad_accounts"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)
    team_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=True)
    account_id: Mapped[str] = mapped_column(String(64), nullable=False)  # without act_ prefix
    name: Mapped[str] = mapped_column(String(255), nullable=True)
    currency: Mapped[str] = mapped_column(String(10), default="PHP")
    currency_multiplier: Mapped[float] = mapped_column(Float, default=1.0)
    access_token: Mapped[str] = mapped_column(Text, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow, onupdate=_utcnow)

    __table_args__ = (
        UniqueConstraint("tenant_id", "account_id", name="uq_meta_ad_account"),
    )


class PosStore(Base):
    """Pancake POS shop the tenant pulls orders from."""
    __tablename__ = "pos_stores"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)
    team_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=True)
    shop_id: Mapped[str] = mapped_column(String(64), nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=True)
    api_key: Mapped[str] = mapped_column(Text, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow, onupdate=_utcnow)

    __table_args__ = (
        UniqueConstraint("tenant_id", "shop_id", name="uq_pos_store"),
    )


# ══════════════════════════════════════════════════════════════════════
#  RAW SOURCE DATA
# ══════════════════════════════════════════════════════════════════════

class MetaAdInsight(Base):
    """Daily ad-level insight row from the Meta Graph API."""
    __tablename__ = "meta_ad_insights"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    team_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=True)
    account_id: Mapped[str] = mapped_column(String(64), nullable=False)
    campaign_id: Mapped[str] = mapped_column(String(64), nullable=True)
    campaign_name: Mapped[str] = mapped_column(String(500), nullable=True)
    adset_id: Mapped[str] = mapped_column(String(64), nullable=True)
    ad_id: Mapped[str] = mapped_column(String(64), nullable=False)
    ad_name: Mapped[str] = mapped_column(String(500), nullable=True)
    date: Mapped[str] = mapped_column(String(10), nullable=False)  # YYYY-MM-DD
    spend: Mapped[float] = mapped_column(Float, default=0.0)
    clicks: Mapped[int] = mapped_column(Integer, default=0)
    link_clicks: Mapped[int] = mapped_column(Integer, default=0)
    impressions: Mapped[int] = mapped_column(Integer, default=0)
    leads: Mapped[int] = mapped_column(Integer, default=0)
    marketing_associate: Mapped[str] = mapped_column(String(100), nullable=True)
    team_code: Mapped[str] = mapped_column(String(100), nullable=True)
    mapping: Mapped[str] = mapped_column(String(255), nullable=True)
    date_created: Mapped[datetime] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow, onupdate=_utcnow)

    __table_args__ = (
        UniqueConstraint("tenant_id", "account_id", "ad_id", "date", name="uq_meta_insight_tenant_account_ad_date"),
        Index("ix_meta_insights_tenant_date", "tenant_id", "date"),
    )


class PosOrder(Base):
    """Order pulled from Pancake POS, dated by its local (business timezone) day."""
    __tablename__ = "pos_orders"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    team_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=True)
    shop_id: Mapped[str] = mapped_column(String(64), nullable=False)
    pos_order_id: Mapped[str] = mapped_column(String(64), nullable=False)
    inserted_at: Mapped[datetime] = mapped_column(DateTime, nullable=True)
    date_local: Mapped[str] = mapped_column(String(10), nullable=False)  # YYYY-MM-DD
    status: Mapped[int] = mapped_column(Integer, nullable=True)
    status_name: Mapped[str] = mapped_column(String(100), nullable=True)
    cod: Mapped[float] = mapped_column(Float, default=0.0)
    cogs: Mapped[float] = mapped_column(Float, default=0.0)
    total_quantity: Mapped[int] = mapped_column(Integer, default=0)
    p_utm_content: Mapped[str] = mapped_column(Text, nullable=True)
    p_utm_campaign: Mapped[str] = mapped_column(Text, nullable=True)
    tracking: Mapped[str] = mapped_column(String(255), nullable=True)
    mapping: Mapped[str] = mapped_column(String(255), nullable=True)
    items: Mapped[list] = mapped_column(JSON, default=list)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow, onupdate=_utcnow)

    __table_args__ = (
        UniqueConstraint("tenant_id", "shop_id", "pos_order_id", name="uq_pos_order_tenant_shop_order"),
        Index("ix_pos_orders_tenant_date_local", "tenant_id", "date_local"),
    )


# ══════════════════════════════════════════════════════════════════════
#  RECONCILED FACTS
# ══════════════════════════════════════════════════════════════════════

class ReconciledMetrics:
    """Numeric columns shared by ad-level and campaign-level reconciled rows."""

    spend: Mapped[float] = mapped_column(Float, default=0.0)
    clicks: Mapped[int] = mapped_column(Integer, default=0)
    link_clicks: Mapped[int] = mapped_column(Integer, default=0)
    impressions: Mapped[int] = mapped_column(Integer, default=0)
    leads: Mapped[int] = mapped_column(Integer, default=0)

    purchases_pos: Mapped[int] = mapped_column(Integer, default=0)
    processed_purchases_pos: Mapped[int] = mapped_column(Integer, default=0)
    net_purchases_pos: Mapped[int] = mapped_column(Integer, default=0)
    cod_pos: Mapped[float] = mapped_column(Float, default=0.0)
    cogs_pos: Mapped[float] = mapped_column(Float, default=0.0)
    cogs_canceled_pos: Mapped[float] = mapped_column(Float, default=0.0)
    cogs_restocking_pos: Mapped[float] = mapped_column(Float, default=0.0)
    cogs_rts_pos: Mapped[float] = mapped_column(Float, default=0.0)
    cogs_delivered_pos: Mapped[float] = mapped_column(Float, default=0.0)

    # Order status buckets: count + COD sum each
    unconfirmed_count: Mapped[int] = mapped_column(Integer, default=0)
    confirmed_count: Mapped[int] = mapped_column(Integer, default=0)
    restocking_count: Mapped[int] = mapped_column(Integer, default=0)
    waiting_pickup_count: Mapped[int] = mapped_column(Integer, default=0)
    shipped_count: Mapped[int] = mapped_column(Integer, default=0)
    delivered_count: Mapped[int] = mapped_column(Integer, default=0)
    canceled_count: Mapped[int] = mapped_column(Integer, default=0)
    rts_count: Mapped[int] = mapped_column(Integer, default=0)
    unconfirmed_cod_pos: Mapped[float] = mapped_column(Float, default=0.0)
    confirmed_cod_pos: Mapped[float] = mapped_column(Float, default=0.0)
    restocking_cod_pos: Mapped[float] = mapped_column(Float, default=0.0)
    waiting_pickup_cod_pos: Mapped[float] = mapped_column(Float, default=0.0)
    shipped_cod_pos: Mapped[float] = mapped_column(Float, default=0.0)
    delivered_cod_pos: Mapped[float] = mapped_column(Float, default=0.0)
    canceled_cod_pos: Mapped[float] = mapped_column(Float, default=0.0)
    rts_cod_pos: Mapped[float] = mapped_column(Float, default=0.0)

    # Fee estimates
    sf_pos: Mapped[float] = mapped_column(Float, default=0.0)
    ff_pos: Mapped[float] = mapped_column(Float, default=0.0)
    if_pos: Mapped[float] = mapped_column(Float, default=0.0)
    sf_sdr_pos: Mapped[float] = mapped_column(Float, default=0.0)
    ff_sdr_pos: Mapped[float] = mapped_column(Float, default=0.0)
    if_sdr_pos: Mapped[float] = mapped_column(Float, default=0.0)
    cod_fee_pos: Mapped[float] = mapped_column(Float, default=0.0)
    cod_fee_delivered_pos: Mapped[float] = mapped_column(Float, default=0.0)


# Every summable column above, in declaration order. The aggregator sums exactly these.
RECONCILED_NUMERIC_FIELDS = (
    "spend", "clicks", "link_clicks", "impressions", "leads",
    "purchases_pos", "processed_purchases_pos", "net_purchases_pos",
    "cod_pos", "cogs_pos", "cogs_canceled_pos", "cogs_restocking_pos",
    "cogs_rts_pos", "cogs_delivered_pos",
    "unconfirmed_count", "confirmed_count", "restocking_count", "waiting_pickup_count",
    "shipped_count", "delivered_count", "canceled_count", "rts_count",
    "unconfirmed_cod_pos", "confirmed_cod_pos", "restocking_cod_pos", "waiting_pickup_cod_pos",
    "shipped_cod_pos", "delivered_cod_pos", "canceled_cod_pos", "rts_cod_pos",
    "sf_pos", "ff_pos", "if_pos", "sf_sdr_pos", "ff_sdr_pos", "if_sdr_pos",
    "cod_fee_pos", "cod_fee_delivered_pos",
)


class ReconciledAdRow(ReconciledMetrics, Base):
    """
    Ad-level reconciled day. ad_id is the Meta ad id, or "{shop_id}-{pos_order_id}"
    for a synthetic row standing in for an order no ad could be matched to.
    """
    __tablename__ = "reconciled_ad_rows"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    team_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=True)
    date: Mapped[str] = mapped_column(String(10), nullable=False)
    ad_id: Mapped[str] = mapped_column(String(160), nullable=False)
    normalized_ad_id: Mapped[str] = mapped_column(String(160), nullable=True)
    is_synthetic: Mapped[bool] = mapped_column(Boolean, default=False)
    account_id: Mapped[str] = mapped_column(String(64), nullable=True)
    campaign_id: Mapped[str] = mapped_column(String(64), nullable=True)
    campaign_name: Mapped[str] = mapped_column(String(500), nullable=True)
    adset_id: Mapped[str] = mapped_column(String(64), nullable=True)
    ad_name: Mapped[str] = mapped_column(String(500), nullable=True)
    marketing_associate: Mapped[str] = mapped_column(String(100), nullable=True)
    team_code: Mapped[str] = mapped_column(String(100), nullable=True)
    mapping: Mapped[str] = mapped_column(String(255), nullable=True)
    date_created: Mapped[datetime] = mapped_column(DateTime, nullable=True)
    matched_orders: Mapped[list] = mapped_column(JSON, default=list)  # [{shop_id, pos_order_id, cod}]
    shops: Mapped[list] = mapped_column(JSON, default=list)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow, onupdate=_utcnow)

    __table_args__ = (
        UniqueConstraint("tenant_id", "date", "ad_id", name="uq_reconciled_ad_tenant_date_ad"),
        Index("ix_reconciled_ad_rows_tenant_date", "tenant_id", "date"),
    )


class ReconciledCampaignRow(ReconciledMetrics, Base):
    """Campaign-level roll-up of ReconciledAdRow for one day."""
    __tablename__ = "reconciled_campaign_rows"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    team_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=True)
    date: Mapped[str] = mapped_column(String(10), nullable=False)
    campaign_id: Mapped[str] = mapped_column(String(160), nullable=False)
    campaign_name: Mapped[str] = mapped_column(String(500), nullable=True)
    mapping: Mapped[str] = mapped_column(String(255), nullable=True)
    is_unmatched: Mapped[bool] = mapped_column(Boolean, default=False)
    ad_count: Mapped[int] = mapped_column(Integer, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow, onupdate=_utcnow)

    __table_args__ = (
        UniqueConstraint("tenant_id", "date", "campaign_id", name="uq_reconciled_campaign_tenant_date_campaign"),
        Index("ix_reconciled_campaign_rows_tenant_date", "tenant_id", "date"),
    )
