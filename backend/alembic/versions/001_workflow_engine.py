"""Workflow engine schema: workflows, executions, logs, source entities,
raw source data and reconciled fact tables.

Revision ID: 001
Revises:
Create Date: 2025-06-02

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

UUID = postgresql.UUID(as_uuid=True)
JSON = postgresql.JSON(astext_type=sa.Text())

_INT_METRICS = (
    "clicks", "link_clicks", "impressions", "leads",
    "purchases_pos", "processed_purchases_pos", "net_purchases_pos",
    "unconfirmed_count", "confirmed_count", "restocking_count", "waiting_pickup_count",
    "shipped_count", "delivered_count", "canceled_count", "rts_count",
)
_FLOAT_METRICS = (
    "spend", "cod_pos", "cogs_pos", "cogs_canceled_pos", "cogs_restocking_pos",
    "cogs_rts_pos", "cogs_delivered_pos",
    "unconfirmed_cod_pos", "confirmed_cod_pos", "restocking_cod_pos", "waiting_pickup_cod_pos",
    "shipped_cod_pos", "delivered_cod_pos", "canceled_cod_pos", "rts_cod_pos",
    "sf_pos", "ff_pos", "if_pos", "sf_sdr_pos", "ff_sdr_pos", "if_sdr_pos",
    "cod_fee_pos", "cod_fee_delivered_pos",
)


def _metric_columns() -> list[sa.Column]:
    cols = [sa.Column(name, sa.Integer(), nullable=True, server_default="0") for name in _INT_METRICS]
    cols += [sa.Column(name, sa.Float(), nullable=True, server_default="0") for name in _FLOAT_METRICS]
    return cols


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(), nullable=True, server_default=sa.text("now()")),
        sa.Column("updated_at", sa.DateTime(), nullable=True, server_default=sa.text("now()")),
    ]


def upgrade() -> None:
    op.create_table(
        "workflows",
        sa.Column("id", UUID, nullable=False),
        sa.Column("tenant_id", UUID, nullable=False),
        sa.Column("team_id", UUID, nullable=True),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("enabled", sa.Boolean(), nullable=True, server_default=sa.text("true")),
        sa.Column("schedule", sa.String(120), nullable=True),
        sa.Column("sources", JSON, nullable=True),
        sa.Column("date_range", JSON, nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_workflows_tenant_id", "workflows", ["tenant_id"])
    op.create_index("ix_workflows_team_id", "workflows", ["team_id"])

    op.create_table(
        "workflow_executions",
        sa.Column("id", UUID, nullable=False),
        sa.Column("workflow_id", UUID, nullable=False),
        sa.Column("tenant_id", UUID, nullable=False),
        sa.Column("team_id", UUID, nullable=True),
        sa.Column("trigger_type", sa.String(20), nullable=True, server_default="manual"),
        sa.Column("status", sa.String(20), nullable=True, server_default="pending"),
        sa.Column("date_range_since", sa.String(10), nullable=False),
        sa.Column("date_range_until", sa.String(10), nullable=False),
        sa.Column("total_days", sa.Integer(), nullable=True, server_default="0"),
        sa.Column("days_processed", sa.Integer(), nullable=True, server_default="0"),
        sa.Column("meta_fetched", sa.Integer(), nullable=True, server_default="0"),
        sa.Column("pos_fetched", sa.Integer(), nullable=True, server_default="0"),
        sa.Column("errors", JSON, nullable=True),
        sa.Column("dispatch_mode", sa.String(10), nullable=True),
        sa.Column("started_at", sa.DateTime(), nullable=True),
        sa.Column("completed_at", sa.DateTime(), nullable=True),
        sa.Column("duration", sa.Integer(), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(["workflow_id"], ["workflows.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_workflow_executions_tenant_status", "workflow_executions", ["tenant_id", "status"])
    op.create_index("ix_workflow_executions_status_updated", "workflow_executions", ["status", "updated_at"])
    op.create_index("ix_workflow_executions_workflow_created", "workflow_executions", ["workflow_id", "created_at"])
    op.create_index(
        "uq_workflow_executions_tenant_running",
        "workflow_executions",
        ["tenant_id"],
        unique=True,
        postgresql_where=sa.text("status = 'running'"),
    )

    op.create_table(
        "workflow_execution_logs",
        sa.Column("id", UUID, nullable=False),
        sa.Column("execution_id", UUID, nullable=False),
        sa.Column("tenant_id", UUID, nullable=False),
        sa.Column("level", sa.String(10), nullable=True, server_default="info"),
        sa.Column("event", sa.String(100), nullable=False),
        sa.Column("message", sa.Text(), nullable=False),
        sa.Column("metadata", JSON, nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=True, server_default=sa.text("now()")),
        sa.ForeignKeyConstraint(["execution_id"], ["workflow_executions.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_workflow_execution_logs_execution_created", "workflow_execution_logs", ["execution_id", "created_at"]
    )

    op.create_table(
        "meta_ad_accounts",
        sa.Column("id", UUID, nullable=False),
        sa.Column("tenant_id", UUID, nullable=False),
        sa.Column("team_id", UUID, nullable=True),
        sa.Column("account_id", sa.String(64), nullable=False),
        sa.Column("name", sa.String(255), nullable=True),
        sa.Column("currency", sa.String(10), nullable=True, server_default="PHP"),
        sa.Column("currency_multiplier", sa.Float(), nullable=True, server_default="1"),
        sa.Column("access_token", sa.Text(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=True, server_default=sa.text("true")),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("tenant_id", "account_id", name="uq_meta_ad_account"),
    )
    op.create_index("ix_meta_ad_accounts_tenant_id", "meta_ad_accounts", ["tenant_id"])

    op.create_table(
        "pos_stores",
        sa.Column("id", UUID, nullable=False),
        sa.Column("tenant_id", UUID, nullable=False),
        sa.Column("team_id", UUID, nullable=True),
        sa.Column("shop_id", sa.String(64), nullable=False),
        sa.Column("name", sa.String(255), nullable=True),
        sa.Column("api_key", sa.Text(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=True, server_default=sa.text("true")),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("tenant_id", "shop_id", name="uq_pos_store"),
    )
    op.create_index("ix_pos_stores_tenant_id", "pos_stores", ["tenant_id"])

    op.create_table(
        "meta_ad_insights",
        sa.Column("id", UUID, nullable=False),
        sa.Column("tenant_id", UUID, nullable=False),
        sa.Column("team_id", UUID, nullable=True),
        sa.Column("account_id", sa.String(64), nullable=False),
        sa.Column("campaign_id", sa.String(64), nullable=True),
        sa.Column("campaign_name", sa.String(500), nullable=True),
        sa.Column("adset_id", sa.String(64), nullable=True),
        sa.Column("ad_id", sa.String(64), nullable=False),
        sa.Column("ad_name", sa.String(500), nullable=True),
        sa.Column("date", sa.String(10), nullable=False),
        sa.Column("spend", sa.Float(), nullable=True, server_default="0"),
        sa.Column("clicks", sa.Integer(), nullable=True, server_default="0"),
        sa.Column("link_clicks", sa.Integer(), nullable=True, server_default="0"),
        sa.Column("impressions", sa.Integer(), nullable=True, server_default="0"),
        sa.Column("leads", sa.Integer(), nullable=True, server_default="0"),
        sa.Column("marketing_associate", sa.String(100), nullable=True),
        sa.Column("team_code", sa.String(100), nullable=True),
        sa.Column("mapping", sa.String(255), nullable=True),
        sa.Column("date_created", sa.DateTime(), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("tenant_id", "account_id", "ad_id", "date", name="uq_meta_insight_tenant_account_ad_date"),
    )
    op.create_index("ix_meta_insights_tenant_date", "meta_ad_insights", ["tenant_id", "date"])

    op.create_table(
        "pos_orders",
        sa.Column("id", UUID, nullable=False),
        sa.Column("tenant_id", UUID, nullable=False),
        sa.Column("team_id", UUID, nullable=True),
        sa.Column("shop_id", sa.String(64), nullable=False),
        sa.Column("pos_order_id", sa.String(64), nullable=False),
        sa.Column("inserted_at", sa.DateTime(), nullable=True),
        sa.Column("date_local", sa.String(10), nullable=False),
        sa.Column("status", sa.Integer(), nullable=True),
        sa.Column("status_name", sa.String(100), nullable=True),
        sa.Column("cod", sa.Float(), nullable=True, server_default="0"),
        sa.Column("cogs", sa.Float(), nullable=True, server_default="0"),
        sa.Column("total_quantity", sa.Integer(), nullable=True, server_default="0"),
        sa.Column("p_utm_content", sa.Text(), nullable=True),
        sa.Column("p_utm_campaign", sa.Text(), nullable=True),
        sa.Column("tracking", sa.String(255), nullable=True),
        sa.Column("mapping", sa.String(255), nullable=True),
        sa.Column("items", JSON, nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("tenant_id", "shop_id", "pos_order_id", name="uq_pos_order_tenant_shop_order"),
    )
    op.create_index("ix_pos_orders_tenant_date_local", "pos_orders", ["tenant_id", "date_local"])

    op.create_table(
        "reconciled_ad_rows",
        sa.Column("id", UUID, nullable=False),
        sa.Column("tenant_id", UUID, nullable=False),
        sa.Column("team_id", UUID, nullable=True),
        sa.Column("date", sa.String(10), nullable=False),
        sa.Column("ad_id", sa.String(160), nullable=False),
        sa.Column("normalized_ad_id", sa.String(160), nullable=True),
        sa.Column("is_synthetic", sa.Boolean(), nullable=True, server_default=sa.text("false")),
        sa.Column("account_id", sa.String(64), nullable=True),
        sa.Column("campaign_id", sa.String(64), nullable=True),
        sa.Column("campaign_name", sa.String(500), nullable=True),
        sa.Column("adset_id", sa.String(64), nullable=True),
        sa.Column("ad_name", sa.String(500), nullable=True),
        sa.Column("marketing_associate", sa.String(100), nullable=True),
        sa.Column("team_code", sa.String(100), nullable=True),
        sa.Column("mapping", sa.String(255), nullable=True),
        sa.Column("date_created", sa.DateTime(), nullable=True),
        sa.Column("matched_orders", JSON, nullable=True),
        sa.Column("shops", JSON, nullable=True),
        *_metric_columns(),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("tenant_id", "date", "ad_id", name="uq_reconciled_ad_tenant_date_ad"),
    )
    op.create_index("ix_reconciled_ad_rows_tenant_date", "reconciled_ad_rows", ["tenant_id", "date"])

    op.create_table(
        "reconciled_campaign_rows",
        sa.Column("id", UUID, nullable=False),
        sa.Column("tenant_id", UUID, nullable=False),
        sa.Column("team_id", UUID, nullable=True),
        sa.Column("date", sa.String(10), nullable=False),
        sa.Column("campaign_id", sa.String(160), nullable=False),
        sa.Column("campaign_name", sa.String(500), nullable=True),
        sa.Column("mapping", sa.String(255), nullable=True),
        sa.Column("is_unmatched", sa.Boolean(), nullable=True, server_default=sa.text("false")),
        sa.Column("ad_count", sa.Integer(), nullable=True, server_default="0"),
        *_metric_columns(),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("tenant_id", "date", "campaign_id", name="uq_reconciled_campaign_tenant_date_campaign"),
    )
    op.create_index("ix_reconciled_campaign_rows_tenant_date", "reconciled_campaign_rows", ["tenant_id", "date"])


def downgrade() -> None:
    for table in (
        "reconciled_campaign_rows",
        "reconciled_ad_rows",
        "pos_orders",
        "meta_ad_insights",
        "pos_stores",
        "meta_ad_accounts",
        "workflow_execution_logs",
        "workflow_executions",
        "workflows",
    ):
        op.drop_table(table)
