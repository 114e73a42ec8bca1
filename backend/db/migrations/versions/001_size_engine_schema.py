"""
Size engine schema - masters, engine output, run control

Revision ID: 001
Revises: None
Create Date: 2026-03-02
"""

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op

revision: str = "001"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None

MONEY = sa.Numeric(14, 2)
CURVE_STATES_SQL = "('healthy', 'watch', 'risk', 'broken', 'out_of_stock')"


def _run_keyed_columns() -> list[sa.Column]:
    return [
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("tenant_id", sa.String(36), nullable=False),
        sa.Column("run_id", sa.String(36), nullable=False),
        sa.Column("as_of_date", sa.Date, nullable=False),
        sa.Column("style_id", sa.String(64), nullable=False),
    ]


def upgrade() -> None:
    # 1. Tenants
    op.create_table(
        "tenants",
        sa.Column("tenant_id", sa.String(36), primary_key=True),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("status", sa.String(20), nullable=False, server_default="active"),
        sa.Column("created_at", sa.DateTime, nullable=False, server_default=sa.func.now()),
        sa.CheckConstraint("status IN ('active', 'inactive', 'trial', 'churned')", name="ck_tenant_status"),
    )

    # 2-5. Masters
    op.create_table(
        "stores",
        sa.Column("tenant_id", sa.String(36), sa.ForeignKey("tenants.tenant_id"), primary_key=True),
        sa.Column("store_id", sa.String(64), primary_key=True),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("code", sa.String(32)),
        sa.Column("region", sa.String(64)),
        sa.Column("status", sa.String(20), nullable=False, server_default="active"),
    )
    op.create_table(
        "styles",
        sa.Column("tenant_id", sa.String(36), sa.ForeignKey("tenants.tenant_id"), primary_key=True),
        sa.Column("style_id", sa.String(64), primary_key=True),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("family_code", sa.String(64)),
        sa.Column("created_on", sa.Date, nullable=False),
        sa.Column("unit_price", sa.Float, nullable=False, server_default="0"),
        sa.Column("unit_cost", sa.Float, nullable=False, server_default="0"),
    )
    op.create_table(
        "size_codes",
        sa.Column("tenant_id", sa.String(36), sa.ForeignKey("tenants.tenant_id"), primary_key=True),
        sa.Column("size_code", sa.String(16), primary_key=True),
        sa.Column("sort_order", sa.Integer, nullable=False),
        sa.Column("label", sa.String(32)),
    )
    op.create_table(
        "style_sizes",
        sa.Column("tenant_id", sa.String(36), primary_key=True),
        sa.Column("style_id", sa.String(64), primary_key=True),
        sa.Column("size_code", sa.String(16), primary_key=True),
        sa.Column("is_core", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("ref_ratio", sa.Float, nullable=False, server_default="0"),
    )

    # 6-7. Inputs
    op.create_table(
        "inventory_positions",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("tenant_id", sa.String(36), nullable=False),
        sa.Column("style_id", sa.String(64), nullable=False),
        sa.Column("size_code", sa.String(16), nullable=False),
        sa.Column("store_id", sa.String(64), nullable=False),
        sa.Column("as_of_date", sa.Date, nullable=False),
        sa.Column("on_hand", sa.Integer, nullable=False),
        sa.UniqueConstraint(
            "tenant_id", "style_id", "size_code", "store_id", "as_of_date", name="uq_position_cell_date"
        ),
    )
    op.create_index("ix_positions_tenant_date", "inventory_positions", ["tenant_id", "as_of_date"])

    op.create_table(
        "sales_daily",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("tenant_id", sa.String(36), nullable=False),
        sa.Column("style_id", sa.String(64), nullable=False),
        sa.Column("size_code", sa.String(16), nullable=False),
        sa.Column("store_id", sa.String(64), nullable=False),
        sa.Column("sale_date", sa.Date, nullable=False),
        sa.Column("units", sa.Integer, nullable=False, server_default="0"),
        sa.Column("revenue", sa.Float, nullable=False, server_default="0"),
    )
    op.create_index("ix_sales_tenant_date", "sales_daily", ["tenant_id", "sale_date"])

    # 8-15. Engine output
    op.create_table(
        "size_health_records",
        *_run_keyed_columns(),
        sa.Column("store_id", sa.String(64), nullable=True),
        sa.Column("health_score", sa.Float, nullable=False),
        sa.Column("curve_state", sa.String(20), nullable=False),
        sa.Column("deviation_score", sa.Float, nullable=False),
        sa.Column("core_size_missing", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("shallow_depth_count", sa.Integer, nullable=False, server_default="0"),
        sa.Column("total_on_hand", sa.Integer, nullable=False, server_default="0"),
        sa.Column("inventory_value", MONEY, nullable=False, server_default="0"),
        sa.Column("size_status", sa.JSON, nullable=False),
        sa.CheckConstraint("health_score >= 0 AND health_score <= 100", name="ck_health_score_range"),
        sa.CheckConstraint(f"curve_state IN {CURVE_STATES_SQL}", name="ck_health_curve_state"),
    )
    op.create_index("ix_health_run_state", "size_health_records", ["tenant_id", "run_id", "curve_state"])
    op.create_index("ix_health_run_style", "size_health_records", ["tenant_id", "run_id", "style_id"])

    op.create_table(
        "lost_revenue_records",
        *_run_keyed_columns(),
        sa.Column("lost_units_est", sa.Integer, nullable=False),
        sa.Column("lost_revenue_est", MONEY, nullable=False),
        sa.Column("driver", sa.String(32), nullable=False),
        sa.UniqueConstraint("run_id", "style_id", name="uq_lost_revenue_run_style"),
    )
    op.create_table(
        "markdown_risk_records",
        *_run_keyed_columns(),
        sa.Column("markdown_risk_score", sa.Float, nullable=False),
        sa.Column("markdown_eta_days", sa.Integer, nullable=True),
        sa.Column("reason", sa.String(32), nullable=False),
        sa.UniqueConstraint("run_id", "style_id", name="uq_markdown_run_style"),
        sa.CheckConstraint("markdown_risk_score >= 0 AND markdown_risk_score <= 100", name="ck_markdown_score_range"),
    )
    op.create_table(
        "cash_lock_records",
        *_run_keyed_columns(),
        sa.Column("inventory_value", MONEY, nullable=False),
        sa.Column("cash_locked_value", MONEY, nullable=False),
        sa.Column("locked_pct", sa.Float, nullable=False),
        sa.Column("expected_release_days", sa.Integer, nullable=True),
        sa.Column("lock_driver", sa.String(32), nullable=False),
        sa.UniqueConstraint("run_id", "style_id", name="uq_cash_lock_run_style"),
    )
    op.create_table(
        "margin_leak_records",
        *_run_keyed_columns(),
        sa.Column("margin_leak_value", MONEY, nullable=False),
        sa.Column("leak_driver", sa.String(32), nullable=False),
        sa.Column("leak_detail", sa.JSON, nullable=False),
        sa.Column("cumulative_leak_30d", MONEY, nullable=False),
        sa.UniqueConstraint("run_id", "style_id", name="uq_margin_leak_run_style"),
        sa.CheckConstraint("cumulative_leak_30d >= margin_leak_value", name="ck_cumulative_leak_covers_day"),
    )
    op.create_table(
        "transfer_opportunities",
        *_run_keyed_columns(),
        sa.Column("size_code", sa.String(16), nullable=False),
        sa.Column("source_store_id", sa.String(64), nullable=False),
        sa.Column("dest_store_id", sa.String(64), nullable=False),
        sa.Column("transfer_qty", sa.Integer, nullable=False),
        sa.Column("transfer_score", sa.Float, nullable=False),
        sa.Column("source_on_hand", sa.Integer, nullable=False),
        sa.Column("dest_on_hand", sa.Integer, nullable=False),
        sa.Column("dest_velocity", sa.Float, nullable=False),
        sa.Column("estimated_revenue_gain", MONEY, nullable=False),
        sa.Column("estimated_transfer_cost", MONEY, nullable=False),
        sa.Column("net_benefit", MONEY, nullable=False),
        sa.Column("reason", sa.String(255), nullable=False),
        sa.CheckConstraint("transfer_qty > 0", name="ck_transfer_qty_positive"),
        sa.CheckConstraint("net_benefit > 0", name="ck_transfer_net_benefit_positive"),
        sa.CheckConstraint("source_on_hand > transfer_qty", name="ck_transfer_source_not_depleted"),
    )
    op.create_index("ix_transfers_run_dest", "transfer_opportunities", ["tenant_id", "run_id", "dest_store_id"])

    op.create_table(
        "evidence_packs",
        *_run_keyed_columns(),
        sa.Column("evidence_type", sa.String(32), nullable=False),
        sa.Column("severity", sa.String(20), nullable=False),
        sa.Column("summary", sa.Text, nullable=False),
        sa.Column("data_snapshot", sa.JSON, nullable=False),
        sa.Column("source_tables", sa.JSON, nullable=False),
        sa.Column("created_at", sa.DateTime, nullable=False, server_default=sa.func.now()),
        sa.UniqueConstraint("run_id", "style_id", name="uq_evidence_run_style"),
        sa.CheckConstraint("severity IN ('low', 'medium', 'high', 'critical')", name="ck_evidence_severity"),
    )

    op.create_table(
        "size_health_rollups",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("tenant_id", sa.String(36), nullable=False),
        sa.Column("run_id", sa.String(36), nullable=False),
        sa.Column("as_of_date", sa.Date, nullable=False),
        sa.Column("curve_state", sa.String(20), nullable=False),
        sa.Column("style_count", sa.Integer, nullable=False, server_default="0"),
        sa.Column("core_missing_count", sa.Integer, nullable=False, server_default="0"),
        sa.Column("high_md_risk_count", sa.Integer, nullable=False, server_default="0"),
        sa.Column("health_score_sum", sa.Float, nullable=False, server_default="0"),
        sa.Column("avg_health_score", sa.Float, nullable=False, server_default="0"),
        sa.Column("total_lost_revenue", MONEY, nullable=False, server_default="0"),
        sa.Column("total_cash_locked", MONEY, nullable=False, server_default="0"),
        sa.Column("total_margin_leak", MONEY, nullable=False, server_default="0"),
        sa.UniqueConstraint("run_id", "curve_state", name="uq_rollup_run_state"),
    )

    # 16-18. Run control
    op.create_table(
        "engine_runs",
        sa.Column("run_id", sa.String(36), primary_key=True),
        sa.Column("tenant_id", sa.String(36), nullable=False),
        sa.Column("as_of_date", sa.Date, nullable=False),
        sa.Column("status", sa.String(20), nullable=False, server_default="running"),
        sa.Column("started_at", sa.DateTime, nullable=False, server_default=sa.func.now()),
        sa.Column("finished_at", sa.DateTime, nullable=True),
        sa.Column("rows_written", sa.JSON, nullable=False),
        sa.Column("errors", sa.JSON, nullable=False),
        sa.Column("data_quality", sa.JSON, nullable=False),
        sa.CheckConstraint(
            "status IN ('running', 'committed', 'failed', 'cancelled')",
            name="ck_engine_run_status",
        ),
    )
    # At most one in-flight run per tenant.
    op.create_index(
        "uq_engine_run_inflight",
        "engine_runs",
        ["tenant_id"],
        unique=True,
        postgresql_where=sa.text("status = 'running'"),
        sqlite_where=sa.text("status = 'running'"),
    )

    op.create_table(
        "engine_snapshots",
        sa.Column("tenant_id", sa.String(36), primary_key=True),
        sa.Column("run_id", sa.String(36), sa.ForeignKey("engine_runs.run_id"), nullable=False),
        sa.Column("as_of_date", sa.Date, nullable=False),
        sa.Column("committed_at", sa.DateTime, nullable=False, server_default=sa.func.now()),
    )

    op.create_table(
        "transfer_decisions",
        sa.Column("transfer_id", sa.Integer, sa.ForeignKey("transfer_opportunities.id"), primary_key=True),
        sa.Column("tenant_id", sa.String(36), nullable=False),
        sa.Column("status", sa.String(20), nullable=False),
        sa.Column("decided_by", sa.String(255)),
        sa.Column("decided_at", sa.DateTime, nullable=False, server_default=sa.func.now()),
        sa.CheckConstraint("status IN ('approved', 'rejected')", name="ck_transfer_decision_status"),
    )


def downgrade() -> None:
    for table in (
        "transfer_decisions",
        "engine_snapshots",
        "engine_runs",
        "size_health_rollups",
        "evidence_packs",
        "transfer_opportunities",
        "margin_leak_records",
        "cash_lock_records",
        "markdown_risk_records",
        "lost_revenue_records",
        "size_health_records",
        "sales_daily",
        "inventory_positions",
        "style_sizes",
        "size_codes",
        "styles",
        "stores",
        "tenants",
    ):
        op.drop_table(table)
