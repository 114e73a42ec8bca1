"""
SizeOps Database Models

Multi-tenant via tenant_id on all tables.

Tables:
  Masters / inputs (read-only for the engine):
  1. tenants               - Tenant organizations
  2. stores                - Physical store locations (+ region for transfer cost)
  3. styles                - Sellable product designs (+ price, COGS)
  4. size_codes            - Ordered size label set per tenant
  5. style_sizes           - Expected size run per style (+ core flag, reference curve)
  6. inventory_positions   - On-hand snapshots per (style, size, store, as_of_date)
  7. sales_daily           - Daily unit/revenue history per (style, size, store)

  Engine output (immutable, versioned by run_id + as_of_date):
  8.  size_health_records   - Curve classifier output (aggregate + per store)
  9.  lost_revenue_records  - Lost revenue estimator
  10. markdown_risk_records - Markdown risk estimator
  11. cash_lock_records     - Cash lock estimator
  12. margin_leak_records   - Margin leak estimator
  13. transfer_opportunities - Transfer recommender
  14. evidence_packs        - Evidence compiler
  15. size_health_rollups   - Per curve-state summary rollups

  Run control:
  16. engine_runs           - Run ledger (one running row per tenant)
  17. engine_snapshots      - Committed snapshot pointer per tenant
  18. transfer_decisions    - Approve/reject overlay on transfer opportunities
"""

from datetime import datetime, timezone
from decimal import Decimal

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Column,
    Date,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    text,
)

from db.session import Base

MONEY = Numeric(14, 2)
CENT = Decimal("0.01")

CURVE_STATES_SQL = "('healthy', 'watch', 'risk', 'broken', 'out_of_stock')"


def utcnow() -> datetime:
    """Naive UTC timestamp (all DateTime columns are stored as UTC)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def money(value: float | Decimal | None) -> Decimal:
    """Fixed-point cents for MONEY columns; sums of these reconcile exactly."""
    if value is None:
        return Decimal("0.00")
    return Decimal(str(value)).quantize(CENT)


# ─── 1. Tenants ─────────────────────────────────────────────────────────────


class Tenant(Base):
    __tablename__ = "tenants"

    tenant_id = Column(String(36), primary_key=True)
    name = Column(String(255), nullable=False)
    status = Column(String(20), nullable=False, default="active")
    created_at = Column(DateTime, nullable=False, default=utcnow)

    __table_args__ = (
        CheckConstraint("status IN ('active', 'inactive', 'trial', 'churned')", name="ck_tenant_status"),
    )


# ─── 2. Stores ──────────────────────────────────────────────────────────────


class Store(Base):
    __tablename__ = "stores"

    tenant_id = Column(String(36), ForeignKey("tenants.tenant_id"), primary_key=True)
    store_id = Column(String(64), primary_key=True)
    name = Column(String(255), nullable=False)
    code = Column(String(32))
    region = Column(String(64))
    status = Column(String(20), nullable=False, default="active")


# ─── 3. Styles ──────────────────────────────────────────────────────────────


class Style(Base):
    __tablename__ = "styles"

    tenant_id = Column(String(36), ForeignKey("tenants.tenant_id"), primary_key=True)
    style_id = Column(String(64), primary_key=True)
    name = Column(String(255), nullable=False)
    family_code = Column(String(64))
    created_on = Column(Date, nullable=False)
    unit_price = Column(Float, nullable=False, default=0.0)
    unit_cost = Column(Float, nullable=False, default=0.0)


# ─── 4. Size codes ──────────────────────────────────────────────────────────


class SizeCodeRow(Base):
    __tablename__ = "size_codes"

    tenant_id = Column(String(36), ForeignKey("tenants.tenant_id"), primary_key=True)
    size_code = Column(String(16), primary_key=True)
    sort_order = Column(Integer, nullable=False)
    label = Column(String(32))


# ─── 5. Style size runs ─────────────────────────────────────────────────────


class StyleSize(Base):
    __tablename__ = "style_sizes"

    tenant_id = Column(String(36), primary_key=True)
    style_id = Column(String(64), primary_key=True)
    size_code = Column(String(16), primary_key=True)
    is_core = Column(Boolean, nullable=False, default=False)
    ref_ratio = Column(Float, nullable=False, default=0.0)  # 0 → uniform share


# ─── 6. Inventory positions ─────────────────────────────────────────────────


class InventoryPosition(Base):
    __tablename__ = "inventory_positions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    tenant_id = Column(String(36), nullable=False)
    style_id = Column(String(64), nullable=False)
    size_code = Column(String(16), nullable=False)
    store_id = Column(String(64), nullable=False)
    as_of_date = Column(Date, nullable=False)
    on_hand = Column(Integer, nullable=False)

    __table_args__ = (
        UniqueConstraint("tenant_id", "style_id", "size_code", "store_id", "as_of_date", name="uq_position_cell_date"),
        Index("ix_positions_tenant_date", "tenant_id", "as_of_date"),
    )


# ─── 7. Sales history ───────────────────────────────────────────────────────


class SalesDaily(Base):
    __tablename__ = "sales_daily"

    id = Column(Integer, primary_key=True, autoincrement=True)
    tenant_id = Column(String(36), nullable=False)
    style_id = Column(String(64), nullable=False)
    size_code = Column(String(16), nullable=False)
    store_id = Column(String(64), nullable=False)
    sale_date = Column(Date, nullable=False)
    units = Column(Integer, nullable=False, default=0)
    revenue = Column(Float, nullable=False, default=0.0)

    __table_args__ = (Index("ix_sales_tenant_date", "tenant_id", "sale_date"),)


# ─── 8. Size health ─────────────────────────────────────────────────────────


class HealthRecord(Base):
    __tablename__ = "size_health_records"

    id = Column(Integer, primary_key=True, autoincrement=True)
    tenant_id = Column(String(36), nullable=False)
    run_id = Column(String(36), nullable=False)
    as_of_date = Column(Date, nullable=False)
    style_id = Column(String(64), nullable=False)
    store_id = Column(String(64), nullable=True)  # NULL → network aggregate
    health_score = Column(Float, nullable=False)
    curve_state = Column(String(20), nullable=False)
    deviation_score = Column(Float, nullable=False)
    core_size_missing = Column(Boolean, nullable=False, default=False)
    shallow_depth_count = Column(Integer, nullable=False, default=0)
    total_on_hand = Column(Integer, nullable=False, default=0)
    inventory_value = Column(MONEY, nullable=False, default=0)
    size_status = Column(JSON, nullable=False, default=dict)

    __table_args__ = (
        CheckConstraint("health_score >= 0 AND health_score <= 100", name="ck_health_score_range"),
        CheckConstraint(f"curve_state IN {CURVE_STATES_SQL}", name="ck_health_curve_state"),
        Index("ix_health_run_state", "tenant_id", "run_id", "curve_state"),
        Index("ix_health_run_style", "tenant_id", "run_id", "style_id"),
    )


# ─── 9-12. Impact estimators ────────────────────────────────────────────────


class LostRevenueRecord(Base):
    __tablename__ = "lost_revenue_records"

    id = Column(Integer, primary_key=True, autoincrement=True)
    tenant_id = Column(String(36), nullable=False)
    run_id = Column(String(36), nullable=False)
    as_of_date = Column(Date, nullable=False)
    style_id = Column(String(64), nullable=False)
    lost_units_est = Column(Integer, nullable=False)
    lost_revenue_est = Column(MONEY, nullable=False)
    driver = Column(String(32), nullable=False)

    __table_args__ = (UniqueConstraint("run_id", "style_id", name="uq_lost_revenue_run_style"),)


class MarkdownRiskRecord(Base):
    __tablename__ = "markdown_risk_records"

    id = Column(Integer, primary_key=True, autoincrement=True)
    tenant_id = Column(String(36), nullable=False)
    run_id = Column(String(36), nullable=False)
    as_of_date = Column(Date, nullable=False)
    style_id = Column(String(64), nullable=False)
    markdown_risk_score = Column(Float, nullable=False)
    markdown_eta_days = Column(Integer, nullable=True)
    reason = Column(String(32), nullable=False)

    __table_args__ = (
        UniqueConstraint("run_id", "style_id", name="uq_markdown_run_style"),
        CheckConstraint("markdown_risk_score >= 0 AND markdown_risk_score <= 100", name="ck_markdown_score_range"),
    )


class CashLockRecord(Base):
    __tablename__ = "cash_lock_records"

    id = Column(Integer, primary_key=True, autoincrement=True)
    tenant_id = Column(String(36), nullable=False)
    run_id = Column(String(36), nullable=False)
    as_of_date = Column(Date, nullable=False)
    style_id = Column(String(64), nullable=False)
    inventory_value = Column(MONEY, nullable=False)
    cash_locked_value = Column(MONEY, nullable=False)
    locked_pct = Column(Float, nullable=False)  # fraction 0..1
    expected_release_days = Column(Integer, nullable=True)
    lock_driver = Column(String(32), nullable=False)

    __table_args__ = (UniqueConstraint("run_id", "style_id", name="uq_cash_lock_run_style"),)


class MarginLeakRecord(Base):
    __tablename__ = "margin_leak_records"

    id = Column(Integer, primary_key=True, autoincrement=True)
    tenant_id = Column(String(36), nullable=False)
    run_id = Column(String(36), nullable=False)
    as_of_date = Column(Date, nullable=False)
    style_id = Column(String(64), nullable=False)
    margin_leak_value = Column(MONEY, nullable=False)
    leak_driver = Column(String(32), nullable=False)
    leak_detail = Column(JSON, nullable=False, default=dict)
    cumulative_leak_30d = Column(MONEY, nullable=False)

    __table_args__ = (
        UniqueConstraint("run_id", "style_id", name="uq_margin_leak_run_style"),
        CheckConstraint("cumulative_leak_30d >= margin_leak_value", name="ck_cumulative_leak_covers_day"),
    )


# ─── 13. Transfer opportunities ─────────────────────────────────────────────


class TransferOpportunityRecord(Base):
    __tablename__ = "transfer_opportunities"

    id = Column(Integer, primary_key=True, autoincrement=True)
    tenant_id = Column(String(36), nullable=False)
    run_id = Column(String(36), nullable=False)
    as_of_date = Column(Date, nullable=False)
    style_id = Column(String(64), nullable=False)
    size_code = Column(String(16), nullable=False)
    source_store_id = Column(String(64), nullable=False)
    dest_store_id = Column(String(64), nullable=False)
    transfer_qty = Column(Integer, nullable=False)
    transfer_score = Column(Float, nullable=False)
    source_on_hand = Column(Integer, nullable=False)
    dest_on_hand = Column(Integer, nullable=False)
    dest_velocity = Column(Float, nullable=False)
    estimated_revenue_gain = Column(MONEY, nullable=False)
    estimated_transfer_cost = Column(MONEY, nullable=False)
    net_benefit = Column(MONEY, nullable=False)
    reason = Column(String(255), nullable=False)

    __table_args__ = (
        CheckConstraint("transfer_qty > 0", name="ck_transfer_qty_positive"),
        CheckConstraint("net_benefit > 0", name="ck_transfer_net_benefit_positive"),
        CheckConstraint("source_on_hand > transfer_qty", name="ck_transfer_source_not_depleted"),
        Index("ix_transfers_run_dest", "tenant_id", "run_id", "dest_store_id"),
    )


# ─── 14. Evidence packs ─────────────────────────────────────────────────────


class EvidencePackRecord(Base):
    __tablename__ = "evidence_packs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    tenant_id = Column(String(36), nullable=False)
    run_id = Column(String(36), nullable=False)
    as_of_date = Column(Date, nullable=False)
    style_id = Column(String(64), nullable=False)
    evidence_type = Column(String(32), nullable=False)
    severity = Column(String(20), nullable=False)
    summary = Column(Text, nullable=False)
    data_snapshot = Column(JSON, nullable=False, default=dict)
    source_tables = Column(JSON, nullable=False, default=list)
    created_at = Column(DateTime, nullable=False, default=utcnow)

    __table_args__ = (
        UniqueConstraint("run_id", "style_id", name="uq_evidence_run_style"),
        CheckConstraint("severity IN ('low', 'medium', 'high', 'critical')", name="ck_evidence_severity"),
    )


# ─── 15. Rollups ────────────────────────────────────────────────────────────


class SizeHealthRollup(Base):
    __tablename__ = "size_health_rollups"

    id = Column(Integer, primary_key=True, autoincrement=True)
    tenant_id = Column(String(36), nullable=False)
    run_id = Column(String(36), nullable=False)
    as_of_date = Column(Date, nullable=False)
    curve_state = Column(String(20), nullable=False)
    style_count = Column(Integer, nullable=False, default=0)
    core_missing_count = Column(Integer, nullable=False, default=0)
    high_md_risk_count = Column(Integer, nullable=False, default=0)
    health_score_sum = Column(Float, nullable=False, default=0.0)
    avg_health_score = Column(Float, nullable=False, default=0.0)
    total_lost_revenue = Column(MONEY, nullable=False, default=0)
    total_cash_locked = Column(MONEY, nullable=False, default=0)
    total_margin_leak = Column(MONEY, nullable=False, default=0)

    __table_args__ = (UniqueConstraint("run_id", "curve_state", name="uq_rollup_run_state"),)


# ─── 16-17. Run control ─────────────────────────────────────────────────────


class EngineRun(Base):
    __tablename__ = "engine_runs"

    run_id = Column(String(36), primary_key=True)
    tenant_id = Column(String(36), nullable=False)
    as_of_date = Column(Date, nullable=False)
    status = Column(String(20), nullable=False, default="running")
    started_at = Column(DateTime, nullable=False, default=utcnow)
    finished_at = Column(DateTime, nullable=True)
    rows_written = Column(JSON, nullable=False, default=dict)
    errors = Column(JSON, nullable=False, default=list)
    data_quality = Column(JSON, nullable=False, default=list)

    __table_args__ = (
        CheckConstraint(
            "status IN ('running', 'committed', 'failed', 'cancelled')",
            name="ck_engine_run_status",
        ),
        # At most one in-flight run per tenant.
        Index(
            "uq_engine_run_inflight",
            "tenant_id",
            unique=True,
            postgresql_where=text("status = 'running'"),
            sqlite_where=text("status = 'running'"),
        ),
    )


class EngineSnapshot(Base):
    __tablename__ = "engine_snapshots"

    tenant_id = Column(String(36), primary_key=True)
    run_id = Column(String(36), ForeignKey("engine_runs.run_id"), nullable=False)
    as_of_date = Column(Date, nullable=False)
    committed_at = Column(DateTime, nullable=False, default=utcnow)


# ─── 18. Transfer decisions ─────────────────────────────────────────────────


class TransferDecision(Base):
    __tablename__ = "transfer_decisions"

    transfer_id = Column(Integer, ForeignKey("transfer_opportunities.id"), primary_key=True)
    tenant_id = Column(String(36), nullable=False)
    status = Column(String(20), nullable=False)
    decided_by = Column(String(255))
    decided_at = Column(DateTime, nullable=False, default=utcnow)

    __table_args__ = (CheckConstraint("status IN ('approved', 'rejected')", name="ck_transfer_decision_status"),)
