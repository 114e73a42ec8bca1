"""
Size Intelligence Query Service — read side of the engine.

Every read resolves the tenant's snapshot pointer once and then only
touches immutable rows of that run, so readers never see a half-written
run. Money values come back as Decimal; summary totals are sums of the
same cent values the detail rows carry, so they reconcile exactly.

The summary cache is keyed by (tenant_id, run_id). A new commit changes
the pointer, so stale entries are never served; commit notifications just
evict them.
"""

from collections import defaultdict
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal

import structlog
from sqlalchemy import and_, asc, desc, func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from core.config import Settings, get_settings
from core.types import CurveState, RunId, RunStatus, StoreId, StyleId, TenantId, TransferDecisionStatus
from db.models import (
    CashLockRecord,
    EngineRun,
    EngineSnapshot,
    EvidencePackRecord,
    HealthRecord,
    LostRevenueRecord,
    MarginLeakRecord,
    MarkdownRiskRecord,
    SizeHealthRollup,
    Store,
    Style,
    TransferDecision,
    TransferOpportunityRecord,
    money,
    utcnow,
)
from engine.notifier import SnapshotCommitted, SnapshotNotifier
from impact.cash_lock import is_locking_state

logger = structlog.get_logger()

ZERO = Decimal("0.00")

SORT_KEYS = {
    "lost_revenue_est": (func.coalesce(LostRevenueRecord.lost_revenue_est, 0), desc),
    "cash_locked_value": (func.coalesce(CashLockRecord.cash_locked_value, 0), desc),
    "margin_leak_value": (func.coalesce(MarginLeakRecord.margin_leak_value, 0), desc),
    "markdown_risk_score": (func.coalesce(MarkdownRiskRecord.markdown_risk_score, 0), desc),
    "health_score": (HealthRecord.health_score, asc),
}
DEFAULT_SORT = "lost_revenue_est"


class SnapshotNotFound(LookupError):
    """The pinned run is unknown, not committed, or belongs to another tenant."""


# ─── Views ──────────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class SnapshotRef:
    run_id: RunId
    as_of_date: date
    committed_at: datetime | None = None


@dataclass
class Summary:
    run_id: RunId | None
    as_of_date: date | None
    style_count: int = 0
    avg_health_score: float = 0.0
    state_counts: dict[str, int] = field(default_factory=dict)
    core_missing_count: int = 0
    high_md_risk_count: int = 0
    total_lost_revenue: Decimal = ZERO
    total_cash_locked: Decimal = ZERO
    total_margin_leak: Decimal = ZERO
    transfer_count: int = 0
    transfer_units: int = 0
    transfer_net_benefit: Decimal = ZERO


@dataclass
class GroupSummary:
    curve_state: str
    style_count: int
    core_missing_count: int
    high_md_risk_count: int
    avg_health_score: float
    total_lost_revenue: Decimal
    total_cash_locked: Decimal
    total_margin_leak: Decimal


@dataclass
class DetailRow:
    style_id: StyleId
    style_name: str | None
    curve_state: str
    health_score: float
    deviation_score: float
    core_size_missing: bool
    total_on_hand: int
    inventory_value: Decimal
    lost_units_est: int
    lost_revenue_est: Decimal
    lost_revenue_driver: str | None
    markdown_risk_score: float | None
    markdown_eta_days: int | None
    cash_locked_value: Decimal
    locked_pct: float
    margin_leak_value: Decimal
    cumulative_leak_30d: Decimal
    severity: str | None


@dataclass
class DetailPage:
    run_id: RunId | None
    as_of_date: date | None
    curve_state: str
    sort_by: str
    limit: int
    offset: int
    total: int
    items: list[DetailRow] = field(default_factory=list)

    @property
    def next_offset(self) -> int | None:
        end = self.offset + len(self.items)
        return end if end < self.total else None


@dataclass
class TransferRow:
    transfer_id: int
    style_id: StyleId
    size_code: str
    source_store_id: StoreId
    dest_store_id: StoreId
    transfer_qty: int
    transfer_score: float
    source_on_hand: int
    dest_on_hand: int
    dest_velocity: float
    estimated_revenue_gain: Decimal
    estimated_transfer_cost: Decimal
    net_benefit: Decimal
    reason: str
    decision_status: str = TransferDecisionStatus.PENDING.value


@dataclass
class DestinationRollup:
    dest_store_id: StoreId
    store_name: str | None
    opportunity_count: int
    style_count: int
    total_qty: int
    total_net_benefit: Decimal


@dataclass
class EvidencePackView:
    style_id: StyleId
    run_id: RunId
    as_of_date: date
    evidence_type: str
    severity: str
    summary: str
    data_snapshot: dict
    source_tables: list[str]
    created_at: datetime


@dataclass
class StoreHeatmapRow:
    store_id: StoreId
    store_name: str | None
    region: str | None
    state_counts: dict[str, int]
    total_on_hand: int
    inventory_value: Decimal
    cash_locked_value: Decimal
    transfer_in_units: int
    transfer_out_units: int


@dataclass
class DecisionResult:
    status: str
    decided: list[int] = field(default_factory=list)
    not_found: list[int] = field(default_factory=list)


def _empty_state_counts() -> dict[str, int]:
    return {state.value: 0 for state in CurveState}


# ─── Service ────────────────────────────────────────────────────────────────


class SizeIntelligenceQueryService:
    """Read contract over the committed snapshot."""

    def __init__(
        self,
        session_factory: async_sessionmaker,
        settings: Settings | None = None,
        notifier: SnapshotNotifier | None = None,
    ):
        self.session_factory = session_factory
        self.settings = settings or get_settings()
        self._summary_cache: dict[tuple[TenantId, RunId], Summary] = {}
        if notifier is not None:
            notifier.subscribe(self.on_snapshot_committed)

    def on_snapshot_committed(self, event: SnapshotCommitted) -> None:
        self._evict_superseded(event.tenant_id, event.run_id)

    def _evict_superseded(self, tenant_id: TenantId, current_run_id: RunId) -> None:
        """Drop cached summaries of every run but the tenant's current one."""
        stale = [key for key in self._summary_cache if key[0] == tenant_id and key[1] != current_run_id]
        for key in stale:
            del self._summary_cache[key]
        if stale:
            logger.debug("query.cache_evicted", tenant_id=tenant_id, entries=len(stale))

    async def resolve_snapshot(
        self, db: AsyncSession, tenant_id: TenantId, run_id: RunId | None = None
    ) -> SnapshotRef | None:
        """Current committed snapshot, or the pinned run when given."""
        if run_id is None:
            pointer = (
                await db.execute(select(EngineSnapshot).where(EngineSnapshot.tenant_id == tenant_id))
            ).scalar_one_or_none()
            if pointer is None:
                return None
            return SnapshotRef(RunId(pointer.run_id), pointer.as_of_date, pointer.committed_at)

        run = (
            await db.execute(
                select(EngineRun).where(
                    EngineRun.run_id == run_id,
                    EngineRun.tenant_id == tenant_id,
                    EngineRun.status == RunStatus.COMMITTED.value,
                )
            )
        ).scalar_one_or_none()
        if run is None:
            raise SnapshotNotFound(f"No committed run {run_id} for tenant {tenant_id}")
        return SnapshotRef(RunId(run.run_id), run.as_of_date, run.finished_at)

    # ── Summary ─────────────────────────────────────────────────────────────

    async def get_summary(self, tenant_id: TenantId) -> Summary:
        async with self.session_factory() as db:
            snap = await self.resolve_snapshot(db, tenant_id)
            if snap is None:
                return Summary(run_id=None, as_of_date=None, state_counts=_empty_state_counts())

            cached = self._summary_cache.get((tenant_id, snap.run_id))
            if cached is not None:
                return cached
            # Runs committed by another process (Celery) never reach our notifier.
            self._evict_superseded(tenant_id, snap.run_id)

            rollups = await self._rollups(db, tenant_id, snap.run_id)
            transfers = (
                await db.execute(
                    select(TransferOpportunityRecord.transfer_qty, TransferOpportunityRecord.net_benefit).where(
                        TransferOpportunityRecord.tenant_id == tenant_id,
                        TransferOpportunityRecord.run_id == snap.run_id,
                    )
                )
            ).all()

        state_counts = _empty_state_counts()
        summary = Summary(run_id=snap.run_id, as_of_date=snap.as_of_date, state_counts=state_counts)
        score_sum = 0.0
        for r in rollups:
            state_counts[r.curve_state] = r.style_count
            summary.style_count += r.style_count
            summary.core_missing_count += r.core_missing_count
            summary.high_md_risk_count += r.high_md_risk_count
            summary.total_lost_revenue += money(r.total_lost_revenue)
            summary.total_cash_locked += money(r.total_cash_locked)
            summary.total_margin_leak += money(r.total_margin_leak)
            score_sum += r.health_score_sum
        summary.avg_health_score = round(score_sum / summary.style_count, 2) if summary.style_count else 0.0
        summary.transfer_count = len(transfers)
        summary.transfer_units = sum(t.transfer_qty for t in transfers)
        summary.transfer_net_benefit = sum((money(t.net_benefit) for t in transfers), ZERO)

        self._summary_cache[(tenant_id, snap.run_id)] = summary
        return summary

    async def get_group_summaries(self, tenant_id: TenantId) -> list[GroupSummary]:
        async with self.session_factory() as db:
            snap = await self.resolve_snapshot(db, tenant_id)
            if snap is None:
                return []
            rollups = await self._rollups(db, tenant_id, snap.run_id)
        return [
            GroupSummary(
                curve_state=r.curve_state,
                style_count=r.style_count,
                core_missing_count=r.core_missing_count,
                high_md_risk_count=r.high_md_risk_count,
                avg_health_score=r.avg_health_score,
                total_lost_revenue=money(r.total_lost_revenue),
                total_cash_locked=money(r.total_cash_locked),
                total_margin_leak=money(r.total_margin_leak),
            )
            for r in rollups
        ]

    async def _rollups(self, db: AsyncSession, tenant_id: TenantId, run_id: RunId) -> list[SizeHealthRollup]:
        rows = (
            await db.execute(
                select(SizeHealthRollup).where(
                    SizeHealthRollup.tenant_id == tenant_id,
                    SizeHealthRollup.run_id == run_id,
                )
            )
        ).scalars().all()
        order = {state.value: i for i, state in enumerate(CurveState)}
        return sorted(rows, key=lambda r: order.get(r.curve_state, len(order)))

    # ── Detail ──────────────────────────────────────────────────────────────

    async def get_group_detail(
        self,
        tenant_id: TenantId,
        curve_state: CurveState | str,
        limit: int = 50,
        offset: int = 0,
        sort_by: str | None = None,
        created_after: datetime | None = None,
        run_id: RunId | None = None,
    ) -> DetailPage:
        """One page of style detail for a curve state.

        Ordering is total (sort key, then style_id), so consecutive pages
        against the same run are gap- and duplicate-free. Pass the page's
        run_id back to keep paging one snapshot while a new run commits.
        """
        state = CurveState(curve_state)
        sort_by = sort_by or DEFAULT_SORT
        if sort_by not in SORT_KEYS:
            raise ValueError(f"sort_by must be one of {sorted(SORT_KEYS)}")
        if limit < 1 or limit > self.settings.query_page_max_limit:
            raise ValueError(f"limit must be between 1 and {self.settings.query_page_max_limit}")
        if offset < 0:
            raise ValueError("offset must be >= 0")

        async with self.session_factory() as db:
            snap = await self.resolve_snapshot(db, tenant_id, run_id)
            if snap is None:
                return DetailPage(None, None, state.value, sort_by, limit, offset, 0)

            def joined(stmt):
                return (
                    stmt.select_from(HealthRecord)
                    .outerjoin(
                        LostRevenueRecord,
                        and_(
                            LostRevenueRecord.run_id == HealthRecord.run_id,
                            LostRevenueRecord.style_id == HealthRecord.style_id,
                        ),
                    )
                    .outerjoin(
                        MarkdownRiskRecord,
                        and_(
                            MarkdownRiskRecord.run_id == HealthRecord.run_id,
                            MarkdownRiskRecord.style_id == HealthRecord.style_id,
                        ),
                    )
                    .outerjoin(
                        CashLockRecord,
                        and_(
                            CashLockRecord.run_id == HealthRecord.run_id,
                            CashLockRecord.style_id == HealthRecord.style_id,
                        ),
                    )
                    .outerjoin(
                        MarginLeakRecord,
                        and_(
                            MarginLeakRecord.run_id == HealthRecord.run_id,
                            MarginLeakRecord.style_id == HealthRecord.style_id,
                        ),
                    )
                    .outerjoin(
                        EvidencePackRecord,
                        and_(
                            EvidencePackRecord.run_id == HealthRecord.run_id,
                            EvidencePackRecord.style_id == HealthRecord.style_id,
                        ),
                    )
                    .outerjoin(
                        Style,
                        and_(Style.tenant_id == HealthRecord.tenant_id, Style.style_id == HealthRecord.style_id),
                    )
                    .where(
                        HealthRecord.tenant_id == tenant_id,
                        HealthRecord.run_id == snap.run_id,
                        HealthRecord.store_id.is_(None),
                        HealthRecord.curve_state == state.value,
                        *([EvidencePackRecord.created_at > created_after] if created_after else []),
                    )
                )

            total = (await db.execute(joined(select(func.count())))).scalar_one()

            expr, direction = SORT_KEYS[sort_by]
            rows = (
                await db.execute(
                    joined(
                        select(
                            HealthRecord,
                            Style.name,
                            LostRevenueRecord.lost_units_est,
                            LostRevenueRecord.lost_revenue_est,
                            LostRevenueRecord.driver,
                            MarkdownRiskRecord.markdown_risk_score,
                            MarkdownRiskRecord.markdown_eta_days,
                            CashLockRecord.cash_locked_value,
                            CashLockRecord.locked_pct,
                            MarginLeakRecord.margin_leak_value,
                            MarginLeakRecord.cumulative_leak_30d,
                            EvidencePackRecord.severity,
                        )
                    )
                    .order_by(direction(expr), HealthRecord.style_id.asc())
                    .limit(limit)
                    .offset(offset)
                )
            ).all()

        items = [
            DetailRow(
                style_id=StyleId(h.style_id),
                style_name=name,
                curve_state=h.curve_state,
                health_score=h.health_score,
                deviation_score=h.deviation_score,
                core_size_missing=h.core_size_missing,
                total_on_hand=h.total_on_hand,
                inventory_value=money(h.inventory_value),
                lost_units_est=lost_units or 0,
                lost_revenue_est=money(lost_revenue),
                lost_revenue_driver=driver,
                markdown_risk_score=md_score,
                markdown_eta_days=md_eta,
                cash_locked_value=money(cash_locked),
                locked_pct=locked_pct or 0.0,
                margin_leak_value=money(leak),
                cumulative_leak_30d=money(cumulative),
                severity=severity,
            )
            for (
                h,
                name,
                lost_units,
                lost_revenue,
                driver,
                md_score,
                md_eta,
                cash_locked,
                locked_pct,
                leak,
                cumulative,
                severity,
            ) in rows
        ]
        return DetailPage(snap.run_id, snap.as_of_date, state.value, sort_by, limit, offset, total, items)

    # ── Transfers ───────────────────────────────────────────────────────────

    async def get_transfer_opportunities(
        self,
        tenant_id: TenantId,
        style_id: StyleId | None = None,
        dest_store_id: StoreId | None = None,
        limit: int | None = None,
    ) -> list[TransferRow]:
        """Transfers of the current snapshot ranked by net benefit, with decisions overlaid."""
        async with self.session_factory() as db:
            snap = await self.resolve_snapshot(db, tenant_id)
            if snap is None:
                return []
            stmt = (
                select(TransferOpportunityRecord, TransferDecision.status)
                .outerjoin(TransferDecision, TransferDecision.transfer_id == TransferOpportunityRecord.id)
                .where(
                    TransferOpportunityRecord.tenant_id == tenant_id,
                    TransferOpportunityRecord.run_id == snap.run_id,
                )
                .order_by(
                    TransferOpportunityRecord.net_benefit.desc(),
                    TransferOpportunityRecord.transfer_score.desc(),
                    TransferOpportunityRecord.style_id,
                    TransferOpportunityRecord.size_code,
                    TransferOpportunityRecord.dest_store_id,
                    TransferOpportunityRecord.source_store_id,
                )
            )
            if style_id:
                stmt = stmt.where(TransferOpportunityRecord.style_id == style_id)
            if dest_store_id:
                stmt = stmt.where(TransferOpportunityRecord.dest_store_id == dest_store_id)
            if limit:
                stmt = stmt.limit(limit)
            rows = (await db.execute(stmt)).all()

        return [
            TransferRow(
                transfer_id=t.id,
                style_id=StyleId(t.style_id),
                size_code=t.size_code,
                source_store_id=StoreId(t.source_store_id),
                dest_store_id=StoreId(t.dest_store_id),
                transfer_qty=t.transfer_qty,
                transfer_score=t.transfer_score,
                source_on_hand=t.source_on_hand,
                dest_on_hand=t.dest_on_hand,
                dest_velocity=t.dest_velocity,
                estimated_revenue_gain=money(t.estimated_revenue_gain),
                estimated_transfer_cost=money(t.estimated_transfer_cost),
                net_benefit=money(t.net_benefit),
                reason=t.reason,
                decision_status=decision or TransferDecisionStatus.PENDING.value,
            )
            for t, decision in rows
        ]

    async def get_transfer_by_destination(self, tenant_id: TenantId) -> list[DestinationRollup]:
        transfers = await self.get_transfer_opportunities(tenant_id)
        if not transfers:
            return []
        async with self.session_factory() as db:
            names = dict(
                (await db.execute(select(Store.store_id, Store.name).where(Store.tenant_id == tenant_id))).all()
            )

        grouped: dict[StoreId, list[TransferRow]] = defaultdict(list)
        for t in transfers:
            grouped[t.dest_store_id].append(t)

        rollups = [
            DestinationRollup(
                dest_store_id=dest,
                store_name=names.get(dest),
                opportunity_count=len(rows),
                style_count=len({r.style_id for r in rows}),
                total_qty=sum(r.transfer_qty for r in rows),
                total_net_benefit=sum((r.net_benefit for r in rows), ZERO),
            )
            for dest, rows in grouped.items()
        ]
        rollups.sort(key=lambda r: (-r.total_net_benefit, r.dest_store_id))
        return rollups

    async def decide_transfers(
        self,
        tenant_id: TenantId,
        transfer_ids: list[int],
        status: TransferDecisionStatus | str,
        decided_by: str | None = None,
    ) -> DecisionResult:
        """Approve or reject transfers of the current snapshot.

        Opportunity rows are never modified; the decision is an overlay row
        that later decisions overwrite.
        """
        decision = TransferDecisionStatus(status)
        if decision == TransferDecisionStatus.PENDING:
            raise ValueError("A decision must be approved or rejected")

        requested = sorted(set(transfer_ids))
        async with self.session_factory() as db:
            snap = await self.resolve_snapshot(db, tenant_id)
            if snap is None:
                return DecisionResult(status=decision.value, not_found=requested)

            known = set(
                (
                    await db.execute(
                        select(TransferOpportunityRecord.id).where(
                            TransferOpportunityRecord.tenant_id == tenant_id,
                            TransferOpportunityRecord.run_id == snap.run_id,
                            TransferOpportunityRecord.id.in_(requested),
                        )
                    )
                ).scalars()
            )
            existing = {
                d.transfer_id: d
                for d in (
                    await db.execute(select(TransferDecision).where(TransferDecision.transfer_id.in_(sorted(known))))
                ).scalars()
            }
            now = utcnow()
            for transfer_id in sorted(known):
                row = existing.get(transfer_id)
                if row is None:
                    db.add(
                        TransferDecision(
                            transfer_id=transfer_id,
                            tenant_id=tenant_id,
                            status=decision.value,
                            decided_by=decided_by,
                            decided_at=now,
                        )
                    )
                else:
                    row.status = decision.value
                    row.decided_by = decided_by
                    row.decided_at = now
            await db.commit()

        result = DecisionResult(
            status=decision.value,
            decided=sorted(known),
            not_found=[i for i in requested if i not in known],
        )
        logger.info(
            "transfers.decided",
            tenant_id=tenant_id,
            status=decision.value,
            decided=len(result.decided),
            not_found=len(result.not_found),
        )
        return result

    # ── Evidence / heatmap ──────────────────────────────────────────────────

    async def get_evidence_pack(self, tenant_id: TenantId, style_id: StyleId) -> EvidencePackView | None:
        async with self.session_factory() as db:
            snap = await self.resolve_snapshot(db, tenant_id)
            if snap is None:
                return None
            pack = (
                await db.execute(
                    select(EvidencePackRecord).where(
                        EvidencePackRecord.tenant_id == tenant_id,
                        EvidencePackRecord.run_id == snap.run_id,
                        EvidencePackRecord.style_id == style_id,
                    )
                )
            ).scalar_one_or_none()
        if pack is None:
            return None
        return EvidencePackView(
            style_id=StyleId(pack.style_id),
            run_id=RunId(pack.run_id),
            as_of_date=pack.as_of_date,
            evidence_type=pack.evidence_type,
            severity=pack.severity,
            summary=pack.summary,
            data_snapshot=pack.data_snapshot,
            source_tables=list(pack.source_tables),
            created_at=pack.created_at,
        )

    async def get_store_heatmap(self, tenant_id: TenantId) -> list[StoreHeatmapRow]:
        """Per-store curve-state counts and money, ordered by cash locked."""
        async with self.session_factory() as db:
            snap = await self.resolve_snapshot(db, tenant_id)
            if snap is None:
                return []
            health_rows = (
                await db.execute(
                    select(HealthRecord).where(
                        HealthRecord.tenant_id == tenant_id,
                        HealthRecord.run_id == snap.run_id,
                        HealthRecord.store_id.is_not(None),
                    )
                )
            ).scalars().all()
            moves = (
                await db.execute(
                    select(
                        TransferOpportunityRecord.source_store_id,
                        TransferOpportunityRecord.dest_store_id,
                        TransferOpportunityRecord.transfer_qty,
                    ).where(
                        TransferOpportunityRecord.tenant_id == tenant_id,
                        TransferOpportunityRecord.run_id == snap.run_id,
                    )
                )
            ).all()
            stores = {
                s.store_id: s
                for s in (await db.execute(select(Store).where(Store.tenant_id == tenant_id))).scalars()
            }

        heat: dict[str, StoreHeatmapRow] = {}

        def row_for(store_id: str) -> StoreHeatmapRow:
            if store_id not in heat:
                store = stores.get(store_id)
                heat[store_id] = StoreHeatmapRow(
                    store_id=StoreId(store_id),
                    store_name=store.name if store else None,
                    region=store.region if store else None,
                    state_counts=_empty_state_counts(),
                    total_on_hand=0,
                    inventory_value=ZERO,
                    cash_locked_value=ZERO,
                    transfer_in_units=0,
                    transfer_out_units=0,
                )
            return heat[store_id]

        for h in health_rows:
            row = row_for(h.store_id)
            row.state_counts[h.curve_state] += 1
            row.total_on_hand += h.total_on_hand
            value = money(h.inventory_value)
            row.inventory_value += value
            if is_locking_state(h.curve_state):
                row.cash_locked_value += value
        for source, dest, qty in moves:
            row_for(source).transfer_out_units += qty
            row_for(dest).transfer_in_units += qty

        return sorted(heat.values(), key=lambda r: (-r.cash_locked_value, r.store_id))
