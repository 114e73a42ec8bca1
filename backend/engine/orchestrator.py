"""
Engine Run Orchestrator — full size-curve recompute for one tenant.

Run lifecycle:
  1. Claim      insert a `running` engine_runs row; the partial unique index
                rejects a second in-flight run for the tenant
  2. Load       PositionStore snapshot (retry + hard timeout; failure aborts)
  3. Compute    styles through a bounded worker pool:
                classify → {4 estimators concurrently, transfers} → evidence
  4. Commit     every record, the curve-state rollups, the run ledger update
                and the snapshot pointer swap in ONE transaction
  5. Notify     SnapshotCommitted to subscribers

Nothing is written for a run until step 4, so a failed or cancelled run
leaves no rows behind and readers keep the previous snapshot.
"""

import asyncio
import uuid
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Callable

import structlog
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from alerts.evidence import EvidencePack, compile_evidence_pack
from core.config import Settings, get_settings
from core.errors import (
    ConcurrencyConflict,
    DataQualityError,
    EngineTimeoutError,
    EstimatorError,
    SizeEngineError,
)
from core.types import CurveState, EvidenceType, RunId, RunStatus, StyleId, TenantId
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
    TransferOpportunityRecord,
    money,
    utcnow,
)
from engine.notifier import SnapshotCommitted, SnapshotNotifier
from impact.cash_lock import CashLockEstimate, RecoveryProfile, estimate_cash_lock
from impact.lost_revenue import LostRevenueEstimate, estimate_lost_revenue
from impact.margin_leak import MarginLeakEstimate, estimate_margin_leak
from impact.markdown_risk import MarkdownRiskEstimate, score_markdown_risk
from inventory.positions import PositionStore, StyleContext, TenantContext
from inventory.size_curve import HealthResult, StyleHealth, classify_style
from supply_chain.transfers import TransferOpportunity, recommend_transfers

logger = structlog.get_logger()

RECORD_KINDS = (
    "size_health",
    "lost_revenue",
    "markdown_risk",
    "cash_lock",
    "margin_leak",
    "transfer_opportunities",
    "evidence_packs",
    "rollups",
)


class RunCancelled(Exception):
    """Raised inside a run once cancel_run() has been called for it."""


@dataclass
class RunResult:
    run_id: RunId
    tenant_id: TenantId
    status: RunStatus
    as_of_date: date
    rows_written: dict[str, int] = field(default_factory=dict)
    errors: list[dict[str, Any]] = field(default_factory=list)
    data_quality: list[dict[str, Any]] = field(default_factory=list)
    started_at: datetime | None = None
    finished_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "tenant_id": self.tenant_id,
            "status": self.status.value,
            "as_of_date": self.as_of_date.isoformat(),
            "rows_written": self.rows_written,
            "errors": self.errors,
            "data_quality": self.data_quality,
        }


@dataclass
class StyleOutcome:
    style_id: StyleId
    health: StyleHealth
    lost: LostRevenueEstimate | None = None
    markdown: MarkdownRiskEstimate | None = None
    cash: CashLockEstimate | None = None
    leak: MarginLeakEstimate | None = None
    transfers: list[TransferOpportunity] = field(default_factory=list)
    evidence: EvidencePack | None = None
    errors: list[dict[str, Any]] = field(default_factory=list)


class SizeEngineOrchestrator:
    """Runs the size engine for a tenant and swaps the committed snapshot."""

    def __init__(
        self,
        session_factory: async_sessionmaker,
        settings: Settings | None = None,
        notifier: SnapshotNotifier | None = None,
        position_store: PositionStore | None = None,
    ):
        self.session_factory = session_factory
        self.settings = settings or get_settings()
        self.notifier = notifier or SnapshotNotifier()
        self.positions = position_store or PositionStore(session_factory, self.settings)
        self._cancelled: set[RunId] = set()

    # ──────────────────────────────────────────────────────────────────────
    # Control
    # ──────────────────────────────────────────────────────────────────────

    async def trigger_run(self, tenant_id: TenantId, as_of_date: date | None = None) -> RunResult:
        """Run the full pipeline. Always returns a RunResult, never raises."""
        as_of = as_of_date or datetime.now(timezone.utc).date()
        run_id = RunId(str(uuid.uuid4()))
        log = logger.bind(tenant_id=tenant_id, run_id=run_id, as_of_date=as_of.isoformat())
        result = RunResult(run_id=run_id, tenant_id=tenant_id, status=RunStatus.RUNNING, as_of_date=as_of)

        try:
            claimed = await self._claim(tenant_id, run_id, as_of)
        except SQLAlchemyError as exc:
            log.error("size_engine.claim_failed", error=str(exc))
            result.status = RunStatus.FAILED
            result.errors.append({"kind": "internal", "message": f"Could not claim run: {exc}"})
            return result
        if not claimed:
            conflict = ConcurrencyConflict("A size engine run is already in flight", tenant_id=tenant_id)
            log.warning("size_engine.run_rejected")
            result.status = RunStatus.REJECTED
            result.errors.append(conflict.to_dict())
            return result

        result.started_at = utcnow()
        log.info("size_engine.run_started")

        try:
            ctx = await self.positions.load_tenant_context(tenant_id, as_of)
            outcomes, data_quality, errors = await self._process_styles(run_id, ctx)
            result.data_quality = data_quality
            result.errors = errors
            self._raise_if_cancelled(run_id)
            result.rows_written = await self._commit(run_id, ctx, outcomes, errors, data_quality)
            result.status = RunStatus.COMMITTED
        except RunCancelled:
            result.status = RunStatus.CANCELLED
            await self._finish(run_id, RunStatus.CANCELLED, result.errors, result.data_quality)
            log.warning("size_engine.run_cancelled")
        except SizeEngineError as exc:
            result.status = RunStatus.FAILED
            result.errors.append(exc.to_dict())
            await self._finish(run_id, RunStatus.FAILED, result.errors, result.data_quality)
            log.error("size_engine.run_failed", error=exc.message, kind=exc.kind)
        except Exception as exc:
            result.status = RunStatus.FAILED
            result.errors.append({"kind": "internal", "message": str(exc)})
            await self._finish(run_id, RunStatus.FAILED, result.errors, result.data_quality)
            log.exception("size_engine.run_crashed")
        finally:
            self._cancelled.discard(run_id)
            result.finished_at = utcnow()

        if result.status == RunStatus.COMMITTED:
            log.info(
                "size_engine.run_committed",
                rows_written=result.rows_written,
                errors=len(result.errors),
                data_quality=len(result.data_quality),
            )
            await self.notifier.publish(
                SnapshotCommitted(tenant_id, run_id, as_of, result.finished_at)
            )
        return result

    async def cancel_run(self, run_id: RunId, tenant_id: TenantId | None = None) -> bool:
        """Cancel an in-flight run. Returns False if the run is not running.

        The ledger row flips to `cancelled` immediately, which frees the
        tenant; the worker stops at its next style boundary, and its commit
        is refused because the ledger is no longer `running`.
        """
        conditions = [EngineRun.run_id == run_id, EngineRun.status == RunStatus.RUNNING.value]
        if tenant_id is not None:
            conditions.append(EngineRun.tenant_id == tenant_id)
        async with self.session_factory() as db:
            res = await db.execute(
                update(EngineRun)
                .where(*conditions)
                .values(status=RunStatus.CANCELLED.value, finished_at=utcnow())
            )
            await db.commit()
        if res.rowcount == 0:
            return False
        self._cancelled.add(run_id)
        logger.info("size_engine.cancel_requested", run_id=run_id)
        return True

    def _raise_if_cancelled(self, run_id: RunId) -> None:
        if run_id in self._cancelled:
            raise RunCancelled(run_id)

    async def _claim(self, tenant_id: TenantId, run_id: RunId, as_of: date) -> bool:
        async with self.session_factory() as db:
            stale_before = utcnow() - timedelta(seconds=self.settings.engine_stale_run_seconds)
            stale = await db.execute(
                update(EngineRun)
                .where(
                    EngineRun.tenant_id == tenant_id,
                    EngineRun.status == RunStatus.RUNNING.value,
                    EngineRun.started_at < stale_before,
                )
                .values(
                    status=RunStatus.FAILED.value,
                    finished_at=utcnow(),
                    errors=[EngineTimeoutError("Run claim went stale and was reclaimed").to_dict()],
                )
            )
            if stale.rowcount:
                logger.warning("size_engine.stale_run_reclaimed", tenant_id=tenant_id, count=stale.rowcount)

            db.add(
                EngineRun(
                    run_id=run_id,
                    tenant_id=tenant_id,
                    as_of_date=as_of,
                    status=RunStatus.RUNNING.value,
                    started_at=utcnow(),
                )
            )
            try:
                await db.commit()
            except IntegrityError:
                await db.rollback()
                return False
        return True

    async def _finish(
        self,
        run_id: RunId,
        status: RunStatus,
        errors: list[dict[str, Any]],
        data_quality: list[dict[str, Any]],
    ) -> None:
        try:
            async with self.session_factory() as db:
                await db.execute(
                    update(EngineRun)
                    .where(EngineRun.run_id == run_id, EngineRun.status != RunStatus.COMMITTED.value)
                    .values(status=status.value, finished_at=utcnow(), errors=errors, data_quality=data_quality)
                )
                await db.commit()
        except SQLAlchemyError as exc:
            # The stale-claim sweep will release the tenant.
            logger.error("size_engine.ledger_update_failed", run_id=run_id, status=status.value, error=str(exc))

    # ──────────────────────────────────────────────────────────────────────
    # Compute
    # ──────────────────────────────────────────────────────────────────────

    async def _process_styles(
        self, run_id: RunId, ctx: TenantContext
    ) -> tuple[list[StyleOutcome], list[dict[str, Any]], list[dict[str, Any]]]:
        recovery = RecoveryProfile.from_history(ctx.health_history)
        semaphore = asyncio.Semaphore(max(1, self.settings.engine_max_workers))

        async def worker(style_ctx: StyleContext) -> StyleOutcome:
            async with semaphore:
                self._raise_if_cancelled(run_id)
                return await self._process_style(style_ctx, ctx, recovery)

        results = await asyncio.gather(*(worker(s) for s in ctx.styles), return_exceptions=True)
        self._raise_if_cancelled(run_id)

        data_quality = [
            DataQualityError("Style has positions but no style master", style_id=sid).to_dict()
            for sid in ctx.unmapped_style_ids
        ]
        errors: list[dict[str, Any]] = []
        outcomes: list[StyleOutcome] = []
        for style_ctx, res in zip(ctx.styles, results):
            style_id = style_ctx.style.style_id
            if isinstance(res, RunCancelled):
                raise res
            if isinstance(res, DataQualityError):
                logger.warning("size_engine.style_skipped", style_id=style_id, reason=res.message)
                data_quality.append(res.to_dict())
            elif isinstance(res, BaseException):
                logger.error("size_engine.style_failed", style_id=style_id, error=str(res))
                errors.append(EstimatorError(str(res), style_id=style_id, record="size_health").to_dict())
            else:
                outcomes.append(res)
                errors.extend(res.errors)

        outcomes.sort(key=lambda o: o.style_id)
        return outcomes, data_quality, errors

    async def _process_style(
        self, style_ctx: StyleContext, ctx: TenantContext, recovery: RecoveryProfile
    ) -> StyleOutcome:
        settings = self.settings
        style_id = style_ctx.style.style_id
        health = await asyncio.to_thread(classify_style, style_ctx, settings)
        outcome = StyleOutcome(style_id=style_id, health=health)

        lost, markdown, cash, leak, transfers = await asyncio.gather(
            self._guarded(
                EvidenceType.LOST_REVENUE.value, style_id, outcome,
                lambda: estimate_lost_revenue(style_ctx, health, settings),
            ),
            self._guarded(
                EvidenceType.MARKDOWN_RISK.value, style_id, outcome,
                lambda: score_markdown_risk(style_ctx, health, settings, ctx.as_of_date),
            ),
            self._guarded(
                EvidenceType.CASH_LOCK.value, style_id, outcome,
                lambda: estimate_cash_lock(health, recovery),
            ),
            self._guarded(
                EvidenceType.MARGIN_LEAK.value, style_id, outcome,
                lambda: estimate_margin_leak(
                    style_ctx, health, settings, ctx.as_of_date, ctx.leak_history.get(style_id)
                ),
            ),
            self._guarded(
                "transfer_opportunities", style_id, outcome,
                lambda: recommend_transfers(style_ctx, settings),
            ),
        )
        outcome.lost, outcome.markdown, outcome.cash, outcome.leak = lost, markdown, cash, leak
        outcome.transfers = transfers or []
        outcome.evidence = compile_evidence_pack(
            style_id,
            settings,
            health=health.aggregate,
            lost=lost,
            markdown=markdown,
            cash=cash,
            leak=leak,
        )
        return outcome

    async def _guarded(self, record: str, style_id: StyleId, outcome: StyleOutcome, fn: Callable[[], Any]) -> Any:
        """Run one record computation in a thread under the estimator timeout.

        A timeout or failure drops only this record and is reported in the
        run's errors.
        """
        timeout = self.settings.engine_estimator_timeout_seconds
        try:
            return await asyncio.wait_for(asyncio.to_thread(fn), timeout=timeout)
        except asyncio.TimeoutError:
            err = EstimatorError(
                f"{record} exceeded {timeout}s",
                style_id=style_id,
                record=record,
                cause=EngineTimeoutError.kind,
            )
        except Exception as exc:
            err = EstimatorError(str(exc) or type(exc).__name__, style_id=style_id, record=record)
        logger.warning("size_engine.record_failed", style_id=style_id, record=record, error=err.message)
        outcome.errors.append(err.to_dict())
        return None

    # ──────────────────────────────────────────────────────────────────────
    # Commit
    # ──────────────────────────────────────────────────────────────────────

    async def _commit(
        self,
        run_id: RunId,
        ctx: TenantContext,
        outcomes: list[StyleOutcome],
        errors: list[dict[str, Any]],
        data_quality: list[dict[str, Any]],
    ) -> dict[str, int]:
        tenant_id, as_of = ctx.tenant_id, ctx.as_of_date
        committed_at = utcnow()
        rows = build_records(run_id, tenant_id, as_of, outcomes, committed_at)
        rollups = build_rollups(run_id, tenant_id, as_of, outcomes, self.settings)

        counts = {kind: len(rows.get(kind, [])) for kind in RECORD_KINDS}
        counts["rollups"] = len(rollups)

        async with self.session_factory() as db:
            for kind in RECORD_KINDS[:-1]:
                db.add_all(rows.get(kind, []))
            db.add_all(rollups)
            await db.flush()

            ledger = await db.execute(
                update(EngineRun)
                .where(EngineRun.run_id == run_id, EngineRun.status == RunStatus.RUNNING.value)
                .values(
                    status=RunStatus.COMMITTED.value,
                    finished_at=committed_at,
                    rows_written=counts,
                    errors=errors,
                    data_quality=data_quality,
                )
            )
            if ledger.rowcount == 0:
                # Cancelled (or reclaimed as stale) while computing.
                await db.rollback()
                raise RunCancelled(run_id)

            await self._swap_pointer(db, tenant_id, run_id, as_of, committed_at)
            await db.commit()
        return counts

    @staticmethod
    async def _swap_pointer(
        db: AsyncSession, tenant_id: TenantId, run_id: RunId, as_of: date, committed_at: datetime
    ) -> None:
        snapshot = (
            await db.execute(select(EngineSnapshot).where(EngineSnapshot.tenant_id == tenant_id))
        ).scalar_one_or_none()
        if snapshot is None:
            db.add(EngineSnapshot(tenant_id=tenant_id, run_id=run_id, as_of_date=as_of, committed_at=committed_at))
        else:
            snapshot.run_id = run_id
            snapshot.as_of_date = as_of
            snapshot.committed_at = committed_at


# ──────────────────────────────────────────────────────────────────────────
# Record builders
# ──────────────────────────────────────────────────────────────────────────


def _health_row(run_id: RunId, tenant_id: TenantId, as_of: date, h: HealthResult) -> HealthRecord:
    return HealthRecord(
        tenant_id=tenant_id,
        run_id=run_id,
        as_of_date=as_of,
        style_id=h.style_id,
        store_id=h.store_id,
        health_score=h.health_score,
        curve_state=h.curve_state.value,
        deviation_score=h.deviation_score,
        core_size_missing=h.core_size_missing,
        shallow_depth_count=h.shallow_depth_count,
        total_on_hand=h.total_on_hand,
        inventory_value=money(h.inventory_value),
        size_status=h.size_status,
    )


def build_records(
    run_id: RunId,
    tenant_id: TenantId,
    as_of: date,
    outcomes: list[StyleOutcome],
    committed_at: datetime,
) -> dict[str, list]:
    rows: dict[str, list] = defaultdict(list)
    key = {"tenant_id": tenant_id, "run_id": run_id, "as_of_date": as_of}

    for o in outcomes:
        rows["size_health"].append(_health_row(run_id, tenant_id, as_of, o.health.aggregate))
        rows["size_health"].extend(_health_row(run_id, tenant_id, as_of, h) for h in o.health.stores)

        if o.lost:
            rows["lost_revenue"].append(
                LostRevenueRecord(
                    **key,
                    style_id=o.style_id,
                    lost_units_est=o.lost.lost_units_est,
                    lost_revenue_est=money(o.lost.lost_revenue_est),
                    driver=o.lost.driver.value,
                )
            )
        if o.markdown:
            rows["markdown_risk"].append(
                MarkdownRiskRecord(
                    **key,
                    style_id=o.style_id,
                    markdown_risk_score=o.markdown.markdown_risk_score,
                    markdown_eta_days=o.markdown.markdown_eta_days,
                    reason=o.markdown.reason.value,
                )
            )
        if o.cash:
            rows["cash_lock"].append(
                CashLockRecord(
                    **key,
                    style_id=o.style_id,
                    inventory_value=money(o.cash.inventory_value),
                    cash_locked_value=money(o.cash.cash_locked_value),
                    locked_pct=o.cash.locked_pct,
                    expected_release_days=o.cash.expected_release_days,
                    lock_driver=o.cash.lock_driver.value,
                )
            )
        if o.leak:
            rows["margin_leak"].append(
                MarginLeakRecord(
                    **key,
                    style_id=o.style_id,
                    margin_leak_value=money(o.leak.margin_leak_value),
                    leak_driver=o.leak.leak_driver.value,
                    leak_detail=o.leak.leak_detail,
                    cumulative_leak_30d=money(o.leak.cumulative_leak_30d),
                )
            )
        for t in o.transfers:
            rows["transfer_opportunities"].append(
                TransferOpportunityRecord(
                    **key,
                    style_id=t.style_id,
                    size_code=t.size_code,
                    source_store_id=t.source_store_id,
                    dest_store_id=t.dest_store_id,
                    transfer_qty=t.transfer_qty,
                    transfer_score=t.transfer_score,
                    source_on_hand=t.source_on_hand,
                    dest_on_hand=t.dest_on_hand,
                    dest_velocity=t.dest_velocity,
                    estimated_revenue_gain=money(t.estimated_revenue_gain),
                    estimated_transfer_cost=money(t.estimated_transfer_cost),
                    net_benefit=money(t.estimated_revenue_gain) - money(t.estimated_transfer_cost),
                    reason=t.reason,
                )
            )
        if o.evidence:
            rows["evidence_packs"].append(
                EvidencePackRecord(
                    **key,
                    style_id=o.style_id,
                    evidence_type=o.evidence.evidence_type.value,
                    severity=o.evidence.severity.value,
                    summary=o.evidence.summary,
                    data_snapshot=o.evidence.data_snapshot,
                    source_tables=o.evidence.source_tables,
                    created_at=committed_at,
                )
            )
    return rows


def build_rollups(
    run_id: RunId,
    tenant_id: TenantId,
    as_of: date,
    outcomes: list[StyleOutcome],
    settings: Settings,
) -> list[SizeHealthRollup]:
    """One rollup per curve state, from the same values that are persisted."""
    zero = Decimal("0.00")
    acc: dict[CurveState, dict[str, Any]] = {
        state: {
            "style_count": 0,
            "core_missing_count": 0,
            "high_md_risk_count": 0,
            "health_score_sum": 0.0,
            "total_lost_revenue": zero,
            "total_cash_locked": zero,
            "total_margin_leak": zero,
        }
        for state in CurveState
    }
    for o in outcomes:
        agg = o.health.aggregate
        bucket = acc[agg.curve_state]
        bucket["style_count"] += 1
        bucket["core_missing_count"] += int(agg.core_size_missing)
        if o.markdown and o.markdown.markdown_risk_score >= settings.markdown_risk_threshold:
            bucket["high_md_risk_count"] += 1
        bucket["health_score_sum"] += agg.health_score
        if o.lost:
            bucket["total_lost_revenue"] += money(o.lost.lost_revenue_est)
        if o.cash:
            bucket["total_cash_locked"] += money(o.cash.cash_locked_value)
        if o.leak:
            bucket["total_margin_leak"] += money(o.leak.margin_leak_value)

    rollups = []
    for state, bucket in acc.items():
        count = bucket["style_count"]
        rollups.append(
            SizeHealthRollup(
                tenant_id=tenant_id,
                run_id=run_id,
                as_of_date=as_of,
                curve_state=state.value,
                avg_health_score=round(bucket["health_score_sum"] / count, 2) if count else 0.0,
                **{**bucket, "health_score_sum": round(bucket["health_score_sum"], 2)},
            )
        )
    return rollups
