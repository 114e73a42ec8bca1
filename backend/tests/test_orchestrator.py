"""
Integration Tests — Engine run orchestrator against the seeded tenant.

Covers commit + snapshot pointer swap, in-flight rejection, stale claim
reclaim, data-quality reporting, per-record timeout isolation, context
load failure, cancellation and same-day rerun identity.
"""

import asyncio
import time
from datetime import date, timedelta
from decimal import Decimal

import pytest
from sqlalchemy import func, select, update

from core.config import Settings
from core.types import RunStatus
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
    utcnow,
)
from engine.notifier import SnapshotNotifier
from engine.orchestrator import SizeEngineOrchestrator
from inventory.positions import PositionStore

TENANT_ID = "tenant-001"
AS_OF = date(2026, 3, 1)


async def _count(session_factory, model, run_id=None) -> int:
    async with session_factory() as db:
        query = select(func.count()).select_from(model)
        if run_id is not None:
            query = query.where(model.run_id == run_id)
        return (await db.execute(query)).scalar_one()


async def _run_row(session_factory, run_id) -> EngineRun:
    async with session_factory() as db:
        return (await db.execute(select(EngineRun).where(EngineRun.run_id == run_id))).scalar_one()


@pytest.mark.asyncio
class TestCommittedRun:
    async def test_commits_every_record_kind(self, session_factory, settings, seeded_tenant):
        orchestrator = SizeEngineOrchestrator(session_factory, settings)
        result = await orchestrator.trigger_run(TENANT_ID, AS_OF)

        assert result.status == RunStatus.COMMITTED
        assert result.errors == []
        assert result.rows_written == {
            "size_health": 11,
            "lost_revenue": 2,
            "markdown_risk": 2,
            "cash_lock": 2,
            "margin_leak": 2,
            "transfer_opportunities": 5,
            "evidence_packs": 3,
            "rollups": 5,
        }
        assert await _count(session_factory, HealthRecord, result.run_id) == 11
        assert await _count(session_factory, TransferOpportunityRecord, result.run_id) == 5

        run = await _run_row(session_factory, result.run_id)
        assert run.status == "committed"
        assert run.finished_at is not None

        async with session_factory() as db:
            snapshot = (
                await db.execute(select(EngineSnapshot).where(EngineSnapshot.tenant_id == TENANT_ID))
            ).scalar_one()
        assert snapshot.run_id == result.run_id
        assert snapshot.as_of_date == AS_OF

    async def test_broken_tee_records(self, session_factory, settings, seeded_tenant):
        result = await SizeEngineOrchestrator(session_factory, settings).trigger_run(TENANT_ID, AS_OF)

        async with session_factory() as db:
            health = (
                await db.execute(
                    select(HealthRecord).where(
                        HealthRecord.run_id == result.run_id,
                        HealthRecord.style_id == "TEE-BROKEN",
                        HealthRecord.store_id.is_(None),
                    )
                )
            ).scalar_one()
            lost = (
                await db.execute(select(LostRevenueRecord).where(LostRevenueRecord.style_id == "TEE-BROKEN"))
            ).scalar_one()
            markdown = (
                await db.execute(select(MarkdownRiskRecord).where(MarkdownRiskRecord.style_id == "TEE-BROKEN"))
            ).scalar_one()
            cash = (
                await db.execute(select(CashLockRecord).where(CashLockRecord.style_id == "TEE-BROKEN"))
            ).scalar_one()
            leak = (
                await db.execute(select(MarginLeakRecord).where(MarginLeakRecord.style_id == "TEE-BROKEN"))
            ).scalar_one()
            evidence = (
                await db.execute(select(EvidencePackRecord).where(EvidencePackRecord.style_id == "TEE-BROKEN"))
            ).scalar_one()
            transfers = (
                await db.execute(
                    select(TransferOpportunityRecord)
                    .where(TransferOpportunityRecord.style_id == "TEE-BROKEN")
                    .order_by(TransferOpportunityRecord.transfer_qty.desc())
                )
            ).scalars().all()

        assert health.curve_state == "broken"
        assert health.core_size_missing is True
        assert health.health_score == pytest.approx(33.75)
        assert lost.lost_units_est == 5
        assert lost.lost_revenue_est == Decimal("200.00")
        assert lost.driver == "core_size_missing"
        assert markdown.markdown_risk_score == pytest.approx(89.9)
        assert markdown.markdown_eta_days == 0
        assert cash.cash_locked_value == Decimal("1152.00")
        assert cash.locked_pct == 1.0
        assert cash.lock_driver == "broken_size"
        assert leak.margin_leak_value == Decimal("896.74")
        assert leak.leak_driver == "markdown_risk"
        assert evidence.severity == "critical"
        assert evidence.evidence_type == "markdown_risk"
        assert evidence.source_tables == ["size_health", "lost_revenue", "markdown_risk", "cash_lock", "margin_leak"]

        assert [(t.source_store_id, t.dest_store_id, t.size_code, t.transfer_qty) for t in transfers] == [
            ("S2", "S1", "S", 4),
            ("S3", "S1", "S", 1),
        ]
        for t in transfers:
            assert t.net_benefit == t.estimated_revenue_gain - t.estimated_transfer_cost
            assert t.net_benefit > 0

    async def test_rollups_match_records(self, session_factory, settings, seeded_tenant):
        result = await SizeEngineOrchestrator(session_factory, settings).trigger_run(TENANT_ID, AS_OF)

        async with session_factory() as db:
            rollups = {
                r.curve_state: r
                for r in (
                    await db.execute(select(SizeHealthRollup).where(SizeHealthRollup.run_id == result.run_id))
                ).scalars()
            }
        assert set(rollups) == {"healthy", "watch", "risk", "broken", "out_of_stock"}
        broken = rollups["broken"]
        assert broken.style_count == 2
        assert broken.core_missing_count == 1
        assert broken.high_md_risk_count == 1
        assert broken.total_lost_revenue == Decimal("5800.00")
        assert broken.total_cash_locked == Decimal("2312.00")
        assert broken.total_margin_leak == Decimal("4256.74")
        assert rollups["healthy"].style_count == 1
        assert rollups["healthy"].avg_health_score == 100.0
        assert rollups["watch"].style_count == 0

    async def test_data_quality_styles_are_listed(self, session_factory, settings, seeded_tenant):
        result = await SizeEngineOrchestrator(session_factory, settings).trigger_run(TENANT_ID, AS_OF)

        skipped = {dq["style_id"] for dq in result.data_quality}
        assert skipped == {"BAD-MAP", "GHOST"}
        assert all(dq["kind"] == "data_quality" for dq in result.data_quality)

        run = await _run_row(session_factory, result.run_id)
        assert {dq["style_id"] for dq in run.data_quality} == skipped

    async def test_publishes_snapshot_committed(self, session_factory, settings, seeded_tenant):
        notifier = SnapshotNotifier()
        events = []
        notifier.subscribe(events.append)

        result = await SizeEngineOrchestrator(session_factory, settings, notifier=notifier).trigger_run(
            TENANT_ID, AS_OF
        )

        assert len(events) == 1
        assert events[0].run_id == result.run_id
        assert events[0].tenant_id == TENANT_ID
        assert events[0].to_payload()["type"] == "snapshot_committed"

    async def test_empty_tenant_commits_empty_snapshot(self, session_factory, settings, seeder):
        await seeder.tenant()
        result = await SizeEngineOrchestrator(session_factory, settings).trigger_run(TENANT_ID, AS_OF)
        assert result.status == RunStatus.COMMITTED
        assert result.rows_written["size_health"] == 0
        assert result.rows_written["rollups"] == 5


@pytest.mark.asyncio
class TestRunControl:
    async def test_second_run_is_rejected_while_one_is_in_flight(self, session_factory, settings, seeded_tenant):
        await seeded_tenant.add(
            EngineRun(run_id="in-flight", tenant_id=TENANT_ID, as_of_date=AS_OF, status="running", started_at=utcnow())
        )
        result = await SizeEngineOrchestrator(session_factory, settings).trigger_run(TENANT_ID, AS_OF)

        assert result.status == RunStatus.REJECTED
        assert result.errors[0]["kind"] == "concurrency_conflict"
        assert await _count(session_factory, HealthRecord) == 0
        async with session_factory() as db:
            runs = (await db.execute(select(EngineRun))).scalars().all()
        assert [r.run_id for r in runs] == ["in-flight"]

    async def test_stale_claim_is_reclaimed(self, session_factory, settings, seeded_tenant):
        await seeded_tenant.add(
            EngineRun(
                run_id="stale",
                tenant_id=TENANT_ID,
                as_of_date=AS_OF,
                status="running",
                started_at=utcnow() - timedelta(seconds=settings.engine_stale_run_seconds + 60),
            )
        )
        result = await SizeEngineOrchestrator(session_factory, settings).trigger_run(TENANT_ID, AS_OF)

        assert result.status == RunStatus.COMMITTED
        stale = await _run_row(session_factory, "stale")
        assert stale.status == "failed"
        assert stale.errors[0]["kind"] == "timeout"

    async def test_other_tenants_do_not_block(self, session_factory, settings, seeded_tenant):
        await seeded_tenant.add(
            EngineRun(run_id="other", tenant_id="tenant-002", as_of_date=AS_OF, status="running", started_at=utcnow())
        )
        result = await SizeEngineOrchestrator(session_factory, settings).trigger_run(TENANT_ID, AS_OF)
        assert result.status == RunStatus.COMMITTED

    async def test_cancel_unknown_run_returns_false(self, session_factory, settings):
        orchestrator = SizeEngineOrchestrator(session_factory, settings)
        assert await orchestrator.cancel_run("no-such-run") is False

    async def test_cancel_mid_run_writes_nothing(self, session_factory, settings, seeded_tenant):
        class CancellingPositionStore(PositionStore):
            orchestrator = None

            async def load_tenant_context(self, tenant_id, as_of_date):
                ctx = await super().load_tenant_context(tenant_id, as_of_date)
                async with self.session_factory() as db:
                    run_id = (
                        await db.execute(select(EngineRun.run_id).where(EngineRun.status == "running"))
                    ).scalar_one()
                assert await self.orchestrator.cancel_run(run_id, tenant_id) is True
                return ctx

        store = CancellingPositionStore(session_factory, settings)
        orchestrator = SizeEngineOrchestrator(session_factory, settings, position_store=store)
        store.orchestrator = orchestrator

        result = await orchestrator.trigger_run(TENANT_ID, AS_OF)

        assert result.status == RunStatus.CANCELLED
        assert (await _run_row(session_factory, result.run_id)).status == "cancelled"
        assert await _count(session_factory, HealthRecord) == 0
        assert await _count(session_factory, EngineSnapshot) == 0

    async def test_cancel_from_another_process_refuses_commit(self, session_factory, settings, seeded_tenant):
        class ExternallyCancelledStore(PositionStore):
            async def load_tenant_context(self, tenant_id, as_of_date):
                ctx = await super().load_tenant_context(tenant_id, as_of_date)
                # Ledger flipped directly, as a cancel from another API process would.
                async with self.session_factory() as db:
                    await db.execute(
                        update(EngineRun).where(EngineRun.status == "running").values(status="cancelled")
                    )
                    await db.commit()
                return ctx

        orchestrator = SizeEngineOrchestrator(
            session_factory, settings, position_store=ExternallyCancelledStore(session_factory, settings)
        )
        result = await orchestrator.trigger_run(TENANT_ID, AS_OF)

        assert result.status == RunStatus.CANCELLED
        assert await _count(session_factory, HealthRecord) == 0
        assert await _count(session_factory, EngineSnapshot) == 0

    async def test_failed_run_keeps_previous_snapshot(self, session_factory, settings, seeded_tenant):
        first = await SizeEngineOrchestrator(session_factory, settings).trigger_run(TENANT_ID, AS_OF)

        class BrokenStore(PositionStore):
            async def load_tenant_context(self, tenant_id, as_of_date):
                raise RuntimeError("positions unavailable")

        orchestrator = SizeEngineOrchestrator(
            session_factory, settings, position_store=BrokenStore(session_factory, settings)
        )
        second = await orchestrator.trigger_run(TENANT_ID, AS_OF + timedelta(days=1))

        assert second.status == RunStatus.FAILED
        assert second.errors[-1]["message"] == "positions unavailable"
        assert (await _run_row(session_factory, second.run_id)).status == "failed"
        async with session_factory() as db:
            snapshot = (await db.execute(select(EngineSnapshot))).scalar_one()
        assert snapshot.run_id == first.run_id


@pytest.mark.asyncio
class TestTimeouts:
    async def test_slow_estimator_drops_only_its_records(self, session_factory, seeded_tenant, monkeypatch):
        import engine.orchestrator as orchestrator_module

        def slow_markdown(*args, **kwargs):
            time.sleep(0.6)

        monkeypatch.setattr(orchestrator_module, "score_markdown_risk", slow_markdown)
        settings = Settings(_env_file=None, engine_estimator_timeout_seconds=0.2)

        result = await SizeEngineOrchestrator(session_factory, settings).trigger_run(TENANT_ID, AS_OF)

        assert result.status == RunStatus.COMMITTED
        timed_out = [e for e in result.errors if e["record"] == "markdown_risk"]
        assert {e["style_id"] for e in timed_out} == {"TEE-BROKEN", "TEE-HEALTHY", "JEAN-XFER"}
        assert all(e["kind"] == "estimator" and e["cause"] == "timeout" for e in timed_out)
        assert result.rows_written["markdown_risk"] == 0
        assert result.rows_written["lost_revenue"] == 2
        assert result.rows_written["cash_lock"] == 2

        async with session_factory() as db:
            evidence = (
                await db.execute(select(EvidencePackRecord).where(EvidencePackRecord.style_id == "TEE-BROKEN"))
            ).scalar_one()
        assert "markdown_risk" not in evidence.source_tables
        assert evidence.evidence_type == "size_health"

    async def test_failing_estimator_is_reported(self, session_factory, settings, seeded_tenant, monkeypatch):
        import engine.orchestrator as orchestrator_module

        def exploding_cash_lock(*args, **kwargs):
            raise ValueError("bad recovery profile")

        monkeypatch.setattr(orchestrator_module, "estimate_cash_lock", exploding_cash_lock)
        result = await SizeEngineOrchestrator(session_factory, settings).trigger_run(TENANT_ID, AS_OF)

        assert result.status == RunStatus.COMMITTED
        assert {e["record"] for e in result.errors} == {"cash_lock"}
        assert result.rows_written["cash_lock"] == 0
        assert result.rows_written["size_health"] == 11

    async def test_load_timeout_fails_run_then_retry_succeeds(self, session_factory, seeded_tenant):
        class SlowPositionStore(PositionStore):
            async def _load_with_retry(self, tenant_id, as_of_date):
                await asyncio.sleep(1.0)

        settings = Settings(_env_file=None, engine_load_timeout_seconds=0.05)
        slow = SizeEngineOrchestrator(
            session_factory, settings, position_store=SlowPositionStore(session_factory, settings)
        )
        failed = await slow.trigger_run(TENANT_ID, AS_OF)

        assert failed.status == RunStatus.FAILED
        assert failed.errors[-1]["kind"] == "timeout"
        assert await _count(session_factory, HealthRecord) == 0

        retried = await SizeEngineOrchestrator(session_factory, Settings(_env_file=None)).trigger_run(
            TENANT_ID, AS_OF
        )
        assert retried.status == RunStatus.COMMITTED


@pytest.mark.asyncio
class TestRerun:
    async def test_same_day_rerun_is_identical(self, session_factory, settings, seeded_tenant):
        orchestrator = SizeEngineOrchestrator(session_factory, settings)
        first = await orchestrator.trigger_run(TENANT_ID, AS_OF)
        second = await orchestrator.trigger_run(TENANT_ID, AS_OF)

        assert first.status == second.status == RunStatus.COMMITTED
        assert first.run_id != second.run_id
        assert first.rows_written == second.rows_written

        async def health_rows(run_id):
            async with session_factory() as db:
                rows = (
                    await db.execute(
                        select(
                            HealthRecord.style_id,
                            HealthRecord.store_id,
                            HealthRecord.health_score,
                            HealthRecord.curve_state,
                            HealthRecord.deviation_score,
                        )
                        .where(HealthRecord.run_id == run_id)
                        .order_by(HealthRecord.style_id, HealthRecord.store_id)
                    )
                ).all()
            return [tuple(r) for r in rows]

        async def leak_rows(run_id):
            async with session_factory() as db:
                rows = (
                    await db.execute(
                        select(MarginLeakRecord.style_id, MarginLeakRecord.cumulative_leak_30d)
                        .where(MarginLeakRecord.run_id == run_id)
                        .order_by(MarginLeakRecord.style_id)
                    )
                ).all()
            return [tuple(r) for r in rows]

        assert await health_rows(first.run_id) == await health_rows(second.run_id)
        assert await leak_rows(first.run_id) == await leak_rows(second.run_id)

    async def test_next_day_accumulates_margin_leak(self, session_factory, settings, seeded_tenant):
        orchestrator = SizeEngineOrchestrator(session_factory, settings)
        first = await orchestrator.trigger_run(TENANT_ID, AS_OF)
        second = await orchestrator.trigger_run(TENANT_ID, AS_OF + timedelta(days=1))

        async with session_factory() as db:
            today = (
                await db.execute(
                    select(MarginLeakRecord).where(
                        MarginLeakRecord.run_id == second.run_id, MarginLeakRecord.style_id == "TEE-BROKEN"
                    )
                )
            ).scalar_one()
            yesterday = (
                await db.execute(
                    select(MarginLeakRecord).where(
                        MarginLeakRecord.run_id == first.run_id, MarginLeakRecord.style_id == "TEE-BROKEN"
                    )
                )
            ).scalar_one()
        assert today.cumulative_leak_30d == today.margin_leak_value + yesterday.margin_leak_value
