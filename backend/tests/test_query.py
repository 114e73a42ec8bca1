"""
Integration Tests — Size intelligence query service.

Paging is checked against synthetic committed runs written straight to the
output tables; reconciliation, transfers, decisions and the heatmap run
against a real engine run over the seeded tenant.
"""

from datetime import date, datetime, timedelta
from decimal import Decimal

import pytest
from sqlalchemy import select

from core.types import CurveState
from db.models import EngineRun, EngineSnapshot, HealthRecord, LostRevenueRecord, money, utcnow
from engine.notifier import SnapshotNotifier
from engine.orchestrator import SizeEngineOrchestrator
from query.aggregation import SizeIntelligenceQueryService, SnapshotNotFound

TENANT_ID = "tenant-001"
AS_OF = date(2026, 3, 1)


async def commit_synthetic_run(session_factory, run_id, count, prefix="STY", state="risk", as_of=AS_OF):
    """Write a committed run with `count` aggregate health rows and point the snapshot at it."""
    now = utcnow()
    rows = [
        EngineRun(
            run_id=run_id,
            tenant_id=TENANT_ID,
            as_of_date=as_of,
            status="committed",
            started_at=now,
            finished_at=now,
        )
    ]
    for i in range(count):
        style_id = f"{prefix}-{i:04d}"
        rows.append(
            HealthRecord(
                tenant_id=TENANT_ID,
                run_id=run_id,
                as_of_date=as_of,
                style_id=style_id,
                store_id=None,
                health_score=60.0,
                curve_state=state,
                deviation_score=0.4,
                core_size_missing=False,
                shallow_depth_count=0,
                total_on_hand=10,
                inventory_value=money(100),
                size_status={},
            )
        )
        if i % 3:
            # Only seven distinct values, so most rows tie on the sort key.
            rows.append(
                LostRevenueRecord(
                    tenant_id=TENANT_ID,
                    run_id=run_id,
                    as_of_date=as_of,
                    style_id=style_id,
                    lost_units_est=i % 7,
                    lost_revenue_est=money((i % 7) * 10),
                    driver="missing_size",
                )
            )
    async with session_factory() as db:
        db.add_all(rows)
        pointer = (
            await db.execute(select(EngineSnapshot).where(EngineSnapshot.tenant_id == TENANT_ID))
        ).scalar_one_or_none()
        if pointer is None:
            db.add(EngineSnapshot(tenant_id=TENANT_ID, run_id=run_id, as_of_date=as_of, committed_at=now))
        else:
            pointer.run_id = run_id
            pointer.as_of_date = as_of
            pointer.committed_at = now
        await db.commit()


@pytest.fixture
def service(session_factory, settings):
    return SizeIntelligenceQueryService(session_factory, settings)


@pytest.fixture
async def committed_run(session_factory, settings, seeded_tenant):
    return await SizeEngineOrchestrator(session_factory, settings).trigger_run(TENANT_ID, AS_OF)


@pytest.mark.asyncio
class TestNoSnapshot:
    async def test_reads_are_empty_before_first_run(self, service):
        summary = await service.get_summary(TENANT_ID)
        assert summary.run_id is None
        assert summary.style_count == 0
        assert summary.total_lost_revenue == Decimal("0.00")
        assert set(summary.state_counts) == {s.value for s in CurveState}

        page = await service.get_group_detail(TENANT_ID, "broken")
        assert page.total == 0
        assert page.items == []
        assert page.next_offset is None

        assert await service.get_group_summaries(TENANT_ID) == []
        assert await service.get_transfer_opportunities(TENANT_ID) == []
        assert await service.get_evidence_pack(TENANT_ID, "TEE-BROKEN") is None
        assert await service.get_store_heatmap(TENANT_ID) == []


@pytest.mark.asyncio
class TestGroupDetailPaging:
    async def test_pages_concatenate_without_gaps_or_duplicates(self, session_factory, service):
        await commit_synthetic_run(session_factory, "run-a", 160)

        full = await service.get_group_detail(TENANT_ID, "risk", limit=500)
        assert full.total == 160
        assert len(full.items) == 160

        paged = []
        offset = 0
        while offset is not None:
            page = await service.get_group_detail(TENANT_ID, "risk", limit=50, offset=offset)
            assert page.total == 160
            paged.extend(page.items)
            offset = page.next_offset

        assert [r.style_id for r in paged] == [r.style_id for r in full.items]
        assert len({r.style_id for r in paged}) == 160

    async def test_default_sort_is_lost_revenue_desc_then_style(self, session_factory, service):
        await commit_synthetic_run(session_factory, "run-a", 30)
        page = await service.get_group_detail(TENANT_ID, "risk", limit=30)

        keys = [(-r.lost_revenue_est, r.style_id) for r in page.items]
        assert keys == sorted(keys)
        assert page.items[0].lost_revenue_est == Decimal("60.00")
        # styles without a lost revenue record sort as zero
        assert page.items[-1].lost_revenue_est == Decimal("0.00")

    async def test_other_states_are_not_mixed_in(self, session_factory, service):
        await commit_synthetic_run(session_factory, "run-a", 5)
        page = await service.get_group_detail(TENANT_ID, CurveState.BROKEN)
        assert page.total == 0

    async def test_invalid_arguments_are_rejected(self, service):
        with pytest.raises(ValueError):
            await service.get_group_detail(TENANT_ID, "risk", sort_by="style_name")
        with pytest.raises(ValueError):
            await service.get_group_detail(TENANT_ID, "risk", limit=0)
        with pytest.raises(ValueError):
            await service.get_group_detail(TENANT_ID, "risk", offset=-1)
        with pytest.raises(ValueError):
            await service.get_group_detail(TENANT_ID, "fabulous")

    async def test_pinned_run_survives_a_new_commit(self, session_factory, service):
        await commit_synthetic_run(session_factory, "run-a", 10)
        first = await service.get_group_detail(TENANT_ID, "risk", limit=4)
        assert first.run_id == "run-a"

        await commit_synthetic_run(session_factory, "run-b", 25, prefix="NEW")
        rest = await service.get_group_detail(TENANT_ID, "risk", limit=50, offset=4, run_id=first.run_id)
        assert rest.total == 10
        assert all(r.style_id.startswith("STY") for r in rest.items)

        latest = await service.get_group_detail(TENANT_ID, "risk", limit=50)
        assert latest.run_id == "run-b"
        assert latest.total == 25

    async def test_unknown_pinned_run_raises(self, session_factory, service):
        await commit_synthetic_run(session_factory, "run-a", 3)
        with pytest.raises(SnapshotNotFound):
            await service.get_group_detail(TENANT_ID, "risk", run_id="missing")


@pytest.mark.asyncio
class TestReconciliation:
    async def test_summary_equals_sum_of_detail_rows(self, service, committed_run):
        summary = await service.get_summary(TENANT_ID)
        assert summary.run_id == committed_run.run_id

        rows = []
        for state in CurveState:
            page = await service.get_group_detail(TENANT_ID, state, limit=500)
            rows.extend(page.items)

        assert summary.style_count == len(rows) == 3
        assert summary.total_lost_revenue == sum((r.lost_revenue_est for r in rows), Decimal("0"))
        assert summary.total_cash_locked == sum((r.cash_locked_value for r in rows), Decimal("0"))
        assert summary.total_margin_leak == sum((r.margin_leak_value for r in rows), Decimal("0"))
        assert summary.core_missing_count == sum(r.core_size_missing for r in rows)
        assert summary.state_counts["broken"] == 2
        assert summary.state_counts["healthy"] == 1
        assert summary.high_md_risk_count == 1

        transfers = await service.get_transfer_opportunities(TENANT_ID)
        assert summary.transfer_count == len(transfers) == 5
        assert summary.transfer_net_benefit == sum((t.net_benefit for t in transfers), Decimal("0"))

    async def test_group_summaries_cover_every_state(self, service, committed_run):
        groups = await service.get_group_summaries(TENANT_ID)
        assert [g.curve_state for g in groups] == [s.value for s in CurveState]
        broken = next(g for g in groups if g.curve_state == "broken")
        assert broken.total_lost_revenue == Decimal("5800.00")

    async def test_detail_row_values(self, service, committed_run):
        page = await service.get_group_detail(TENANT_ID, "broken", sort_by="markdown_risk_score")
        assert [r.style_id for r in page.items] == ["TEE-BROKEN", "JEAN-XFER"]
        tee = page.items[0]
        assert tee.style_name == "Style TEE-BROKEN"
        assert tee.severity == "critical"
        assert tee.lost_revenue_est == Decimal("200.00")
        assert tee.cash_locked_value == Decimal("1152.00")
        assert tee.locked_pct == 1.0

        by_health = await service.get_group_detail(TENANT_ID, "broken", sort_by="health_score")
        assert [r.style_id for r in by_health.items] == ["JEAN-XFER", "TEE-BROKEN"]

    async def test_created_after_filters_on_evidence_time(self, service, committed_run):
        before = await service.get_group_detail(TENANT_ID, "broken", created_after=datetime(2000, 1, 1))
        assert before.total == 2
        after = await service.get_group_detail(
            TENANT_ID, "broken", created_after=utcnow() + timedelta(hours=1)
        )
        assert after.total == 0


@pytest.mark.asyncio
class TestTransfers:
    async def test_ranked_by_net_benefit(self, service, committed_run):
        transfers = await service.get_transfer_opportunities(TENANT_ID)
        benefits = [t.net_benefit for t in transfers]
        assert benefits == sorted(benefits, reverse=True)
        top = transfers[0]
        assert (top.style_id, top.source_store_id, top.dest_store_id, top.transfer_qty) == ("JEAN-XFER", "S1", "S2", 10)
        assert top.net_benefit == Decimal("485.00")
        assert all(t.decision_status == "pending" for t in transfers)

    async def test_filters(self, service, committed_run):
        assert len(await service.get_transfer_opportunities(TENANT_ID, style_id="TEE-HEALTHY")) == 2
        assert len(await service.get_transfer_opportunities(TENANT_ID, dest_store_id="S2")) == 1
        assert len(await service.get_transfer_opportunities(TENANT_ID, limit=3)) == 3

    async def test_by_destination(self, service, committed_run):
        rollups = await service.get_transfer_by_destination(TENANT_ID)
        assert [r.dest_store_id for r in rollups] == ["S2", "S1"]
        s1 = rollups[1]
        assert s1.store_name == "Store S1"
        assert s1.opportunity_count == 4
        assert s1.style_count == 2
        assert s1.total_qty == 11
        assert s1.total_net_benefit == Decimal("415.50")

    async def test_decisions_overlay_without_touching_rows(self, service, committed_run):
        transfers = await service.get_transfer_opportunities(TENANT_ID)
        target = transfers[0].transfer_id

        result = await service.decide_transfers(TENANT_ID, [target, 999_999], "approved", decided_by="planner@example.com")
        assert result.decided == [target]
        assert result.not_found == [999_999]

        after = {t.transfer_id: t for t in await service.get_transfer_opportunities(TENANT_ID)}
        assert after[target].decision_status == "approved"
        assert after[target].net_benefit == transfers[0].net_benefit

        await service.decide_transfers(TENANT_ID, [target], "rejected")
        after = {t.transfer_id: t for t in await service.get_transfer_opportunities(TENANT_ID)}
        assert after[target].decision_status == "rejected"

    async def test_pending_is_not_a_decision(self, service, committed_run):
        with pytest.raises(ValueError):
            await service.decide_transfers(TENANT_ID, [1], "pending")


@pytest.mark.asyncio
class TestEvidenceAndHeatmap:
    async def test_evidence_pack(self, service, committed_run):
        pack = await service.get_evidence_pack(TENANT_ID, "TEE-BROKEN")
        assert pack.run_id == committed_run.run_id
        assert pack.severity == "critical"
        assert pack.data_snapshot["markdown_risk"]["eta_days"] == 0
        assert await service.get_evidence_pack(TENANT_ID, "NOPE") is None

    async def test_store_heatmap(self, service, committed_run):
        heat = await service.get_store_heatmap(TENANT_ID)
        assert [h.store_id for h in heat] == ["S1", "S2", "S3"]
        s1, s2, s3 = heat
        assert s1.cash_locked_value == Decimal("1184.00")
        assert s2.cash_locked_value == Decimal("744.00")
        assert s3.cash_locked_value == Decimal("384.00")
        assert s1.state_counts["broken"] == 2
        assert s1.state_counts["healthy"] == 1
        assert (s1.transfer_in_units, s1.transfer_out_units) == (11, 10)
        assert (s2.transfer_in_units, s2.transfer_out_units) == (10, 7)
        assert (s3.transfer_in_units, s3.transfer_out_units) == (0, 4)
        assert s1.region == "north"


@pytest.mark.asyncio
class TestSummaryCache:
    async def test_commit_notification_evicts_previous_run(self, session_factory, settings, seeded_tenant):
        notifier = SnapshotNotifier()
        service = SizeIntelligenceQueryService(session_factory, settings, notifier=notifier)
        orchestrator = SizeEngineOrchestrator(session_factory, settings, notifier=notifier)

        first = await orchestrator.trigger_run(TENANT_ID, AS_OF)
        assert (await service.get_summary(TENANT_ID)).run_id == first.run_id
        assert (TENANT_ID, first.run_id) in service._summary_cache

        second = await orchestrator.trigger_run(TENANT_ID, AS_OF)
        assert (TENANT_ID, first.run_id) not in service._summary_cache
        assert (await service.get_summary(TENANT_ID)).run_id == second.run_id

    async def test_runs_committed_elsewhere_do_not_accumulate(self, session_factory, settings, seeded_tenant):
        # API process and Celery worker each hold their own notifier.
        service = SizeIntelligenceQueryService(session_factory, settings, notifier=SnapshotNotifier())
        orchestrator = SizeEngineOrchestrator(session_factory, settings, notifier=SnapshotNotifier())

        run_ids = []
        for _ in range(4):
            run_ids.append((await orchestrator.trigger_run(TENANT_ID, AS_OF)).run_id)
            assert (await service.get_summary(TENANT_ID)).run_id == run_ids[-1]

        assert list(service._summary_cache) == [(TENANT_ID, run_ids[-1])]

    async def test_other_tenants_stay_cached(self, session_factory, settings, service):
        await commit_synthetic_run(session_factory, "run-a", 3)
        await service.get_summary(TENANT_ID)
        service._summary_cache[("tenant-002", "run-x")] = object()

        await commit_synthetic_run(session_factory, "run-b", 4)
        summary = await service.get_summary(TENANT_ID)

        assert summary.run_id == "run-b"
        assert set(service._summary_cache) == {(TENANT_ID, "run-b"), ("tenant-002", "run-x")}
