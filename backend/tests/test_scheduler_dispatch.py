import asyncio
from datetime import date, datetime, timezone
from types import SimpleNamespace

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from core.config import Settings
from db.session import Base
from workers.scheduler import dispatch_active_tenants
from workers.size_engine import run_size_engine


def _file_db(tmp_path, name: str):
    db_url = f"sqlite+aiosqlite:///{tmp_path / name}"
    engine = create_async_engine(db_url, echo=False)
    return db_url, engine, async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


def test_dispatch_active_tenants_fans_out_only_active_and_trial(tmp_path, monkeypatch):
    from db.models import Tenant

    db_url, engine, session_factory = _file_db(tmp_path, "dispatch.db")

    async def _seed() -> None:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

        async with session_factory() as db:
            db.add_all(
                [
                    Tenant(tenant_id="tenant-active", name="Active Tenant", status="active"),
                    Tenant(tenant_id="tenant-trial", name="Trial Tenant", status="trial"),
                    Tenant(tenant_id="tenant-inactive", name="Inactive Tenant", status="inactive"),
                ]
            )
            await db.commit()

    asyncio.run(_seed())

    monkeypatch.setattr("core.config.get_settings", lambda: SimpleNamespace(database_url=db_url))

    dispatched_calls: list[tuple[str, dict]] = []

    def _capture_send_task(task_name: str, kwargs: dict):
        dispatched_calls.append((task_name, kwargs))
        return None

    monkeypatch.setattr("workers.scheduler.celery_app.send_task", _capture_send_task)

    result = dispatch_active_tenants.run(
        task_name="workers.size_engine.run_size_engine",
        task_kwargs={"as_of_date": "2026-03-01"},
    )
    assert result["status"] == "success"
    assert result["tenant_count"] == 2
    assert result["dispatched_count"] == 2
    assert result["as_of_date"] == "2026-03-01"

    task_names = {task for task, _ in dispatched_calls}
    assert task_names == {"workers.size_engine.run_size_engine"}
    assert {kwargs["tenant_id"] for _, kwargs in dispatched_calls} == {"tenant-active", "tenant-trial"}
    assert all(kwargs["as_of_date"] == "2026-03-01" for _, kwargs in dispatched_calls)

    asyncio.run(engine.dispose())


def test_nightly_dispatch_pins_one_as_of_date_for_every_tenant(tmp_path, monkeypatch):
    from db.models import Tenant

    db_url, engine, session_factory = _file_db(tmp_path, "nightly.db")

    async def _seed() -> None:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        async with session_factory() as db:
            db.add_all([Tenant(tenant_id=f"tenant-{i}", name=f"Tenant {i}", status="active") for i in range(3)])
            await db.commit()

    asyncio.run(_seed())
    asyncio.run(engine.dispose())

    monkeypatch.setattr("core.config.get_settings", lambda: SimpleNamespace(database_url=db_url))
    sent: list[dict] = []
    monkeypatch.setattr("workers.scheduler.celery_app.send_task", lambda name, kwargs: sent.append(kwargs))

    before = datetime.now(timezone.utc).date().isoformat()
    result = dispatch_active_tenants.run()
    after = datetime.now(timezone.utc).date().isoformat()

    assert result["task_name"] == "workers.size_engine.run_size_engine"
    assert result["as_of_date"] in (before, after)
    assert len(sent) == 3
    assert {kwargs["as_of_date"] for kwargs in sent} == {result["as_of_date"]}


def test_dispatch_rejects_non_worker_task_names():
    result = dispatch_active_tenants.run(task_name="os.system")
    assert result == {"status": "failed", "reason": "invalid_task_name", "task_name": "os.system"}


def _seed_engine_tenant(engine, session_factory, running: bool = False):
    from db.models import EngineRun, InventoryPosition, Store, Style, StyleSize, Tenant, utcnow

    async def _seed() -> None:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        async with session_factory() as db:
            rows = [
                Tenant(tenant_id="tenant-001", name="Test Apparel", status="active"),
                Store(tenant_id="tenant-001", store_id="S1", name="Store S1", region="north"),
                Style(tenant_id="tenant-001", style_id="TEE", name="Tee", created_on=date(2026, 1, 1), unit_price=40.0, unit_cost=16.0),
                StyleSize(tenant_id="tenant-001", style_id="TEE", size_code="S", is_core=False),
                StyleSize(tenant_id="tenant-001", style_id="TEE", size_code="M", is_core=True),
                InventoryPosition(tenant_id="tenant-001", style_id="TEE", store_id="S1", size_code="S", as_of_date=date(2026, 3, 1), on_hand=5),
                InventoryPosition(tenant_id="tenant-001", style_id="TEE", store_id="S1", size_code="M", as_of_date=date(2026, 3, 1), on_hand=0),
            ]
            if running:
                rows.append(
                    EngineRun(run_id="busy", tenant_id="tenant-001", as_of_date=date(2026, 3, 1), status="running", started_at=utcnow())
                )
            db.add_all(rows)
            await db.commit()

    asyncio.run(_seed())


def test_size_engine_task_commits_a_run(tmp_path, monkeypatch):
    db_url, engine, session_factory = _file_db(tmp_path, "engine.db")
    _seed_engine_tenant(engine, session_factory)
    asyncio.run(engine.dispose())

    monkeypatch.setattr("core.config.get_settings", lambda: Settings(_env_file=None, database_url=db_url))

    result = run_size_engine.run(tenant_id="tenant-001", as_of_date="2026-03-01")

    assert result["status"] == "committed"
    assert result["task_id"] == "manual"
    assert result["rows_written"]["size_health"] == 2


def test_size_engine_task_retries_a_rejected_run(tmp_path, monkeypatch):
    db_url, engine, session_factory = _file_db(tmp_path, "engine.db")
    _seed_engine_tenant(engine, session_factory, running=True)
    asyncio.run(engine.dispose())

    monkeypatch.setattr("core.config.get_settings", lambda: Settings(_env_file=None, database_url=db_url))

    class RetryScheduled(Exception):
        pass

    retries = []

    def _capture_retry(exc=None, **kwargs):
        retries.append(exc)
        return RetryScheduled()

    monkeypatch.setattr(run_size_engine, "retry", _capture_retry)

    with pytest.raises(RetryScheduled):
        run_size_engine.run(tenant_id="tenant-001", as_of_date="2026-03-01")
    assert str(retries[0]) == "rejected"
