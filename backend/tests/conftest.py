"""
Test Configuration — Fixtures for async DB, engine services, test client and seed data.

Each test gets its own in-memory SQLite database. StaticPool keeps a single
connection so every session the services open sees the same database.
"""

from datetime import date, timedelta

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from api.deps import get_session_factory
from api.main import app
from core.config import Settings
from db.session import Base

TEST_DATABASE_URL = "sqlite+aiosqlite://"

TENANT_ID = "tenant-001"
AS_OF = date(2026, 3, 1)


@pytest.fixture
async def test_engine():
    """Fresh in-memory database with all tables."""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        echo=False,
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(test_engine):
    return async_sessionmaker(test_engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def test_db(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def settings():
    """Default engine settings, isolated from the cached app settings."""
    return Settings(_env_file=None)


@pytest.fixture
async def client(session_factory):
    """Async test client bound to the per-test database."""
    app.dependency_overrides[get_session_factory] = lambda: session_factory
    for attr in ("query_service", "orchestrator"):
        if hasattr(app.state, attr):
            delattr(app.state, attr)

    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as ac:
        yield ac

    app.dependency_overrides.clear()


class SizeDataSeeder:
    """Writes master data, positions and sales for one tenant."""

    def __init__(self, session_factory, tenant_id: str = TENANT_ID, as_of: date = AS_OF):
        self.session_factory = session_factory
        self.tenant_id = tenant_id
        self.as_of = as_of

    async def add(self, *rows) -> None:
        async with self.session_factory() as db:
            db.add_all(list(rows))
            await db.commit()

    async def tenant(self, status: str = "active", name: str = "Test Apparel") -> None:
        from db.models import Tenant

        await self.add(Tenant(tenant_id=self.tenant_id, name=name, status=status))

    async def stores(self, regions: dict[str, str | None]) -> None:
        from db.models import Store

        await self.add(
            *[
                Store(tenant_id=self.tenant_id, store_id=sid, name=f"Store {sid}", code=sid, region=region)
                for sid, region in regions.items()
            ]
        )

    async def size_codes(self, codes: list[str]) -> None:
        from db.models import SizeCodeRow

        await self.add(
            *[
                SizeCodeRow(tenant_id=self.tenant_id, size_code=code, sort_order=i, label=code)
                for i, code in enumerate(codes)
            ]
        )

    async def style(
        self,
        style_id: str,
        sizes: list[str] | None,
        core: tuple[str, ...] = (),
        age_days: int = 30,
        unit_price: float = 40.0,
        unit_cost: float = 16.0,
    ) -> None:
        from db.models import Style, StyleSize

        rows = [
            Style(
                tenant_id=self.tenant_id,
                style_id=style_id,
                name=f"Style {style_id}",
                family_code=style_id.split("-")[0],
                created_on=self.as_of - timedelta(days=age_days),
                unit_price=unit_price,
                unit_cost=unit_cost,
            )
        ]
        for size in sizes or []:
            rows.append(
                StyleSize(
                    tenant_id=self.tenant_id,
                    style_id=style_id,
                    size_code=size,
                    is_core=size in core,
                    ref_ratio=0.0,
                )
            )
        await self.add(*rows)

    async def positions(self, style_id: str, cells: dict[tuple[str, str], int], as_of: date | None = None) -> None:
        from db.models import InventoryPosition

        await self.add(
            *[
                InventoryPosition(
                    tenant_id=self.tenant_id,
                    style_id=style_id,
                    store_id=store_id,
                    size_code=size,
                    as_of_date=as_of or self.as_of,
                    on_hand=qty,
                )
                for (store_id, size), qty in cells.items()
            ]
        )

    async def daily_sales(
        self,
        style_id: str,
        store_id: str,
        size: str,
        units_per_day: int,
        days: range,
        unit_price: float = 40.0,
    ) -> None:
        """Sales on each day offset in `days` (0 = first day of the lookback window)."""
        from db.models import SalesDaily

        window_start = self.as_of - timedelta(days=27)
        await self.add(
            *[
                SalesDaily(
                    tenant_id=self.tenant_id,
                    style_id=style_id,
                    store_id=store_id,
                    size_code=size,
                    sale_date=window_start + timedelta(days=d),
                    units=units_per_day,
                    revenue=units_per_day * unit_price,
                )
                for d in days
            ]
        )


@pytest.fixture
def seeder(session_factory):
    return SizeDataSeeder(session_factory)


@pytest.fixture
async def seeded_tenant(seeder):
    """
    Three stores, five size codes and five styles:
      TEE-BROKEN   core M missing everywhere, 6 units of every other size
      TEE-HEALTHY  full, even S/M/L run at every store
      JEAN-XFER    only size M: 40 idle units at S1, 18 fast sellers at S2
      BAD-MAP      positions but no expected size mapping (data quality)
      GHOST        positions without a style master (data quality)
    """
    await seeder.tenant()
    await seeder.stores({"S1": "north", "S2": "north", "S3": "south"})
    await seeder.size_codes(["XS", "S", "M", "L", "XL"])

    await seeder.style("TEE-BROKEN", ["XS", "S", "M", "L", "XL"], core=("M",), age_days=200)
    await seeder.positions(
        "TEE-BROKEN",
        {(store, size): 6 for store in ("S1", "S2", "S3") for size in ("XS", "S", "L", "XL")}
        | {(store, "M"): 0 for store in ("S1", "S2", "S3")},
    )
    await seeder.daily_sales("TEE-BROKEN", "S1", "S", 2, range(0, 10))

    await seeder.style("TEE-HEALTHY", ["S", "M", "L"])
    await seeder.positions("TEE-HEALTHY", {(store, size): 5 for store in ("S1", "S2", "S3") for size in ("S", "M", "L")})
    await seeder.daily_sales("TEE-HEALTHY", "S1", "M", 1, range(0, 28))

    await seeder.style("JEAN-XFER", ["S", "M", "L"], unit_price=50.0, unit_cost=20.0)
    await seeder.positions("JEAN-XFER", {("S1", "M"): 40, ("S2", "M"): 18})
    await seeder.daily_sales("JEAN-XFER", "S2", "M", 2, range(0, 28), unit_price=50.0)

    await seeder.style("BAD-MAP", None)
    await seeder.positions("BAD-MAP", {("S1", "M"): 3})

    await seeder.positions("GHOST", {("S1", "M"): 3})
    return seeder
