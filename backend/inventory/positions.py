"""
Position Store — read-only tenant snapshot for one engine run.

Loads everything a run needs in one pass so the per-style pipeline never
touches the database:
  - latest inventory_positions snapshot at or before the run's as_of_date
  - style / store / size masters and expected size runs
  - sales_daily over the lookback window
  - committed history (aggregate health, margin leak) for trend estimators

Every fetch goes through bounded retry with exponential backoff, and the
whole load is capped by a hard timeout. Exhausting either raises, and the
orchestrator aborts the run.
"""

import asyncio
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import date, timedelta

import structlog
from sqlalchemy import func, select
from sqlalchemy.exc import DBAPIError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from core.config import Settings, get_settings
from core.errors import EngineTimeoutError
from core.types import DEFAULT_SIZE_ORDER, SizeCode, StoreId, StyleId, TenantId
from db.models import (
    EngineRun,
    HealthRecord,
    InventoryPosition,
    MarginLeakRecord,
    SalesDaily,
    SizeCodeRow,
    Store,
    Style,
    StyleSize,
)

logger = structlog.get_logger()

Cell = tuple[StoreId, SizeCode]


@dataclass(frozen=True)
class StyleInfo:
    style_id: StyleId
    name: str
    family_code: str | None
    created_on: date
    unit_price: float
    unit_cost: float


@dataclass(frozen=True)
class StoreInfo:
    store_id: StoreId
    name: str
    code: str | None
    region: str | None


@dataclass(frozen=True)
class ExpectedSize:
    size_code: SizeCode
    is_core: bool
    ref_ratio: float


@dataclass(frozen=True)
class HealthHistoryPoint:
    style_id: StyleId
    as_of_date: date
    deviation_score: float
    curve_state: str


@dataclass
class StyleContext:
    """Everything the pipeline needs for one style. Not shared across styles."""

    style: StyleInfo
    expected_sizes: list[ExpectedSize]
    on_hand: dict[Cell, int]
    stores: dict[StoreId, StoreInfo]
    daily_units: dict[Cell, list[int]] = field(default_factory=dict)
    window_units: int = 0
    window_revenue: float = 0.0
    lookback_days: int = 28

    @property
    def store_ids(self) -> list[StoreId]:
        return sorted(self.stores)

    def velocity(self, store_id: StoreId, size_code: SizeCode) -> float:
        """Average daily units over the lookback window for one cell."""
        units = self.daily_units.get((store_id, size_code))
        if not units:
            return 0.0
        return sum(units) / self.lookback_days

    def avg_selling_price(self) -> float:
        if self.window_units > 0 and self.window_revenue > 0:
            return self.window_revenue / self.window_units
        return self.style.unit_price

    def style_daily_units(self) -> list[int]:
        """Network daily unit series (oldest first)."""
        series = [0] * self.lookback_days
        for units in self.daily_units.values():
            for i, qty in enumerate(units):
                series[i] += qty
        return series


@dataclass
class TenantContext:
    tenant_id: TenantId
    as_of_date: date
    positions_as_of: date | None
    styles: list[StyleContext]
    unmapped_style_ids: list[StyleId]
    stores: dict[StoreId, StoreInfo]
    size_order: dict[str, int]
    health_history: list[HealthHistoryPoint]
    leak_history: dict[StyleId, list[tuple[date, float]]]


def size_sort_key(size_order: dict[str, int], size_code: str) -> tuple[int, str]:
    if size_code in size_order:
        return (size_order[size_code], size_code)
    if size_code in DEFAULT_SIZE_ORDER:
        return (1000 + DEFAULT_SIZE_ORDER.index(size_code), size_code)
    return (2000, size_code)


class PositionStore:
    """Loads a TenantContext with retry, backoff and a hard timeout."""

    def __init__(self, session_factory: async_sessionmaker, settings: Settings | None = None):
        self.session_factory = session_factory
        self.settings = settings or get_settings()

    async def load_tenant_context(self, tenant_id: TenantId, as_of_date: date) -> TenantContext:
        try:
            return await asyncio.wait_for(
                self._load_with_retry(tenant_id, as_of_date),
                timeout=self.settings.engine_load_timeout_seconds,
            )
        except asyncio.TimeoutError as exc:
            logger.error(
                "positions.load_timeout",
                tenant_id=tenant_id,
                timeout_seconds=self.settings.engine_load_timeout_seconds,
            )
            raise EngineTimeoutError("Position loading exceeded its time bound", tenant_id=tenant_id) from exc

    async def _load_with_retry(self, tenant_id: TenantId, as_of_date: date) -> TenantContext:
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(self.settings.engine_load_max_attempts),
            wait=wait_exponential(multiplier=0.5, min=0.5, max=8),
            retry=retry_if_exception_type((OperationalError, DBAPIError, ConnectionError)),
            reraise=True,
        ):
            with attempt:
                if attempt.retry_state.attempt_number > 1:
                    logger.warning(
                        "positions.load_retry",
                        tenant_id=tenant_id,
                        attempt=attempt.retry_state.attempt_number,
                    )
                async with self.session_factory() as db:
                    return await self._load(db, tenant_id, as_of_date)
        raise RuntimeError("unreachable")  # pragma: no cover

    async def _load(self, db: AsyncSession, tenant_id: TenantId, as_of_date: date) -> TenantContext:
        lookback = self.settings.sales_lookback_days

        snapshot_date = (
            await db.execute(
                select(func.max(InventoryPosition.as_of_date)).where(
                    InventoryPosition.tenant_id == tenant_id,
                    InventoryPosition.as_of_date <= as_of_date,
                )
            )
        ).scalar_one_or_none()

        store_rows = (await db.execute(select(Store).where(Store.tenant_id == tenant_id))).scalars().all()
        stores = {
            StoreId(s.store_id): StoreInfo(StoreId(s.store_id), s.name, s.code, s.region) for s in store_rows
        }

        size_rows = (
            (await db.execute(select(SizeCodeRow).where(SizeCodeRow.tenant_id == tenant_id))).scalars().all()
        )
        size_order = {row.size_code: row.sort_order for row in size_rows}

        positions: dict[StyleId, dict[Cell, int]] = defaultdict(dict)
        if snapshot_date is not None:
            pos_rows = (
                await db.execute(
                    select(InventoryPosition).where(
                        InventoryPosition.tenant_id == tenant_id,
                        InventoryPosition.as_of_date == snapshot_date,
                    )
                )
            ).scalars().all()
            for row in pos_rows:
                positions[StyleId(row.style_id)][(StoreId(row.store_id), SizeCode(row.size_code))] = row.on_hand

        style_ids = sorted(positions)
        style_rows = (
            (
                await db.execute(
                    select(Style).where(Style.tenant_id == tenant_id, Style.style_id.in_(style_ids))
                )
            )
            .scalars()
            .all()
            if style_ids
            else []
        )
        style_map = {
            StyleId(s.style_id): StyleInfo(
                StyleId(s.style_id),
                s.name,
                s.family_code,
                s.created_on,
                float(s.unit_price or 0.0),
                float(s.unit_cost or 0.0),
            )
            for s in style_rows
        }

        mapping_rows = (
            (await db.execute(select(StyleSize).where(StyleSize.tenant_id == tenant_id))).scalars().all()
        )
        expected: dict[StyleId, list[ExpectedSize]] = defaultdict(list)
        for row in mapping_rows:
            expected[StyleId(row.style_id)].append(
                ExpectedSize(SizeCode(row.size_code), bool(row.is_core), float(row.ref_ratio or 0.0))
            )

        window_start = as_of_date - timedelta(days=lookback - 1)
        sales_rows = (
            await db.execute(
                select(SalesDaily).where(
                    SalesDaily.tenant_id == tenant_id,
                    SalesDaily.sale_date >= window_start,
                    SalesDaily.sale_date <= as_of_date,
                )
            )
        ).scalars().all()

        daily: dict[StyleId, dict[Cell, list[int]]] = defaultdict(dict)
        window_units: dict[StyleId, int] = defaultdict(int)
        window_revenue: dict[StyleId, float] = defaultdict(float)
        for row in sales_rows:
            sid = StyleId(row.style_id)
            cell = (StoreId(row.store_id), SizeCode(row.size_code))
            series = daily[sid].setdefault(cell, [0] * lookback)
            series[(row.sale_date - window_start).days] += int(row.units or 0)
            window_units[sid] += int(row.units or 0)
            window_revenue[sid] += float(row.revenue or 0.0)

        styles: list[StyleContext] = []
        unmapped: list[StyleId] = []
        for sid in style_ids:
            info = style_map.get(sid)
            if info is None:
                logger.warning("positions.unknown_style", tenant_id=tenant_id, style_id=sid)
                unmapped.append(sid)
                continue
            cells = positions[sid]
            carrying = {store_id for store_id, _ in cells}
            styles.append(
                StyleContext(
                    style=info,
                    expected_sizes=sorted(expected.get(sid, []), key=lambda e: size_sort_key(size_order, e.size_code)),
                    on_hand=cells,
                    stores={
                        store_id: stores.get(store_id, StoreInfo(store_id, store_id, None, None))
                        for store_id in carrying
                    },
                    daily_units=daily.get(sid, {}),
                    window_units=window_units.get(sid, 0),
                    window_revenue=window_revenue.get(sid, 0.0),
                    lookback_days=lookback,
                )
            )

        health_history = await self._load_health_history(db, tenant_id, as_of_date)
        leak_history = await self._load_leak_history(db, tenant_id, as_of_date)

        logger.info(
            "positions.loaded",
            tenant_id=tenant_id,
            as_of_date=as_of_date.isoformat(),
            positions_as_of=snapshot_date.isoformat() if snapshot_date else None,
            styles=len(styles),
            stores=len(stores),
            sales_rows=len(sales_rows),
        )

        return TenantContext(
            tenant_id=tenant_id,
            as_of_date=as_of_date,
            positions_as_of=snapshot_date,
            styles=styles,
            unmapped_style_ids=unmapped,
            stores=stores,
            size_order=size_order,
            health_history=health_history,
            leak_history=leak_history,
        )

    async def _load_health_history(
        self, db: AsyncSession, tenant_id: TenantId, as_of_date: date
    ) -> list[HealthHistoryPoint]:
        result = await db.execute(
            select(
                HealthRecord.style_id,
                HealthRecord.as_of_date,
                HealthRecord.deviation_score,
                HealthRecord.curve_state,
                EngineRun.started_at,
            )
            .join(EngineRun, EngineRun.run_id == HealthRecord.run_id)
            .where(
                HealthRecord.tenant_id == tenant_id,
                HealthRecord.store_id.is_(None),
                HealthRecord.as_of_date < as_of_date,
                EngineRun.status == "committed",
            )
            .order_by(HealthRecord.style_id, HealthRecord.as_of_date, EngineRun.started_at)
        )
        # Latest committed run wins per (style, as_of_date).
        latest: dict[tuple[str, date], HealthHistoryPoint] = {}
        for row in result.all():
            latest[(row.style_id, row.as_of_date)] = HealthHistoryPoint(
                StyleId(row.style_id), row.as_of_date, float(row.deviation_score), row.curve_state
            )
        return sorted(latest.values(), key=lambda p: (p.style_id, p.as_of_date))

    async def _load_leak_history(
        self, db: AsyncSession, tenant_id: TenantId, as_of_date: date
    ) -> dict[StyleId, list[tuple[date, float]]]:
        window_start = as_of_date - timedelta(days=self.settings.margin_leak_window_days - 1)
        result = await db.execute(
            select(
                MarginLeakRecord.style_id,
                MarginLeakRecord.as_of_date,
                MarginLeakRecord.margin_leak_value,
                EngineRun.started_at,
            )
            .join(EngineRun, EngineRun.run_id == MarginLeakRecord.run_id)
            .where(
                MarginLeakRecord.tenant_id == tenant_id,
                MarginLeakRecord.as_of_date >= window_start,
                MarginLeakRecord.as_of_date < as_of_date,
                EngineRun.status == "committed",
            )
            .order_by(MarginLeakRecord.as_of_date, EngineRun.started_at)
        )
        latest: dict[tuple[str, date], float] = {}
        for row in result.all():
            latest[(row.style_id, row.as_of_date)] = float(row.margin_leak_value)
        history: dict[StyleId, list[tuple[date, float]]] = defaultdict(list)
        for (style_id, day), value in sorted(latest.items()):
            history[StyleId(style_id)].append((day, value))
        return dict(history)
