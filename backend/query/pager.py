"""
Load-more pager for curve-state detail.

    IDLE ──load_more──▶ LOADING ──▶ LOADED ──load_more──▶ LOADING ...
                           │    └──▶ EXHAUSTED
                           └──────▶ ERROR ──load_more (retry same offset)──▶ LOADING

The first page pins the snapshot run_id; later pages ask for that run so a
commit in between cannot shift rows across page boundaries. Only one fetch
is in flight: concurrent load_more() calls await the same fetch.
"""

import asyncio
from enum import Enum

import structlog

from core.types import CurveState, RunId, TenantId
from query.aggregation import DetailPage, DetailRow, SizeIntelligenceQueryService

logger = structlog.get_logger()


class PagerState(str, Enum):
    IDLE = "idle"
    LOADING = "loading"
    LOADED = "loaded"
    EXHAUSTED = "exhausted"
    ERROR = "error"


class GroupDetailPager:
    def __init__(
        self,
        service: SizeIntelligenceQueryService,
        tenant_id: TenantId,
        curve_state: CurveState,
        page_size: int = 50,
        sort_by: str | None = None,
    ):
        self.service = service
        self.tenant_id = tenant_id
        self.curve_state = CurveState(curve_state)
        self.page_size = page_size
        self.sort_by = sort_by
        self.reset()

    def reset(self) -> None:
        self.state = PagerState.IDLE
        self.items: list[DetailRow] = []
        self.run_id: RunId | None = None
        self.total: int | None = None
        self.error: Exception | None = None
        self._inflight: asyncio.Task | None = None

    @property
    def offset(self) -> int:
        return len(self.items)

    async def load_more(self) -> list[DetailRow]:
        """Fetch the next page and return its rows ([] once exhausted)."""
        if self.state == PagerState.EXHAUSTED:
            return []
        if self._inflight is None:
            self.state = PagerState.LOADING
            self._inflight = asyncio.ensure_future(self._fetch())
        task = self._inflight
        return await asyncio.shield(task)

    async def _fetch(self) -> list[DetailRow]:
        try:
            page: DetailPage = await self.service.get_group_detail(
                self.tenant_id,
                self.curve_state,
                limit=self.page_size,
                offset=self.offset,
                sort_by=self.sort_by,
                run_id=self.run_id,
            )
        except Exception as exc:
            self.state = PagerState.ERROR
            self.error = exc
            logger.warning(
                "pager.fetch_failed",
                tenant_id=self.tenant_id,
                curve_state=self.curve_state.value,
                offset=self.offset,
                error=str(exc),
            )
            raise
        finally:
            self._inflight = None

        if self.run_id is None:
            self.run_id = page.run_id
        self.items.extend(page.items)
        self.total = page.total
        self.error = None
        self.state = PagerState.EXHAUSTED if page.next_offset is None else PagerState.LOADED
        return page.items

    async def load_all(self) -> list[DetailRow]:
        while self.state != PagerState.EXHAUSTED:
            await self.load_more()
        return list(self.items)
