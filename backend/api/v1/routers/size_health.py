"""
Size Health Router — curve-state summary, grouped detail, evidence, store heatmap.

All reads serve the tenant's last committed engine snapshot.
"""

from datetime import date, datetime
from decimal import Decimal

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel

from api.deps import get_query_service, get_tenant_id
from core.types import CurveState, TenantId
from query.aggregation import DEFAULT_SORT, SORT_KEYS, SizeIntelligenceQueryService, SnapshotNotFound

router = APIRouter(prefix="/api/v1/tenants/{tenant_id}/size-health", tags=["size-health"])


# ─── Schemas ────────────────────────────────────────────────────────────────


class SummaryResponse(BaseModel):
    run_id: str | None
    as_of_date: date | None
    style_count: int
    avg_health_score: float
    state_counts: dict[str, int]
    core_missing_count: int
    high_md_risk_count: int
    total_lost_revenue: Decimal
    total_cash_locked: Decimal
    total_margin_leak: Decimal
    transfer_count: int
    transfer_units: int
    transfer_net_benefit: Decimal

    model_config = {"from_attributes": True}


class GroupSummaryResponse(BaseModel):
    curve_state: str
    style_count: int
    core_missing_count: int
    high_md_risk_count: int
    avg_health_score: float
    total_lost_revenue: Decimal
    total_cash_locked: Decimal
    total_margin_leak: Decimal

    model_config = {"from_attributes": True}


class DetailRowResponse(BaseModel):
    style_id: str
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

    model_config = {"from_attributes": True}


class DetailPageResponse(BaseModel):
    run_id: str | None
    as_of_date: date | None
    curve_state: str
    sort_by: str
    limit: int
    offset: int
    total: int
    next_offset: int | None
    items: list[DetailRowResponse]

    model_config = {"from_attributes": True}


class EvidencePackResponse(BaseModel):
    style_id: str
    run_id: str
    as_of_date: date
    evidence_type: str
    severity: str
    summary: str
    data_snapshot: dict
    source_tables: list[str]
    created_at: datetime

    model_config = {"from_attributes": True}


class StoreHeatmapResponse(BaseModel):
    store_id: str
    store_name: str | None
    region: str | None
    state_counts: dict[str, int]
    total_on_hand: int
    inventory_value: Decimal
    cash_locked_value: Decimal
    transfer_in_units: int
    transfer_out_units: int

    model_config = {"from_attributes": True}


# ─── Endpoints ──────────────────────────────────────────────────────────────


@router.get("/summary", response_model=SummaryResponse)
async def get_summary(
    tenant_id: TenantId = Depends(get_tenant_id),
    service: SizeIntelligenceQueryService = Depends(get_query_service),
):
    """Headline totals for the committed snapshot."""
    return SummaryResponse.model_validate(await service.get_summary(tenant_id))


@router.get("/groups", response_model=list[GroupSummaryResponse])
async def list_groups(
    tenant_id: TenantId = Depends(get_tenant_id),
    service: SizeIntelligenceQueryService = Depends(get_query_service),
):
    groups = await service.get_group_summaries(tenant_id)
    return [GroupSummaryResponse.model_validate(g) for g in groups]


@router.get("/groups/{curve_state}", response_model=DetailPageResponse)
async def get_group_detail(
    curve_state: CurveState,
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    sort_by: str = Query(DEFAULT_SORT),
    created_after: datetime | None = None,
    run_id: str | None = None,
    tenant_id: TenantId = Depends(get_tenant_id),
    service: SizeIntelligenceQueryService = Depends(get_query_service),
):
    """One page of styles in a curve state. Pass run_id back to page a pinned snapshot."""
    if sort_by not in SORT_KEYS:
        raise HTTPException(status_code=422, detail=f"sort_by must be one of {sorted(SORT_KEYS)}")
    try:
        page = await service.get_group_detail(
            tenant_id,
            curve_state,
            limit=limit,
            offset=offset,
            sort_by=sort_by,
            created_after=created_after,
            run_id=run_id,
        )
    except SnapshotNotFound as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc
    return DetailPageResponse.model_validate(page)


@router.get("/evidence/{style_id}", response_model=EvidencePackResponse)
async def get_evidence_pack(
    style_id: str,
    tenant_id: TenantId = Depends(get_tenant_id),
    service: SizeIntelligenceQueryService = Depends(get_query_service),
):
    pack = await service.get_evidence_pack(tenant_id, style_id)
    if pack is None:
        raise HTTPException(status_code=404, detail="Evidence pack not found")
    return EvidencePackResponse.model_validate(pack)


@router.get("/store-heatmap", response_model=list[StoreHeatmapResponse])
async def get_store_heatmap(
    tenant_id: TenantId = Depends(get_tenant_id),
    service: SizeIntelligenceQueryService = Depends(get_query_service),
):
    rows = await service.get_store_heatmap(tenant_id)
    return [StoreHeatmapResponse.model_validate(r) for r in rows]
