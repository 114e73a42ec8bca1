"""
Transfers Router — store-to-store rebalancing recommendations and decisions.
"""

from decimal import Decimal
from typing import Literal

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from api.deps import get_query_service, get_tenant_id
from core.types import TenantId
from query.aggregation import SizeIntelligenceQueryService

router = APIRouter(prefix="/api/v1/tenants/{tenant_id}/transfers", tags=["transfers"])


# ─── Schemas ────────────────────────────────────────────────────────────────


class TransferResponse(BaseModel):
    transfer_id: int
    style_id: str
    size_code: str
    source_store_id: str
    dest_store_id: str
    transfer_qty: int
    transfer_score: float
    source_on_hand: int
    dest_on_hand: int
    dest_velocity: float
    estimated_revenue_gain: Decimal
    estimated_transfer_cost: Decimal
    net_benefit: Decimal
    reason: str
    decision_status: str

    model_config = {"from_attributes": True}


class DestinationRollupResponse(BaseModel):
    dest_store_id: str
    store_name: str | None
    opportunity_count: int
    style_count: int
    total_qty: int
    total_net_benefit: Decimal

    model_config = {"from_attributes": True}


class TransferDecisionRequest(BaseModel):
    transfer_ids: list[int] = Field(..., min_length=1)
    status: Literal["approved", "rejected"]
    decided_by: str | None = None


class TransferDecisionResponse(BaseModel):
    status: str
    decided: list[int]
    not_found: list[int]

    model_config = {"from_attributes": True}


# ─── Endpoints ──────────────────────────────────────────────────────────────


@router.get("", response_model=list[TransferResponse])
async def list_transfers(
    style_id: str | None = None,
    dest_store_id: str | None = None,
    limit: int | None = Query(None, ge=1, le=1000),
    tenant_id: TenantId = Depends(get_tenant_id),
    service: SizeIntelligenceQueryService = Depends(get_query_service),
):
    """Transfer opportunities ranked by net benefit."""
    rows = await service.get_transfer_opportunities(
        tenant_id, style_id=style_id, dest_store_id=dest_store_id, limit=limit
    )
    return [TransferResponse.model_validate(r) for r in rows]


@router.get("/by-destination", response_model=list[DestinationRollupResponse])
async def transfers_by_destination(
    tenant_id: TenantId = Depends(get_tenant_id),
    service: SizeIntelligenceQueryService = Depends(get_query_service),
):
    rollups = await service.get_transfer_by_destination(tenant_id)
    return [DestinationRollupResponse.model_validate(r) for r in rollups]


@router.post("/decisions", response_model=TransferDecisionResponse)
async def decide_transfers(
    body: TransferDecisionRequest,
    tenant_id: TenantId = Depends(get_tenant_id),
    service: SizeIntelligenceQueryService = Depends(get_query_service),
):
    """Approve or reject transfers from the current snapshot."""
    result = await service.decide_transfers(tenant_id, body.transfer_ids, body.status, body.decided_by)
    return TransferDecisionResponse.model_validate(result)
