"""
Store Transfer Recommender — Cross-Store Size Rebalancing.

When a store is missing a size (or holds too little of it to sell through
the cover period), the cheapest fix is often stock sitting idle in the same
size at another store.

Algorithm (per style, per size):
1. Surplus = on_hand above the source's retention floor
   (max(min retention, velocity × target cover)); the floor is ≥ 1 so a
   source is never depleted
2. Deficit = target depth − on_hand for missing/partial cells
3. Destinations are served by descending opportunity value; each draws
   from its best-scoring source first
4. transfer_qty = min(source surplus left, destination deficit left, per-transfer max)
5. Only rows with net_benefit = revenue gain − transfer cost > 0 survive

Source ranking: transfer_score desc, net_benefit desc, source on-hand
variance asc, surplus desc, store id asc.
"""

import math
from dataclasses import dataclass

import numpy as np
import structlog

from core.config import Settings
from core.types import SizeCode, StoreId, StyleId, TransferReason
from inventory.positions import StoreInfo, StyleContext
from inventory.size_curve import reference_shares

logger = structlog.get_logger()


@dataclass
class TransferOpportunity:
    """A recommended store-to-store transfer for one size of one style."""

    style_id: StyleId
    size_code: SizeCode
    source_store_id: StoreId
    dest_store_id: StoreId
    transfer_qty: int
    transfer_score: float
    source_on_hand: int
    dest_on_hand: int
    dest_velocity: float
    estimated_revenue_gain: float
    estimated_transfer_cost: float
    net_benefit: float
    reason: str


@dataclass
class SurplusCandidate:
    store_id: StoreId
    size_code: SizeCode
    on_hand: int
    velocity: float
    floor: int
    surplus: int
    on_hand_variance: float = 0.0


@dataclass
class DeficitCandidate:
    store_id: StoreId
    size_code: SizeCode
    on_hand: int
    velocity: float
    target: int
    deficit: int
    is_core: bool = False
    opportunity_value: float = 0.0


def retention_floor(velocity: float, settings: Settings) -> int:
    return max(settings.transfer_min_retention_units, math.ceil(velocity * settings.transfer_target_cover_days))


def target_depth(velocity: float, settings: Settings) -> int:
    return max(settings.transfer_min_presentation_units, math.ceil(velocity * settings.transfer_target_cover_days))


def is_same_region(source: StoreInfo | None, dest: StoreInfo | None) -> bool:
    return bool(source and dest and source.region and source.region == dest.region)


def cost_per_unit(source: StoreInfo | None, dest: StoreInfo | None, settings: Settings) -> float:
    if is_same_region(source, dest):
        return settings.transfer_cost_per_unit_same_region
    return settings.transfer_cost_per_unit_cross_region


def _demand_velocity(ctx: StyleContext, store_id: StoreId, size_code: SizeCode, ref_share: float) -> float:
    """Cell velocity, or the store's style velocity × reference share when the
    size has not been on hand long enough to sell."""
    cell = ctx.velocity(store_id, size_code)
    store_total = sum(
        sum(units) for (sid, _), units in ctx.daily_units.items() if sid == store_id
    ) / ctx.lookback_days
    return round(max(cell, store_total * ref_share), 4)


def find_surplus_candidates(ctx: StyleContext, settings: Settings) -> list[SurplusCandidate]:
    ref = reference_shares(ctx.expected_sizes)
    candidates = []
    for store_id in ctx.store_ids:
        store_units = [ctx.on_hand.get((store_id, e.size_code), 0) for e in ctx.expected_sizes]
        variance = float(np.var(store_units)) if store_units else 0.0
        for i, e in enumerate(ctx.expected_sizes):
            on_hand = ctx.on_hand.get((store_id, e.size_code), 0)
            if on_hand <= 0:
                continue
            velocity = _demand_velocity(ctx, store_id, e.size_code, float(ref[i]))
            # A source keeps at least its own target depth, so no cell is both source and destination.
            floor = max(retention_floor(velocity, settings), target_depth(velocity, settings))
            surplus = on_hand - floor
            if surplus > 0:
                candidates.append(
                    SurplusCandidate(store_id, e.size_code, on_hand, velocity, floor, surplus, round(variance, 4))
                )
    return candidates


def find_deficit_candidates(ctx: StyleContext, settings: Settings) -> list[DeficitCandidate]:
    ref = reference_shares(ctx.expected_sizes)
    price = ctx.avg_selling_price()
    candidates = []
    for store_id in ctx.store_ids:
        for i, e in enumerate(ctx.expected_sizes):
            on_hand = ctx.on_hand.get((store_id, e.size_code), 0)
            velocity = _demand_velocity(ctx, store_id, e.size_code, float(ref[i]))
            target = target_depth(velocity, settings)
            if on_hand >= target:
                continue
            deficit = target - on_hand
            sellable = min(deficit, velocity * settings.transfer_horizon_days)
            candidates.append(
                DeficitCandidate(
                    store_id=store_id,
                    size_code=e.size_code,
                    on_hand=on_hand,
                    velocity=velocity,
                    target=target,
                    deficit=deficit,
                    is_core=e.is_core,
                    opportunity_value=round(sellable * price, 2),
                )
            )
    return candidates


def transfer_score(
    dest_velocity: float,
    available_surplus: int,
    deficit: int,
    unit_cost: float,
    settings: Settings,
) -> float:
    max_cost = max(settings.transfer_cost_per_unit_same_region, settings.transfer_cost_per_unit_cross_region, 1e-9)
    velocity_part = min(1.0, dest_velocity / max(settings.transfer_velocity_reference, 1e-9))
    surplus_part = min(1.0, available_surplus / max(deficit, 1))
    cost_part = max(0.0, 1.0 - unit_cost / max_cost)
    score = (
        settings.transfer_weight_velocity * velocity_part
        + settings.transfer_weight_surplus * surplus_part
        + settings.transfer_weight_cost * cost_part
    )
    return round(100.0 * score, 2)


def recommend_transfers(ctx: StyleContext, settings: Settings) -> list[TransferOpportunity]:
    """Greedy surplus → deficit allocation for one style."""
    surplus = find_surplus_candidates(ctx, settings)
    if not surplus:
        return []
    deficits = find_deficit_candidates(ctx, settings)
    if not deficits:
        return []

    price = ctx.avg_selling_price()
    remaining = {(s.store_id, s.size_code): s.surplus for s in surplus}
    sources_by_size: dict[SizeCode, list[SurplusCandidate]] = {}
    for s in surplus:
        sources_by_size.setdefault(s.size_code, []).append(s)

    opportunities: list[TransferOpportunity] = []
    deficits.sort(key=lambda d: (-d.opportunity_value, -d.deficit, d.store_id, d.size_code))

    for dest in deficits:
        needed = dest.deficit
        used_sources: set[StoreId] = set()
        dest_info = ctx.stores.get(dest.store_id)

        while needed > 0:
            options = []
            for src in sources_by_size.get(dest.size_code, []):
                left = remaining[(src.store_id, src.size_code)]
                if src.store_id == dest.store_id or src.store_id in used_sources or left <= 0:
                    continue
                src_info = ctx.stores.get(src.store_id)
                qty = min(left, needed, settings.transfer_max_units)
                unit_cost = cost_per_unit(src_info, dest_info, settings)
                gain = round(min(qty, dest.velocity * settings.transfer_horizon_days) * price, 2)
                cost = round(qty * unit_cost, 2)
                net = round(gain - cost, 2)
                if net <= 0:
                    continue
                score = transfer_score(dest.velocity, left, needed, unit_cost, settings)
                options.append((score, net, src, qty, gain, cost, left, src_info))

            if not options:
                break

            options.sort(key=lambda o: (-o[0], -o[1], o[2].on_hand_variance, -o[6], o[2].store_id))
            score, net, src, qty, gain, cost, left, src_info = options[0]

            tags = [TransferReason.STOCKOUT if dest.on_hand == 0 else TransferReason.LOW_STOCK]
            tags.append(TransferReason.SAME_REGION if is_same_region(src_info, dest_info) else TransferReason.CROSS_REGION)
            if dest.is_core:
                tags.append(TransferReason.CORE_SIZE)
            if left >= 2 * qty:
                tags.append(TransferReason.EXCESS_SOURCE)
            if dest.velocity >= settings.transfer_velocity_reference:
                tags.append(TransferReason.HIGH_VELOCITY)

            opportunities.append(
                TransferOpportunity(
                    style_id=ctx.style.style_id,
                    size_code=dest.size_code,
                    source_store_id=src.store_id,
                    dest_store_id=dest.store_id,
                    transfer_qty=qty,
                    transfer_score=score,
                    source_on_hand=src.on_hand,
                    dest_on_hand=dest.on_hand,
                    dest_velocity=dest.velocity,
                    estimated_revenue_gain=gain,
                    estimated_transfer_cost=cost,
                    net_benefit=net,
                    reason="+".join(t.value for t in tags),
                )
            )
            remaining[(src.store_id, src.size_code)] = left - qty
            used_sources.add(src.store_id)
            needed -= qty

    if opportunities:
        logger.debug(
            "transfer.allocated",
            style_id=ctx.style.style_id,
            opportunities=len(opportunities),
            units=sum(o.transfer_qty for o in opportunities),
        )
    return opportunities
