"""
Curve Classifier — size-health score and curve state per style.

For each expected size the classifier looks at how many carrying stores
actually stock it and how the observed depth compares with the reference
size curve.

Algorithm:
  shares_obs   = on_hand per size / total on_hand
  shares_ref   = style_sizes.ref_ratio (uniform when unset)
  distribution = Σ (shares_obs − shares_ref)² / worst_case
  coverage_gap = Σ shares_ref × (1 − stores_stocking / stores_carrying)
  deviation    = clamp(distribution + coverage_gap + core_penalty, 0, 1)
  health_score = 100 × (1 − deviation)

Curve state, evaluated in order:
  out_of_stock  total on_hand == 0
  broken        core size fully missing, or deviation ≥ broken threshold
  risk          deviation ≥ risk threshold
  watch         deviation ≥ watch threshold
  healthy       otherwise

One network (aggregate) record is produced per style, plus one per
carrying store.
"""

from dataclasses import dataclass, field

import numpy as np
import structlog

from core.config import Settings
from core.errors import DataQualityError
from core.types import CurveState, SizeStatus, StoreId, StyleId
from inventory.positions import ExpectedSize, StyleContext

logger = structlog.get_logger()


@dataclass(frozen=True)
class HealthResult:
    style_id: StyleId
    store_id: StoreId | None
    health_score: float
    curve_state: CurveState
    deviation_score: float
    core_size_missing: bool
    shallow_depth_count: int
    total_on_hand: int
    inventory_value: float
    size_status: dict[str, str] = field(default_factory=dict)
    size_coverage: dict[str, float] = field(default_factory=dict)


@dataclass(frozen=True)
class StyleHealth:
    aggregate: HealthResult
    stores: list[HealthResult]


def reference_shares(expected: list[ExpectedSize]) -> np.ndarray:
    """Normalised reference curve; uniform when no ratios are configured."""
    ratios = np.array([max(e.ref_ratio, 0.0) for e in expected], dtype=float)
    total = ratios.sum()
    if total <= 0:
        return np.full(len(expected), 1.0 / len(expected))
    return ratios / total


def distribution_deviation(units: np.ndarray, ref: np.ndarray) -> float:
    """Normalised sum of squared share deviations, in [0, 1]."""
    total = units.sum()
    if total <= 0 or len(ref) < 2:
        return 0.0
    observed = units / total
    ssd = float(np.sum((observed - ref) ** 2))
    r_min = float(ref.min())
    worst = 1.0 - 2.0 * r_min + float(np.sum(ref**2))
    if worst <= 0:
        return 0.0
    return min(1.0, ssd / worst)


def compute_deviation(
    units: np.ndarray,
    ref: np.ndarray,
    coverage: np.ndarray,
    core_size_missing: bool,
    core_penalty: float,
) -> float:
    coverage_gap = float(np.sum(ref * (1.0 - coverage)))
    deviation = distribution_deviation(units, ref) + coverage_gap
    if core_size_missing:
        deviation += core_penalty
    return round(min(1.0, max(0.0, deviation)), 4)


def health_score_from_deviation(deviation: float) -> float:
    return round(max(0.0, 100.0 * (1.0 - deviation)), 2)


def classify_curve_state(
    deviation: float,
    core_size_missing: bool,
    total_on_hand: int,
    settings: Settings,
) -> CurveState:
    if total_on_hand <= 0:
        return CurveState.OUT_OF_STOCK
    if core_size_missing or deviation >= settings.curve_broken_threshold:
        return CurveState.BROKEN
    if deviation >= settings.curve_risk_threshold:
        return CurveState.RISK
    if deviation >= settings.curve_watch_threshold:
        return CurveState.WATCH
    return CurveState.HEALTHY


def _validate(ctx: StyleContext) -> None:
    style_id = ctx.style.style_id
    if not ctx.expected_sizes:
        raise DataQualityError("Style has no expected size mapping", style_id=style_id)
    for (store_id, size_code), qty in ctx.on_hand.items():
        if qty is None or qty < 0:
            raise DataQualityError(
                "Malformed position: negative or missing on-hand",
                style_id=style_id,
                store_id=store_id,
                size_code=size_code,
            )
    expected_codes = {e.size_code for e in ctx.expected_sizes}
    unexpected = sorted({size for _, size in ctx.on_hand} - expected_codes)
    if unexpected:
        logger.warning("size_curve.unexpected_sizes_ignored", style_id=style_id, sizes=unexpected)


def _build_result(
    ctx: StyleContext,
    store_id: StoreId | None,
    stores: list[StoreId],
    ref: np.ndarray,
    settings: Settings,
) -> HealthResult:
    expected = ctx.expected_sizes
    grid = np.array(
        [[ctx.on_hand.get((sid, e.size_code), 0) for e in expected] for sid in stores],
        dtype=float,
    ).reshape(len(stores), len(expected))

    units = grid.sum(axis=0) if len(stores) else np.zeros(len(expected))
    stocking = (grid > 0).sum(axis=0) if len(stores) else np.zeros(len(expected))
    coverage = stocking / len(stores) if len(stores) else np.zeros(len(expected))

    core_missing = any(e.is_core and stocking[i] == 0 for i, e in enumerate(expected))
    total = int(units.sum())
    deviation = compute_deviation(units, ref, coverage, core_missing, settings.core_size_missing_penalty)
    shallow = int(np.sum((grid > 0) & (grid < settings.shallow_depth_units)))

    size_status: dict[str, str] = {}
    size_coverage: dict[str, float] = {}
    for i, e in enumerate(expected):
        if stocking[i] == 0:
            status = SizeStatus.MISSING
        elif stocking[i] < len(stores):
            status = SizeStatus.PARTIAL
        else:
            status = SizeStatus.PRESENT
        size_status[str(e.size_code)] = status.value
        size_coverage[str(e.size_code)] = round(float(coverage[i]), 4)

    return HealthResult(
        style_id=ctx.style.style_id,
        store_id=store_id,
        health_score=health_score_from_deviation(deviation),
        curve_state=classify_curve_state(deviation, core_missing, total, settings),
        deviation_score=deviation,
        core_size_missing=core_missing,
        shallow_depth_count=shallow,
        total_on_hand=total,
        inventory_value=round(total * ctx.style.unit_cost, 2),
        size_status=size_status,
        size_coverage=size_coverage,
    )


def classify_style(ctx: StyleContext, settings: Settings) -> StyleHealth:
    """Classify one style at network level and per carrying store."""
    _validate(ctx)
    ref = reference_shares(ctx.expected_sizes)
    store_ids = ctx.store_ids

    aggregate = _build_result(ctx, None, store_ids, ref, settings)
    per_store = [_build_result(ctx, sid, [sid], ref, settings) for sid in store_ids]
    return StyleHealth(aggregate=aggregate, stores=per_store)

