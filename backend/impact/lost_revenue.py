"""
Lost Revenue Estimator — sales missed because the size curve is incomplete.

  availability   = Σ ref_share(size) × mean over carrying stores of cell availability
                   (1 stocked, 0.5 shallow, 0 missing)
  lost_fraction  = min(max_fraction, 1 − availability)
  expected_units = actual_units / (1 − lost_fraction)
  lost_units     = expected_units − actual_units
  lost_revenue   = lost_units × average selling price
"""

from dataclasses import dataclass

import numpy as np

from core.config import Settings
from core.types import LostRevenueDriver, SizeStatus, StyleId
from inventory.positions import StyleContext
from inventory.size_curve import StyleHealth, reference_shares


@dataclass(frozen=True)
class LostRevenueEstimate:
    style_id: StyleId
    lost_units_est: int
    lost_revenue_est: float
    driver: LostRevenueDriver
    availability: float
    actual_units: int


def _cell_availability(on_hand: int, shallow_units: int) -> float:
    if on_hand <= 0:
        return 0.0
    if on_hand < shallow_units:
        return 0.5
    return 1.0


def estimate_lost_revenue(
    ctx: StyleContext,
    health: StyleHealth,
    settings: Settings,
) -> LostRevenueEstimate | None:
    expected = ctx.expected_sizes
    stores = ctx.store_ids
    if not stores or ctx.window_units <= 0:
        return None

    ref = reference_shares(expected)
    availability_by_size = np.array(
        [
            np.mean([_cell_availability(ctx.on_hand.get((sid, e.size_code), 0), settings.shallow_depth_units) for sid in stores])
            for e in expected
        ]
    )
    availability = float(np.sum(ref * availability_by_size))
    lost_fraction = min(settings.lost_revenue_max_fraction, 1.0 - availability)
    if lost_fraction <= 0:
        return None

    actual = ctx.window_units
    expected_units = actual / (1.0 - lost_fraction)
    lost_units = int(round(expected_units - actual))
    if lost_units <= 0:
        return None

    # Attribute the availability gap to its dominant cause.
    status = health.aggregate.size_status
    contributions = {
        LostRevenueDriver.MISSING_SIZE: 0.0,
        LostRevenueDriver.PARTIAL_COVERAGE: 0.0,
        LostRevenueDriver.SHALLOW_DEPTH: 0.0,
    }
    coverage = health.aggregate.size_coverage
    for i, e in enumerate(expected):
        gap = float(ref[i] * (1.0 - availability_by_size[i]))
        cell_status = status.get(str(e.size_code))
        if cell_status == SizeStatus.MISSING.value:
            contributions[LostRevenueDriver.MISSING_SIZE] += gap
        elif cell_status == SizeStatus.PARTIAL.value:
            coverage_gap = float(ref[i] * (1.0 - coverage.get(str(e.size_code), 0.0)))
            contributions[LostRevenueDriver.PARTIAL_COVERAGE] += coverage_gap
            contributions[LostRevenueDriver.SHALLOW_DEPTH] += max(0.0, gap - coverage_gap)
        else:
            contributions[LostRevenueDriver.SHALLOW_DEPTH] += gap

    if health.aggregate.core_size_missing:
        driver = LostRevenueDriver.CORE_SIZE_MISSING
    else:
        driver = max(contributions, key=lambda d: contributions[d])

    return LostRevenueEstimate(
        style_id=ctx.style.style_id,
        lost_units_est=lost_units,
        lost_revenue_est=round(lost_units * ctx.avg_selling_price(), 2),
        driver=driver,
        availability=round(availability, 4),
        actual_units=actual,
    )
