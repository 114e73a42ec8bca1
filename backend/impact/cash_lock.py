"""
Cash Lock Estimator — working capital tied up in unsellable size runs.

inventory_value is COGS-based (on_hand × unit_cost). locked_pct is the
fraction of the style's units held in stores whose curve is broken or at
risk; watch, healthy and out_of_stock stores lock nothing. lock_driver is
the locking state holding the most units (broken wins a tie).

expected_release_days comes from committed history: the median number of
days styles in the same deviation band took to get back to healthy.
"""

import math
import statistics
from collections import defaultdict
from dataclasses import dataclass
from datetime import date

from core.types import CurveState, LockDriver, StyleId
from inventory.positions import HealthHistoryPoint
from inventory.size_curve import StyleHealth

DEVIATION_BAND_WIDTH = 0.1

LOCKING_STATES = {
    CurveState.BROKEN: LockDriver.BROKEN_SIZE,
    CurveState.RISK: LockDriver.SIZE_RISK,
}


@dataclass(frozen=True)
class CashLockEstimate:
    style_id: StyleId
    inventory_value: float
    cash_locked_value: float
    locked_pct: float
    expected_release_days: int | None
    lock_driver: LockDriver


def is_locking_state(curve_state: CurveState | str) -> bool:
    return CurveState(curve_state) in LOCKING_STATES


def deviation_band(deviation: float) -> int:
    return min(int(math.floor(deviation / DEVIATION_BAND_WIDTH)), int(1 / DEVIATION_BAND_WIDTH) - 1)


class RecoveryProfile:
    """Median days-to-healthy per deviation band, learned from history."""

    def __init__(self, band_days: dict[int, int] | None = None):
        self.band_days = band_days or {}

    @classmethod
    def from_history(cls, history: list[HealthHistoryPoint]) -> "RecoveryProfile":
        by_style: dict[str, list[HealthHistoryPoint]] = defaultdict(list)
        for point in history:
            by_style[point.style_id].append(point)

        samples: dict[int, list[int]] = defaultdict(list)
        for points in by_style.values():
            open_bands: dict[int, date] = {}
            for point in sorted(points, key=lambda p: p.as_of_date):
                if point.curve_state == CurveState.HEALTHY.value:
                    for band, started in open_bands.items():
                        samples[band].append((point.as_of_date - started).days)
                    open_bands = {}
                elif point.curve_state != CurveState.OUT_OF_STOCK.value:
                    open_bands.setdefault(deviation_band(point.deviation_score), point.as_of_date)

        return cls({band: int(round(statistics.median(days))) for band, days in samples.items() if days})

    def expected_days(self, deviation: float) -> int | None:
        return self.band_days.get(deviation_band(deviation))


def estimate_cash_lock(
    health: StyleHealth,
    recovery: RecoveryProfile,
) -> CashLockEstimate | None:
    agg = health.aggregate
    if agg.total_on_hand <= 0:
        return None

    locked_units: dict[CurveState, int] = defaultdict(int)
    for store in health.stores:
        if is_locking_state(store.curve_state):
            locked_units[CurveState(store.curve_state)] += store.total_on_hand

    locked_pct = round(sum(locked_units.values()) / agg.total_on_hand, 4)
    if locked_pct <= 0:
        return None

    driver_state = max(locked_units, key=lambda s: (locked_units[s], s == CurveState.BROKEN))

    return CashLockEstimate(
        style_id=agg.style_id,
        inventory_value=agg.inventory_value,
        cash_locked_value=round(agg.inventory_value * locked_pct, 2),
        locked_pct=locked_pct,
        expected_release_days=recovery.expected_days(agg.deviation_score),
        lock_driver=LOCKING_STATES[driver_state],
    )
