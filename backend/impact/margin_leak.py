"""
Margin Leak Estimator — gross margin eroded by size breaks and markdowns.

Two drivers:
  size_break     lost full-price revenue × gross margin
  markdown_risk  retail value on hand × expected markdown depth × score/100,
                 only once the markdown score reaches the leak threshold

The component estimates are recomputed here from the same pure functions
the other estimators use, so all four can run concurrently.
cumulative_leak_30d = today's leak + the latest committed leak for each
prior as-of-date in the trailing window.
"""

from dataclasses import dataclass, field
from datetime import date, timedelta

from core.config import Settings
from core.types import LeakDriver, StyleId
from impact.lost_revenue import estimate_lost_revenue
from impact.markdown_risk import score_markdown_risk
from inventory.positions import StyleContext
from inventory.size_curve import StyleHealth


@dataclass(frozen=True)
class MarginLeakEstimate:
    style_id: StyleId
    margin_leak_value: float
    leak_driver: LeakDriver
    leak_detail: dict[str, float] = field(default_factory=dict)
    cumulative_leak_30d: float = 0.0


def gross_margin(unit_price: float, unit_cost: float, default: float) -> float:
    if unit_price <= 0 or unit_cost <= 0:
        return default
    return min(1.0, max(0.0, (unit_price - unit_cost) / unit_price))


def estimate_margin_leak(
    ctx: StyleContext,
    health: StyleHealth,
    settings: Settings,
    as_of_date: date,
    leak_history: list[tuple[date, float]] | None = None,
) -> MarginLeakEstimate | None:
    margin = gross_margin(ctx.style.unit_price, ctx.style.unit_cost, settings.default_gross_margin)

    lost = estimate_lost_revenue(ctx, health, settings)
    size_break = round(lost.lost_revenue_est * margin, 2) if lost else 0.0

    markdown = 0.0
    risk = score_markdown_risk(ctx, health, settings, as_of_date)
    if risk and risk.markdown_risk_score >= settings.markdown_leak_min_score:
        retail_value = health.aggregate.total_on_hand * ctx.style.unit_price
        markdown = round(retail_value * settings.markdown_expected_depth * risk.markdown_risk_score / 100.0, 2)

    total = round(size_break + markdown, 2)
    if total <= 0:
        return None

    window_start = as_of_date - timedelta(days=settings.margin_leak_window_days - 1)
    prior = sum(value for day, value in (leak_history or []) if window_start <= day < as_of_date)

    return MarginLeakEstimate(
        style_id=ctx.style.style_id,
        margin_leak_value=total,
        leak_driver=LeakDriver.MARKDOWN_RISK if markdown > size_break else LeakDriver.SIZE_BREAK,
        leak_detail={
            LeakDriver.SIZE_BREAK.value: size_break,
            LeakDriver.MARKDOWN_RISK.value: markdown,
        },
        cumulative_leak_30d=round(total + prior, 2),
    )
