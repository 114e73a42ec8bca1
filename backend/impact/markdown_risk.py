"""
Markdown Risk Estimator — likelihood a style will need a markdown.

Score (0-100) is a weighted sum of three factors:
  style age       min(1, age_days / age_horizon)
  size break      network deviation_score
  velocity trend  1 − recent_velocity / baseline_velocity  (window halves)

A style with stock but no sales in the window is floored at the
zero-velocity score.

ETA uses a decay model: recent velocity keeps decaying at the rate observed
between the two window halves while the style keeps ageing. The ETA is the
first day the projected score reaches the markdown threshold, or None when
that does not happen within the max horizon.
"""

import math
from dataclasses import dataclass, field
from datetime import date

import numpy as np

from core.config import Settings
from core.types import MarkdownReason, StyleId
from inventory.positions import StyleContext
from inventory.size_curve import StyleHealth


@dataclass(frozen=True)
class MarkdownRiskEstimate:
    style_id: StyleId
    markdown_risk_score: float
    markdown_eta_days: int | None
    reason: MarkdownReason
    factors: dict[str, float] = field(default_factory=dict)


def _velocity_halves(series: np.ndarray) -> tuple[float, float]:
    half = len(series) // 2
    if half == 0:
        return 0.0, 0.0
    return float(series[:half].mean()), float(series[half:].mean())


def velocity_decline(baseline: float, recent: float) -> float:
    if baseline <= 0:
        return 0.0
    return min(1.0, max(0.0, 1.0 - recent / baseline))


def score_markdown_risk(
    ctx: StyleContext,
    health: StyleHealth,
    settings: Settings,
    as_of_date: date,
) -> MarkdownRiskEstimate | None:
    agg = health.aggregate
    if agg.total_on_hand <= 0:
        return None

    horizon = max(settings.markdown_age_horizon_days, 1)
    age_days = max(0, (as_of_date - ctx.style.created_on).days)
    series = np.array(ctx.style_daily_units(), dtype=float)
    baseline, recent = _velocity_halves(series)
    zero_velocity = ctx.window_units <= 0

    def project(days_ahead: int) -> tuple[float, dict[MarkdownReason, float]]:
        age_factor = min(1.0, (age_days + days_ahead) / horizon)
        if baseline > 0 and 0 < recent < baseline:
            decay_rate = math.log(baseline / recent) / max(len(series) // 2, 1)
            projected_recent = recent * math.exp(-decay_rate * days_ahead)
        else:
            projected_recent = recent
        parts = {
            MarkdownReason.STYLE_AGE: settings.markdown_age_weight * age_factor,
            MarkdownReason.SIZE_BREAK: settings.markdown_deviation_weight * agg.deviation_score,
            MarkdownReason.VELOCITY_DECLINE: settings.markdown_decline_weight
            * velocity_decline(baseline, projected_recent),
        }
        total = sum(parts.values())
        if zero_velocity:
            total = max(total, settings.markdown_zero_velocity_score)
        return min(100.0, total), parts

    score, parts = project(0)
    score = round(score, 1)
    if score < settings.markdown_min_record_score:
        return None

    if zero_velocity:
        reason = MarkdownReason.ZERO_VELOCITY
    else:
        reason = max(parts, key=lambda r: parts[r])

    eta: int | None = None
    for day in range(settings.markdown_max_eta_days + 1):
        if project(day)[0] >= settings.markdown_risk_threshold:
            eta = day
            break

    return MarkdownRiskEstimate(
        style_id=ctx.style.style_id,
        markdown_risk_score=score,
        markdown_eta_days=eta,
        reason=reason,
        factors={r.value: round(v, 2) for r, v in parts.items()},
    )
