"""
Evidence Compiler — one severity-tagged audit snapshot per style.

Severity Rules (the pack takes the maximum over present sub-records):
  - markdown_risk: score ≥ 80 critical, ≥ 60 high, ≥ 40 medium
  - size_health:   broken / out_of_stock / core size missing high, risk medium
  - cash_lock:     locked_pct ≥ 0.7 high, ≥ 0.4 medium (settings)
  - lost_revenue:  ≥ high-value setting high, > 0 medium
  - margin_leak:   cumulative 30d ≥ high-value setting high, otherwise medium

evidence_type is the sub-record that set the severity; ties go to the
earlier entry in EVIDENCE_PRECEDENCE. source_tables always follows
SOURCE_TABLE_ORDER. The pack carries no timestamp, so identical inputs
compile to an identical pack.
"""

from dataclasses import dataclass, field
from typing import Any

from core.config import Settings
from core.types import CurveState, EvidenceType, Severity, StyleId
from impact.cash_lock import CashLockEstimate
from impact.lost_revenue import LostRevenueEstimate
from impact.margin_leak import MarginLeakEstimate
from impact.markdown_risk import MarkdownRiskEstimate
from inventory.size_curve import HealthResult

SOURCE_TABLE_ORDER = (
    EvidenceType.SIZE_HEALTH,
    EvidenceType.LOST_REVENUE,
    EvidenceType.MARKDOWN_RISK,
    EvidenceType.CASH_LOCK,
    EvidenceType.MARGIN_LEAK,
)

EVIDENCE_PRECEDENCE = (
    EvidenceType.MARKDOWN_RISK,
    EvidenceType.SIZE_HEALTH,
    EvidenceType.LOST_REVENUE,
    EvidenceType.CASH_LOCK,
    EvidenceType.MARGIN_LEAK,
)

MARKDOWN_SEVERITY = (
    (80.0, Severity.CRITICAL),
    (60.0, Severity.HIGH),
    (40.0, Severity.MEDIUM),
)

@dataclass(frozen=True)
class EvidencePack:
    style_id: StyleId
    evidence_type: EvidenceType
    severity: Severity
    summary: str
    data_snapshot: dict[str, Any] = field(default_factory=dict)
    source_tables: list[str] = field(default_factory=list)


def classify_markdown_severity(score: float) -> Severity:
    for threshold, severity in MARKDOWN_SEVERITY:
        if score >= threshold:
            return severity
    return Severity.LOW


def classify_health_severity(health: HealthResult) -> Severity:
    if health.core_size_missing or health.curve_state in (CurveState.BROKEN, CurveState.OUT_OF_STOCK):
        return Severity.HIGH
    if health.curve_state == CurveState.RISK:
        return Severity.MEDIUM
    return Severity.LOW


def classify_cash_lock_severity(locked_pct: float, settings: Settings) -> Severity:
    if locked_pct >= settings.evidence_cash_lock_high_pct:
        return Severity.HIGH
    if locked_pct >= settings.evidence_cash_lock_medium_pct:
        return Severity.MEDIUM
    return Severity.LOW


def classify_lost_revenue_severity(lost_revenue: float, settings: Settings) -> Severity:
    if lost_revenue >= settings.evidence_lost_revenue_high_value:
        return Severity.HIGH
    if lost_revenue > 0:
        return Severity.MEDIUM
    return Severity.LOW


def classify_margin_leak_severity(cumulative_30d: float, settings: Settings) -> Severity:
    if cumulative_30d >= settings.evidence_margin_leak_high_value:
        return Severity.HIGH
    return Severity.MEDIUM


# ──────────────────────────────────────────────────────────────────────────
# Summary lines
# ──────────────────────────────────────────────────────────────────────────


def _health_line(health: HealthResult) -> str:
    line = f"Size curve {health.curve_state.value} (health {health.health_score:.0f}/100)"
    if health.core_size_missing:
        line += ", core size missing"
    return line


def _lost_revenue_line(lost: LostRevenueEstimate) -> str:
    return f"Lost revenue ${lost.lost_revenue_est:,.2f} from {lost.driver.value.replace('_', ' ')}"


def _markdown_line(markdown: MarkdownRiskEstimate) -> str:
    eta = (
        f"threshold in {markdown.markdown_eta_days}d"
        if markdown.markdown_eta_days is not None
        else "threshold not reached within horizon"
    )
    return f"Markdown risk {markdown.markdown_risk_score:.0f}/100 driven by {markdown.reason.value.replace('_', ' ')}, {eta}"


def _cash_lock_line(cash: CashLockEstimate) -> str:
    return (
        f"${cash.cash_locked_value:,.2f} cash locked ({cash.locked_pct:.0%} of inventory) "
        f"from {cash.lock_driver.value.replace('_', ' ')}"
    )


def _margin_leak_line(leak: MarginLeakEstimate) -> str:
    return f"Margin leak ${leak.cumulative_leak_30d:,.2f} over 30d, mostly {leak.leak_driver.value.replace('_', ' ')}"


# ──────────────────────────────────────────────────────────────────────────
# Compiler
# ──────────────────────────────────────────────────────────────────────────


def compile_evidence_pack(
    style_id: StyleId,
    settings: Settings,
    health: HealthResult | None = None,
    lost: LostRevenueEstimate | None = None,
    markdown: MarkdownRiskEstimate | None = None,
    cash: CashLockEstimate | None = None,
    leak: MarginLeakEstimate | None = None,
) -> EvidencePack | None:
    """Compile the evidence pack for one style, or None when nothing is present."""
    severities: dict[EvidenceType, Severity] = {}
    lines: dict[EvidenceType, str] = {}
    snapshot: dict[str, Any] = {}

    if health is not None:
        severities[EvidenceType.SIZE_HEALTH] = classify_health_severity(health)
        lines[EvidenceType.SIZE_HEALTH] = _health_line(health)
        snapshot["health"] = {
            "score": health.health_score,
            "state": health.curve_state.value,
            "core_missing": health.core_size_missing,
            "deviation": health.deviation_score,
            "size_status": dict(sorted(health.size_status.items())),
        }

    if lost is not None:
        severities[EvidenceType.LOST_REVENUE] = classify_lost_revenue_severity(lost.lost_revenue_est, settings)
        lines[EvidenceType.LOST_REVENUE] = _lost_revenue_line(lost)
        snapshot["lost_revenue"] = {
            "units": lost.lost_units_est,
            "revenue": lost.lost_revenue_est,
            "driver": lost.driver.value,
        }

    if markdown is not None:
        severities[EvidenceType.MARKDOWN_RISK] = classify_markdown_severity(markdown.markdown_risk_score)
        lines[EvidenceType.MARKDOWN_RISK] = _markdown_line(markdown)
        snapshot["markdown_risk"] = {
            "score": markdown.markdown_risk_score,
            "eta_days": markdown.markdown_eta_days,
            "reason": markdown.reason.value,
        }

    if cash is not None:
        severities[EvidenceType.CASH_LOCK] = classify_cash_lock_severity(cash.locked_pct, settings)
        lines[EvidenceType.CASH_LOCK] = _cash_lock_line(cash)
        snapshot["cash_lock"] = {
            "value": cash.cash_locked_value,
            "pct": cash.locked_pct,
            "release_days": cash.expected_release_days,
        }

    if leak is not None:
        severities[EvidenceType.MARGIN_LEAK] = classify_margin_leak_severity(leak.cumulative_leak_30d, settings)
        lines[EvidenceType.MARGIN_LEAK] = _margin_leak_line(leak)
        snapshot["margin_leak"] = {
            "total": leak.margin_leak_value,
            "drivers": dict(sorted(leak.leak_detail.items())),
            "cumulative_30d": leak.cumulative_leak_30d,
        }

    if not severities:
        return None

    severity = max(severities.values(), key=lambda s: s.rank)
    evidence_type = next(t for t in EVIDENCE_PRECEDENCE if severities.get(t) == severity)

    return EvidencePack(
        style_id=style_id,
        evidence_type=evidence_type,
        severity=severity,
        summary=lines[evidence_type],
        data_snapshot=snapshot,
        source_tables=[t.value for t in SOURCE_TABLE_ORDER if t in severities],
    )
