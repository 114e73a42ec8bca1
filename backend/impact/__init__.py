"""Impact estimators: lost revenue, markdown risk, cash lock, margin leak."""

from impact.cash_lock import CashLockEstimate, RecoveryProfile, estimate_cash_lock
from impact.lost_revenue import LostRevenueEstimate, estimate_lost_revenue
from impact.margin_leak import MarginLeakEstimate, estimate_margin_leak
from impact.markdown_risk import MarkdownRiskEstimate, score_markdown_risk

__all__ = [
    "CashLockEstimate",
    "LostRevenueEstimate",
    "MarginLeakEstimate",
    "MarkdownRiskEstimate",
    "RecoveryProfile",
    "estimate_cash_lock",
    "estimate_lost_revenue",
    "estimate_margin_leak",
    "score_markdown_risk",
]
