"""
Shared identifier and enumeration types.

Identifiers are NewTypes over str so a StoreId cannot be passed where a
StyleId is expected without a visible cast. States, severities and drivers
are closed str-enums: they serialize as plain strings in JSON and in the
database, and match exhaustively in code.
"""

from enum import Enum
from typing import NewType

TenantId = NewType("TenantId", str)
StyleId = NewType("StyleId", str)
StoreId = NewType("StoreId", str)
SizeCode = NewType("SizeCode", str)
RunId = NewType("RunId", str)

# Fallback ordering for size codes a tenant has not registered.
DEFAULT_SIZE_ORDER: tuple[str, ...] = ("XXS", "XS", "S", "M", "L", "XL", "XXL", "3XL")


class CurveState(str, Enum):
    HEALTHY = "healthy"
    WATCH = "watch"
    RISK = "risk"
    BROKEN = "broken"
    OUT_OF_STOCK = "out_of_stock"


class SizeStatus(str, Enum):
    PRESENT = "present"
    PARTIAL = "partial"
    MISSING = "missing"


class Severity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _SEVERITY_RANK[self]


_SEVERITY_RANK = {
    Severity.LOW: 0,
    Severity.MEDIUM: 1,
    Severity.HIGH: 2,
    Severity.CRITICAL: 3,
}


class LostRevenueDriver(str, Enum):
    CORE_SIZE_MISSING = "core_size_missing"
    MISSING_SIZE = "missing_size"
    PARTIAL_COVERAGE = "partial_coverage"
    SHALLOW_DEPTH = "shallow_depth"


class MarkdownReason(str, Enum):
    ZERO_VELOCITY = "zero_velocity"
    STYLE_AGE = "style_age"
    SIZE_BREAK = "size_break"
    VELOCITY_DECLINE = "velocity_decline"


class LockDriver(str, Enum):
    BROKEN_SIZE = "broken_size"
    SIZE_RISK = "size_risk"


class LeakDriver(str, Enum):
    SIZE_BREAK = "size_break"
    MARKDOWN_RISK = "markdown_risk"


class EvidenceType(str, Enum):
    """Sub-record kinds; the values double as source table names."""

    SIZE_HEALTH = "size_health"
    LOST_REVENUE = "lost_revenue"
    MARKDOWN_RISK = "markdown_risk"
    CASH_LOCK = "cash_lock"
    MARGIN_LEAK = "margin_leak"


class TransferReason(str, Enum):
    STOCKOUT = "stockout"
    LOW_STOCK = "low_stock"
    SAME_REGION = "same_region"
    CROSS_REGION = "cross_region"
    CORE_SIZE = "core_size"
    EXCESS_SOURCE = "excess_source"
    HIGH_VELOCITY = "high_velocity"


class RunStatus(str, Enum):
    RUNNING = "running"
    COMMITTED = "committed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    REJECTED = "rejected"


class TransferDecisionStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
