"""
models.py
----------
Core domain models. These are the typed contracts between engine layers.

- Subscription / PaymentRecord: the persisted ledger. A PaymentRecord is one
  discrete billing event; (subscription_id, billing_date) is its natural key.

- Category / UserProfile: read-only lookups consumed by the budget check and
  by analytics (base currency).

- HeatmapCell, ProjectionBucket, SankeyNode, SankeyLink, AnomalyEvent,
  AnalysisOverview, DashboardStats, ExpenseTrend: derived analytics values.
  Never persisted, recomputed on every request.
"""

from dataclasses import dataclass, field, asdict
from datetime import date, datetime
from typing import Optional


class BillingCycle:
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    YEARLY = "yearly"

    ALL = (DAILY, WEEKLY, MONTHLY, YEARLY)


class SubscriptionStatus:
    ACTIVE = "Active"
    PAUSED = "Paused"
    CANCELLED = "Cancelled"

    ALL = (ACTIVE, PAUSED, CANCELLED)


class RecordStatus:
    PENDING = "PENDING"
    UNPAID = "UNPAID"                # Legacy alias of PENDING
    PAID = "PAID"
    CANCELLED = "CANCELLED"

    OPEN = frozenset({PENDING, UNPAID})
    TERMINAL = frozenset({PAID, CANCELLED})


@dataclass
class Subscription:
    """A recurring charge owned by one user."""

    # Identity
    id: str
    user_id: str
    name: str

    # Commercial
    price: float
    currency: str                    # ISO 4217 code, upper case

    # Schedule
    billing_cycle: str               # "daily" | "weekly" | "monthly" | "yearly"
    start_date: date
    next_payment: date               # Next unconsumed cycle boundary. Only moves forward.

    status: str = SubscriptionStatus.ACTIVE
    category_id: Optional[str] = None
    category_name: Optional[str] = None

    # Flags
    auto_renewal: bool = True
    enable_notification: bool = True
    notify_days_before: int = 3

    created_at: datetime = field(default_factory=datetime.now)
    updated_at: datetime = field(default_factory=datetime.now)

    @property
    def is_active(self) -> bool:
        return self.status == SubscriptionStatus.ACTIVE


@dataclass
class PaymentRecord:
    """
    One billing event in the ledger.

    Created PENDING by the bill generator, or PAID + backfilled during
    subscription creation. PAID and CANCELLED are terminal.
    """

    id: str
    subscription_id: str
    user_id: str                     # Denormalized from the subscription
    amount: float
    currency: str
    billing_date: date
    status: str = RecordStatus.PENDING
    note: Optional[str] = None
    is_backfilled: bool = False
    created_at: datetime = field(default_factory=datetime.now)
    updated_at: datetime = field(default_factory=datetime.now)

    @property
    def is_open(self) -> bool:
        return self.status in RecordStatus.OPEN


@dataclass
class Category:
    id: str
    name: str
    user_id: Optional[str] = None    # None for system default categories
    budget_limit: Optional[float] = None


@dataclass
class UserProfile:
    id: str
    currency: Optional[str] = None   # Base currency for analytics
    monthly_budget: Optional[float] = None


@dataclass
class NotificationEvent:
    """One outbound notification. Delivery is the sink's concern."""
    user_id: str
    event_key: str                   # e.g. "billing.payment_success"
    data: dict = field(default_factory=dict)
    channels: list[str] = field(default_factory=list)
    priority: str = "NORMAL"         # "NORMAL" | "HIGH"
    created_at: datetime = field(default_factory=datetime.now)


@dataclass
class SweepFailure:
    subscription_id: str
    reason: str                      # "error" | "timeout"
    message: str


@dataclass
class SweepReport:
    """Outcome of one RunDailySweep invocation."""
    run_date: date
    scanned: int = 0
    generated: int = 0
    unchanged: int = 0
    failed: int = 0
    timed_out: int = 0
    failures: list[SweepFailure] = field(default_factory=list)

    @property
    def summary(self) -> dict:
        return {
            "run_date": self.run_date.isoformat(),
            "scanned": self.scanned,
            "generated": self.generated,
            "unchanged": self.unchanged,
            "failed": self.failed,
            "timed_out": self.timed_out,
        }


# =============================================================================
# ANALYTICS VALUE OBJECTS
# =============================================================================

@dataclass
class HeatmapCell:
    date: str                        # ISO day
    count: int


@dataclass
class ProjectionBucket:
    month: str                       # "YYYY-MM"
    label: str                       # Short month name, e.g. "Oct"
    amount: float


@dataclass
class SankeyNode:
    name: str


@dataclass
class SankeyLink:
    source: str                      # Category name
    target: str                      # Subscription name
    value: float                     # Converted monthly-equivalent cost


@dataclass
class AnomalyEvent:
    id: str
    type: str                        # "PRICE_INCREASE"
    severity: str
    subscription_id: str
    subscription_name: str
    date: date
    old_amount: float
    new_amount: float
    currency: str
    description: str


@dataclass
class CategoryShare:
    name: str
    value: float                     # Converted monthly-equivalent spend
    count: int
    percentage: float


@dataclass
class AnalysisOverview:
    heatmap: list[HeatmapCell]
    total_expense: float
    projected_total: float
    currency: str
    projection: list[ProjectionBucket]
    sankey_nodes: list[SankeyNode]
    sankey_links: list[SankeyLink]
    anomalies: list[AnomalyEvent]

    def to_dict(self) -> dict:
        """Plain structure for JSON output (dates rendered ISO)."""
        payload = asdict(self)
        payload["sankey"] = {
            "nodes": payload.pop("sankey_nodes"),
            "links": payload.pop("sankey_links"),
        }
        for anomaly in payload["anomalies"]:
            anomaly["date"] = anomaly["date"].isoformat()
        return payload


# =============================================================================
# DASHBOARD VALUE OBJECTS
# =============================================================================

@dataclass
class NextRenewal:
    subscription_id: str
    name: str
    amount: float                    # Subscription currency, unconverted
    currency: str
    billing_cycle: str
    next_payment: date
    days_remaining: int


@dataclass
class DashboardStats:
    """
    Headline figures for one user, all in `currency` and monthly-equivalent.

    The trend compares the current total against the same total without
    subscriptions created this month.
    """
    currency: str

    # Expenses
    monthly_total: float
    trend_percentage: float
    trend_direction: str             # "up" | "down" | "flat"
    trend_diff: float
    history: list[float]             # Last 12 months, oldest first

    # Subscriptions
    active_count: int
    new_count: int
    category_count: int

    # Budget
    budget_limit: float
    budget_remaining: float
    budget_used_percentage: int
    budget_status: str               # "safe" | "warning" | "exceeded"

    # Renewals
    upcoming_count: int
    upcoming_days: int
    next_renewal: Optional[NextRenewal] = None

    def to_dict(self) -> dict:
        payload = asdict(self)
        if payload["next_renewal"]:
            payload["next_renewal"]["next_payment"] = payload["next_renewal"]["next_payment"].isoformat()
        return payload


@dataclass
class ExpenseTrend:
    labels: list[str]                # "YYYY-MM", oldest first
    values: list[float]
    currency: str
