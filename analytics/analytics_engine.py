"""
analytics_engine.py
--------------------
Read-side analytics over the payment ledger and active subscriptions.

Nothing here is cached or persisted: every call recomputes from the stores,
so a confirmation or sweep is reflected on the next read.

Views produced by get_analysis_overview():
    - Heatmap: PAID records per calendar day, Jan 1 of this year to today,
      plus the year-to-date total in the user's base currency.
    - Projection: expected spend for each of the next N calendar months
      (N = projection_months), walking every active subscription's schedule
      from max(next_payment, today). Subscriptions can be excluded by id to
      simulate dropping them; stored state is never touched.
    - Sankey: category → subscription links weighted by converted
      monthly-equivalent cost.
    - Anomalies: adjacent PAID records of one subscription where the amount
      strictly increased (PRICE_INCREASE).

Dashboard views (get_stats, expense_trend, category_distribution) work on
the monthly-equivalent run rate of active subscriptions rather than on the
ledger.

Currency: every cross-currency sum goes through the CurrencyConverter. When a
rate is unavailable the raw amount is used instead and a warning is logged.
This is a known precision gap, not something to paper over with guesses.
"""

import logging
from dataclasses import asdict
from datetime import date, timedelta
from typing import Callable, Iterable

import numpy as np
import pandas as pd

from core import cycle_math
from core.errors import CurrencyConversionError, ValidationError
from core.models import (
    PaymentRecord, Subscription,
    HeatmapCell, ProjectionBucket, SankeyNode, SankeyLink, AnomalyEvent,
    CategoryShare, AnalysisOverview, DashboardStats, ExpenseTrend, NextRenewal,
)
from collaborators.currency import CurrencyConverter
from config.config_loader import get_analytics_config
from stores.base_store import SubscriptionStore, PaymentRecordStore, UserStore

logger = logging.getLogger(__name__)

PRICE_INCREASE = "PRICE_INCREASE"


class AnalyticsEngine:
    """
    Usage:
        engine = AnalyticsEngine(subscription_store, record_store, converter, user_store)
        overview = engine.get_analysis_overview(user_id, excluded_ids=["sub-1"])
    """

    def __init__(
        self,
        subscriptions: SubscriptionStore,
        records: PaymentRecordStore,
        converter: CurrencyConverter,
        users: UserStore | None = None,
        clock: Callable[[], date] = date.today,
    ):
        self.config = get_analytics_config()
        self.subscriptions = subscriptions
        self.records = records
        self.converter = converter
        self.users = users
        self.clock = clock
        self.cycles_per_year = self.config["cycles_per_year"]

    # -------------------------------------------------------------------------
    # PUBLIC INTERFACE
    # -------------------------------------------------------------------------

    def get_analysis_overview(self, user_id: str, excluded_ids: Iterable[str] = ()) -> AnalysisOverview:
        """
        Builds every analytics view for one user.

        Heatmap, total expense and anomalies are actuals and ignore
        excluded_ids. Projection and sankey reflect the simulation.
        """
        today = self.clock()
        base_currency = self.base_currency(user_id)
        excluded = set(excluded_ids)

        year_records = self.records.find_paid_by_user_and_range(user_id, today.replace(month=1, day=1), today)
        active = self.subscriptions.find_active_by_user(user_id)
        simulated = [s for s in active if s.id not in excluded]

        heatmap, total_expense = self.build_heatmap(year_records, base_currency)
        projection, projected_total = self.project(simulated, base_currency)
        nodes, links = self.build_sankey(simulated, base_currency)
        anomalies = self.detect_anomalies(year_records)

        logger.info(
            f"Analysis for user {user_id}: {len(year_records)} YTD records, "
            f"{len(simulated)}/{len(active)} subscriptions projected, {len(anomalies)} anomalies."
        )
        return AnalysisOverview(
            heatmap=heatmap,
            total_expense=total_expense,
            projected_total=projected_total,
            currency=base_currency,
            projection=projection,
            sankey_nodes=nodes,
            sankey_links=links,
            anomalies=anomalies,
        )

    def base_currency(self, user_id: str) -> str:
        user = self.users.find_by_id(user_id) if self.users else None
        if user is not None and user.currency:
            return user.currency.upper()
        return self.config["default_base_currency"]

    # -------------------------------------------------------------------------
    # HEATMAP
    # -------------------------------------------------------------------------

    def build_heatmap(self, records: list[PaymentRecord], base_currency: str) -> tuple[list[HeatmapCell], float]:
        """Record count per day (ascending) and the converted total."""
        df = _records_frame(records)
        if df.empty:
            return [], 0.0

        df["day"] = pd.to_datetime(df["billing_date"]).dt.strftime("%Y-%m-%d")
        counts = df.groupby("day").size().sort_index()
        cells = [HeatmapCell(date=day, count=int(n)) for day, n in counts.items()]

        converted = [self.convert(a, c, base_currency) for a, c in zip(df["amount"], df["currency"])]
        total = round(float(np.sum(converted)), 2)
        return cells, total

    # -------------------------------------------------------------------------
    # PROJECTION
    # -------------------------------------------------------------------------

    def project(self, subscriptions: list[Subscription], base_currency: str) -> tuple[list[ProjectionBucket], float]:
        """
        Projects spend into calendar-month buckets starting this month.

        The horizon ends at the first day of the month after the last bucket,
        so every projected charge lands in exactly one bucket. The total is
        the sum of the rounded buckets.
        """
        today = self.clock()
        months = self.config["projection_months"]
        first_month = today.replace(day=1)
        horizon = cycle_math.add_months(first_month, months)
        month_starts = [cycle_math.add_months(first_month, i) for i in range(months)]
        sums = {m.strftime("%Y-%m"): 0.0 for m in month_starts}

        for sub in subscriptions:
            price = self.convert(sub.price, sub.currency, base_currency)
            current = max(sub.next_payment, today)
            while current < horizon:
                sums[current.strftime("%Y-%m")] += price
                current = cycle_math.advance(current, sub.billing_cycle)

        amounts = np.round(np.fromiter(sums.values(), dtype=float, count=len(sums)), 2)
        buckets = [
            ProjectionBucket(month=m.strftime("%Y-%m"), label=m.strftime("%b"), amount=float(a))
            for m, a in zip(month_starts, amounts)
        ]
        return buckets, round(float(amounts.sum()), 2)

    # -------------------------------------------------------------------------
    # SANKEY
    # -------------------------------------------------------------------------

    def build_sankey(self, subscriptions: list[Subscription], base_currency: str) -> tuple[list[SankeyNode], list[SankeyLink]]:
        """One link per subscription; nodes deduplicated by name, first-seen order."""
        nodes: dict[str, SankeyNode] = {}
        links: list[SankeyLink] = []
        uncategorized = self.config["uncategorized_label"]

        for sub in subscriptions:
            category = sub.category_name or uncategorized
            converted = self.convert(sub.price, sub.currency, base_currency)
            value = round(self.monthly_equivalent(converted, sub.billing_cycle), 2)

            nodes.setdefault(category, SankeyNode(category))
            nodes.setdefault(sub.name, SankeyNode(sub.name))
            links.append(SankeyLink(source=category, target=sub.name, value=value))

        return list(nodes.values()), links

    # -------------------------------------------------------------------------
    # ANOMALIES
    # -------------------------------------------------------------------------

    def detect_anomalies(self, records: list[PaymentRecord]) -> list[AnomalyEvent]:
        """
        Flags every adjacent pair (by billing_date) within one subscription
        where the amount strictly increased. Decreases are ignored.
        """
        df = _records_frame(records)
        if df.empty:
            return []

        df = df.sort_values(["subscription_id", "billing_date"], kind="mergesort").reset_index(drop=True)
        names = self._subscription_names(df["subscription_id"].unique())
        severity = self.config["anomaly_severity"]

        anomalies: list[AnomalyEvent] = []
        for subscription_id, group in df.groupby("subscription_id", sort=False):
            amounts = group["amount"].to_numpy(dtype=float)
            if len(amounts) < 2:
                continue
            for idx in np.flatnonzero(np.diff(amounts) > 0) + 1:
                prev = group.iloc[idx - 1]
                curr = group.iloc[idx]
                anomalies.append(AnomalyEvent(
                    id=f"anomaly-{curr['id']}",
                    type=PRICE_INCREASE,
                    severity=severity,
                    subscription_id=subscription_id,
                    subscription_name=names.get(subscription_id, "Unknown Subscription"),
                    date=curr["billing_date"],
                    old_amount=float(prev["amount"]),
                    new_amount=float(curr["amount"]),
                    currency=curr["currency"],
                    description=(
                        f"Price increased from {prev['currency']} {float(prev['amount']):.2f} "
                        f"to {curr['currency']} {float(curr['amount']):.2f}"
                    ),
                ))

        return sorted(anomalies, key=lambda a: a.date)

    # -------------------------------------------------------------------------
    # CATEGORY DISTRIBUTION
    # -------------------------------------------------------------------------

    def category_distribution(self, user_id: str) -> list[CategoryShare]:
        """Monthly-equivalent spend per category over active subscriptions, largest first."""
        active = self.subscriptions.find_active_by_user(user_id)
        if not active:
            return []

        df = self._monthly_frame(active, self.base_currency(user_id))
        grouped = df.groupby("category")["monthly"].agg(["sum", "count"]).sort_values("sum", ascending=False)
        total = grouped["sum"].sum()

        return [
            CategoryShare(
                name=name,
                value=round(float(row["sum"]), 2),
                count=int(row["count"]),
                percentage=round(float(row["sum"] / total * 100), 1) if total > 0 else 0.0,
            )
            for name, row in grouped.iterrows()
        ]

    # -------------------------------------------------------------------------
    # DASHBOARD
    # -------------------------------------------------------------------------

    def get_stats(self, user_id: str) -> DashboardStats:
        """
        Headline figures over active subscriptions.

        "New" means created on or after the first of the current month.
        Budget usage is measured against UserProfile.monthly_budget; with no
        budget set, usage reads 100%.
        """
        today = self.clock()
        month_start = today.replace(day=1)
        base_currency = self.base_currency(user_id)
        active = self.subscriptions.find_active_by_user(user_id)
        df = self._monthly_frame(active, base_currency)

        total = float(df["monthly"].sum())
        is_new = df["created"] >= month_start
        previous = total - float(df.loc[is_new, "monthly"].sum())
        diff = total - previous
        if previous > 0:
            trend = diff / previous * 100
        else:
            trend = 100.0 if total > 0 else 0.0

        history_months = [cycle_math.add_months(month_start, i - 11) for i in range(12)]

        user = self.users.find_by_id(user_id) if self.users else None
        limit = float(user.monthly_budget or 0) if user is not None else 0.0
        used = int(round(total / limit * 100)) if limit > 0 else 100
        if used > 100:
            budget_status = "exceeded"
        elif used > self.config["budget_warning_percentage"]:
            budget_status = "warning"
        else:
            budget_status = "safe"

        days = self.config["upcoming_renewal_days"]
        horizon = today + timedelta(days=days)
        upcoming = sorted(
            (s for s in active if today <= s.next_payment <= horizon),
            key=lambda s: s.next_payment,
        )
        next_renewal = None
        if upcoming:
            first = upcoming[0]
            next_renewal = NextRenewal(
                subscription_id=first.id,
                name=first.name,
                amount=first.price,
                currency=first.currency,
                billing_cycle=first.billing_cycle,
                next_payment=first.next_payment,
                days_remaining=(first.next_payment - today).days,
            )

        return DashboardStats(
            currency=base_currency,
            monthly_total=round(total, 2),
            trend_percentage=round(trend, 1),
            trend_direction="up" if diff > 0 else "down" if diff < 0 else "flat",
            trend_diff=round(abs(diff), 2),
            history=self._monthly_series(df, history_months),
            active_count=len(active),
            new_count=int(is_new.sum()),
            category_count=int(df["category"].nunique()),
            budget_limit=limit,
            budget_remaining=round(max(0.0, limit - total), 2),
            budget_used_percentage=used,
            budget_status=budget_status,
            upcoming_count=len(upcoming),
            upcoming_days=days,
            next_renewal=next_renewal,
        )

    def expense_trend(self, user_id: str, period: str = "6m") -> ExpenseTrend:
        """
        Monthly-equivalent run rate for each month of the period, oldest
        first. A subscription counts from the month its start_date falls in.

        Raises:
            ValidationError: Unknown period.
        """
        periods = self.config["trend_periods"]
        if period not in periods:
            raise ValidationError(f"Unknown trend period '{period}'. Allowed: {list(periods)}")

        months = int(periods[period])
        base_currency = self.base_currency(user_id)
        first_month = cycle_math.add_months(self.clock().replace(day=1), 1 - months)
        month_starts = [cycle_math.add_months(first_month, i) for i in range(months)]
        df = self._monthly_frame(self.subscriptions.find_active_by_user(user_id), base_currency)

        return ExpenseTrend(
            labels=[m.strftime("%Y-%m") for m in month_starts],
            values=self._monthly_series(df, month_starts),
            currency=base_currency,
        )

    # -------------------------------------------------------------------------
    # SHARED HELPERS
    # -------------------------------------------------------------------------

    def monthly_equivalent(self, price: float, cycle: str) -> float:
        """Normalizes a per-cycle price to a per-month figure."""
        per_year = self.cycles_per_year[cycle_math.normalize_cycle(cycle)]
        return price * per_year / 12

    def convert(self, amount: float, from_currency: str, to_currency: str) -> float:
        """Converted amount, or the raw amount when no rate is available."""
        if from_currency.upper() == to_currency.upper():
            return float(amount)
        try:
            return self.converter.convert(float(amount), from_currency, to_currency)
        except CurrencyConversionError as exc:
            logger.warning(f"Conversion {from_currency}->{to_currency} unavailable ({exc}); using raw amount.")
            return float(amount)

    def _monthly_frame(self, subscriptions: list[Subscription], base_currency: str) -> pd.DataFrame:
        """One row per subscription: category, start, created day, converted monthly cost."""
        uncategorized = self.config["uncategorized_label"]
        return pd.DataFrame({
            "category": [s.category_name or uncategorized for s in subscriptions],
            "start": [s.start_date for s in subscriptions],
            "created": [s.created_at.date() for s in subscriptions],
            "monthly": [
                self.monthly_equivalent(self.convert(s.price, s.currency, base_currency), s.billing_cycle)
                for s in subscriptions
            ],
        })

    @staticmethod
    def _monthly_series(df: pd.DataFrame, month_starts: list[date]) -> list[float]:
        """Run rate per month: subscriptions started by that month's last day."""
        values = []
        for month in month_starts:
            month_end = cycle_math.add_months(month, 1) - timedelta(days=1)
            values.append(round(float(df.loc[df["start"] <= month_end, "monthly"].sum()), 2))
        return values

    def _subscription_names(self, subscription_ids) -> dict[str, str]:
        names = {}
        for subscription_id in subscription_ids:
            sub = self.subscriptions.find_by_id(subscription_id)
            if sub is not None:
                names[subscription_id] = sub.name
        return names


def _records_frame(records: list[PaymentRecord]) -> pd.DataFrame:
    if not records:
        return pd.DataFrame(columns=["id", "subscription_id", "amount", "currency", "billing_date"])
    return pd.DataFrame([asdict(r) for r in records])
