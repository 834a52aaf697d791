"""
billing_engine.py
------------------
Main orchestration layer. Wires together:
    1. BillGenerator               →  daily sweep + single-subscription generation
    2. SubscriptionLifecycle       →  create (with backfill) / update / delete
    3. PaymentConfirmationService  →  confirm / cancel state transitions
    4. PendingBillReminder         →  overdue pending-bill nudges
    5. AnalyticsEngine             →  heatmap, projection, sankey, anomalies,
                                      dashboard stats, expense trend

This is the single entry point callers (an HTTP layer, the CLI, a cron job)
talk to. Everything else is internal machinery.

Single-writer assumption: the per-subscription locks serialise work inside
one process. Running several processes against a shared store requires the
store to provide the same guarantees (row lock or unique constraint).

Usage:
    from billing_engine import BillingEngine

    engine = BillingEngine.in_memory()
    sub = engine.create_subscription({...})
    engine.run_daily_sweep()
"""

import logging
from datetime import date
from typing import Callable, Iterable

from core.models import (
    PaymentRecord, Subscription, SweepReport, AnalysisOverview, CategoryShare,
    DashboardStats, ExpenseTrend,
)
from collaborators.currency import CurrencyConverter, StaticRateConverter
from collaborators.notifications import Notifier, NotificationSink, QueuedNotificationSink
from engine.bill_generator import BillGenerator
from engine.subscription_lifecycle import SubscriptionLifecycle, SubscriptionDraft
from engine.payment_confirmation import PaymentConfirmationService
from engine.reminders import PendingBillReminder
from analytics.analytics_engine import AnalyticsEngine
from stores.base_store import SubscriptionStore, PaymentRecordStore, CategoryStore, UserStore
from stores.memory_store import (
    InMemorySubscriptionStore, InMemoryPaymentRecordStore,
    InMemoryCategoryStore, InMemoryUserStore,
)

logger = logging.getLogger(__name__)


class BillingEngine:
    """
    Facade over the recurring billing cycle engine.

    All collaborators are injected; nothing is a module-level singleton
    except the read-only config.
    """

    def __init__(
        self,
        subscriptions: SubscriptionStore,
        records: PaymentRecordStore,
        converter: CurrencyConverter,
        sink: NotificationSink | None = None,
        categories: CategoryStore | None = None,
        users: UserStore | None = None,
        clock: Callable[[], date] = date.today,
        sweep_item_timeout: float | None = None,
    ):
        self.subscriptions = subscriptions
        self.records = records
        self.converter = converter
        self.categories = categories
        self.users = users
        self.clock = clock
        self.notifier = Notifier(sink)

        self.generator = BillGenerator(
            subscriptions, records, self.notifier, clock=clock, item_timeout=sweep_item_timeout,
        )
        self.lifecycle = SubscriptionLifecycle(subscriptions, records, self.generator, self.notifier, clock=clock)
        self.confirmations = PaymentConfirmationService(
            subscriptions, records, self.generator, categories, self.notifier, clock=clock,
        )
        self.reminders = PendingBillReminder(subscriptions, records, self.notifier, clock=clock)
        self.analytics = AnalyticsEngine(subscriptions, records, converter, users, clock=clock)

        logger.info(
            f"Billing engine initialized. Stores: {type(subscriptions).__name__}/{type(records).__name__}. "
            f"Converter: {converter!r}."
        )

    @classmethod
    def in_memory(
        cls,
        clock: Callable[[], date] = date.today,
        sink: NotificationSink | None = None,
        **kwargs,
    ) -> "BillingEngine":
        """Engine over fresh in-memory stores and the static-rate converter."""
        subscriptions = InMemorySubscriptionStore()
        return cls(
            subscriptions=subscriptions,
            records=InMemoryPaymentRecordStore(subscriptions),
            converter=StaticRateConverter(),
            sink=sink if sink is not None else QueuedNotificationSink(),
            categories=InMemoryCategoryStore(),
            users=InMemoryUserStore(),
            clock=clock,
            **kwargs,
        )

    # -------------------------------------------------------------------------
    # SCHEDULED ENTRY POINTS
    # -------------------------------------------------------------------------

    def run_daily_sweep(self) -> SweepReport:
        return self.generator.run_daily_sweep()

    def send_pending_bill_reminders(self) -> int:
        return self.reminders.run()

    # -------------------------------------------------------------------------
    # SUBSCRIPTIONS
    # -------------------------------------------------------------------------

    def create_subscription(self, draft: SubscriptionDraft | dict) -> Subscription:
        return self.lifecycle.create(draft)

    def update_subscription(self, user_id: str, subscription_id: str, **changes) -> Subscription:
        return self.lifecycle.update(user_id, subscription_id, **changes)

    def delete_subscription(self, user_id: str, subscription_id: str) -> int:
        return self.lifecycle.delete(user_id, subscription_id)

    def get_user_subscriptions(self, user_id: str) -> list[Subscription]:
        return self.subscriptions.find_by_user(user_id)

    # -------------------------------------------------------------------------
    # PAYMENTS
    # -------------------------------------------------------------------------

    def confirm_payment(
        self,
        user_id: str,
        record_id: str,
        actual_amount: float | None = None,
        actual_date: date | str | None = None,
    ) -> PaymentRecord:
        return self.confirmations.confirm(user_id, record_id, actual_amount, actual_date)

    def cancel_renewal(self, user_id: str, record_id: str) -> PaymentRecord:
        return self.confirmations.cancel(user_id, record_id)

    def get_pending_bills(self, user_id: str) -> list[PaymentRecord]:
        return self.records.find_pending_by_user(user_id)

    def get_billing_history(self, user_id: str, page: int = 1, limit: int = 20) -> dict:
        """Paginated ledger, newest first: {"items", "total", "page", "limit"}."""
        page = max(int(page), 1)
        limit = max(int(limit), 1)
        items, total = self.records.find_all_by_user(user_id, page, limit)
        return {"items": items, "total": total, "page": page, "limit": limit}

    # -------------------------------------------------------------------------
    # ANALYTICS
    # -------------------------------------------------------------------------

    def get_analysis_overview(self, user_id: str, excluded_ids: Iterable[str] = ()) -> AnalysisOverview:
        return self.analytics.get_analysis_overview(user_id, excluded_ids)

    def get_category_distribution(self, user_id: str) -> list[CategoryShare]:
        return self.analytics.category_distribution(user_id)

    def get_dashboard_stats(self, user_id: str) -> DashboardStats:
        return self.analytics.get_stats(user_id)

    def get_expense_trend(self, user_id: str, period: str = "6m") -> ExpenseTrend:
        """period: "6m", "1y" or "all" (see analytics.trend_periods)."""
        return self.analytics.expense_trend(user_id, period)

    def preview_conversion(self, amount: float, from_currency: str, to_currency: str) -> float:
        return self.converter.convert(amount, from_currency, to_currency)
