"""
reminders.py
-------------
Nudges users about bills left unconfirmed.

Cron-driven like the daily sweep. A PENDING/UNPAID record whose billing date
is at least `overdue_pending_days` old gets one best-effort reminder per run.
"""

import logging
from datetime import date, timedelta
from typing import Callable

from collaborators.notifications import Notifier, PENDING_REMINDER
from config.config_loader import get_reminder_config
from stores.base_store import SubscriptionStore, PaymentRecordStore

logger = logging.getLogger(__name__)


class PendingBillReminder:

    def __init__(
        self,
        subscriptions: SubscriptionStore,
        records: PaymentRecordStore,
        notifier: Notifier | None = None,
        clock: Callable[[], date] = date.today,
    ):
        self.config = get_reminder_config()
        self.subscriptions = subscriptions
        self.records = records
        self.notifier = notifier or Notifier()
        self.clock = clock

    def run(self) -> int:
        """Returns the number of reminders the sink accepted."""
        today = self.clock()
        cutoff = today - timedelta(days=self.config["overdue_pending_days"])
        overdue = self.records.find_overdue_pending(cutoff)
        logger.info(f"[Pending Bill Check] Found {len(overdue)} overdue bills.")

        sent = 0
        for bill in overdue:
            try:
                subscription = self.subscriptions.find_by_id(bill.subscription_id)
                name = subscription.name if subscription else "Subscription"
                days_pending = (today - bill.billing_date).days
                accepted = self.notifier.emit(
                    bill.user_id,
                    PENDING_REMINDER,
                    {
                        "name": name,
                        "days": days_pending,
                        "amount": bill.amount,
                        "currency": bill.currency,
                        "record_id": bill.id,
                    },
                    priority="HIGH",
                )
                sent += int(accepted)
            except Exception:
                logger.exception(f"[Pending Bill Check] Reminder for bill {bill.id} failed; continuing.")
        return sent
