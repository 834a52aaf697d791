"""
payment_confirmation.py
------------------------
The PaymentRecord state machine.

    PENDING --confirm--> PAID
    PENDING --cancel---> CANCELLED      (also cancels the subscription)

PAID and CANCELLED are terminal. UNPAID is accepted wherever PENDING is.

Ordering inside confirm():
    1. State transition + price drift + next_payment advance, all under the
       subscription lock. This is the part the caller depends on.
    2. Catch-up: if the advanced next_payment is still today or earlier, one
       extra generate_or_advance() call. Bounded, never a loop.
    3. Side effects after the transition is committed: "payment confirmed"
       notification and the category budget check. Their failures are logged
       and never reach the caller.
"""

import calendar
import logging
from datetime import date
from typing import Callable

from core.errors import NotFoundError, ForbiddenError, ConflictError, InternalError
from core.models import PaymentRecord, Subscription, RecordStatus, SubscriptionStatus
from core.validation import validate_amount, parse_date
from collaborators.notifications import Notifier, PAYMENT_SUCCESS, BUDGET_EXCEEDED, RENEWAL_CANCELLED
from config.config_loader import get_billing_config
from engine.bill_generator import BillGenerator
from stores.base_store import SubscriptionStore, PaymentRecordStore, CategoryStore

logger = logging.getLogger(__name__)


class PaymentConfirmationService:
    """
    Usage:
        service = PaymentConfirmationService(subs, records, generator, categories, notifier)
        record = service.confirm(user_id, record_id, actual_amount=12.99)
    """

    def __init__(
        self,
        subscriptions: SubscriptionStore,
        records: PaymentRecordStore,
        generator: BillGenerator,
        categories: CategoryStore | None = None,
        notifier: Notifier | None = None,
        clock: Callable[[], date] = date.today,
    ):
        self.subscriptions = subscriptions
        self.records = records
        self.generator = generator
        self.categories = categories
        self.notifier = notifier or Notifier()
        self.clock = clock
        self.price_epsilon = get_billing_config()["price_change_epsilon"]

    # -------------------------------------------------------------------------
    # PUBLIC INTERFACE
    # -------------------------------------------------------------------------

    def confirm(
        self,
        user_id: str,
        record_id: str,
        actual_amount: float | None = None,
        actual_date: date | str | None = None,
    ) -> PaymentRecord:
        """
        Marks a pending bill as PAID and advances its subscription.

        Args:
            actual_amount: Amount actually charged. Overrides the record's
                amount; if it differs from the subscription price by more than
                price_change_epsilon, the price is updated for future bills.
            actual_date: Date actually charged. Overrides billing_date.

        Raises:
            ValidationError: Malformed amount or date.
            NotFoundError: Unknown record.
            ForbiddenError: Record belongs to another user.
            ConflictError: Record is already PAID or CANCELLED.
        """
        amount = validate_amount(actual_amount) if actual_amount is not None else None
        paid_on = parse_date(actual_date, "actual_date") if actual_date is not None else None

        record = self._authorize(user_id, record_id)
        with self.subscriptions.lock(record.subscription_id):
            record = self._authorize(user_id, record_id)
            self._require_open(record, "confirm")

            changes = {"status": RecordStatus.PAID}
            if amount is not None:
                changes["amount"] = amount
            if paid_on is not None:
                changes["billing_date"] = paid_on
            updated = self.records.update(record_id, **changes)
            logger.info(f"Record {record_id} confirmed PAID ({updated.currency} {updated.amount:.2f}).")

            subscription = self.subscriptions.find_by_id(record.subscription_id)
            if subscription is None:
                logger.warning(f"Record {record_id} confirmed but subscription {record.subscription_id} is gone.")
                return updated

            if amount is not None and abs(subscription.price - amount) > self.price_epsilon:
                logger.info(f"Subscription {subscription.id} price {subscription.price:.2f} -> {amount:.2f}.")
                subscription = self.subscriptions.update(subscription.id, price=amount)

            advanced = self.generator.advance_next_payment(subscription)

        self._catch_up(advanced)

        self.notifier.emit(
            user_id,
            PAYMENT_SUCCESS,
            {"name": subscription.name, "amount": updated.amount, "currency": updated.currency},
        )
        self._check_budget(user_id, subscription, updated)
        return updated

    def cancel(self, user_id: str, record_id: str) -> PaymentRecord:
        """
        Skips a pending bill and cancels the subscription's renewal.

        Both writes happen under the subscription lock. If the subscription
        update fails, the record is restored to its previous status and the
        failure is raised as InternalError.

        Raises:
            NotFoundError, ForbiddenError, ConflictError, InternalError
        """
        record = self._authorize(user_id, record_id)
        with self.subscriptions.lock(record.subscription_id):
            record = self._authorize(user_id, record_id)
            self._require_open(record, "cancel")

            updated = self.records.update(record_id, status=RecordStatus.CANCELLED)
            try:
                subscription = self.subscriptions.update(
                    record.subscription_id, status=SubscriptionStatus.CANCELLED
                )
            except Exception as exc:
                self.records.update(record_id, status=record.status)
                raise InternalError(
                    "Cancellation rolled back: subscription update failed",
                    {"record_id": record_id, "subscription_id": record.subscription_id},
                ) from exc

        logger.info(f"Record {record_id} CANCELLED; subscription {subscription.id} cancelled.")
        self.notifier.emit(user_id, RENEWAL_CANCELLED, {"name": subscription.name})
        return updated

    # -------------------------------------------------------------------------
    # INTERNAL
    # -------------------------------------------------------------------------

    def _authorize(self, user_id: str, record_id: str) -> PaymentRecord:
        record = self.records.find_by_id(record_id)
        if record is None:
            raise NotFoundError("Payment record not found", {"record_id": record_id})
        if record.user_id != user_id:
            raise ForbiddenError("Access denied", {"record_id": record_id})
        return record

    @staticmethod
    def _require_open(record: PaymentRecord, action: str) -> None:
        if not record.is_open:
            raise ConflictError(
                f"Cannot {action} a {record.status} payment record",
                {"record_id": record.id, "status": record.status},
            )

    def _catch_up(self, subscription: Subscription) -> None:
        if subscription.next_payment > self.clock():
            return
        try:
            self.generator.generate_or_advance(subscription)
        except Exception:
            logger.exception(f"Catch-up generation for subscription {subscription.id} failed; continuing.")

    def _check_budget(self, user_id: str, subscription: Subscription, record: PaymentRecord) -> None:
        """
        Emits "budget exceeded" when this month's PAID spend in the
        subscription's category is over the category's monthly limit.

        Amounts are summed raw across currencies.
        """
        if not subscription.category_id or self.categories is None:
            return
        try:
            category = self.categories.find_by_id(subscription.category_id)
            if category is None or not category.budget_limit or category.budget_limit <= 0:
                return

            today = self.clock()
            month_start = today.replace(day=1)
            month_end = today.replace(day=calendar.monthrange(today.year, today.month)[1])
            spent = self.records.sum_by_category_and_range(user_id, category.id, month_start, month_end)

            if spent > category.budget_limit:
                logger.info(
                    f"Category '{category.name}' over budget for user {user_id}: "
                    f"{spent:.2f} > {category.budget_limit:.2f}."
                )
                self.notifier.emit(
                    user_id,
                    BUDGET_EXCEEDED,
                    {
                        "category": category.name,
                        "current": spent,
                        "limit": category.budget_limit,
                        "currency": record.currency,
                    },
                    priority="HIGH",
                )
        except Exception:
            logger.exception(f"Budget check for subscription {subscription.id} failed; continuing.")
