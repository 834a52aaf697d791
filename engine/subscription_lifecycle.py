"""
subscription_lifecycle.py
--------------------------
Creation, editing and deletion of subscriptions.

Creation reconstructs history: a subscription entered with a start date in
the past gets one PAID, backfilled record for every cycle boundary strictly
before today. The boundary that falls on today (if any) is left to the bill
generator, so it becomes a normal PENDING bill awaiting confirmation.

Backfill is best effort. Each insert is independent; one failing date is
logged and skipped so the create call itself still succeeds.
"""

import logging
from dataclasses import dataclass, fields
from datetime import date, timedelta
from typing import Callable, Optional

from core import cycle_math
from core.errors import NotFoundError, ForbiddenError, ValidationError, ConflictError, DuplicateRecordError
from core.models import Subscription, PaymentRecord, RecordStatus, SubscriptionStatus
from core.validation import validate_amount, validate_currency, parse_date
from collaborators.notifications import Notifier, SUBSCRIPTION_CREATED
from config.config_loader import get_billing_config
from engine.bill_generator import BillGenerator
from stores.base_store import SubscriptionStore, PaymentRecordStore
from stores.memory_store import new_id

logger = logging.getLogger(__name__)


@dataclass
class SubscriptionDraft:
    """Input for SubscriptionLifecycle.create()."""
    user_id: str
    name: str
    price: float
    currency: str
    billing_cycle: str
    start_date: date
    category_id: Optional[str] = None
    category_name: Optional[str] = None
    auto_renewal: bool = True
    enable_notification: bool = True
    notify_days_before: int = 3


EDITABLE_FIELDS = {
    "name", "price", "currency", "billing_cycle", "start_date",
    "category_id", "category_name", "status",
    "auto_renewal", "enable_notification", "notify_days_before",
}


class SubscriptionLifecycle:

    def __init__(
        self,
        subscriptions: SubscriptionStore,
        records: PaymentRecordStore,
        generator: BillGenerator,
        notifier: Notifier | None = None,
        clock: Callable[[], date] = date.today,
    ):
        self.subscriptions = subscriptions
        self.records = records
        self.generator = generator
        self.notifier = notifier or Notifier()
        self.clock = clock
        self.backfill_note = get_billing_config()["backfill_note"]

    # -------------------------------------------------------------------------
    # PUBLIC INTERFACE
    # -------------------------------------------------------------------------

    def create(self, draft: SubscriptionDraft | dict) -> Subscription:
        """
        Persists a new subscription and reconstructs its billing history.

        Steps:
            1. next_payment = first boundary on or after today, walking the
               schedule from start_date (start_date itself if in the future).
            2. Persist the subscription.
            3. Backfill PAID records for every boundary before today.
            4. Emit "subscription created" (best effort).
            5. If next_payment is today, generate its PENDING bill now.

        Raises:
            ValidationError: On malformed input.
        """
        draft = self._coerce_draft(draft)
        today = self.clock()
        cycle = cycle_math.normalize_cycle(draft.billing_cycle)

        subscription = Subscription(
            id=new_id(),
            user_id=draft.user_id,
            name=draft.name.strip(),
            price=round(float(draft.price), 2),
            currency=draft.currency.upper(),
            billing_cycle=cycle,
            start_date=draft.start_date,
            next_payment=cycle_math.first_boundary_on_or_after(draft.start_date, cycle, today),
            status=SubscriptionStatus.ACTIVE,
            category_id=draft.category_id,
            category_name=draft.category_name,
            auto_renewal=draft.auto_renewal,
            enable_notification=draft.enable_notification,
            notify_days_before=draft.notify_days_before,
        )
        subscription = self.subscriptions.create(subscription)
        logger.info(
            f"Created subscription {subscription.id} '{subscription.name}' for user {subscription.user_id} "
            f"({subscription.billing_cycle}, next payment {subscription.next_payment})."
        )

        backfilled = 0
        if subscription.start_date < today:
            with self.subscriptions.lock(subscription.id):
                backfilled = self._backfill(subscription, today)

        self.notifier.emit(
            subscription.user_id,
            SUBSCRIPTION_CREATED,
            {
                "name": subscription.name,
                "amount": subscription.price,
                "currency": subscription.currency,
                "next_payment": subscription.next_payment.isoformat(),
                "backfilled": backfilled,
            },
        )

        if subscription.next_payment == today:
            self.generator.generate_or_advance(subscription)

        return self.subscriptions.find_by_id(subscription.id) or subscription

    def update(self, user_id: str, subscription_id: str, **changes) -> Subscription:
        """
        Applies owner edits.

        A new billing_cycle or start_date recomputes next_payment as the first
        boundary of the new schedule that lies after the last PAID cycle and
        not before today. Such an edit is refused while a bill is open: that
        bill belongs to the old schedule, and confirming it after the move
        would advance past a boundary that was never billed.

        Raises:
            NotFoundError, ForbiddenError, ValidationError
            ConflictError: Schedule edit while a PENDING/UNPAID bill exists.
        """
        unknown = set(changes) - EDITABLE_FIELDS
        if unknown:
            raise ValidationError(f"Fields not editable: {sorted(unknown)}")

        with self.subscriptions.lock(subscription_id):
            current = self._owned(user_id, subscription_id)
            changes = self._validate_changes(changes)

            if "billing_cycle" in changes or "start_date" in changes:
                self._require_no_open_bill(current)
                cycle = changes.get("billing_cycle", current.billing_cycle)
                start = changes.get("start_date", current.start_date)
                changes["next_payment"] = self._recompute_next_payment(current, start, cycle)

            updated = self.subscriptions.update(subscription_id, **changes)

        logger.info(f"Updated subscription {subscription_id}: {sorted(changes)}")
        return updated

    def delete(self, user_id: str, subscription_id: str) -> int:
        """Removes a subscription and its ledger. Returns records removed."""
        with self.subscriptions.lock(subscription_id):
            self._owned(user_id, subscription_id)
            removed = self.records.delete_by_subscription(subscription_id)
            self.subscriptions.delete(subscription_id)
        logger.info(f"Deleted subscription {subscription_id} and {removed} payment records.")
        return removed

    # -------------------------------------------------------------------------
    # INTERNAL: BACKFILL
    # -------------------------------------------------------------------------

    def _backfill(self, subscription: Subscription, today: date) -> int:
        created = 0
        for boundary in cycle_math.iter_boundaries(subscription.start_date, subscription.billing_cycle, today):
            record = PaymentRecord(
                id=new_id(),
                subscription_id=subscription.id,
                user_id=subscription.user_id,
                amount=subscription.price,
                currency=subscription.currency,
                billing_date=boundary,
                status=RecordStatus.PAID,
                note=self.backfill_note,
                is_backfilled=True,
            )
            try:
                self.records.create(record)
                created += 1
            except DuplicateRecordError:
                logger.debug(f"Backfill: {subscription.id} already has a record for {boundary}.")
            except Exception:
                logger.exception(f"Backfill of {subscription.id} for {boundary} failed; continuing.")

        logger.info(f"Backfilled {created} PAID records for subscription {subscription.id}.")
        return created

    def _require_no_open_bill(self, subscription: Subscription) -> None:
        open_bills = [r for r in self.records.find_by_subscription(subscription.id) if r.is_open]
        if open_bills:
            raise ConflictError(
                "Confirm or cancel the open bill before changing the schedule",
                {"subscription_id": subscription.id, "record_id": open_bills[0].id},
            )

    def _recompute_next_payment(self, current: Subscription, start: date, cycle: str) -> date:
        today = self.clock()
        paid = [r.billing_date for r in self.records.find_by_subscription(current.id) if r.status == RecordStatus.PAID]
        target = today if not paid else max(today, max(paid) + timedelta(days=1))
        return cycle_math.first_boundary_on_or_after(start, cycle, target)

    # -------------------------------------------------------------------------
    # INTERNAL: VALIDATION
    # -------------------------------------------------------------------------

    def _owned(self, user_id: str, subscription_id: str) -> Subscription:
        subscription = self.subscriptions.find_by_id(subscription_id)
        if subscription is None:
            raise NotFoundError("Subscription not found", {"subscription_id": subscription_id})
        if subscription.user_id != user_id:
            raise ForbiddenError("Access denied", {"subscription_id": subscription_id})
        return subscription

    def _coerce_draft(self, draft: SubscriptionDraft | dict) -> SubscriptionDraft:
        if isinstance(draft, dict):
            known = {f.name for f in fields(SubscriptionDraft)}
            unknown = set(draft) - known
            if unknown:
                raise ValidationError(f"Unknown subscription fields: {sorted(unknown)}")
            try:
                draft = SubscriptionDraft(**draft)
            except TypeError as exc:
                raise ValidationError(f"Incomplete subscription: {exc}") from exc

        if not draft.user_id:
            raise ValidationError("user_id is required")
        if not draft.name or not draft.name.strip():
            raise ValidationError("name is required")
        draft.price = validate_amount(draft.price)
        draft.currency = validate_currency(draft.currency)
        draft.start_date = parse_date(draft.start_date, "start_date")
        return draft

    def _validate_changes(self, changes: dict) -> dict:
        changes = dict(changes)
        if "name" in changes and not str(changes["name"]).strip():
            raise ValidationError("name cannot be blank")
        if "price" in changes:
            changes["price"] = validate_amount(changes["price"])
        if "currency" in changes:
            changes["currency"] = validate_currency(changes["currency"])
        if "start_date" in changes:
            changes["start_date"] = parse_date(changes["start_date"], "start_date")
        if "billing_cycle" in changes:
            changes["billing_cycle"] = cycle_math.normalize_cycle(changes["billing_cycle"])
        if "status" in changes and changes["status"] not in SubscriptionStatus.ALL:
            raise ValidationError(
                f"Invalid status '{changes['status']}'. Allowed: {list(SubscriptionStatus.ALL)}"
            )
        return changes
