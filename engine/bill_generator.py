"""
bill_generator.py
------------------
Turns due subscriptions into PENDING payment records.

Two entry points:
    - run_daily_sweep(): the cron-driven batch. Every active subscription
      whose next_payment is today or earlier gets one generate_or_advance()
      call. One subscription failing or stalling never aborts the sweep.
    - generate_or_advance(): the single-subscription step, reused on demand
      by payment confirmation (catch-up) and subscription creation.

Exactly-once generation:
    The "look for a record, create if missing" sequence runs under the
    subscription's store lock, and the record store enforces uniqueness on
    (subscription_id, billing_date). A DuplicateRecordError therefore means
    another caller already billed this cycle and is treated as success.

Catch-up policy is bounded: each call does at most one unit of work (create
one record, or advance next_payment by one cycle). A subscription several
cycles behind is healed across successive calls, never in an unbounded loop.
"""

import logging
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FuturesTimeout
from datetime import date
from typing import Callable

from core import cycle_math
from core.errors import NotFoundError, DuplicateRecordError
from core.models import (
    Subscription, PaymentRecord, RecordStatus, SubscriptionStatus,
    SweepReport, SweepFailure,
)
from collaborators.notifications import Notifier, BILL_GENERATED
from config.config_loader import get_billing_config
from stores.base_store import SubscriptionStore, PaymentRecordStore
from stores.memory_store import new_id

logger = logging.getLogger(__name__)


class BillGenerator:
    """
    Usage:
        generator = BillGenerator(subscription_store, record_store, notifier)
        report = generator.run_daily_sweep()
    """

    def __init__(
        self,
        subscriptions: SubscriptionStore,
        records: PaymentRecordStore,
        notifier: Notifier | None = None,
        clock: Callable[[], date] = date.today,
        item_timeout: float | None = None,
        workers: int | None = None,
    ):
        self.config = get_billing_config()
        self.subscriptions = subscriptions
        self.records = records
        self.notifier = notifier or Notifier()
        self.clock = clock
        self.item_timeout = item_timeout if item_timeout is not None else self.config["sweep_item_timeout_seconds"]
        self.workers = workers or self.config["sweep_workers"]

    # -------------------------------------------------------------------------
    # PUBLIC INTERFACE
    # -------------------------------------------------------------------------

    def run_daily_sweep(self) -> SweepReport:
        """
        Generates bills for every due subscription.

        Safe to run more than once per day: a second run finds the records
        the first one created and leaves them alone. Never raises for a
        per-subscription failure; those are counted in the report.
        """
        today = self.clock()
        due = self.subscriptions.find_due(today)
        report = SweepReport(run_date=today, scanned=len(due))
        logger.info(f"Daily sweep starting for {today}. Due subscriptions: {len(due):,}.")

        if not due:
            return report

        if self.item_timeout and self.item_timeout > 0:
            self._sweep_with_timeouts(due, report)
        else:
            for sub in due:
                try:
                    self._tally(report, self.generate_or_advance(sub))
                except Exception as exc:
                    self._record_failure(report, sub.id, exc)

        logger.info(f"Daily sweep complete: {report.summary}")
        return report

    def generate_or_advance(self, subscription: Subscription) -> bool:
        """
        Bills the subscription's current cycle if nothing exists for it yet.

        Outcomes for the record at (subscription, next_payment):
            - none:               create PENDING record, notify, return True
            - PAID:               next_payment was never advanced after a
                                  confirmation; advance one cycle, return False
            - PENDING / UNPAID /
              CANCELLED:          blocked on the user; return False

        Returns:
            True if a new record was created.

        Raises:
            NotFoundError: If the subscription no longer exists.
        """
        with self.subscriptions.lock(subscription.id):
            # Re-read under the lock: the caller's copy may be stale.
            current = self.subscriptions.find_by_id(subscription.id)
            if current is None:
                raise NotFoundError(f"Subscription {subscription.id} not found")
            if current.status != SubscriptionStatus.ACTIVE:
                logger.debug(f"Subscription {current.id} is {current.status}; nothing to generate.")
                return False

            existing = self.records.find_by_subscription_and_date(current.id, current.next_payment)
            if existing is not None:
                if existing.status == RecordStatus.PAID:
                    logger.info(
                        f"Subscription {current.id}: cycle {current.next_payment} already PAID, "
                        f"advancing next_payment."
                    )
                    self.advance_next_payment(current)
                return False

            record = PaymentRecord(
                id=new_id(),
                subscription_id=current.id,
                user_id=current.user_id,
                amount=current.price,
                currency=current.currency,
                billing_date=current.next_payment,
                status=RecordStatus.PENDING,
            )
            try:
                self.records.create(record)
            except DuplicateRecordError:
                logger.debug(f"Subscription {current.id}: record for {current.next_payment} already exists.")
                return False

        logger.info(
            f"Generated PENDING bill {record.id} for subscription {current.id} "
            f"({current.currency} {current.price:.2f} due {current.next_payment})."
        )
        if current.enable_notification:
            self.notifier.emit(
                current.user_id,
                BILL_GENERATED,
                {
                    "name": current.name,
                    "amount": current.price,
                    "currency": current.currency,
                    "billing_date": current.next_payment.isoformat(),
                    "record_id": record.id,
                },
            )
        return True

    def advance_next_payment(self, subscription: Subscription) -> Subscription:
        """Moves next_payment forward by exactly one cycle."""
        with self.subscriptions.lock(subscription.id):
            current = self.subscriptions.find_by_id(subscription.id) or subscription
            new_date = cycle_math.advance(current.next_payment, current.billing_cycle)
            return self.subscriptions.update(current.id, next_payment=new_date)

    # -------------------------------------------------------------------------
    # INTERNAL: SWEEP EXECUTION
    # -------------------------------------------------------------------------

    def _sweep_with_timeouts(self, due: list[Subscription], report: SweepReport) -> None:
        """
        Runs each subscription on a worker thread and waits at most
        item_timeout seconds for it. Timed-out items are skipped and not
        retried within this sweep.
        """
        pool = ThreadPoolExecutor(max_workers=self.workers, thread_name_prefix="bill-sweep")
        try:
            futures = [(sub.id, pool.submit(self.generate_or_advance, sub)) for sub in due]
            for subscription_id, future in futures:
                try:
                    generated = future.result(timeout=self.item_timeout)
                except FuturesTimeout:
                    future.cancel()
                    report.timed_out += 1
                    report.failures.append(SweepFailure(
                        subscription_id, "timeout", f"exceeded {self.item_timeout}s",
                    ))
                    logger.warning(
                        f"Subscription {subscription_id} timed out after {self.item_timeout}s; skipped."
                    )
                except Exception as exc:
                    self._record_failure(report, subscription_id, exc)
                else:
                    self._tally(report, generated)
        finally:
            pool.shutdown(wait=False, cancel_futures=True)

    @staticmethod
    def _tally(report: SweepReport, generated: bool) -> None:
        if generated:
            report.generated += 1
        else:
            report.unchanged += 1

    @staticmethod
    def _record_failure(report: SweepReport, subscription_id: str, exc: Exception) -> None:
        report.failed += 1
        report.failures.append(SweepFailure(subscription_id, "error", str(exc)))
        logger.error(f"Bill generation failed for subscription {subscription_id}: {exc}", exc_info=exc)
