"""
base_store.py
--------------
Abstract persistence interfaces consumed by the engine.

The engine never assumes a storage technology. Concrete stores implement
these contracts; `stores/memory_store.py` is the in-process reference.

Two guarantees every implementation must provide:
    - PaymentRecordStore.create() enforces uniqueness on
      (subscription_id, billing_date) atomically and raises
      DuplicateRecordError on conflict. A read-before-write check alone is
      not enough under concurrent callers.
    - SubscriptionStore.lock(subscription_id) returns a context manager that
      makes writes to one subscription's next_payment and its records
      mutually exclusive across sweep, confirm, cancel and create-backfill.
      It must be re-entrant for the holding caller (confirm invokes the
      generator while holding the lock).
"""

from abc import ABC, abstractmethod
from contextlib import AbstractContextManager
from datetime import date
from typing import Optional

from core.models import Subscription, PaymentRecord, Category, UserProfile


class SubscriptionStore(ABC):

    @abstractmethod
    def create(self, subscription: Subscription) -> Subscription:
        ...

    @abstractmethod
    def find_by_id(self, subscription_id: str) -> Optional[Subscription]:
        ...

    @abstractmethod
    def find_due(self, as_of: date) -> list[Subscription]:
        """Active subscriptions with next_payment <= as_of."""
        ...

    @abstractmethod
    def find_active_by_user(self, user_id: str) -> list[Subscription]:
        ...

    @abstractmethod
    def find_by_user(self, user_id: str) -> list[Subscription]:
        """All of a user's subscriptions, newest first."""
        ...

    @abstractmethod
    def update(self, subscription_id: str, **changes) -> Subscription:
        """
        Applies field changes and returns the updated subscription.

        Raises:
            NotFoundError: If the subscription does not exist.
        """
        ...

    @abstractmethod
    def delete(self, subscription_id: str) -> None:
        ...

    @abstractmethod
    def lock(self, subscription_id: str) -> AbstractContextManager:
        ...


class PaymentRecordStore(ABC):

    @abstractmethod
    def create(self, record: PaymentRecord) -> PaymentRecord:
        """
        Raises:
            DuplicateRecordError: If a record already exists for
                (record.subscription_id, record.billing_date).
        """
        ...

    @abstractmethod
    def find_by_id(self, record_id: str) -> Optional[PaymentRecord]:
        ...

    @abstractmethod
    def find_by_subscription_and_date(
        self, subscription_id: str, billing_date: date
    ) -> Optional[PaymentRecord]:
        ...

    @abstractmethod
    def find_by_subscription(self, subscription_id: str) -> list[PaymentRecord]:
        """All records of one subscription, newest billing_date first."""
        ...

    @abstractmethod
    def find_pending_by_user(self, user_id: str) -> list[PaymentRecord]:
        """PENDING and UNPAID records, oldest billing_date first."""
        ...

    @abstractmethod
    def find_overdue_pending(self, cutoff: date) -> list[PaymentRecord]:
        """PENDING/UNPAID records of any user with billing_date <= cutoff."""
        ...

    @abstractmethod
    def find_paid_by_user_and_range(
        self, user_id: str, start: date, end: date
    ) -> list[PaymentRecord]:
        """PAID records with start <= billing_date <= end, newest first."""
        ...

    @abstractmethod
    def find_all_by_user(
        self, user_id: str, page: int, limit: int
    ) -> tuple[list[PaymentRecord], int]:
        """One page of a user's records (newest first) and the total count."""
        ...

    @abstractmethod
    def update(self, record_id: str, **changes) -> PaymentRecord:
        """
        Raises:
            NotFoundError: If the record does not exist.
        """
        ...

    @abstractmethod
    def sum_by_category_and_range(
        self, user_id: str, category_id: str, start: date, end: date
    ) -> float:
        """
        Raw sum of PAID amounts for the user's subscriptions in a category.

        Amounts are added as stored, across currencies.
        """
        ...

    @abstractmethod
    def delete_by_subscription(self, subscription_id: str) -> int:
        ...


class CategoryStore(ABC):

    @abstractmethod
    def find_by_id(self, category_id: str) -> Optional[Category]:
        ...


class UserStore(ABC):

    @abstractmethod
    def find_by_id(self, user_id: str) -> Optional[UserProfile]:
        ...
