"""
memory_store.py
----------------
In-process implementations of every store interface.

Used by the CLI and the test suite. Objects are copied on the way in and on
the way out so callers can never mutate stored state behind the store's back.

Concurrency:
    - A single store-wide mutex guards the dictionaries.
    - PaymentRecord uniqueness on (subscription_id, billing_date) is checked
      and written under that mutex, so concurrent creates cannot both win.
    - Each subscription gets its own re-entrant lock for the services'
      read-modify-write sequences (see base_store).

Also provides DataFrame import/export helpers for CSV-driven runs.
"""

import threading
import uuid
from dataclasses import replace, asdict
from datetime import date, datetime
from typing import Optional

import pandas as pd

from core.errors import NotFoundError, DuplicateRecordError
from core.models import (
    Subscription, PaymentRecord, Category, UserProfile,
    RecordStatus, SubscriptionStatus,
)
from stores.base_store import SubscriptionStore, PaymentRecordStore, CategoryStore, UserStore


def new_id() -> str:
    return uuid.uuid4().hex


# =============================================================================
# SUBSCRIPTIONS
# =============================================================================

class InMemorySubscriptionStore(SubscriptionStore):

    def __init__(self):
        self._items: dict[str, Subscription] = {}
        self._mutex = threading.Lock()
        self._locks: dict[str, threading.RLock] = {}

    def create(self, subscription: Subscription) -> Subscription:
        with self._mutex:
            self._items[subscription.id] = replace(subscription)
        return replace(subscription)

    def find_by_id(self, subscription_id: str) -> Optional[Subscription]:
        with self._mutex:
            sub = self._items.get(subscription_id)
        return replace(sub) if sub else None

    def find_due(self, as_of: date) -> list[Subscription]:
        with self._mutex:
            due = [
                replace(s) for s in self._items.values()
                if s.status == SubscriptionStatus.ACTIVE and s.next_payment <= as_of
            ]
        return sorted(due, key=lambda s: s.next_payment)

    def find_active_by_user(self, user_id: str) -> list[Subscription]:
        with self._mutex:
            return [
                replace(s) for s in self._items.values()
                if s.user_id == user_id and s.status == SubscriptionStatus.ACTIVE
            ]

    def find_by_user(self, user_id: str) -> list[Subscription]:
        with self._mutex:
            subs = [replace(s) for s in self._items.values() if s.user_id == user_id]
        return sorted(subs, key=lambda s: s.created_at, reverse=True)

    def update(self, subscription_id: str, **changes) -> Subscription:
        with self._mutex:
            current = self._items.get(subscription_id)
            if current is None:
                raise NotFoundError(f"Subscription {subscription_id} not found")
            updated = replace(current, updated_at=datetime.now(), **changes)
            self._items[subscription_id] = updated
        return replace(updated)

    def delete(self, subscription_id: str) -> None:
        with self._mutex:
            self._items.pop(subscription_id, None)
            self._locks.pop(subscription_id, None)

    def lock(self, subscription_id: str) -> threading.RLock:
        with self._mutex:
            return self._locks.setdefault(subscription_id, threading.RLock())

    def all(self) -> list[Subscription]:
        with self._mutex:
            return [replace(s) for s in self._items.values()]


# =============================================================================
# PAYMENT RECORDS
# =============================================================================

class InMemoryPaymentRecordStore(PaymentRecordStore):
    """
    Args:
        subscriptions: Used to resolve a record's category for budget sums
            (records do not carry the category themselves).
    """

    def __init__(self, subscriptions: InMemorySubscriptionStore | None = None):
        self._items: dict[str, PaymentRecord] = {}
        self._by_key: dict[tuple[str, date], str] = {}
        self._mutex = threading.Lock()
        self._subscriptions = subscriptions

    def create(self, record: PaymentRecord) -> PaymentRecord:
        key = (record.subscription_id, record.billing_date)
        with self._mutex:
            if key in self._by_key:
                raise DuplicateRecordError(record.subscription_id, record.billing_date)
            self._items[record.id] = replace(record)
            self._by_key[key] = record.id
        return replace(record)

    def find_by_id(self, record_id: str) -> Optional[PaymentRecord]:
        with self._mutex:
            record = self._items.get(record_id)
        return replace(record) if record else None

    def find_by_subscription_and_date(
        self, subscription_id: str, billing_date: date
    ) -> Optional[PaymentRecord]:
        with self._mutex:
            record_id = self._by_key.get((subscription_id, billing_date))
            record = self._items.get(record_id) if record_id else None
        return replace(record) if record else None

    def find_by_subscription(self, subscription_id: str) -> list[PaymentRecord]:
        return sorted(
            self._select(lambda r: r.subscription_id == subscription_id),
            key=lambda r: r.billing_date, reverse=True,
        )

    def find_pending_by_user(self, user_id: str) -> list[PaymentRecord]:
        return sorted(
            self._select(lambda r: r.user_id == user_id and r.status in RecordStatus.OPEN),
            key=lambda r: r.billing_date,
        )

    def find_overdue_pending(self, cutoff: date) -> list[PaymentRecord]:
        return sorted(
            self._select(lambda r: r.status in RecordStatus.OPEN and r.billing_date <= cutoff),
            key=lambda r: r.billing_date,
        )

    def find_paid_by_user_and_range(
        self, user_id: str, start: date, end: date
    ) -> list[PaymentRecord]:
        return sorted(
            self._select(
                lambda r: r.user_id == user_id
                and r.status == RecordStatus.PAID
                and start <= r.billing_date <= end
            ),
            key=lambda r: r.billing_date, reverse=True,
        )

    def find_all_by_user(
        self, user_id: str, page: int, limit: int
    ) -> tuple[list[PaymentRecord], int]:
        records = sorted(
            self._select(lambda r: r.user_id == user_id),
            key=lambda r: r.billing_date, reverse=True,
        )
        skip = (page - 1) * limit
        return records[skip:skip + limit], len(records)

    def update(self, record_id: str, **changes) -> PaymentRecord:
        with self._mutex:
            current = self._items.get(record_id)
            if current is None:
                raise NotFoundError(f"Payment record {record_id} not found")
            updated = replace(current, updated_at=datetime.now(), **changes)
            old_key = (current.subscription_id, current.billing_date)
            new_key = (updated.subscription_id, updated.billing_date)
            if new_key != old_key:
                if new_key in self._by_key:
                    raise DuplicateRecordError(updated.subscription_id, updated.billing_date)
                del self._by_key[old_key]
                self._by_key[new_key] = record_id
            self._items[record_id] = updated
        return replace(updated)

    def sum_by_category_and_range(
        self, user_id: str, category_id: str, start: date, end: date
    ) -> float:
        if self._subscriptions is None:
            return 0.0
        subscription_ids = {
            s.id for s in self._subscriptions.find_by_user(user_id)
            if s.category_id == category_id
        }
        paid = self._select(
            lambda r: r.subscription_id in subscription_ids
            and r.status == RecordStatus.PAID
            and start <= r.billing_date <= end
        )
        return round(sum(r.amount for r in paid), 2)

    def delete_by_subscription(self, subscription_id: str) -> int:
        with self._mutex:
            doomed = [rid for rid, r in self._items.items() if r.subscription_id == subscription_id]
            for rid in doomed:
                record = self._items.pop(rid)
                self._by_key.pop((record.subscription_id, record.billing_date), None)
        return len(doomed)

    def all(self) -> list[PaymentRecord]:
        return self._select(lambda r: True)

    def _select(self, predicate) -> list[PaymentRecord]:
        with self._mutex:
            return [replace(r) for r in self._items.values() if predicate(r)]


# =============================================================================
# LOOKUPS
# =============================================================================

class InMemoryCategoryStore(CategoryStore):

    def __init__(self, categories: list[Category] | None = None):
        self._items = {c.id: c for c in categories or []}

    def add(self, category: Category) -> None:
        self._items[category.id] = category

    def find_by_id(self, category_id: str) -> Optional[Category]:
        return self._items.get(category_id)


class InMemoryUserStore(UserStore):

    def __init__(self, users: list[UserProfile] | None = None):
        self._items = {u.id: u for u in users or []}

    def add(self, user: UserProfile) -> None:
        self._items[user.id] = user

    def find_by_id(self, user_id: str) -> Optional[UserProfile]:
        return self._items.get(user_id)


# =============================================================================
# DATAFRAME IMPORT / EXPORT
# =============================================================================

SUBSCRIPTION_COLUMNS = [
    "id", "user_id", "name", "price", "currency", "billing_cycle",
    "start_date", "next_payment",
]

SUBSCRIPTION_OPTIONAL_COLUMNS = [
    "status", "category_id", "category_name",
    "auto_renewal", "enable_notification", "notify_days_before",
]

RECORD_COLUMNS = [
    "id", "subscription_id", "user_id", "amount", "currency", "billing_date",
    "status", "note", "is_backfilled",
]


def _optional(value):
    return None if pd.isna(value) else value


def _text(value) -> Optional[str]:
    value = _optional(value)
    return None if value is None else str(value)


def _flag(value, default: bool) -> bool:
    value = _optional(value)
    if value is None:
        return default
    if isinstance(value, str):
        return value.strip().lower() in ("1", "true", "yes", "y")
    return bool(value)


def _count(value, default: int) -> int:
    value = _optional(value)
    return default if value is None else int(value)


def subscriptions_from_frame(df: pd.DataFrame) -> list[Subscription]:
    """
    Builds Subscription objects from a DataFrame (e.g. read from CSV).

    Required columns: SUBSCRIPTION_COLUMNS. Optional columns
    (SUBSCRIPTION_OPTIONAL_COLUMNS) fall back to the model defaults.
    """
    missing = [c for c in SUBSCRIPTION_COLUMNS if c not in df.columns]
    if missing:
        raise ValueError(f"Missing required columns: {missing}")

    df = df.copy()
    for col in ("start_date", "next_payment"):
        df[col] = pd.to_datetime(df[col]).dt.date

    subs = []
    for row in df.to_dict("records"):
        subs.append(Subscription(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            name=str(row["name"]),
            price=round(float(row["price"]), 2),
            currency=str(row["currency"]).upper(),
            billing_cycle=str(row["billing_cycle"]).lower(),
            start_date=row["start_date"],
            next_payment=row["next_payment"],
            status=_optional(row.get("status")) or SubscriptionStatus.ACTIVE,
            category_id=_text(row.get("category_id")),
            category_name=_text(row.get("category_name")),
            auto_renewal=_flag(row.get("auto_renewal"), True),
            enable_notification=_flag(row.get("enable_notification"), True),
            notify_days_before=_count(row.get("notify_days_before"), 3),
        ))
    return subs


def records_from_frame(df: pd.DataFrame) -> list[PaymentRecord]:
    """Builds PaymentRecord objects from a DataFrame with RECORD_COLUMNS."""
    required = ["subscription_id", "user_id", "amount", "currency", "billing_date", "status"]
    missing = [c for c in required if c not in df.columns]
    if missing:
        raise ValueError(f"Missing required columns: {missing}")

    df = df.copy()
    df["billing_date"] = pd.to_datetime(df["billing_date"]).dt.date

    records = []
    for row in df.to_dict("records"):
        records.append(PaymentRecord(
            id=str(_optional(row.get("id")) or new_id()),
            subscription_id=str(row["subscription_id"]),
            user_id=str(row["user_id"]),
            amount=round(float(row["amount"]), 2),
            currency=str(row["currency"]).upper(),
            billing_date=row["billing_date"],
            status=str(row["status"]).upper(),
            note=_optional(row.get("note")),
            is_backfilled=_flag(row.get("is_backfilled"), False),
        ))
    return records


def records_to_frame(records: list[PaymentRecord]) -> pd.DataFrame:
    """Flat ledger DataFrame, sorted subscription → billing_date."""
    if not records:
        return pd.DataFrame(columns=RECORD_COLUMNS)
    df = pd.DataFrame([asdict(r) for r in records])[RECORD_COLUMNS]
    return df.sort_values(["subscription_id", "billing_date"]).reset_index(drop=True)


def subscriptions_to_frame(subscriptions: list[Subscription]) -> pd.DataFrame:
    columns = SUBSCRIPTION_COLUMNS + SUBSCRIPTION_OPTIONAL_COLUMNS
    if not subscriptions:
        return pd.DataFrame(columns=columns)
    return pd.DataFrame([asdict(s) for s in subscriptions])[columns]
