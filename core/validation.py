"""
validation.py
--------------
Input coercion shared by the services. Raises ValidationError on malformed
amounts, currency codes and dates.
"""

import math
from datetime import date, timedelta

import pandas as pd

from core.errors import ValidationError


# Cycle math runs on pandas Timestamps; dates outside this window cannot be stepped.
MIN_DATE = pd.Timestamp.min.date() + timedelta(days=1)
MAX_DATE = pd.Timestamp.max.date() - timedelta(days=400)


def validate_amount(value) -> float:
    try:
        price = float(value)
    except (TypeError, ValueError) as exc:
        raise ValidationError(f"Malformed amount: {value!r}") from exc
    if not math.isfinite(price):
        raise ValidationError(f"Malformed amount: {value!r}")
    if price < 0:
        raise ValidationError(f"Amount must be >= 0, got {value!r}")
    return round(price, 2)


def validate_currency(value) -> str:
    code = str(value or "").strip().upper()
    if len(code) != 3 or not code.isalpha():
        raise ValidationError(f"Malformed currency code: {value!r}")
    return code


def parse_date(value, field_name: str = "date") -> date:
    # datetime is a date subclass; billing works on whole days.
    if hasattr(value, "date") and callable(value.date):
        parsed = value.date()
    elif isinstance(value, date):
        parsed = value
    else:
        try:
            parsed = date.fromisoformat(str(value)[:10])
        except ValueError as exc:
            raise ValidationError(f"Malformed {field_name}: {value!r}") from exc

    if not MIN_DATE <= parsed <= MAX_DATE:
        raise ValidationError(
            f"{field_name} {parsed.isoformat()} outside supported range "
            f"{MIN_DATE.isoformat()}..{MAX_DATE.isoformat()}"
        )
    return parsed
