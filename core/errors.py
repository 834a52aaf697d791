"""
errors.py
----------
Typed error taxonomy for the billing engine.

Authorization and lookup failures surface to the caller immediately.
Side-effect failures (notifications, backfill inserts, budget checks) are
caught and logged by the services and never reach the caller.
"""


class ErrorCode:
    NOT_FOUND = "NOT_FOUND"
    FORBIDDEN = "FORBIDDEN"
    VALIDATION = "VALIDATION"
    CONFLICT = "CONFLICT"
    INTERNAL = "INTERNAL"


class BillingError(Exception):
    """Base class for every error the engine raises on purpose."""

    code = ErrorCode.INTERNAL

    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __repr__(self) -> str:
        return f"{type(self).__name__}(code={self.code!r}, message={self.message!r})"


class NotFoundError(BillingError):
    code = ErrorCode.NOT_FOUND


class ForbiddenError(BillingError):
    code = ErrorCode.FORBIDDEN


class ValidationError(BillingError):
    code = ErrorCode.VALIDATION


class ConflictError(BillingError):
    code = ErrorCode.CONFLICT


class DuplicateRecordError(ConflictError):
    """A record already exists for (subscription_id, billing_date)."""

    def __init__(self, subscription_id: str, billing_date):
        super().__init__(
            f"Payment record already exists for subscription {subscription_id} on {billing_date}",
            {"subscription_id": subscription_id, "billing_date": str(billing_date)},
        )
        self.subscription_id = subscription_id
        self.billing_date = billing_date


class InternalError(BillingError):
    code = ErrorCode.INTERNAL


class CurrencyConversionError(BillingError):
    """No rate available for a currency pair. Callers fall back to raw amounts."""
    code = ErrorCode.INTERNAL
