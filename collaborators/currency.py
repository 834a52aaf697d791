"""
currency.py
------------
Currency conversion contract consumed by analytics and reporting.

The engine treats conversion as a pure synchronous function. When a rate is
unavailable the converter raises CurrencyConversionError and callers fall
back to the raw amount (best effort, see analytics_engine).

StaticRateConverter reads a USD-based rate table from config.yaml and is the
default implementation until a live rate provider is wired in.
"""

from abc import ABC, abstractmethod

from core.errors import CurrencyConversionError
from config.config_loader import get_currency_rates, get_currency_precision


class CurrencyConverter(ABC):
    """
    Implementations provide `_convert`. Whatever goes wrong inside it (a
    missing rate, a provider timeout) reaches callers as
    CurrencyConversionError, the one failure they fall back on.
    """

    def convert(self, amount: float, from_currency: str, to_currency: str) -> float:
        """
        Raises:
            CurrencyConversionError: If the pair cannot be converted.
        """
        try:
            return self._convert(amount, from_currency, to_currency)
        except CurrencyConversionError:
            raise
        except Exception as exc:
            raise CurrencyConversionError(
                f"Conversion {from_currency}->{to_currency} failed: {exc}",
                {"from": from_currency, "to": to_currency},
            ) from exc

    @abstractmethod
    def _convert(self, amount: float, from_currency: str, to_currency: str) -> float:
        ...

    def get_rate(self, from_currency: str, to_currency: str) -> float:
        """Multiplier from one currency to another."""
        return self.convert(1.0, from_currency, to_currency)


class StaticRateConverter(CurrencyConverter):
    """
    Converts through USD using a fixed table of units-per-USD rates.

    Usage:
        converter = StaticRateConverter()
        converter.convert(100, "USD", "CNY")   # 723.0
    """

    def __init__(self, rates: dict[str, float] | None = None, precision: int | None = None):
        table = rates if rates is not None else get_currency_rates()
        self.rates = {code.upper(): float(rate) for code, rate in table.items()}
        self.precision = precision if precision is not None else get_currency_precision()

    def _convert(self, amount: float, from_currency: str, to_currency: str) -> float:
        return round(float(amount) * self.get_rate(from_currency, to_currency), self.precision)

    def get_rate(self, from_currency: str, to_currency: str) -> float:
        # Unrounded multiplier; only converted amounts are rounded.
        source, target = from_currency.upper(), to_currency.upper()
        if source == target:
            return 1.0
        for code in (source, target):
            if self.rates.get(code, 0.0) <= 0:
                raise CurrencyConversionError(f"No rate for {code}", {"from": source, "to": target})
        return self.rates[target] / self.rates[source]

    def __repr__(self) -> str:
        return f"StaticRateConverter(currencies={sorted(self.rates)})"
