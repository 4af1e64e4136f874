"""
Currency helpers and the exchange-rate collaborator.

Every EUR/INR conversion in the service goes through an ExchangeRates
instance; the rate itself lives only in settings.
"""

from decimal import ROUND_HALF_UP, Decimal
from typing import Literal, Protocol

Currency = Literal["EUR", "INR"]

CENT = Decimal("0.01")

CURRENCY_SYMBOLS: dict[str, str] = {
    "EUR": "€",
    "INR": "₹",
}


def quantize(amount: Decimal) -> Decimal:
    """Round to cents, half-up."""
    return amount.quantize(CENT, rounding=ROUND_HALF_UP)


def currency_symbol(currency: str) -> str:
    return CURRENCY_SYMBOLS.get(currency, "")


def format_amount(amount: Decimal, currency: str) -> str:
    return f"{currency_symbol(currency)}{quantize(amount)}"


class ExchangeRates(Protocol):
    def convert(self, amount: Decimal, from_currency: str, to_currency: str) -> Decimal:
        ...

    def to_eur(self, amount: Decimal, from_currency: str) -> Decimal:
        ...


class FixedExchangeRates:
    """EUR/INR conversion at a single configured rate (1 EUR = eur_to_inr INR)."""

    def __init__(self, eur_to_inr: Decimal):
        if eur_to_inr <= 0:
            raise ValueError("Exchange rate must be positive")
        self.eur_to_inr = Decimal(eur_to_inr)

    def convert(self, amount: Decimal, from_currency: str, to_currency: str) -> Decimal:
        amount = Decimal(amount)
        if from_currency == to_currency:
            return quantize(amount)
        if from_currency == "EUR" and to_currency == "INR":
            return quantize(amount * self.eur_to_inr)
        if from_currency == "INR" and to_currency == "EUR":
            return quantize(amount / self.eur_to_inr)
        raise ValueError(f"Unsupported currency pair {from_currency}->{to_currency}")

    def to_eur(self, amount: Decimal, from_currency: str) -> Decimal:
        return self.convert(amount, from_currency, "EUR")
