from __future__ import annotations

import calendar
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP

from cashbook.errors import InvalidAmount

ZERO = Decimal("0")
CENTS = Decimal("0.01")


def normalize_currency(value: str) -> str:
    normalized = value.strip().upper()
    if len(normalized) != 3 or not normalized.isalpha():
        raise ValueError("Currency must be a 3-letter ISO 4217 code.")
    return normalized


def coerce_amount(amount: Decimal | int | float | str) -> Decimal:
    if isinstance(amount, Decimal):
        coerced = amount
    else:
        try:
            coerced = Decimal(str(amount).strip())
        except InvalidOperation as exc:
            raise InvalidAmount(f"Invalid amount: {amount!r}") from exc
    if not coerced.is_finite():
        raise InvalidAmount(f"Amount must be finite: {amount!r}")
    return coerced


def quantize_amount(amount: Decimal) -> Decimal:
    return amount.quantize(CENTS, rounding=ROUND_HALF_UP)


def require_positive(amount: Decimal | int | float | str, label: str = "Amount") -> Decimal:
    coerced = coerce_amount(amount)
    if coerced <= ZERO:
        raise InvalidAmount(f"{label} must be greater than zero.")
    return coerced


@dataclass(frozen=True)
class Money:
    """An amount paired with its currency.

    Arithmetic is only defined between values of the same currency; mixing
    currencies raises ``ValueError`` instead of silently adding SSP to USD.
    """

    amount: Decimal
    currency: str

    def __post_init__(self) -> None:
        object.__setattr__(self, "amount", coerce_amount(self.amount))
        object.__setattr__(self, "currency", normalize_currency(self.currency))

    @classmethod
    def zero(cls, currency: str) -> "Money":
        return cls(ZERO, currency)

    def __add__(self, other: "Money") -> "Money":
        self._check_currency(other)
        return Money(self.amount + other.amount, self.currency)

    def __sub__(self, other: "Money") -> "Money":
        self._check_currency(other)
        return Money(self.amount - other.amount, self.currency)

    def __neg__(self) -> "Money":
        return Money(-self.amount, self.currency)

    def quantized(self) -> "Money":
        return Money(quantize_amount(self.amount), self.currency)

    def _check_currency(self, other: object) -> None:
        if not isinstance(other, Money):
            raise TypeError(f"Cannot combine Money with {type(other).__name__}.")
        if other.currency != self.currency:
            raise ValueError(
                f"Currency mismatch: {self.currency} and {other.currency}."
            )

    def __str__(self) -> str:
        return f"{quantize_amount(self.amount)} {self.currency}"


def month_start(value: date) -> date:
    return value.replace(day=1)


def shift_month_keep_day(value: date, months: int, anchor_day: int | None = None) -> date:
    month_index = (value.year * 12 + value.month - 1) + months
    year = month_index // 12
    month = month_index % 12 + 1
    last_day = calendar.monthrange(year, month)[1]
    day = min(anchor_day or value.day, last_day)
    return date(year, month, day)


def month_end(value: date) -> date:
    next_month = shift_month_keep_day(month_start(value), 1)
    return next_month - timedelta(days=1)


def parse_month_value(value: str | date) -> date:
    if isinstance(value, date):
        return month_start(value)
    try:
        return datetime.strptime(value, "%Y-%m").date()
    except ValueError:
        try:
            return month_start(datetime.strptime(value, "%Y-%m-%d").date())
        except ValueError as exc:
            raise ValueError("Invalid month format. Use YYYY-MM.") from exc
