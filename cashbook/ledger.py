from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
import logging
from decimal import Decimal
from typing import Hashable, Iterable, Mapping, Optional, Union

from cashbook.currency_conversion import RateResolver, convert
from cashbook.money import (
    ZERO,
    month_end,
    month_start,
    normalize_currency,
    quantize_amount,
    require_positive,
)

logger = logging.getLogger(__name__)

INCOME = "income"
EXPENSE = "expense"
KINDS = {INCOME, EXPENSE}

GROUP_BY_CURRENCY = "currency"
GROUP_BY_CATEGORY = "category"

UNCATEGORIZED = "Uncategorized"


def normalize_kind(value: str) -> str:
    normalized = value.strip().lower()
    if normalized not in KINDS:
        raise ValueError("Kind must be 'income' or 'expense'.")
    return normalized


@dataclass(frozen=True)
class Account:
    id: int
    owner_id: int
    name: str
    currency: str


@dataclass(frozen=True)
class Category:
    id: int
    name: str
    kind: str = EXPENSE
    owner_id: Optional[int] = None

    @property
    def is_global(self) -> bool:
        return self.owner_id is None


@dataclass(frozen=True)
class Transaction:
    amount: Decimal
    currency: str
    kind: str
    date: date
    account_id: Optional[int] = None
    category_id: Optional[int] = None
    note: Optional[str] = None
    id: Optional[int] = None
    owner_id: Optional[int] = None


def validate_transaction(txn: Transaction) -> Transaction:
    """Return a normalized copy of ``txn`` or raise for a malformed row."""
    if not isinstance(txn.date, date):
        raise ValueError("Transaction date is required.")
    # Windows compare plain dates; timestamps keep only their calendar day.
    day = txn.date.date() if isinstance(txn.date, datetime) else txn.date
    return Transaction(
        amount=quantize_amount(require_positive(txn.amount)),
        currency=normalize_currency(txn.currency),
        kind=normalize_kind(txn.kind),
        date=day,
        account_id=txn.account_id,
        category_id=txn.category_id,
        note=txn.note.strip() if txn.note else None,
        id=txn.id,
        owner_id=txn.owner_id,
    )


@dataclass(frozen=True)
class Window:
    """Inclusive date range; an open end means unbounded."""

    start: Optional[date] = None
    end: Optional[date] = None
    label: str = "lifetime"

    @classmethod
    def lifetime(cls) -> "Window":
        return cls()

    @classmethod
    def month(cls, value: date) -> "Window":
        return cls(month_start(value), month_end(value), label=f"{value:%Y-%m}")

    @classmethod
    def between(cls, start: date, end: date) -> "Window":
        if start > end:
            raise ValueError("start must be on or before end.")
        return cls(start, end, label=f"{start.isoformat()}..{end.isoformat()}")

    def contains(self, value: date) -> bool:
        if self.start is not None and value < self.start:
            return False
        if self.end is not None and value > self.end:
            return False
        return True


@dataclass(frozen=True)
class Totals:
    income: Decimal = ZERO
    expense: Decimal = ZERO

    @property
    def net(self) -> Decimal:
        return self.income - self.expense

    def as_dict(self) -> dict[str, Decimal]:
        return {"income": self.income, "expense": self.expense, "net": self.net}


GroupKey = Union[str, tuple]


@dataclass(frozen=True)
class Aggregation:
    totals: dict[GroupKey, Totals] = field(default_factory=dict)
    skipped: int = 0

    def get(self, key: GroupKey) -> Totals:
        return self.totals.get(key, Totals())


def aggregate(
    transactions: Iterable[Transaction],
    window: Window | None = None,
    group_by: str = GROUP_BY_CURRENCY,
    categories: Mapping[int, Category] | None = None,
) -> Aggregation:
    """Fold transactions into income/expense totals.

    Grouping by currency keys totals on the currency code. Grouping by
    category only counts expenses and keys totals on ``(category, currency)``
    so amounts in different currencies never get summed together; ids that do
    not resolve against ``categories`` land under ``UNCATEGORIZED``.
    """
    window = window or Window.lifetime()
    if group_by not in {GROUP_BY_CURRENCY, GROUP_BY_CATEGORY}:
        raise ValueError(f"Unsupported group_by: {group_by}")

    sums: dict[GroupKey, list[Decimal]] = {}
    skipped = 0
    for raw in transactions:
        try:
            txn = validate_transaction(raw)
            in_window = window.contains(txn.date)
        except (ValueError, TypeError, AttributeError):
            skipped += 1
            continue
        if not in_window:
            continue
        if group_by == GROUP_BY_CATEGORY:
            if txn.kind != EXPENSE:
                continue
            key: GroupKey = (category_key(txn.category_id, categories), txn.currency)
        else:
            key = txn.currency
        bucket = sums.setdefault(key, [ZERO, ZERO])
        if txn.kind == INCOME:
            bucket[0] += txn.amount
        else:
            bucket[1] += txn.amount

    if skipped:
        logger.warning("skipped %d malformed transaction rows during aggregation", skipped)
    return Aggregation(
        totals={key: Totals(income=values[0], expense=values[1]) for key, values in sums.items()},
        skipped=skipped,
    )


def category_key(
    category_id: Optional[int], categories: Mapping[int, Category] | None
) -> Hashable:
    if category_id is None:
        return UNCATEGORIZED
    if categories is not None and category_id not in categories:
        return UNCATEGORIZED
    return category_id


@dataclass(frozen=True)
class CategoryShare:
    category_id: Optional[int]
    name: str
    amount: Decimal
    currency: str


@dataclass(frozen=True)
class CategoryBreakdown:
    shares: list[CategoryShare]
    currency: str
    skipped: int = 0
    approximate: bool = False


def category_breakdown(
    transactions: Iterable[Transaction],
    window: Window,
    categories: Mapping[int, Category],
    currency: str,
    rate_resolver: RateResolver | None = None,
) -> CategoryBreakdown:
    target = normalize_currency(currency)
    aggregation = aggregate(transactions, window, GROUP_BY_CATEGORY, categories)
    amounts: dict[Hashable, Decimal] = {}
    approximate = False
    for (key, source_currency), totals in aggregation.totals.items():
        result = convert(totals.expense, source_currency, target, rate_resolver)
        approximate = approximate or result.approximate
        amounts[key] = amounts.get(key, ZERO) + result.amount

    shares = []
    for key, amount in amounts.items():
        if key == UNCATEGORIZED:
            shares.append(CategoryShare(None, UNCATEGORIZED, quantize_amount(amount), target))
        else:
            shares.append(
                CategoryShare(key, categories[key].name, quantize_amount(amount), target)
            )
    shares.sort(key=lambda share: (-share.amount, share.name))
    return CategoryBreakdown(
        shares=shares,
        currency=target,
        skipped=aggregation.skipped,
        approximate=approximate,
    )
