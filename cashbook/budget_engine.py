from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date
import logging
from decimal import Decimal, ROUND_HALF_UP
from typing import Hashable, Iterable, Mapping, Optional

from cashbook.currency_conversion import RateResolver, convert
from cashbook.ledger import (
    GROUP_BY_CATEGORY,
    UNCATEGORIZED,
    Aggregation,
    Category,
    Transaction,
    Window,
    aggregate,
)
from cashbook.money import (
    ZERO,
    Money,
    coerce_amount,
    month_start,
    normalize_currency,
    quantize_amount,
    require_positive,
)

logger = logging.getLogger(__name__)

UNDER = "under"
AT = "at"
OVER = "over"


@dataclass(frozen=True)
class Budget:
    category_id: int
    month: date
    limit_amount: Decimal
    currency: str
    id: Optional[int] = None
    owner_id: Optional[int] = None


def validate_budget(budget: Budget) -> Budget:
    if budget.category_id is None:
        raise ValueError("Budget requires a category.")
    return Budget(
        category_id=budget.category_id,
        month=month_start(budget.month),
        limit_amount=quantize_amount(require_positive(budget.limit_amount, "Budget limit")),
        currency=normalize_currency(budget.currency),
        id=budget.id,
        owner_id=budget.owner_id,
    )


@dataclass(frozen=True)
class BudgetStatus:
    budget: Budget
    spent: Money
    limit: Money
    pct: int
    status: str
    approximate: bool = False
    skipped: int = 0

    @property
    def remaining(self) -> Money:
        return self.limit - self.spent

    def in_currency(
        self, currency: str, rate_resolver: RateResolver | None = None
    ) -> tuple[Money, Money]:
        spent = convert(self.spent.amount, self.spent.currency, currency, rate_resolver)
        limit = convert(self.limit.amount, self.limit.currency, currency, rate_resolver)
        return (
            Money(quantize_amount(spent.amount), currency),
            Money(quantize_amount(limit.amount), currency),
        )


def classify(spent: Decimal, limit: Decimal) -> str:
    if spent > limit:
        return OVER
    if spent == limit:
        return AT
    return UNDER


def percent_used(spent: Decimal, limit: Decimal) -> int:
    if limit == ZERO:
        return 0
    return int((spent * 100 / limit).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def _status_from_aggregation(
    budget: Budget,
    aggregation: Aggregation,
    rate_resolver: RateResolver | None = None,
) -> BudgetStatus:
    currency = normalize_currency(budget.currency)
    spent = ZERO
    approximate = False
    for (category_id, source_currency), totals in aggregation.totals.items():
        if category_id != budget.category_id:
            continue
        result = convert(totals.expense, source_currency, currency, rate_resolver)
        approximate = approximate or result.approximate
        spent += result.amount
    spent = quantize_amount(spent)
    limit = quantize_amount(coerce_amount(budget.limit_amount))

    return BudgetStatus(
        budget=budget,
        spent=Money(spent, currency),
        limit=Money(limit, currency),
        pct=percent_used(spent, limit),
        status=classify(spent, limit),
        approximate=approximate,
        skipped=aggregation.skipped,
    )


def _month_spending(transactions: Iterable[Transaction], month: date) -> Aggregation:
    return aggregate(transactions, Window.month(month), GROUP_BY_CATEGORY)


def evaluate_budget(
    budget: Budget,
    transactions: Iterable[Transaction],
    rate_resolver: RateResolver | None = None,
) -> BudgetStatus:
    return _status_from_aggregation(
        budget, _month_spending(transactions, budget.month), rate_resolver
    )


def evaluate_budgets(
    budgets: Iterable[Budget],
    transactions: Iterable[Transaction],
    rate_resolver: RateResolver | None = None,
) -> list[BudgetStatus]:
    """Evaluate every budget, aggregating each distinct month only once."""
    rows = list(transactions)
    by_month: dict[date, Aggregation] = {}
    statuses = []
    for budget in budgets:
        month = month_start(budget.month)
        if month not in by_month:
            by_month[month] = _month_spending(rows, month)
        statuses.append(_status_from_aggregation(budget, by_month[month], rate_resolver))
    return statuses


@dataclass(frozen=True)
class BudgetExceeded:
    budget_id: Optional[int]
    category_id: int
    category_name: str
    month: date
    spent: Money
    limit: Money


@dataclass(frozen=True)
class BudgetReport:
    statuses: list[BudgetStatus]
    events: list[BudgetExceeded] = field(default_factory=list)


class BudgetMonitor:
    """Tracks budget status between recomputation passes.

    A ``BudgetExceeded`` event fires when a budget moves into ``over``; a
    budget that stays over across passes does not fire again until it drops
    back under its limit.
    """

    def __init__(self) -> None:
        self._last_status: dict[Hashable, str] = {}

    def recompute(
        self,
        budgets: Iterable[Budget],
        transactions: Iterable[Transaction],
        rate_resolver: RateResolver | None = None,
        categories: Mapping[int, Category] | None = None,
    ) -> BudgetReport:
        statuses = evaluate_budgets(budgets, transactions, rate_resolver)
        events: list[BudgetExceeded] = []
        for status in statuses:
            key = self._key(status.budget)
            previous = self._last_status.get(key)
            self._last_status[key] = status.status
            if status.status != OVER or previous == OVER:
                continue
            category = (categories or {}).get(status.budget.category_id)
            event = BudgetExceeded(
                budget_id=status.budget.id,
                category_id=status.budget.category_id,
                category_name=category.name if category else UNCATEGORIZED,
                month=month_start(status.budget.month),
                spent=status.spent,
                limit=status.limit,
            )
            logger.info(
                "budget exceeded: %s %s spent %s of %s",
                event.category_name,
                f"{event.month:%Y-%m}",
                event.spent,
                event.limit,
            )
            events.append(event)
        return BudgetReport(statuses=statuses, events=events)

    def forget(self, budget_id: int) -> None:
        self._last_status.pop(budget_id, None)

    @staticmethod
    def _key(budget: Budget) -> Hashable:
        if budget.id is not None:
            return budget.id
        return (budget.owner_id, budget.category_id, month_start(budget.month))
