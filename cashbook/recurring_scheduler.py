from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import date, timedelta
import logging
from decimal import Decimal
from typing import Iterable, List, Mapping, Optional

from cashbook.errors import NotDue
from cashbook.ledger import EXPENSE, Category, Transaction, normalize_kind
from cashbook.money import (
    normalize_currency,
    quantize_amount,
    require_positive,
    shift_month_keep_day,
)

logger = logging.getLogger(__name__)

DAILY = "daily"
WEEKLY = "weekly"
MONTHLY = "monthly"
QUARTERLY = "quarterly"
YEARLY = "yearly"

INTERVAL_DAYS = {DAILY: 1, WEEKLY: 7}
INTERVAL_MONTHS = {MONTHLY: 1, QUARTERLY: 3, YEARLY: 12}
SUPPORTED_INTERVALS = set(INTERVAL_DAYS) | set(INTERVAL_MONTHS)

DEFAULT_NOTE = "Recurring"


@dataclass(frozen=True)
class RecurringRule:
    amount: Decimal
    currency: str
    interval: str
    anchor_date: date
    next_run_date: date
    kind: str = EXPENSE
    account_id: Optional[int] = None
    category_id: Optional[int] = None
    note: Optional[str] = None
    id: Optional[int] = None
    owner_id: Optional[int] = None


@dataclass(frozen=True)
class RecurringApplication:
    transaction: Transaction
    rule: RecurringRule
    previous_run_date: date


def validate_interval(interval: str) -> str:
    normalized = "".join(ch for ch in interval.strip().lower() if ch.isalnum())
    if normalized not in SUPPORTED_INTERVALS:
        raise ValueError("Only daily, weekly, monthly, quarterly, or yearly rules are supported.")
    return normalized


def validate_rule(rule: RecurringRule) -> RecurringRule:
    return replace(
        rule,
        amount=quantize_amount(require_positive(rule.amount, "Recurring amount")),
        currency=normalize_currency(rule.currency),
        interval=validate_interval(rule.interval),
        kind=normalize_kind(rule.kind),
        note=rule.note.strip() if rule.note else None,
    )


def advance(run_date: date, interval: str, anchor_day: int | None = None) -> date:
    """Return the run date one interval after ``run_date``.

    Month-based intervals keep ``anchor_day`` where the target month allows it
    and clamp to the month's last day otherwise (Jan 31 -> Feb 28/29 -> Mar 31).
    """
    normalized = validate_interval(interval)
    if normalized in INTERVAL_DAYS:
        return run_date + timedelta(days=INTERVAL_DAYS[normalized])
    return shift_month_keep_day(run_date, INTERVAL_MONTHS[normalized], anchor_day)


def is_due(rule: RecurringRule, reference_date: date) -> bool:
    return reference_date >= rule.next_run_date


def resolve_kind(rule: RecurringRule, categories: Mapping[int, Category] | None = None) -> str:
    if rule.category_id is not None and categories:
        category = categories.get(rule.category_id)
        if category is not None:
            return normalize_kind(category.kind)
    return normalize_kind(rule.kind)


def apply_rule(
    rule: RecurringRule,
    reference_date: date,
    categories: Mapping[int, Category] | None = None,
) -> RecurringApplication:
    """Post one occurrence of ``rule`` and advance it by one interval.

    Missed periods are not backfilled: each call produces exactly one
    transaction dated ``reference_date``.
    """
    if not is_due(rule, reference_date):
        logger.debug(
            "rule %s not due until %s", rule.id, rule.next_run_date.isoformat()
        )
        raise NotDue(rule.id, rule.next_run_date, reference_date)

    validated = validate_rule(rule)
    transaction = Transaction(
        amount=validated.amount,
        currency=validated.currency,
        kind=resolve_kind(validated, categories),
        date=reference_date,
        account_id=validated.account_id,
        category_id=validated.category_id,
        note=validated.note or DEFAULT_NOTE,
        owner_id=validated.owner_id,
    )
    next_run_date = advance(
        validated.next_run_date, validated.interval, validated.anchor_date.day
    )
    return RecurringApplication(
        transaction=transaction,
        rule=replace(validated, next_run_date=next_run_date),
        previous_run_date=validated.next_run_date,
    )


def due_rules(rules: Iterable[RecurringRule], reference_date: date) -> List[RecurringRule]:
    due = [rule for rule in rules if is_due(rule, reference_date)]
    due.sort(key=lambda rule: (rule.next_run_date, rule.id or 0))
    return due


def upcoming_runs(
    rule: RecurringRule, until: date, limit: int | None = None
) -> List[date]:
    """Preview the run dates from ``next_run_date`` through ``until`` inclusive."""
    interval = validate_interval(rule.interval)
    runs: List[date] = []
    current = rule.next_run_date
    while current <= until:
        if limit is not None and len(runs) >= limit:
            break
        runs.append(current)
        current = advance(current, interval, rule.anchor_date.day)
    return runs
