"""Free-text filtering and pagination for transactions, budgets and rules.

Category names take precedence: when a query matches any category name the
result is restricted to records in those categories, and note/currency/kind
matches are ignored. Otherwise the query is matched against the record's own
text fields.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Iterable, List, Mapping, Sequence

from cashbook.ledger import Category

DEFAULT_PAGE_SIZE = 50

TRANSACTIONS = "transactions"
BUDGETS = "budgets"
RECURRING_RULES = "recurring_rules"


def _id_key(record: Any) -> tuple[bool, int]:
    record_id = getattr(record, "id", None)
    return (record_id is None, record_id or 0)


def _transaction_fields(record: Any) -> Sequence[str | None]:
    return (record.note, record.currency, record.kind)


def _budget_fields(record: Any) -> Sequence[str | None]:
    return (record.currency, f"{record.month:%Y-%m}")


def _rule_fields(record: Any) -> Sequence[str | None]:
    return (record.note, record.currency, record.kind, record.interval)


def _transaction_order(record: Any) -> tuple:
    return (-record.date.toordinal(), *_id_key(record))


def _budget_order(record: Any) -> tuple:
    return (-record.month.toordinal(), *_id_key(record))


def _rule_order(record: Any) -> tuple:
    return (record.next_run_date.toordinal(), *_id_key(record))


ENTITY_TYPES: dict[str, tuple[Callable[[Any], Sequence[str | None]], Callable[[Any], tuple]]] = {
    TRANSACTIONS: (_transaction_fields, _transaction_order),
    BUDGETS: (_budget_fields, _budget_order),
    RECURRING_RULES: (_rule_fields, _rule_order),
}


@dataclass(frozen=True)
class SearchPage:
    items: List[Any]
    total_count: int
    page: int
    page_size: int

    @property
    def total_pages(self) -> int:
        return max(1, -(-self.total_count // self.page_size))


def normalize_entity_type(value: str) -> str:
    normalized = value.strip().lower().replace("-", "_")
    if normalized not in ENTITY_TYPES:
        raise ValueError(f"Unsupported entity type: {value}")
    return normalized


def matching_category_ids(query: str, categories: Mapping[int, Category]) -> set[int]:
    needle = query.strip().lower()
    if not needle:
        return set()
    return {
        category_id
        for category_id, category in categories.items()
        if needle in category.name.lower()
    }


def filter_records(
    entity_type: str,
    records: Iterable[Any],
    query: str | None,
    categories: Mapping[int, Category],
) -> List[Any]:
    fields_of, order_of = ENTITY_TYPES[normalize_entity_type(entity_type)]
    needle = (query or "").strip().lower()
    rows = list(records)

    if needle:
        category_ids = matching_category_ids(needle, categories)
        if category_ids:
            rows = [row for row in rows if row.category_id in category_ids]
        else:
            rows = [
                row
                for row in rows
                if any(value and needle in value.lower() for value in fields_of(row))
            ]
    rows.sort(key=order_of)
    return rows


def search(
    entity_type: str,
    records: Iterable[Any],
    query: str | None,
    categories: Mapping[int, Category],
    page: int = 0,
    page_size: int = DEFAULT_PAGE_SIZE,
) -> SearchPage:
    if page < 0:
        raise ValueError("page must be zero or greater.")
    if page_size <= 0:
        raise ValueError("page_size must be greater than zero.")
    matches = filter_records(entity_type, records, query, categories)
    start = page * page_size
    return SearchPage(
        items=matches[start : start + page_size],
        total_count=len(matches),
        page=page,
        page_size=page_size,
    )
