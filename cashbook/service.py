"""Owner-scoped operations over the cashbook core.

Every call loads a fresh snapshot from the store and runs the pure core
functions over it; nothing here caches records between calls. Collaborators
re-run ``aggregate``/``evaluate_budgets`` after their own mutations complete.
"""

from __future__ import annotations

from datetime import date
import logging
import threading
from decimal import Decimal

from cashbook.budget_engine import Budget, BudgetMonitor, BudgetReport
from cashbook.config import Settings, get_settings
from cashbook.currency_conversion import (
    ConversionResult,
    FxRate,
    RateResolver,
    StaticRateResolver,
    StoredRateResolver,
    convert,
)
from cashbook.errors import ApplyConflict, NotDue, PartialApply
from cashbook.ledger import (
    GROUP_BY_CURRENCY,
    Aggregation,
    CategoryBreakdown,
    Transaction,
    Window,
    aggregate,
    category_breakdown,
)
from cashbook.money import month_start
from cashbook.recurring_scheduler import RecurringRule, apply_rule, due_rules
from cashbook.search import SearchPage, normalize_entity_type, search, BUDGETS, TRANSACTIONS
from cashbook.store import CashbookStore, Snapshot

logger = logging.getLogger(__name__)


class Cashbook:
    def __init__(
        self,
        store: CashbookStore,
        settings: Settings | None = None,
        monitor: BudgetMonitor | None = None,
    ) -> None:
        self.store = store
        self.settings = settings or get_settings()
        self.monitor = monitor or BudgetMonitor()
        self._monitor_lock = threading.Lock()

    def snapshot(self, owner_id: int) -> Snapshot:
        return self.store.load_snapshot(owner_id)

    def rate_resolver(self, owner_id: int, fx_rates: list[FxRate] | None = None) -> RateResolver:
        if self.settings.fx_rate_source == "static":
            return StaticRateResolver()
        rows = fx_rates if fx_rates is not None else self.store.list_fx_rates(owner_id)
        return StoredRateResolver.from_rates(rows, base_currency=self.settings.fx_base_currency)

    # Ledger

    def aggregate(
        self, owner_id: int, window: Window | None = None, group_by: str = GROUP_BY_CURRENCY
    ) -> Aggregation:
        snapshot = self.snapshot(owner_id)
        return aggregate(snapshot.transactions, window, group_by, snapshot.categories)

    def balances(self, owner_id: int, today: date) -> dict[str, Aggregation]:
        snapshot = self.snapshot(owner_id)
        return {
            "lifetime": aggregate(snapshot.transactions, Window.lifetime()),
            "month": aggregate(snapshot.transactions, Window.month(today)),
        }

    def category_breakdown(
        self, owner_id: int, window: Window, currency: str | None = None
    ) -> CategoryBreakdown:
        snapshot = self.snapshot(owner_id)
        return category_breakdown(
            snapshot.transactions,
            window,
            snapshot.categories,
            currency or self.settings.default_currency,
            self.rate_resolver(owner_id, snapshot.fx_rates),
        )

    # Budgets

    def evaluate_budgets(self, owner_id: int, month: date) -> BudgetReport:
        snapshot = self.snapshot(owner_id)
        target_month = month_start(month)
        month_budgets = [budget for budget in snapshot.budgets if budget.month == target_month]
        with self._monitor_lock:
            return self.monitor.recompute(
                month_budgets,
                snapshot.transactions,
                self.rate_resolver(owner_id, snapshot.fx_rates),
                snapshot.categories,
            )

    def create_budget(self, owner_id: int, budget: Budget) -> Budget:
        return self.store.create_budget(owner_id, budget)

    def update_budget(self, owner_id: int, budget_id: int, budget: Budget) -> Budget:
        return self.store.update_budget(owner_id, budget_id, budget)

    def delete_budget(self, owner_id: int, budget_id: int) -> None:
        self.store.delete_budget(owner_id, budget_id)
        with self._monitor_lock:
            self.monitor.forget(budget_id)

    # Recurring

    def apply_recurring(self, owner_id: int, rule_id: int, reference_date: date) -> Transaction:
        rule = self.store.get_rule(owner_id, rule_id)
        categories = {category.id: category for category in self.store.list_categories(owner_id)}
        try:
            application = apply_rule(rule, reference_date, categories)
        except NotDue:
            logger.debug("recurring rule %s skipped; not due", rule_id)
            raise
        if rule.account_id is None:
            raise ValueError("Recurring rule needs an account before it can be applied.")
        try:
            transaction = self.store.record_application(owner_id, application)
        except (NotDue, ApplyConflict) as exc:
            logger.info("recurring rule %s already advanced by another apply: %s", rule_id, exc)
            raise
        except PartialApply as exc:
            logger.error("recurring rule %s needs reconciliation: %s", rule_id, exc.reason)
            raise
        logger.info(
            "applied recurring rule %s on %s; next run %s",
            rule_id,
            reference_date.isoformat(),
            application.rule.next_run_date.isoformat(),
        )
        return transaction

    def due_rules(self, owner_id: int, reference_date: date) -> list[RecurringRule]:
        return due_rules(self.store.list_rules(owner_id), reference_date)

    # Search

    def search(self, owner_id: int, entity_type: str, query: str | None, page: int = 0) -> SearchPage:
        entity = normalize_entity_type(entity_type)
        snapshot = self.snapshot(owner_id)
        if entity == TRANSACTIONS:
            records = snapshot.transactions
        elif entity == BUDGETS:
            records = snapshot.budgets
        else:
            records = snapshot.rules
        return search(
            entity,
            records,
            query,
            snapshot.categories,
            page=page,
            page_size=self.settings.search_page_size,
        )

    # FX

    def convert(
        self, amount: Decimal | int | float | str, source: str, target: str, owner_id: int
    ) -> ConversionResult:
        return convert(amount, source, target, self.rate_resolver(owner_id))

    def upsert_fx_rate(self, owner_id: int, base: str, target: str, rate) -> FxRate:
        return self.store.upsert_fx_rate(owner_id, base, target, rate)
