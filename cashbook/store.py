from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import date
import logging
from typing import Any, Optional

from sqlalchemy import (
    Column,
    Date,
    DateTime,
    ForeignKey,
    Integer,
    MetaData,
    Numeric,
    String,
    Table,
    UniqueConstraint,
    create_engine,
    delete,
    func,
    insert,
    or_,
    select,
    update,
)
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.pool import StaticPool

from cashbook.budget_engine import Budget, validate_budget
from cashbook.currency_conversion import FxRate, validate_rate
from cashbook.errors import ApplyConflict, DuplicateBudget, NotDue, NotFound, PartialApply
from cashbook.ledger import (
    Account,
    Category,
    Transaction,
    normalize_kind,
    validate_transaction,
)
from cashbook.money import month_start, normalize_currency
from cashbook.recurring_scheduler import RecurringApplication, RecurringRule, validate_rule

logger = logging.getLogger(__name__)

metadata = MetaData()

accounts = Table(
    "accounts",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("owner_id", Integer, nullable=False, index=True),
    Column("name", String(255), nullable=False),
    Column("currency", String(3), nullable=False),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
)

categories = Table(
    "categories",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("owner_id", Integer, index=True),
    Column("name", String(255), nullable=False),
    Column("kind", String(20), nullable=False),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
)

transactions = Table(
    "transactions",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("owner_id", Integer, nullable=False, index=True),
    Column("account_id", Integer, ForeignKey("accounts.id"), nullable=False),
    Column("category_id", Integer, ForeignKey("categories.id")),
    Column("amount", Numeric(14, 2), nullable=False),
    Column("currency", String(3), nullable=False),
    Column("kind", String(20), nullable=False),
    Column("date", Date, nullable=False),
    Column("note", String(500)),
)

budgets = Table(
    "budgets",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("owner_id", Integer, nullable=False, index=True),
    Column("category_id", Integer, ForeignKey("categories.id"), nullable=False),
    Column("month", Date, nullable=False),
    Column("limit_amount", Numeric(14, 2), nullable=False),
    Column("currency", String(3), nullable=False),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
    UniqueConstraint("owner_id", "category_id", "month", name="uq_budgets_owner_category_month"),
)

recurring_rules = Table(
    "recurring_rules",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("owner_id", Integer, nullable=False, index=True),
    Column("account_id", Integer, ForeignKey("accounts.id")),
    Column("category_id", Integer, ForeignKey("categories.id")),
    Column("kind", String(20), nullable=False, server_default="expense"),
    Column("amount", Numeric(14, 2), nullable=False),
    Column("currency", String(3), nullable=False),
    Column("interval", String(20), nullable=False),
    Column("anchor_date", Date, nullable=False),
    Column("next_run_date", Date, nullable=False),
    Column("note", String(500)),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
)

fx_rates = Table(
    "fx_rates",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("owner_id", Integer, nullable=False, index=True),
    Column("base", String(3), nullable=False),
    Column("target", String(3), nullable=False),
    Column("rate", Numeric(18, 6), nullable=False),
    UniqueConstraint("owner_id", "base", "target", name="uq_fx_rates_owner_pair"),
)


def normalize_category_ref(value: Any) -> Optional[int]:
    """Map stored category references onto ``None`` (uncategorized) or an id."""
    if value is None:
        return None
    if isinstance(value, str):
        value = value.strip()
        if not value:
            return None
    return int(value)


@dataclass(frozen=True)
class Snapshot:
    owner_id: int
    accounts: list[Account] = field(default_factory=list)
    categories: dict[int, Category] = field(default_factory=dict)
    transactions: list[Transaction] = field(default_factory=list)
    budgets: list[Budget] = field(default_factory=list)
    rules: list[RecurringRule] = field(default_factory=list)
    fx_rates: list[FxRate] = field(default_factory=list)


def _account_from_row(row) -> Account:
    return Account(id=row["id"], owner_id=row["owner_id"], name=row["name"], currency=row["currency"])


def _category_from_row(row) -> Category:
    return Category(id=row["id"], name=row["name"], kind=row["kind"], owner_id=row["owner_id"])


def _transaction_from_row(row) -> Transaction:
    return Transaction(
        id=row["id"],
        owner_id=row["owner_id"],
        account_id=row["account_id"],
        category_id=normalize_category_ref(row["category_id"]),
        amount=row["amount"],
        currency=row["currency"],
        kind=row["kind"],
        date=row["date"],
        note=row["note"],
    )


def _budget_from_row(row) -> Budget:
    return Budget(
        id=row["id"],
        owner_id=row["owner_id"],
        category_id=row["category_id"],
        month=row["month"],
        limit_amount=row["limit_amount"],
        currency=row["currency"],
    )


def _rule_from_row(row) -> RecurringRule:
    return RecurringRule(
        id=row["id"],
        owner_id=row["owner_id"],
        account_id=row["account_id"],
        category_id=normalize_category_ref(row["category_id"]),
        kind=row["kind"],
        amount=row["amount"],
        currency=row["currency"],
        interval=row["interval"],
        anchor_date=row["anchor_date"],
        next_run_date=row["next_run_date"],
        note=row["note"],
    )


def _fx_rate_from_row(row) -> FxRate:
    return FxRate(
        id=row["id"],
        owner_id=row["owner_id"],
        base=row["base"],
        target=row["target"],
        rate=row["rate"],
    )


def create_store_engine(database_url: str) -> Engine:
    connect_args: dict[str, Any] = {}
    kwargs: dict[str, Any] = {}
    if database_url.startswith("sqlite"):
        connect_args = {"check_same_thread": False}
        if database_url in {"sqlite://", "sqlite:///:memory:"}:
            kwargs["poolclass"] = StaticPool
    return create_engine(database_url, connect_args=connect_args, **kwargs)


class CashbookStore:
    """Owner-scoped CRUD over the cashbook tables."""

    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    @classmethod
    def from_url(cls, database_url: str) -> "CashbookStore":
        store = cls(create_store_engine(database_url))
        store.create_all()
        return store

    def create_all(self) -> None:
        metadata.create_all(self.engine)

    # Accounts

    def create_account(self, owner_id: int, name: str, currency: str) -> Account:
        name = name.strip()
        if not name:
            raise ValueError("Account name required.")
        stmt = (
            insert(accounts)
            .values(owner_id=owner_id, name=name, currency=normalize_currency(currency))
            .returning(accounts.c.id, accounts.c.owner_id, accounts.c.name, accounts.c.currency)
        )
        with self.engine.begin() as conn:
            row = conn.execute(stmt).mappings().first()
        return _account_from_row(row)

    def list_accounts(self, owner_id: int) -> list[Account]:
        with self.engine.begin() as conn:
            rows = conn.execute(
                select(accounts)
                .where(accounts.c.owner_id == owner_id)
                .order_by(accounts.c.name.asc(), accounts.c.id.asc())
            ).mappings().all()
        return [_account_from_row(row) for row in rows]

    # Categories

    def create_category(self, owner_id: Optional[int], name: str, kind: str) -> Category:
        name = name.strip()
        if not name:
            raise ValueError("Category name required.")
        stmt = (
            insert(categories)
            .values(owner_id=owner_id, name=name, kind=normalize_kind(kind))
            .returning(categories.c.id, categories.c.owner_id, categories.c.name, categories.c.kind)
        )
        with self.engine.begin() as conn:
            row = conn.execute(stmt).mappings().first()
        return _category_from_row(row)

    def list_categories(self, owner_id: int) -> list[Category]:
        with self.engine.begin() as conn:
            rows = conn.execute(
                select(categories)
                .where(_visible_category(owner_id))
                .order_by(categories.c.name.asc(), categories.c.id.asc())
            ).mappings().all()
        return [_category_from_row(row) for row in rows]

    # Transactions

    def create_transaction(self, owner_id: int, txn: Transaction) -> Transaction:
        _require_account(txn.account_id)
        txn = validate_transaction(replace(txn, category_id=normalize_category_ref(txn.category_id)))
        with self.engine.begin() as conn:
            self._check_references(conn, owner_id, txn.account_id, txn.category_id)
            row = conn.execute(
                insert(transactions)
                .values(**_transaction_values(owner_id, txn))
                .returning(*transactions.c)
            ).mappings().first()
        return _transaction_from_row(row)

    def update_transaction(self, owner_id: int, transaction_id: int, txn: Transaction) -> Transaction:
        _require_account(txn.account_id)
        txn = validate_transaction(replace(txn, category_id=normalize_category_ref(txn.category_id)))
        with self.engine.begin() as conn:
            self._check_references(conn, owner_id, txn.account_id, txn.category_id)
            row = conn.execute(
                update(transactions)
                .where(transactions.c.id == transaction_id, transactions.c.owner_id == owner_id)
                .values(**_transaction_values(owner_id, txn))
                .returning(*transactions.c)
            ).mappings().first()
        if not row:
            raise NotFound("Transaction not found.")
        return _transaction_from_row(row)

    def delete_transaction(self, owner_id: int, transaction_id: int) -> None:
        self._delete(transactions, owner_id, transaction_id, "Transaction not found.")

    def list_transactions(self, owner_id: int) -> list[Transaction]:
        with self.engine.begin() as conn:
            rows = conn.execute(
                select(transactions)
                .where(transactions.c.owner_id == owner_id)
                .order_by(transactions.c.date.desc(), transactions.c.id.asc())
            ).mappings().all()
        return [_transaction_from_row(row) for row in rows]

    # Budgets

    def create_budget(self, owner_id: int, budget: Budget) -> Budget:
        budget = validate_budget(budget)
        try:
            with self.engine.begin() as conn:
                self._check_references(conn, owner_id, None, budget.category_id)
                row = conn.execute(
                    insert(budgets)
                    .values(**_budget_values(owner_id, budget))
                    .returning(*budgets.c)
                ).mappings().first()
        except IntegrityError as exc:
            logger.info(
                "duplicate budget rejected for owner %s category %s month %s",
                owner_id,
                budget.category_id,
                f"{budget.month:%Y-%m}",
            )
            raise DuplicateBudget(owner_id, budget.category_id, budget.month) from exc
        return _budget_from_row(row)

    def update_budget(self, owner_id: int, budget_id: int, budget: Budget) -> Budget:
        budget = validate_budget(budget)
        try:
            with self.engine.begin() as conn:
                self._check_references(conn, owner_id, None, budget.category_id)
                row = conn.execute(
                    update(budgets)
                    .where(budgets.c.id == budget_id, budgets.c.owner_id == owner_id)
                    .values(**_budget_values(owner_id, budget))
                    .returning(*budgets.c)
                ).mappings().first()
        except IntegrityError as exc:
            raise DuplicateBudget(owner_id, budget.category_id, budget.month) from exc
        if not row:
            raise NotFound("Budget not found.")
        return _budget_from_row(row)

    def delete_budget(self, owner_id: int, budget_id: int) -> None:
        self._delete(budgets, owner_id, budget_id, "Budget not found.")

    def list_budgets(self, owner_id: int, month: date | None = None) -> list[Budget]:
        conditions = [budgets.c.owner_id == owner_id]
        if month is not None:
            conditions.append(budgets.c.month == month_start(month))
        with self.engine.begin() as conn:
            rows = conn.execute(
                select(budgets)
                .where(*conditions)
                .order_by(budgets.c.month.desc(), budgets.c.id.asc())
            ).mappings().all()
        return [_budget_from_row(row) for row in rows]

    # Recurring rules

    def create_rule(self, owner_id: int, rule: RecurringRule) -> RecurringRule:
        rule = validate_rule(replace(rule, category_id=normalize_category_ref(rule.category_id)))
        with self.engine.begin() as conn:
            self._check_references(conn, owner_id, rule.account_id, rule.category_id)
            row = conn.execute(
                insert(recurring_rules)
                .values(
                    owner_id=owner_id,
                    account_id=rule.account_id,
                    category_id=rule.category_id,
                    kind=rule.kind,
                    amount=rule.amount,
                    currency=rule.currency,
                    interval=rule.interval,
                    anchor_date=rule.anchor_date,
                    next_run_date=rule.next_run_date,
                    note=rule.note,
                )
                .returning(*recurring_rules.c)
            ).mappings().first()
        return _rule_from_row(row)

    def get_rule(self, owner_id: int, rule_id: int) -> RecurringRule:
        with self.engine.begin() as conn:
            row = conn.execute(
                select(recurring_rules).where(
                    recurring_rules.c.id == rule_id, recurring_rules.c.owner_id == owner_id
                )
            ).mappings().first()
        if not row:
            raise NotFound("Recurring rule not found.")
        return _rule_from_row(row)

    def list_rules(self, owner_id: int) -> list[RecurringRule]:
        with self.engine.begin() as conn:
            rows = conn.execute(
                select(recurring_rules)
                .where(recurring_rules.c.owner_id == owner_id)
                .order_by(recurring_rules.c.next_run_date.asc(), recurring_rules.c.id.asc())
            ).mappings().all()
        return [_rule_from_row(row) for row in rows]

    def delete_rule(self, owner_id: int, rule_id: int) -> None:
        self._delete(recurring_rules, owner_id, rule_id, "Recurring rule not found.")

    def record_application(self, owner_id: int, application: RecurringApplication) -> Transaction:
        """Post the materialized transaction and advance the rule as one unit.

        The rule update is guarded on the run date the application started
        from. If another apply got there first the unit rolls back and the
        caller sees ``NotDue`` (or ``ApplyConflict`` when the rule is still
        due at the new date); a deleted rule gives ``NotFound``. Database
        failures roll back and raise ``PartialApply``.
        """
        rule = application.rule
        txn = application.transaction
        try:
            with self.engine.begin() as conn:
                row = conn.execute(
                    insert(transactions)
                    .values(**_transaction_values(owner_id, txn))
                    .returning(*transactions.c)
                ).mappings().first()
                advanced = conn.execute(
                    update(recurring_rules)
                    .where(
                        recurring_rules.c.id == rule.id,
                        recurring_rules.c.owner_id == owner_id,
                        recurring_rules.c.next_run_date == application.previous_run_date,
                    )
                    .values(next_run_date=rule.next_run_date)
                )
                if advanced.rowcount != 1:
                    current = conn.execute(
                        select(recurring_rules.c.next_run_date).where(
                            recurring_rules.c.id == rule.id,
                            recurring_rules.c.owner_id == owner_id,
                        )
                    ).scalar_one_or_none()
                    if current is None:
                        raise NotFound("Recurring rule not found.")
                    if txn.date < current:
                        raise NotDue(rule.id, current, txn.date)
                    raise ApplyConflict(rule.id, current)
        except SQLAlchemyError as exc:
            raise PartialApply(rule.id, txn, str(exc)) from exc
        return _transaction_from_row(row)

    # FX rates

    def upsert_fx_rate(self, owner_id: int, base: str, target: str, rate) -> FxRate:
        candidate = FxRate(base=base, target=target, rate=validate_rate(rate), owner_id=owner_id)
        pair = (
            fx_rates.c.owner_id == owner_id,
            fx_rates.c.base == candidate.base,
            fx_rates.c.target == candidate.target,
        )
        with self.engine.begin() as conn:
            row = conn.execute(
                update(fx_rates).where(*pair).values(rate=candidate.rate).returning(*fx_rates.c)
            ).mappings().first()
            if not row:
                row = conn.execute(
                    insert(fx_rates)
                    .values(
                        owner_id=owner_id,
                        base=candidate.base,
                        target=candidate.target,
                        rate=candidate.rate,
                    )
                    .returning(*fx_rates.c)
                ).mappings().first()
        return _fx_rate_from_row(row)

    def list_fx_rates(self, owner_id: int) -> list[FxRate]:
        with self.engine.begin() as conn:
            rows = conn.execute(
                select(fx_rates)
                .where(fx_rates.c.owner_id == owner_id)
                .order_by(fx_rates.c.base.asc(), fx_rates.c.target.asc())
            ).mappings().all()
        return [_fx_rate_from_row(row) for row in rows]

    def delete_fx_rate(self, owner_id: int, rate_id: int) -> None:
        self._delete(fx_rates, owner_id, rate_id, "FX rate not found.")

    # Snapshot

    def load_snapshot(self, owner_id: int) -> Snapshot:
        return Snapshot(
            owner_id=owner_id,
            accounts=self.list_accounts(owner_id),
            categories={category.id: category for category in self.list_categories(owner_id)},
            transactions=self.list_transactions(owner_id),
            budgets=self.list_budgets(owner_id),
            rules=self.list_rules(owner_id),
            fx_rates=self.list_fx_rates(owner_id),
        )

    def _check_references(
        self, conn, owner_id: int, account_id: Optional[int], category_id: Optional[int]
    ) -> None:
        if account_id is not None:
            account_exists = conn.execute(
                select(accounts.c.id).where(accounts.c.id == account_id, accounts.c.owner_id == owner_id)
            ).first()
            if not account_exists:
                raise NotFound("Account not found.")
        if category_id is not None:
            category_exists = conn.execute(
                select(categories.c.id).where(
                    categories.c.id == category_id, _visible_category(owner_id)
                )
            ).first()
            if not category_exists:
                raise NotFound("Category not found.")

    def _delete(self, table: Table, owner_id: int, record_id: int, missing: str) -> None:
        with self.engine.begin() as conn:
            result = conn.execute(
                delete(table).where(table.c.id == record_id, table.c.owner_id == owner_id)
            )
        if result.rowcount == 0:
            raise NotFound(missing)


def _require_account(account_id: Optional[int]) -> None:
    if account_id is None:
        raise ValueError("Transaction requires an account.")


def _visible_category(owner_id: int):
    return or_(categories.c.owner_id == owner_id, categories.c.owner_id.is_(None))


def _transaction_values(owner_id: int, txn: Transaction) -> dict[str, Any]:
    return {
        "owner_id": owner_id,
        "account_id": txn.account_id,
        "category_id": txn.category_id,
        "amount": txn.amount,
        "currency": txn.currency,
        "kind": txn.kind,
        "date": txn.date,
        "note": txn.note,
    }


def _budget_values(owner_id: int, budget: Budget) -> dict[str, Any]:
    return {
        "owner_id": owner_id,
        "category_id": budget.category_id,
        "month": budget.month,
        "limit_amount": budget.limit_amount,
        "currency": budget.currency,
    }
