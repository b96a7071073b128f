import unittest
from datetime import date
from decimal import Decimal

from cashbook.budget_engine import (
    AT,
    OVER,
    UNDER,
    Budget,
    BudgetMonitor,
    classify,
    evaluate_budget,
    evaluate_budgets,
    percent_used,
    validate_budget,
)
from cashbook.currency_conversion import StaticRateResolver
from cashbook.errors import InvalidAmount
from cashbook.ledger import Category, Transaction
from cashbook.money import Money

FOOD = 1
TRANSPORT = 2


def expense(amount, category_id=FOOD, currency="USD", day=date(2025, 6, 12)):
    return Transaction(
        amount=Decimal(amount),
        currency=currency,
        kind="expense",
        date=day,
        category_id=category_id,
    )


class BudgetEngineTests(unittest.TestCase):
    def setUp(self) -> None:
        self.budget = Budget(
            id=10,
            category_id=FOOD,
            month=date(2025, 6, 1),
            limit_amount=Decimal("500"),
            currency="USD",
        )
        self.categories = {
            FOOD: Category(id=FOOD, name="Food"),
            TRANSPORT: Category(id=TRANSPORT, name="Transport"),
        }

    def test_under_limit(self) -> None:
        transactions = [expense("250"), expense("150")]

        result = evaluate_budget(self.budget, transactions)

        self.assertEqual(result.spent, Money(Decimal("400"), "USD"))
        self.assertEqual(result.limit, Money(Decimal("500"), "USD"))
        self.assertEqual(result.pct, 80)
        self.assertEqual(result.status, UNDER)
        self.assertEqual(result.remaining, Money(Decimal("100"), "USD"))

    def test_over_limit(self) -> None:
        transactions = [expense("400"), expense("150")]

        result = evaluate_budget(self.budget, transactions)

        self.assertEqual(result.spent.amount, Decimal("550"))
        self.assertEqual(result.pct, 110)
        self.assertEqual(result.status, OVER)

    def test_exactly_at_limit(self) -> None:
        result = evaluate_budget(self.budget, [expense("500.00")])

        self.assertEqual(result.status, AT)
        self.assertEqual(result.pct, 100)

    def test_ignores_other_categories_months_and_income(self) -> None:
        transactions = [
            expense("100"),
            expense("999", category_id=TRANSPORT),
            expense("999", day=date(2025, 7, 1)),
            expense("999", day=date(2025, 5, 31)),
            Transaction(
                amount=Decimal("999"),
                currency="USD",
                kind="income",
                date=date(2025, 6, 3),
                category_id=FOOD,
            ),
        ]

        result = evaluate_budget(self.budget, transactions)

        self.assertEqual(result.spent.amount, Decimal("100"))

    def test_converts_other_currencies_into_budget_currency(self) -> None:
        transactions = [expense("50"), expense("60000", currency="SSP")]

        result = evaluate_budget(self.budget, transactions, StaticRateResolver())

        self.assertEqual(result.spent, Money(Decimal("60"), "USD"))
        self.assertEqual(result.pct, 12)
        self.assertFalse(result.approximate)

    def test_in_currency_converts_spent_and_limit(self) -> None:
        result = evaluate_budget(self.budget, [expense("10")])

        spent, limit = result.in_currency("SSP", StaticRateResolver())

        self.assertEqual(spent, Money(Decimal("60000"), "SSP"))
        self.assertEqual(limit, Money(Decimal("3000000"), "SSP"))

    def test_budgets_in_one_month_share_a_single_aggregation(self) -> None:
        transport = Budget(
            id=11, category_id=TRANSPORT, month=date(2025, 6, 1), limit_amount="20", currency="USD"
        )
        july = Budget(
            id=12, category_id=FOOD, month=date(2025, 7, 1), limit_amount="50", currency="USD"
        )
        transactions = [
            expense("120"),
            expense("30", category_id=TRANSPORT),
            expense("40", day=date(2025, 7, 2)),
            expense("-5"),
        ]

        with self.assertLogs("cashbook.ledger", level="WARNING") as logs:
            statuses = evaluate_budgets([self.budget, transport, july], transactions)

        self.assertEqual(len(logs.output), 2)
        self.assertEqual(
            [(status.spent.amount, status.status) for status in statuses],
            [(Decimal("120"), UNDER), (Decimal("30"), OVER), (Decimal("40"), UNDER)],
        )
        self.assertEqual([status.skipped for status in statuses], [1, 1, 1])

    def test_percent_rounds_half_up(self) -> None:
        self.assertEqual(percent_used(Decimal("1"), Decimal("3")), 33)
        self.assertEqual(percent_used(Decimal("2"), Decimal("3")), 67)
        self.assertEqual(percent_used(Decimal("1"), Decimal("200")), 1)

    def test_zero_limit_is_defined_by_convention(self) -> None:
        self.assertEqual(percent_used(Decimal("5"), Decimal("0")), 0)
        self.assertEqual(classify(Decimal("5"), Decimal("0")), OVER)
        self.assertEqual(classify(Decimal("0"), Decimal("0")), AT)

    def test_validate_budget_normalizes_month_and_rejects_zero_limit(self) -> None:
        budget = validate_budget(
            Budget(category_id=FOOD, month=date(2025, 6, 17), limit_amount="20", currency="usd")
        )

        self.assertEqual(budget.month, date(2025, 6, 1))
        self.assertEqual(budget.currency, "USD")
        with self.assertRaises(InvalidAmount):
            validate_budget(
                Budget(category_id=FOOD, month=date(2025, 6, 1), limit_amount="0", currency="USD")
            )


class BudgetMonitorTests(unittest.TestCase):
    def setUp(self) -> None:
        self.budget = Budget(
            id=10,
            category_id=FOOD,
            month=date(2025, 6, 1),
            limit_amount=Decimal("500"),
            currency="USD",
        )
        self.categories = {FOOD: Category(id=FOOD, name="Food")}
        self.monitor = BudgetMonitor()

    def test_emits_single_event_when_budget_goes_over(self) -> None:
        transactions = [expense("400")]
        first = self.monitor.recompute([self.budget], transactions, categories=self.categories)
        self.assertEqual(first.statuses[0].status, UNDER)
        self.assertEqual(first.statuses[0].pct, 80)
        self.assertEqual(first.events, [])

        transactions.append(expense("150"))
        with self.assertLogs("cashbook.budget_engine", level="INFO"):
            second = self.monitor.recompute([self.budget], transactions, categories=self.categories)

        self.assertEqual(second.statuses[0].status, OVER)
        self.assertEqual(second.statuses[0].pct, 110)
        self.assertEqual(len(second.events), 1)
        event = second.events[0]
        self.assertEqual(event.budget_id, 10)
        self.assertEqual(event.category_name, "Food")
        self.assertEqual(event.month, date(2025, 6, 1))
        self.assertEqual(event.spent, Money(Decimal("550"), "USD"))
        self.assertEqual(event.limit, Money(Decimal("500"), "USD"))

    def test_staying_over_does_not_repeat_event(self) -> None:
        transactions = [expense("600")]

        first = self.monitor.recompute([self.budget], transactions, categories=self.categories)
        transactions.append(expense("5"))
        second = self.monitor.recompute([self.budget], transactions, categories=self.categories)

        self.assertEqual(len(first.events), 1)
        self.assertEqual(second.events, [])

    def test_dropping_under_rearms_the_event(self) -> None:
        self.monitor.recompute([self.budget], [expense("600")])
        self.monitor.recompute([self.budget], [expense("100")])
        report = self.monitor.recompute([self.budget], [expense("700")])

        self.assertEqual(len(report.events), 1)
        self.assertEqual(report.events[0].category_name, "Uncategorized")

    def test_forget_clears_remembered_status(self) -> None:
        self.monitor.recompute([self.budget], [expense("600")])
        self.monitor.forget(self.budget.id)

        report = self.monitor.recompute([self.budget], [expense("600")])

        self.assertEqual(len(report.events), 1)


if __name__ == "__main__":
    unittest.main()
