import unittest
from datetime import date
from decimal import Decimal

from cashbook.errors import InvalidAmount, NotDue
from cashbook.ledger import Category
from cashbook.recurring_scheduler import (
    DEFAULT_NOTE,
    RecurringRule,
    advance,
    apply_rule,
    due_rules,
    upcoming_runs,
    validate_interval,
    validate_rule,
)


def make_rule(**overrides):
    values = {
        "id": 1,
        "amount": Decimal("120"),
        "currency": "USD",
        "interval": "monthly",
        "anchor_date": date(2025, 1, 31),
        "next_run_date": date(2025, 1, 31),
        "account_id": 3,
        "category_id": 5,
        "note": "Rent",
    }
    values.update(overrides)
    return RecurringRule(**values)


class AdvanceTests(unittest.TestCase):
    def test_month_end_anchor_clamps_and_recovers(self) -> None:
        february = advance(date(2025, 1, 31), "monthly", 31)
        march = advance(february, "monthly", 31)

        self.assertEqual(february, date(2025, 2, 28))
        self.assertEqual(march, date(2025, 3, 31))

    def test_leap_year_february(self) -> None:
        self.assertEqual(advance(date(2024, 1, 31), "monthly", 31), date(2024, 2, 29))

    def test_quarterly_and_yearly_clamp(self) -> None:
        self.assertEqual(advance(date(2024, 11, 30), "quarterly", 30), date(2025, 2, 28))
        self.assertEqual(advance(date(2024, 2, 29), "yearly", 29), date(2025, 2, 28))

    def test_day_based_intervals(self) -> None:
        self.assertEqual(advance(date(2025, 12, 31), "daily"), date(2026, 1, 1))
        self.assertEqual(advance(date(2025, 2, 25), "weekly"), date(2025, 3, 4))

    def test_rejects_unknown_interval(self) -> None:
        with self.assertRaises(ValueError):
            validate_interval("fortnightly")

    def test_interval_names_are_normalized(self) -> None:
        self.assertEqual(validate_interval(" Monthly "), "monthly")


class ApplyRuleTests(unittest.TestCase):
    def test_apply_posts_transaction_and_advances_once(self) -> None:
        rule = make_rule()

        application = apply_rule(rule, date(2025, 1, 31))

        txn = application.transaction
        self.assertEqual(txn.amount, Decimal("120.00"))
        self.assertEqual(txn.currency, "USD")
        self.assertEqual(txn.date, date(2025, 1, 31))
        self.assertEqual(txn.account_id, 3)
        self.assertEqual(txn.category_id, 5)
        self.assertEqual(txn.note, "Rent")
        self.assertEqual(application.previous_run_date, date(2025, 1, 31))
        self.assertEqual(application.rule.next_run_date, date(2025, 2, 28))

        second = apply_rule(application.rule, date(2025, 2, 28))
        self.assertEqual(second.rule.next_run_date, date(2025, 3, 31))

    def test_not_due_before_next_run_date(self) -> None:
        rule = make_rule(next_run_date=date(2025, 2, 28))

        with self.assertRaises(NotDue) as ctx:
            apply_rule(rule, date(2025, 2, 27))

        self.assertEqual(ctx.exception.next_run_date, date(2025, 2, 28))
        self.assertEqual(ctx.exception.rule_id, 1)

    def test_missed_periods_are_not_backfilled(self) -> None:
        rule = make_rule(
            interval="weekly",
            anchor_date=date(2025, 1, 1),
            next_run_date=date(2025, 1, 1),
        )

        application = apply_rule(rule, date(2025, 3, 1))

        self.assertEqual(application.transaction.date, date(2025, 3, 1))
        self.assertEqual(application.rule.next_run_date, date(2025, 1, 8))

    def test_kind_follows_category(self) -> None:
        categories = {5: Category(id=5, name="Salary", kind="income")}
        rule = make_rule(kind="expense")

        application = apply_rule(rule, date(2025, 2, 1), categories)

        self.assertEqual(application.transaction.kind, "income")

    def test_kind_falls_back_to_rule_without_category(self) -> None:
        rule = make_rule(category_id=None, kind="income")

        application = apply_rule(rule, date(2025, 2, 1), {})

        self.assertEqual(application.transaction.kind, "income")

    def test_blank_note_uses_default(self) -> None:
        application = apply_rule(make_rule(note="  "), date(2025, 2, 1))

        self.assertEqual(application.transaction.note, DEFAULT_NOTE)

    def test_rejects_non_positive_amount(self) -> None:
        with self.assertRaises(InvalidAmount):
            validate_rule(make_rule(amount=Decimal("0")))


class ScheduleQueryTests(unittest.TestCase):
    def test_due_rules_sorted_by_next_run(self) -> None:
        rules = [
            make_rule(id=1, next_run_date=date(2025, 3, 10)),
            make_rule(id=2, next_run_date=date(2025, 3, 1)),
            make_rule(id=3, next_run_date=date(2025, 4, 1)),
            make_rule(id=4, next_run_date=date(2025, 3, 1)),
        ]

        due = due_rules(rules, date(2025, 3, 10))

        self.assertEqual([rule.id for rule in due], [2, 4, 1])

    def test_upcoming_runs_through_end_date(self) -> None:
        rule = make_rule()

        runs = upcoming_runs(rule, date(2025, 5, 31))

        self.assertEqual(
            runs,
            [
                date(2025, 1, 31),
                date(2025, 2, 28),
                date(2025, 3, 31),
                date(2025, 4, 30),
                date(2025, 5, 31),
            ],
        )
        self.assertEqual(len(upcoming_runs(rule, date(2025, 12, 31), limit=3)), 3)


if __name__ == "__main__":
    unittest.main()
