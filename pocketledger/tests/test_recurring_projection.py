import unittest
from datetime import date
from decimal import Decimal

from pocketledger.recurring_projection import (
    ProjectedEntry,
    RecurringRule,
    advance,
    next_due_date,
    project_rule,
    project_rules,
    rule_status,
)


def monthly_rule(**overrides) -> RecurringRule:
    values = dict(
        amount=Decimal("50"),
        start_date=date(2025, 1, 15),
        account_id=3,
        kind="expense",
        frequency="monthly",
    )
    values.update(overrides)
    return RecurringRule(**values)


class RecurringScheduleTests(unittest.TestCase):
    def test_first_occurrence_is_one_period_after_start(self) -> None:
        rule = monthly_rule()

        self.assertEqual(next_due_date(rule), date(2025, 2, 15))

        status = rule_status(rule, today=date(2025, 2, 20))
        self.assertEqual(status.status, "due")
        self.assertTrue(status.is_due)

        status = rule_status(rule, today=date(2025, 2, 10))
        self.assertEqual(status.status, "scheduled")
        self.assertEqual(status.next_due_date, date(2025, 2, 15))

    def test_last_processed_moves_the_anchor(self) -> None:
        rule = monthly_rule(last_processed=date(2025, 2, 15))

        self.assertEqual(next_due_date(rule), date(2025, 3, 15))

    def test_end_date_stops_the_rule(self) -> None:
        rule = monthly_rule(end_date=date(2025, 2, 1))

        status = rule_status(rule, today=date(2025, 3, 1))

        self.assertEqual(status.status, "ended")
        self.assertIsNone(status.next_due_date)
        self.assertFalse(status.is_due)

    def test_inactive_rule_has_no_next_date(self) -> None:
        status = rule_status(monthly_rule(is_active=False), today=date(2025, 3, 1))

        self.assertEqual(status.status, "inactive")
        self.assertIsNone(status.next_due_date)

    def test_month_end_is_clamped(self) -> None:
        self.assertEqual(advance(date(2025, 1, 31), "monthly", 1), date(2025, 2, 28))
        self.assertEqual(advance(date(2025, 1, 31), "monthly", 1, steps=2), date(2025, 3, 31))
        self.assertEqual(advance(date(2024, 2, 29), "yearly", 1), date(2025, 2, 28))

    def test_interval_multiplies_the_step(self) -> None:
        self.assertEqual(advance(date(2025, 1, 1), "weekly", 2), date(2025, 1, 15))
        self.assertEqual(advance(date(2025, 1, 1), "daily", 3), date(2025, 1, 4))
        self.assertEqual(advance(date(2025, 11, 30), "monthly", 3), date(2026, 2, 28))

    def test_unknown_frequency_raises(self) -> None:
        with self.assertRaises(ValueError):
            advance(date(2025, 1, 1), "biweekly", 1)
        with self.assertRaises(ValueError):
            advance(date(2025, 1, 1), "weekly", 0)


class RecurringProjectionTests(unittest.TestCase):
    def test_projects_occurrences_inside_window(self) -> None:
        rule = monthly_rule(start_date=date(2025, 1, 10), end_date=date(2025, 4, 1), category_id=8)

        projections = project_rule(rule, date(2025, 2, 1), date(2025, 4, 30))

        expected = [
            ProjectedEntry(
                date=date(2025, 2, 10),
                amount=Decimal("-50"),
                account_id=3,
                transaction_type="expense",
                category_id=8,
            ),
            ProjectedEntry(
                date=date(2025, 3, 10),
                amount=Decimal("-50"),
                account_id=3,
                transaction_type="expense",
                category_id=8,
            ),
        ]
        self.assertEqual(projections, expected)

    def test_income_projection_is_positive_and_sorted(self) -> None:
        salary = RecurringRule(
            amount=Decimal("2000"),
            start_date=date(2025, 1, 28),
            account_id=1,
            kind="income",
        )
        rent = monthly_rule(start_date=date(2025, 1, 1), amount=Decimal("900"))

        projections = project_rules([salary, rent], date(2025, 2, 1), date(2025, 2, 28))

        self.assertEqual(
            [(entry.date, entry.amount) for entry in projections],
            [(date(2025, 2, 1), Decimal("-900")), (date(2025, 2, 28), Decimal("2000"))],
        )

    def test_inactive_rule_projects_nothing(self) -> None:
        rule = monthly_rule(is_active=False)

        self.assertEqual(project_rule(rule, date(2025, 1, 1), date(2025, 12, 31)), [])

    def test_invalid_window_raises(self) -> None:
        with self.assertRaises(ValueError):
            project_rule(monthly_rule(), date(2025, 3, 1), date(2025, 2, 1))


if __name__ == "__main__":
    unittest.main()
