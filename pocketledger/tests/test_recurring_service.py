import unittest
from datetime import date
from decimal import Decimal

from pocketledger.errors import CurrencyMismatch, InvalidState, ValidationError
from pocketledger.recurring_service import (
    create_rule,
    get_rule,
    list_rules,
    process_due_rules,
    process_rule,
    update_rule,
    upcoming,
)
from pocketledger.schemas import RecurringPayload
from pocketledger.tests.support import balance_of, insert_account, insert_user, make_engine

TODAY = date(2025, 2, 20)


class RecurringServiceTests(unittest.TestCase):
    def setUp(self) -> None:
        self.engine = make_engine()
        with self.engine.begin() as conn:
            self.user_id = insert_user(conn)
            self.checking = insert_account(conn, self.user_id, "Checking", opening_balance="1000")

    def create(self, **values) -> dict:
        fields = dict(
            name="Rent",
            account_id=self.checking,
            type="expense",
            amount=Decimal("400"),
            frequency="monthly",
            start_date=date(2025, 1, 15),
        )
        fields.update(values)
        with self.engine.begin() as conn:
            return create_rule(conn, self.user_id, RecurringPayload(**fields), TODAY)

    def test_create_reports_status_and_currency(self) -> None:
        rule = self.create()

        self.assertEqual(rule["currency"], "EUR")
        self.assertEqual(rule["next_due_date"], date(2025, 2, 15))
        self.assertTrue(rule["is_due"])
        self.assertEqual(rule["status"], "due")

    def test_currency_must_match_account(self) -> None:
        with self.assertRaises(CurrencyMismatch):
            self.create(currency="USD")

    def test_process_creates_entry_and_advances(self) -> None:
        rule = self.create()

        with self.engine.begin() as conn:
            result = process_rule(conn, self.user_id, rule["id"], TODAY)

        created = result["created_transaction"]
        self.assertEqual(created["amount"], Decimal("-400"))
        self.assertEqual(created["date"], TODAY)
        self.assertEqual(created["payee"], "Recurring: Rent")
        self.assertEqual(created["memo"], "Recurring: Rent")
        self.assertEqual(result["rule"]["last_processed"], TODAY)
        self.assertEqual(result["rule"]["next_due_date"], date(2025, 3, 20))
        with self.engine.begin() as conn:
            self.assertEqual(balance_of(conn, self.checking), Decimal("600"))

    def test_inactive_rule_cannot_be_processed(self) -> None:
        rule = self.create(is_active=False)

        with self.assertRaises(InvalidState):
            with self.engine.begin() as conn:
                process_rule(conn, self.user_id, rule["id"], TODAY)

        with self.engine.begin() as conn:
            self.assertEqual(balance_of(conn, self.checking), Decimal("1000"))

    def test_ended_rule_cannot_be_processed(self) -> None:
        rule = self.create(end_date=date(2025, 2, 1))

        with self.assertRaises(InvalidState):
            with self.engine.begin() as conn:
                process_rule(conn, self.user_id, rule["id"], TODAY)

    def test_process_due_handles_only_due_rules(self) -> None:
        self.create()
        self.create(name="Salary", type="income", amount=Decimal("2500"), start_date=date(2025, 2, 10))

        result = process_due_rules(self.engine, self.user_id, TODAY)

        self.assertEqual(result["processed_count"], 1)
        self.assertEqual(result["failed_count"], 0)
        self.assertEqual(result["results"][0]["rule"]["name"], "Rent")
        with self.engine.begin() as conn:
            self.assertEqual(balance_of(conn, self.checking), Decimal("600"))

    def test_update_rechecks_end_date(self) -> None:
        rule = self.create()

        with self.assertRaises(ValidationError):
            with self.engine.begin() as conn:
                update_rule(conn, self.user_id, rule["id"], {"end_date": date(2025, 1, 1)}, TODAY)

        with self.engine.begin() as conn:
            updated = update_rule(conn, self.user_id, rule["id"], {"interval": 2}, TODAY)
            fetched = get_rule(conn, self.user_id, rule["id"], TODAY)
        self.assertEqual(updated["next_due_date"], date(2025, 3, 15))
        self.assertEqual(fetched["interval"], 2)

    def test_list_filters_and_upcoming(self) -> None:
        self.create()
        self.create(name="Gym", frequency="weekly", amount=Decimal("10"), is_active=False)

        with self.engine.begin() as conn:
            active = list_rules(conn, self.user_id, TODAY, is_active=True)
            projected = upcoming(conn, self.user_id, date(2025, 3, 1), date(2025, 4, 30))

        self.assertEqual([rule["name"] for rule in active], ["Rent"])
        self.assertEqual([item["date"] for item in projected], [date(2025, 3, 15), date(2025, 4, 15)])


if __name__ == "__main__":
    unittest.main()
