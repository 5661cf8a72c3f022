import unittest
from datetime import date
from decimal import Decimal

from pocketledger.currency_conversion import RateProvider, RateProviderUnavailable, StaticRateProvider
from pocketledger.errors import NotFound, ValidationError
from pocketledger.fx_service import (
    convert_for_user,
    delete_snapshot_month,
    get_snapshot,
    list_snapshot_months,
    save_snapshot,
    snapshot_history,
    sum_converted_amounts,
)
from pocketledger.snapshot_job import is_last_day_of_month, run_monthly_snapshot
from pocketledger.tests.support import insert_account, insert_user, make_engine

TODAY = date(2025, 3, 31)


class UnavailableProvider(RateProvider):
    def get_rate(self, currency: str, date=None) -> Decimal:
        raise RateProviderUnavailable("Down")


class RateSnapshotStorageTests(unittest.TestCase):
    def setUp(self) -> None:
        self.engine = make_engine()
        with self.engine.begin() as conn:
            self.user_id = insert_user(conn)

    def save(self, month: date, rates: dict) -> dict:
        with self.engine.begin() as conn:
            return save_snapshot(conn, self.user_id, month, "EUR", rates, TODAY)

    def test_saving_twice_creates_versions(self) -> None:
        first = self.save(date(2025, 1, 1), {"USD": Decimal("1.10")})
        second = self.save(date(2025, 1, 31), {"USD": Decimal("1.25")})

        self.assertEqual(first["version"], 1)
        self.assertEqual(second["version"], 2)
        self.assertEqual(second["month"], date(2025, 1, 31))
        self.assertEqual(second["rates"], {"USD": Decimal("1.25"), "EUR": Decimal("1")})
        with self.engine.begin() as conn:
            history = snapshot_history(conn, self.user_id, date(2025, 1, 1))
            months = list_snapshot_months(conn, self.user_id)
        self.assertEqual([row["version"] for row in history], [2, 1])
        self.assertEqual(history[1]["rates"]["USD"], Decimal("1.10"))
        self.assertEqual(months, [{"month": date(2025, 1, 31), "latest_version": 2}])

    def test_get_falls_back_to_earlier_month(self) -> None:
        self.save(date(2025, 1, 1), {"USD": Decimal("1.10")})

        with self.engine.begin() as conn:
            exact = get_snapshot(conn, self.user_id, date(2025, 1, 1))
            earlier = get_snapshot(conn, self.user_id, date(2025, 3, 1))

        self.assertFalse(exact["is_fallback"])
        self.assertTrue(earlier["is_fallback"])
        self.assertEqual(earlier["month"], date(2025, 1, 31))

        with self.assertRaises(NotFound):
            with self.engine.begin() as conn:
                get_snapshot(conn, self.user_id, date(2024, 12, 1))

    def test_future_month_is_rejected(self) -> None:
        with self.assertRaises(ValidationError):
            self.save(date(2025, 4, 1), {"USD": Decimal("1.10")})

    def test_non_positive_rate_is_rejected(self) -> None:
        with self.assertRaises(ValueError):
            self.save(date(2025, 1, 1), {"USD": Decimal("0")})

    def test_delete_removes_every_version(self) -> None:
        self.save(date(2025, 1, 1), {"USD": Decimal("1.10")})
        self.save(date(2025, 1, 1), {"USD": Decimal("1.20")})

        with self.engine.begin() as conn:
            deleted = delete_snapshot_month(conn, self.user_id, date(2025, 1, 1))
        self.assertEqual(deleted, 2)

        with self.assertRaises(NotFound):
            with self.engine.begin() as conn:
                delete_snapshot_month(conn, self.user_id, date(2025, 1, 1))

    def test_convert_uses_stored_rates(self) -> None:
        self.save(date(2025, 1, 1), {"USD": Decimal("1.25")})
        fallback = StaticRateProvider(rates={"EUR": Decimal("1"), "USD": Decimal("2")})

        with self.engine.begin() as conn:
            result = convert_for_user(
                conn,
                self.user_id,
                Decimal("100"),
                "usd",
                "EUR",
                as_of=date(2025, 2, 14),
                fallback=fallback,
            )

        self.assertEqual(result["rate"], Decimal("0.8"))
        self.assertEqual(result["converted_amount"], Decimal("80"))
        self.assertEqual(result["from_currency"], "USD")

    def test_convert_without_any_rate_is_not_found(self) -> None:
        with self.assertRaises(NotFound):
            with self.engine.begin() as conn:
                convert_for_user(
                    conn,
                    self.user_id,
                    Decimal("10"),
                    "USD",
                    "EUR",
                    as_of=date(2025, 2, 14),
                    fallback=UnavailableProvider(),
                )

    def test_sum_keeps_unconvertible_amounts(self) -> None:
        provider = StaticRateProvider(rates={"EUR": Decimal("1"), "USD": Decimal("2")})

        total = sum_converted_amounts(
            {"EUR": Decimal("10"), "USD": Decimal("20"), "XYZ": Decimal("5")},
            "EUR",
            provider,
        )

        self.assertEqual(total, Decimal("25"))


class MonthlySnapshotJobTests(unittest.TestCase):
    def setUp(self) -> None:
        self.engine = make_engine()
        with self.engine.begin() as conn:
            self.saver = insert_user(conn, email="saver@example.com")
            insert_account(conn, self.saver, "Checking")
            insert_account(conn, self.saver, "Travel", currency="USD")
            self.idle = insert_user(conn, email="idle@example.com")
            self.broken = insert_user(conn, email="broken@example.com")
            insert_account(conn, self.broken, "Odd", currency="XYZ")

    def test_records_rates_per_user(self) -> None:
        result = run_monthly_snapshot(self.engine, StaticRateProvider(), TODAY)

        self.assertEqual(result["month"], "2025-03")
        self.assertEqual(result["success_count"], 1)
        self.assertEqual(result["skipped_count"], 1)
        self.assertEqual(result["failed_count"], 1)
        self.assertEqual(result["errors"][0]["user_id"], self.broken)

        with self.engine.begin() as conn:
            saved = get_snapshot(conn, self.saver, TODAY)
        self.assertEqual(saved["source"], "scheduled")
        self.assertEqual(saved["rates"], {"EUR": Decimal("1"), "USD": Decimal("1.09")})

    def test_second_run_adds_a_version(self) -> None:
        run_monthly_snapshot(self.engine, StaticRateProvider(), TODAY)
        run_monthly_snapshot(self.engine, StaticRateProvider(), TODAY)

        with self.engine.begin() as conn:
            history = snapshot_history(conn, self.saver, TODAY)
        self.assertEqual([row["version"] for row in history], [2, 1])

    def test_last_day_of_month(self) -> None:
        self.assertTrue(is_last_day_of_month(date(2024, 2, 29)))
        self.assertFalse(is_last_day_of_month(date(2025, 2, 27)))


if __name__ == "__main__":
    unittest.main()
