import dataclasses
import unittest
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from unittest import mock

import jwt
from fastapi.testclient import TestClient

from pocketledger import main
from pocketledger.config import get_settings
from pocketledger.currency_conversion import StaticRateProvider
from pocketledger.tests.support import make_engine

PASSWORD = "Sup3rSecret"


class ApiTestCase(unittest.TestCase):
    def setUp(self) -> None:
        engine_patch = mock.patch.object(main, "engine", make_engine())
        engine_patch.start()
        self.addCleanup(engine_patch.stop)
        self.client = TestClient(main.app)

    def register(self, email: str = "ada@example.com", **extra) -> dict:
        response = self.client.post(
            "/auth/register",
            json={"email": email, "password": PASSWORD, **extra},
        )
        self.assertEqual(response.status_code, 201, response.text)
        return response.json()["data"]

    def auth_headers(self, session: dict) -> dict:
        return {"Authorization": f"Bearer {session['access_token']}"}


class AuthApiTests(ApiTestCase):
    def test_register_and_login(self) -> None:
        session = self.register(email="Ada@Example.com", secondary_currencies=["usd"])

        self.assertEqual(session["user"]["email"], "ada@example.com")
        self.assertEqual(session["user"]["name"], "ada")
        self.assertEqual(session["user"]["secondary_currencies"], ["USD"])
        self.assertEqual(session["token_type"], "bearer")

        response = self.client.post("/auth/login", json={"email": "ada@example.com", "password": PASSWORD})
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["status"], "success")
        self.assertEqual(response.json()["message"], "Login successful")

        me = self.client.get("/auth/me", headers=self.auth_headers(response.json()["data"]))
        self.assertEqual(me.json()["data"]["id"], session["user"]["id"])

    def test_duplicate_email_conflicts(self) -> None:
        self.register()

        response = self.client.post("/auth/register", json={"email": "ada@example.com", "password": PASSWORD})

        self.assertEqual(response.status_code, 409)
        self.assertEqual(
            response.json(),
            {"status": "error", "error": "User with this email already exists."},
        )

    def test_weak_password_is_rejected(self) -> None:
        response = self.client.post("/auth/register", json={"email": "bob@example.com", "password": "lowercase1"})

        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["status"], "error")
        self.assertIn("uppercase", response.json()["error"])

    def test_malformed_body_lists_fields(self) -> None:
        response = self.client.post("/auth/register", json={"password": PASSWORD})

        body = response.json()
        self.assertEqual(response.status_code, 400)
        self.assertEqual(body["error"], "Validation failed")
        self.assertIn("body.email", [item["field"] for item in body["details"]])

    def test_wrong_password_is_unauthorized(self) -> None:
        self.register()

        response = self.client.post("/auth/login", json={"email": "ada@example.com", "password": "Wrong1234"})

        self.assertEqual(response.status_code, 401)
        self.assertEqual(response.json()["error"], "Invalid email or password.")

    def test_token_failures(self) -> None:
        session = self.register()
        settings = get_settings()
        expired = jwt.encode(
            {
                "sub": str(session["user"]["id"]),
                "type": "access",
                "exp": datetime.now(timezone.utc) - timedelta(minutes=1),
            },
            settings.jwt_secret,
            algorithm=settings.jwt_algorithm,
        )

        cases = [
            ({}, "No token provided"),
            ({"Authorization": "Bearer not-a-token"}, "Invalid token"),
            ({"Authorization": f"Bearer {expired}"}, "Token expired"),
            ({"Authorization": f"Bearer {session['refresh_token']}"}, "Invalid token"),
        ]
        for headers, message in cases:
            with self.subTest(message=message):
                response = self.client.get("/auth/me", headers=headers)
                self.assertEqual(response.status_code, 401)
                self.assertEqual(response.json(), {"status": "error", "error": message})

    def test_refresh_issues_new_tokens(self) -> None:
        session = self.register()

        response = self.client.post("/auth/refresh", json={"refresh_token": session["refresh_token"]})
        self.assertEqual(response.status_code, 200)
        self.assertIn("access_token", response.json()["data"])

        rejected = self.client.post("/auth/refresh", json={"refresh_token": session["access_token"]})
        self.assertEqual(rejected.status_code, 401)


class LedgerApiTests(ApiTestCase):
    def setUp(self) -> None:
        super().setUp()
        self.headers = self.auth_headers(self.register())

    def create_account(self, name: str, opening: float, **extra) -> int:
        response = self.client.post(
            "/accounts",
            json={"name": name, "type": "checking", "currency": "EUR", "opening_balance": opening, **extra},
            headers=self.headers,
        )
        self.assertEqual(response.status_code, 201, response.text)
        return response.json()["data"]["id"]

    def balance(self, account_id: int) -> Decimal:
        response = self.client.get(f"/accounts/{account_id}", headers=self.headers)
        amount = response.json()["data"]["current_balance"]
        self.assertIsInstance(amount, str)
        return Decimal(amount)

    def test_transfer_round_trip(self) -> None:
        source = self.create_account("Checking", 100)
        target = self.create_account("Savings", 50)

        created = self.client.post(
            "/transactions",
            json={
                "date": "2025-03-01",
                "type": "transfer",
                "amount": 30,
                "from_account_id": source,
                "to_account_id": target,
            },
            headers=self.headers,
        )
        self.assertEqual(created.status_code, 201, created.text)
        self.assertEqual(self.balance(source), Decimal("70"))
        self.assertEqual(self.balance(target), Decimal("80"))

        transaction_id = created.json()["data"]["id"]
        deleted = self.client.delete(f"/transactions/{transaction_id}", headers=self.headers)
        self.assertEqual(deleted.json(), {"status": "success", "message": "Transaction deleted successfully", "data": None})
        self.assertEqual(self.balance(source), Decimal("100"))

        again = self.client.delete(f"/transactions/{transaction_id}", headers=self.headers)
        self.assertEqual(again.status_code, 404)

    def test_same_account_transfer_is_bad_request(self) -> None:
        account = self.create_account("Checking", 100)

        response = self.client.post(
            "/transactions",
            json={
                "date": "2025-03-01",
                "type": "transfer",
                "amount": 30,
                "from_account_id": account,
                "to_account_id": account,
            },
            headers=self.headers,
        )

        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["error"], "Cannot transfer to the same account.")

    def test_missing_account_is_not_found(self) -> None:
        response = self.client.get("/accounts/999", headers=self.headers)

        self.assertEqual(response.status_code, 404)
        self.assertEqual(response.json(), {"status": "error", "error": "Account not found."})

    def test_disabled_currency_conflicts(self) -> None:
        response = self.client.post(
            "/accounts",
            json={"name": "Yen", "type": "checking", "currency": "JPY"},
            headers=self.headers,
        )

        self.assertEqual(response.status_code, 409)

    def test_bulk_import_reports_partial_failures(self) -> None:
        account = self.create_account("Checking", 100)

        response = self.client.post(
            "/transactions/bulk",
            json={
                "transactions": [
                    {"date": "2025-03-01", "type": "expense", "amount": 10, "account_id": account},
                    {"date": "2025-03-01", "type": "expense", "amount": 0, "account_id": account},
                ]
            },
            headers=self.headers,
        )

        body = response.json()
        self.assertEqual(response.status_code, 201)
        self.assertEqual(body["data"]["success_count"], 1)
        self.assertEqual(body["data"]["failed_count"], 1)
        self.assertEqual(body["data"]["errors"][0]["index"], 1)
        self.assertEqual(self.balance(account), Decimal("90"))

    def test_exchange_rate_versions(self) -> None:
        for rate in (1.1, 1.2):
            saved = self.client.post(
                "/exchange-rates",
                json={"month": "2025-01", "base_currency": "EUR", "rates": {"USD": rate}},
                headers=self.headers,
            )
            self.assertEqual(saved.status_code, 201, saved.text)

        latest = self.client.get("/exchange-rates/2025-02", headers=self.headers).json()
        history = self.client.get("/exchange-rates/2025-01/history", headers=self.headers).json()

        self.assertEqual(latest["data"]["version"], 2)
        self.assertTrue(latest["data"]["is_fallback"])
        self.assertEqual([item["version"] for item in history["data"]], [2, 1])

        bad = self.client.post(
            "/exchange-rates",
            json={"month": "2025-13", "base_currency": "EUR", "rates": {"USD": 1.1}},
            headers=self.headers,
        )
        self.assertEqual(bad.status_code, 400)


class CronApiTests(ApiTestCase):
    def test_requires_secret(self) -> None:
        response = self.client.post("/cron/monthly-snapshot", headers={"x-cron-secret": "guess"})

        self.assertEqual(response.status_code, 401)
        self.assertEqual(response.json()["status"], "error")

    def test_forced_run_records_snapshots(self) -> None:
        session = self.register()
        self.client.post(
            "/accounts",
            json={"name": "Checking", "type": "checking", "currency": "EUR"},
            headers=self.auth_headers(session),
        )
        settings = dataclasses.replace(main.settings, cron_secret="s3cret")

        with mock.patch.object(main, "settings", settings), mock.patch.object(
            main.fx_service, "FX_PROVIDER", StaticRateProvider()
        ):
            response = self.client.post(
                "/cron/monthly-snapshot",
                params={"force": "true"},
                headers={"x-cron-secret": "s3cret"},
            )

        self.assertEqual(response.status_code, 200, response.text)
        self.assertEqual(response.json()["data"]["success_count"], 1)


if __name__ == "__main__":
    unittest.main()
