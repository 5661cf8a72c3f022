import unittest
from datetime import date
from decimal import Decimal

from pocketledger.budget_service import budget_summary, create_budget, update_budget
from pocketledger.errors import CategoryKindMismatch, Conflict, NotFound, ValidationError
from pocketledger.goal_service import create_goal, list_goals, update_goal
from pocketledger.schemas import BudgetPayload, GoalPayload, TransactionPayload
from pocketledger.tests.support import insert_account, insert_category, insert_user, make_engine
from pocketledger.transaction_service import create_transaction

TODAY = date(2025, 3, 20)


class BudgetServiceTests(unittest.TestCase):
    def setUp(self) -> None:
        self.engine = make_engine()
        with self.engine.begin() as conn:
            self.user_id = insert_user(conn)
            self.account = insert_account(conn, self.user_id, opening_balance="1000")
            self.groceries = insert_category(conn, self.user_id, "Groceries", "expense")
            self.salary = insert_category(conn, self.user_id, "Salary", "income")
            for day, amount in ((date(2025, 3, 2), "100"), (date(2025, 3, 30), "70"), (date(2025, 4, 1), "50")):
                create_transaction(
                    conn,
                    self.user_id,
                    TransactionPayload(
                        date=day,
                        type="expense",
                        amount=Decimal(amount),
                        account_id=self.account,
                        category_id=self.groceries,
                    ),
                )

    def create(self, category_id: int, month: str = "2025-03", budgeted: str = "200") -> dict:
        with self.engine.begin() as conn:
            return create_budget(
                conn,
                self.user_id,
                BudgetPayload(category_id=category_id, month=month, budgeted=Decimal(budgeted)),
            )

    def test_budget_reports_spending(self) -> None:
        budget = self.create(self.groceries)

        self.assertEqual(budget["category_name"], "Groceries")
        self.assertEqual(budget["spent"], Decimal("170"))
        self.assertEqual(budget["remaining"], Decimal("30"))
        self.assertEqual(budget["percentage"], Decimal("85.00"))
        self.assertEqual(budget["status"], "warning")

    def test_only_expense_categories_and_one_per_month(self) -> None:
        with self.assertRaises(CategoryKindMismatch):
            self.create(self.salary)

        self.create(self.groceries)
        with self.assertRaises(Conflict):
            self.create(self.groceries, budgeted="300")

    def test_moving_month_reevaluates(self) -> None:
        budget = self.create(self.groceries)
        self.create(self.groceries, month="2025-05")

        with self.engine.begin() as conn:
            moved = update_budget(conn, self.user_id, budget["id"], {"month": "2025-04"})
        self.assertEqual(moved["spent"], Decimal("50"))
        self.assertEqual(moved["status"], "good")

        with self.assertRaises(Conflict):
            with self.engine.begin() as conn:
                update_budget(conn, self.user_id, budget["id"], {"month": "2025-05"})

    def test_summary_totals(self) -> None:
        self.create(self.groceries)

        with self.engine.begin() as conn:
            result = budget_summary(conn, self.user_id, "2025-03")

        summary = result["summary"]
        self.assertEqual(summary["total_budgeted"], Decimal("200"))
        self.assertEqual(summary["total_spent"], Decimal("170"))
        self.assertEqual(summary["overall_percentage"], Decimal("85.00"))
        self.assertEqual(summary["warning_count"], 1)
        self.assertEqual(len(result["budgets"]), 1)


class GoalServiceTests(unittest.TestCase):
    def setUp(self) -> None:
        self.engine = make_engine()
        with self.engine.begin() as conn:
            self.user_id = insert_user(conn)
            self.account = insert_account(conn, self.user_id)

    def create(self, **values) -> dict:
        fields = dict(name="Emergency fund", target_amount=Decimal("1000"))
        fields.update(values)
        with self.engine.begin() as conn:
            return create_goal(conn, self.user_id, GoalPayload(**fields), TODAY)

    def test_linked_account_must_exist(self) -> None:
        with self.assertRaises(NotFound):
            self.create(linked_account_id=999)

        goal = self.create(linked_account_id=self.account, current_amount=Decimal("400"))
        self.assertEqual(goal["progress_percentage"], Decimal("40.00"))

    def test_update_keeps_current_within_target(self) -> None:
        goal = self.create(current_amount=Decimal("400"))

        with self.assertRaises(ValidationError):
            with self.engine.begin() as conn:
                update_goal(conn, self.user_id, goal["id"], {"target_amount": Decimal("300")}, TODAY)

        with self.engine.begin() as conn:
            done = update_goal(conn, self.user_id, goal["id"], {"current_amount": Decimal("1000")}, TODAY)
        self.assertEqual(done["status"], "completed")

    def test_list_filters_by_status(self) -> None:
        self.create(name="Holiday", target_date=date(2025, 1, 1))
        self.create(name="Car", target_date=date(2026, 1, 1))

        with self.engine.begin() as conn:
            overdue = list_goals(conn, self.user_id, TODAY, status="overdue")

        self.assertEqual([goal["name"] for goal in overdue], ["Holiday"])
        with self.assertRaises(ValidationError):
            with self.engine.begin() as conn:
                list_goals(conn, self.user_id, TODAY, status="paused")


if __name__ == "__main__":
    unittest.main()
