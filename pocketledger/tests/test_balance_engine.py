import unittest
from decimal import Decimal

from pocketledger.balance_engine import (
    EntryState,
    effective_delta,
    entry_effects,
    normalize_amount,
    reversed_effects,
    touched_accounts,
)


class BalanceEngineTests(unittest.TestCase):
    def test_debt_accounts_invert_the_delta(self) -> None:
        self.assertEqual(effective_delta("credit_card", Decimal("40")), Decimal("-40"))
        self.assertEqual(effective_delta("loan", Decimal("-25")), Decimal("25"))
        self.assertEqual(effective_delta("savings", Decimal("40")), Decimal("40"))

    def test_normalize_amount_signs_by_kind(self) -> None:
        self.assertEqual(normalize_amount("expense", Decimal("12.50")), Decimal("-12.50"))
        self.assertEqual(normalize_amount("expense", Decimal("-12.50")), Decimal("-12.50"))
        self.assertEqual(normalize_amount("income", Decimal("-8")), Decimal("8"))
        self.assertEqual(normalize_amount("transfer", Decimal("-30")), Decimal("30"))

    def test_transfer_moves_money_between_accounts(self) -> None:
        entry = EntryState(
            kind="transfer",
            amount=Decimal("30"),
            from_account_id=1,
            to_account_id=2,
        )

        self.assertEqual(
            entry_effects(entry),
            [(1, Decimal("-30")), (2, Decimal("30"))],
        )

    def test_income_and_expense_touch_one_account(self) -> None:
        expense = EntryState(kind="expense", amount=Decimal("15"), account_id=4)

        self.assertEqual(entry_effects(expense), [(4, Decimal("-15"))])
        self.assertEqual(reversed_effects(entry_effects(expense)), [(4, Decimal("15"))])

    def test_missing_accounts_raise(self) -> None:
        with self.assertRaises(ValueError):
            entry_effects(EntryState(kind="transfer", amount=Decimal("5"), from_account_id=1))
        with self.assertRaises(ValueError):
            entry_effects(EntryState(kind="income", amount=Decimal("5")))

    def test_touched_accounts_are_sorted_and_unique(self) -> None:
        old = EntryState(kind="transfer", amount=Decimal("5"), from_account_id=9, to_account_id=3)
        new = EntryState(kind="expense", amount=Decimal("5"), account_id=3)

        self.assertEqual(touched_accounts(old, new), [3, 9])


if __name__ == "__main__":
    unittest.main()
