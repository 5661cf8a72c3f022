from __future__ import annotations

import re
import datetime
from decimal import Decimal
from typing import Any

from pydantic import BaseModel, Field

from pocketledger.balance_engine import ACCOUNT_TYPES, ENTRY_KINDS
from pocketledger.currency_conversion import normalize_currency
from pocketledger.errors import InvalidFrequency, ValidationError

MONTH_PATTERN = re.compile(r"^\d{4}-(0[1-9]|1[0-2])$")
PASSWORD_PATTERN = re.compile(r"^(?=.*[a-z])(?=.*[A-Z])(?=.*\d)")
RECURRING_FREQUENCIES = {"daily", "weekly", "monthly", "yearly"}
CATEGORY_TYPES = {"income", "expense"}


class AccountType:
    values = ACCOUNT_TYPES

    @classmethod
    def validate(cls, value: str) -> str:
        normalized = value.strip().lower()
        if normalized not in cls.values:
            raise ValidationError(
                f"Account type must be one of: {', '.join(sorted(cls.values))}."
            )
        return normalized


class TransactionType:
    values = ENTRY_KINDS

    @classmethod
    def validate(cls, value: str) -> str:
        normalized = value.strip().lower()
        if normalized not in cls.values:
            raise ValidationError("Invalid transaction type. Must be income, expense, or transfer.")
        return normalized


class CategoryType:
    values = CATEGORY_TYPES

    @classmethod
    def validate(cls, value: str) -> str:
        normalized = value.strip().lower()
        if normalized not in cls.values:
            raise ValidationError("Category type must be income or expense.")
        return normalized


class RecurringFrequency:
    values = RECURRING_FREQUENCIES

    @classmethod
    def validate(cls, value: str) -> str:
        normalized = value.strip().lower()
        if normalized not in cls.values:
            raise InvalidFrequency(
                "Invalid frequency. Must be one of: daily, weekly, monthly, yearly."
            )
        return normalized


def validate_currency(value: str) -> str:
    try:
        return normalize_currency(value)
    except ValueError as exc:
        raise ValidationError(str(exc)) from exc


def validate_month(value: str) -> str:
    normalized = value.strip()
    if not MONTH_PATTERN.match(normalized):
        raise ValidationError("Month must be in YYYY-MM format.")
    return normalized


def _clean_text(value: str | None) -> str | None:
    if value is None:
        return None
    cleaned = value.strip()
    return cleaned or None


class RegisterPayload(BaseModel):
    email: str
    password: str
    name: str | None = None
    base_currency: str | None = None
    secondary_currencies: list[str] = Field(default_factory=list)

    @classmethod
    def validate_payload(cls, payload: "RegisterPayload") -> "RegisterPayload":
        payload.email = payload.email.strip().lower()
        if "@" not in payload.email or payload.email.startswith("@"):
            raise ValidationError("Email must be a valid email address.")
        if len(payload.password) < 8:
            raise ValidationError("Password must be at least 8 characters.")
        if not PASSWORD_PATTERN.match(payload.password):
            raise ValidationError(
                "Password must contain at least one uppercase letter, one lowercase letter, and one number."
            )
        payload.name = _clean_text(payload.name) or payload.email.split("@")[0]
        if payload.base_currency is not None:
            payload.base_currency = validate_currency(payload.base_currency)
        payload.secondary_currencies = sorted(
            {validate_currency(code) for code in payload.secondary_currencies}
        )
        return payload


class LoginPayload(BaseModel):
    email: str
    password: str


class RefreshPayload(BaseModel):
    refresh_token: str


class UserSettingsPayload(BaseModel):
    name: str | None = None
    base_currency: str | None = None
    secondary_currencies: list[str] | None = None

    @classmethod
    def validate_payload(cls, payload: "UserSettingsPayload") -> "UserSettingsPayload":
        if payload.name is not None:
            payload.name = _clean_text(payload.name)
            if not payload.name:
                raise ValidationError("Name cannot be empty.")
        if payload.base_currency is not None:
            payload.base_currency = validate_currency(payload.base_currency)
        if payload.secondary_currencies is not None:
            payload.secondary_currencies = sorted(
                {validate_currency(code) for code in payload.secondary_currencies}
            )
        return payload


class AccountPayload(BaseModel):
    name: str
    type: str
    currency: str
    institution: str | None = None
    opening_balance: Decimal = Decimal("0")
    interest_rate: Decimal | None = None
    credit_limit: Decimal | None = None
    is_active: bool = True

    @classmethod
    def validate_payload(cls, payload: "AccountPayload") -> "AccountPayload":
        payload.name = payload.name.strip()
        if not payload.name:
            raise ValidationError("Account name is required.")
        if len(payload.name) > 255:
            raise ValidationError("Account name must be at most 255 characters.")
        payload.type = AccountType.validate(payload.type)
        payload.currency = validate_currency(payload.currency)
        payload.institution = _clean_text(payload.institution)
        if payload.interest_rate is not None and not (0 <= payload.interest_rate <= 100):
            raise ValidationError("Interest rate must be between 0 and 100.")
        if payload.credit_limit is not None and payload.credit_limit < 0:
            raise ValidationError("Credit limit must be at least 0.")
        return payload


class AccountUpdatePayload(BaseModel):
    name: str | None = None
    type: str | None = None
    currency: str | None = None
    institution: str | None = None
    opening_balance: Decimal | None = None
    interest_rate: Decimal | None = None
    credit_limit: Decimal | None = None
    is_active: bool | None = None

    @classmethod
    def validate_payload(cls, payload: "AccountUpdatePayload") -> dict[str, Any]:
        changes = payload.model_dump(exclude_unset=True)
        if not changes:
            raise ValidationError("At least one field must be provided for update.")
        if "name" in changes:
            changes["name"] = (changes["name"] or "").strip()
            if not changes["name"]:
                raise ValidationError("Account name cannot be empty.")
        if changes.get("type") is not None:
            changes["type"] = AccountType.validate(changes["type"])
        if changes.get("currency") is not None:
            changes["currency"] = validate_currency(changes["currency"])
        if "institution" in changes:
            changes["institution"] = _clean_text(changes["institution"])
        rate = changes.get("interest_rate")
        if rate is not None and not (0 <= rate <= 100):
            raise ValidationError("Interest rate must be between 0 and 100.")
        limit = changes.get("credit_limit")
        if limit is not None and limit < 0:
            raise ValidationError("Credit limit must be at least 0.")
        for required in ("type", "currency", "opening_balance", "is_active"):
            if required in changes and changes[required] is None:
                raise ValidationError(f"{required} cannot be null.")
        return changes


class CategoryPayload(BaseModel):
    name: str
    type: str
    parent_id: int | None = None
    icon: str | None = None

    @classmethod
    def validate_payload(cls, payload: "CategoryPayload") -> "CategoryPayload":
        payload.name = payload.name.strip()
        if not payload.name:
            raise ValidationError("Category name is required.")
        payload.type = CategoryType.validate(payload.type)
        payload.icon = _clean_text(payload.icon)
        return payload


class CategoryUpdatePayload(BaseModel):
    name: str | None = None
    type: str | None = None
    parent_id: int | None = None
    icon: str | None = None

    @classmethod
    def validate_payload(cls, payload: "CategoryUpdatePayload") -> dict[str, Any]:
        changes = payload.model_dump(exclude_unset=True)
        if not changes:
            raise ValidationError("At least one field must be provided for update.")
        if "name" in changes:
            changes["name"] = (changes["name"] or "").strip()
            if not changes["name"]:
                raise ValidationError("Category name cannot be empty.")
        if "type" in changes:
            if changes["type"] is None:
                raise ValidationError("type cannot be null.")
            changes["type"] = CategoryType.validate(changes["type"])
        if "icon" in changes:
            changes["icon"] = _clean_text(changes["icon"])
        return changes


class TransactionPayload(BaseModel):
    date: datetime.date
    type: str
    amount: Decimal
    account_id: int | None = None
    from_account_id: int | None = None
    to_account_id: int | None = None
    payee: str | None = None
    category_id: int | None = None
    currency: str | None = None
    memo: str | None = None

    @classmethod
    def validate_payload(cls, payload: "TransactionPayload") -> "TransactionPayload":
        payload.type = TransactionType.validate(payload.type)
        if payload.amount == 0:
            raise ValidationError("Amount must be non-zero.")
        if payload.currency is not None:
            payload.currency = validate_currency(payload.currency)
        payload.payee = _clean_text(payload.payee)
        payload.memo = _clean_text(payload.memo)
        if payload.type == "transfer":
            if payload.from_account_id is None or payload.to_account_id is None:
                raise ValidationError(
                    "Transfer transactions require both from_account_id and to_account_id."
                )
            if payload.from_account_id == payload.to_account_id:
                raise ValidationError("Cannot transfer to the same account.")
        elif payload.account_id is None:
            raise ValidationError("account_id is required for income/expense transactions.")
        return payload


class TransactionUpdatePayload(BaseModel):
    date: datetime.date | None = None
    type: str | None = None
    amount: Decimal | None = None
    account_id: int | None = None
    from_account_id: int | None = None
    to_account_id: int | None = None
    payee: str | None = None
    category_id: int | None = None
    currency: str | None = None
    memo: str | None = None

    @classmethod
    def validate_payload(cls, payload: "TransactionUpdatePayload") -> dict[str, Any]:
        changes = payload.model_dump(exclude_unset=True)
        if changes.get("type") is not None:
            changes["type"] = TransactionType.validate(changes["type"])
        if changes.get("currency") is not None:
            changes["currency"] = validate_currency(changes["currency"])
        if changes.get("amount") is not None and changes["amount"] == 0:
            raise ValidationError("Amount must be non-zero.")
        for field in ("payee", "memo"):
            if field in changes:
                changes[field] = _clean_text(changes[field])
        for required in ("date", "type", "amount"):
            if required in changes and changes[required] is None:
                raise ValidationError(f"{required} cannot be null.")
        return changes


class BulkImportPayload(BaseModel):
    transactions: list[dict[str, Any]]


class BudgetPayload(BaseModel):
    category_id: int
    month: str
    budgeted: Decimal

    @classmethod
    def validate_payload(cls, payload: "BudgetPayload") -> "BudgetPayload":
        payload.month = validate_month(payload.month)
        if payload.budgeted < 0:
            raise ValidationError("Budgeted amount must be at least 0.")
        return payload


class BudgetUpdatePayload(BaseModel):
    category_id: int | None = None
    month: str | None = None
    budgeted: Decimal | None = None

    @classmethod
    def validate_payload(cls, payload: "BudgetUpdatePayload") -> dict[str, Any]:
        changes = {
            key: value
            for key, value in payload.model_dump(exclude_unset=True).items()
            if value is not None
        }
        if not changes:
            raise ValidationError("At least one field must be provided for update.")
        if "month" in changes:
            changes["month"] = validate_month(changes["month"])
        if "budgeted" in changes and changes["budgeted"] < 0:
            raise ValidationError("Budgeted amount must be at least 0.")
        return changes


class GoalPayload(BaseModel):
    name: str
    target_amount: Decimal
    current_amount: Decimal = Decimal("0")
    target_date: datetime.date | None = None
    linked_account_id: int | None = None

    @classmethod
    def validate_payload(cls, payload: "GoalPayload") -> "GoalPayload":
        payload.name = payload.name.strip()
        if not payload.name:
            raise ValidationError("Goal name is required.")
        if payload.target_amount <= 0:
            raise ValidationError("Target amount must be greater than zero.")
        if payload.current_amount < 0:
            raise ValidationError("Current amount must be at least 0.")
        if payload.current_amount > payload.target_amount:
            raise ValidationError("Current amount cannot exceed target amount.")
        return payload


class GoalUpdatePayload(BaseModel):
    name: str | None = None
    target_amount: Decimal | None = None
    current_amount: Decimal | None = None
    target_date: datetime.date | None = None
    linked_account_id: int | None = None

    @classmethod
    def validate_payload(cls, payload: "GoalUpdatePayload") -> dict[str, Any]:
        changes = payload.model_dump(exclude_unset=True)
        if not changes:
            raise ValidationError("At least one field must be provided for update.")
        if "name" in changes:
            changes["name"] = (changes["name"] or "").strip()
            if not changes["name"]:
                raise ValidationError("Goal name cannot be empty.")
        for required in ("target_amount", "current_amount"):
            if required in changes and changes[required] is None:
                raise ValidationError(f"{required} cannot be null.")
        if changes.get("target_amount") is not None and changes["target_amount"] <= 0:
            raise ValidationError("Target amount must be greater than zero.")
        if changes.get("current_amount") is not None and changes["current_amount"] < 0:
            raise ValidationError("Current amount must be at least 0.")
        return changes


class RecurringPayload(BaseModel):
    name: str
    account_id: int
    type: str
    amount: Decimal
    frequency: str
    start_date: datetime.date
    interval: int = 1
    payee: str | None = None
    category_id: int | None = None
    currency: str | None = None
    end_date: datetime.date | None = None
    is_active: bool = True

    @classmethod
    def validate_payload(cls, payload: "RecurringPayload") -> "RecurringPayload":
        payload.name = payload.name.strip()
        if not payload.name:
            raise ValidationError("Recurring transaction name is required.")
        payload.type = CategoryType.validate(payload.type)
        if payload.amount <= 0:
            raise ValidationError("Amount must be greater than zero.")
        payload.frequency = RecurringFrequency.validate(payload.frequency)
        if payload.interval < 1:
            raise InvalidFrequency("Interval must be at least 1.")
        if payload.currency is not None:
            payload.currency = validate_currency(payload.currency)
        payload.payee = _clean_text(payload.payee)
        if payload.end_date is not None and payload.end_date <= payload.start_date:
            raise ValidationError("End date must be after start date.")
        return payload


class RecurringUpdatePayload(BaseModel):
    name: str | None = None
    account_id: int | None = None
    type: str | None = None
    amount: Decimal | None = None
    frequency: str | None = None
    interval: int | None = None
    start_date: datetime.date | None = None
    end_date: datetime.date | None = None
    payee: str | None = None
    category_id: int | None = None
    currency: str | None = None
    is_active: bool | None = None

    @classmethod
    def validate_payload(cls, payload: "RecurringUpdatePayload") -> dict[str, Any]:
        changes = payload.model_dump(exclude_unset=True)
        if not changes:
            raise ValidationError("At least one field must be provided for update.")
        for required in ("name", "account_id", "type", "amount", "frequency", "interval", "start_date", "is_active"):
            if required in changes and changes[required] is None:
                raise ValidationError(f"{required} cannot be null.")
        if "name" in changes:
            changes["name"] = changes["name"].strip()
            if not changes["name"]:
                raise ValidationError("Recurring transaction name cannot be empty.")
        if "type" in changes:
            changes["type"] = CategoryType.validate(changes["type"])
        if "amount" in changes and changes["amount"] <= 0:
            raise ValidationError("Amount must be greater than zero.")
        if "frequency" in changes:
            changes["frequency"] = RecurringFrequency.validate(changes["frequency"])
        if "interval" in changes and changes["interval"] < 1:
            raise InvalidFrequency("Interval must be at least 1.")
        if changes.get("currency") is not None:
            changes["currency"] = validate_currency(changes["currency"])
        if "payee" in changes:
            changes["payee"] = _clean_text(changes["payee"])
        return changes


class RateSnapshotPayload(BaseModel):
    month: str
    base_currency: str
    rates: dict[str, Decimal]

    @classmethod
    def validate_payload(cls, payload: "RateSnapshotPayload") -> "RateSnapshotPayload":
        payload.month = validate_month(payload.month)
        payload.base_currency = validate_currency(payload.base_currency)
        if not payload.rates:
            raise ValidationError("Rates must contain at least one currency.")
        normalized: dict[str, Decimal] = {}
        for code, rate in payload.rates.items():
            if rate <= 0:
                raise ValidationError(f"Rate for {code} must be greater than zero.")
            normalized[validate_currency(code)] = rate
        normalized[payload.base_currency] = Decimal("1")
        payload.rates = normalized
        return payload
