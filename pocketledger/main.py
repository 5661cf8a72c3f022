import hmac
import logging
import traceback
from datetime import date, timedelta
from decimal import Decimal

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from pocketledger import (
    account_service,
    analytics,
    auth,
    budget_service,
    category_service,
    fx_service,
    goal_service,
    recurring_service,
    transaction_service,
)
from pocketledger.config import get_settings
from pocketledger.currency_conversion import parse_month
from pocketledger.database import engine, init_db as create_schema
from pocketledger.errors import LedgerError, Unauthorized
from pocketledger.logging_setup import setup_logging
from pocketledger.responses import error_body, success
from pocketledger.schemas import (
    AccountPayload,
    AccountUpdatePayload,
    BudgetPayload,
    BudgetUpdatePayload,
    BulkImportPayload,
    CategoryPayload,
    CategoryUpdatePayload,
    GoalPayload,
    GoalUpdatePayload,
    LoginPayload,
    RateSnapshotPayload,
    RecurringPayload,
    RecurringUpdatePayload,
    RefreshPayload,
    RegisterPayload,
    TransactionPayload,
    TransactionUpdatePayload,
    UserSettingsPayload,
    validate_currency,
    validate_month,
)
from pocketledger.snapshot_job import is_last_day_of_month, run_monthly_snapshot
from pocketledger.transaction_service import TransactionFilters

logger = logging.getLogger(__name__)

settings = get_settings()

app = FastAPI(title="pocketledger")

app.add_middleware(
    CORSMiddleware,
    allow_origins=[settings.frontend_origin],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.on_event("startup")
def init_db() -> None:
    setup_logging(settings.log_level)
    create_schema(engine)
    logger.info("Database schema ready (%s)", engine.url.get_backend_name())


@app.exception_handler(LedgerError)
def handle_ledger_error(request: Request, exc: LedgerError) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content=error_body(exc.message, exc.details))


@app.exception_handler(StarletteHTTPException)
def handle_http_error(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content=error_body(str(exc.detail)))


@app.exception_handler(RequestValidationError)
def handle_request_validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
    details = [
        {"field": ".".join(str(part) for part in error["loc"]), "message": error["msg"]}
        for error in exc.errors()
    ]
    return JSONResponse(status_code=400, content=error_body("Validation failed", details))


@app.exception_handler(ValueError)
def handle_value_error(request: Request, exc: ValueError) -> JSONResponse:
    return JSONResponse(status_code=400, content=error_body(str(exc)))


@app.exception_handler(Exception)
def handle_unexpected_error(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    details = None
    if not settings.is_production:
        details = traceback.format_exception(type(exc), exc, exc.__traceback__)
    return JSONResponse(status_code=500, content=error_body("Internal server error", details))


def validate(model, payload):
    try:
        return model.validate_payload(payload)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


@app.get("/health")
def health() -> dict:
    return {"status": "ok"}


@app.post("/auth/register", status_code=201)
def register(payload: RegisterPayload) -> dict:
    payload = validate(RegisterPayload, payload)
    with engine.begin() as conn:
        session = auth.register_user(
            conn,
            payload.email,
            payload.password,
            payload.name,
            payload.base_currency,
            payload.secondary_currencies,
        )
    return success(session, "User registered successfully")


@app.post("/auth/login")
def login(payload: LoginPayload) -> dict:
    with engine.begin() as conn:
        session = auth.authenticate(conn, payload.email, payload.password)
    return success(session, "Login successful")


@app.post("/auth/refresh")
def refresh(payload: RefreshPayload) -> dict:
    with engine.begin() as conn:
        tokens = auth.refresh_session(conn, payload.refresh_token)
    return success(tokens, "Token refreshed successfully")


@app.get("/auth/me")
def me(user_id: int = Depends(auth.get_current_user_id)) -> dict:
    with engine.begin() as conn:
        user = auth.serialize_user(auth.load_user(conn, user_id))
    return success(user, "User retrieved successfully")


@app.get("/users/me/settings")
def get_user_settings(user_id: int = Depends(auth.get_current_user_id)) -> dict:
    with engine.begin() as conn:
        user = auth.serialize_user(auth.load_user(conn, user_id))
    return success(user, "Settings retrieved successfully")


@app.put("/users/me/settings")
def update_user_settings(
    payload: UserSettingsPayload,
    user_id: int = Depends(auth.get_current_user_id),
) -> dict:
    payload = validate(UserSettingsPayload, payload)
    with engine.begin() as conn:
        user = auth.update_settings(conn, user_id, payload.model_dump(exclude_unset=True))
    return success(user, "Settings updated successfully")


@app.post("/accounts", status_code=201)
def create_account(payload: AccountPayload, user_id: int = Depends(auth.get_current_user_id)) -> dict:
    payload = validate(AccountPayload, payload)
    with engine.begin() as conn:
        account = account_service.create_account(conn, user_id, payload)
    return success(account, "Account created successfully")


@app.get("/accounts")
def list_accounts(
    type: str | None = Query(None),
    currency: str | None = Query(None),
    is_active: bool | None = Query(None),
    user_id: int = Depends(auth.get_current_user_id),
) -> dict:
    with engine.begin() as conn:
        rows = account_service.list_accounts(
            conn,
            user_id,
            type=type,
            currency=validate_currency(currency) if currency else None,
            is_active=is_active,
        )
    return success(rows, "Accounts retrieved successfully")


@app.get("/accounts/summary")
def get_account_summary(user_id: int = Depends(auth.get_current_user_id)) -> dict:
    with engine.begin() as conn:
        provider = fx_service.rate_provider_for_user(conn, user_id)
        summary = account_service.account_summary(conn, user_id, provider)
    return success(summary, "Account summary retrieved successfully")


@app.get("/accounts/{account_id}")
def get_account(account_id: int, user_id: int = Depends(auth.get_current_user_id)) -> dict:
    with engine.begin() as conn:
        account = account_service.get_account(conn, user_id, account_id)
    return success(account, "Account retrieved successfully")


@app.put("/accounts/{account_id}")
def update_account(
    account_id: int,
    payload: AccountUpdatePayload,
    user_id: int = Depends(auth.get_current_user_id),
) -> dict:
    changes = validate(AccountUpdatePayload, payload)
    with engine.begin() as conn:
        account = account_service.update_account(conn, user_id, account_id, changes)
    return success(account, "Account updated successfully")


@app.delete("/accounts/{account_id}")
def delete_account(account_id: int, user_id: int = Depends(auth.get_current_user_id)) -> dict:
    with engine.begin() as conn:
        account_service.delete_account(conn, user_id, account_id)
    return success(None, "Account deleted successfully")


@app.post("/categories", status_code=201)
def create_category(payload: CategoryPayload, user_id: int = Depends(auth.get_current_user_id)) -> dict:
    payload = validate(CategoryPayload, payload)
    with engine.begin() as conn:
        category = category_service.create_category(conn, user_id, payload)
    return success(category, "Category created successfully")


@app.get("/categories")
def list_categories(
    type: str | None = Query(None),
    parent_id: int | None = Query(None),
    top_level: bool = Query(False),
    flat: bool = Query(False),
    user_id: int = Depends(auth.get_current_user_id),
) -> dict:
    with engine.begin() as conn:
        rows = category_service.list_categories(
            conn,
            user_id,
            type=type,
            parent_id=parent_id,
            top_level_only=top_level,
            hierarchical=not flat,
        )
    return success(rows, "Categories retrieved successfully")


@app.get("/categories/{category_id}")
def get_category(category_id: int, user_id: int = Depends(auth.get_current_user_id)) -> dict:
    with engine.begin() as conn:
        category = category_service.get_category(conn, user_id, category_id)
    return success(category, "Category retrieved successfully")


@app.get("/categories/{category_id}/spending")
def get_category_spending(
    category_id: int,
    start_date: date | None = Query(None),
    end_date: date | None = Query(None),
    user_id: int = Depends(auth.get_current_user_id),
) -> dict:
    with engine.begin() as conn:
        spending = category_service.category_spending(conn, user_id, category_id, start_date, end_date)
    return success(spending, "Category spending retrieved successfully")


@app.put("/categories/{category_id}")
def update_category(
    category_id: int,
    payload: CategoryUpdatePayload,
    user_id: int = Depends(auth.get_current_user_id),
) -> dict:
    changes = validate(CategoryUpdatePayload, payload)
    with engine.begin() as conn:
        category = category_service.update_category(conn, user_id, category_id, changes)
    return success(category, "Category updated successfully")


@app.delete("/categories/{category_id}")
def delete_category(category_id: int, user_id: int = Depends(auth.get_current_user_id)) -> dict:
    with engine.begin() as conn:
        category_service.delete_category(conn, user_id, category_id)
    return success(None, "Category deleted successfully")


@app.post("/transactions", status_code=201)
def create_transaction(payload: TransactionPayload, user_id: int = Depends(auth.get_current_user_id)) -> dict:
    payload = validate(TransactionPayload, payload)
    with engine.begin() as conn:
        created = transaction_service.create_transaction(conn, user_id, payload)
    return success(created, "Transaction created successfully")


@app.get("/transactions")
def list_transactions(
    type: str | None = Query(None),
    account_id: int | None = Query(None),
    category_id: int | None = Query(None),
    start_date: date | None = Query(None),
    end_date: date | None = Query(None),
    min_amount: Decimal | None = Query(None),
    max_amount: Decimal | None = Query(None),
    search: str | None = Query(None),
    is_reconciled: bool | None = Query(None),
    page: int = Query(1),
    limit: int = Query(transaction_service.DEFAULT_PAGE_SIZE),
    user_id: int = Depends(auth.get_current_user_id),
) -> dict:
    filters = TransactionFilters(
        type=type,
        account_id=account_id,
        category_id=category_id,
        start_date=start_date,
        end_date=end_date,
        min_amount=min_amount,
        max_amount=max_amount,
        search=search,
        is_reconciled=is_reconciled,
        page=page,
        limit=limit,
    )
    with engine.begin() as conn:
        result = transaction_service.list_transactions(conn, user_id, filters)
    return success(result, "Transactions retrieved successfully")


@app.post("/transactions/bulk", status_code=201)
def bulk_import_transactions(
    payload: BulkImportPayload,
    user_id: int = Depends(auth.get_current_user_id),
) -> dict:
    result = transaction_service.bulk_import(engine, user_id, payload.transactions)
    return success(
        result,
        f"Bulk import completed: {result['success_count']} succeeded, {result['failed_count']} failed",
    )


@app.get("/transactions/{transaction_id}")
def get_transaction(transaction_id: int, user_id: int = Depends(auth.get_current_user_id)) -> dict:
    with engine.begin() as conn:
        transaction = transaction_service.get_transaction(conn, user_id, transaction_id)
    return success(transaction, "Transaction retrieved successfully")


@app.put("/transactions/{transaction_id}")
def update_transaction(
    transaction_id: int,
    payload: TransactionUpdatePayload,
    user_id: int = Depends(auth.get_current_user_id),
) -> dict:
    changes = validate(TransactionUpdatePayload, payload)
    with engine.begin() as conn:
        transaction = transaction_service.update_transaction(conn, user_id, transaction_id, changes)
    return success(transaction, "Transaction updated successfully")


@app.delete("/transactions/{transaction_id}")
def delete_transaction(transaction_id: int, user_id: int = Depends(auth.get_current_user_id)) -> dict:
    with engine.begin() as conn:
        transaction_service.delete_transaction(conn, user_id, transaction_id)
    return success(None, "Transaction deleted successfully")


@app.put("/transactions/{transaction_id}/reconcile")
def reconcile_transaction(transaction_id: int, user_id: int = Depends(auth.get_current_user_id)) -> dict:
    with engine.begin() as conn:
        transaction = transaction_service.toggle_reconciled(conn, user_id, transaction_id)
    state = "reconciled" if transaction["is_reconciled"] else "unreconciled"
    return success(transaction, f"Transaction marked as {state}")


@app.post("/recurring", status_code=201)
def create_recurring(payload: RecurringPayload, user_id: int = Depends(auth.get_current_user_id)) -> dict:
    payload = validate(RecurringPayload, payload)
    with engine.begin() as conn:
        rule = recurring_service.create_rule(conn, user_id, payload, date.today())
    return success(rule, "Recurring transaction created successfully")


@app.get("/recurring")
def list_recurring(
    is_active: bool | None = Query(None),
    type: str | None = Query(None),
    account_id: int | None = Query(None),
    frequency: str | None = Query(None),
    user_id: int = Depends(auth.get_current_user_id),
) -> dict:
    with engine.begin() as conn:
        rules = recurring_service.list_rules(
            conn,
            user_id,
            date.today(),
            is_active=is_active,
            type=type,
            account_id=account_id,
            frequency=frequency,
        )
    return success(rules, "Recurring transactions retrieved successfully")


@app.post("/recurring/process-due")
def process_due_recurring(user_id: int = Depends(auth.get_current_user_id)) -> dict:
    result = recurring_service.process_due_rules(engine, user_id, date.today())
    return success(
        result,
        f"Processed {result['processed_count']} recurring transactions, {result['failed_count']} failed",
    )


@app.get("/recurring/upcoming")
def upcoming_recurring(
    start_date: date | None = Query(None),
    end_date: date | None = Query(None),
    user_id: int = Depends(auth.get_current_user_id),
) -> dict:
    start = start_date or date.today()
    end = end_date or start + timedelta(days=30)
    with engine.begin() as conn:
        entries = recurring_service.upcoming(conn, user_id, start, end)
    return success(entries, "Upcoming recurring transactions retrieved successfully")


@app.get("/recurring/{rule_id}")
def get_recurring(rule_id: int, user_id: int = Depends(auth.get_current_user_id)) -> dict:
    with engine.begin() as conn:
        rule = recurring_service.get_rule(conn, user_id, rule_id, date.today())
    return success(rule, "Recurring transaction retrieved successfully")


@app.put("/recurring/{rule_id}")
def update_recurring(
    rule_id: int,
    payload: RecurringUpdatePayload,
    user_id: int = Depends(auth.get_current_user_id),
) -> dict:
    changes = validate(RecurringUpdatePayload, payload)
    with engine.begin() as conn:
        rule = recurring_service.update_rule(conn, user_id, rule_id, changes, date.today())
    return success(rule, "Recurring transaction updated successfully")


@app.delete("/recurring/{rule_id}")
def delete_recurring(rule_id: int, user_id: int = Depends(auth.get_current_user_id)) -> dict:
    with engine.begin() as conn:
        recurring_service.delete_rule(conn, user_id, rule_id)
    return success(None, "Recurring transaction deleted successfully")


@app.post("/recurring/{rule_id}/process")
def process_recurring(rule_id: int, user_id: int = Depends(auth.get_current_user_id)) -> dict:
    with engine.begin() as conn:
        result = recurring_service.process_rule(conn, user_id, rule_id, date.today())
    return success(result, "Recurring transaction processed successfully")


@app.post("/budgets", status_code=201)
def create_budget(payload: BudgetPayload, user_id: int = Depends(auth.get_current_user_id)) -> dict:
    payload = validate(BudgetPayload, payload)
    with engine.begin() as conn:
        budget = budget_service.create_budget(conn, user_id, payload)
    return success(budget, "Budget created successfully")


@app.get("/budgets")
def list_budgets(
    month: str | None = Query(None),
    category_id: int | None = Query(None),
    user_id: int = Depends(auth.get_current_user_id),
) -> dict:
    with engine.begin() as conn:
        rows = budget_service.list_budgets(
            conn,
            user_id,
            month=validate_month(month) if month else None,
            category_id=category_id,
        )
    return success(rows, "Budgets retrieved successfully")


@app.get("/budgets/summary")
def get_budget_summary(
    month: str | None = Query(None),
    user_id: int = Depends(auth.get_current_user_id),
) -> dict:
    target_month = validate_month(month) if month else date.today().strftime("%Y-%m")
    with engine.begin() as conn:
        summary = budget_service.budget_summary(conn, user_id, target_month)
    return success(summary, "Budget summary retrieved successfully")


@app.get("/budgets/{budget_id}")
def get_budget(budget_id: int, user_id: int = Depends(auth.get_current_user_id)) -> dict:
    with engine.begin() as conn:
        budget = budget_service.get_budget(conn, user_id, budget_id)
    return success(budget, "Budget retrieved successfully")


@app.put("/budgets/{budget_id}")
def update_budget(
    budget_id: int,
    payload: BudgetUpdatePayload,
    user_id: int = Depends(auth.get_current_user_id),
) -> dict:
    changes = validate(BudgetUpdatePayload, payload)
    with engine.begin() as conn:
        budget = budget_service.update_budget(conn, user_id, budget_id, changes)
    return success(budget, "Budget updated successfully")


@app.delete("/budgets/{budget_id}")
def delete_budget(budget_id: int, user_id: int = Depends(auth.get_current_user_id)) -> dict:
    with engine.begin() as conn:
        budget_service.delete_budget(conn, user_id, budget_id)
    return success(None, "Budget deleted successfully")


@app.post("/goals", status_code=201)
def create_goal(payload: GoalPayload, user_id: int = Depends(auth.get_current_user_id)) -> dict:
    payload = validate(GoalPayload, payload)
    with engine.begin() as conn:
        goal = goal_service.create_goal(conn, user_id, payload, date.today())
    return success(goal, "Goal created successfully")


@app.get("/goals")
def list_goals(
    status: str | None = Query(None),
    linked_account_id: int | None = Query(None),
    user_id: int = Depends(auth.get_current_user_id),
) -> dict:
    with engine.begin() as conn:
        rows = goal_service.list_goals(
            conn, user_id, date.today(), status=status, linked_account_id=linked_account_id
        )
    return success(rows, "Goals retrieved successfully")


@app.get("/goals/{goal_id}")
def get_goal(goal_id: int, user_id: int = Depends(auth.get_current_user_id)) -> dict:
    with engine.begin() as conn:
        goal = goal_service.get_goal(conn, user_id, goal_id, date.today())
    return success(goal, "Goal retrieved successfully")


@app.put("/goals/{goal_id}")
def update_goal(
    goal_id: int,
    payload: GoalUpdatePayload,
    user_id: int = Depends(auth.get_current_user_id),
) -> dict:
    changes = validate(GoalUpdatePayload, payload)
    with engine.begin() as conn:
        goal = goal_service.update_goal(conn, user_id, goal_id, changes, date.today())
    return success(goal, "Goal updated successfully")


@app.delete("/goals/{goal_id}")
def delete_goal(goal_id: int, user_id: int = Depends(auth.get_current_user_id)) -> dict:
    with engine.begin() as conn:
        goal_service.delete_goal(conn, user_id, goal_id)
    return success(None, "Goal deleted successfully")


@app.get("/analytics/dashboard")
def get_dashboard(
    month: str | None = Query(None),
    user_id: int = Depends(auth.get_current_user_id),
) -> dict:
    target_month = validate_month(month) if month else date.today().strftime("%Y-%m")
    with engine.begin() as conn:
        provider = fx_service.rate_provider_for_user(conn, user_id)
        data = analytics.dashboard(conn, user_id, target_month, provider, date.today())
    return success(data, "Dashboard data retrieved successfully")


@app.get("/analytics/spending-by-category")
def get_spending_by_category(
    month: str | None = Query(None),
    type: str = Query("expense"),
    user_id: int = Depends(auth.get_current_user_id),
) -> dict:
    if type not in {"income", "expense"}:
        raise HTTPException(status_code=400, detail="Type must be income or expense.")
    target_month = validate_month(month) if month else date.today().strftime("%Y-%m")
    with engine.begin() as conn:
        provider = fx_service.rate_provider_for_user(conn, user_id)
        data = analytics.spending_by_category(conn, user_id, target_month, type, provider)
    return success(data, "Spending by category retrieved successfully")


@app.get("/analytics/trends")
def get_monthly_trends(
    months: int = Query(6),
    user_id: int = Depends(auth.get_current_user_id),
) -> dict:
    with engine.begin() as conn:
        provider = fx_service.rate_provider_for_user(conn, user_id)
        data = analytics.monthly_trends(conn, user_id, months, date.today(), provider)
    return success(data, "Monthly trends retrieved successfully")


@app.get("/analytics/net-worth")
def get_net_worth(user_id: int = Depends(auth.get_current_user_id)) -> dict:
    with engine.begin() as conn:
        provider = fx_service.rate_provider_for_user(conn, user_id)
        data = analytics.net_worth(conn, user_id, provider)
    return success(data, "Net worth retrieved successfully")


@app.post("/exchange-rates", status_code=201)
def save_exchange_rates(
    payload: RateSnapshotPayload,
    user_id: int = Depends(auth.get_current_user_id),
) -> dict:
    payload = validate(RateSnapshotPayload, payload)
    with engine.begin() as conn:
        snapshot = fx_service.save_snapshot(
            conn,
            user_id,
            parse_month(payload.month),
            payload.base_currency,
            payload.rates,
            date.today(),
        )
    return success(snapshot, "Exchange rates saved successfully")


@app.get("/exchange-rates")
def list_exchange_rate_months(user_id: int = Depends(auth.get_current_user_id)) -> dict:
    with engine.begin() as conn:
        months = fx_service.list_snapshot_months(conn, user_id)
    return success(months, "Available months retrieved successfully")


@app.get("/exchange-rates/{month}")
def get_exchange_rates(month: str, user_id: int = Depends(auth.get_current_user_id)) -> dict:
    with engine.begin() as conn:
        snapshot = fx_service.get_snapshot(conn, user_id, parse_month(month))
    message = "Exchange rates retrieved successfully"
    if snapshot["is_fallback"]:
        message = f"No rates for {month}, using most recent earlier month"
    return success(snapshot, message)


@app.get("/exchange-rates/{month}/history")
def get_exchange_rate_history(month: str, user_id: int = Depends(auth.get_current_user_id)) -> dict:
    with engine.begin() as conn:
        versions = fx_service.snapshot_history(conn, user_id, parse_month(month))
    return success(versions, "Exchange rate history retrieved successfully")


@app.delete("/exchange-rates/{month}")
def delete_exchange_rates(month: str, user_id: int = Depends(auth.get_current_user_id)) -> dict:
    with engine.begin() as conn:
        deleted = fx_service.delete_snapshot_month(conn, user_id, parse_month(month))
    return success({"deleted_versions": deleted}, "Exchange rates deleted successfully")


@app.get("/currency/convert")
def convert_currency(
    amount: Decimal = Query(...),
    from_currency: str = Query(..., alias="from"),
    to_currency: str = Query(..., alias="to"),
    as_of: date | None = Query(None, alias="date"),
    user_id: int = Depends(auth.get_current_user_id),
) -> dict:
    with engine.begin() as conn:
        result = fx_service.convert_for_user(
            conn, user_id, amount, from_currency, to_currency, as_of or date.today()
        )
    return success(result, "Currency converted successfully")


@app.post("/cron/monthly-snapshot")
def cron_monthly_snapshot(
    force: bool = Query(False),
    x_cron_secret: str | None = Header(None, alias="x-cron-secret"),
) -> dict:
    expected = settings.cron_secret
    if not expected or not x_cron_secret or not hmac.compare_digest(x_cron_secret, expected):
        raise Unauthorized("Invalid cron secret")
    today = date.today()
    if not force and not is_last_day_of_month(today):
        return success({"skipped": True, "date": today}, "Not the last day of the month, snapshot skipped")
    result = run_monthly_snapshot(engine, fx_service.FX_PROVIDER, today)
    return success(result, "Monthly exchange rate snapshot completed")
