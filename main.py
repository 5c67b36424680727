import logging
from datetime import date
from typing import Optional

from fastapi import Depends, FastAPI, File, Header, Query, Request, UploadFile
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, Response, StreamingResponse
from pydantic import ValidationError
from sqlalchemy.orm import Session

from cache import Cache, get_cache
from database import SessionLocal, session_scope
from errors import InvalidArgument, LedgerError
from models import BudgetPeriod, TransactionType
from periods import AnalyticsPeriod
from scheduler import SchedulerManager
from schemas import (
    AccountIn,
    AccountPatch,
    BudgetIn,
    BudgetPatch,
    BulkTransactionIn,
    CategoryIn,
    TransactionIn,
    TransactionPatch,
)
from services import (
    AccountService,
    AnalyticsService,
    BudgetFilters,
    BudgetService,
    CategoryService,
    CSVService,
    TransactionFilters,
    TransactionService,
    account_to_dict,
    budget_to_dict,
    category_to_dict,
    ensure_default_categories,
    transaction_to_dict,
)

logger = logging.getLogger(__name__)

app = FastAPI(title="Ledger")


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_ledger_cache() -> Cache:
    return get_cache()


def current_user_id(x_user_id: int = Header(..., gt=0)) -> int:
    return x_user_id


scheduler_manager = SchedulerManager()


@app.on_event("startup")
def startup_event():
    with session_scope() as session:
        ensure_default_categories(session)
    scheduler_manager.start()


@app.on_event("shutdown")
def shutdown_event():
    scheduler_manager.stop()


def _error_response(exc: LedgerError) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(LedgerError)
async def ledger_error_handler(request: Request, exc: LedgerError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.warning(f"request_failed: path={request.url.path} kind={exc.kind}")
    return _error_response(exc)


@app.exception_handler(RequestValidationError)
async def request_validation_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    errors = [
        {"loc": list(e.get("loc", ())), "msg": e.get("msg"), "type": e.get("type")}
        for e in exc.errors()
    ]
    return _error_response(
        InvalidArgument("Request validation failed", details={"errors": errors})
    )


@app.exception_handler(ValidationError)
async def payload_validation_handler(
    request: Request, exc: ValidationError
) -> JSONResponse:
    errors = [
        {"loc": list(e.get("loc", ())), "msg": e.get("msg"), "type": e.get("type")}
        for e in exc.errors()
    ]
    return _error_response(
        InvalidArgument("Payload validation failed", details={"errors": errors})
    )


@app.get("/health")
def health():
    return {"status": "ok"}


# Categories


@app.get("/categories")
def list_categories(
    type: Optional[TransactionType] = None,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
    cache: Cache = Depends(get_ledger_cache),
):
    categories = CategoryService(db, user_id, cache=cache).list_all(type)
    return [category_to_dict(c) for c in categories]


@app.post("/categories", status_code=201)
def create_category(
    payload: CategoryIn,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
    cache: Cache = Depends(get_ledger_cache),
):
    category = CategoryService(db, user_id, cache=cache).create(payload)
    return category_to_dict(category)


# Accounts


@app.get("/accounts")
def list_accounts(
    include_inactive: bool = False,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
    cache: Cache = Depends(get_ledger_cache),
):
    return AccountService(db, user_id, cache=cache).list_all(include_inactive)


@app.get("/accounts/balance")
def accounts_total_balance(
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
    cache: Cache = Depends(get_ledger_cache),
):
    return AccountService(db, user_id, cache=cache).total_balance()


@app.post("/accounts", status_code=201)
def create_account(
    payload: AccountIn,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
    cache: Cache = Depends(get_ledger_cache),
):
    return account_to_dict(AccountService(db, user_id, cache=cache).create(payload))


@app.get("/accounts/{account_id}")
def get_account(
    account_id: int,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
    cache: Cache = Depends(get_ledger_cache),
):
    return account_to_dict(AccountService(db, user_id, cache=cache).get(account_id))


@app.patch("/accounts/{account_id}")
def update_account(
    account_id: int,
    payload: AccountPatch,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
    cache: Cache = Depends(get_ledger_cache),
):
    account = AccountService(db, user_id, cache=cache).update(account_id, payload)
    return account_to_dict(account)


@app.delete("/accounts/{account_id}", status_code=204)
def delete_account(
    account_id: int,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
    cache: Cache = Depends(get_ledger_cache),
):
    AccountService(db, user_id, cache=cache).delete(account_id)
    return Response(status_code=204)


@app.post("/accounts/{account_id}/recalculate")
def recalculate_account(
    account_id: int,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
    cache: Cache = Depends(get_ledger_cache),
):
    return TransactionService(db, user_id, cache=cache).recalculate_balance(account_id)


# Transactions


@app.get("/transactions")
def list_transactions(
    account_id: Optional[int] = None,
    category_id: Optional[int] = None,
    type: Optional[TransactionType] = None,
    start_date: Optional[date] = None,
    end_date: Optional[date] = None,
    search: Optional[str] = Query(default=None, max_length=100),
    page: int = 1,
    limit: int = 20,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
    cache: Cache = Depends(get_ledger_cache),
):
    filters = TransactionFilters(
        account_id=account_id,
        category_id=category_id,
        type=type,
        start_date=start_date,
        end_date=end_date,
        search=search,
    )
    return TransactionService(db, user_id, cache=cache).list(filters, page, limit)


@app.post("/transactions", status_code=201)
def create_transaction(
    payload: TransactionIn,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
    cache: Cache = Depends(get_ledger_cache),
):
    txn = TransactionService(db, user_id, cache=cache).create(payload)
    return transaction_to_dict(txn)


@app.post("/transactions/bulk", status_code=201)
def bulk_create_transactions(
    payload: BulkTransactionIn,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
    cache: Cache = Depends(get_ledger_cache),
):
    created = TransactionService(db, user_id, cache=cache).bulk_create(
        payload.transactions
    )
    return {"created": len(created), "items": [transaction_to_dict(t) for t in created]}


@app.get("/transactions/export")
def export_transactions_csv(
    start_date: Optional[date] = None,
    end_date: Optional[date] = None,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
    cache: Cache = Depends(get_ledger_cache),
):
    csv_text = CSVService(db, user_id, cache=cache).export(start_date, end_date)
    return StreamingResponse(
        iter([csv_text]),
        media_type="text/csv",
        headers={"Content-Disposition": 'attachment; filename="transactions.csv"'},
    )


def _read_csv_upload(file: UploadFile) -> str:
    # utf-8-sig drops the BOM spreadsheet exports put before the header.
    try:
        return file.file.read().decode("utf-8-sig")
    except UnicodeDecodeError as exc:
        raise InvalidArgument("CSV file must be UTF-8 encoded") from exc


@app.post("/transactions/import/preview")
def import_preview(
    file: UploadFile = File(...),
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
    cache: Cache = Depends(get_ledger_cache),
):
    content = _read_csv_upload(file)
    rows, errors = CSVService(db, user_id, cache=cache).preview(content)
    return {"rows": rows, "errors": errors}


@app.post("/transactions/import/commit", status_code=201)
def import_commit(
    file: UploadFile = File(...),
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
    cache: Cache = Depends(get_ledger_cache),
):
    content = _read_csv_upload(file)
    count = CSVService(db, user_id, cache=cache).commit(content)
    return {"imported": count}


@app.get("/transactions/{transaction_id}")
def get_transaction(
    transaction_id: int,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
    cache: Cache = Depends(get_ledger_cache),
):
    txn = TransactionService(db, user_id, cache=cache).get(transaction_id)
    return transaction_to_dict(txn)


@app.patch("/transactions/{transaction_id}")
def update_transaction(
    transaction_id: int,
    payload: TransactionPatch,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
    cache: Cache = Depends(get_ledger_cache),
):
    txn = TransactionService(db, user_id, cache=cache).update(transaction_id, payload)
    return transaction_to_dict(txn)


@app.delete("/transactions/{transaction_id}", status_code=204)
def delete_transaction(
    transaction_id: int,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
    cache: Cache = Depends(get_ledger_cache),
):
    TransactionService(db, user_id, cache=cache).delete(transaction_id)
    return Response(status_code=204)


# Budgets


@app.get("/budgets")
def list_budgets(
    is_active: Optional[bool] = None,
    category_id: Optional[int] = None,
    period: Optional[BudgetPeriod] = None,
    page: int = 1,
    limit: int = 10,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
    cache: Cache = Depends(get_ledger_cache),
):
    filters = BudgetFilters(is_active=is_active, category_id=category_id, period=period)
    return BudgetService(db, user_id, cache=cache).list(filters, page, limit)


@app.get("/budgets/overview")
def budgets_overview(
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
    cache: Cache = Depends(get_ledger_cache),
):
    return BudgetService(db, user_id, cache=cache).overview()


@app.post("/budgets", status_code=201)
def create_budget(
    payload: BudgetIn,
    replace_overlapping: bool = False,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
    cache: Cache = Depends(get_ledger_cache),
):
    budget = BudgetService(db, user_id, cache=cache).create(
        payload, replace_overlapping=replace_overlapping
    )
    return budget_to_dict(budget)


@app.get("/budgets/{budget_id}")
def get_budget(
    budget_id: int,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
    cache: Cache = Depends(get_ledger_cache),
):
    return budget_to_dict(BudgetService(db, user_id, cache=cache).get(budget_id))


@app.get("/budgets/{budget_id}/progress")
def budget_progress(
    budget_id: int,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
    cache: Cache = Depends(get_ledger_cache),
):
    return BudgetService(db, user_id, cache=cache).progress(budget_id)


@app.patch("/budgets/{budget_id}")
def update_budget(
    budget_id: int,
    payload: BudgetPatch,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
    cache: Cache = Depends(get_ledger_cache),
):
    budget = BudgetService(db, user_id, cache=cache).update(budget_id, payload)
    return budget_to_dict(budget)


@app.delete("/budgets/{budget_id}", status_code=204)
def delete_budget(
    budget_id: int,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
    cache: Cache = Depends(get_ledger_cache),
):
    BudgetService(db, user_id, cache=cache).delete(budget_id)
    return Response(status_code=204)


# Analytics


@app.get("/analytics/overview")
def analytics_overview(
    period: AnalyticsPeriod = AnalyticsPeriod.month,
    reference: Optional[date] = Query(default=None, alias="date"),
    start_date: Optional[date] = None,
    end_date: Optional[date] = None,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
    cache: Cache = Depends(get_ledger_cache),
):
    service = AnalyticsService(db, user_id, cache=cache)
    return service.overview(period, reference, start_date, end_date)


@app.get("/analytics/spending")
def analytics_spending(
    start_date: date,
    end_date: date,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
    cache: Cache = Depends(get_ledger_cache),
):
    return AnalyticsService(db, user_id, cache=cache).spending(start_date, end_date)


@app.get("/analytics/income")
def analytics_income(
    start_date: date,
    end_date: date,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
    cache: Cache = Depends(get_ledger_cache),
):
    return AnalyticsService(db, user_id, cache=cache).income(start_date, end_date)


@app.get("/analytics/trends")
def analytics_trends(
    period: AnalyticsPeriod = AnalyticsPeriod.month,
    intervals: int = 6,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
    cache: Cache = Depends(get_ledger_cache),
):
    return AnalyticsService(db, user_id, cache=cache).trends(period, intervals)


@app.get("/analytics/categories")
def analytics_categories(
    period: AnalyticsPeriod = AnalyticsPeriod.month,
    reference: Optional[date] = Query(default=None, alias="date"),
    start_date: Optional[date] = None,
    end_date: Optional[date] = None,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
    cache: Cache = Depends(get_ledger_cache),
):
    service = AnalyticsService(db, user_id, cache=cache)
    return service.categories_distribution(period, reference, start_date, end_date)


@app.get("/analytics/comparison")
def analytics_comparison(
    current_start: date,
    current_end: date,
    previous_start: date,
    previous_end: date,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
    cache: Cache = Depends(get_ledger_cache),
):
    return AnalyticsService(db, user_id, cache=cache).comparison(
        current_start, current_end, previous_start, previous_end
    )
