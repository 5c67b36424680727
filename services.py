from __future__ import annotations

import logging
import math
import time
from collections import defaultdict
from dataclasses import dataclass
from datetime import date
from decimal import ROUND_HALF_UP, Decimal
from typing import Callable, Optional

from sqlalchemy import case, func, or_, select, update
from sqlalchemy.orm import Session

from cache import Cache, CachedReads, CacheInvalidator, get_cache
from config import get_settings
from csv_utils import export_transactions, parse_csv
from database import run_serializable
from errors import (
    Conflict,
    Forbidden,
    InvalidArgument,
    LedgerError,
    NotFound,
    TransientStorageConflict,
)
from models import (
    Account,
    Budget,
    BudgetPeriod,
    Category,
    Transaction,
    TransactionType,
    signed_amount,
)
from periods import (
    AnalyticsPeriod,
    Period,
    budget_end_date,
    resolve_period,
    trend_interval,
    utc_today,
    validate_window,
)
from schemas import (
    AccountIn,
    AccountPatch,
    BudgetIn,
    BudgetPatch,
    CategoryIn,
    TransactionIn,
    TransactionPatch,
)

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")
MAX_PAGE_SIZE = 100
TREND_MIN_INTERVALS = 2
TREND_MAX_INTERVALS = 24

DEFAULT_CATEGORIES: tuple[tuple[TransactionType, str, str, str], ...] = (
    (TransactionType.expense, "Groceries", "🍔", "#FF6B6B"),
    (TransactionType.expense, "Transport", "🚗", "#4ECDC4"),
    (TransactionType.expense, "Housing", "🏠", "#95E1D3"),
    (TransactionType.expense, "Utilities", "💡", "#F38181"),
    (TransactionType.expense, "Health", "💊", "#AA96DA"),
    (TransactionType.expense, "Education", "📚", "#FCBAD3"),
    (TransactionType.expense, "Entertainment", "🎮", "#FFFFD2"),
    (TransactionType.expense, "Clothing", "👕", "#A8D8EA"),
    (TransactionType.expense, "Travel", "✈️", "#FF8B94"),
    (TransactionType.expense, "Restaurants", "🍽️", "#FFD4A3"),
    (TransactionType.expense, "Shopping", "🛍️", "#DFE6E9"),
    (TransactionType.expense, "Subscriptions", "📱", "#6C5CE7"),
    (TransactionType.expense, "Other Expenses", "📦", "#B2BEC3"),
    (TransactionType.income, "Salary", "💰", "#00B894"),
    (TransactionType.income, "Freelance", "💼", "#00CEC9"),
    (TransactionType.income, "Investments", "📈", "#0984E3"),
    (TransactionType.income, "Other Income", "💸", "#A29BFE"),
)


def cents_to_amount(cents: int | Decimal) -> Decimal:
    return (Decimal(cents) / 100).quantize(CENT, rounding=ROUND_HALF_UP)


def percent_of(part: int, whole: int) -> Decimal:
    """Unrounded ``part / whole * 100``; zero when ``whole`` is zero."""
    if not whole:
        return Decimal(0)
    return Decimal(part) * 100 / Decimal(whole)


def round_percent(value: Decimal) -> Decimal:
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


def percent_change(current: int, previous: int) -> Decimal:
    if previous == 0:
        return Decimal(100) if current > 0 else Decimal(0)
    return round_percent(Decimal(current - previous) * 100 / Decimal(previous))


def category_summary(category: Optional[Category]) -> Optional[dict[str, object]]:
    if category is None:
        return None
    return {
        "id": category.id,
        "name": category.name,
        "icon": category.icon,
        "color": category.color,
    }


def category_to_dict(category: Category) -> dict[str, object]:
    return {
        "id": category.id,
        "name": category.name,
        "type": category.type.value,
        "icon": category.icon,
        "color": category.color,
        "is_default": category.is_default,
    }


def account_to_dict(account: Account) -> dict[str, object]:
    return {
        "id": account.id,
        "name": account.name,
        "type": account.type.value,
        "balance": cents_to_amount(account.balance_cents),
        "balance_cents": account.balance_cents,
        "currency_code": account.currency_code.value,
        "color": account.color,
        "is_active": account.is_active,
    }


def transaction_to_dict(txn: Transaction) -> dict[str, object]:
    return {
        "id": txn.id,
        "account_id": txn.account_id,
        "category_id": txn.category_id,
        "type": txn.type.value,
        "amount": cents_to_amount(txn.amount_cents),
        "amount_cents": txn.amount_cents,
        "description": txn.description,
        "date": txn.date,
        "notes": txn.notes,
        "is_recurring": txn.is_recurring,
        "category": category_summary(txn.category),
        "account": {
            "id": txn.account.id,
            "name": txn.account.name,
            "type": txn.account.type.value,
        },
    }


def budget_to_dict(budget: Budget) -> dict[str, object]:
    return {
        "id": budget.id,
        "name": budget.name,
        "category_id": budget.category_id,
        "category": category_summary(budget.category),
        "amount": cents_to_amount(budget.amount_cents),
        "amount_cents": budget.amount_cents,
        "period": budget.period.value,
        "start_date": budget.start_date,
        "end_date": budget.end_date,
        "alert_threshold": budget.alert_threshold,
        "is_active": budget.is_active,
    }


def _check_paging(page: int, limit: int) -> None:
    if page < 1:
        raise InvalidArgument("page must be at least 1")
    if limit < 1 or limit > MAX_PAGE_SIZE:
        raise InvalidArgument(f"limit must be between 1 and {MAX_PAGE_SIZE}")


def _page_payload(
    items: list[dict[str, object]], page: int, limit: int, total: int
) -> dict[str, object]:
    total_pages = math.ceil(total / limit) if total else 0
    return {
        "items": items,
        "page": page,
        "limit": limit,
        "total": total,
        "total_pages": total_pages,
        "has_next_page": page < total_pages,
        "has_previous_page": page > 1,
    }


def _patch_changes(data, nullable: frozenset[str] = frozenset()) -> dict[str, object]:
    changes = data.model_dump(exclude_unset=True)
    for field, value in changes.items():
        if value is None and field not in nullable:
            raise InvalidArgument(f"{field} cannot be null")
    return changes


def ledger_balance_cents(session: Session, account_id: int) -> int:
    """Balance implied by the transaction log: income minus expenses."""
    stmt = select(
        func.coalesce(
            func.sum(
                case(
                    (
                        Transaction.type == TransactionType.income,
                        Transaction.amount_cents,
                    ),
                    else_=-Transaction.amount_cents,
                )
            ),
            0,
        )
    ).where(Transaction.account_id == account_id)
    return int(session.execute(stmt).scalar_one() or 0)


def adjust_balance(session: Session, account_id: int, delta_cents: int) -> None:
    if not delta_cents:
        return
    session.execute(
        update(Account)
        .where(Account.id == account_id)
        .values(balance_cents=Account.balance_cents + delta_cents)
    )


def recalculate_account_balance(session: Session, account_id: int) -> tuple[int, int]:
    """Overwrite the stored balance from the ledger; returns (stored, computed).

    Runs inside the caller's transaction and does not commit.
    """
    stored = session.execute(
        select(Account.balance_cents).where(Account.id == account_id)
    ).scalar_one()
    computed = ledger_balance_cents(session, account_id)
    if stored != computed:
        session.execute(
            update(Account)
            .where(Account.id == account_id)
            .values(balance_cents=computed)
        )
    return int(stored), computed


def recalculate_all_balances(
    session: Session, cache: Optional[Cache] = None
) -> list[dict[str, int]]:
    """Repair every account balance and report the ones that had drifted."""

    def unit() -> list[dict[str, int]]:
        drifted: list[dict[str, int]] = []
        rows = session.execute(select(Account.id, Account.user_id)).all()
        for row in rows:
            stored, computed = recalculate_account_balance(session, row.id)
            if stored != computed:
                drifted.append(
                    {
                        "account_id": row.id,
                        "user_id": row.user_id,
                        "stored_cents": stored,
                        "computed_cents": computed,
                        "drift_cents": stored - computed,
                    }
                )
        return drifted

    drifted = run_serializable(session, unit, label="recalculate_all")
    invalidator = CacheInvalidator(cache if cache is not None else get_cache())
    for item in drifted:
        logger.warning(
            f"balance_drift_repaired: account_id={item['account_id']} "
            f"stored={item['stored_cents']} computed={item['computed_cents']}"
        )
    for user_id in {item["user_id"] for item in drifted}:
        invalidator.accounts(user_id)
        invalidator.analytics(user_id)
    return drifted


def ensure_default_categories(session: Session) -> int:
    existing = {
        (row.type, row.name)
        for row in session.execute(
            select(Category.type, Category.name).where(Category.user_id.is_(None))
        )
    }
    created = 0
    for txn_type, name, icon, color in DEFAULT_CATEGORIES:
        if (txn_type, name) in existing:
            continue
        session.add(
            Category(user_id=None, name=name, type=txn_type, icon=icon, color=color)
        )
        created += 1
    session.commit()
    if created:
        logger.info(f"default_categories_seeded: created={created}")
    return created


class _UserScopedService:
    def __init__(
        self,
        session: Session,
        user_id: int,
        *,
        cache: Optional[Cache] = None,
        today: Optional[date] = None,
    ) -> None:
        self.session = session
        self.user_id = user_id
        self.cache = cache if cache is not None else get_cache()
        self.reads = CachedReads(self.cache)
        self.invalidate = CacheInvalidator(self.cache)
        self._fixed_today = today

    def today(self) -> date:
        return self._fixed_today or utc_today()

    def _owned(self, model, entity_id: int, label: str, *, lock: bool = False):
        entity = self.session.get(
            model, entity_id, populate_existing=lock, with_for_update=lock
        )
        if entity is None:
            raise NotFound(f"{label} not found", details={"id": entity_id})
        if entity.user_id != self.user_id:
            raise Forbidden(f"{label} belongs to another user", details={"id": entity_id})
        return entity

    def _usable_category(
        self, category_id: int, expected_type: Optional[TransactionType] = None
    ) -> Category:
        category = self.session.get(Category, category_id)
        if category is None:
            raise NotFound("Category not found", details={"id": category_id})
        if category.user_id is not None and category.user_id != self.user_id:
            raise Forbidden("Category belongs to another user", details={"id": category_id})
        if expected_type is not None and category.type != expected_type:
            raise InvalidArgument(
                f"Category type {category.type.value} does not match "
                f"transaction type {expected_type.value}",
                details={"category_id": category_id},
            )
        return category


class CategoryService(_UserScopedService):
    def list_all(self, txn_type: Optional[TransactionType] = None) -> list[Category]:
        stmt = (
            select(Category)
            .where(or_(Category.user_id.is_(None), Category.user_id == self.user_id))
            .order_by(Category.type, Category.name)
        )
        if txn_type:
            stmt = stmt.where(Category.type == txn_type)
        return list(self.session.scalars(stmt).all())

    def get(self, category_id: int) -> Category:
        return self._usable_category(category_id)

    def create(self, data: CategoryIn) -> Category:
        name = data.name.strip()
        existing = self.session.scalar(
            select(Category).where(
                or_(Category.user_id.is_(None), Category.user_id == self.user_id),
                Category.type == data.type,
                func.lower(Category.name) == name.lower(),
            )
        )
        if existing:
            raise Conflict("Category with this name already exists")

        def unit() -> Category:
            category = Category(
                user_id=self.user_id,
                name=name,
                type=data.type,
                icon=data.icon,
                color=data.color,
            )
            self.session.add(category)
            self.session.flush()
            return category

        return run_serializable(self.session, unit, label="category_create")


class AccountService(_UserScopedService):
    def create(self, data: AccountIn) -> Account:
        def unit() -> Account:
            account = Account(
                user_id=self.user_id,
                name=data.name.strip(),
                type=data.type,
                balance_cents=0,
                currency_code=data.currency_code,
                color=data.color,
            )
            self.session.add(account)
            self.session.flush()
            return account

        account = run_serializable(self.session, unit, label="account_create")
        self.invalidate.accounts(self.user_id)
        logger.info(f"account_created: user_id={self.user_id} account_id={account.id}")
        return account

    def list_all(self, include_inactive: bool = False) -> list[dict[str, object]]:
        def compute() -> list[dict[str, object]]:
            stmt = (
                select(Account)
                .where(Account.user_id == self.user_id)
                .order_by(Account.created_at.desc(), Account.id.desc())
            )
            if not include_inactive:
                stmt = stmt.where(Account.is_active.is_(True))
            return [account_to_dict(a) for a in self.session.scalars(stmt).all()]

        return self.reads.get_or_compute(
            "accounts:list",
            self.user_id,
            {"include_inactive": include_inactive},
            compute,
        )

    def get(self, account_id: int) -> Account:
        return self._owned(Account, account_id, "Account")

    def update(self, account_id: int, data: AccountPatch) -> Account:
        changes = _patch_changes(data, nullable=frozenset({"color"}))

        def unit() -> Account:
            account = self._owned(Account, account_id, "Account", lock=True)
            for field, value in changes.items():
                setattr(account, field, value)
            self.session.flush()
            return account

        account = run_serializable(self.session, unit, label="account_update")
        self.invalidate.accounts(self.user_id)
        self.invalidate.analytics(self.user_id)
        return account

    def delete(self, account_id: int) -> None:
        def unit() -> None:
            account = self._owned(Account, account_id, "Account", lock=True)
            in_use = self.session.execute(
                select(func.count(Transaction.id)).where(
                    Transaction.account_id == account.id
                )
            ).scalar_one()
            if in_use:
                raise Conflict(
                    "Account still has transactions",
                    details={"transactions": int(in_use)},
                )
            self.session.delete(account)

        run_serializable(self.session, unit, label="account_delete")
        self.invalidate.accounts(self.user_id)
        self.invalidate.analytics(self.user_id)
        logger.info(f"account_deleted: user_id={self.user_id} account_id={account_id}")

    def total_balance(self) -> dict[str, object]:
        def compute() -> dict[str, object]:
            row = self.session.execute(
                select(
                    func.coalesce(func.sum(Account.balance_cents), 0).label("total"),
                    func.count(Account.id).label("accounts"),
                ).where(Account.user_id == self.user_id)
            ).one()
            return {
                "total_balance": cents_to_amount(int(row.total or 0)),
                "total_balance_cents": int(row.total or 0),
                "accounts": int(row.accounts or 0),
            }

        return self.reads.get_or_compute("accounts:balance", self.user_id, {}, compute)


@dataclass
class TransactionFilters:
    account_id: Optional[int] = None
    category_id: Optional[int] = None
    type: Optional[TransactionType] = None
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    search: Optional[str] = None


class TransactionService(_UserScopedService):
    """Every write here moves the account balance in the same unit as the row."""

    def __init__(self, session: Session, user_id: int, **kwargs) -> None:
        super().__init__(session, user_id, **kwargs)
        settings = get_settings()
        self.bulk_max_items = settings.bulk_max_items
        self.bulk_timeout_secs = settings.bulk_timeout_secs

    def _check_date(self, txn_date: date) -> None:
        if txn_date > self.today():
            raise InvalidArgument(
                "Transaction date cannot be in the future",
                details={"date": txn_date.isoformat()},
            )

    def create(self, data: TransactionIn) -> Transaction:
        self._check_date(data.date)

        def unit() -> Transaction:
            self._owned(Account, data.account_id, "Account")
            self._usable_category(data.category_id, data.type)
            txn = Transaction(
                user_id=self.user_id,
                account_id=data.account_id,
                category_id=data.category_id,
                type=data.type,
                amount_cents=data.amount_cents,
                description=data.description.strip(),
                date=data.date,
                notes=data.notes,
                is_recurring=data.is_recurring,
            )
            self.session.add(txn)
            self.session.flush()
            adjust_balance(self.session, txn.account_id, txn.signed_amount_cents)
            return txn

        txn = run_serializable(self.session, unit, label="transaction_create")
        self.invalidate.transaction_related(self.user_id)
        logger.info(
            f"transaction_created: user_id={self.user_id} transaction_id={txn.id} "
            f"account_id={txn.account_id} delta={txn.signed_amount_cents}"
        )
        return txn

    def get(self, transaction_id: int) -> Transaction:
        return self._owned(Transaction, transaction_id, "Transaction")

    def list(
        self,
        filters: Optional[TransactionFilters] = None,
        page: int = 1,
        limit: int = 20,
    ) -> dict[str, object]:
        _check_paging(page, limit)
        filters = filters or TransactionFilters()
        conditions = [Transaction.user_id == self.user_id]
        if filters.account_id:
            conditions.append(Transaction.account_id == filters.account_id)
        if filters.category_id:
            conditions.append(Transaction.category_id == filters.category_id)
        if filters.type:
            conditions.append(Transaction.type == filters.type)
        if filters.start_date:
            conditions.append(Transaction.date >= filters.start_date)
        if filters.end_date:
            conditions.append(Transaction.date <= filters.end_date)
        if filters.search:
            like = f"%{filters.search.lower()}%"
            conditions.append(
                or_(
                    func.lower(Transaction.description).like(like),
                    func.lower(func.coalesce(Transaction.notes, "")).like(like),
                )
            )

        total = self.session.execute(
            select(func.count(Transaction.id)).where(*conditions)
        ).scalar_one()
        stmt = (
            select(Transaction)
            .where(*conditions)
            .order_by(Transaction.date.desc(), Transaction.id.desc())
            .offset((page - 1) * limit)
            .limit(limit)
        )
        items = [transaction_to_dict(t) for t in self.session.scalars(stmt).all()]
        return _page_payload(items, page, limit, int(total or 0))

    def update(self, transaction_id: int, data: TransactionPatch) -> Transaction:
        changes = _patch_changes(data, nullable=frozenset({"notes"}))
        if "date" in changes:
            self._check_date(changes["date"])

        def unit() -> Transaction:
            txn = self._owned(Transaction, transaction_id, "Transaction", lock=True)
            new_account_id = changes.get("account_id", txn.account_id)
            new_type = changes.get("type", txn.type)
            new_category_id = changes.get("category_id", txn.category_id)
            if new_account_id != txn.account_id:
                self._owned(Account, new_account_id, "Account")
            if "type" in changes or "category_id" in changes:
                self._usable_category(new_category_id, new_type)

            old_account_id = txn.account_id
            old_effect = txn.signed_amount_cents
            for field, value in changes.items():
                setattr(txn, field, value)
            self.session.flush()

            adjust_balance(self.session, old_account_id, -old_effect)
            adjust_balance(self.session, txn.account_id, txn.signed_amount_cents)
            # Reload so the account and category relationships follow the new ids.
            self.session.refresh(txn)
            return txn

        txn = run_serializable(self.session, unit, label="transaction_update")
        self.invalidate.transaction_related(self.user_id)
        logger.info(
            f"transaction_updated: user_id={self.user_id} transaction_id={txn.id} "
            f"fields={sorted(changes)}"
        )
        return txn

    def delete(self, transaction_id: int) -> None:
        def unit() -> None:
            txn = self._owned(Transaction, transaction_id, "Transaction", lock=True)
            adjust_balance(self.session, txn.account_id, -txn.signed_amount_cents)
            self.session.delete(txn)
            self.session.flush()

        run_serializable(self.session, unit, label="transaction_delete")
        self.invalidate.transaction_related(self.user_id)
        logger.info(
            f"transaction_deleted: user_id={self.user_id} transaction_id={transaction_id}"
        )

    def bulk_create(self, items: list[TransactionIn]) -> list[Transaction]:
        if not items:
            raise InvalidArgument("At least one transaction is required")
        if len(items) > self.bulk_max_items:
            raise InvalidArgument(
                f"Bulk create accepts at most {self.bulk_max_items} transactions",
                details={"received": len(items)},
            )
        for index, item in enumerate(items):
            if item.date > self.today():
                raise InvalidArgument(
                    f"Item {index}: transaction date cannot be in the future",
                    details={"index": index},
                )
        deadline = time.monotonic() + self.bulk_timeout_secs

        def check_deadline() -> None:
            if time.monotonic() >= deadline:
                raise TransientStorageConflict(
                    "Bulk create exceeded its time budget",
                    details={"timeout_secs": self.bulk_timeout_secs},
                )

        def unit() -> list[Transaction]:
            checked_accounts: set[int] = set()
            for index, item in enumerate(items):
                try:
                    if item.account_id not in checked_accounts:
                        self._owned(Account, item.account_id, "Account")
                        checked_accounts.add(item.account_id)
                    self._usable_category(item.category_id, item.type)
                except LedgerError as exc:
                    raise type(exc)(
                        f"Item {index}: {exc.message}",
                        details={**exc.details, "index": index},
                    ) from exc

            created: list[Transaction] = []
            deltas: dict[int, int] = defaultdict(int)
            for item in items:
                check_deadline()
                txn = Transaction(
                    user_id=self.user_id,
                    account_id=item.account_id,
                    category_id=item.category_id,
                    type=item.type,
                    amount_cents=item.amount_cents,
                    description=item.description.strip(),
                    date=item.date,
                    notes=item.notes,
                    is_recurring=item.is_recurring,
                )
                self.session.add(txn)
                created.append(txn)
                deltas[item.account_id] += signed_amount(item.type, item.amount_cents)
            self.session.flush()
            for account_id, delta in deltas.items():
                adjust_balance(self.session, account_id, delta)
            check_deadline()
            return created

        created = run_serializable(self.session, unit, label="transaction_bulk_create")
        self.invalidate.transaction_related(self.user_id)
        logger.info(
            f"transactions_bulk_created: user_id={self.user_id} count={len(created)}"
        )
        return created

    def recalculate_balance(self, account_id: int) -> dict[str, object]:
        def unit() -> tuple[int, int]:
            self._owned(Account, account_id, "Account")
            return recalculate_account_balance(self.session, account_id)

        stored, computed = run_serializable(
            self.session, unit, label="recalculate_balance"
        )
        self.invalidate.accounts(self.user_id)
        self.invalidate.analytics(self.user_id)
        logger.info(
            f"balance_recalculated: account_id={account_id} balance={computed} "
            f"drift={stored - computed}"
        )
        return {
            "account_id": account_id,
            "previous_balance": cents_to_amount(stored),
            "balance": cents_to_amount(computed),
            "drift": cents_to_amount(stored - computed),
        }


@dataclass
class BudgetFilters:
    is_active: Optional[bool] = None
    category_id: Optional[int] = None
    period: Optional[BudgetPeriod] = None


class BudgetService(_UserScopedService):
    def _expense_category(self, category_id: int) -> Category:
        category = self._usable_category(category_id)
        if category.type != TransactionType.expense:
            raise InvalidArgument(
                "Budgets can only track expense categories",
                details={"category_id": category_id},
            )
        return category

    def _check_start(self, start: date) -> None:
        if start > self.today():
            raise InvalidArgument(
                "Budget start date cannot be in the future",
                details={"start_date": start.isoformat()},
            )

    def _overlapping(
        self,
        category_id: int,
        start: date,
        end: date,
        exclude_budget_id: Optional[int] = None,
    ) -> list[Budget]:
        stmt = select(Budget).where(
            Budget.user_id == self.user_id,
            Budget.category_id == category_id,
            Budget.is_active.is_(True),
            Budget.start_date <= end,
            Budget.end_date >= start,
        )
        if exclude_budget_id is not None:
            stmt = stmt.where(Budget.id != exclude_budget_id)
        return list(self.session.scalars(stmt).all())

    def check_no_overlap(
        self,
        category_id: int,
        start: date,
        end: date,
        exclude_budget_id: Optional[int] = None,
    ) -> None:
        overlapping = self._overlapping(category_id, start, end, exclude_budget_id)
        if overlapping:
            raise Conflict(
                "An active budget already covers this category in the given period",
                details={"budget_ids": [b.id for b in overlapping]},
            )

    def create(self, data: BudgetIn, *, replace_overlapping: bool = False) -> Budget:
        start = data.start_date or self.today()
        self._check_start(start)
        end = budget_end_date(start, data.period)

        def unit() -> tuple[Budget, list[int]]:
            self._expense_category(data.category_id)
            replaced: list[int] = []
            if replace_overlapping:
                for existing in self._overlapping(data.category_id, start, end):
                    existing.is_active = False
                    replaced.append(existing.id)
            else:
                self.check_no_overlap(data.category_id, start, end)
            budget = Budget(
                user_id=self.user_id,
                category_id=data.category_id,
                name=data.name.strip(),
                amount_cents=data.amount_cents,
                period=data.period,
                start_date=start,
                end_date=end,
                alert_threshold=data.alert_threshold,
                is_active=True,
            )
            self.session.add(budget)
            self.session.flush()
            return budget, replaced

        budget, replaced = run_serializable(self.session, unit, label="budget_create")
        self.invalidate.budgets(self.user_id)
        if replaced:
            logger.info(
                f"budget_overlap_resolved: user_id={self.user_id} "
                f"budget_id={budget.id} deactivated={replaced}"
            )
        logger.info(
            f"budget_created: user_id={self.user_id} budget_id={budget.id} "
            f"window={start.isoformat()}..{end.isoformat()}"
        )
        return budget

    def get(self, budget_id: int) -> Budget:
        return self._owned(Budget, budget_id, "Budget")

    def list(
        self,
        filters: Optional[BudgetFilters] = None,
        page: int = 1,
        limit: int = 10,
    ) -> dict[str, object]:
        _check_paging(page, limit)
        filters = filters or BudgetFilters()

        def compute() -> dict[str, object]:
            conditions = [Budget.user_id == self.user_id]
            if filters.is_active is not None:
                conditions.append(Budget.is_active.is_(filters.is_active))
            if filters.category_id:
                conditions.append(Budget.category_id == filters.category_id)
            if filters.period:
                conditions.append(Budget.period == filters.period)
            total = self.session.execute(
                select(func.count(Budget.id)).where(*conditions)
            ).scalar_one()
            stmt = (
                select(Budget)
                .where(*conditions)
                .order_by(Budget.created_at.desc(), Budget.id.desc())
                .offset((page - 1) * limit)
                .limit(limit)
            )
            items = [budget_to_dict(b) for b in self.session.scalars(stmt).all()]
            return _page_payload(items, page, limit, int(total or 0))

        return self.reads.get_or_compute(
            "budgets:list",
            self.user_id,
            {
                "is_active": filters.is_active,
                "category_id": filters.category_id,
                "period": filters.period,
                "page": page,
                "limit": limit,
            },
            compute,
        )

    def update(self, budget_id: int, data: BudgetPatch) -> Budget:
        changes = _patch_changes(data)
        if "start_date" in changes:
            self._check_start(changes["start_date"])

        def unit() -> Budget:
            budget = self._owned(Budget, budget_id, "Budget", lock=True)
            if "category_id" in changes:
                self._expense_category(changes["category_id"])

            category_id = changes.get("category_id", budget.category_id)
            start = changes.get("start_date", budget.start_date)
            period = changes.get("period", budget.period)
            end = budget.end_date
            if "start_date" in changes or "period" in changes:
                end = budget_end_date(start, period)

            reactivated = changes.get("is_active") is True and not budget.is_active
            window_changed = bool({"category_id", "start_date", "period"} & changes.keys())
            stays_active = changes.get("is_active", budget.is_active)
            if stays_active and (window_changed or reactivated):
                self.check_no_overlap(category_id, start, end, exclude_budget_id=budget.id)

            for field, value in changes.items():
                setattr(budget, field, value)
            budget.end_date = end
            self.session.flush()
            self.session.refresh(budget)
            return budget

        budget = run_serializable(self.session, unit, label="budget_update")
        self.invalidate.budgets(self.user_id)
        logger.info(
            f"budget_updated: user_id={self.user_id} budget_id={budget.id} "
            f"fields={sorted(changes)}"
        )
        return budget

    def delete(self, budget_id: int) -> None:
        def unit() -> None:
            budget = self._owned(Budget, budget_id, "Budget", lock=True)
            budget.is_active = False
            self.session.flush()

        run_serializable(self.session, unit, label="budget_delete")
        self.invalidate.budgets(self.user_id)
        logger.info(f"budget_deactivated: user_id={self.user_id} budget_id={budget_id}")

    def _spent_cents(self, budget: Budget) -> int:
        stmt = select(func.coalesce(func.sum(Transaction.amount_cents), 0)).where(
            Transaction.user_id == self.user_id,
            Transaction.category_id == budget.category_id,
            Transaction.type == TransactionType.expense,
            Transaction.date >= budget.start_date,
            Transaction.date <= budget.end_date,
        )
        return int(self.session.execute(stmt).scalar_one() or 0)

    def _progress(self, budget: Budget, today: date) -> dict[str, object]:
        spent = self._spent_cents(budget)
        percentage = percent_of(spent, budget.amount_cents)
        return {
            "budget_id": budget.id,
            "budget_name": budget.name,
            "category": category_summary(budget.category),
            "amount": cents_to_amount(budget.amount_cents),
            "spent": cents_to_amount(spent),
            "remaining": cents_to_amount(budget.amount_cents - spent),
            "percentage_used": round_percent(percentage),
            "is_over_budget": spent > budget.amount_cents,
            "should_alert": percentage >= budget.alert_threshold,
            "period": budget.period.value,
            "start_date": budget.start_date,
            "end_date": budget.end_date,
            "days_remaining": max(0, (budget.end_date - today).days),
            "alert_threshold": budget.alert_threshold,
        }

    def progress(self, budget_id: int) -> dict[str, object]:
        today = self.today()

        def compute() -> dict[str, object]:
            budget = self._owned(Budget, budget_id, "Budget")
            return self._progress(budget, today)

        return self.reads.get_or_compute(
            "budgets:progress",
            self.user_id,
            {"budget_id": budget_id, "today": today},
            compute,
        )

    def overview(self) -> list[dict[str, object]]:
        today = self.today()

        def compute() -> list[dict[str, object]]:
            budgets = self.session.scalars(
                select(Budget).where(
                    Budget.user_id == self.user_id, Budget.is_active.is_(True)
                )
            ).all()
            rows = [self._progress(b, today) for b in budgets]
            rows.sort(key=lambda r: (r["days_remaining"], -r["percentage_used"]))
            return rows

        return self.reads.get_or_compute(
            "budgets:overview", self.user_id, {"today": today}, compute
        )


class AnalyticsService(_UserScopedService):
    def _summary(
        self, start: date, end: date, txn_type: Optional[TransactionType] = None
    ) -> tuple[int, int]:
        """Total cents and row count in the window, optionally for one type."""
        stmt = select(
            func.coalesce(func.sum(Transaction.amount_cents), 0).label("total"),
            func.count(Transaction.id).label("count"),
        ).where(
            Transaction.user_id == self.user_id,
            Transaction.date >= start,
            Transaction.date <= end,
        )
        if txn_type is not None:
            stmt = stmt.where(Transaction.type == txn_type)
        row = self.session.execute(stmt).one()
        return int(row.total or 0), int(row.count or 0)

    def _income_and_expenses(self, start: date, end: date) -> tuple[int, int]:
        stmt = select(
            func.coalesce(
                func.sum(
                    case(
                        (
                            Transaction.type == TransactionType.income,
                            Transaction.amount_cents,
                        ),
                        else_=0,
                    )
                ),
                0,
            ).label("income"),
            func.coalesce(
                func.sum(
                    case(
                        (
                            Transaction.type == TransactionType.expense,
                            Transaction.amount_cents,
                        ),
                        else_=0,
                    )
                ),
                0,
            ).label("expenses"),
        ).where(
            Transaction.user_id == self.user_id,
            Transaction.date >= start,
            Transaction.date <= end,
        )
        row = self.session.execute(stmt).one()
        return int(row.income or 0), int(row.expenses or 0)

    def _category_breakdown(
        self,
        start: date,
        end: date,
        txn_type: TransactionType,
        limit: Optional[int] = None,
    ) -> list[dict[str, object]]:
        total_col = func.sum(Transaction.amount_cents).label("total")
        stmt = (
            select(
                Category.id.label("category_id"),
                Category.name.label("name"),
                Category.icon.label("icon"),
                Category.color.label("color"),
                total_col,
                func.count(Transaction.id).label("count"),
            )
            .join(Category, Category.id == Transaction.category_id)
            .where(
                Transaction.user_id == self.user_id,
                Transaction.type == txn_type,
                Transaction.date >= start,
                Transaction.date <= end,
            )
            .group_by(Category.id, Category.name, Category.icon, Category.color)
            .order_by(total_col.desc(), Category.name)
        )
        rows = self.session.execute(stmt).all()
        type_total = sum(int(row.total or 0) for row in rows)
        breakdown = []
        for row in rows[:limit] if limit else rows:
            amount = int(row.total or 0)
            breakdown.append(
                {
                    "category_id": row.category_id,
                    "category_name": row.name,
                    "icon": row.icon,
                    "color": row.color,
                    "amount": cents_to_amount(amount),
                    "percentage": round_percent(percent_of(amount, type_total)),
                    "transaction_count": int(row.count or 0),
                }
            )
        return breakdown

    def _daily_breakdown(
        self, start: date, end: date, txn_type: TransactionType
    ) -> list[dict[str, object]]:
        stmt = (
            select(
                Transaction.date,
                func.sum(Transaction.amount_cents).label("total"),
                func.count(Transaction.id).label("count"),
            )
            .where(
                Transaction.user_id == self.user_id,
                Transaction.type == txn_type,
                Transaction.date >= start,
                Transaction.date <= end,
            )
            .group_by(Transaction.date)
            .order_by(Transaction.date)
        )
        return [
            {
                "date": row.date.isoformat(),
                "amount": cents_to_amount(int(row.total or 0)),
                "count": int(row.count or 0),
            }
            for row in self.session.execute(stmt).all()
        ]

    def _largest(
        self, start: date, end: date, txn_type: TransactionType
    ) -> Optional[dict[str, object]]:
        txn = self.session.scalars(
            select(Transaction)
            .where(
                Transaction.user_id == self.user_id,
                Transaction.type == txn_type,
                Transaction.date >= start,
                Transaction.date <= end,
            )
            .order_by(Transaction.amount_cents.desc(), Transaction.id)
            .limit(1)
        ).first()
        return transaction_to_dict(txn) if txn else None

    def _accounts_balance(self) -> int:
        return int(
            self.session.execute(
                select(func.coalesce(func.sum(Account.balance_cents), 0)).where(
                    Account.user_id == self.user_id
                )
            ).scalar_one()
            or 0
        )

    def _recent(self, start: date, end: date, limit: int = 10) -> list[dict[str, object]]:
        stmt = (
            select(Transaction)
            .where(
                Transaction.user_id == self.user_id,
                Transaction.date >= start,
                Transaction.date <= end,
            )
            .order_by(Transaction.date.desc(), Transaction.id.desc())
            .limit(limit)
        )
        return [transaction_to_dict(t) for t in self.session.scalars(stmt).all()]

    def _window(
        self,
        period: AnalyticsPeriod,
        reference: Optional[date],
        start: Optional[date],
        end: Optional[date],
    ) -> Period:
        return resolve_period(period, reference, start, end, today=self.today())

    def _cached(
        self, operation: str, window: Period, compute: Callable[[], dict[str, object]], **extra
    ) -> dict[str, object]:
        args: dict[str, object] = {
            "period": window.slug,
            "start": window.start,
            "end": window.end,
        }
        args.update(extra)
        return self.reads.get_or_compute(operation, self.user_id, args, compute)

    def overview(
        self,
        period: AnalyticsPeriod = AnalyticsPeriod.month,
        reference: Optional[date] = None,
        start: Optional[date] = None,
        end: Optional[date] = None,
    ) -> dict[str, object]:
        window = self._window(period, reference, start, end)

        def compute() -> dict[str, object]:
            income, expenses = self._income_and_expenses(window.start, window.end)
            _, count = self._summary(window.start, window.end)
            net = income - expenses
            return {
                "period": window.slug,
                "start_date": window.start,
                "end_date": window.end,
                "total_income": cents_to_amount(income),
                "total_expenses": cents_to_amount(expenses),
                "net_savings": cents_to_amount(net),
                "savings_rate": round_percent(percent_of(net, income)),
                "accounts_balance": cents_to_amount(self._accounts_balance()),
                "transaction_count": count,
                "avg_daily_expense": cents_to_amount(Decimal(expenses) / window.days),
                "top_categories": self._category_breakdown(
                    window.start, window.end, TransactionType.expense, limit=5
                ),
                "recent_transactions": self._recent(window.start, window.end),
            }

        return self._cached("analytics:overview", window, compute)

    def _type_report(
        self, operation: str, txn_type: TransactionType, start: date, end: date
    ) -> dict[str, object]:
        validate_window(start, end, today=self.today())
        window = Period(AnalyticsPeriod.custom.value, start, end)
        label = "expenses" if txn_type == TransactionType.expense else "income"
        singular = "expense" if txn_type == TransactionType.expense else "income"

        def compute() -> dict[str, object]:
            total, count = self._summary(start, end, txn_type)
            average = Decimal(total) / count if count else Decimal(0)
            return {
                "start_date": start,
                "end_date": end,
                f"total_{label}": cents_to_amount(total),
                "transaction_count": count,
                f"avg_daily_{singular}": cents_to_amount(Decimal(total) / window.days),
                "avg_transaction_amount": cents_to_amount(average),
                "by_category": self._category_breakdown(start, end, txn_type),
                f"largest_{singular}": self._largest(start, end, txn_type),
                "daily_breakdown": self._daily_breakdown(start, end, txn_type),
            }

        return self._cached(operation, window, compute)

    def spending(self, start: date, end: date) -> dict[str, object]:
        return self._type_report(
            "analytics:spending", TransactionType.expense, start, end
        )

    def income(self, start: date, end: date) -> dict[str, object]:
        return self._type_report("analytics:income", TransactionType.income, start, end)

    def trends(
        self, period: AnalyticsPeriod = AnalyticsPeriod.month, intervals: int = 6
    ) -> dict[str, object]:
        if not TREND_MIN_INTERVALS <= intervals <= TREND_MAX_INTERVALS:
            raise InvalidArgument(
                f"intervals must be between {TREND_MIN_INTERVALS} and {TREND_MAX_INTERVALS}",
                details={"intervals": intervals},
            )
        if period == AnalyticsPeriod.custom:
            raise InvalidArgument("Trends support week, month or year periods")

        today = self.today()
        series = []
        for intervals_ago in range(intervals - 1, -1, -1):
            window, label = trend_interval(period, intervals_ago, today=today)
            income, expenses = self._income_and_expenses(window.start, window.end)
            net = income - expenses
            series.append(
                {
                    "label": label,
                    "start_date": window.start,
                    "end_date": window.end,
                    "income": cents_to_amount(income),
                    "expenses": cents_to_amount(expenses),
                    "net_savings": cents_to_amount(net),
                    "savings_rate": round_percent(percent_of(net, income)),
                }
            )
        return {"period": period.value, "intervals": intervals, "data": series}

    def categories_distribution(
        self,
        period: AnalyticsPeriod = AnalyticsPeriod.month,
        reference: Optional[date] = None,
        start: Optional[date] = None,
        end: Optional[date] = None,
    ) -> dict[str, object]:
        window = self._window(period, reference, start, end)

        def compute() -> dict[str, object]:
            total, _ = self._summary(window.start, window.end, TransactionType.expense)
            return {
                "period": window.slug,
                "start_date": window.start,
                "end_date": window.end,
                "total_expenses": cents_to_amount(total),
                "categories": self._category_breakdown(
                    window.start, window.end, TransactionType.expense
                ),
            }

        return self._cached("analytics:categories", window, compute)

    def comparison(
        self,
        current_start: date,
        current_end: date,
        previous_start: date,
        previous_end: date,
    ) -> dict[str, object]:
        today = self.today()
        validate_window(current_start, current_end, today=today)
        validate_window(previous_start, previous_end, today=today)
        current = Period(AnalyticsPeriod.custom.value, current_start, current_end)

        def side(start: date, end: date) -> tuple[dict[str, object], int, int, int]:
            income, expenses = self._income_and_expenses(start, end)
            net = income - expenses
            payload = {
                "start_date": start,
                "end_date": end,
                "income": cents_to_amount(income),
                "expenses": cents_to_amount(expenses),
                "net_savings": cents_to_amount(net),
            }
            return payload, income, expenses, net

        def compute() -> dict[str, object]:
            cur, cur_income, cur_expenses, cur_net = side(current_start, current_end)
            prev, prev_income, prev_expenses, prev_net = side(
                previous_start, previous_end
            )
            return {
                "current": cur,
                "previous": prev,
                "changes": {
                    "income_change": percent_change(cur_income, prev_income),
                    "income_change_amount": cents_to_amount(cur_income - prev_income),
                    "expenses_change": percent_change(cur_expenses, prev_expenses),
                    "expenses_change_amount": cents_to_amount(
                        cur_expenses - prev_expenses
                    ),
                    "savings_change": percent_change(cur_net, prev_net),
                    "savings_change_amount": cents_to_amount(cur_net - prev_net),
                },
            }

        return self._cached(
            "analytics:comparison",
            current,
            compute,
            previous_start=previous_start,
            previous_end=previous_end,
        )


class CSVService(_UserScopedService):
    def _account_lookup(self) -> dict[str, int]:
        stmt = select(Account.id, Account.name).where(Account.user_id == self.user_id)
        return {row.name.lower(): row.id for row in self.session.execute(stmt)}

    def _category_lookup(self) -> dict[tuple[TransactionType, str], int]:
        stmt = select(Category.id, Category.type, Category.name, Category.user_id).where(
            or_(Category.user_id.is_(None), Category.user_id == self.user_id)
        )
        lookup: dict[tuple[TransactionType, str], int] = {}
        # User categories shadow defaults with the same name.
        for row in sorted(self.session.execute(stmt), key=lambda r: r.user_id is not None):
            lookup[(row.type, row.name.lower())] = row.id
        return lookup

    def preview(self, content: str) -> tuple[list[dict[str, object]], list[str]]:
        rows, errors = parse_csv(content)
        accounts = self._account_lookup()
        categories = self._category_lookup()
        today = self.today()
        preview_rows: list[dict[str, object]] = []
        for idx, row in rows:
            account_id = accounts.get(row.account.lower())
            category_id = categories.get((row.type, row.category.lower()))
            if not account_id:
                errors.append(f"Row {idx}: unknown account '{row.account}'")
            if not category_id:
                errors.append(
                    f"Row {idx}: missing category '{row.category}' for {row.type.value}"
                )
            if row.date > today:
                errors.append(f"Row {idx}: date {row.date.isoformat()} is in the future")
            preview_rows.append(
                {
                    "date": row.date,
                    "type": row.type.value,
                    "amount_cents": row.amount_cents,
                    "account": row.account,
                    "account_id": account_id,
                    "category": row.category,
                    "category_id": category_id,
                    "description": row.description,
                    "notes": row.notes,
                }
            )
        return preview_rows, errors

    def commit(self, content: str) -> int:
        preview_rows, errors = self.preview(content)
        if errors:
            raise InvalidArgument("; ".join(errors), details={"errors": errors})
        if not preview_rows:
            raise InvalidArgument("CSV file contains no rows")
        items = [
            TransactionIn(
                account_id=row["account_id"],
                category_id=row["category_id"],
                type=TransactionType(row["type"]),
                amount_cents=row["amount_cents"],
                description=row["description"],
                date=row["date"],
                notes=row["notes"],
            )
            for row in preview_rows
        ]
        service = TransactionService(
            self.session, self.user_id, cache=self.cache, today=self._fixed_today
        )
        return len(service.bulk_create(items))

    def export(
        self, start: Optional[date] = None, end: Optional[date] = None
    ) -> str:
        stmt = (
            select(Transaction)
            .where(Transaction.user_id == self.user_id)
            .order_by(Transaction.date, Transaction.id)
        )
        if start:
            stmt = stmt.where(Transaction.date >= start)
        if end:
            stmt = stmt.where(Transaction.date <= end)
        return export_transactions(self.session.scalars(stmt).all())
