from datetime import date
from decimal import Decimal

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from cache import InMemoryCache
from database import Base
from errors import Conflict, Forbidden, InvalidArgument
from models import Account, AccountType, Budget, BudgetPeriod, Category, TransactionType
from schemas import BudgetIn, BudgetPatch, TransactionIn
from services import BudgetFilters, BudgetService, TransactionService, percent_of

TODAY = date(2025, 6, 15)


def make_session():
    engine = create_engine(
        "sqlite+pysqlite:///:memory:", connect_args={"check_same_thread": False}
    )
    Base.metadata.create_all(engine)
    SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    return SessionLocal()


def seed(session):
    account = Account(user_id=1, name="Checking", type=AccountType.bank)
    food = Category(user_id=1, name="Food", type=TransactionType.expense)
    rent = Category(user_id=1, name="Rent", type=TransactionType.expense)
    salary = Category(user_id=1, name="Salary", type=TransactionType.income)
    session.add_all([account, food, rent, salary])
    session.commit()
    cache = InMemoryCache()
    budgets = BudgetService(session, 1, cache=cache, today=TODAY)
    txns = TransactionService(session, 1, cache=cache, today=TODAY)
    return budgets, txns, account, food, rent, salary


def budget_in(category, **overrides) -> BudgetIn:
    values = dict(
        category_id=category.id,
        name="Groceries",
        amount_cents=40_000,
        period=BudgetPeriod.monthly,
        start_date=date(2025, 6, 1),
        alert_threshold=80,
    )
    values.update(overrides)
    return BudgetIn(**values)


def spend(txns, account, category, amount_cents: int, on: date = date(2025, 6, 10)):
    return txns.create(
        TransactionIn(
            account_id=account.id,
            category_id=category.id,
            type=TransactionType.expense,
            amount_cents=amount_cents,
            description="Spend",
            date=on,
        )
    )


def test_end_date_is_derived_from_period() -> None:
    session = make_session()
    budgets, _, _, food, rent, _ = seed(session)

    monthly = budgets.create(budget_in(food, start_date=date(2025, 1, 31)))
    weekly = budgets.create(budget_in(rent, period=BudgetPeriod.weekly))

    assert monthly.end_date == date(2025, 2, 28)
    assert weekly.end_date == date(2025, 6, 8)


def test_start_date_defaults_to_today_and_cannot_be_future() -> None:
    session = make_session()
    budgets, _, _, food, _, _ = seed(session)

    budget = budgets.create(budget_in(food, start_date=None))
    assert budget.start_date == TODAY

    with pytest.raises(InvalidArgument):
        budgets.create(budget_in(food, start_date=date(2025, 6, 16)))


def test_overlapping_budget_is_rejected_and_following_one_accepted() -> None:
    session = make_session()
    budgets, _, _, food, rent, _ = seed(session)
    first = budgets.create(budget_in(food, start_date=date(2025, 5, 1)))
    assert first.end_date == date(2025, 6, 1)

    with pytest.raises(Conflict):
        budgets.create(budget_in(food, start_date=date(2025, 6, 1)))
    with pytest.raises(Conflict):
        budgets.create(budget_in(food, start_date=date(2025, 4, 20)))

    following = budgets.create(budget_in(food, start_date=date(2025, 6, 2)))
    other_category = budgets.create(budget_in(rent, start_date=date(2025, 5, 1)))

    assert following.is_active and other_category.is_active


def test_inactive_budgets_do_not_block() -> None:
    session = make_session()
    budgets, _, _, food, _, _ = seed(session)
    first = budgets.create(budget_in(food))
    budgets.delete(first.id)

    second = budgets.create(budget_in(food))

    assert session.get(Budget, first.id).is_active is False
    assert second.is_active


def test_replace_overlapping_deactivates_conflicts() -> None:
    session = make_session()
    budgets, _, _, food, _, _ = seed(session)
    old = budgets.create(budget_in(food, start_date=date(2025, 5, 20)))

    new = budgets.create(budget_in(food), replace_overlapping=True)

    session.refresh(old)
    assert old.is_active is False
    assert new.is_active is True


def test_update_rechecks_overlap_and_reactivation() -> None:
    session = make_session()
    budgets, _, _, food, rent, _ = seed(session)
    june = budgets.create(budget_in(food))
    may = budgets.create(budget_in(rent, start_date=date(2025, 5, 1)))

    with pytest.raises(Conflict):
        budgets.update(may.id, BudgetPatch(category_id=food.id))

    budgets.update(may.id, BudgetPatch(is_active=False))
    budgets.update(may.id, BudgetPatch(category_id=food.id))
    with pytest.raises(Conflict):
        budgets.update(may.id, BudgetPatch(is_active=True))

    renamed = budgets.update(june.id, BudgetPatch(name="Food June", amount_cents=50_000))
    assert renamed.name == "Food June"
    assert renamed.end_date == date(2025, 7, 1)

    moved = budgets.update(june.id, BudgetPatch(period=BudgetPeriod.weekly))
    assert moved.end_date == date(2025, 6, 8)


def test_budget_requires_expense_category() -> None:
    session = make_session()
    budgets, _, _, _, _, salary = seed(session)

    with pytest.raises(InvalidArgument):
        budgets.create(budget_in(salary))


def test_progress_alert_boundary() -> None:
    session = make_session()
    budgets, txns, account, food, _, _ = seed(session)
    budget = budgets.create(budget_in(food))
    spend(txns, account, food, 32_000)

    progress = budgets.progress(budget.id)

    assert progress["spent"] == Decimal("320.00")
    assert progress["percentage_used"] == Decimal("80")
    assert progress["should_alert"] is True
    assert progress["is_over_budget"] is False
    assert progress["remaining"] == Decimal("80.00")
    assert progress["days_remaining"] == 16


def test_progress_over_budget() -> None:
    session = make_session()
    budgets, txns, account, food, _, _ = seed(session)
    budget = budgets.create(budget_in(food))
    spend(txns, account, food, 30_000)
    spend(txns, account, food, 12_000, on=date(2025, 6, 1))
    spend(txns, account, food, 99_000, on=date(2025, 5, 31))

    progress = budgets.progress(budget.id)

    assert progress["percentage_used"] == Decimal("105")
    assert progress["is_over_budget"] is True
    assert progress["remaining"] == Decimal("-20.00")


def test_progress_is_invalidated_by_transaction_writes() -> None:
    session = make_session()
    budgets, txns, account, food, _, _ = seed(session)
    budget = budgets.create(budget_in(food))

    assert budgets.progress(budget.id)["spent"] == 0
    txn = spend(txns, account, food, 10_000)
    assert budgets.progress(budget.id)["spent"] == Decimal("100.00")
    txns.delete(txn.id)
    assert budgets.progress(budget.id)["spent"] == 0


def test_percentage_guard_for_zero_amount() -> None:
    assert percent_of(500, 0) == 0


def test_overview_orders_by_days_remaining_then_usage() -> None:
    session = make_session()
    budgets, txns, account, food, rent, _ = seed(session)
    travel = Category(user_id=1, name="Travel", type=TransactionType.expense)
    session.add(travel)
    session.commit()

    weekly = budgets.create(
        budget_in(rent, period=BudgetPeriod.weekly, start_date=date(2025, 6, 12))
    )
    low = budgets.create(budget_in(food))
    high = budgets.create(budget_in(travel))
    spend(txns, account, travel, 20_000)
    spend(txns, account, food, 4_000)

    overview = budgets.overview()

    assert [row["budget_id"] for row in overview] == [weekly.id, high.id, low.id]
    assert overview[0]["days_remaining"] == 4


def test_list_filters_and_ownership() -> None:
    session = make_session()
    budgets, _, _, food, rent, _ = seed(session)
    budgets.create(budget_in(food))
    archived = budgets.create(budget_in(rent))
    budgets.delete(archived.id)

    active = budgets.list(BudgetFilters(is_active=True))
    assert active["total"] == 1
    assert active["items"][0]["category"]["name"] == "Food"

    everything = budgets.list(page=1, limit=1)
    assert everything["total"] == 2
    assert everything["has_next_page"] is True

    stranger = BudgetService(session, 2, cache=InMemoryCache(), today=TODAY)
    with pytest.raises(Forbidden):
        stranger.get(archived.id)
    assert stranger.list()["total"] == 0
