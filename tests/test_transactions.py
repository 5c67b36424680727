from datetime import date

import pytest
from sqlalchemy import create_engine, select, update
from sqlalchemy.orm import sessionmaker

from cache import InMemoryCache
from database import Base
from errors import Conflict, Forbidden, InvalidArgument, NotFound, TransientStorageConflict
from models import Account, AccountType, Category, Transaction, TransactionType
from schemas import AccountIn, TransactionIn, TransactionPatch
from services import (
    AccountService,
    TransactionFilters,
    TransactionService,
    ledger_balance_cents,
    recalculate_all_balances,
)

TODAY = date(2025, 6, 15)


def make_session():
    engine = create_engine(
        "sqlite+pysqlite:///:memory:", connect_args={"check_same_thread": False}
    )
    Base.metadata.create_all(engine)
    SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    return SessionLocal()


def seed(session, user_id: int = 1):
    cache = InMemoryCache()
    account = AccountService(session, user_id, cache=cache).create(
        AccountIn(name="Checking", type=AccountType.bank)
    )
    salary = Category(user_id=user_id, name="Salary", type=TransactionType.income)
    food = Category(user_id=user_id, name="Food", type=TransactionType.expense)
    session.add_all([salary, food])
    session.commit()
    service = TransactionService(session, user_id, cache=cache, today=TODAY)
    return service, account, salary, food


def balance_of(session, account_id: int) -> int:
    return session.execute(
        select(Account.balance_cents).where(Account.id == account_id)
    ).scalar_one()


def txn_in(account, category, amount_cents: int, **overrides) -> TransactionIn:
    values = dict(
        account_id=account.id,
        category_id=category.id,
        type=category.type,
        amount_cents=amount_cents,
        description="Entry",
        date=date(2025, 6, 10),
    )
    values.update(overrides)
    return TransactionIn(**values)


def test_balance_follows_create_and_delete() -> None:
    session = make_session()
    service, account, salary, food = seed(session)

    assert balance_of(session, account.id) == 0

    service.create(txn_in(account, salary, 50_000))
    assert balance_of(session, account.id) == 50_000

    expense = service.create(txn_in(account, food, 20_000))
    assert balance_of(session, account.id) == 30_000

    service.delete(expense.id)
    assert balance_of(session, account.id) == 50_000
    assert ledger_balance_cents(session, account.id) == 50_000


def test_update_moves_effect_between_accounts() -> None:
    session = make_session()
    service, checking, salary, food = seed(session)
    savings = AccountService(session, 1, cache=InMemoryCache()).create(
        AccountIn(name="Savings", type=AccountType.bank)
    )

    txn = service.create(txn_in(checking, food, 12_000))
    assert balance_of(session, checking.id) == -12_000

    service.update(txn.id, TransactionPatch(account_id=savings.id, amount_cents=5_000))

    assert balance_of(session, checking.id) == 0
    assert balance_of(session, savings.id) == -5_000


def test_update_type_change_flips_sign() -> None:
    session = make_session()
    service, account, salary, food = seed(session)

    txn = service.create(txn_in(account, food, 8_000))
    service.update(
        txn.id, TransactionPatch(type=TransactionType.income, category_id=salary.id)
    )

    assert balance_of(session, account.id) == 8_000
    assert balance_of(session, account.id) == ledger_balance_cents(session, account.id)


def test_update_rejects_type_without_matching_category() -> None:
    session = make_session()
    service, account, salary, food = seed(session)
    txn = service.create(txn_in(account, food, 8_000))

    with pytest.raises(InvalidArgument):
        service.update(txn.id, TransactionPatch(type=TransactionType.income))

    assert balance_of(session, account.id) == -8_000


def test_update_rejects_null_for_required_field() -> None:
    session = make_session()
    service, account, salary, food = seed(session)
    txn = service.create(txn_in(account, food, 8_000))

    with pytest.raises(InvalidArgument):
        service.update(txn.id, TransactionPatch(amount_cents=None))


def test_category_type_mismatch_is_rejected_before_writing() -> None:
    session = make_session()
    service, account, salary, food = seed(session)

    with pytest.raises(InvalidArgument):
        service.create(txn_in(account, food, 1_000, type=TransactionType.income))

    assert session.scalar(select(Transaction.id)) is None
    assert balance_of(session, account.id) == 0


def test_future_dated_transaction_is_rejected() -> None:
    session = make_session()
    service, account, salary, food = seed(session)

    with pytest.raises(InvalidArgument):
        service.create(txn_in(account, food, 1_000, date=date(2025, 6, 16)))


def test_unknown_and_foreign_entities() -> None:
    session = make_session()
    service, account, salary, food = seed(session)
    other_service, other_account, _, _ = seed(session, user_id=2)

    with pytest.raises(NotFound):
        service.create(txn_in(account, food, 1_000, account_id=9999))
    with pytest.raises(Forbidden):
        service.create(txn_in(other_account, food, 1_000))

    txn = service.create(txn_in(account, food, 1_000))
    with pytest.raises(Forbidden):
        other_service.get(txn.id)
    with pytest.raises(Forbidden):
        other_service.delete(txn.id)
    with pytest.raises(NotFound):
        service.get(424242)


def test_default_category_is_usable_by_every_user() -> None:
    session = make_session()
    service, account, salary, food = seed(session)
    shared = Category(user_id=None, name="Gifts", type=TransactionType.income)
    session.add(shared)
    session.commit()

    service.create(txn_in(account, shared, 2_500))

    assert balance_of(session, account.id) == 2_500


def test_recalculate_repairs_drift_and_is_idempotent() -> None:
    session = make_session()
    service, account, salary, food = seed(session)
    service.create(txn_in(account, salary, 10_000))
    service.create(txn_in(account, food, 3_000))

    session.execute(
        update(Account).where(Account.id == account.id).values(balance_cents=1)
    )
    session.commit()

    first = service.recalculate_balance(account.id)
    second = service.recalculate_balance(account.id)

    assert str(first["drift"]) == "-69.99"
    assert first["balance"] == second["balance"]
    assert second["drift"] == 0
    assert balance_of(session, account.id) == 7_000


def test_recalculate_all_balances_reports_drifted_accounts() -> None:
    session = make_session()
    service, account, salary, food = seed(session)
    service.create(txn_in(account, salary, 10_000))
    session.execute(
        update(Account).where(Account.id == account.id).values(balance_cents=0)
    )
    session.commit()

    drifted = recalculate_all_balances(session, cache=InMemoryCache())

    assert [d["account_id"] for d in drifted] == [account.id]
    assert drifted[0]["drift_cents"] == -10_000
    assert recalculate_all_balances(session, cache=InMemoryCache()) == []


def test_bulk_create_applies_net_delta_per_account() -> None:
    session = make_session()
    service, account, salary, food = seed(session)

    created = service.bulk_create(
        [
            txn_in(account, salary, 40_000),
            txn_in(account, food, 2_500),
            txn_in(account, food, 7_500),
        ]
    )

    assert len(created) == 3
    assert balance_of(session, account.id) == 30_000


def test_bulk_create_is_all_or_nothing() -> None:
    session = make_session()
    service, account, salary, food = seed(session)

    with pytest.raises(InvalidArgument):
        service.bulk_create(
            [
                txn_in(account, salary, 40_000),
                txn_in(account, food, 1_000, type=TransactionType.income),
            ]
        )

    assert session.scalar(select(Transaction.id)) is None
    assert balance_of(session, account.id) == 0


def test_bulk_create_errors_name_the_failing_item() -> None:
    session = make_session()
    service, account, salary, food = seed(session)
    stranger = AccountService(session, 2, cache=InMemoryCache()).create(
        AccountIn(name="Savings", type=AccountType.bank)
    )

    with pytest.raises(NotFound) as excinfo:
        service.bulk_create(
            [
                txn_in(account, food, 1_000),
                txn_in(account, food, 1_000, category_id=9_999),
            ]
        )
    assert excinfo.value.message == "Item 1: Category not found"
    assert excinfo.value.details == {"id": 9_999, "index": 1}

    with pytest.raises(Forbidden) as excinfo:
        service.bulk_create([txn_in(account, food, 500), txn_in(stranger, food, 500)])
    assert excinfo.value.message.startswith("Item 1: ")
    assert excinfo.value.details["index"] == 1

    assert session.scalar(select(Transaction.id)) is None


def test_bulk_create_limits() -> None:
    session = make_session()
    service, account, salary, food = seed(session)
    service.bulk_max_items = 2

    with pytest.raises(InvalidArgument):
        service.bulk_create([txn_in(account, food, 100)] * 3)

    service.bulk_timeout_secs = 0
    with pytest.raises(TransientStorageConflict):
        service.bulk_create([txn_in(account, food, 100)])

    assert session.scalar(select(Transaction.id)) is None
    assert balance_of(session, account.id) == 0


def test_list_filters_and_paginates() -> None:
    session = make_session()
    service, account, salary, food = seed(session)
    for day in range(1, 6):
        service.create(
            txn_in(account, food, 1_000, date=date(2025, 6, day), description=f"Lunch {day}")
        )
    service.create(txn_in(account, salary, 90_000, notes="June payroll"))

    page = service.list(TransactionFilters(type=TransactionType.expense), page=2, limit=2)
    assert page["total"] == 5
    assert page["total_pages"] == 3
    assert page["has_next_page"] and page["has_previous_page"]
    assert [item["description"] for item in page["items"]] == ["Lunch 3", "Lunch 2"]

    found = service.list(TransactionFilters(search="payroll"))
    assert [item["type"] for item in found["items"]] == ["income"]

    with pytest.raises(InvalidArgument):
        service.list(limit=101)


def test_account_with_transactions_cannot_be_deleted() -> None:
    session = make_session()
    service, account, salary, food = seed(session)
    service.create(txn_in(account, food, 1_000))
    accounts = AccountService(session, 1, cache=InMemoryCache())

    with pytest.raises(Conflict):
        accounts.delete(account.id)

    empty = accounts.create(AccountIn(name="Spare", type=AccountType.cash))
    accounts.delete(empty.id)
    assert session.get(Account, empty.id) is None
