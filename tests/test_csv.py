import csv
from datetime import date
from io import StringIO

import pytest
from sqlalchemy import create_engine, select
from sqlalchemy.orm import sessionmaker

from cache import InMemoryCache
from csv_utils import CSV_COLUMNS, parse_amount, parse_csv, parse_date, sanitize_csv_value
from database import Base
from errors import InvalidArgument
from models import Account, AccountType, Category, Transaction, TransactionType
from schemas import TransactionIn
from services import CSVService, TransactionService

TODAY = date(2025, 6, 15)
HEADER = ",".join(CSV_COLUMNS)


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
    default_salary = Category(user_id=None, name="Salary", type=TransactionType.income)
    own_salary = Category(user_id=1, name="salary", type=TransactionType.income)
    session.add_all([account, food, default_salary, own_salary])
    session.commit()
    return account, food, own_salary


def test_parse_amount_formats() -> None:
    assert parse_amount("12.50") == 1250
    assert parse_amount("€ 1.234,56") == 123456
    assert parse_amount("7") == 700
    with pytest.raises(ValueError):
        parse_amount("0")
    with pytest.raises(ValueError):
        parse_amount("abc")


def test_parse_date_formats() -> None:
    assert parse_date("2025-06-01") == date(2025, 6, 1)
    assert parse_date("01.06.2025") == date(2025, 6, 1)
    with pytest.raises(ValueError):
        parse_date("06/01/2025")


def test_parse_csv_reports_bad_rows_by_line() -> None:
    content = "\n".join(
        [
            HEADER,
            "2025-06-01,expense,10.00,Checking,Food,Lunch,",
            "2025-06-02,transfer,10.00,Checking,Food,Lunch,",
            "2025-06-03,income,-5,Checking,Salary,Pay,",
            "2025-06-04,expense,3.20,Checking,Food,Coffee,Oat milk",
        ]
    )

    rows, errors = parse_csv(content)

    assert [idx for idx, _ in rows] == [1, 4]
    assert rows[1][1].notes == "Oat milk"
    assert rows[0][1].notes is None
    assert [e.split(":")[0] for e in errors] == ["Row 2", "Row 3"]


def test_sanitize_neutralizes_formulas() -> None:
    assert sanitize_csv_value("=SUM(A1:A2)") == "\t=SUM(A1:A2)"
    assert sanitize_csv_value("https://example.com") == "\thttps://example.com"
    assert sanitize_csv_value("  Groceries ") == "Groceries"
    assert sanitize_csv_value("   ") == ""


def test_preview_resolves_names_and_flags_problems() -> None:
    session = make_session()
    account, food, own_salary = seed(session)
    service = CSVService(session, 1, cache=InMemoryCache(), today=TODAY)
    content = "\n".join(
        [
            HEADER,
            "2025-06-01,income,100,checking,SALARY,Pay,",
            "2025-06-02,expense,10,Savings,Food,Lunch,",
            "2025-06-03,expense,10,Checking,Travel,Train,",
            "2025-06-20,expense,10,Checking,Food,Dinner,",
        ]
    )

    rows, errors = service.preview(content)

    assert rows[0]["account_id"] == account.id
    assert rows[0]["category_id"] == own_salary.id
    assert errors == [
        "Row 2: unknown account 'Savings'",
        "Row 3: missing category 'Travel' for expense",
        "Row 4: date 2025-06-20 is in the future",
    ]


def test_commit_imports_atomically() -> None:
    session = make_session()
    account, food, _ = seed(session)
    cache = InMemoryCache()
    service = CSVService(session, 1, cache=cache, today=TODAY)
    good = "\n".join(
        [
            HEADER,
            "2025-06-01,income,100,Checking,Salary,Pay,",
            "2025-06-02,expense,12.34,Checking,Food,Lunch,",
        ]
    )

    assert service.commit(good) == 2
    balance = session.execute(
        select(Account.balance_cents).where(Account.id == account.id)
    ).scalar_one()
    assert balance == 10_000 - 1_234

    with pytest.raises(InvalidArgument):
        service.commit(good + "\n2025-06-03,expense,1,Nowhere,Food,Bad,")
    with pytest.raises(InvalidArgument):
        service.commit(HEADER)
    assert len(session.scalars(select(Transaction)).all()) == 2


def test_export_sanitizes_and_filters_by_date() -> None:
    session = make_session()
    account, food, _ = seed(session)
    cache = InMemoryCache()
    TransactionService(session, 1, cache=cache, today=TODAY).create(
        TransactionIn(
            account_id=account.id,
            category_id=food.id,
            type=TransactionType.expense,
            amount_cents=1_999,
            description="=HYPERLINK(\"x\")",
            date=date(2025, 6, 3),
        )
    )

    content = CSVService(session, 1, cache=cache, today=TODAY).export(
        start=date(2025, 6, 1), end=date(2025, 6, 30)
    )
    rows = list(csv.reader(StringIO(content)))

    assert rows[0] == CSV_COLUMNS
    assert rows[1][:5] == ["2025-06-03", "expense", "19.99", "Checking", "Food"]
    assert rows[1][5].startswith("\t=")
    assert CSVService(session, 1, cache=cache, today=TODAY).export(
        start=date(2025, 6, 4)
    ) == HEADER + "\r\n"
