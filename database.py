import logging
import time
from contextlib import contextmanager
from typing import Callable, Iterator, Optional, TypeVar

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.exc import DBAPIError, IntegrityError
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker

from config import get_settings
from errors import Conflict, TransientStorageConflict

logger = logging.getLogger(__name__)

T = TypeVar("T")

# serialization_failure, deadlock_detected
SERIALIZATION_SQLSTATES = {"40001", "40P01"}

# Connection execution option marking a transaction that will write.
WRITE_OPTION = "ledger_write"


def create_ledger_engine(
    database_url: Optional[str] = None,
    *,
    isolation_level: Optional[str] = None,
    **engine_kwargs: object,
) -> Engine:
    settings = get_settings()
    url = database_url or settings.database_url
    connect_args: dict[str, object] = {}
    if url.startswith("sqlite"):
        connect_args["check_same_thread"] = False
        connect_args["timeout"] = 30
    else:
        # SQLite transactions are opened by _begin_sqlite below; setting an
        # isolation level there would make pysqlite emit its own BEGIN.
        engine_kwargs.setdefault(
            "isolation_level", isolation_level or settings.isolation_level
        )

    connect_args.update(engine_kwargs.pop("connect_args", None) or {})

    eng = create_engine(url, connect_args=connect_args, **engine_kwargs)
    if url.startswith("sqlite"):
        event.listen(eng, "connect", _enable_sqlite_pragmas)
        event.listen(eng, "begin", _begin_sqlite)
    return eng


def _enable_sqlite_pragmas(dbapi_conn, _record):
    dbapi_conn.isolation_level = None
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA journal_mode=WAL;")
    cursor.execute("PRAGMA foreign_keys=ON;")
    cursor.close()


def _begin_sqlite(conn):
    # Write units take the write lock up front; reads stay deferred and see a
    # WAL snapshot without blocking writers.
    if conn.get_execution_options().get(WRITE_OPTION):
        conn.exec_driver_sql("BEGIN IMMEDIATE")
    else:
        conn.exec_driver_sql("BEGIN")


engine = create_ledger_engine()
SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


class Base(DeclarativeBase):
    pass


@contextmanager
def session_scope() -> Iterator[Session]:
    session: Session = SessionLocal()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def is_serialization_failure(exc: DBAPIError) -> bool:
    orig = exc.orig
    code = getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)
    if code in SERIALIZATION_SQLSTATES:
        return True
    message = str(orig).lower()
    return (
        "database is locked" in message
        or "database is busy" in message
        or "could not serialize" in message
    )


def run_serializable(
    session: Session,
    unit: Callable[[], T],
    *,
    label: str = "unit",
    attempts: Optional[int] = None,
    backoff_secs: Optional[float] = None,
) -> T:
    """Run ``unit`` and commit it as one atomic transaction.

    The unit must do all of its reads and writes through ``session`` so a
    rollback discards everything it did. An open read transaction on
    ``session`` is committed first; the unit then runs in a fresh
    transaction flagged as a write, which SQLite opens with BEGIN
    IMMEDIATE. Serialization failures detected by the store roll back and
    re-run the unit, up to ``attempts`` times; after that a
    ``TransientStorageConflict`` is raised. Integrity violations become
    ``Conflict``. Anything else is rolled back and re-raised unchanged.
    """
    settings = get_settings()
    attempts = attempts or settings.retry_attempts
    if backoff_secs is None:
        backoff_secs = settings.retry_backoff_secs

    for attempt in range(1, attempts + 1):
        try:
            if session.in_transaction():
                # Close any read snapshot so the unit opens its own write
                # transaction.
                session.commit()
            session.connection(execution_options={WRITE_OPTION: True})
            result = unit()
            session.commit()
            return result
        except IntegrityError as exc:
            session.rollback()
            raise Conflict(
                "Write violates a database constraint", details={"unit": label}
            ) from exc
        except DBAPIError as exc:
            session.rollback()
            if not is_serialization_failure(exc):
                raise
            if attempt >= attempts:
                raise TransientStorageConflict(
                    "Concurrent update conflict, please retry",
                    details={"unit": label, "attempts": attempts},
                ) from exc
            logger.warning(
                f"serializable_retry: unit={label} attempt={attempt} error={exc.orig}"
            )
            time.sleep(backoff_secs * attempt)
        except Exception:
            session.rollback()
            raise
    raise AssertionError("unreachable")
