"""Persistence gateway for the ledger.

The services only talk to :class:`LedgerGateway`; :class:`SQLAlchemyGateway`
is the one concrete store. Every public operation of a service runs inside a
``unit_of_work()`` which commits on success and rolls back on any failure.
"""

import logging
import threading
import weakref
from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Iterator, Optional

from sqlalchemy import delete, func, or_, select, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, joinedload

from config import BudgetGuard
from errors import StorageError, ValidationFault
from models import Category, Transaction


logger = logging.getLogger(__name__)

_MUTABLE_FIELDS = frozenset(
    {"type", "amount", "date", "category_id", "note", "description"}
)


@dataclass(frozen=True)
class TransactionQuery:
    """Filter and window for a listing; sort order is always newest first."""

    user_id: int
    search: str = ""
    date_from: Optional[datetime] = None
    date_to: Optional[datetime] = None
    limit: int = 10
    offset: int = 0


_registry_lock = threading.Lock()
# entries live only while some unit of work holds or waits on them
_user_locks: "weakref.WeakValueDictionary[int, threading.Lock]" = (
    weakref.WeakValueDictionary()
)


def user_lock(user_id: int) -> threading.Lock:
    with _registry_lock:
        lock = _user_locks.get(user_id)
        if lock is None:
            lock = threading.Lock()
            _user_locks[user_id] = lock
        return lock


@contextmanager
def storage_errors(operation: str) -> Iterator[None]:
    try:
        yield
    except SQLAlchemyError as exc:
        raise StorageError(f"{operation} failed: {exc}") from exc


class LedgerGateway(ABC):
    @abstractmethod
    def find_many(self, query: TransactionQuery) -> tuple[list[Transaction], int]:
        """Return one page of matching rows and the total match count."""

    @abstractmethod
    def find_one(self, transaction_id: int) -> Optional[Transaction]:
        pass

    @abstractmethod
    def find_all_in_range(
        self, user_id: int, start: datetime, end: datetime
    ) -> list[Transaction]:
        """All of a user's rows dated within ``[start, end]`` inclusive."""

    @abstractmethod
    def insert(self, values: dict[str, Any]) -> Transaction:
        pass

    @abstractmethod
    def update_by_id(self, transaction_id: int, patch: dict[str, Any]) -> Transaction:
        pass

    @abstractmethod
    def delete_by_id(self, transaction_id: int) -> bool:
        pass

    @abstractmethod
    def get_category(self, category_id: int) -> Optional[Category]:
        pass

    @abstractmethod
    def unit_of_work(self, user_id: Optional[int] = None):
        """Context manager around one logical operation.

        Passing ``user_id`` puts the block under the configured budget guard
        for that user until the commit has finished.
        """


class SQLAlchemyGateway(LedgerGateway):
    def __init__(
        self, session: Session, guard: BudgetGuard = BudgetGuard.advisory_lock
    ) -> None:
        self.session = session
        self.guard = guard

    def _dialect(self) -> str:
        return self.session.get_bind().dialect.name

    def _joined(self):
        # rows already in the identity map may carry a stale category
        return (
            select(Transaction)
            .options(joinedload(Transaction.category), joinedload(Transaction.user))
            .execution_options(populate_existing=True)
        )

    @contextmanager
    def unit_of_work(self, user_id: Optional[int] = None) -> Iterator[None]:
        lock: Optional[threading.Lock] = None
        if user_id is not None and self.guard == BudgetGuard.advisory_lock:
            lock = user_lock(user_id)
            lock.acquire()
        try:
            if user_id is not None:
                self._enter_guard(user_id)
            yield
            self.session.commit()
        except SQLAlchemyError as exc:
            self.session.rollback()
            logger.warning(f"unit_of_work_rollback: user_id={user_id} error={exc}")
            raise StorageError(f"unit of work failed: {exc}") from exc
        except Exception:
            self.session.rollback()
            raise
        finally:
            if lock is not None:
                lock.release()

    def _enter_guard(self, user_id: int) -> None:
        if self.guard == BudgetGuard.serializable:
            if self._dialect() == "sqlite":
                # pysqlite defers BEGIN until the first write; take the write
                # lock before the month is read
                self.session.execute(text("BEGIN IMMEDIATE"))
            else:
                # only honoured when this is the first statement of the transaction
                self.session.connection(
                    execution_options={"isolation_level": "SERIALIZABLE"}
                )
        elif (
            self.guard == BudgetGuard.advisory_lock
            and self._dialect() == "postgresql"
        ):
            self.session.execute(
                text("SELECT pg_advisory_xact_lock(:key)"), {"key": user_id}
            )

    def find_many(self, query: TransactionQuery) -> tuple[list[Transaction], int]:
        conditions = [Transaction.user_id == query.user_id]
        if query.search:
            conditions.append(
                or_(
                    Transaction.note.contains(query.search, autoescape=True),
                    Transaction.description.contains(query.search, autoescape=True),
                )
            )
        if query.date_from is not None:
            conditions.append(Transaction.date >= query.date_from)
        if query.date_to is not None:
            conditions.append(Transaction.date <= query.date_to)

        stmt = (
            self._joined()
            .where(*conditions)
            .order_by(Transaction.date.desc(), Transaction.id.desc())
            .offset(query.offset)
            .limit(query.limit)
        )
        count_stmt = select(func.count(Transaction.id)).where(*conditions)
        with storage_errors("find_many"):
            rows = list(self.session.scalars(stmt).unique().all())
            total = int(self.session.execute(count_stmt).scalar_one() or 0)
        return rows, total

    def find_one(self, transaction_id: int) -> Optional[Transaction]:
        stmt = self._joined().where(Transaction.id == transaction_id)
        with storage_errors("find_one"):
            return self.session.scalar(stmt)

    def find_all_in_range(
        self, user_id: int, start: datetime, end: datetime
    ) -> list[Transaction]:
        stmt = select(Transaction).where(
            Transaction.user_id == user_id, Transaction.date.between(start, end)
        )
        with storage_errors("find_all_in_range"):
            return list(self.session.scalars(stmt).all())

    def insert(self, values: dict[str, Any]) -> Transaction:
        txn = Transaction(**values)
        with storage_errors("insert"):
            self.session.add(txn)
            self.session.flush()
        return txn

    def update_by_id(self, transaction_id: int, patch: dict[str, Any]) -> Transaction:
        unknown = set(patch) - _MUTABLE_FIELDS
        if unknown:
            raise ValidationFault(f"Immutable or unknown fields: {sorted(unknown)}")
        with storage_errors("update_by_id"):
            txn = self.session.get(Transaction, transaction_id)
            if txn is None:
                raise StorageError(f"transaction {transaction_id} vanished")
            for field, value in patch.items():
                setattr(txn, field, value)
            self.session.flush()
        return txn

    def delete_by_id(self, transaction_id: int) -> bool:
        with storage_errors("delete_by_id"):
            result = self.session.execute(
                delete(Transaction).where(Transaction.id == transaction_id)
            )
        return result.rowcount > 0

    def get_category(self, category_id: int) -> Optional[Category]:
        with storage_errors("get_category"):
            return self.session.get(Category, category_id)
