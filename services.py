from __future__ import annotations

import logging
import math
import re
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Optional, Union

from pydantic import BaseModel, ValidationError
from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from errors import BudgetExceededError, NotFoundError, ValidationFault
from gateway import LedgerGateway, TransactionQuery, storage_errors
from models import Category, Transaction, TransactionType, User
from periods import Period, local_now, month_period
from schemas import (
    CategoryIn,
    Pagination,
    TransactionIn,
    TransactionOut,
    TransactionPage,
    TransactionPatch,
    UserIn,
    UserPatch,
)


logger = logging.getLogger(__name__)

INSUFFICIENT_INCOME = "insufficient income this month"
BUDGET_EXCEEDED_MESSAGE = "this month's income does not cover this expense"

_AMOUNT_RE = re.compile(r"\d+")


def parse_amount(value: object) -> int:
    """Read an amount in the smallest currency unit.

    Accepts non-negative ints and digit-only strings. Anything else is a data
    fault and is never coerced to zero.
    """
    if isinstance(value, bool):
        raise ValidationFault(f"Amount is not an integer: {value!r}")
    if isinstance(value, int):
        if value < 0:
            raise ValidationFault(f"Amount must be non-negative: {value}")
        return value
    if isinstance(value, str) and _AMOUNT_RE.fullmatch(value.strip()):
        return int(value.strip())
    raise ValidationFault(f"Amount is not an integer: {value!r}")


def _coerce(model: type[BaseModel], data: Union[BaseModel, dict[str, Any]]):
    if isinstance(data, model):
        return data
    try:
        return model.model_validate(data)
    except ValidationError as exc:
        raise ValidationFault(str(exc)) from exc


@dataclass(frozen=True)
class MonthlyAggregate:
    period: Period
    total_income: int
    total_expense: int

    @property
    def balance(self) -> int:
        return self.total_income - self.total_expense


@dataclass(frozen=True)
class BudgetDecision:
    admissible: bool
    reason: Optional[str] = None
    # not computed when the proposal cannot affect the budget
    aggregate: Optional[MonthlyAggregate] = None


class BudgetEvaluator:
    """Decides whether a proposed transaction keeps a month's expenses covered.

    The aggregate is recomputed from the gateway on every call; nothing is
    cached between decisions.
    """

    def __init__(
        self, gateway: LedgerGateway, clock: Callable[[], datetime] = local_now
    ) -> None:
        self.gateway = gateway
        self.clock = clock

    def monthly_aggregate(
        self,
        user_id: int,
        reference_date: Optional[datetime] = None,
        *,
        exclude_id: Optional[int] = None,
    ) -> MonthlyAggregate:
        period = month_period(reference_date or self.clock())
        rows = self.gateway.find_all_in_range(user_id, period.start, period.end)
        income = 0
        expense = 0
        for row in rows:
            if exclude_id is not None and row.id == exclude_id:
                continue
            amount = parse_amount(row.amount)
            if row.type == TransactionType.income:
                income += amount
            elif row.type == TransactionType.expense:
                expense += amount
            else:
                raise ValidationFault(
                    f"Transaction {row.id} has unknown type {row.type!r}"
                )
        return MonthlyAggregate(period, income, expense)

    def evaluate(
        self,
        user_id: int,
        proposed_type: Union[TransactionType, str],
        proposed_amount: object,
        *,
        reference_date: Optional[datetime] = None,
        exclude_id: Optional[int] = None,
    ) -> BudgetDecision:
        try:
            txn_type = TransactionType(proposed_type)
        except ValueError as exc:
            raise ValidationFault(f"Unknown transaction type {proposed_type!r}") from exc
        amount = parse_amount(proposed_amount)
        if txn_type == TransactionType.income or amount == 0:
            return BudgetDecision(admissible=True)

        aggregate = self.monthly_aggregate(
            user_id, reference_date, exclude_id=exclude_id
        )
        if aggregate.total_income < aggregate.total_expense + amount:
            return BudgetDecision(False, INSUFFICIENT_INCOME, aggregate)
        return BudgetDecision(True, None, aggregate)


class TransactionService:
    def __init__(
        self,
        gateway: LedgerGateway,
        evaluator: Optional[BudgetEvaluator] = None,
        clock: Callable[[], datetime] = local_now,
    ) -> None:
        self.gateway = gateway
        self.clock = clock
        self.evaluator = evaluator or BudgetEvaluator(gateway, clock)

    def _require(self, transaction_id: int) -> Transaction:
        txn = self.gateway.find_one(transaction_id)
        if txn is None:
            raise NotFoundError("Transaction not found")
        return txn

    def _require_category(self, category_id: int) -> None:
        if self.gateway.get_category(category_id) is None:
            raise NotFoundError("Category not found")

    def _check_budget(
        self,
        user_id: int,
        txn_type: TransactionType,
        amount: int,
        exclude_id: Optional[int] = None,
    ) -> None:
        decision = self.evaluator.evaluate(
            user_id,
            txn_type,
            amount,
            reference_date=self.clock(),
            exclude_id=exclude_id,
        )
        if decision.admissible:
            return
        aggregate = decision.aggregate
        logger.info(
            f"budget_rejected: user_id={user_id} month={aggregate.period.slug} "
            f"income={aggregate.total_income} expense={aggregate.total_expense} "
            f"proposed={amount}"
        )
        raise BudgetExceededError(BUDGET_EXCEEDED_MESSAGE)

    def create(self, data: Union[TransactionIn, dict[str, Any]]) -> Transaction:
        data = _coerce(TransactionIn, data)
        with self.gateway.unit_of_work(user_id=data.user_id):
            if data.category_id is not None:
                self._require_category(data.category_id)
            self._check_budget(data.user_id, data.type, data.amount)
            txn = self.gateway.insert(data.model_dump())
        logger.info(
            f"transaction_created: id={txn.id} user_id={data.user_id} "
            f"type={data.type.value} amount={data.amount}"
        )
        return txn

    def update(
        self, transaction_id: int, data: Union[TransactionPatch, dict[str, Any]]
    ) -> Transaction:
        data = _coerce(TransactionPatch, data)
        patch = data.model_dump(exclude_unset=True)
        nulled = [f for f in ("type", "amount", "date") if f in patch and patch[f] is None]
        if nulled:
            raise ValidationFault(f"Fields cannot be null: {', '.join(nulled)}")

        with self.gateway.unit_of_work():
            owner_id = self._require(transaction_id).user_id

        with self.gateway.unit_of_work(user_id=owner_id):
            existing = self._require(transaction_id)
            if patch.get("category_id") is not None:
                self._require_category(patch["category_id"])
            # the stored version is replaced, so it must not count twice
            self._check_budget(
                owner_id,
                patch.get("type", existing.type),
                patch.get("amount", existing.amount),
                exclude_id=existing.id,
            )
            txn = self.gateway.update_by_id(transaction_id, patch)
        logger.info(
            f"transaction_updated: id={transaction_id} user_id={owner_id} "
            f"fields={','.join(sorted(patch)) or '-'}"
        )
        return txn

    def delete(self, transaction_id: int) -> bool:
        with self.gateway.unit_of_work():
            self._require(transaction_id)
            self.gateway.delete_by_id(transaction_id)
        logger.info(f"transaction_deleted: id={transaction_id}")
        return True


class TransactionQueryService:
    def __init__(self, gateway: LedgerGateway) -> None:
        self.gateway = gateway

    def list_by_user(
        self,
        user_id: int,
        page: int = 1,
        limit: int = 10,
        search: str = "",
        *,
        date_from: Optional[datetime] = None,
        date_to: Optional[datetime] = None,
    ) -> TransactionPage:
        query = TransactionQuery(
            user_id=user_id,
            search=search or "",
            date_from=date_from,
            date_to=date_to,
            limit=limit,
            offset=(page - 1) * limit,
        )
        with self.gateway.unit_of_work():
            rows, total = self.gateway.find_many(query)
            data = [TransactionOut.model_validate(row) for row in rows]
        return TransactionPage(
            data=data,
            pagination=Pagination(
                total=total,
                page=page,
                limit=limit,
                total_page=math.ceil(total / limit),
            ),
        )

    def get_by_id(self, transaction_id: int) -> TransactionOut:
        with self.gateway.unit_of_work():
            txn = self.gateway.find_one(transaction_id)
            if txn is None:
                raise NotFoundError("Transaction not found")
            return TransactionOut.model_validate(txn)


class UserService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def list_all(self) -> list[User]:
        with storage_errors("list_users"):
            return list(self.session.scalars(select(User).order_by(User.id)).all())

    def get(self, user_id: int) -> User:
        with storage_errors("get_user"):
            user = self.session.get(User, user_id)
        if not user:
            raise NotFoundError("User not found")
        return user

    def _email_taken(self, email: str, *, exclude_id: Optional[int] = None) -> bool:
        stmt = select(func.count(User.id)).where(func.lower(User.email) == email.lower())
        if exclude_id is not None:
            stmt = stmt.where(User.id != exclude_id)
        return (self.session.execute(stmt).scalar_one() or 0) > 0

    def create(self, data: UserIn) -> User:
        email = data.email.strip()
        with storage_errors("create_user"):
            if self._email_taken(email):
                raise ValidationFault("Email already registered")
            user = User(name=data.name.strip(), email=email, number=data.number)
            self.session.add(user)
            self.session.commit()
            self.session.refresh(user)
        return user

    def update(self, user_id: int, data: UserPatch) -> User:
        user = self.get(user_id)
        patch = data.model_dump(exclude_unset=True)
        for field in ("name", "email"):
            if field in patch and patch[field] is None:
                raise ValidationFault(f"{field} cannot be null")
        with storage_errors("update_user"):
            if "email" in patch and self._email_taken(
                patch["email"].strip(), exclude_id=user.id
            ):
                raise ValidationFault("Email already registered")
            for field, value in patch.items():
                setattr(user, field, value.strip() if isinstance(value, str) else value)
            self.session.commit()
            self.session.refresh(user)
        return user


class CategoryService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def list_all(self) -> list[Category]:
        stmt = select(Category).order_by(Category.name, Category.id)
        with storage_errors("list_categories"):
            return list(self.session.scalars(stmt).all())

    def get(self, category_id: int) -> Category:
        with storage_errors("get_category"):
            category = self.session.get(Category, category_id)
        if not category:
            raise NotFoundError("Category not found")
        return category

    def create(self, data: CategoryIn) -> Category:
        category = Category(name=data.name.strip(), description=data.description)
        with storage_errors("create_category"):
            self.session.add(category)
            self.session.commit()
            self.session.refresh(category)
        return category

    def delete(self, category_id: int) -> None:
        category = self.get(category_id)
        with storage_errors("delete_category"):
            # transactions outlive their category
            self.session.execute(
                update(Transaction)
                .where(Transaction.category_id == category_id)
                .values(category_id=None)
            )
            self.session.delete(category)
            self.session.commit()
        logger.info(f"category_deleted: id={category_id}")
