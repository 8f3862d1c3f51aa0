import logging
from datetime import datetime
from typing import Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.responses import JSONResponse, Response
from sqlalchemy.orm import Session

from config import get_settings
from database import SessionLocal, init_db
from errors import NotFoundError, StorageError
from gateway import SQLAlchemyGateway
from periods import resolve_month
from schemas import (
    CategoryIn,
    CategoryOut,
    MonthlySummaryOut,
    TransactionFields,
    TransactionIn,
    TransactionOut,
    TransactionPage,
    TransactionPatch,
    UserIn,
    UserPatch,
    UserSummary,
)
from services import (
    BudgetEvaluator,
    CategoryService,
    TransactionQueryService,
    TransactionService,
    UserService,
)


settings = get_settings()
logging.basicConfig(level=settings.log_level)
logger = logging.getLogger(__name__)

app = FastAPI(title="Ledger")


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_gateway(db: Session = Depends(get_db)) -> SQLAlchemyGateway:
    return SQLAlchemyGateway(db, guard=get_settings().budget_guard)


def current_user_id(
    x_user_id: int = Header(..., alias="X-User-Id"),
    db: Session = Depends(get_db),
) -> int:
    # authentication happens upstream; the caller's identity arrives as a header
    try:
        UserService(db).get(x_user_id)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    # end the lookup's read so the unit of work can pick its isolation level
    db.commit()
    return x_user_id


@app.on_event("startup")
def startup_event():
    init_db()


@app.exception_handler(StorageError)
async def storage_error_handler(request: Request, exc: StorageError):
    logger.error(f"storage_error: path={request.url.path}", exc_info=exc)
    return JSONResponse(status_code=500, content={"detail": "Storage failure"})


def _owned_transaction(
    gateway: SQLAlchemyGateway, transaction_id: int, user_id: int
) -> TransactionOut:
    try:
        txn = TransactionQueryService(gateway).get_by_id(transaction_id)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    if txn.user_id != user_id:
        raise HTTPException(status_code=404, detail="Transaction not found")
    return txn


@app.get("/api/transactions", response_model=TransactionPage)
def list_transactions(
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    search: str = "",
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    user_id: int = Depends(current_user_id),
    gateway: SQLAlchemyGateway = Depends(get_gateway),
):
    return TransactionQueryService(gateway).list_by_user(
        user_id, page, limit, search, date_from=start, date_to=end
    )


@app.get("/api/transactions/{transaction_id}", response_model=TransactionOut)
def get_transaction(
    transaction_id: int,
    user_id: int = Depends(current_user_id),
    gateway: SQLAlchemyGateway = Depends(get_gateway),
):
    return _owned_transaction(gateway, transaction_id, user_id)


@app.post("/api/transactions", response_model=TransactionOut, status_code=201)
def create_transaction(
    payload: TransactionFields,
    user_id: int = Depends(current_user_id),
    gateway: SQLAlchemyGateway = Depends(get_gateway),
):
    data = TransactionIn(user_id=user_id, **payload.model_dump())
    try:
        txn = TransactionService(gateway).create(data)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return TransactionQueryService(gateway).get_by_id(txn.id)


@app.put("/api/transactions/{transaction_id}", response_model=TransactionOut)
def update_transaction(
    transaction_id: int,
    payload: TransactionPatch,
    user_id: int = Depends(current_user_id),
    gateway: SQLAlchemyGateway = Depends(get_gateway),
):
    _owned_transaction(gateway, transaction_id, user_id)
    try:
        TransactionService(gateway).update(transaction_id, payload)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return TransactionQueryService(gateway).get_by_id(transaction_id)


@app.delete("/api/transactions/{transaction_id}", status_code=204)
def delete_transaction(
    transaction_id: int,
    user_id: int = Depends(current_user_id),
    gateway: SQLAlchemyGateway = Depends(get_gateway),
):
    _owned_transaction(gateway, transaction_id, user_id)
    try:
        TransactionService(gateway).delete(transaction_id)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return Response(status_code=204)


@app.get("/api/summary/monthly", response_model=MonthlySummaryOut)
def monthly_summary(
    month: Optional[str] = None,
    user_id: int = Depends(current_user_id),
    gateway: SQLAlchemyGateway = Depends(get_gateway),
):
    try:
        period = resolve_month(month)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    with gateway.unit_of_work():
        aggregate = BudgetEvaluator(gateway).monthly_aggregate(user_id, period.start)
    return MonthlySummaryOut(
        month=aggregate.period.slug,
        start=aggregate.period.start,
        end=aggregate.period.end,
        total_income=aggregate.total_income,
        total_expense=aggregate.total_expense,
        balance=aggregate.balance,
    )


@app.get("/api/categories", response_model=list[CategoryOut])
def list_categories(db: Session = Depends(get_db)):
    return CategoryService(db).list_all()


@app.post("/api/categories", response_model=CategoryOut, status_code=201)
def create_category(payload: CategoryIn, db: Session = Depends(get_db)):
    return CategoryService(db).create(payload)


@app.delete("/api/categories/{category_id}", status_code=204)
def delete_category(category_id: int, db: Session = Depends(get_db)):
    try:
        CategoryService(db).delete(category_id)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return Response(status_code=204)


@app.get("/api/users", response_model=list[UserSummary])
def list_users(db: Session = Depends(get_db)):
    return UserService(db).list_all()


@app.get("/api/users/{user_id}", response_model=UserSummary)
def get_user(user_id: int, db: Session = Depends(get_db)):
    try:
        return UserService(db).get(user_id)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc


@app.post("/api/users", response_model=UserSummary, status_code=201)
def create_user(payload: UserIn, db: Session = Depends(get_db)):
    try:
        return UserService(db).create(payload)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


@app.put("/api/users/{user_id}", response_model=UserSummary)
def update_user(user_id: int, payload: UserPatch, db: Session = Depends(get_db)):
    try:
        return UserService(db).update(user_id, payload)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
