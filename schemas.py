from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from models import TransactionType


class UserIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    email: str = Field(..., min_length=3, max_length=255)
    number: Optional[str] = Field(default=None, max_length=30)


class UserPatch(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    email: Optional[str] = Field(default=None, min_length=3, max_length=255)
    number: Optional[str] = Field(default=None, max_length=30)


class CategoryIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    description: Optional[str] = None


class TransactionFields(BaseModel):
    type: TransactionType
    amount: int = Field(..., ge=0)
    date: datetime
    category_id: Optional[int] = None
    note: Optional[str] = Field(default=None, max_length=200)
    description: Optional[str] = Field(default=None, max_length=500)


class TransactionIn(TransactionFields):
    user_id: int


class TransactionPatch(BaseModel):
    """Partial update; only fields present in the payload are applied."""

    model_config = ConfigDict(extra="forbid")

    type: Optional[TransactionType] = None
    amount: Optional[int] = Field(default=None, ge=0)
    date: Optional[datetime] = None
    category_id: Optional[int] = None
    note: Optional[str] = Field(default=None, max_length=200)
    description: Optional[str] = Field(default=None, max_length=500)


class UserSummary(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    email: str
    number: Optional[str] = None


class CategorySummary(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    name: str
    description: Optional[str] = None


class CategoryOut(CategorySummary):
    id: int


class TransactionOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    user_id: int
    category_id: Optional[int] = None
    type: TransactionType
    amount: int
    date: datetime
    note: Optional[str] = None
    description: Optional[str] = None
    created_at: datetime
    updated_at: datetime
    category: Optional[CategorySummary] = None
    user: Optional[UserSummary] = None


class Pagination(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    total: int
    page: int
    limit: int
    total_page: int = Field(..., alias="totalPage")


class TransactionPage(BaseModel):
    data: list[TransactionOut]
    pagination: Pagination


class MonthlySummaryOut(BaseModel):
    month: str
    start: datetime
    end: datetime
    total_income: int
    total_expense: int
    balance: int
