import datetime as dt
from datetime import datetime
from decimal import Decimal
from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, EmailStr, Field

from models import TransactionType

Amount = Annotated[Decimal, Field(gt=0, max_digits=12, decimal_places=2)]


class CategoryIn(BaseModel):
    name: str = Field(..., max_length=100)


class CategoryOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    created_at: datetime


class IncomeIn(BaseModel):
    """Income carries no category; a stray ``category_id`` is dropped on parse."""

    type: Literal["income"] = "income"
    amount: Amount
    date: dt.date
    comment: Optional[str] = Field(default=None, max_length=500)


class ExpenseIn(BaseModel):
    type: Literal["expense"] = "expense"
    amount: Amount
    date: dt.date
    category_id: int
    comment: Optional[str] = Field(default=None, max_length=500)


TransactionIn = Annotated[Union[IncomeIn, ExpenseIn], Field(discriminator="type")]


class TransactionOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    type: TransactionType
    amount: Decimal
    category_id: Optional[int]
    category_name: Optional[str]
    date: dt.date
    comment: Optional[str]
    created_at: datetime


class Bucket(BaseModel):
    category_id: Optional[int]
    name: str
    amount: Decimal
    percent: float


class Summary(BaseModel):
    total: Decimal = Decimal("0.00")
    buckets: list[Bucket] = Field(default_factory=list)


class Statistics(BaseModel):
    start: Optional[dt.date] = None
    end: Optional[dt.date] = None
    income: Summary = Field(default_factory=Summary)
    expense: Summary = Field(default_factory=Summary)


class BalanceOut(BaseModel):
    balance: Decimal


class BalanceReconciliationOut(BaseModel):
    stored: Decimal
    recomputed: Decimal
    drift: Decimal


class CredentialsIn(BaseModel):
    email: EmailStr
    password: str = Field(..., max_length=128)


class UserOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    email: str


class TokenOut(BaseModel):
    token: str
    user: UserOut


class Ack(BaseModel):
    message: str
