import datetime as dt
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from models import DEFAULT_CATEGORY_COLOR, DEFAULT_CATEGORY_ICON, TransactionType
from periods import parse_ymd


def _strict_date(value: object) -> object:
    if value is None or isinstance(value, dt.date):
        return value
    return parse_ymd(value)


class CategoryIn(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: str
    type: TransactionType
    icon: str = Field(default=DEFAULT_CATEGORY_ICON, max_length=16)
    color: str = Field(default=DEFAULT_CATEGORY_COLOR, max_length=7)


class CategoryUpdate(BaseModel):
    """Partial category update; only fields present in the payload are applied."""

    model_config = ConfigDict(extra="forbid")

    name: Optional[str] = None
    type: Optional[TransactionType] = None
    icon: Optional[str] = Field(default=None, max_length=16)
    color: Optional[str] = Field(default=None, max_length=7)
    is_active: Optional[bool] = None


class TransactionIn(BaseModel):
    model_config = ConfigDict(extra="forbid")

    amount: Decimal
    date: dt.date
    category_id: int
    description: Optional[str] = Field(default=None, max_length=255)
    notes: Optional[str] = Field(default=None, max_length=2000)

    @field_validator("date", mode="before")
    @classmethod
    def _check_date(cls, value: object) -> object:
        return _strict_date(value)


class TransactionUpdate(BaseModel):
    """Partial transaction update; an explicit ``null`` for notes clears them."""

    model_config = ConfigDict(extra="forbid")

    amount: Optional[Decimal] = None
    date: Optional[dt.date] = None
    category_id: Optional[int] = None
    description: Optional[str] = Field(default=None, max_length=255)
    notes: Optional[str] = Field(default=None, max_length=2000)

    @field_validator("date", mode="before")
    @classmethod
    def _check_date(cls, value: object) -> object:
        return _strict_date(value)
