import datetime as dt
from decimal import Decimal
from typing import Annotated, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from amounts import to_cents, to_decimal
from models import SavingsTransactionType, TransactionType

HEX_COLOR_PATTERN = r"^#[0-9A-Fa-f]{6}$"

Name = Annotated[str, Field(min_length=1, max_length=255)]
Color = Annotated[str, Field(max_length=7, pattern=HEX_COLOR_PATTERN)]
Amount = Annotated[Decimal, Field(gt=0, max_digits=12, decimal_places=2)]


def _clean_name(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    clean = value.strip()
    if not clean:
        raise ValueError("El campo no puede estar vacío")
    return clean


def _not_null(value):
    if value is None:
        raise ValueError("El campo no puede ser nulo")
    return value


class AmountMixin(BaseModel):
    @field_validator("amount", mode="before", check_fields=False)
    @classmethod
    def _coerce_amount(cls, value):
        if value is None:
            return value
        return to_decimal(value)

    @property
    def amount_cents(self) -> int:
        return to_cents(self.amount)


class RegisterIn(BaseModel):
    name: Name
    email: str = Field(..., max_length=255, pattern=r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
    password: str = Field(..., min_length=8, max_length=72)

    @field_validator("email")
    @classmethod
    def _normalize_email(cls, value: str) -> str:
        return value.strip().lower()


class LoginIn(BaseModel):
    email: str = Field(..., min_length=1, max_length=255)
    password: str = Field(..., min_length=1, max_length=72)


class IdIn(BaseModel):
    id: int


class CategoryIn(BaseModel):
    name: Name
    color: Color

    @field_validator("name")
    @classmethod
    def _name(cls, value):
        return _clean_name(value)


class CategoryUpdate(BaseModel):
    id: int
    name: Optional[Name] = None
    color: Optional[Color] = None

    @field_validator("name")
    @classmethod
    def _name(cls, value):
        return _clean_name(_not_null(value))

    @field_validator("color")
    @classmethod
    def _color(cls, value):
        return _not_null(value)


class SavingsFundIn(BaseModel):
    name: Name
    description: Optional[str] = None
    color: Color

    @field_validator("name")
    @classmethod
    def _name(cls, value):
        return _clean_name(value)


class SavingsFundUpdate(BaseModel):
    id: int
    name: Optional[Name] = None
    description: Optional[str] = None
    color: Optional[Color] = None

    @field_validator("name")
    @classmethod
    def _name(cls, value):
        return _clean_name(_not_null(value))

    @field_validator("color")
    @classmethod
    def _color(cls, value):
        return _not_null(value)


class TransactionIn(AmountMixin):
    type: TransactionType
    amount: Amount
    category: Name
    description: Optional[str] = None
    date: dt.date
    savings_fund_id: Optional[int] = None

    @field_validator("category")
    @classmethod
    def _category(cls, value):
        return _clean_name(value)


class TransactionUpdate(AmountMixin):
    id: int
    type: Optional[TransactionType] = None
    amount: Optional[Amount] = None
    category: Optional[Name] = None
    description: Optional[str] = None
    date: Optional[dt.date] = None
    savings_fund_id: Optional[int] = None

    @field_validator("type", "amount", "date")
    @classmethod
    def _required(cls, value):
        return _not_null(value)

    @field_validator("category")
    @classmethod
    def _category(cls, value):
        return _clean_name(_not_null(value))


class SavingsTransactionIn(AmountMixin):
    savings_fund_id: int
    type: SavingsTransactionType
    amount: Amount
    description: Optional[str] = None
    date: dt.date


class ReversalIn(BaseModel):
    model_config = ConfigDict(extra="forbid")

    id: int
    description: Optional[str] = None
    date: Optional[dt.date] = None
