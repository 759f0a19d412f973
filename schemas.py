from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_serializer, field_validator
from pydantic.alias_generators import to_camel

from models import CurrencyCode, PaymentMethod, TransactionType, UserRole

CENT = Decimal("0.01")
# Numeric(14, 2) leaves twelve digits before the decimal point.
MAX_AMOUNT_INTEGER_DIGITS = 12
AMOUNT_TOO_LARGE = (
    f"Amount must have at most {MAX_AMOUNT_INTEGER_DIGITS} digits before the decimal point"
)
EMAIL_PATTERN = r"^[^@\s]+@[^@\s]+\.[^@\s]+$"


def quantize_amount(value: Decimal) -> Decimal:
    if not value.is_finite() or value.adjusted() >= MAX_AMOUNT_INTEGER_DIGITS:
        raise ValueError(AMOUNT_TOO_LARGE)
    rounded = value.quantize(CENT, rounding=ROUND_HALF_UP)
    if rounded.adjusted() >= MAX_AMOUNT_INTEGER_DIGITS:
        raise ValueError(AMOUNT_TOO_LARGE)
    return rounded


class _Input(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, str_strip_whitespace=True
    )


class CategoryIn(_Input):
    name: str = Field(..., min_length=1, max_length=100)
    type: TransactionType
    description: Optional[str] = None


class CategoryUpdate(_Input):
    name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    description: Optional[str] = None


class AttachmentIn(_Input):
    filename: str = Field(..., min_length=1)
    original_name: str = Field(..., min_length=1)
    mime_type: str = Field(..., min_length=1)
    size: int = Field(..., ge=0)
    path: str = Field(..., min_length=1)


class TransactionIn(_Input):
    type: TransactionType
    amount: Decimal = Field(..., ge=0)
    currency: CurrencyCode = CurrencyCode.inr
    description: str = Field(..., min_length=1)
    purpose: Optional[str] = None
    payment_method: PaymentMethod
    payer_payee: str = Field(..., min_length=1)
    recipient_giver: Optional[str] = None
    location: Optional[str] = None
    transaction_date: datetime
    category_id: Optional[str] = None

    @field_validator("amount")
    @classmethod
    def _round_amount(cls, value: Decimal) -> Decimal:
        return quantize_amount(value)

    @field_validator("category_id", mode="before")
    @classmethod
    def _blank_category(cls, value):
        if isinstance(value, str) and not value.strip():
            return None
        return value


class TransactionUpdate(_Input):
    type: Optional[TransactionType] = None
    amount: Optional[Decimal] = Field(default=None, ge=0)
    currency: Optional[CurrencyCode] = None
    description: Optional[str] = Field(default=None, min_length=1)
    purpose: Optional[str] = None
    payment_method: Optional[PaymentMethod] = None
    payer_payee: Optional[str] = Field(default=None, min_length=1)
    recipient_giver: Optional[str] = None
    location: Optional[str] = None
    transaction_date: Optional[datetime] = None
    category_id: Optional[str] = None

    @field_validator("amount")
    @classmethod
    def _round_amount(cls, value: Optional[Decimal]) -> Optional[Decimal]:
        return quantize_amount(value) if value is not None else None

    @field_validator("category_id", mode="before")
    @classmethod
    def _blank_category(cls, value):
        if isinstance(value, str) and not value.strip():
            return None
        return value


# Columns that may never be cleared by a partial update.
REQUIRED_TRANSACTION_FIELDS = (
    "type",
    "amount",
    "currency",
    "description",
    "payment_method",
    "payer_payee",
    "transaction_date",
)


class OrganizationDetails(_Input):
    description: Optional[str] = None
    address: Optional[str] = None
    phone: Optional[str] = None
    email: Optional[str] = None


class RegistrationIn(_Input):
    email: str = Field(..., pattern=EMAIL_PATTERN)
    password: str = Field(..., min_length=6)
    first_name: str = Field(..., min_length=1)
    last_name: str = Field(..., min_length=1)
    organization_name: str = Field(..., min_length=1)
    organization_details: Optional[OrganizationDetails] = None


class OrganizationUpdate(_Input):
    name: Optional[str] = Field(default=None, min_length=1)
    description: Optional[str] = None
    address: Optional[str] = None
    phone: Optional[str] = None
    email: Optional[str] = None


class UserIn(_Input):
    email: str = Field(..., pattern=EMAIL_PATTERN)
    password: str = Field(..., min_length=6)
    first_name: str = Field(..., min_length=1)
    last_name: str = Field(..., min_length=1)
    phone: Optional[str] = None
    role: UserRole = UserRole.user


class UserUpdate(_Input):
    first_name: Optional[str] = Field(default=None, min_length=1)
    last_name: Optional[str] = Field(default=None, min_length=1)
    phone: Optional[str] = None
    role: Optional[UserRole] = None
    is_active: Optional[bool] = None


class LoginIn(_Input):
    email: str = Field(..., pattern=EMAIL_PATTERN)
    password: str = Field(..., min_length=1)


class _Output(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, from_attributes=True
    )


class OrganizationOut(_Output):
    id: str
    name: str
    description: Optional[str] = None
    address: Optional[str] = None
    phone: Optional[str] = None
    email: Optional[str] = None
    created_at: datetime
    updated_at: datetime


class UserOut(_Output):
    id: str
    email: str
    first_name: str
    last_name: str
    phone: Optional[str] = None
    role: UserRole
    is_active: bool
    organization_id: str


class UserBriefOut(_Output):
    id: str
    first_name: str
    last_name: str
    email: str


class CategoryOut(_Output):
    id: str
    name: str
    description: Optional[str] = None
    type: TransactionType
    organization_id: str
    created_at: datetime
    updated_at: datetime


class AttachmentOut(_Output):
    id: str
    filename: str
    original_name: str
    mime_type: str
    size: int
    path: str
    transaction_id: str
    created_at: datetime


class TransactionOut(_Output):
    id: str
    type: TransactionType
    amount: Decimal
    currency: CurrencyCode
    description: str
    purpose: Optional[str] = None
    payment_method: PaymentMethod
    payer_payee: str
    recipient_giver: Optional[str] = None
    location: Optional[str] = None
    transaction_date: datetime
    organization_id: str
    created_by_id: str
    category_id: Optional[str] = None
    created_at: datetime
    updated_at: datetime
    category: Optional[CategoryOut] = None
    created_by: Optional[UserBriefOut] = None
    attachments: list[AttachmentOut] = Field(default_factory=list)

    @field_serializer("amount", when_used="json")
    def _amount_as_number(self, value: Decimal) -> float:
        return float(value)
