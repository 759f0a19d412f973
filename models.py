import uuid
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Optional

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    DateTime,
    Enum as SAEnum,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    func,
    true,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from database import Base


def new_id() -> str:
    return str(uuid.uuid4())


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


class TransactionType(str, Enum):
    income = "INCOME"
    expense = "EXPENSE"


class UserRole(str, Enum):
    super_admin = "SUPER_ADMIN"
    admin = "ADMIN"
    user = "USER"
    viewer = "VIEWER"


class CurrencyCode(str, Enum):
    usd = "USD"
    eur = "EUR"
    gbp = "GBP"
    inr = "INR"
    jpy = "JPY"
    cny = "CNY"
    aud = "AUD"
    cad = "CAD"
    other = "OTHER"


class PaymentMethod(str, Enum):
    cash = "CASH"
    cheque = "CHEQUE"
    dd = "DD"
    bank_transfer = "BANK_TRANSFER"
    card = "CARD"
    upi = "UPI"
    other = "OTHER"


def _text_enum(enum_cls: type[Enum], name: str) -> SAEnum:
    # Stored as plain text so provisioning never has to create database types.
    return SAEnum(
        enum_cls,
        name=name,
        native_enum=False,
        length=20,
        values_callable=lambda members: [member.value for member in members],
    )


TRANSACTION_TYPE_ENUM = _text_enum(TransactionType, "transactiontype")
USER_ROLE_ENUM = _text_enum(UserRole, "userrole")
CURRENCY_CODE_ENUM = _text_enum(CurrencyCode, "currencycode")
PAYMENT_METHOD_ENUM = _text_enum(PaymentMethod, "paymentmethod")


class TimestampMixin:
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, server_default=func.current_timestamp(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime,
        default=utcnow,
        onupdate=utcnow,
        server_default=func.current_timestamp(),
        nullable=False,
    )


class Organization(Base, TimestampMixin):
    __tablename__ = "organizations"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text)
    address: Mapped[Optional[str]] = mapped_column(Text)
    phone: Mapped[Optional[str]] = mapped_column(Text)
    email: Mapped[Optional[str]] = mapped_column(Text)

    users: Mapped[list["User"]] = relationship(
        "User",
        back_populates="organization",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    __table_args__ = (Index("ix_organizations_name", "name"),)


class User(Base, TimestampMixin):
    __tablename__ = "users"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    email: Mapped[str] = mapped_column(Text, nullable=False, unique=True)
    password_hash: Mapped[str] = mapped_column(Text, nullable=False)
    first_name: Mapped[str] = mapped_column(Text, nullable=False)
    last_name: Mapped[str] = mapped_column(Text, nullable=False)
    phone: Mapped[Optional[str]] = mapped_column(Text)
    role: Mapped[UserRole] = mapped_column(
        USER_ROLE_ENUM, nullable=False, default=UserRole.user, server_default="USER"
    )
    is_active: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=True, server_default=true()
    )
    organization_id: Mapped[str] = mapped_column(
        ForeignKey("organizations.id", ondelete="CASCADE", onupdate="CASCADE"),
        nullable=False,
    )

    organization: Mapped["Organization"] = relationship(
        "Organization", back_populates="users"
    )

    __table_args__ = (Index("ix_users_organization_id", "organization_id"),)

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()


class Category(Base, TimestampMixin):
    __tablename__ = "categories"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text)
    type: Mapped[TransactionType] = mapped_column(TRANSACTION_TYPE_ENUM, nullable=False)
    organization_id: Mapped[str] = mapped_column(
        ForeignKey("organizations.id", ondelete="CASCADE", onupdate="CASCADE"),
        nullable=False,
    )

    transactions: Mapped[list["Transaction"]] = relationship(
        "Transaction", back_populates="category", passive_deletes=True
    )

    __table_args__ = (
        UniqueConstraint(
            "name", "organization_id", "type", name="uq_category_name_org_type"
        ),
        Index("ix_categories_organization_id", "organization_id"),
    )


class Transaction(Base, TimestampMixin):
    __tablename__ = "transactions"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    type: Mapped[TransactionType] = mapped_column(TRANSACTION_TYPE_ENUM, nullable=False)
    amount: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)
    currency: Mapped[CurrencyCode] = mapped_column(
        CURRENCY_CODE_ENUM, nullable=False, default=CurrencyCode.inr, server_default="INR"
    )
    description: Mapped[str] = mapped_column(Text, nullable=False)
    purpose: Mapped[Optional[str]] = mapped_column(Text)
    payment_method: Mapped[PaymentMethod] = mapped_column(
        PAYMENT_METHOD_ENUM, nullable=False
    )
    payer_payee: Mapped[str] = mapped_column(Text, nullable=False)
    recipient_giver: Mapped[Optional[str]] = mapped_column(Text)
    location: Mapped[Optional[str]] = mapped_column(Text)
    transaction_date: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    organization_id: Mapped[str] = mapped_column(
        ForeignKey("organizations.id", ondelete="CASCADE", onupdate="CASCADE"),
        nullable=False,
    )
    created_by_id: Mapped[str] = mapped_column(
        ForeignKey("users.id", onupdate="CASCADE"), nullable=False
    )
    category_id: Mapped[Optional[str]] = mapped_column(
        ForeignKey("categories.id", ondelete="SET NULL", onupdate="CASCADE")
    )

    category: Mapped[Optional["Category"]] = relationship(
        "Category", back_populates="transactions"
    )
    created_by: Mapped["User"] = relationship("User")
    attachments: Mapped[list["Attachment"]] = relationship(
        "Attachment",
        back_populates="transaction",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="Attachment.created_at",
    )

    __table_args__ = (
        Index("ix_transactions_organization_id", "organization_id"),
        Index("ix_transactions_created_by_id", "created_by_id"),
        Index("ix_transactions_category_id", "category_id"),
        Index("ix_transactions_transaction_date", "transaction_date"),
        Index("ix_transactions_type", "type"),
        CheckConstraint("amount >= 0", name="ck_transactions_amount_positive"),
    )


class Attachment(Base):
    __tablename__ = "attachments"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    filename: Mapped[str] = mapped_column(Text, nullable=False)
    original_name: Mapped[str] = mapped_column(Text, nullable=False)
    mime_type: Mapped[str] = mapped_column(Text, nullable=False)
    size: Mapped[int] = mapped_column(Integer, nullable=False)
    path: Mapped[str] = mapped_column(Text, nullable=False)
    transaction_id: Mapped[str] = mapped_column(
        ForeignKey("transactions.id", ondelete="CASCADE", onupdate="CASCADE"),
        nullable=False,
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, server_default=func.current_timestamp(), nullable=False
    )

    transaction: Mapped["Transaction"] = relationship(
        "Transaction", back_populates="attachments"
    )

    __table_args__ = (Index("ix_attachments_transaction_id", "transaction_id"),)
