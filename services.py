from __future__ import annotations

import logging
import math
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Iterable, Optional, Union

import bcrypt
from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError
from pydantic.alias_generators import to_camel
from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, joinedload, selectinload

from database import translate_store_error
from errors import ConflictError, NotFoundError, ValidationError
from models import (
    Attachment,
    Category,
    Organization,
    Transaction,
    TransactionType,
    User,
    UserRole,
)
from periods import Period, PeriodKind, resolve_period
from reports import Summary, summarize
from schemas import (
    REQUIRED_TRANSACTION_FIELDS,
    AttachmentIn,
    CategoryIn,
    CategoryUpdate,
    OrganizationUpdate,
    RegistrationIn,
    TransactionIn,
    TransactionUpdate,
    UserIn,
    UserUpdate,
)

logger = logging.getLogger(__name__)

MAX_ATTACHMENTS = 5
ALLOWED_ATTACHMENT_TYPES = frozenset(
    {"image/jpeg", "image/jpg", "image/png", "image/gif", "application/pdf"}
)


def hash_password(password: str) -> str:
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def verify_password(password: str, password_hash: str) -> bool:
    try:
        return bcrypt.checkpw(password.encode("utf-8"), password_hash.encode("utf-8"))
    except ValueError:
        return False


def _parse(model: type[BaseModel], data: Union[BaseModel, dict[str, Any]]) -> Any:
    if isinstance(data, model):
        return data
    if isinstance(data, BaseModel):
        data = data.model_dump(exclude_unset=True)
    try:
        return model.model_validate(data)
    except PydanticValidationError as exc:
        raise ValidationError.from_pydantic(exc) from exc


def _naive_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def _commit(session: Session, conflict: Optional[ConflictError] = None) -> None:
    """Commit, or roll back everything staged in this unit of work."""
    try:
        session.commit()
    except IntegrityError as exc:
        session.rollback()
        if conflict is not None:
            raise conflict from exc
        raise ValidationError("Record violates a store constraint") from exc
    except SQLAlchemyError as exc:
        session.rollback()
        translated = translate_store_error(exc)
        if translated is not None:
            raise translated from exc
        raise


def _require_tenant(tenant_id: str) -> str:
    if not tenant_id:
        raise ValidationError.for_field("organizationId", "Tenant is required")
    return tenant_id


@dataclass
class TransactionFilters:
    type: Optional[TransactionType] = None
    start: Optional[datetime] = None
    end: Optional[datetime] = None


@dataclass
class TransactionPage:
    items: list[Transaction]
    total: int
    page: int
    limit: int

    @property
    def pages(self) -> int:
        return math.ceil(self.total / self.limit) if self.limit else 0


class OrganizationService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def register(self, data: Union[RegistrationIn, dict[str, Any]]) -> tuple[Organization, User]:
        """Create a tenant together with its first user, a super admin."""
        payload: RegistrationIn = _parse(RegistrationIn, data)
        email = payload.email.lower()
        if self.session.scalar(select(User.id).where(User.email == email)):
            raise ConflictError("User already exists", "email_exists")

        details = payload.organization_details
        organization = Organization(
            name=payload.organization_name,
            description=details.description if details else None,
            address=details.address if details else None,
            phone=details.phone if details else None,
            email=details.email if details else None,
        )
        user = User(
            email=email,
            password_hash=hash_password(payload.password),
            first_name=payload.first_name,
            last_name=payload.last_name,
            role=UserRole.super_admin,
        )
        organization.users.append(user)
        self.session.add(organization)
        _commit(self.session, ConflictError("User already exists", "email_exists"))
        logger.info(f"organization_registered: org={organization.id} user={user.id}")
        return organization, user

    def get(self, tenant_id: str) -> Organization:
        organization = self.session.get(Organization, _require_tenant(tenant_id))
        if not organization:
            raise NotFoundError("Organization not found")
        return organization

    def update(
        self, tenant_id: str, data: Union[OrganizationUpdate, dict[str, Any]]
    ) -> Organization:
        payload: OrganizationUpdate = _parse(OrganizationUpdate, data)
        organization = self.get(tenant_id)
        changes = payload.model_dump(exclude_unset=True)
        if "name" in changes and changes["name"] is None:
            raise ValidationError.for_field("name", "Organization name is required")
        for key, value in changes.items():
            setattr(organization, key, value)
        _commit(self.session)
        return organization


def authenticate(session: Session, email: str, password: str) -> Optional[User]:
    user = session.scalar(select(User).where(User.email == email.strip().lower()))
    if not user or not user.is_active:
        return None
    if not verify_password(password, user.password_hash):
        return None
    return user


class UserService:
    def __init__(self, session: Session, tenant_id: str) -> None:
        self.session = session
        self.tenant_id = _require_tenant(tenant_id)

    def list_all(self) -> list[User]:
        stmt = (
            select(User)
            .where(User.organization_id == self.tenant_id)
            .order_by(User.created_at.desc(), User.id)
        )
        return list(self.session.scalars(stmt).all())

    def get(self, user_id: str) -> User:
        user = self.session.scalar(
            select(User).where(User.organization_id == self.tenant_id, User.id == user_id)
        )
        if not user:
            raise NotFoundError("User not found")
        return user

    def create(self, data: Union[UserIn, dict[str, Any]]) -> User:
        payload: UserIn = _parse(UserIn, data)
        if payload.role == UserRole.super_admin:
            raise ValidationError.for_field("role", "Role must be ADMIN, USER or VIEWER")
        email = payload.email.lower()
        if self.session.scalar(select(User.id).where(User.email == email)):
            raise ConflictError("User already exists", "email_exists")
        user = User(
            email=email,
            password_hash=hash_password(payload.password),
            first_name=payload.first_name,
            last_name=payload.last_name,
            phone=payload.phone,
            role=payload.role,
            organization_id=self.tenant_id,
        )
        self.session.add(user)
        _commit(self.session, ConflictError("User already exists", "email_exists"))
        return user

    def update(self, user_id: str, data: Union[UserUpdate, dict[str, Any]]) -> User:
        payload: UserUpdate = _parse(UserUpdate, data)
        user = self.get(user_id)
        changes = payload.model_dump(exclude_unset=True)
        for key in ("first_name", "last_name", "role", "is_active"):
            if key in changes and changes[key] is None:
                raise ValidationError.for_field(to_camel(key), "Field cannot be cleared")
        for key, value in changes.items():
            setattr(user, key, value)
        _commit(self.session)
        return user

    def delete(self, user_id: str, *, acting_user_id: str) -> None:
        if user_id == acting_user_id:
            raise ValidationError.for_field("id", "Cannot delete yourself")
        user = self.get(user_id)
        has_transactions = self.session.scalar(
            select(func.count(Transaction.id)).where(
                Transaction.organization_id == self.tenant_id,
                Transaction.created_by_id == user.id,
            )
        )
        if has_transactions:
            raise ConflictError(
                "User has recorded transactions; deactivate instead",
                "user_has_transactions",
            )
        self.session.delete(user)
        _commit(self.session)


class CategoryService:
    def __init__(self, session: Session, tenant_id: str) -> None:
        self.session = session
        self.tenant_id = _require_tenant(tenant_id)

    def list_all(self, type: Optional[TransactionType] = None) -> list[Category]:
        stmt = (
            select(Category)
            .where(Category.organization_id == self.tenant_id)
            .order_by(Category.name, Category.type)
        )
        if type:
            stmt = stmt.where(Category.type == type)
        return list(self.session.scalars(stmt).all())

    def get(self, category_id: str) -> Category:
        category = self.session.scalar(
            select(Category).where(
                Category.organization_id == self.tenant_id, Category.id == category_id
            )
        )
        if not category:
            raise NotFoundError("Category not found")
        return category

    def _name_taken(
        self, name: str, type: TransactionType, exclude_id: Optional[str] = None
    ) -> bool:
        stmt = select(Category.id).where(
            Category.organization_id == self.tenant_id,
            Category.type == type,
            Category.name == name,
        )
        if exclude_id:
            stmt = stmt.where(Category.id != exclude_id)
        return self.session.scalar(stmt) is not None

    def create(self, data: Union[CategoryIn, dict[str, Any]]) -> Category:
        payload: CategoryIn = _parse(CategoryIn, data)
        conflict = ConflictError("Category already exists", "category_exists")
        if self._name_taken(payload.name, payload.type):
            raise conflict
        category = Category(
            name=payload.name,
            description=payload.description,
            type=payload.type,
            organization_id=self.tenant_id,
        )
        self.session.add(category)
        _commit(self.session, conflict)
        return category

    def update(self, category_id: str, data: Union[CategoryUpdate, dict[str, Any]]) -> Category:
        payload: CategoryUpdate = _parse(CategoryUpdate, data)
        category = self.get(category_id)
        changes = payload.model_dump(exclude_unset=True)
        conflict = ConflictError("Category already exists", "category_exists")
        if "name" in changes:
            if changes["name"] is None:
                raise ValidationError.for_field("name", "Category name is required")
            if self._name_taken(changes["name"], category.type, exclude_id=category.id):
                raise conflict
        for key, value in changes.items():
            setattr(category, key, value)
        _commit(self.session, conflict)
        return category

    def delete(self, category_id: str) -> None:
        """Delete a category; its transactions stay and become uncategorized."""
        category = self.get(category_id)
        self.session.execute(
            update(Transaction)
            .where(
                Transaction.organization_id == self.tenant_id,
                Transaction.category_id == category.id,
            )
            .values(category_id=None)
            .execution_options(synchronize_session="fetch")
        )
        self.session.delete(category)
        _commit(self.session)
        logger.info(f"category_deleted: org={self.tenant_id} id={category_id}")


class TransactionService:
    def __init__(self, session: Session, tenant_id: str) -> None:
        self.session = session
        self.tenant_id = _require_tenant(tenant_id)

    def _detail_query(self):
        return select(Transaction).options(
            joinedload(Transaction.category),
            joinedload(Transaction.created_by),
            selectinload(Transaction.attachments),
        )

    def _category_for(self, category_id: str, txn_type: TransactionType) -> Category:
        category = self.session.scalar(
            select(Category).where(
                Category.organization_id == self.tenant_id, Category.id == category_id
            )
        )
        if not category:
            raise NotFoundError("Category not found")
        if category.type != txn_type:
            raise ValidationError.for_field("categoryId", "Category type mismatch")
        return category

    def _require_member(self, user_id: str) -> None:
        member = self.session.scalar(
            select(User.id).where(User.organization_id == self.tenant_id, User.id == user_id)
        )
        if not member:
            raise NotFoundError("User not found")

    def _conditions(self, filters: Optional[TransactionFilters]) -> list:
        conditions = [Transaction.organization_id == self.tenant_id]
        if filters is None:
            return conditions
        if filters.type:
            conditions.append(Transaction.type == filters.type)
        if filters.start is not None:
            conditions.append(Transaction.transaction_date >= _naive_utc(filters.start))
        if filters.end is not None:
            conditions.append(Transaction.transaction_date <= _naive_utc(filters.end))
        return conditions

    def create(
        self,
        data: Union[TransactionIn, dict[str, Any]],
        attachments: Iterable[Union[AttachmentIn, dict[str, Any]]] = (),
        *,
        created_by_id: str,
    ) -> Transaction:
        payload: TransactionIn = _parse(TransactionIn, data)
        files: list[AttachmentIn] = [_parse(AttachmentIn, item) for item in attachments]
        if len(files) > MAX_ATTACHMENTS:
            raise ValidationError.for_field(
                "attachments", f"At most {MAX_ATTACHMENTS} attachments are allowed"
            )
        for item in files:
            if item.mime_type not in ALLOWED_ATTACHMENT_TYPES:
                raise ValidationError.for_field(
                    "attachments", "Invalid file type. Only images and PDFs are allowed."
                )
        self._require_member(created_by_id)
        if payload.category_id:
            self._category_for(payload.category_id, payload.type)

        fields = payload.model_dump()
        fields["transaction_date"] = _naive_utc(payload.transaction_date)
        txn = Transaction(
            organization_id=self.tenant_id, created_by_id=created_by_id, **fields
        )
        txn.attachments = [Attachment(**item.model_dump()) for item in files]
        self.session.add(txn)
        _commit(self.session)
        logger.info(
            f"transaction_created: org={self.tenant_id} id={txn.id} "
            f"type={txn.type.value} attachments={len(files)}"
        )
        return self.get(txn.id)

    def get(self, transaction_id: str) -> Transaction:
        stmt = self._detail_query().where(
            Transaction.organization_id == self.tenant_id,
            Transaction.id == transaction_id,
        )
        txn = self.session.scalar(stmt)
        if not txn:
            raise NotFoundError("Transaction not found")
        return txn

    def update(
        self, transaction_id: str, data: Union[TransactionUpdate, dict[str, Any]]
    ) -> Transaction:
        payload: TransactionUpdate = _parse(TransactionUpdate, data)
        changes = payload.model_dump(exclude_unset=True)
        cleared = [
            key
            for key in REQUIRED_TRANSACTION_FIELDS
            if key in changes and changes[key] is None
        ]
        if cleared:
            raise ValidationError(
                "Required fields cannot be cleared",
                [{"field": to_camel(key), "message": "Field is required"} for key in cleared],
            )

        txn = self.get(transaction_id)
        if "transaction_date" in changes:
            changes["transaction_date"] = _naive_utc(changes["transaction_date"])
        new_type = changes.get("type", txn.type)
        category_id = changes.get("category_id", txn.category_id)
        if category_id:
            self._category_for(category_id, new_type)

        for key, value in changes.items():
            setattr(txn, key, value)
        _commit(self.session)
        self.session.expire(txn)
        return self.get(transaction_id)

    def delete(self, transaction_id: str) -> None:
        txn = self.session.scalar(
            select(Transaction).where(
                Transaction.organization_id == self.tenant_id,
                Transaction.id == transaction_id,
            )
        )
        if not txn:
            raise NotFoundError("Transaction not found")
        self.session.delete(txn)
        _commit(self.session)
        logger.info(f"transaction_deleted: org={self.tenant_id} id={transaction_id}")

    def list(
        self,
        filters: Optional[TransactionFilters] = None,
        page: int = 1,
        page_size: int = 50,
    ) -> TransactionPage:
        if page < 1:
            raise ValidationError.for_field("page", "Page must be at least 1")
        if page_size < 1:
            raise ValidationError.for_field("limit", "Limit must be at least 1")
        conditions = self._conditions(filters)
        total = int(
            self.session.scalar(select(func.count(Transaction.id)).where(*conditions)) or 0
        )
        stmt = (
            self._detail_query()
            .where(*conditions)
            .order_by(Transaction.transaction_date.desc(), Transaction.id.desc())
            .offset((page - 1) * page_size)
            .limit(page_size)
        )
        items = list(self.session.scalars(stmt).unique().all())
        return TransactionPage(items=items, total=total, page=page, limit=page_size)

    def all_for_period(self, period: Period) -> list[Transaction]:
        filters = TransactionFilters(start=period.start, end=period.end)
        stmt = (
            self._detail_query()
            .where(*self._conditions(filters))
            .order_by(Transaction.transaction_date.desc(), Transaction.id.desc())
        )
        return list(self.session.scalars(stmt).unique().all())


class ReportService:
    def __init__(self, session: Session, tenant_id: str) -> None:
        self.session = session
        self.tenant_id = _require_tenant(tenant_id)
        self.txn_service = TransactionService(session, self.tenant_id)

    def summary(
        self,
        kind: Union[PeriodKind, str, None],
        reference: datetime,
    ) -> Summary:
        started = time.perf_counter()
        period = resolve_period(kind, reference)
        rows = self.txn_service.all_for_period(period)
        result = summarize(rows, period)
        duration = time.perf_counter() - started
        logger.info(
            f"report_generated: org={self.tenant_id} period={period.kind.value} "
            f"start={period.start.date()} rows={len(rows)} duration={duration:.3f}s"
        )
        return result
