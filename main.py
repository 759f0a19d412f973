import logging
import uuid
from pathlib import Path
from typing import Any, Optional

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
from starlette.datastructures import UploadFile
from starlette.exceptions import HTTPException as StarletteHTTPException

from config import Settings, get_settings
from database import Store, translate_store_error
from errors import (
    ConflictError,
    LedgerError,
    NotFoundError,
    StoreConnectionError,
    StoreTimeoutError,
    ValidationError,
)
from models import TransactionType, User, UserRole
from periods import parse_reference
from schema_store import bootstrap
from schemas import (
    AttachmentIn,
    CategoryIn,
    CategoryOut,
    CategoryUpdate,
    LoginIn,
    OrganizationOut,
    OrganizationUpdate,
    RegistrationIn,
    TransactionOut,
    TransactionUpdate,
    UserIn,
    UserOut,
    UserUpdate,
)
from services import (
    MAX_ATTACHMENTS,
    CategoryService,
    OrganizationService,
    ReportService,
    TransactionFilters,
    TransactionService,
    UserService,
    authenticate,
)
from tokens import TenantContext, issue_access_token, read_access_token

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

WRITERS = (UserRole.super_admin, UserRole.admin, UserRole.user)
MANAGERS = (UserRole.super_admin, UserRole.admin)
BEARER_CHALLENGE = {"WWW-Authenticate": "Bearer"}

router = APIRouter(prefix="/api")


def get_store(request: Request) -> Store:
    return request.app.state.store


def get_app_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_db(store: Store = Depends(get_store)):
    db = store.session()
    try:
        yield db
    finally:
        db.close()


def current_tenant(
    request: Request,
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_app_settings),
) -> TenantContext:
    scheme, _, token = request.headers.get("Authorization", "").partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise HTTPException(
            status_code=401, detail="Access token required", headers=BEARER_CHALLENGE
        )
    context = read_access_token(settings, token.strip())
    if context is None:
        raise HTTPException(
            status_code=401, detail="Invalid or expired token", headers=BEARER_CHALLENGE
        )
    user = db.get(User, context.user_id)
    if not user or not user.is_active or user.organization_id != context.organization_id:
        raise HTTPException(
            status_code=401, detail="Invalid or expired token", headers=BEARER_CHALLENGE
        )
    return TenantContext(
        user_id=user.id,
        organization_id=user.organization_id,
        role=user.role,
        email=user.email,
    )


def require_roles(*roles: UserRole):
    def dependency(context: TenantContext = Depends(current_tenant)) -> TenantContext:
        if not context.has_role(*roles):
            raise HTTPException(status_code=403, detail="Insufficient permissions")
        return context

    return dependency


def dump(model: type[BaseModel], obj: Any) -> dict[str, Any]:
    return model.model_validate(obj).model_dump(mode="json", by_alias=True)


def _token_response(settings: Settings, user: User) -> dict[str, Any]:
    context = TenantContext(
        user_id=user.id,
        organization_id=user.organization_id,
        role=user.role,
        email=user.email,
    )
    return {
        "token": issue_access_token(settings, context),
        "user": dump(UserOut, user),
        "organization": {"id": user.organization.id, "name": user.organization.name},
    }


def _parse_type(value: Optional[str]) -> Optional[TransactionType]:
    if not value:
        return None
    try:
        return TransactionType(value.upper())
    except ValueError as exc:
        raise ValidationError.for_field("type", "Type must be INCOME or EXPENSE") from exc


def _parse_positive(value: str, field: str) -> int:
    try:
        number = int(value)
    except ValueError as exc:
        raise ValidationError.for_field(field, "Must be a positive integer") from exc
    if number < 1:
        raise ValidationError.for_field(field, "Must be a positive integer")
    return number


@router.post("/auth/register", status_code=201)
def register(
    payload: RegistrationIn,
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_app_settings),
):
    _organization, user = OrganizationService(db).register(payload)
    return _token_response(settings, user)


@router.post("/auth/login")
def login(
    payload: LoginIn,
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_app_settings),
):
    user = authenticate(db, payload.email, payload.password)
    if not user:
        raise HTTPException(status_code=401, detail="Invalid credentials")
    return _token_response(settings, user)


@router.get("/auth/me")
def me(context: TenantContext = Depends(current_tenant), db: Session = Depends(get_db)):
    user = UserService(db, context.organization_id).get(context.user_id)
    data = dump(UserOut, user)
    data["organization"] = {
        "id": user.organization.id,
        "name": user.organization.name,
        "description": user.organization.description,
    }
    return data


@router.get("/organizations/me")
def get_organization(
    context: TenantContext = Depends(current_tenant), db: Session = Depends(get_db)
):
    organization = OrganizationService(db).get(context.organization_id)
    return dump(OrganizationOut, organization)


@router.put("/organizations/me")
def update_organization(
    payload: OrganizationUpdate,
    context: TenantContext = Depends(require_roles(*MANAGERS)),
    db: Session = Depends(get_db),
):
    organization = OrganizationService(db).update(context.organization_id, payload)
    return dump(OrganizationOut, organization)


@router.get("/users")
def list_users(
    context: TenantContext = Depends(current_tenant), db: Session = Depends(get_db)
):
    users = UserService(db, context.organization_id).list_all()
    return [dump(UserOut, user) for user in users]


@router.post("/users", status_code=201)
def create_user(
    payload: UserIn,
    context: TenantContext = Depends(require_roles(*MANAGERS)),
    db: Session = Depends(get_db),
):
    user = UserService(db, context.organization_id).create(payload)
    return dump(UserOut, user)


@router.put("/users/{user_id}")
def update_user(
    user_id: str,
    payload: UserUpdate,
    context: TenantContext = Depends(require_roles(*MANAGERS)),
    db: Session = Depends(get_db),
):
    user = UserService(db, context.organization_id).update(user_id, payload)
    return dump(UserOut, user)


@router.delete("/users/{user_id}")
def delete_user(
    user_id: str,
    context: TenantContext = Depends(require_roles(*MANAGERS)),
    db: Session = Depends(get_db),
):
    UserService(db, context.organization_id).delete(user_id, acting_user_id=context.user_id)
    return {"message": "User deleted successfully"}


@router.get("/reports/summary")
def report_summary(
    request: Request,
    context: TenantContext = Depends(current_tenant),
    db: Session = Depends(get_db),
):
    period = request.query_params.get("period", "month")
    reference = parse_reference(request.query_params.get("date"))
    summary = ReportService(db, context.organization_id).summary(period, reference)
    return summary.to_dict(lambda row: dump(TransactionOut, row))


@router.get("/categories")
def list_categories(
    request: Request,
    context: TenantContext = Depends(current_tenant),
    db: Session = Depends(get_db),
):
    txn_type = _parse_type(request.query_params.get("type"))
    categories = CategoryService(db, context.organization_id).list_all(txn_type)
    return [dump(CategoryOut, category) for category in categories]


@router.post("/categories", status_code=201)
def create_category(
    payload: CategoryIn,
    context: TenantContext = Depends(require_roles(*WRITERS)),
    db: Session = Depends(get_db),
):
    category = CategoryService(db, context.organization_id).create(payload)
    return dump(CategoryOut, category)


@router.put("/categories/{category_id}")
def update_category(
    category_id: str,
    payload: CategoryUpdate,
    context: TenantContext = Depends(require_roles(*WRITERS)),
    db: Session = Depends(get_db),
):
    category = CategoryService(db, context.organization_id).update(category_id, payload)
    return dump(CategoryOut, category)


@router.delete("/categories/{category_id}")
def delete_category(
    category_id: str,
    context: TenantContext = Depends(require_roles(*MANAGERS)),
    db: Session = Depends(get_db),
):
    CategoryService(db, context.organization_id).delete(category_id)
    return {"message": "Category deleted successfully"}


@router.get("/transactions")
def list_transactions(
    request: Request,
    context: TenantContext = Depends(current_tenant),
    db: Session = Depends(get_db),
):
    params = request.query_params
    start = params.get("startDate")
    end = params.get("endDate")
    filters = TransactionFilters(
        type=_parse_type(params.get("type")),
        start=parse_reference(start, field="startDate") if start else None,
        end=parse_reference(end, field="endDate", end_of_day=True) if end else None,
    )
    page = _parse_positive(params.get("page", "1"), "page")
    limit = _parse_positive(params.get("limit", "50"), "limit")
    result = TransactionService(db, context.organization_id).list(filters, page, limit)
    return {
        "transactions": [dump(TransactionOut, txn) for txn in result.items],
        "pagination": {
            "total": result.total,
            "page": result.page,
            "limit": result.limit,
            "pages": result.pages,
        },
    }


@router.get("/transactions/{transaction_id}")
def get_transaction(
    transaction_id: str,
    context: TenantContext = Depends(current_tenant),
    db: Session = Depends(get_db),
):
    txn = TransactionService(db, context.organization_id).get(transaction_id)
    return dump(TransactionOut, txn)


async def _store_uploads(files: list[UploadFile], settings: Settings) -> list[AttachmentIn]:
    if len(files) > MAX_ATTACHMENTS:
        raise ValidationError.for_field(
            "attachments", f"At most {MAX_ATTACHMENTS} attachments are allowed"
        )
    settings.upload_dir.mkdir(parents=True, exist_ok=True)
    stored: list[AttachmentIn] = []
    try:
        for upload in files:
            content = await upload.read()
            if len(content) > settings.max_file_size:
                raise ValidationError.for_field("attachments", "File too large")
            original_name = upload.filename or "upload"
            filename = f"{uuid.uuid4().hex}{Path(original_name).suffix.lower()}"
            target = settings.upload_dir / filename
            stored.append(
                AttachmentIn(
                    filename=filename,
                    original_name=original_name,
                    mime_type=upload.content_type or "application/octet-stream",
                    size=len(content),
                    path=str(target),
                )
            )
            target.write_bytes(content)
    except Exception:
        _discard_uploads(stored)
        raise
    return stored


def _discard_uploads(attachments: list[AttachmentIn]) -> None:
    for item in attachments:
        Path(item.path).unlink(missing_ok=True)


@router.post("/transactions", status_code=201)
async def create_transaction(
    request: Request,
    context: TenantContext = Depends(require_roles(*WRITERS)),
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_app_settings),
):
    files: list[UploadFile] = []
    if request.headers.get("content-type", "").startswith("multipart/form-data"):
        form = await request.form()
        data: dict[str, Any] = {}
        for key, value in form.multi_items():
            if isinstance(value, UploadFile):
                if value.filename:
                    files.append(value)
            else:
                data[key] = value
    else:
        try:
            data = await request.json()
        except ValueError as exc:
            raise ValidationError.for_field("body", "Invalid JSON body") from exc
        if not isinstance(data, dict):
            raise ValidationError.for_field("body", "Expected a JSON object")

    attachments = await _store_uploads(files, settings)
    try:
        txn = TransactionService(db, context.organization_id).create(
            data, attachments, created_by_id=context.user_id
        )
    except Exception:
        _discard_uploads(attachments)
        raise
    return dump(TransactionOut, txn)


@router.put("/transactions/{transaction_id}")
def update_transaction(
    transaction_id: str,
    payload: TransactionUpdate,
    context: TenantContext = Depends(require_roles(*WRITERS)),
    db: Session = Depends(get_db),
):
    txn = TransactionService(db, context.organization_id).update(transaction_id, payload)
    return dump(TransactionOut, txn)


@router.delete("/transactions/{transaction_id}")
def delete_transaction(
    transaction_id: str,
    context: TenantContext = Depends(require_roles(*MANAGERS)),
    db: Session = Depends(get_db),
):
    TransactionService(db, context.organization_id).delete(transaction_id)
    return {"message": "Transaction deleted successfully"}


def _ledger_error_response(exc: LedgerError) -> JSONResponse:
    if isinstance(exc, ValidationError):
        return JSONResponse(status_code=400, content={"error": str(exc), "errors": exc.errors})
    if isinstance(exc, NotFoundError):
        return JSONResponse(status_code=404, content={"error": str(exc)})
    if isinstance(exc, ConflictError):
        return JSONResponse(status_code=409, content={"error": str(exc), "code": exc.code})
    if isinstance(exc, StoreTimeoutError):
        return JSONResponse(status_code=504, content={"error": str(exc)})
    if isinstance(exc, StoreConnectionError):
        return JSONResponse(status_code=503, content={"error": str(exc)})
    return JSONResponse(status_code=500, content={"error": "Internal server error"})


def create_app(settings: Optional[Settings] = None, store: Optional[Store] = None) -> FastAPI:
    app = FastAPI(title="Ledger")
    app.state.settings = settings
    app.state.store = store

    @app.on_event("startup")
    def startup_event():
        if app.state.settings is None:
            app.state.settings = get_settings()
        if app.state.store is None:
            app.state.store = Store.from_settings(app.state.settings)
        bootstrap(app.state.store)

    @app.on_event("shutdown")
    def shutdown_event():
        if app.state.store is not None and store is None:
            app.state.store.dispose()

    @app.exception_handler(LedgerError)
    async def ledger_error_handler(request: Request, exc: LedgerError):
        if not isinstance(exc, (ValidationError, NotFoundError, ConflictError)):
            logger.error(f"request_failed: path={request.url.path} error={exc!r}")
        return _ledger_error_response(exc)

    @app.exception_handler(SQLAlchemyError)
    async def store_error_handler(request: Request, exc: SQLAlchemyError):
        translated = translate_store_error(exc)
        logger.error(f"store_error: path={request.url.path} error={exc!r}")
        if translated is not None:
            return _ledger_error_response(translated)
        return JSONResponse(status_code=500, content={"error": "Internal server error"})

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        return _ledger_error_response(ValidationError.from_pydantic(exc))

    @app.exception_handler(StarletteHTTPException)
    async def http_error_handler(request: Request, exc: StarletteHTTPException):
        return JSONResponse(
            status_code=exc.status_code, content={"error": exc.detail}, headers=exc.headers
        )

    @app.get("/health")
    def health(request: Request):
        ready = request.app.state.store is not None and request.app.state.store.schema_ready
        return {"status": "ok" if ready else "starting"}

    app.include_router(router)
    return app


app = create_app()
