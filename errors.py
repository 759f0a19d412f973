from typing import Optional


class LedgerError(Exception):
    """Base class for every failure the ledger engine surfaces to callers."""


class StoreConnectionError(LedgerError):
    """The backing store is unreachable or not configured."""


class StoreTimeoutError(LedgerError):
    """A store call exceeded its time budget or was cancelled."""


class SchemaError(LedgerError):
    """DDL failed while provisioning the schema."""


class ValidationError(LedgerError, ValueError):
    def __init__(
        self, message: str, errors: Optional[list[dict[str, str]]] = None
    ) -> None:
        super().__init__(message)
        self.errors = errors or []

    @classmethod
    def for_field(cls, field: str, message: str) -> "ValidationError":
        return cls(message, [{"field": field, "message": message}])

    @classmethod
    def from_pydantic(cls, exc) -> "ValidationError":
        errors = []
        for item in exc.errors():
            field = ".".join(str(part) for part in item.get("loc", ())) or "body"
            errors.append({"field": field, "message": item.get("msg", "invalid")})
        return cls("Invalid input", errors)


class NotFoundError(LedgerError, ValueError):
    """Entity is absent, or belongs to another tenant. Callers cannot tell which."""


class ConflictError(LedgerError, ValueError):
    def __init__(self, message: str, code: str) -> None:
        super().__init__(message)
        self.code = code
