from contextlib import contextmanager
from typing import Iterator, Optional

from sqlalchemy import create_engine, event
from sqlalchemy import exc as sa_exc
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker
from sqlalchemy.pool import StaticPool

from config import Settings
from errors import LedgerError, StoreConnectionError, StoreTimeoutError

QUERY_CANCELED_SQLSTATE = "57014"


class Base(DeclarativeBase):
    pass


def create_store_engine(
    database_url: str,
    *,
    statement_timeout_ms: int = 15000,
    pool_timeout_secs: float = 10,
) -> Engine:
    url = make_url(database_url)
    connect_args: dict[str, object] = {}
    engine_args: dict[str, object] = {"pool_pre_ping": True}
    if url.get_backend_name() == "sqlite":
        connect_args["check_same_thread"] = False
        connect_args["timeout"] = max(statement_timeout_ms / 1000, 1)
        if url.database in (None, "", ":memory:"):
            engine_args["poolclass"] = StaticPool
    else:
        engine_args["pool_timeout"] = pool_timeout_secs
        if url.get_backend_name() == "postgresql":
            connect_args["options"] = f"-c statement_timeout={statement_timeout_ms}"

    eng = create_engine(url, connect_args=connect_args, **engine_args)
    if url.get_backend_name() == "sqlite":
        event.listen(eng, "connect", _enable_sqlite_pragmas)
    return eng


def _enable_sqlite_pragmas(dbapi_conn, _record):
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA journal_mode=WAL;")
    cursor.execute("PRAGMA foreign_keys=ON;")
    cursor.close()


def translate_store_error(exc: BaseException) -> Optional[LedgerError]:
    """Map driver-level timeouts and disconnects onto the ledger taxonomy."""
    if isinstance(exc, sa_exc.TimeoutError):
        return StoreTimeoutError("timed out waiting for a store connection")
    if isinstance(exc, sa_exc.OperationalError):
        orig = exc.orig
        code = getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)
        message = str(orig).lower()
        if code == QUERY_CANCELED_SQLSTATE or "statement timeout" in message:
            return StoreTimeoutError("store query exceeded its time budget")
        if exc.connection_invalidated:
            return StoreConnectionError("store connection was lost")
    return None


class Store:
    """Explicitly constructed handle over one engine and its session factory."""

    def __init__(self, engine: Engine) -> None:
        self.engine = engine
        self.session_factory = sessionmaker(
            bind=engine, autoflush=False, expire_on_commit=False
        )
        self.schema_ready = False

    @classmethod
    def from_settings(cls, settings: Settings) -> "Store":
        return cls(
            create_store_engine(
                settings.database_url,
                statement_timeout_ms=settings.statement_timeout_ms,
                pool_timeout_secs=settings.pool_timeout_secs,
            )
        )

    @property
    def dialect_name(self) -> str:
        return self.engine.dialect.name

    def session(self) -> Session:
        return self.session_factory()

    @contextmanager
    def session_scope(self) -> Iterator[Session]:
        session: Session = self.session_factory()
        try:
            yield session
            session.commit()
        except sa_exc.SQLAlchemyError as exc:
            session.rollback()
            translated = translate_store_error(exc)
            if translated is not None:
                raise translated from exc
            raise
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def dispose(self) -> None:
        self.engine.dispose()
