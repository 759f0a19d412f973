"""Idempotent schema provisioning.

The schema is declared as a list of ``TableDefinition`` entries. Creation order
is derived from each entry's declared dependencies, and every statement is
issued as ``CREATE ... IF NOT EXISTS`` so that any number of processes can run
``ensure_schema`` at the same time on a cold database.
"""

import logging
from dataclasses import dataclass
from typing import Iterable, Optional, Sequence

from sqlalchemy import Index, Table, inspect, literal, select, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.schema import CreateIndex, CreateTable

from database import Store
from errors import SchemaError, StoreConnectionError
from models import Attachment, Category, Organization, Transaction, User

logger = logging.getLogger(__name__)

SCHEMA_VERSION = "1"
UUID_EXTENSION = "uuid-ossp"
UUID_DEFAULT = "uuid_generate_v4()::text"


@dataclass(frozen=True)
class TableDefinition:
    name: str
    table: Table
    depends_on: tuple[str, ...] = ()
    primary_key: str = "id"

    @property
    def indexes(self) -> list[Index]:
        return sorted(self.table.indexes, key=lambda index: index.name or "")

    def referenced_tables(self) -> set[str]:
        return {
            fk.column.table.name
            for fk in self.table.foreign_keys
            if fk.column.table.name != self.name
        }


SCHEMA: list[TableDefinition] = [
    TableDefinition("organizations", Organization.__table__),
    TableDefinition("users", User.__table__, depends_on=("organizations",)),
    TableDefinition("categories", Category.__table__, depends_on=("organizations",)),
    TableDefinition(
        "transactions",
        Transaction.__table__,
        depends_on=("organizations", "users", "categories"),
    ),
    TableDefinition("attachments", Attachment.__table__, depends_on=("transactions",)),
]

ROOT_TABLE = "organizations"


def apply_order(definitions: Sequence[TableDefinition]) -> list[TableDefinition]:
    """Order definitions so that every table follows the tables it depends on."""
    by_name = {definition.name: definition for definition in definitions}
    if len(by_name) != len(definitions):
        raise SchemaError("duplicate table definition")

    for definition in definitions:
        unknown = [dep for dep in definition.depends_on if dep not in by_name]
        if unknown:
            raise SchemaError(
                f"{definition.name} depends on undeclared tables: {', '.join(unknown)}"
            )
        undeclared = definition.referenced_tables() - set(definition.depends_on)
        if undeclared:
            raise SchemaError(
                f"{definition.name} references tables missing from depends_on: "
                f"{', '.join(sorted(undeclared))}"
            )

    ordered: list[TableDefinition] = []
    placed: set[str] = set()
    pending = list(definitions)
    while pending:
        ready = [d for d in pending if all(dep in placed for dep in d.depends_on)]
        if not ready:
            cycle = ", ".join(d.name for d in pending)
            raise SchemaError(f"dependency cycle between tables: {cycle}")
        for definition in ready:
            ordered.append(definition)
            placed.add(definition.name)
        pending = [d for d in pending if d.name not in placed]
    return ordered


class SchemaStore:
    def __init__(
        self,
        store: Store,
        definitions: Optional[Sequence[TableDefinition]] = None,
        root_table: str = ROOT_TABLE,
    ) -> None:
        self.store = store
        self.definitions = apply_order(definitions if definitions is not None else SCHEMA)
        self.root = next(
            (d for d in self.definitions if d.name == root_table), self.definitions[0]
        )

    @property
    def _is_postgres(self) -> bool:
        return self.store.dialect_name == "postgresql"

    def check_connection(self) -> bool:
        try:
            with self.store.engine.connect() as conn:
                conn.execute(text("SELECT 1"))
        except SQLAlchemyError as exc:
            logger.error(f"store_connection: ok=false error={exc}")
            return False
        logger.info(f"store_connection: ok=true dialect={self.store.dialect_name}")
        return True

    def ensure_schema(self, *, force: bool = False) -> None:
        if self.store.schema_ready and not force:
            return
        if self._probe():
            logger.info(f"schema_ensure: branch=verify version={SCHEMA_VERSION}")
            self._verify()
        else:
            logger.info(
                f"schema_ensure: branch=create version={SCHEMA_VERSION} "
                f"tables={len(self.definitions)}"
            )
            self._create()
        self.store.schema_ready = True

    def _probe(self) -> bool:
        stmt = select(literal(1)).select_from(self.root.table).limit(1)
        try:
            with self.store.engine.connect() as conn:
                conn.execute(stmt)
        except SQLAlchemyError as exc:
            logger.info(
                f"schema_probe: table={self.root.name} present=false "
                f"error={exc.__class__.__name__}"
            )
            return False
        return True

    def _create(self) -> None:
        try:
            if self._is_postgres:
                self._ensure_extension()
            for definition in self.definitions:
                self._create_table(definition)
        except SQLAlchemyError as exc:
            logger.error(f"schema_ensure: branch=create failed error={exc}")
            raise SchemaError(f"schema creation failed: {exc}") from exc
        logger.info("schema_ensure: branch=create done")

    def _verify(self) -> None:
        steps = []
        if self._is_postgres:
            steps.append(("extension", self._ensure_extension))
        steps.append(("missing_tables", self._create_missing))
        if self._is_postgres:
            steps.append(("id_defaults", self._backfill_id_defaults))
        for label, step in steps:
            try:
                step()
            except SQLAlchemyError as exc:
                logger.warning(f"schema_verify: step={label} failed error={exc}")

    def _create_missing(self) -> None:
        existing = set(inspect(self.store.engine).get_table_names())
        for definition in self.definitions:
            if definition.name not in existing:
                logger.info(f"schema_verify: healing table={definition.name}")
            self._create_table(definition)

    def _create_table(self, definition: TableDefinition) -> None:
        self._run_ddl(
            CreateTable(definition.table, if_not_exists=True),
            exists=lambda: self._table_exists(definition.name),
        )
        for index in definition.indexes:
            self._run_ddl(
                CreateIndex(index, if_not_exists=True),
                exists=lambda index=index: self._index_exists(definition.name, index.name),
            )

    def _run_ddl(self, statement, *, exists) -> None:
        try:
            with self.store.engine.begin() as conn:
                conn.execute(statement)
        except SQLAlchemyError:
            # Two sessions racing on the same CREATE can still collide in the
            # catalog; the loser only fails if the object is still absent.
            if exists():
                logger.info("schema_ddl: object created concurrently, continuing")
                return
            raise

    def _table_exists(self, name: str) -> bool:
        return inspect(self.store.engine).has_table(name)

    def _index_exists(self, table_name: str, index_name: Optional[str]) -> bool:
        indexes = inspect(self.store.engine).get_indexes(table_name)
        return any(index["name"] == index_name for index in indexes)

    def _extension_exists(self) -> bool:
        with self.store.engine.connect() as conn:
            return bool(
                conn.execute(
                    text("SELECT EXISTS (SELECT 1 FROM pg_extension WHERE extname = :name)"),
                    {"name": UUID_EXTENSION},
                ).scalar()
            )

    def _ensure_extension(self) -> None:
        if self._extension_exists():
            return
        logger.info(f"schema_ensure: enabling extension={UUID_EXTENSION}")
        self._run_ddl(
            text(f'CREATE EXTENSION IF NOT EXISTS "{UUID_EXTENSION}"'),
            exists=self._extension_exists,
        )

    def _backfill_id_defaults(self) -> None:
        inspector = inspect(self.store.engine)
        preparer = self.store.engine.dialect.identifier_preparer
        for definition in self.definitions:
            columns = {col["name"]: col for col in inspector.get_columns(definition.name)}
            column = columns.get(definition.primary_key)
            if column is None or column.get("default"):
                continue
            logger.info(f"schema_verify: backfilling id default table={definition.name}")
            with self.store.engine.begin() as conn:
                conn.execute(
                    text(
                        f"ALTER TABLE {preparer.quote(definition.name)} "
                        f"ALTER COLUMN {preparer.quote(definition.primary_key)} "
                        f"SET DEFAULT {UUID_DEFAULT}"
                    )
                )

    def table_names(self) -> list[str]:
        return [definition.name for definition in self.definitions]


def bootstrap(store: Store, definitions: Optional[Iterable[TableDefinition]] = None) -> SchemaStore:
    """Verify connectivity and provision the schema; both failures are fatal."""
    schema = SchemaStore(store, list(definitions) if definitions is not None else None)
    if not schema.check_connection():
        raise StoreConnectionError("could not connect to the ledger store")
    schema.ensure_schema()
    return schema
