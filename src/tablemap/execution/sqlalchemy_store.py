import json
import re
import threading
from contextlib import contextmanager
from datetime import date, datetime
from typing import Any, Dict, Iterable, Iterator, List, Optional, Union

from sqlalchemy import (
    Column,
    Engine,
    MetaData,
    String,
    Table,
    Text,
    create_engine,
    delete,
    func,
    insert,
    literal_column,
    select,
    text,
    update,
)
from sqlalchemy.exc import SQLAlchemyError

from tablemap.common.errors import DatabaseError
from tablemap.common.logger import get_logger
from tablemap.schema.indexes import IndexDefinition

from .base import StorageBackend

logger = get_logger(__name__)

_SAFE_NAME = re.compile(r"^[A-Za-z0-9_]+$")
_REGISTRY_TABLES = {"tablemap_tables", "tablemap_indexes"}


def _json_default(value: Any) -> Any:
    if isinstance(value, datetime):
        return {"$date": value.isoformat()}
    if isinstance(value, date):
        return {"$day": value.isoformat()}
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


def _object_hook(obj: Dict[str, Any]) -> Any:
    if len(obj) == 1:
        if "$date" in obj:
            return datetime.fromisoformat(obj["$date"])
        if "$day" in obj:
            return date.fromisoformat(obj["$day"])
    return obj


def encode(value: Any) -> str:
    try:
        return json.dumps(value, default=_json_default, sort_keys=True)
    except TypeError as exc:
        raise DatabaseError(f"Cannot store value: {exc}") from exc


def decode(raw: str) -> Any:
    return json.loads(raw, object_hook=_object_hook)


class SQLAlchemyStore(StorageBackend):
    """
    Document store on top of any SQLAlchemy engine.

    Each table is a SQL table of ``(key, doc)`` rows where ``doc`` is the JSON
    encoded document. Table and index definitions live in two registry tables.
    On SQLite, simple secondary indexes are materialized as expression
    indexes over ``json_extract`` and used for ``get_all`` lookups.
    """

    def __init__(self, engine_or_url: Union[str, Engine]):
        if isinstance(engine_or_url, Engine):
            self.engine = engine_or_url
        else:
            try:
                self.engine = create_engine(engine_or_url, pool_pre_ping=True)
            except Exception as e:
                logger.error(f"Failed to connect to database: {e}")
                raise
        self._metadata = MetaData()
        self._tables_registry = Table(
            "tablemap_tables",
            self._metadata,
            Column("name", String(255), primary_key=True),
            Column("primary_key", String(255), nullable=False),
        )
        self._indexes_registry = Table(
            "tablemap_indexes",
            self._metadata,
            Column("table_name", String(255), primary_key=True),
            Column("name", String(255), primary_key=True),
            Column("definition", Text, nullable=False),
        )
        self._data_tables: Dict[str, Table] = {}
        self._primary_keys: Dict[str, str] = {}
        self._local = threading.local()

        with self._connection("create registry tables") as conn:
            self._metadata.create_all(
                conn, tables=[self._tables_registry, self._indexes_registry]
            )

    def __str__(self):
        return f"SQLAlchemyStore({self.engine.url.render_as_string(hide_password=True)})"

    @contextmanager
    def _connection(self, action: str):
        active = getattr(self._local, "conn", None)
        try:
            if active is not None:
                yield active
            else:
                with self.engine.begin() as conn:
                    yield conn
        except SQLAlchemyError as exc:
            logger.error(f"{self} failed to {action}: {exc}")
            raise DatabaseError(f"Failed to {action}: {exc}") from exc

    @contextmanager
    def transaction(self) -> Iterator[None]:
        if getattr(self._local, "conn", None) is not None:
            yield
            return
        with self._connection("run transaction") as conn:
            self._local.conn = conn
            try:
                yield
            finally:
                self._local.conn = None

    def close(self) -> None:
        self.engine.dispose()

    def _data_table(self, name: str) -> Table:
        table = self._data_tables.get(name)
        if table is None:
            self.primary_key(name)
            table = Table(
                name,
                self._metadata,
                Column("key", String(512), primary_key=True),
                Column("doc", Text, nullable=False),
                extend_existing=True,
            )
            self._data_tables[name] = table
        return table

    # -- tables -------------------------------------------------------------

    def list_tables(self) -> List[str]:
        with self._connection("list tables") as conn:
            return [row[0] for row in conn.execute(select(self._tables_registry.c.name))]

    def create_table(self, name: str, primary_key: str) -> None:
        if name in _REGISTRY_TABLES:
            raise DatabaseError(f"Table name `{name}` is reserved.", {"table": name})
        if name in self.list_tables():
            raise DatabaseError(f"Table `{name}` already exists.", {"table": name})
        with self._connection(f"create table {name}") as conn:
            conn.execute(
                insert(self._tables_registry).values(name=name, primary_key=primary_key)
            )
            self._primary_keys[name] = primary_key
            self._data_table(name).create(conn, checkfirst=True)
        logger.info(f"Created table {name} in {self}")

    def primary_key(self, table: str) -> str:
        if table not in self._primary_keys:
            with self._connection(f"read table {table}") as conn:
                pk = conn.execute(
                    select(self._tables_registry.c.primary_key).where(
                        self._tables_registry.c.name == table
                    )
                ).scalar()
            if pk is None:
                raise DatabaseError(f"Table `{table}` does not exist.", {"table": table})
            self._primary_keys[table] = pk
        return self._primary_keys[table]

    # -- documents ----------------------------------------------------------

    def get(self, table: str, key: Any) -> Optional[dict]:
        data = self._data_table(table)
        with self._connection(f"read from {table}") as conn:
            raw = conn.execute(select(data.c.doc).where(data.c.key == encode(key))).scalar()
        return None if raw is None else decode(raw)

    def scan(self, table: str) -> Iterator[dict]:
        data = self._data_table(table)
        with self._connection(f"scan {table}") as conn:
            rows = conn.execute(select(data.c.doc)).fetchall()
        for row in rows:
            yield decode(row[0])

    def insert(self, table: str, doc: dict) -> None:
        data = self._data_table(table)
        key = doc[self.primary_key(table)]
        with self._connection(f"insert into {table}") as conn:
            conn.execute(insert(data).values(key=encode(key), doc=encode(doc)))

    def replace(self, table: str, key: Any, doc: dict) -> None:
        data = self._data_table(table)
        with self._connection(f"update {table}") as conn:
            conn.execute(update(data).where(data.c.key == encode(key)).values(doc=encode(doc)))

    def remove(self, table: str, key: Any) -> None:
        data = self._data_table(table)
        with self._connection(f"delete from {table}") as conn:
            conn.execute(delete(data).where(data.c.key == encode(key)))

    # -- indexes ------------------------------------------------------------

    def list_indexes(self, table: str) -> List[str]:
        self.primary_key(table)
        registry = self._indexes_registry
        with self._connection(f"list indexes of {table}") as conn:
            return [
                row[0]
                for row in conn.execute(
                    select(registry.c.name).where(registry.c.table_name == table)
                )
            ]

    def get_index(self, table: str, name: str) -> IndexDefinition:
        registry = self._indexes_registry
        with self._connection(f"read index {name}") as conn:
            raw = conn.execute(
                select(registry.c.definition).where(
                    registry.c.table_name == table, registry.c.name == name
                )
            ).scalar()
        if raw is None:
            raise DatabaseError(
                f"Index `{name}` was not found on table `{table}`.",
                {"table": table, "index": name},
            )
        return IndexDefinition.model_validate_json(raw)

    def create_index(self, table: str, definition: IndexDefinition) -> None:
        if definition.name in self.list_indexes(table):
            raise DatabaseError(
                f"Index `{definition.name}` already exists on table `{table}`.",
                {"table": table, "index": definition.name},
            )
        with self._connection(f"create index {definition.name}") as conn:
            conn.execute(
                insert(self._indexes_registry).values(
                    table_name=table,
                    name=definition.name,
                    definition=definition.model_dump_json(),
                )
            )
            if self._can_materialize(table, definition):
                quote = self.engine.dialect.identifier_preparer.quote
                conn.execute(text(
                    f"CREATE INDEX IF NOT EXISTS {quote(f'ix_{table}_{definition.name}')} "
                    f"ON {quote(table)} ({self._json_path_sql(definition.fields[0])})"
                ))

    def _can_materialize(self, table: str, definition: IndexDefinition) -> bool:
        return (
            self.engine.dialect.name == "sqlite"
            and not definition.is_compound
            and not definition.multi
            and bool(_SAFE_NAME.match(table))
            and bool(_SAFE_NAME.match(definition.fields[0]))
        )

    @staticmethod
    def _json_path_sql(field: str) -> str:
        return f"json_extract(doc, '$.\"{field}\"')"

    def get_all(
        self, table: str, index: IndexDefinition, values: Iterable[Any]
    ) -> List[dict]:
        values = list(values)
        pushdown = self._can_materialize(table, index) and all(
            isinstance(v, (str, int, float)) and not isinstance(v, bool) for v in values
        )
        if not pushdown:
            return super().get_all(table, index, values)

        data = self._data_table(table)
        extracted = func.json_extract(
            data.c.doc, literal_column(f"'$.\"{index.fields[0]}\"'")
        )
        with self._connection(f"query index {index.name}") as conn:
            rows = conn.execute(select(data.c.doc).where(extracted.in_(values))).fetchall()
        docs = [decode(row[0]) for row in rows]
        return [doc for doc in docs if any(index.matches(doc, v) for v in values)]
