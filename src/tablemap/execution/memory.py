import copy
import threading
from collections import OrderedDict
from contextlib import contextmanager
from typing import Any, Dict, Iterator, List, Optional

from tablemap.common.errors import DatabaseError
from tablemap.common.logger import get_logger
from tablemap.schema.indexes import IndexDefinition

from .base import StorageBackend

logger = get_logger(__name__)


class _MemoryTable:
    def __init__(self, primary_key: str):
        self.primary_key = primary_key
        self.docs: "OrderedDict[Any, dict]" = OrderedDict()
        self.indexes: Dict[str, IndexDefinition] = {}


class MemoryStore(StorageBackend):
    """In-process document store.

    Documents are deep-copied on the way in and out. A whole composed query
    runs under one re-entrant lock, so a uniqueness check and the write it
    guards are atomic with respect to other threads using the same store.
    """

    def __init__(self):
        self._tables: Dict[str, _MemoryTable] = {}
        self._lock = threading.RLock()

    def _table(self, name: str) -> _MemoryTable:
        try:
            return self._tables[name]
        except KeyError:
            raise DatabaseError(f"Table `{name}` does not exist.", {"table": name}) from None

    @contextmanager
    def transaction(self) -> Iterator[None]:
        with self._lock:
            yield

    def list_tables(self) -> List[str]:
        return list(self._tables)

    def create_table(self, name: str, primary_key: str) -> None:
        if name in self._tables:
            raise DatabaseError(f"Table `{name}` already exists.", {"table": name})
        self._tables[name] = _MemoryTable(primary_key)
        logger.debug("Created memory table %s", name)

    def primary_key(self, table: str) -> str:
        return self._table(table).primary_key

    def get(self, table: str, key: Any) -> Optional[dict]:
        doc = self._table(table).docs.get(_hashable(key))
        return copy.deepcopy(doc)

    def scan(self, table: str) -> Iterator[dict]:
        for doc in list(self._table(table).docs.values()):
            yield copy.deepcopy(doc)

    def insert(self, table: str, doc: dict) -> None:
        state = self._table(table)
        key = _hashable(doc[state.primary_key])
        if key in state.docs:
            raise DatabaseError(
                f"Duplicate primary key `{state.primary_key}` in table `{table}`.",
                {"table": table, "key": doc[state.primary_key]},
            )
        state.docs[key] = copy.deepcopy(doc)

    def replace(self, table: str, key: Any, doc: dict) -> None:
        self._table(table).docs[_hashable(key)] = copy.deepcopy(doc)

    def remove(self, table: str, key: Any) -> None:
        self._table(table).docs.pop(_hashable(key), None)

    def list_indexes(self, table: str) -> List[str]:
        return list(self._table(table).indexes)

    def create_index(self, table: str, definition: IndexDefinition) -> None:
        state = self._table(table)
        if definition.name in state.indexes:
            raise DatabaseError(
                f"Index `{definition.name}` already exists on table `{table}`.",
                {"table": table, "index": definition.name},
            )
        state.indexes[definition.name] = definition

    def get_index(self, table: str, name: str) -> IndexDefinition:
        try:
            return self._table(table).indexes[name]
        except KeyError:
            raise DatabaseError(
                f"Index `{name}` was not found on table `{table}`.",
                {"table": table, "index": name},
            ) from None


def _hashable(key: Any) -> Any:
    if isinstance(key, list):
        return tuple(_hashable(part) for part in key)
    return key
