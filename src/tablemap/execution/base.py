from abc import ABC, abstractmethod
from contextlib import contextmanager
from typing import Any, Iterable, Iterator, List, Optional

from tablemap.schema.indexes import IndexDefinition


class StorageBackend(ABC):
    """Canonical interface every storage backend must implement.

    Backends store plain dict documents keyed by a per-table primary key and
    keep secondary index definitions. Failures are reported as
    ``DatabaseError``.
    """

    @abstractmethod
    def list_tables(self) -> List[str]:
        """Return the names of all tables."""
        pass

    @abstractmethod
    def create_table(self, name: str, primary_key: str) -> None:
        """Create an empty table; fails if it already exists."""
        pass

    @abstractmethod
    def primary_key(self, table: str) -> str:
        """Return the primary key field name of a table."""
        pass

    @abstractmethod
    def get(self, table: str, key: Any) -> Optional[dict]:
        """Return the document stored under ``key`` or None."""
        pass

    @abstractmethod
    def scan(self, table: str) -> Iterator[dict]:
        """Iterate over every document of a table."""
        pass

    @abstractmethod
    def insert(self, table: str, doc: dict) -> None:
        """Store a new document; fails on a duplicate primary key."""
        pass

    @abstractmethod
    def replace(self, table: str, key: Any, doc: dict) -> None:
        """Overwrite the document stored under ``key``."""
        pass

    @abstractmethod
    def remove(self, table: str, key: Any) -> None:
        """Delete the document stored under ``key``."""
        pass

    @abstractmethod
    def list_indexes(self, table: str) -> List[str]:
        """Return the secondary index names of a table."""
        pass

    @abstractmethod
    def create_index(self, table: str, definition: IndexDefinition) -> None:
        """Register a secondary index; fails if it already exists."""
        pass

    @abstractmethod
    def get_index(self, table: str, name: str) -> IndexDefinition:
        """Return an index definition; fails if it does not exist."""
        pass

    def index_ready(self, table: str, name: str) -> bool:
        """Whether an index has finished building."""
        return True

    def get_all(
        self, table: str, index: IndexDefinition, values: Iterable[Any]
    ) -> List[dict]:
        """Return documents whose index keys match any of ``values``."""
        values = list(values)
        return [
            doc for doc in self.scan(table)
            if any(index.matches(doc, value) for value in values)
        ]

    @contextmanager
    def transaction(self) -> Iterator[None]:
        """Scope in which a whole composed query executes."""
        yield

    def close(self) -> None:
        pass
