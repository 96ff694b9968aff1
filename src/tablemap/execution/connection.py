from typing import Any, Optional

from tablemap.common.logger import get_logger
from tablemap.common.settings import settings
from tablemap.query.ast import Term, expr

from .base import StorageBackend
from .evaluator import QueryEvaluator
from .memory import MemoryStore
from .sqlalchemy_store import SQLAlchemyStore

logger = get_logger(__name__)


class Connection:
    """Executes composed queries against a storage backend.

    Every query runs inside one backend transaction, so the checks a query
    composes (such as uniqueness assertions) see the same state as its writes.
    """

    def __init__(self, backend: StorageBackend, evaluator: Optional[QueryEvaluator] = None):
        self.backend = backend
        self.evaluator = evaluator or QueryEvaluator(backend)

    def __enter__(self) -> "Connection":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def run(self, query: Any) -> Any:
        term = query if isinstance(query, Term) else expr(query)
        logger.debug("Running %r", term)
        with self.backend.transaction():
            return self.evaluator.evaluate(term)

    def close(self) -> None:
        self.backend.close()


def connect(url: Optional[str] = None) -> Connection:
    """Opens a connection from a store URL.

    Args:
        url: ``memory://`` for an in-process store, or any SQLAlchemy URL.
            Defaults to ``settings.database_url``.

    Returns:
        Connection: The connection.
    """
    url = url or settings.database_url
    if url.startswith("memory://"):
        return Connection(MemoryStore())

    return Connection(SQLAlchemyStore(url))
