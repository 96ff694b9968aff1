"""Execution adapters lowering composed queries onto storage backends."""

from .base import StorageBackend
from .connection import Connection, connect
from .evaluator import QueryEvaluator
from .memory import MemoryStore
from .sqlalchemy_store import SQLAlchemyStore

__all__ = [
    "StorageBackend",
    "Connection",
    "connect",
    "QueryEvaluator",
    "MemoryStore",
    "SQLAlchemyStore",
]
