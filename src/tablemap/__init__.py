"""Schema-aware tables, relations and indexes over document stores."""

from tablemap.common.errors import (
    ConfigurationError,
    DatabaseError,
    ErrorCode,
    InvalidQueryOptionError,
    RelationNotFoundError,
    SchemaValidationError,
    TablemapError,
    UniquenessViolationError,
    UnknownFieldError,
    UnsupportedRelationOperationError,
)
from tablemap.execution import Connection, MemoryStore, SQLAlchemyStore, connect
from tablemap.join import JoinSpec
from tablemap.query import Term, r
from tablemap.relations import Link, ManyToMany, Relation, RelationKind, ToMany, ToOne
from tablemap.schema import IndexDefinition, SchemaField, field
from tablemap.sync import SyncOrchestrator, SyncState, sync_all
from tablemap.table import Table

__all__ = [
    "ConfigurationError",
    "DatabaseError",
    "ErrorCode",
    "InvalidQueryOptionError",
    "RelationNotFoundError",
    "SchemaValidationError",
    "TablemapError",
    "UniquenessViolationError",
    "UnknownFieldError",
    "UnsupportedRelationOperationError",
    "Connection",
    "MemoryStore",
    "SQLAlchemyStore",
    "connect",
    "JoinSpec",
    "Term",
    "r",
    "Link",
    "ManyToMany",
    "Relation",
    "RelationKind",
    "ToMany",
    "ToOne",
    "IndexDefinition",
    "SchemaField",
    "field",
    "SyncOrchestrator",
    "SyncState",
    "sync_all",
    "Table",
]
