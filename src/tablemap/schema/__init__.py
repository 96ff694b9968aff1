"""Schema descriptors, record validation and index definitions."""

from .fields import SchemaField, field
from .indexes import IndexDefinition
from .validator import RecordSchema

__all__ = [
    "SchemaField",
    "field",
    "IndexDefinition",
    "RecordSchema",
]
