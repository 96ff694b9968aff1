"""
Relations between tables.

A ``Link`` joins a field of an owning table (source) to a field of a target
table. It is turned into one of three relation variants sharing the
``query``/``coerce_type`` contract:

* ``ToOne``       - the source field holds the target's key; one record.
* ``ToMany``      - the target field holds the source's key; a list.
* ``ManyToMany``  - associations live in an implicit join table; a list,
                    plus ``create``/``remove``/``has`` on associations.
"""
from abc import ABC, abstractmethod
from enum import Enum
from functools import cached_property
from typing import TYPE_CHECKING, Any, Mapping, NamedTuple, Optional

from tablemap.common.errors import ConfigurationError, UnsupportedRelationOperationError
from tablemap.common.logger import get_logger
from tablemap.query import Term, r
from tablemap.schema import field

if TYPE_CHECKING:
    from tablemap.table import Table

logger = get_logger(__name__)


class RelationKind(str, Enum):
    TO_ONE = "to_one"
    TO_MANY = "to_many"
    MANY_TO_MANY = "many_to_many"


class LinkEnd(NamedTuple):
    table: "Table"
    field: str

    def __str__(self) -> str:
        return f"{self.table.name}.{self.field}"


class Link:
    """A directed association from a source field to a target field."""

    def __init__(self, source: LinkEnd, target: LinkEnd):
        for end in (source, target):
            if end.field != end.table.pk:
                end.table.assert_field(end.field)
        self.source = source
        self.target = target

    def __repr__(self) -> str:
        return f"Link({self.source} -> {self.target})"

    def reverse(self) -> "Link":
        return Link(self.target, self.source)

    def to_one(self) -> "ToOne":
        return ToOne(self)

    def to_many(self) -> "ToMany":
        return ToMany(self)

    def many_to_many(
        self,
        through: Optional[str] = None,
        source_key: Optional[str] = None,
        target_key: Optional[str] = None,
    ) -> "ManyToMany":
        return ManyToMany(self, through=through, source_key=source_key, target_key=target_key)


class Relation(ABC):
    """Shared contract of every relation variant."""

    kind: RelationKind

    def __init__(self, link: Link):
        self.link = link

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.source} -> {self.target})"

    @property
    def source(self) -> LinkEnd:
        return self.link.source

    @property
    def target(self) -> LinkEnd:
        return self.link.target

    @property
    def target_table(self) -> "Table":
        return self.target.table

    @property
    def index(self) -> str:
        """Index used to look records up in the target table."""
        return self.target.field

    def query(self, index_value: Any, options: Optional[Mapping[str, Any]] = None) -> Term:
        """Target records whose indexed field equals ``index_value``."""
        lookup = self.target_table.get_all(index_value, index=self.index)
        return lookup.with_options(options)

    @abstractmethod
    def coerce_type(self, query: Term) -> Term:
        """Reduces a lookup to the relation's cardinality."""

    def join(self, row: Term, options: Optional[Mapping[str, Any]] = None) -> Term:
        """The related value(s) of an owner row, already coerced."""
        return self.coerce_type(self.query(row[self.source.field].default(None), options))

    def sync(self, connection) -> None:
        """Ensures the target table and the index this relation queries."""
        self.target_table.ensure_table(connection)
        self.target_table.ensure_index(connection, self.index)

    def _unsupported(self, operation: str):
        return UnsupportedRelationOperationError(
            f"'{operation}' is not supported by {self!r}; "
            "only many-to-many relations manage associations.",
            {"operation": operation, "kind": self.kind.value},
        )

    def create(self, owner_pk: Any, other_pk: Any) -> Term:
        raise self._unsupported("create")

    def remove(self, owner_pk: Any, other_pk: Any) -> Term:
        raise self._unsupported("remove")

    def has(self, owner_pk: Any, other_pk: Any) -> Term:
        raise self._unsupported("has")


class ToOne(Relation):
    kind = RelationKind.TO_ONE

    def coerce_type(self, query: Term) -> Term:
        return query.nth(0).default(None)


class ToMany(Relation):
    kind = RelationKind.TO_MANY

    def coerce_type(self, query: Term) -> Term:
        return query.coerce_to("array")


class ManyToMany(ToMany):
    """Association through an implicit join table.

    The join table (``through``) holds one record per association with two
    required, indexed key fields built by ``get_foreign_key``.
    """

    kind = RelationKind.MANY_TO_MANY

    def __init__(
        self,
        link: Link,
        through: Optional[str] = None,
        source_key: Optional[str] = None,
        target_key: Optional[str] = None,
    ):
        super().__init__(link)
        self.through_name = through or f"{self.source.table.name}__{self.target.table.name}"
        self.source_key = source_key or f"{self.source.table.name}_{self.source.field}"
        self.target_key = target_key or f"{self.target.table.name}_{self.target.field}"
        if self.source_key == self.target_key:
            raise ConfigurationError(
                f"Join table '{self.through_name}' needs distinct key fields; "
                "pass source_key and target_key explicitly.",
                {"key": self.source_key},
            )

    @cached_property
    def through(self) -> "Table":
        from tablemap.table import Table

        source, target = self.source, self.target
        return Table(
            table=self.through_name,
            schema=lambda: {
                "id": field(str).optional(),
                self.source_key: source.table.get_foreign_key(
                    field_name=source.field, is_many_to_many=True
                ),
                self.target_key: target.table.get_foreign_key(
                    field_name=target.field, is_many_to_many=True
                ),
            },
        )

    def query(self, index_value: Any, options: Optional[Mapping[str, Any]] = None) -> Term:
        links = self.through.get_all(index_value, index=self.source_key)
        target = self.target_table
        lookup = links.concat_map(
            lambda link: target.get_all(link[self.target_key], index=self.index).coerce_to("array")
        )
        return lookup.with_options(options)

    def _links(self, owner_pk: Any, other_pk: Any) -> Term:
        return self.through.get_all(owner_pk, index=self.source_key).filter(
            {self.target_key: other_pk}
        )

    def has(self, owner_pk: Any, other_pk: Any) -> Term:
        return self._links(owner_pk, other_pk).is_empty().not_()

    def create(self, owner_pk: Any, other_pk: Any) -> Term:
        return r.branch(
            self.has(owner_pk, other_pk),
            {"inserted": 0, "unchanged": 1, "errors": 0},
            self.through.insert({self.source_key: owner_pk, self.target_key: other_pk}),
        )

    def remove(self, owner_pk: Any, other_pk: Any) -> Term:
        return self._links(owner_pk, other_pk).delete()

    def sync(self, connection) -> None:
        logger.info("Syncing join table %s for %r", self.through_name, self)
        self.through.sync(connection)
        super().sync(connection)
