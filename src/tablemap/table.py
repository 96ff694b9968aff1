"""
Table definitions.

A ``Table`` binds a table name to a schema (field name -> ``SchemaField``),
a map of named relations and explicit index declarations. It composes CRUD,
uniqueness and join queries and provisions its storage through ``sync``.

Example:
    >>> users = Table(
    ...     table="users",
    ...     schema=lambda: {
    ...         "id": field(str).optional(),
    ...         "email": field(str, unique=True),
    ...         "createdAt": field(datetime).optional(),
    ...     },
    ...     relations=lambda: {"posts": users.linked_by(posts, "author_id").to_many()},
    ... )
    >>> users.insert({"email": "ada@example.com"}).run(connection)
"""
from functools import cached_property
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

from tablemap.common.errors import (
    ConfigurationError,
    ErrorCode,
    RelationNotFoundError,
    UnknownFieldError,
)
from tablemap.common.logger import get_logger
from tablemap.common.settings import settings
from tablemap.join import JoinSpec
from tablemap.query import TableTerm, Term, r
from tablemap.relations import Link, LinkEnd, Relation
from tablemap.schema import IndexDefinition, RecordSchema, SchemaField
from tablemap.sync import SyncOrchestrator, SyncState

logger = get_logger(__name__)

CREATED_AT = "createdAt"
UPDATED_AT = "updatedAt"

IndexDeclaration = Union[bool, str, List[str], Dict[str, Any], IndexDefinition]


class TableOptions(BaseModel):
    """Constructor options of a Table."""

    table: str = Field(..., min_length=1)
    pk: str = Field(default="id", min_length=1)
    schema_factory: Callable[[], Mapping[str, SchemaField]] = Field(..., alias="schema")
    relations_factory: Optional[Callable[[], Mapping[str, Relation]]] = Field(
        default=None, alias="relations"
    )
    indexes: Dict[str, IndexDeclaration] = Field(default_factory=dict)

    model_config = ConfigDict(arbitrary_types_allowed=True, extra="forbid")


class Table:
    pk = "id"

    def __init__(
        self,
        table: str,
        schema: Callable[[], Mapping[str, SchemaField]],
        pk: Optional[str] = None,
        relations: Optional[Callable[[], Mapping[str, Relation]]] = None,
        indexes: Optional[Mapping[str, IndexDeclaration]] = None,
    ):
        try:
            options = TableOptions.model_validate({
                "table": table,
                "pk": type(self).pk if pk is None else pk,
                "schema": schema,
                "relations": relations,
                "indexes": dict(indexes or {}),
            })
        except (ValueError, TypeError) as exc:
            raise ConfigurationError(f"Invalid options for table '{table}': {exc}") from exc

        if options.pk in options.indexes:
            raise ConfigurationError(
                f"Primary key '{options.pk}' of table '{options.table}' is indexed implicitly "
                "and cannot be declared as an index.",
                {"table": options.table, "index": options.pk},
            )

        self.name = options.table
        self.pk = options.pk
        self._schema_factory = options.schema_factory
        self._relations_factory = options.relations_factory
        self._index_declarations = options.indexes

    def __repr__(self) -> str:
        return f"Table({self.name!r}, pk={self.pk!r})"

    # -- schema -------------------------------------------------------------

    @cached_property
    def fields(self) -> Dict[str, SchemaField]:
        fields = self._schema_factory()
        if not isinstance(fields, Mapping) or not all(
            isinstance(value, SchemaField) for value in fields.values()
        ):
            raise ConfigurationError(
                f"Schema of table '{self.name}' must map field names to SchemaField.",
                {"table": self.name},
            )
        return dict(fields)

    @cached_property
    def schema(self) -> RecordSchema:
        return RecordSchema(self.name, self.fields)

    @cached_property
    def relations(self) -> Dict[str, Relation]:
        relations = dict(self._relations_factory()) if self._relations_factory else {}
        prefix = settings.join_option_prefix
        for name, relation in relations.items():
            if name.startswith(prefix):
                raise ConfigurationError(
                    f"Relation '{self.name}.{name}' uses the reserved prefix '{prefix}'.",
                    {"table": self.name, "relation": name},
                )
            if not isinstance(relation, Relation):
                raise ConfigurationError(
                    f"Relation '{self.name}.{name}' must be a Relation, got {relation!r}.",
                    {"table": self.name, "relation": name},
                )
        return relations

    def validate(self, data: Any = None) -> bool:
        return self.schema.validate(data)

    def attempt(self, data: Any = None) -> Dict[str, Any]:
        return self.schema.attempt(data)

    def create(self, data: Any = None) -> Dict[str, Any]:
        return self.attempt(data)

    def has_field(self, field_name: str) -> bool:
        return field_name in self.fields

    def assert_field(self, field_name: str) -> None:
        if not self.has_field(field_name):
            raise UnknownFieldError(
                f"Field '{field_name}' is unspecified in table '{self.name}'.",
                {"table": self.name, "field": field_name},
            )

    def get_field(self, field_name: str) -> SchemaField:
        self.assert_field(field_name)
        return self.fields[field_name]

    def get_foreign_key(
        self, field_name: Optional[str] = None, is_many_to_many: bool = False
    ) -> SchemaField:
        """A field suitable for referencing ``field_name`` of this table.

        Many-to-many keys are required and non-nullable; other foreign keys
        are optional, nullable and default to ``None``. Both are indexed.
        """
        fk = self.get_field(field_name or self.pk).without_meta("unique").indexed()
        if is_many_to_many:
            return fk.required().nullable(False)
        return fk.optional().nullable().with_default(None)

    # -- relations ----------------------------------------------------------

    def link_to(self, target_table: "Table", left_field: str, index: Optional[str] = None) -> Link:
        return Link(
            source=LinkEnd(self, left_field),
            target=LinkEnd(target_table, index or target_table.pk),
        )

    def linked_by(self, target_table: "Table", left_field: str, index: Optional[str] = None) -> Link:
        return target_table.link_to(self, left_field, index=index).reverse()

    def get_relation(self, relation: str) -> Relation:
        try:
            return self.relations[relation]
        except KeyError:
            raise RelationNotFoundError(
                f"Relation '{self.name}.{relation}' does not exist.",
                {"table": self.name, "relation": relation},
            ) from None

    def query_related(
        self, relation: str, row: Term, options: Optional[Mapping[str, Any]] = None
    ) -> Term:
        return self.get_relation(relation).join(row, options)

    def create_relation(self, relation: str, one_pk: Any, other_pk: Any) -> Term:
        return self.get_relation(relation).create(one_pk, other_pk)

    def remove_relation(self, relation: str, one_pk: Any, other_pk: Any) -> Term:
        return self.get_relation(relation).remove(one_pk, other_pk)

    def has_relation(self, relation: str, one_pk: Any, other_pk: Any) -> Term:
        return self.get_relation(relation).has(one_pk, other_pk)

    def with_join(self, query: Term, relations: Union[JoinSpec, Mapping[str, Any]]) -> Term:
        """Merges the requested relations into every row of ``query``.

        Each relation is looked up with its options applied; nested specs are
        joined recursively on the target table. Null rows are left untouched.
        """
        spec = JoinSpec.parse(relations)
        if not spec.relations:
            return query

        resolved = {name: self.get_relation(name) for name in spec.relations}

        def related(row: Term) -> Dict[str, Term]:
            merged = {}
            for name, relation in resolved.items():
                nested = spec.relations[name]
                value = self.query_related(name, row, nested.options)
                if nested.relations:
                    value = relation.target_table.with_join(value, nested.nested())
                merged[name] = value
            return merged

        return query.merge(related)

    # -- queries ------------------------------------------------------------

    def query(self) -> TableTerm:
        return r.table(self.name)

    def get(self, pk: Any) -> Term:
        return self.query().get(pk)

    def get_all(self, *values: Any, index: Optional[str] = None) -> Term:
        return self.query().get_all(*values, index=index or self.pk)

    def _select(self, pk: Any) -> Term:
        if isinstance(pk, (list, tuple)):
            return self.query().get_all(*pk)
        return self.query().get(pk)

    def insert(self, data: Union[Mapping[str, Any], List[Mapping[str, Any]]], **optargs) -> Term:
        many = isinstance(data, (list, tuple))
        records = [self._prepare_insert(item) for item in (data if many else [data])]
        write = self.query().insert(records if many else records[0], **optargs)
        # An upsert may keep a record's own unique values.
        upsert = optargs.get("conflict") in ("update", "replace")
        check = self.assert_integrate(records if many else records[0], exclude_own=upsert)
        return check.do(lambda _: write)

    def _prepare_insert(self, data: Mapping[str, Any]) -> Dict[str, Any]:
        stamped = [name for name in (CREATED_AT, UPDATED_AT) if self.has_field(name)]
        names = [
            name for name in self.fields
            if name not in stamped or (isinstance(data, Mapping) and name in data)
        ]
        record = self.schema.attempt(data, fields=names)
        if CREATED_AT in stamped:
            record[CREATED_AT] = r.now()
        return record

    def update(self, pk: Any, data: Mapping[str, Any], **optargs) -> Term:
        """Updates the record(s) selected by ``pk`` with validated ``data``.

        ``pk`` is a key or a list of keys. A non-null unique value fails the
        write when another record holds it, or when the keys select more than
        one existing record.
        """
        record = self.schema.attempt(data, fields=list(data) if isinstance(data, Mapping) else ())
        if self.has_field(UPDATED_AT):
            record[UPDATED_AT] = r.now()
        many = isinstance(pk, (list, tuple))
        keys = _distinct(pk) if many else [pk]
        selection = self._select(keys if many else pk)
        write = selection.update(record, **optargs)

        check = self.assert_integrate(record, exclude=keys)
        shared = [name for name in self.unique_fields() if record.get(name) is not None]
        if len(keys) > 1 and shared:
            check = r.branch(
                selection.count().gt(1),
                self._uniqueness_error(
                    shared[0], record[shared[0]], "would be written to more than one record"
                ),
                check,
            )
        return check.do(lambda _: write)

    def delete(self, pk: Any, **optargs) -> Term:
        return self._select(pk).delete(**optargs)

    def unique_fields(self) -> List[str]:
        return [name for name, spec in self.fields.items() if spec.is_unique()]

    def assert_integrate(
        self, data: Any, exclude: Iterable[Any] = (), exclude_own: bool = False
    ) -> Term:
        """Composes the uniqueness precondition of a write.

        For each unique field present in ``data`` with a non-null value, the
        composed query fails with UniquenessViolationError when a record
        outside ``exclude`` holds the value. With ``exclude_own``, the primary
        key of the record carrying the value is excluded too. A value repeated
        within ``data`` fails immediately.
        """
        records = [
            record for record in (data if isinstance(data, (list, tuple)) else [data])
            if isinstance(record, Mapping)
        ]
        excluded = list(exclude)
        checks: List[Term] = []

        for name in self.unique_fields():
            holders = [record for record in records if record.get(name) is not None]
            repeated = _first_repeated([record[name] for record in holders])
            if repeated is not _NONE:
                checks.append(
                    self._uniqueness_error(name, repeated, "appears more than once in the write")
                )
                continue
            for record in holders:
                others = excluded
                if exclude_own and record.get(self.pk) is not None:
                    others = excluded + [record[self.pk]]
                checks.append(r.branch(self._conflicts(name, record[name], others),
                                       self._uniqueness_error(name, record[name]),
                                       True))

        if not checks:
            return r.expr(True)
        query = checks[0]
        for check in checks[1:]:
            query = query.do(_then(check))
        return query

    def _conflicts(self, name: str, value: Any, excluded: List[Any]) -> Term:
        holders = self.get_all(value, index=name)
        if excluded:
            holders = holders.filter(lambda doc: r.expr(excluded).contains(doc[self.pk]).not_())
        return holders.is_empty().not_()

    def _uniqueness_error(self, name: str, value: Any, reason: str = "is already taken") -> Term:
        return r.error(
            f"Field '{name}' of table '{self.name}' must be unique; {value!r} {reason}.",
            code=ErrorCode.UNIQUENESS_VIOLATION,
            table=self.name,
            field=name,
            value=value,
        )

    # -- indexes and sync ---------------------------------------------------

    def index_plan(self) -> Dict[str, IndexDefinition]:
        """Every secondary index this table needs, the primary key excluded.

        The union of fields flagged ``index``, fields flagged ``unique`` and
        explicit declarations (which win on a name clash).
        """
        plan: Dict[str, IndexDefinition] = {}
        for name, spec in self.fields.items():
            if name != self.pk and (spec.is_indexed() or spec.is_unique()):
                plan[name] = IndexDefinition(name=name, fields=[name])
        for name, declaration in self._index_declarations.items():
            definition = IndexDefinition.from_declaration(name, declaration)
            if definition is not None:
                plan[name] = definition
        return plan

    def ensure_table_query(self) -> Term:
        return r.branch(
            r.table_list().contains(self.name).not_(),
            r.table_create(self.name, primary_key=self.pk),
            None,
        )

    def ensure_index_query(self, definition: IndexDefinition) -> Term:
        return r.branch(
            self.query().index_list().contains(definition.name).not_(),
            self.query().index_create(
                definition.name, fields=definition.fields, multi=definition.multi
            ),
            None,
        )

    def ensure_table(self, connection) -> None:
        SyncOrchestrator(self).ensure_table(connection)

    def ensure_index(self, connection, index: str) -> None:
        SyncOrchestrator(self).ensure_index(connection, index)

    def ensure_all_indexes(self, connection) -> None:
        SyncOrchestrator(self).ensure_all_indexes(connection)

    def sync_relations(self, connection) -> None:
        SyncOrchestrator(self).sync_relations(connection)

    def sync(self, connection) -> SyncState:
        orchestrator = SyncOrchestrator(self)
        orchestrator.run(connection)
        return orchestrator.state


def _then(term: Term) -> Callable[[Term], Term]:
    return lambda _: term


_NONE = object()


def _distinct(values: Iterable[Any]) -> List[Any]:
    seen = set()
    result = []
    for value in values:
        if repr(value) not in seen:
            seen.add(repr(value))
            result.append(value)
    return result


def _first_repeated(values: Iterable[Any]) -> Any:
    seen = set()
    for value in values:
        if repr(value) in seen:
            return value
        seen.add(repr(value))
    return _NONE
