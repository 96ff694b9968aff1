"""
Composed queries.

A query is an immutable tree of ``Term`` nodes built with the ``r`` namespace
and the chainable methods below. Building a term never touches a database;
``Term.run(connection)`` hands the tree to an execution adapter which lowers it
onto a storage backend (see ``tablemap.execution``).

Example:
    >>> users = r.table("users")
    >>> query = users.get_all("a@b.c", index="email").nth(0).default(None)
    >>> query.run(connection)
"""
import inspect
import itertools
from typing import Any, Callable, Dict, Iterator, List, Mapping, Optional

from tablemap.common.errors import ErrorCode, InvalidQueryOptionError

_var_ids = itertools.count(1)

# Sequence transformers a relation lookup accepts as per-relation options.
OPTION_METHODS = frozenset({"filter", "order_by", "limit", "skip", "pluck", "without"})


class Term:
    """A single node of a composed query.

    Attributes:
        op (str): The operation name, dispatched on by the evaluator.
        args (tuple): Positional operands (usually other terms).
        optargs (dict): Named, non-term parameters of the operation.
    """

    __slots__ = ("op", "args", "optargs")

    def __init__(self, op: str, args=(), optargs: Optional[Dict[str, Any]] = None):
        self.op = op
        self.args = tuple(args)
        self.optargs = dict(optargs or {})

    def __repr__(self) -> str:
        parts = [repr(arg) for arg in self.args]
        parts += [f"{key}={value!r}" for key, value in self.optargs.items()]
        return f"{self.op}({', '.join(parts)})"

    def run(self, connection) -> Any:
        """Executes the query through the given connection."""
        return connection.run(self)

    def iter_terms(self) -> Iterator["Term"]:
        """Yields this term and every nested term, depth first."""
        yield self
        for arg in self.args:
            yield from arg.iter_terms()
        if self.op == "object":
            for value in self.optargs["items"].values():
                yield from value.iter_terms()

    # -- field access and comparison -------------------------------------

    def __getitem__(self, key) -> "Term":
        return Term("bracket", (self, expr(key)))

    def eq(self, other) -> "Term":
        return Term("eq", (self, expr(other)))

    def ne(self, other) -> "Term":
        return Term("ne", (self, expr(other)))

    def gt(self, other) -> "Term":
        return Term("gt", (self, expr(other)))

    def ge(self, other) -> "Term":
        return Term("ge", (self, expr(other)))

    def lt(self, other) -> "Term":
        return Term("lt", (self, expr(other)))

    def le(self, other) -> "Term":
        return Term("le", (self, expr(other)))

    def not_(self) -> "Term":
        return Term("not", (self,))

    def and_(self, *others) -> "Term":
        return Term("and", (self, *[expr(o) for o in others]))

    def or_(self, *others) -> "Term":
        return Term("or", (self, *[expr(o) for o in others]))

    # -- sequences -------------------------------------------------------

    def contains(self, value) -> "Term":
        return Term("contains", (self, expr(value)))

    def count(self) -> "Term":
        return Term("count", (self,))

    def is_empty(self) -> "Term":
        return Term("is_empty", (self,))

    def nth(self, index: int) -> "Term":
        return Term("nth", (self, expr(index)))

    def default(self, value) -> "Term":
        """Replaces a null or non-existent result with ``value``."""
        return Term("default", (self, expr(value)))

    def merge(self, obj_or_func) -> "Term":
        """Merges an object (or the result of a row function) into each row.

        Null rows pass through untouched, also per element of a sequence.
        """
        return Term("merge", (self, expr(obj_or_func)))

    def map(self, func: Callable) -> "Term":
        return Term("map", (self, expr(func)))

    def concat_map(self, func: Callable) -> "Term":
        return Term("concat_map", (self, expr(func)))

    def filter(self, predicate) -> "Term":
        return Term("filter", (self, expr(predicate)))

    def order_by(self, *keys) -> "Term":
        ordering = [key if isinstance(key, Term) else r.asc(key) for key in keys]
        return Term("order_by", (self, *ordering))

    def limit(self, n: int) -> "Term":
        return Term("limit", (self, expr(n)))

    def skip(self, n: int) -> "Term":
        return Term("skip", (self, expr(n)))

    def pluck(self, *fields: str) -> "Term":
        return Term("pluck", (self,), {"fields": list(fields)})

    def without(self, *fields: str) -> "Term":
        return Term("without", (self,), {"fields": list(fields)})

    def coerce_to(self, type_name: str) -> "Term":
        return Term("coerce_to", (self,), {"type": type_name})

    def do(self, func: Callable) -> "Term":
        """Evaluates this term, then ``func`` with its result."""
        return Term("do", (self, expr(func)))

    def with_options(self, options: Optional[Mapping[str, Any]] = None) -> "Term":
        """Applies query options as chained sequence transformers.

        Each key names a transformer (``filter``, ``order_by``, ``limit``,
        ``skip``, ``pluck``, ``without``); list or tuple values are spread as
        positional arguments.
        """
        query = self
        for key, value in (options or {}).items():
            if key not in OPTION_METHODS:
                raise InvalidQueryOptionError(
                    f"Unsupported query option '{key}'.", {"option": key}
                )
            args = value if isinstance(value, (list, tuple)) else (value,)
            query = getattr(query, key)(*args)
        return query

    # -- writes on selections --------------------------------------------

    def update(self, data, **optargs) -> "Term":
        return Term("update", (self, expr(data)), optargs)

    def delete(self, **optargs) -> "Term":
        return Term("delete", (self,), optargs)


class TableTerm(Term):
    """A term selecting a whole table; adds record and index operations."""

    __slots__ = ()

    def __init__(self, name: str):
        super().__init__("table", (), {"name": name})

    @property
    def name(self) -> str:
        return self.optargs["name"]

    def get(self, key) -> Term:
        return Term("get", (self, expr(key)))

    def get_all(self, *values, index: Optional[str] = None) -> Term:
        return Term("get_all", (self, *[expr(v) for v in values]), {"index": index})

    def insert(self, data, **optargs) -> Term:
        return Term("insert", (self, expr(data)), optargs)

    def index_list(self) -> Term:
        return Term("index_list", (self,))

    def index_create(
        self, name: str, fields: Optional[List[str]] = None, multi: bool = False
    ) -> Term:
        return Term(
            "index_create",
            (self,),
            {"name": name, "fields": list(fields or [name]), "multi": multi},
        )

    def index_wait(self, *names: str) -> Term:
        return Term("index_wait", (self,), {"names": list(names)})


def func(callable_: Callable) -> Term:
    """Builds a function term by calling ``callable_`` with variable terms."""
    arity = len(inspect.signature(callable_).parameters)
    params = [next(_var_ids) for _ in range(arity)]
    body = callable_(*[Term("var", (), {"id": p}) for p in params])
    return Term("func", (expr(body),), {"params": params})


def expr(value: Any) -> Term:
    """Converts a Python value (possibly containing terms) into a term."""
    if isinstance(value, Term):
        return value
    if isinstance(value, Mapping):
        return Term("object", (), {"items": {str(k): expr(v) for k, v in value.items()}})
    if isinstance(value, (list, tuple)):
        return Term("array", [expr(v) for v in value])
    if callable(value) and not isinstance(value, type):
        return func(value)
    return Term("datum", (), {"value": value})


class _RNamespace:
    """Entry points for building composed queries."""

    expr = staticmethod(expr)

    @staticmethod
    def table(name: str) -> TableTerm:
        return TableTerm(name)

    @staticmethod
    def table_list() -> Term:
        return Term("table_list")

    @staticmethod
    def table_create(name: str, primary_key: str = "id") -> Term:
        return Term("table_create", (), {"name": name, "primary_key": primary_key})

    @staticmethod
    def branch(test, true_branch, false_branch) -> Term:
        return Term("branch", (expr(test), expr(true_branch), expr(false_branch)))

    @staticmethod
    def error(message: str, code: ErrorCode = ErrorCode.DB_EXECUTION_ERROR, **details) -> Term:
        """Fails the whole query with the exception matching ``code``."""
        return Term("error", (expr(message),), {"code": code, "details": details})

    @staticmethod
    def now() -> Term:
        return Term("now")

    @staticmethod
    def asc(field: str) -> Term:
        return Term("asc", (), {"field": field})

    @staticmethod
    def desc(field: str) -> Term:
        return Term("desc", (), {"field": field})


r = _RNamespace()
