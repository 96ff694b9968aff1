import copy
import time
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from tablemap.common.errors import DatabaseError, error_for_code
from tablemap.common.logger import get_logger
from tablemap.common.settings import settings
from tablemap.query.ast import Term
from tablemap.schema.indexes import IndexDefinition

from .base import StorageBackend

logger = get_logger(__name__)

# Term ops whose result can be written to with update/delete.
SELECTION_OPS = frozenset({"table", "get", "get_all", "filter", "order_by", "limit", "skip"})


class _NonExistence(Exception):
    """A missing field or out-of-range element; recoverable with ``default``."""


def _truthy(value: Any) -> bool:
    return value is not None and value is not False


def _deep_merge(base: Any, patch: Any) -> Any:
    if not isinstance(base, dict) or not isinstance(patch, dict):
        return copy.deepcopy(patch)
    merged = dict(base)
    for key, value in patch.items():
        merged[key] = _deep_merge(base.get(key), value) if key in base else copy.deepcopy(value)
    return merged


def _write_result() -> Dict[str, Any]:
    return {
        "inserted": 0,
        "replaced": 0,
        "unchanged": 0,
        "deleted": 0,
        "skipped": 0,
        "errors": 0,
    }


class QueryEvaluator:
    """Lowers a composed query onto a storage backend.

    Each term op is handled by a ``_op_<name>`` method; variables bound by
    function terms live in an environment mapping passed down the recursion.
    """

    def __init__(
        self,
        backend: StorageBackend,
        index_wait_timeout_sec: Optional[float] = None,
        index_wait_poll_sec: Optional[float] = None,
    ):
        self.backend = backend
        self.index_wait_timeout_sec = (
            settings.index_wait_timeout_sec if index_wait_timeout_sec is None else index_wait_timeout_sec
        )
        self.index_wait_poll_sec = (
            settings.index_wait_poll_sec if index_wait_poll_sec is None else index_wait_poll_sec
        )

    def evaluate(self, term: Term) -> Any:
        try:
            return self._eval(term, {})
        except _NonExistence as exc:
            raise DatabaseError(str(exc)) from exc

    def _eval(self, term: Term, env: Dict[int, Any]) -> Any:
        handler = getattr(self, f"_op_{term.op}", None)
        if handler is None:
            raise DatabaseError(f"Unsupported term `{term.op}`.", {"op": term.op})
        return handler(term, env)

    def _call(self, fn: Term, env: Dict[int, Any], *values: Any) -> Any:
        if fn.op != "func":
            return self._eval(fn, env)
        scope = dict(env)
        scope.update(zip(fn.optargs["params"], values))
        return self._eval(fn.args[0], scope)

    def _sequence(self, term: Term, env: Dict[int, Any]) -> List[Any]:
        value = self._eval(term, env)
        if not isinstance(value, list):
            raise DatabaseError(f"Expected a sequence but found {type(value).__name__}.")
        return value

    # -- data ---------------------------------------------------------------

    def _op_datum(self, term, env):
        return copy.deepcopy(term.optargs["value"])

    def _op_object(self, term, env):
        return {key: self._eval(value, env) for key, value in term.optargs["items"].items()}

    def _op_array(self, term, env):
        return [self._eval(arg, env) for arg in term.args]

    def _op_var(self, term, env):
        return env[term.optargs["id"]]

    def _op_func(self, term, env):
        raise DatabaseError("A function cannot be evaluated outside of a call.")

    def _op_now(self, term, env):
        return datetime.now(timezone.utc)

    def _op_bracket(self, term, env):
        value = self._eval(term.args[0], env)
        key = self._eval(term.args[1], env)
        if isinstance(value, list) and isinstance(key, str):
            return [row[key] for row in value if isinstance(row, dict) and key in row]
        if isinstance(value, list):
            try:
                return value[key]
            except (IndexError, TypeError):
                raise _NonExistence(f"Index out of bounds: {key}") from None
        if not isinstance(value, dict):
            raise _NonExistence(f"Cannot read field `{key}` of {value!r}.")
        if key not in value:
            raise _NonExistence(f"No attribute `{key}` in object.")
        return value[key]

    # -- logic --------------------------------------------------------------

    def _compare(self, term, env, compare):
        left = self._eval(term.args[0], env)
        right = self._eval(term.args[1], env)
        try:
            return compare(left, right)
        except TypeError as exc:
            raise DatabaseError(f"Cannot compare {left!r} with {right!r}.") from exc

    def _op_eq(self, term, env):
        return self._compare(term, env, lambda a, b: a == b)

    def _op_ne(self, term, env):
        return self._compare(term, env, lambda a, b: a != b)

    def _op_gt(self, term, env):
        return self._compare(term, env, lambda a, b: a > b)

    def _op_ge(self, term, env):
        return self._compare(term, env, lambda a, b: a >= b)

    def _op_lt(self, term, env):
        return self._compare(term, env, lambda a, b: a < b)

    def _op_le(self, term, env):
        return self._compare(term, env, lambda a, b: a <= b)

    def _op_not(self, term, env):
        return not _truthy(self._eval(term.args[0], env))

    def _op_and(self, term, env):
        value = True
        for arg in term.args:
            value = self._eval(arg, env)
            if not _truthy(value):
                return value
        return value

    def _op_or(self, term, env):
        value = False
        for arg in term.args:
            value = self._eval(arg, env)
            if _truthy(value):
                return value
        return value

    def _op_branch(self, term, env):
        test, true_branch, false_branch = term.args
        if _truthy(self._eval(test, env)):
            return self._eval(true_branch, env)
        return self._eval(false_branch, env)

    def _op_error(self, term, env):
        message = self._eval(term.args[0], env)
        raise error_for_code(term.optargs["code"], message, dict(term.optargs["details"]))

    def _op_do(self, term, env):
        value = self._eval(term.args[0], env)
        return self._call(term.args[1], env, value)

    def _op_default(self, term, env):
        try:
            value = self._eval(term.args[0], env)
        except _NonExistence:
            return self._eval(term.args[1], env)
        if value is None:
            return self._eval(term.args[1], env)
        return value

    # -- sequences ----------------------------------------------------------

    def _op_contains(self, term, env):
        return self._eval(term.args[1], env) in self._sequence(term.args[0], env)

    def _op_count(self, term, env):
        return len(self._sequence(term.args[0], env))

    def _op_is_empty(self, term, env):
        return not self._sequence(term.args[0], env)

    def _op_nth(self, term, env):
        seq = self._sequence(term.args[0], env)
        index = self._eval(term.args[1], env)
        try:
            return seq[index]
        except IndexError:
            raise _NonExistence(f"Index out of bounds: {index}") from None

    def _op_merge(self, term, env):
        value = self._eval(term.args[0], env)
        patch = term.args[1]

        def merge_row(row):
            if row is None:
                return None
            return _deep_merge(row, self._call(patch, env, row))

        if isinstance(value, list):
            return [merge_row(row) for row in value]
        return merge_row(value)

    def _op_map(self, term, env):
        return [self._call(term.args[1], env, row) for row in self._sequence(term.args[0], env)]

    def _op_concat_map(self, term, env):
        result = []
        for row in self._sequence(term.args[0], env):
            produced = self._call(term.args[1], env, row)
            if not isinstance(produced, list):
                raise DatabaseError("concat_map function must return a sequence.")
            result.extend(produced)
        return result

    def _filter(self, seq, predicate: Term, env):
        if predicate.op == "func":
            return [row for row in seq if _truthy(self._call(predicate, env, row))]
        expected = self._eval(predicate, env)
        if isinstance(expected, dict):
            return [
                row for row in seq
                if isinstance(row, dict)
                and all(key in row and row[key] == value for key, value in expected.items())
            ]
        return seq if _truthy(expected) else []

    def _order(self, seq, keys, env):
        ordered = list(seq)
        for key in reversed(keys):
            name = key.optargs["field"]
            try:
                ordered.sort(
                    key=lambda row: (row.get(name) is not None, row.get(name)),
                    reverse=key.op == "desc",
                )
            except TypeError as exc:
                raise DatabaseError(f"Cannot order by `{name}`: mixed types.") from exc
        return ordered

    def _op_filter(self, term, env):
        return self._filter(self._sequence(term.args[0], env), term.args[1], env)

    def _op_order_by(self, term, env):
        return self._order(self._sequence(term.args[0], env), term.args[1:], env)

    def _op_limit(self, term, env):
        return self._sequence(term.args[0], env)[: self._eval(term.args[1], env)]

    def _op_skip(self, term, env):
        return self._sequence(term.args[0], env)[self._eval(term.args[1], env):]

    def _project(self, value, keep):
        if isinstance(value, list):
            return [self._project(row, keep) for row in value]
        if value is None:
            return None
        return {key: val for key, val in value.items() if keep(key)}

    def _op_pluck(self, term, env):
        fields = set(term.optargs["fields"])
        return self._project(self._eval(term.args[0], env), lambda key: key in fields)

    def _op_without(self, term, env):
        fields = set(term.optargs["fields"])
        return self._project(self._eval(term.args[0], env), lambda key: key not in fields)

    def _op_coerce_to(self, term, env):
        value = self._eval(term.args[0], env)
        if term.optargs["type"] != "array":
            raise DatabaseError(f"Cannot coerce to `{term.optargs['type']}`.")
        if isinstance(value, dict):
            return [[key, val] for key, val in value.items()]
        if not isinstance(value, list):
            raise DatabaseError(f"Cannot coerce {type(value).__name__} to array.")
        return value

    # -- tables and selections ----------------------------------------------

    def _table_name(self, term: Term) -> str:
        if term.op != "table":
            raise DatabaseError(f"Expected a table but found `{term.op}`.")
        return term.optargs["name"]

    def _select(self, term: Term, env) -> Tuple[str, List[dict]]:
        """Resolves a selection term to its table and matching documents."""
        if term.op not in SELECTION_OPS:
            raise DatabaseError(f"Expected a selection but found `{term.op}`.")
        if term.op == "table":
            name = term.optargs["name"]
            return name, list(self.backend.scan(name))
        if term.op == "get":
            name = self._table_name(term.args[0])
            doc = self.backend.get(name, self._eval(term.args[1], env))
            return name, [] if doc is None else [doc]
        if term.op == "get_all":
            name = self._table_name(term.args[0])
            return name, self._get_all(name, term, env)
        name, docs = self._select(term.args[0], env)
        if term.op == "filter":
            return name, self._filter(docs, term.args[1], env)
        if term.op == "order_by":
            return name, self._order(docs, term.args[1:], env)
        count = self._eval(term.args[1], env)
        return name, docs[:count] if term.op == "limit" else docs[count:]

    def _get_all(self, name: str, term: Term, env) -> List[dict]:
        values = [self._eval(arg, env) for arg in term.args[1:]]
        index = term.optargs.get("index") or self.backend.primary_key(name)
        if index == self.backend.primary_key(name):
            docs = [self.backend.get(name, value) for value in values if value is not None]
            return [doc for doc in docs if doc is not None]
        definition = self.backend.get_index(name, index)
        pk = self.backend.primary_key(name)
        seen = set()
        result = []
        for doc in self.backend.get_all(name, definition, values):
            marker = repr(doc.get(pk))
            if marker not in seen:
                seen.add(marker)
                result.append(doc)
        return result

    def _op_table(self, term, env):
        return self._select(term, env)[1]

    def _op_get(self, term, env):
        docs = self._select(term, env)[1]
        return docs[0] if docs else None

    def _op_get_all(self, term, env):
        return self._select(term, env)[1]

    def _op_table_list(self, term, env):
        return self.backend.list_tables()

    def _op_table_create(self, term, env):
        name = term.optargs["name"]
        if name in self.backend.list_tables():
            raise DatabaseError(f"Table `{name}` already exists.", {"table": name})
        self.backend.create_table(name, term.optargs["primary_key"])
        return {"tables_created": 1}

    # -- writes -------------------------------------------------------------

    def _op_insert(self, term, env):
        name = self._table_name(term.args[0])
        data = self._eval(term.args[1], env)
        docs = data if isinstance(data, list) else [data]
        conflict = term.optargs.get("conflict", "error")
        return_changes = term.optargs.get("return_changes", False)
        pk = self.backend.primary_key(name)
        result = _write_result()
        changes = []

        for doc in docs:
            if not isinstance(doc, dict):
                raise DatabaseError(f"Expected an object to insert but found {doc!r}.")
            doc = dict(doc)
            if doc.get(pk) is None:
                doc[pk] = str(uuid.uuid4())
                result.setdefault("generated_keys", []).append(doc[pk])
            existing = self.backend.get(name, doc[pk])
            if existing is None:
                self.backend.insert(name, doc)
                result["inserted"] += 1
                changes.append({"old_val": None, "new_val": doc})
                continue
            if conflict == "error":
                result["errors"] += 1
                result.setdefault(
                    "first_error", f"Duplicate primary key `{pk}`: {doc[pk]!r}"
                )
                continue
            new_doc = doc if conflict == "replace" else _deep_merge(existing, doc)
            if new_doc == existing:
                result["unchanged"] += 1
            else:
                self.backend.replace(name, doc[pk], new_doc)
                result["replaced"] += 1
                changes.append({"old_val": existing, "new_val": new_doc})

        if return_changes:
            result["changes"] = changes
        return result

    def _op_update(self, term, env):
        name, docs = self._select(term.args[0], env)
        patch = term.args[1]
        pk = self.backend.primary_key(name)
        result = _write_result()
        changes = []
        if term.args[0].op == "get" and not docs:
            result["skipped"] += 1

        for doc in docs:
            new_doc = _deep_merge(doc, self._call(patch, env, doc))
            if new_doc.get(pk) != doc.get(pk):
                result["errors"] += 1
                result.setdefault("first_error", f"Primary key `{pk}` cannot be changed.")
            elif new_doc == doc:
                result["unchanged"] += 1
            else:
                self.backend.replace(name, doc[pk], new_doc)
                result["replaced"] += 1
                changes.append({"old_val": doc, "new_val": new_doc})

        if term.optargs.get("return_changes"):
            result["changes"] = changes
        return result

    def _op_delete(self, term, env):
        name, docs = self._select(term.args[0], env)
        pk = self.backend.primary_key(name)
        result = _write_result()
        if term.args[0].op == "get" and not docs:
            result["skipped"] += 1
        for doc in docs:
            self.backend.remove(name, doc[pk])
            result["deleted"] += 1
        if term.optargs.get("return_changes"):
            result["changes"] = [{"old_val": doc, "new_val": None} for doc in docs]
        return result

    # -- indexes ------------------------------------------------------------

    def _op_index_list(self, term, env):
        return self.backend.list_indexes(self._table_name(term.args[0]))

    def _op_index_create(self, term, env):
        name = self._table_name(term.args[0])
        definition = IndexDefinition(
            name=term.optargs["name"],
            fields=term.optargs["fields"],
            multi=term.optargs["multi"],
        )
        self.backend.create_index(name, definition)
        logger.info("Created index %s on %s", definition.name, name)
        return {"created": 1}

    def _op_index_wait(self, term, env):
        name = self._table_name(term.args[0])
        indexes = term.optargs["names"] or self.backend.list_indexes(name)
        deadline = time.monotonic() + self.index_wait_timeout_sec
        for index in indexes:
            self.backend.get_index(name, index)
            while not self.backend.index_ready(name, index):
                if time.monotonic() >= deadline:
                    raise DatabaseError(
                        f"Timed out waiting for index `{index}` on table `{name}`.",
                        {"table": name, "index": index},
                    )
                time.sleep(self.index_wait_poll_sec)
        return [{"index": index, "ready": True} for index in indexes]
