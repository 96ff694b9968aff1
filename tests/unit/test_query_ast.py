from unittest.mock import MagicMock

import pytest

from tablemap import InvalidQueryOptionError, r
from tablemap.query import Term, TableTerm


def test_building_queries_never_touches_a_connection():
    # Validates composition purity because table definitions build queries eagerly.
    connection = MagicMock()

    query = r.table("users").get_all("a@b.c", index="email").filter({"active": True}).count()

    connection.run.assert_not_called()
    assert query.run(connection) is connection.run.return_value
    connection.run.assert_called_once_with(query)


def test_terms_are_immutable_chains():
    base = r.table("users")
    limited = base.limit(3)

    assert base.op == "table"
    assert limited.op == "limit"
    assert limited.args[0] is base


def test_expr_converts_python_values():
    term = r.expr({"a": [1, 2], "b": None})

    assert term.op == "object"
    assert term.optargs["items"]["a"].op == "array"
    assert [arg.optargs["value"] for arg in term.optargs["items"]["a"].args] == [1, 2]
    assert term.optargs["items"]["b"].op == "datum"


def test_callables_become_function_terms():
    term = r.expr(lambda row: row["name"])

    assert term.op == "func"
    assert len(term.optargs["params"]) == 1
    body = term.args[0]
    assert body.op == "bracket"
    assert body.args[0].op == "var"
    assert body.args[0].optargs["id"] == term.optargs["params"][0]


def test_order_by_wraps_field_names():
    term = r.table("users").order_by("name", r.desc("age"))
    assert [key.op for key in term.args[1:]] == ["asc", "desc"]


def test_iter_terms_walks_nested_objects():
    query = r.table("users").insert({"name": r.now()})
    assert "now" in [term.op for term in query.iter_terms()]


def test_table_term_exposes_name_and_index_ops():
    users = r.table("users")
    assert isinstance(users, TableTerm)
    assert users.name == "users"

    create = users.index_create("email")
    assert create.optargs == {"name": "email", "fields": ["email"], "multi": False}
    assert users.index_wait("email").optargs == {"names": ["email"]}


class TestWithOptions:

    def test_applies_transformers_in_order(self):
        query = r.table("users").with_options({"filter": {"active": True}, "limit": 2, "pluck": ["id", "name"]})

        assert query.op == "pluck"
        assert query.optargs["fields"] == ["id", "name"]
        assert query.args[0].op == "limit"
        assert query.args[0].args[0].op == "filter"

    def test_empty_options_return_the_same_term(self):
        query = r.table("users")
        assert query.with_options(None) is query
        assert query.with_options({}) is query

    def test_unknown_option_is_rejected(self):
        with pytest.raises(InvalidQueryOptionError) as exc_info:
            r.table("users").with_options({"drop": True})
        assert exc_info.value.details == {"option": "drop"}


def test_repr_is_readable():
    assert repr(Term("datum", (), {"value": 1})) == "datum(value=1)"
