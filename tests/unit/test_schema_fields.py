from datetime import datetime

import pytest

from tablemap import SchemaValidationError, field
from tablemap.schema import RecordSchema, SchemaField


class TestSchemaField:

    def test_field_without_default_is_required(self):
        spec = field(str)
        assert spec.is_required()
        assert not spec.is_nullable()
        assert not spec.has_default()

    def test_field_with_default_is_optional(self):
        spec = field(int, default=3)
        assert not spec.is_required()
        assert spec.get_default() == 3

    def test_builders_return_copies(self):
        base = field(str)
        changed = base.optional().nullable().unique()

        assert base.is_required()
        assert not base.is_unique()
        assert not changed.is_required()
        assert changed.is_nullable()
        assert changed.is_unique()

    def test_meta_flags(self):
        spec = field(str, index=True, unique=True)
        assert spec.is_indexed()
        assert spec.is_unique()
        assert spec.has_meta_flag("index")
        assert not spec.has_meta_flag("hidden")

        stripped = spec.without_meta("unique")
        assert stripped.is_indexed()
        assert not stripped.is_unique()

    def test_callable_default_is_a_factory(self):
        spec = field(list).with_default(list)
        first, second = spec.get_default(), spec.get_default()
        assert first == [] and first is not second

    def test_mutable_default_is_copied(self):
        spec = field(dict, default={"a": 1})
        spec.get_default()["a"] = 2
        assert spec.get_default() == {"a": 1}

    def test_repr_lists_flags(self):
        assert repr(field(str, unique=True).optional()) == "SchemaField(str, optional, unique)"


@pytest.fixture
def account_schema():
    return RecordSchema("user_accounts", {
        "name": field(str, min_length=2),
        "age": field(int, ge=0).optional(),
        "role": field(str, default="member"),
        "nickname": field(str).optional().nullable(),
        "joined": field(datetime).optional(),
    })


class TestRecordSchema:

    def test_attempt_applies_defaults_without_inventing_keys(self, account_schema):
        record = account_schema.attempt({"name": "Ada"})
        assert record == {"name": "Ada", "role": "member"}

    def test_attempt_coerces_values(self, account_schema):
        record = account_schema.attempt({"name": "Ada", "age": "36", "joined": "2024-01-02T03:04:05"})
        assert record["age"] == 36
        assert record["joined"] == datetime(2024, 1, 2, 3, 4, 5)

    def test_missing_required_field_is_reported(self, account_schema):
        with pytest.raises(SchemaValidationError) as exc_info:
            account_schema.attempt({"age": 3})

        error = exc_info.value
        assert error.fields == ["name"]
        assert error.errors[0]["type"] == "missing"
        assert "user_accounts" in error.message

    def test_constraint_violation_is_reported(self, account_schema):
        with pytest.raises(SchemaValidationError) as exc_info:
            account_schema.attempt({"name": "A", "age": -1})
        assert sorted(exc_info.value.fields) == ["age", "name"]

    def test_unknown_key_is_rejected(self, account_schema):
        with pytest.raises(SchemaValidationError) as exc_info:
            account_schema.attempt({"name": "Ada", "bogus": 1})
        assert exc_info.value.fields == ["bogus"]

    def test_null_only_accepted_by_nullable_fields(self, account_schema):
        assert account_schema.attempt({"name": "Ada", "nickname": None})["nickname"] is None
        with pytest.raises(SchemaValidationError):
            account_schema.attempt({"name": None})

    def test_non_mapping_record_is_rejected(self, account_schema):
        with pytest.raises(SchemaValidationError) as exc_info:
            account_schema.attempt("not a record")
        assert exc_info.value.fields == ["<record>"]

    def test_partial_validation_ignores_other_required_fields(self, account_schema):
        assert account_schema.attempt({"age": 5}, fields=["age"]) == {"age": 5}

    def test_validate_returns_bool(self, account_schema):
        assert account_schema.validate({"name": "Ada"}) is True
        assert account_schema.validate({}) is False

    def test_input_is_not_mutated(self, account_schema):
        record = {"name": "Ada", "age": "4"}
        account_schema.attempt(record)
        assert record == {"name": "Ada", "age": "4"}


def test_to_pydantic_marks_required_fields():
    annotation, info = SchemaField(int).to_pydantic(alias="count")
    assert annotation is int
    assert info.is_required()
    assert info.alias == "count"
