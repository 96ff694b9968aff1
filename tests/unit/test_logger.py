import json
import logging

from tablemap.common.logger import (
    JsonFormatter,
    SyncScopeFilter,
    configure_logging,
    current_scope,
    sync_scope,
)


def _record(msg="hello %s", args=("world",)):
    return logging.LogRecord("test", logging.INFO, "path", 1, msg, args, None)


def test_json_formatter_nests_sync_scope():
    # Validates scope propagation because provisioning logs must name the table and index being built.
    # Arrange
    record = _record()

    # Act
    with sync_scope(table="users", step="indexes", index="email"):
        SyncScopeFilter().filter(record)
    payload = json.loads(JsonFormatter().format(record))

    # Assert
    assert payload["message"] == "hello world"
    assert payload["sync"] == {"table": "users", "step": "indexes", "index": "email"}
    assert record.scope == "users/indexes/email"


def test_records_outside_a_sync_have_no_scope():
    record = _record()
    SyncScopeFilter().filter(record)

    payload = json.loads(JsonFormatter().format(record))

    assert "sync" not in payload
    assert record.scope == "-"


def test_extra_fields_are_copied():
    record = _record()
    record.attempt = 2
    SyncScopeFilter().filter(record)

    payload = json.loads(JsonFormatter().format(record))

    assert payload["attempt"] == 2
    assert "scope" not in payload


def test_nested_scopes():
    with sync_scope(table="posts", step="indexes"):
        with sync_scope(index="author_id"):
            assert current_scope() == {"table": "posts", "step": "indexes", "index": "author_id"}
            with sync_scope(step="relations"):
                assert current_scope() == {"table": "posts", "step": "relations"}
                with sync_scope(table="users", step="table"):
                    assert current_scope() == {"table": "users", "step": "table"}
                assert current_scope()["table"] == "posts"
    assert current_scope() == {}


def test_configure_logging_installs_single_handler():
    configure_logging(level="DEBUG", json_format=True)
    configure_logging(level="WARNING", json_format=True)

    root = logging.getLogger()
    assert len(root.handlers) == 1
    assert root.level == logging.WARNING
    assert isinstance(root.handlers[0].formatter, JsonFormatter)
    assert logging.getLogger("sqlalchemy.engine").level == logging.WARNING


def test_plain_format_renders_scope():
    configure_logging(level="INFO")
    handler = logging.getLogger().handlers[0]
    record = _record()

    with sync_scope(table="tags", step="table"):
        handler.filter(record)
    line = handler.format(record)

    assert "[tags/table]" in line
    assert line.endswith("test: hello world")
