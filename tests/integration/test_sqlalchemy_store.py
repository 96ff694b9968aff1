from datetime import date, datetime, timezone

import pytest
from sqlalchemy import text

from tablemap import (
    Connection,
    DatabaseError,
    SQLAlchemyStore,
    UniquenessViolationError,
    connect,
    r,
)
from tablemap.schema import IndexDefinition


@pytest.fixture()
def store(tmp_path):
    store = SQLAlchemyStore(f"sqlite:///{tmp_path / 'tables.db'}")
    yield store
    store.close()


@pytest.fixture()
def sql_connection(store):
    return Connection(store)


def test_documents_round_trip_with_dates(store):
    # Validates JSON encoding because stored documents must come back with their native types.
    # Arrange
    store.create_table("events", "id")
    doc = {
        "id": "e1",
        "at": datetime(2024, 5, 1, 12, 30, tzinfo=timezone.utc),
        "day": date(2024, 5, 1),
        "tags": ["a", "b"],
        "nested": {"count": 2},
    }

    # Act
    store.insert("events", doc)

    # Assert
    assert store.get("events", "e1") == doc
    assert list(store.scan("events")) == [doc]


def test_table_registry(store):
    store.create_table("events", "slug")

    assert store.list_tables() == ["events"]
    assert store.primary_key("events") == "slug"
    with pytest.raises(DatabaseError):
        store.create_table("events", "slug")
    with pytest.raises(DatabaseError):
        store.primary_key("ghosts")


def test_replace_and_remove(store):
    store.create_table("events", "id")
    store.insert("events", {"id": "e1", "n": 1})

    store.replace("events", "e1", {"id": "e1", "n": 2})
    assert store.get("events", "e1") == {"id": "e1", "n": 2}

    store.remove("events", "e1")
    assert store.get("events", "e1") is None


def test_duplicate_primary_key_is_a_database_error(store):
    store.create_table("events", "id")
    store.insert("events", {"id": "e1"})

    with pytest.raises(DatabaseError):
        store.insert("events", {"id": "e1"})


def test_simple_index_is_materialized(store):
    store.create_table("events", "id")
    store.create_index("events", IndexDefinition(name="kind", fields=["kind"]))

    with store.engine.connect() as conn:
        names = [row[0] for row in conn.execute(text("SELECT name FROM sqlite_master WHERE type = 'index'"))]

    assert "ix_events_kind" in names
    assert store.list_indexes("events") == ["kind"]
    assert store.get_index("events", "kind") == IndexDefinition(name="kind", fields=["kind"])


def test_get_all_uses_index_and_post_filters(store):
    store.create_table("events", "id")
    store.insert("events", {"id": "e1", "kind": "click"})
    store.insert("events", {"id": "e2", "kind": "view"})
    store.insert("events", {"id": "e3", "kind": 1})
    kind = IndexDefinition(name="kind", fields=["kind"])
    store.create_index("events", kind)

    docs = store.get_all("events", kind, ["click", "view"])

    assert sorted(doc["id"] for doc in docs) == ["e1", "e2"]


def test_multi_index_falls_back_to_scan(store):
    store.create_table("events", "id")
    store.insert("events", {"id": "e1", "labels": ["x", "y"]})
    labels = IndexDefinition(name="labels", fields=["labels"], multi=True)
    store.create_index("events", labels)

    assert [doc["id"] for doc in store.get_all("events", labels, ["y"])] == ["e1"]


def test_failed_query_rolls_back_its_writes(sql_connection):
    r.table_create("events").run(sql_connection)
    query = r.table("events").insert({"id": "e1"}).do(lambda _: r.error("stop"))

    with pytest.raises(DatabaseError):
        query.run(sql_connection)

    assert r.table("events").count().run(sql_connection) == 0


class TestTablesOverSQLite:

    @pytest.fixture()
    def blog(self, blog, seed, sql_connection):
        return seed(blog, sql_connection)

    def test_crud_and_timestamps(self, blog, sql_connection):
        user = blog.users.get("u1").run(sql_connection)
        assert isinstance(user["createdAt"], datetime)

        blog.users.update("u1", {"name": "Ada L."}).run(sql_connection)
        assert blog.users.get("u1").run(sql_connection)["name"] == "Ada L."

    def test_uniqueness(self, blog, sql_connection):
        with pytest.raises(UniquenessViolationError):
            blog.users.insert({"name": "Eve", "email": "bob@example.com"}).run(sql_connection)
        assert blog.users.query().count().run(sql_connection) == 2

    def test_nested_join(self, blog, sql_connection):
        posts = blog.posts
        row = posts.with_join(posts.get("p1"), {"author": {"comments": {"_order_by": "id"}}}).run(sql_connection)

        assert row["author"]["name"] == "Ada"
        assert [c["id"] for c in row["author"]["comments"]] == ["c1", "c2"]

    def test_many_to_many(self, blog, sql_connection):
        posts = blog.posts
        posts.create_relation("tags", "p1", "t2").run(sql_connection)

        assert posts.has_relation("tags", "p1", "t2").run(sql_connection) is True
        row = posts.with_join(posts.get("p1"), {"tags": True}).run(sql_connection)
        assert [tag["label"] for tag in row["tags"]] == ["history"]

    def test_resync_is_a_no_op(self, blog, sql_connection):
        before = sorted(blog.users.query().index_list().run(sql_connection))
        blog.users.sync(sql_connection)
        assert sorted(blog.users.query().index_list().run(sql_connection)) == before


def test_connect_picks_backend(tmp_path):
    with connect("memory://") as memory:
        assert type(memory.backend).__name__ == "MemoryStore"
    with connect(f"sqlite:///{tmp_path / 'x.db'}") as sql:
        assert isinstance(sql.backend, SQLAlchemyStore)
