import logging
from datetime import datetime
from types import SimpleNamespace

import pytest

from tablemap import Connection, MemoryStore, Table, field


def build_blog(prefix: str = ""):
    """Returns users/posts/comments/tags tables wired with every relation kind."""
    users = Table(
        table=f"{prefix}users",
        schema=lambda: {
            "id": field(str).optional(),
            "name": field(str, min_length=1),
            "email": field(str, unique=True, required=False, nullable=True),
            "createdAt": field(datetime).optional(),
            "updatedAt": field(datetime).optional(),
        },
        relations=lambda: {
            "posts": users.linked_by(posts, "author_id").to_many(),
            "comments": users.linked_by(comments, "author_id").to_many(),
        },
    )
    posts = Table(
        table=f"{prefix}posts",
        schema=lambda: {
            "id": field(str).optional(),
            "title": field(str, min_length=1),
            "author_id": users.get_foreign_key(),
            "views": field(int, default=0),
        },
        relations=lambda: {
            "author": posts.link_to(users, "author_id").to_one(),
            "comments": posts.linked_by(comments, "post_id").to_many(),
            "tags": posts.link_to(tags, "id").many_to_many(),
        },
    )
    comments = Table(
        table=f"{prefix}comments",
        schema=lambda: {
            "id": field(str).optional(),
            "body": field(str),
            "author_id": users.get_foreign_key(),
            "post_id": posts.get_foreign_key(),
        },
        relations=lambda: {
            "author": comments.link_to(users, "author_id").to_one(),
        },
    )
    tags = Table(
        table=f"{prefix}tags",
        schema=lambda: {
            "id": field(str).optional(),
            "label": field(str),
        },
        indexes={"label": True},
    )
    return SimpleNamespace(users=users, posts=posts, comments=comments, tags=tags)


def seed_blog(blog, connection):
    """Syncs the blog tables and inserts a small fixed data set."""
    for table in (blog.users, blog.posts, blog.comments, blog.tags):
        table.sync(connection)
    blog.users.insert([
        {"id": "u1", "name": "Ada", "email": "ada@example.com"},
        {"id": "u2", "name": "Bob", "email": "bob@example.com"},
    ]).run(connection)
    blog.posts.insert([
        {"id": "p1", "title": "Engines", "author_id": "u1"},
        {"id": "p2", "title": "Compilers", "author_id": "u2"},
        {"id": "p3", "title": "Orphan"},
    ]).run(connection)
    blog.comments.insert([
        {"id": "c1", "body": "first", "author_id": "u1", "post_id": "p1"},
        {"id": "c2", "body": "second", "author_id": "u1", "post_id": "p2"},
        {"id": "c3", "body": "third", "author_id": "u2", "post_id": "p1"},
    ]).run(connection)
    blog.tags.insert([
        {"id": "t1", "label": "math"},
        {"id": "t2", "label": "history"},
    ]).run(connection)
    return blog


@pytest.fixture
def connection():
    """Returns a connection to a fresh in-memory store."""
    with Connection(MemoryStore()) as conn:
        yield conn


@pytest.fixture
def blog():
    return build_blog()


@pytest.fixture
def seeded(blog, connection):
    return seed_blog(blog, connection)


@pytest.fixture
def seed():
    return seed_blog


@pytest.fixture(autouse=True)
def restore_root_logger():
    """Undoes configure_logging calls made by CLI and logger tests."""
    root = logging.getLogger()
    handlers, level = root.handlers[:], root.level
    yield
    root.handlers[:] = handlers
    root.setLevel(level)
