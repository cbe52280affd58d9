"""Shared fixtures for pyduls tests."""

import logging

import pytest
from pyduls import Database


def node(name, actual, apparent=None, count=1, children=None, node_type=None):
    """Build one index record; directories are the records with children."""
    record = {
        "name": name,
        "size": {
            "actual": actual,
            "apparent": actual if apparent is None else apparent,
            "count": count,
        },
    }
    if children is not None:
        record["type"] = "directory"
        record["children"] = children
    if node_type is not None:
        record["type"] = node_type
    return record


def sample_index():
    """Index of /data used across the rendering tests.

    /data
      big/           600
        video.mkv    500
        notes/       100
          todo.txt   100
      logs/           90
        a.log         50
        b.log         40
      small.txt       10
    """
    big = node(
        "big",
        600,
        apparent=500,
        count=3,
        children=[
            node("video.mkv", 500, apparent=450),
            node(
                "notes",
                100,
                apparent=50,
                count=1,
                children=[node("todo.txt", 100, apparent=50)],
            ),
        ],
    )
    logs = node(
        "logs",
        90,
        apparent=40,
        count=2,
        children=[node("a.log", 50, apparent=20), node("b.log", 40, apparent=20)],
    )
    small = node("small.txt", 10, apparent=300)
    root = node("data", 700, apparent=840, count=8, children=[big, logs, small])
    root["path"] = "/data"
    return {"roots": [root]}


@pytest.fixture
def sample_db():
    """In-memory index rooted at /data."""
    return Database.from_dict(sample_index())


@pytest.fixture
def sample_data():
    """Decoded JSON document of the /data index."""
    return sample_index()


@pytest.fixture
def make_node():
    """Factory building single index records."""
    return node


@pytest.fixture(autouse=True)
def isolated_environment(monkeypatch, tmp_path):
    """Keep the user's config and index out of the tests."""
    monkeypatch.setenv("HOME", str(tmp_path / "home"))
    monkeypatch.delenv("PYDULS_DATABASE", raising=False)
    yield
    pyduls_logger = logging.getLogger("pyduls")
    for handler in list(pyduls_logger.handlers):
        pyduls_logger.removeHandler(handler)
    pyduls_logger.setLevel(logging.NOTSET)
