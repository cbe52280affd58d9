"""Tests for the JSON-backed index."""

import json

import pytest
from pyduls import (
    Database,
    DatabaseError,
    Metric,
    NodeType,
    PathNotFoundError,
    SizeRecord,
    SortOrder,
)


def read_all(handle, metric=Metric.ACTUAL, sort=SortOrder.SIZE):
    entries = []
    while True:
        entry = handle.read(metric, sort)
        if entry is None:
            return entries
        entries.append(entry.name)


class TestOpenDir:
    """Test Database.open_dir path resolution."""

    def test_root(self, sample_db):
        with sample_db.open_dir("/data") as handle:
            assert handle.path == "/data"
            assert handle.get_size() == SizeRecord(actual=700, apparent=840, count=8)

    def test_nested(self, sample_db):
        with sample_db.open_dir("/data/big/notes") as handle:
            assert read_all(handle) == ["todo.txt"]

    def test_trailing_slash(self, sample_db):
        with sample_db.open_dir("/data/big/") as handle:
            assert handle.path == "/data/big"

    def test_relative(self, tmp_path, monkeypatch, make_node):
        root = make_node("x", 1, children=[make_node("inner", 1, children=[])])
        root["path"] = str(tmp_path)
        db = Database.from_dict({"roots": [root]})
        monkeypatch.chdir(tmp_path)
        with db.open_dir("inner") as handle:
            assert handle.path == str(tmp_path / "inner")

    def test_file_is_not_a_directory(self, sample_db):
        with pytest.raises(PathNotFoundError):
            sample_db.open_dir("/data/small.txt")

    def test_outside_index(self, sample_db):
        with pytest.raises(PathNotFoundError) as excinfo:
            sample_db.open_dir("/database")
        assert excinfo.value.path == "/database"

    def test_longest_root_wins(self, sample_data, make_node):
        nested = make_node("big", 1234, children=[])
        nested["path"] = "/data/big"
        sample_data["roots"].append(nested)
        db = Database.from_dict(sample_data)
        with db.open_dir("/data/big") as handle:
            assert handle.get_size().actual == 1234
        with db.open_dir("/data/logs") as handle:
            assert handle.get_size().actual == 90
        assert db.roots() == ["/data", "/data/big"]


class TestDirHandle:
    """Test DirHandle iteration."""

    def test_size_order(self, sample_db):
        with sample_db.open_dir("/data") as handle:
            assert read_all(handle) == ["big", "logs", "small.txt"]

    def test_size_order_per_metric(self, sample_db):
        with sample_db.open_dir("/data") as handle:
            assert read_all(handle, Metric.APPARENT) == ["big", "small.txt", "logs"]

    def test_name_order(self, sample_db):
        with sample_db.open_dir("/data") as handle:
            assert read_all(handle, sort=SortOrder.NAME) == ["big", "logs", "small.txt"]

    def test_ties_broken_by_name(self, make_node):
        root = make_node("t", 3, children=[make_node("b", 1), make_node("a", 1)])
        root["path"] = "/t"
        db = Database.from_dict({"roots": [root]})
        with db.open_dir("/t") as handle:
            assert read_all(handle) == ["a", "b"]

    def test_rewind(self, sample_db):
        with sample_db.open_dir("/data") as handle:
            first = read_all(handle)
            assert handle.read(Metric.ACTUAL, SortOrder.SIZE) is None
            handle.rewind()
            assert read_all(handle) == first

    def test_count(self, sample_db):
        with sample_db.open_dir("/data") as handle:
            assert handle.count() == 3

    def test_open_child(self, sample_db):
        with sample_db.open_dir("/data") as handle:
            big = handle.read(Metric.ACTUAL, SortOrder.SIZE)
            assert big.node_type is NodeType.DIRECTORY
            with handle.open_child(big) as child:
                assert child.path == "/data/big"
                assert child.count() == 2
            handle.read(Metric.ACTUAL, SortOrder.SIZE)
            small = handle.read(Metric.ACTUAL, SortOrder.SIZE)
            assert small.name == "small.txt"
            assert handle.open_child(small) is None

    def test_closed(self, sample_db):
        handle = sample_db.open_dir("/data")
        with handle:
            pass
        assert handle.closed
        with pytest.raises(ValueError):
            handle.read(Metric.ACTUAL, SortOrder.SIZE)


class TestLoad:
    """Test loading index files."""

    def test_load(self, tmp_path, sample_data):
        path = tmp_path / "index.json"
        path.write_text(json.dumps(sample_data))
        db = Database.load(path)
        assert db.source == str(path)
        assert db.roots() == ["/data"]

    def test_missing_file(self, tmp_path):
        with pytest.raises(DatabaseError, match="does not exist"):
            Database.load(tmp_path / "absent.json")

    def test_invalid_json(self, tmp_path):
        path = tmp_path / "index.json"
        path.write_text("{not json")
        with pytest.raises(DatabaseError, match="not valid JSON"):
            Database.load(path)

    def test_missing_roots(self):
        with pytest.raises(DatabaseError):
            Database.from_dict({"trees": []})

    def test_unknown_type(self, sample_data):
        sample_data["roots"][0]["children"][0]["type"] = "teapot"
        with pytest.raises(DatabaseError, match="Unknown node type"):
            Database.from_dict(sample_data)

    def test_file_with_children(self, make_node):
        leaf = make_node("f", 1, children=[make_node("g", 1)], node_type="file")
        root = make_node("r", 1, children=[leaf])
        root["path"] = "/r"
        with pytest.raises(DatabaseError, match="has children"):
            Database.from_dict({"roots": [root]})

    def test_bad_size(self, make_node):
        root = make_node("r", 1, children=[])
        root["size"]["actual"] = "lots"
        root["path"] = "/r"
        with pytest.raises(DatabaseError, match="Invalid size record"):
            Database.from_dict({"roots": [root]})

    def test_root_must_be_directory(self):
        data = {"roots": [{"path": "/f", "type": "file", "size": {"actual": 1}}]}
        with pytest.raises(DatabaseError, match="not a directory"):
            Database.from_dict(data)
