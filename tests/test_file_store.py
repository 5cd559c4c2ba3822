"""Tests for LocalFileStore."""

import pytest

from bubo.errors import ParseError, TransientIOError
from bubo.file_store import format_json


def test_write_text_creates_parents(store, tmp_path):
    path = tmp_path / "a" / "b" / "file.js"
    store.write_text(path, "let x = 1;")
    assert path.read_text() == "let x = 1;"


def test_text_round_trip_keeps_line_endings(store, tmp_path):
    path = tmp_path / "crlf.html"
    store.write_text(path, "<div>\r\n</div>\n")
    assert store.read_text(path) == "<div>\r\n</div>\n"


def test_json_format(store, tmp_path):
    path = tmp_path / "data.json"
    store.write_json(path, {"name": "Überwachung", "n": [1]})
    assert path.read_text(encoding="utf-8") == format_json({"name": "Überwachung", "n": [1]})
    assert '"Überwachung"' in path.read_text(encoding="utf-8")
    assert store.read_json(path) == {"name": "Überwachung", "n": [1]}


def test_read_json_malformed(store, tmp_path):
    path = tmp_path / "bad.json"
    path.write_text("{")
    with pytest.raises(ParseError) as exc_info:
        store.read_json(path, resource_id="abc")
    assert exc_info.value.resource_id == "abc"
    assert exc_info.value.path == str(path)


def test_read_missing_file_is_transient(store, tmp_path):
    with pytest.raises(TransientIOError) as exc_info:
        store.read_text(tmp_path / "missing.js")
    assert "read" in exc_info.value.operation


def test_copy_move_and_mtime(store, tmp_path):
    src = tmp_path / "src.json"
    store.write_text(src, "{}")
    store.copy(src, tmp_path / "backup" / "src.json.bak")
    assert (tmp_path / "backup" / "src.json.bak").read_text() == "{}"

    store.move(tmp_path / "backup", tmp_path / "moved")
    assert store.exists(tmp_path / "moved" / "src.json.bak")
    assert not store.exists(tmp_path / "backup")

    assert store.mtime(src) is not None
    assert store.mtime(tmp_path / "missing") is None


def test_walk_files_lists_nested_files(store, tmp_path):
    store.write_text(tmp_path / "root" / "a.js", "")
    store.write_text(tmp_path / "root" / "actions" / "x" / "b.js", "")
    found = sorted(p.relative_to(tmp_path / "root").as_posix() for p in store.walk_files(tmp_path / "root"))
    assert found == ["a.js", "actions/x/b.js"]
