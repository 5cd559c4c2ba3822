"""Tests for the persisted session."""

import json

from bubo.session_store import SessionStore


def test_values_persist_across_instances(tmp_path):
    session = SessionStore(tmp_path, namespace="https://a.example.com")
    session.token = "Bearer abc"
    session.refresh_token = "r1"
    session.widget_id = "w1"

    reloaded = SessionStore(tmp_path, namespace="https://a.example.com")
    assert reloaded.token == "Bearer abc"
    assert reloaded.refresh_token == "r1"
    assert reloaded.widget_id == "w1"


def test_hosts_are_namespaced(tmp_path):
    SessionStore(tmp_path, namespace="https://a.example.com").token = "Bearer a"
    other = SessionStore(tmp_path, namespace="https://b.example.com")
    assert other.token is None


def test_widget_id_trimmed_on_read(tmp_path):
    (tmp_path / "session.json").write_text(json.dumps({"default": {"widgetId": "  w1 \n", "dashboardId": "   "}}))
    session = SessionStore(tmp_path)
    assert session.widget_id == "w1"
    assert session.dashboard_id is None


def test_reset_tokens_keeps_active_ids(tmp_path):
    session = SessionStore(tmp_path)
    session.token = "Bearer abc"
    session.refresh_token = "r1"
    session.dashboard_id = "d1"

    session.reset_tokens()

    assert session.token is None
    assert session.refresh_token is None
    assert session.dashboard_id == "d1"
    assert SessionStore(tmp_path).token is None


def test_setting_none_removes_key(tmp_path):
    session = SessionStore(tmp_path)
    session.set("extra", 1)
    session.set("extra", None)
    assert session.get("extra") is None


def test_deferred_flush(tmp_path):
    session = SessionStore(tmp_path, autoflush=False)
    session.token = "Bearer abc"
    assert not (tmp_path / "session.json").exists()
    session.close()
    assert SessionStore(tmp_path).token == "Bearer abc"


def test_corrupt_file_starts_empty(tmp_path):
    (tmp_path / "session.json").write_text("{broken")
    assert SessionStore(tmp_path).token is None
