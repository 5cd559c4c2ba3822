"""Tests for the widget / dashboard projection between JSON and directories."""

import json

import pytest

from bubo.errors import ParseError, ValidationError
from bubo.file_store import LocalFileStore
from bubo.projector import (
    DashboardProjector,
    ProjectionMode,
    WidgetProjector,
    deep_merge_dict,
    protect,
    refresh_protected,
    unprotect,
)
from bubo.models import ResourceType

from conftest import make_dashboard, make_widget


@pytest.fixture
def projector(store: LocalFileStore) -> WidgetProjector:
    return WidgetProjector(store)


def test_write_creates_primary_assets(projector, tmp_path):
    widget_dir = tmp_path / "my_bundle" / "Basic Widget"
    projector.write(make_widget(), widget_dir)

    assert (widget_dir / "basicWidget.js").read_text() == "function x(){}"
    assert (widget_dir / "basicWidget.html").read_text() == "<div></div>"
    # empty string is still written
    assert (widget_dir / "basicWidget.css").exists()
    assert (widget_dir / "basicWidget.css").read_text() == ""
    assert (widget_dir / "basicWidget.SETTINGS_SCHEMA.json").read_text() == '{"schema":{}}'
    assert (widget_dir / "basicWidget.DATAKEY_SETTINGS_SCHEMA.json").read_text() == "{}"


def test_write_local_json_hoists_protected_fields(projector, tmp_path):
    widget = make_widget()
    projector.write(widget, tmp_path / "w")

    local = json.loads((tmp_path / "w" / "widget.json").read_text())
    assert local["protected"]["id"] == {"entityType": "WIDGET_TYPE", "id": "abc123"}
    assert local["protected"]["bundleAlias"] == "my_bundle"
    assert local["protected"]["version"] == 3
    assert local["protected"]["descriptor"]["defaultConfig"] == widget["descriptor"]["defaultConfig"]
    assert "id" not in local
    assert "controllerScript" not in local["descriptor"]
    assert "defaultConfig" not in local["descriptor"]
    assert local["descriptor"]["sizeX"] == 7.5


def test_write_does_not_mutate_input(projector, tmp_path):
    widget = make_widget()
    projector.write(widget, tmp_path / "w")
    assert widget == make_widget()


def test_action_assets_follow_type_filters(projector, tmp_path):
    widget_dir = tmp_path / "w"
    projector.write(make_widget(), widget_dir)

    open_dir = widget_dir / "actions" / "headerButton" / "Open"
    assert (open_dir / "customFunction.js").read_text() == "openDialog();"
    assert (open_dir / "customHtml.html").read_text() == "<form></form>"
    assert (open_dir / "customCss.css").read_text() == ".form {}"

    # openDashboardState actions have no custom function file
    navigate_dir = widget_dir / "actions" / "rowClick" / "Navigate"
    assert not (navigate_dir / "customFunction.js").exists()


def test_round_trip_reproduces_source(projector, tmp_path):
    widget = make_widget()
    projector.write(widget, tmp_path / "w")
    assert projector.bundle(tmp_path / "w") == widget


def test_round_trip_fills_absent_asset_properties(projector, tmp_path):
    widget = make_widget()
    del widget["descriptor"]["dataKeySettingsSchema"]
    projector.write(widget, tmp_path / "w")

    assert not (tmp_path / "w" / "basicWidget.DATAKEY_SETTINGS_SCHEMA.json").exists()
    bundled = projector.bundle(tmp_path / "w")
    assert bundled["descriptor"].pop("dataKeySettingsSchema") == ""
    assert bundled == widget


def test_bundle_picks_up_edited_files(projector, tmp_path):
    widget_dir = tmp_path / "w"
    projector.write(make_widget(), widget_dir)
    (widget_dir / "basicWidget.js").write_text("function y(){}")
    (widget_dir / "actions" / "headerButton" / "Open" / "customFunction.js").write_text("closeDialog();")

    bundled = projector.bundle(widget_dir)

    assert bundled["descriptor"]["controllerScript"] == "function y(){}"
    config = json.loads(bundled["descriptor"]["defaultConfig"])
    assert config["actions"]["headerButton"][0]["customFunction"] == "closeDialog();"
    # untouched by the type filter
    assert config["actions"]["rowClick"][0]["customFunction"] == "should not be written"


def test_bundle_missing_asset_becomes_empty_string(projector, tmp_path):
    widget_dir = tmp_path / "w"
    projector.write(make_widget(), widget_dir)
    (widget_dir / "basicWidget.html").unlink()

    bundled = projector.bundle(widget_dir)
    assert bundled["descriptor"]["templateHtml"] == ""


def test_bundle_missing_action_file_keeps_stored_value(projector, tmp_path):
    widget_dir = tmp_path / "w"
    projector.write(make_widget(), widget_dir)
    (widget_dir / "actions" / "headerButton" / "Open" / "customCss.css").unlink()

    config = json.loads(projector.bundle(widget_dir)["descriptor"]["defaultConfig"])
    assert config["actions"]["headerButton"][0]["customCss"] == ".form {}"


def test_malformed_action_config_is_parse_error(projector, tmp_path):
    widget = make_widget("broken")
    widget["descriptor"]["defaultConfig"] = "{not json"

    with pytest.raises(ParseError) as exc_info:
        projector.write(widget, tmp_path / "w")
    assert exc_info.value.resource_id == "broken"


def test_write_requires_descriptor(projector, tmp_path):
    widget = make_widget()
    del widget["descriptor"]
    with pytest.raises(ValidationError):
        projector.write(widget, tmp_path / "w")


def test_alias_falls_back_to_fqn(projector, tmp_path):
    widget = make_widget(fqn="my_bundle.gauge")
    del widget["alias"]
    projector.write(widget, tmp_path / "w")
    assert (tmp_path / "w" / "gauge.js").exists()


def test_invalid_mode_rejected(projector, tmp_path):
    with pytest.raises(ValueError):
        projector._process_assets(tmp_path, {}, "basicWidget", "publish")
    assert ProjectionMode("bundle") is ProjectionMode.BUNDLE


# ── protected helpers ──────────────────────────────────

def test_protect_and_unprotect():
    widget = make_widget()
    local = protect(dict(widget), ResourceType.WIDGET)
    assert set(local["protected"]) == {"id", "createdTime", "tenantId", "bundleAlias", "version"}
    assert unprotect(local) == widget


def test_deep_merge_replaces_lists():
    base = {"a": {"b": 1, "c": [1, 2]}, "d": 1}
    merged = deep_merge_dict(base, {"a": {"c": [3]}, "e": 2})
    assert merged == {"a": {"b": 1, "c": [3]}, "d": 1, "e": 2}


def test_refresh_protected_only_writes_on_change(store, projector, tmp_path):
    widget_dir = tmp_path / "w"
    projector.write(make_widget(), widget_dir)

    assert refresh_protected(store, widget_dir, ResourceType.WIDGET, make_widget()) is False
    assert refresh_protected(store, widget_dir, ResourceType.WIDGET, make_widget(version=4)) is True
    local = json.loads((widget_dir / "widget.json").read_text())
    assert local["protected"]["version"] == 4


# ── dashboards ─────────────────────────────────────────

def test_dashboard_round_trip(store, tmp_path):
    projector = DashboardProjector(store)
    dashboard = make_dashboard()
    dashboard_dir = tmp_path / "Plant Overview"

    projector.write(dashboard, dashboard_dir)

    action_file = dashboard_dir / "widgets" / "Pump-system.cards.html_card" / "actions" / "elementClick" / "Start" / "customFunction.js"
    assert action_file.read_text() == "start();"
    # widgets without actions get no directory
    assert not (dashboard_dir / "widgets" / "Flow-system.charts.basic_timeseries").exists()
    local = json.loads((dashboard_dir / "dashboard.json").read_text())
    assert local["protected"]["id"]["id"] == "dash1"

    assert projector.bundle(dashboard_dir) == dashboard


def test_dashboard_bundle_reads_action_edits(store, tmp_path):
    projector = DashboardProjector(store)
    dashboard_dir = tmp_path / "d"
    projector.write(make_dashboard(), dashboard_dir)
    next(dashboard_dir.rglob("customFunction.js")).write_text("stop();")

    bundled = projector.bundle(dashboard_dir)
    action = bundled["configuration"]["widgets"]["w-1"]["config"]["actions"]["elementClick"][0]
    assert action["customFunction"] == "stop();"


def test_dashboard_widget_dir_names_are_unique():
    used: set[str] = set()
    widget = {"typeFullFqn": "system.cards.html_card", "config": {"title": "Pump"}}
    first = DashboardProjector.widget_dir_name(widget, "a", used)
    second = DashboardProjector.widget_dir_name(widget, "b", used)
    assert first == "Pump-system.cards.html_card"
    assert second == "Pump-system.cards.html_card-b"
