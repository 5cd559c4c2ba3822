"""Shared fixtures: a temp project, sample resources and an in-memory ThingsBoard."""

import asyncio
import base64
import copy
import json
import re
from pathlib import Path

import httpx
import pytest

from bubo.config_loader import AppConfig
from bubo.file_store import LocalFileStore
from bubo.session_store import SessionStore
from bubo.sync_service import SyncService

HOST = "https://tb.example.com"
TENANT_ID = "tenant-1"
USER_ID = "user-1"


def make_jwt(claims: dict) -> str:
    """An unsigned JWT; only the payload is ever decoded."""
    def encode(data: dict) -> str:
        raw = json.dumps(data).encode()
        return base64.urlsafe_b64encode(raw).decode().rstrip("=")

    return f"{encode({'alg': 'none'})}.{encode(claims)}.signature"


def make_widget(widget_id: str = "abc123", **overrides) -> dict:
    config = {
        "datasources": [],
        "actions": {
            "headerButton": [
                {
                    "name": "Open",
                    "type": "customPretty",
                    "customFunction": "openDialog();",
                    "customHtml": "<form></form>",
                    "customCss": ".form {}",
                },
            ],
            "rowClick": [
                {
                    "name": "Navigate",
                    "type": "openDashboardState",
                    "customFunction": "should not be written",
                },
            ],
        },
    }
    widget = {
        "id": {"entityType": "WIDGET_TYPE", "id": widget_id},
        "createdTime": 1700000000000,
        "tenantId": {"entityType": "TENANT", "id": TENANT_ID},
        "bundleAlias": "my_bundle",
        "alias": "basicWidget",
        "name": "Basic Widget",
        "version": 3,
        "descriptor": {
            "type": "latest",
            "sizeX": 7.5,
            "controllerScript": "function x(){}",
            "templateHtml": "<div></div>",
            "templateCss": "",
            "settingsSchema": "{\"schema\":{}}",
            "dataKeySettingsSchema": "{}",
            "defaultConfig": json.dumps(config, separators=(",", ":")),
        },
    }
    widget.update(overrides)
    return widget


def make_dashboard(dashboard_id: str = "dash1") -> dict:
    return {
        "id": {"entityType": "DASHBOARD", "id": dashboard_id},
        "createdTime": 1700000000000,
        "tenantId": {"entityType": "TENANT", "id": TENANT_ID},
        "title": "Plant Overview",
        "name": "Plant Overview",
        "version": 1,
        "configuration": {
            "widgets": {
                "w-1": {
                    "typeFullFqn": "system.cards.html_card",
                    "config": {
                        "title": "Pump",
                        "actions": {
                            "elementClick": [
                                {"name": "Start", "type": "custom", "customFunction": "start();"},
                            ],
                        },
                    },
                },
                "w-2": {
                    "typeFullFqn": "system.charts.basic_timeseries",
                    "config": {"title": "Flow"},
                },
            },
        },
    }


class FakeThingsBoard:
    """Async httpx.MockTransport handler with the ThingsBoard endpoints the sync client uses."""

    def __init__(self):
        self.widgets: dict[str, dict] = {}
        self.dashboards: dict[str, dict] = {}
        self.templates: dict[str, dict] = {}
        self.bundles: list[dict] = []
        self.tenants: dict[str, dict] = {TENANT_ID: {"name": "Acme"}}
        self.valid_tokens: set[str] = set()
        self.refresh_tokens: set[str] = set()
        self.calls: list[tuple[str, str]] = []
        self.published: list[dict] = []
        self.refresh_calls = 0
        self.refresh_delay = 0.0
        self.reject_refreshed = False
        self.fail_publish: set[str] = set()
        # paths answered with a 200 HTML page instead of JSON
        self.html_paths: set[str] = set()
        self._counter = 0

    # helpers

    def issue_token(self) -> str:
        self._counter += 1
        token = make_jwt({"userId": USER_ID, "tenantId": TENANT_ID, "n": self._counter})
        self.valid_tokens.add(f"Bearer {token}")
        return token

    def issue_refresh_token(self) -> str:
        self._counter += 1
        refresh = f"refresh-{self._counter}"
        self.refresh_tokens.add(refresh)
        return refresh

    def expire_all(self):
        self.valid_tokens.clear()

    def count(self, method: str, path: str) -> int:
        return sum(1 for call in self.calls if call == (method, path))

    @staticmethod
    def _json(data, status_code: int = 200) -> httpx.Response:
        return httpx.Response(status_code, json=data)

    # transport

    async def handler(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        method = request.method
        self.calls.append((method, path))

        if path == "/api/auth/token" and method == "POST":
            return await self._refresh(request)
        if path == "/api/auth/login" and method == "POST":
            body = json.loads(request.content)
            if body.get("password") != "secret":
                return self._json({"message": "Invalid username or password"}, 401)
            return self._json({"token": self.issue_token(), "refreshToken": self.issue_refresh_token()})

        if request.headers.get("Authorization") not in self.valid_tokens:
            return self._json({"message": "Token has expired"}, 401)
        if path in self.html_paths:
            return httpx.Response(200, text="<html>proxy login</html>")
        return self._route(method, path, request)

    async def _refresh(self, request: httpx.Request) -> httpx.Response:
        self.refresh_calls += 1
        if self.refresh_delay:
            await asyncio.sleep(self.refresh_delay)
        body = json.loads(request.content)
        if body.get("refreshToken") not in self.refresh_tokens:
            return self._json({"message": "Invalid refresh token"}, 401)
        token = self.issue_token()
        if self.reject_refreshed:
            self.valid_tokens.discard(f"Bearer {token}")
        return self._json({"token": token, "refreshToken": self.issue_refresh_token()})

    def _route(self, method: str, path: str, request: httpx.Request) -> httpx.Response:
        if path == "/api/auth/user":
            return self._json({"id": {"id": USER_ID}, "tenantId": {"id": TENANT_ID}})

        match = re.fullmatch(r"/api/user/([^/]+)/token", path)
        if match:
            return self._json({"token": self.issue_token(), "refreshToken": self.issue_refresh_token()})

        match = re.fullmatch(r"/api/widgetType/([^/]+)", path)
        if match and method == "GET":
            widget = self.widgets.get(match.group(1))
            if widget is None:
                return self._json({"message": f"Widget {match.group(1)} not found"}, 404)
            return self._json(copy.deepcopy(widget))

        if path == "/api/widgetType" and method == "POST":
            return self._save(request, self.widgets, prefix="new-widget")

        if path == "/api/widgetType" and method == "GET":
            params = request.url.params
            template = self.templates.get(f"{params['bundleAlias']}.{params['alias']}")
            if template is None:
                return self._json({"message": "Template not found"}, 404)
            return self._json(copy.deepcopy(template))

        if path == "/api/widgetsBundles":
            return self._json(self.bundles)

        if path == "/api/widgetTypesInfos":
            alias = request.url.params["bundleAlias"]
            infos = [
                {"id": w["id"], "name": w["name"], "description": w.get("description")}
                for w in self.widgets.values()
                if w.get("bundleAlias") == alias
            ]
            return self._json(infos)

        match = re.fullmatch(r"/api/tenant/info/([^/]+)", path)
        if match:
            tenant = self.tenants.get(match.group(1))
            if tenant is None:
                return self._json({"message": "Tenant not found"}, 404)
            return self._json({"id": {"id": match.group(1)}, **tenant})

        match = re.fullmatch(r"/api/dashboard/info/([^/]+)", path)
        if match:
            dashboard = self.dashboards.get(match.group(1))
            if dashboard is None:
                return self._json({"message": "Dashboard not found"}, 404)
            return self._json({k: v for k, v in dashboard.items() if k != "configuration"})

        match = re.fullmatch(r"/api/dashboard/([^/]+)", path)
        if match and method == "GET":
            dashboard = self.dashboards.get(match.group(1))
            if dashboard is None:
                return self._json({"message": "Dashboard not found"}, 404)
            return self._json(copy.deepcopy(dashboard))

        if path == "/api/dashboard" and method == "POST":
            return self._save(request, self.dashboards, prefix="new-dashboard")

        return self._json({"message": f"No route {method} {path}"}, 404)

    def _save(self, request: httpx.Request, collection: dict, prefix: str) -> httpx.Response:
        payload = json.loads(request.content)
        self.published.append(copy.deepcopy(payload))
        resource_id = (payload.get("id") or {}).get("id")
        if resource_id in self.fail_publish:
            return self._json({"message": "Validation failed"}, 400)
        if not resource_id:
            self._counter += 1
            resource_id = f"{prefix}-{self._counter}"
            payload["id"] = {"id": resource_id}
            payload.setdefault("tenantId", {"entityType": "TENANT", "id": TENANT_ID})
            if "descriptor" in payload and payload.get("name"):
                payload.setdefault("alias", re.sub(r"\W+", "_", payload["name"].lower()))
        collection[resource_id] = copy.deepcopy(payload)
        return self._json(payload)


# ── fixtures ─────────────────────────────────────────────

@pytest.fixture
def config(tmp_path: Path) -> AppConfig:
    return AppConfig(host=HOST, root=tmp_path / "project", session_dir=str(tmp_path / "session"))


@pytest.fixture
def store() -> LocalFileStore:
    return LocalFileStore()


@pytest.fixture
def session(config: AppConfig) -> SessionStore:
    return SessionStore(config.session_root, namespace=config.host)


@pytest.fixture
def fake_tb() -> FakeThingsBoard:
    tb = FakeThingsBoard()
    tb.widgets["abc123"] = make_widget()
    tb.dashboards["dash1"] = make_dashboard()
    return tb


@pytest.fixture
def logged_in(session: SessionStore, fake_tb: FakeThingsBoard) -> SessionStore:
    session.token = f"Bearer {fake_tb.issue_token()}"
    session.refresh_token = fake_tb.issue_refresh_token()
    return session


@pytest.fixture
def service(config: AppConfig, logged_in: SessionStore, fake_tb: FakeThingsBoard) -> SyncService:
    return SyncService(config, logged_in, transport=httpx.MockTransport(fake_tb.handler))
