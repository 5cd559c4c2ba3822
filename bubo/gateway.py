"""
远程资源网关：ThingsBoard REST 调用的薄封装。
所有调用都经过 ApiClient，因此 token 刷新与重试对调用方透明。
"""

import logging
from typing import Any

from bubo.client import ApiClient
from bubo.errors import ParseError, ValidationError
from bubo.models import extract_id

logger = logging.getLogger(__name__)


class ThingsBoardGateway:
    """无状态的 REST 调用集合。"""

    def __init__(self, api: ApiClient):
        self.api = api

    @staticmethod
    def _require_id(resource_id: str | None, kind: str) -> str:
        if not resource_id or not str(resource_id).strip():
            raise ValidationError(f"Specify a {kind}Id")
        return str(resource_id).strip()

    @staticmethod
    def _expect_dict(data: Any, operation: str, resource_id: str | None = None) -> dict[str, Any]:
        if not isinstance(data, dict):
            raise ParseError(f"{operation} 返回的不是 JSON 对象", resource_id=resource_id)
        return data

    # ── Widgets ──────────────────────────────────────

    async def get_widget(self, widget_id: str) -> dict[str, Any]:
        widget_id = self._require_id(widget_id, "widget")
        data = await self.api.get_json(f"/api/widgetType/{widget_id}", resource_id=widget_id)
        return self._expect_dict(data, "get widget", widget_id)

    async def publish_widget(self, widget_json: dict[str, Any]) -> dict[str, Any]:
        """创建或替换 widget（按 payload 中的 id）。返回服务端保存后的 JSON。"""
        data = await self.api.post_json("/api/widgetType", widget_json, resource_id=extract_id(widget_json))
        return data if isinstance(data, dict) else {}

    async def list_widget_bundles(self) -> list[dict[str, Any]]:
        data = await self.api.get_json("/api/widgetsBundles")
        return data if isinstance(data, list) else []

    async def list_widgets_in_bundle(self, bundle_alias: str, is_system: bool) -> list[dict[str, Any]]:
        params = {"bundleAlias": bundle_alias, "isSystem": _bool_param(is_system)}
        data = await self.api.get_json("/api/widgetTypesInfos", params=params)
        # 新版 ThingsBoard 返回分页结构
        if isinstance(data, dict):
            data = data.get("data", [])
        return data if isinstance(data, list) else []

    async def get_widget_template(self, bundle_alias: str, is_system: bool, alias: str) -> dict[str, Any]:
        params = {"bundleAlias": bundle_alias, "isSystem": _bool_param(is_system), "alias": alias}
        data = await self.api.get_json("/api/widgetType", params=params)
        return self._expect_dict(data, "get widget template")

    async def create_widget(
        self,
        bundle_alias: str,
        is_system: bool,
        alias: str,
        payload: dict[str, Any],
    ) -> dict[str, Any]:
        """以模板 widget 的 descriptor 为起点创建新 widget。"""
        template = await self.get_widget_template(bundle_alias, is_system, alias)
        if "descriptor" not in template:
            raise ParseError(f"模板 {bundle_alias}.{alias} 没有 descriptor")
        payload = {**payload, "descriptor": template["descriptor"]}
        logger.info(f"创建 widget {payload.get('name')} (模板 {bundle_alias}.{alias})")
        return await self.publish_widget(payload)

    async def get_tenant_info(self, tenant_id: str) -> dict[str, Any]:
        tenant_id = self._require_id(tenant_id, "tenant")
        data = await self.api.get_json(f"/api/tenant/info/{tenant_id}", resource_id=tenant_id)
        return self._expect_dict(data, "get tenant info", tenant_id)

    # ── Dashboards ───────────────────────────────────

    async def get_dashboard(self, dashboard_id: str) -> dict[str, Any]:
        dashboard_id = self._require_id(dashboard_id, "dashboard")
        data = await self.api.get_json(f"/api/dashboard/{dashboard_id}", resource_id=dashboard_id)
        return self._expect_dict(data, "get dashboard", dashboard_id)

    async def get_dashboard_info(self, dashboard_id: str) -> dict[str, Any]:
        dashboard_id = self._require_id(dashboard_id, "dashboard")
        data = await self.api.get_json(f"/api/dashboard/info/{dashboard_id}", resource_id=dashboard_id)
        return self._expect_dict(data, "get dashboard info", dashboard_id)

    async def publish_dashboard(self, dashboard_json: dict[str, Any]) -> dict[str, Any]:
        data = await self.api.post_json("/api/dashboard", dashboard_json, resource_id=extract_id(dashboard_json))
        return data if isinstance(data, dict) else {}


def _bool_param(value: bool) -> str:
    return "true" if value else "false"
