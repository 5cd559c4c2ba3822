"""
资源投影器：在远程 JSON 资源和本地文件目录之间双向转换。

write  模式：JSON -> 目录（每个资源属性一个文件，剩余部分写入 widget.json / dashboard.json）
bundle 模式：目录 -> JSON（write 的逆过程）
"""

import copy
import json
import logging
from enum import Enum
from pathlib import Path
from typing import Any

from bubo.errors import ParseError, ValidationError
from bubo.file_store import LocalFileStore
from bubo.models import (
    ACTION_ASSETS,
    ACTION_CONFIG_PROPERTY,
    PROTECTED_KEY,
    WIDGET_ASSETS,
    ResourceType,
    extract_id,
    resource_alias,
    safe_path_name,
)

logger = logging.getLogger(__name__)


class ProjectionMode(str, Enum):
    WRITE = "write"
    BUNDLE = "bundle"


def deep_merge_dict(base: dict, update: dict) -> dict:
    """Deep merge two dictionaries. Nested dicts merge, everything else is replaced."""
    for k, v in update.items():
        if isinstance(v, dict) and k in base and isinstance(base[k], dict):
            base[k] = deep_merge_dict(base[k], v)
        else:
            base[k] = copy.deepcopy(v)
    return base


def dumps_compact(data: Any) -> str:
    """与浏览器端 JSON.stringify 相同的紧凑格式。"""
    return json.dumps(data, separators=(",", ":"), ensure_ascii=False)


def protect(resource_json: dict[str, Any], resource_type: ResourceType) -> dict[str, Any]:
    """将服务端字段移入 protected 子对象。"""
    protected = {}
    for key in resource_type.protected_fields:
        if key in resource_json:
            protected[key] = resource_json.pop(key)
    resource_json[PROTECTED_KEY] = protected
    return resource_json


def unprotect(local_json: dict[str, Any]) -> dict[str, Any]:
    """将 protected 中的字段合并回根对象，并移除 protected。"""
    protected = local_json.pop(PROTECTED_KEY, None)
    if protected:
        deep_merge_dict(local_json, protected)
    return local_json


class _ActionProcessor:
    """按 ACTION_ASSETS 表处理 actions[source][] 的共享逻辑。"""

    def __init__(self, store: LocalFileStore):
        self.store = store

    def process(self, base_dir: Path, config: dict[str, Any], mode: ProjectionMode) -> dict[str, Any]:
        if mode not in (ProjectionMode.WRITE, ProjectionMode.BUNDLE):
            raise ValueError(f"Invalid projection mode: {mode}")

        actions = config.get("actions") or {}
        for source_name, source_actions in actions.items():
            for action in source_actions or []:
                action_name = action.get("name")
                if not action_name:
                    logger.warning(f"跳过没有名称的 action (source={source_name})")
                    continue
                action_dir = base_dir / "actions" / safe_path_name(source_name) / safe_path_name(action_name)

                for entry in ACTION_ASSETS:
                    # 只处理类型匹配的 action
                    if not entry.applies_to(action.get("type")):
                        continue
                    file_path = action_dir / entry.file_name(action_name)

                    if mode is ProjectionMode.WRITE:
                        value = action.get(entry.property_name)
                        if value is not None:
                            self.store.write_text(file_path, value)
                    elif self.store.exists(file_path):
                        # 文件缺失时保留原值
                        action[entry.property_name] = self.store.read_text(file_path)
        return config


class WidgetProjector:
    """Widget JSON <-> 本地目录。"""

    resource_type = ResourceType.WIDGET

    def __init__(self, store: LocalFileStore):
        self.store = store
        self._actions = _ActionProcessor(store)

    # ── write ────────────────────────────────────────

    def write(self, widget_json: dict[str, Any], widget_dir: Path) -> Path:
        """将 widget JSON 拆分为资源文件，并写入 widget.json。返回 widget.json 路径。"""
        widget_id = extract_id(widget_json)
        source = copy.deepcopy(widget_json)
        descriptor = source.get("descriptor")
        if descriptor is None:
            raise ValidationError(f"[{widget_id}] widget 缺少 descriptor")

        alias = self._alias(source, widget_id)
        self._process_assets(widget_dir, descriptor, alias, ProjectionMode.WRITE)

        config_raw = descriptor.get(ACTION_CONFIG_PROPERTY)
        if config_raw is not None:
            config = self.parse_action_config(config_raw, widget_id)
            self._actions.process(widget_dir, config, ProjectionMode.WRITE)

        local_json_path = widget_dir / self.resource_type.marker_file
        self.store.write_json(local_json_path, self.prepare_local_json(source))
        logger.info(f"[{widget_id}] widget 已写入 {widget_dir}")
        return local_json_path

    def prepare_local_json(self, widget_json: dict[str, Any]) -> dict[str, Any]:
        """移除已写成文件的资源，并把服务端字段与 action 配置放入 protected。"""
        descriptor = widget_json["descriptor"]
        for entry in WIDGET_ASSETS:
            descriptor.pop(entry.property_name, None)

        protect(widget_json, self.resource_type)
        if ACTION_CONFIG_PROPERTY in descriptor:
            widget_json[PROTECTED_KEY]["descriptor"] = {
                ACTION_CONFIG_PROPERTY: descriptor.pop(ACTION_CONFIG_PROPERTY)
            }
        return widget_json

    # ── bundle ───────────────────────────────────────

    def bundle(self, widget_dir: Path) -> dict[str, Any]:
        """从本地目录重新组装 widget JSON。"""
        local_json_path = widget_dir / self.resource_type.marker_file
        widget_json = unprotect(self.store.read_json(local_json_path))
        widget_id = extract_id(widget_json)

        alias = self._alias(widget_json, widget_id)
        descriptor = widget_json.setdefault("descriptor", {})
        resources = self._process_assets(widget_dir, descriptor, alias, ProjectionMode.BUNDLE)
        descriptor.update(resources)

        config_raw = descriptor.get(ACTION_CONFIG_PROPERTY)
        if config_raw is not None:
            config = self.parse_action_config(config_raw, widget_id)
            self._actions.process(widget_dir, config, ProjectionMode.BUNDLE)
            descriptor[ACTION_CONFIG_PROPERTY] = dumps_compact(config)

        logger.debug(f"[{widget_id}] widget 已打包: {widget_dir}")
        return widget_json

    # ── 共享 ─────────────────────────────────────────

    def _process_assets(
        self,
        widget_dir: Path,
        descriptor: dict[str, Any],
        alias: str,
        mode: ProjectionMode,
    ) -> dict[str, str]:
        if mode not in (ProjectionMode.WRITE, ProjectionMode.BUNDLE):
            raise ValueError(f"Invalid projection mode: {mode}")

        updated = {}
        for entry in WIDGET_ASSETS:
            file_path = widget_dir / entry.file_name(alias)
            if mode is ProjectionMode.WRITE:
                value = descriptor.get(entry.property_name)
                if value is not None:
                    self.store.write_text(file_path, value)
            else:
                # 文件缺失时使用空字符串，而不是省略属性
                value = ""
                if self.store.exists(file_path):
                    value = self.store.read_text(file_path)
                updated[entry.property_name] = value
        return updated

    def _alias(self, widget_json: dict[str, Any], widget_id: str | None) -> str:
        alias = resource_alias(widget_json)
        if not alias:
            raise ValidationError(f"[{widget_id}] 无法确定 widget alias (缺少 alias 和 fqn)")
        return safe_path_name(alias)

    @staticmethod
    def parse_action_config(config_raw: Any, widget_id: str | None = None) -> dict[str, Any]:
        if isinstance(config_raw, dict):
            return config_raw
        try:
            config = json.loads(config_raw)
        except (TypeError, json.JSONDecodeError) as e:
            raise ParseError(f"{ACTION_CONFIG_PROPERTY} 不是合法的 JSON: {e}", resource_id=widget_id) from e
        if not isinstance(config, dict):
            raise ParseError(f"{ACTION_CONFIG_PROPERTY} 必须是 JSON 对象", resource_id=widget_id)
        return config

    def refresh_protected(self, widget_dir: Path, published_json: dict[str, Any]) -> bool:
        return refresh_protected(self.store, widget_dir, self.resource_type, published_json)


class DashboardProjector:
    """Dashboard JSON <-> 本地目录。仪表盘内 widget 的 actions 拆分为文件。"""

    resource_type = ResourceType.DASHBOARD

    def __init__(self, store: LocalFileStore):
        self.store = store
        self._actions = _ActionProcessor(store)

    def write(self, dashboard_json: dict[str, Any], dashboard_dir: Path) -> Path:
        dashboard_id = extract_id(dashboard_json)
        source = copy.deepcopy(dashboard_json)

        self._process_widgets(dashboard_dir, source, ProjectionMode.WRITE)

        local_json_path = dashboard_dir / self.resource_type.marker_file
        self.store.write_json(local_json_path, protect(source, self.resource_type))
        logger.info(f"[{dashboard_id}] dashboard 已写入 {dashboard_dir}")
        return local_json_path

    def bundle(self, dashboard_dir: Path) -> dict[str, Any]:
        local_json_path = dashboard_dir / self.resource_type.marker_file
        dashboard_json = unprotect(self.store.read_json(local_json_path))
        self._process_widgets(dashboard_dir, dashboard_json, ProjectionMode.BUNDLE)
        return dashboard_json

    def _process_widgets(self, dashboard_dir: Path, dashboard_json: dict[str, Any], mode: ProjectionMode):
        widgets = (dashboard_json.get("configuration") or {}).get("widgets") or {}
        items = widgets.items() if isinstance(widgets, dict) else enumerate(widgets)

        used_names: set[str] = set()
        for key, widget in items:
            config = widget.get("config") or {}
            if not config.get("actions"):
                continue
            dir_name = self.widget_dir_name(widget, str(key), used_names)
            self._actions.process(dashboard_dir / "widgets" / dir_name, config, mode)

    @staticmethod
    def widget_dir_name(widget: dict[str, Any], key: str, used_names: set[str]) -> str:
        title = (widget.get("config") or {}).get("title")
        name = "-".join(part for part in (title, widget.get("typeFullFqn")) if part) or key
        name = safe_path_name(name)
        # 同名 widget 追加 key 区分
        if name in used_names:
            name = safe_path_name(f"{name}-{key}")
        used_names.add(name)
        return name

    def refresh_protected(self, dashboard_dir: Path, published_json: dict[str, Any]) -> bool:
        return refresh_protected(self.store, dashboard_dir, self.resource_type, published_json)


def refresh_protected(
    store: LocalFileStore,
    resource_dir: Path,
    resource_type: ResourceType,
    published_json: dict[str, Any],
) -> bool:
    """
    发布成功后，把服务端返回的受保护字段（如递增的 version）写回本地 protected。
    只有发生变化时才写文件，返回是否写入。
    """
    local_json_path = resource_dir / resource_type.marker_file
    local_json = store.read_json(local_json_path)
    protected = local_json.setdefault(PROTECTED_KEY, {})

    changed = False
    for key in resource_type.protected_fields:
        if key in published_json and protected.get(key) != published_json[key]:
            protected[key] = published_json[key]
            changed = True

    if changed:
        store.write_json(local_json_path, local_json)
    return changed
