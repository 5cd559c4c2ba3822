"""
同步服务：组合网关、投影器与修改追踪器，实现 GET / PUBLISH 流程。

GET:     Gateway.fetch -> 参考快照 -> Projector.write
PUBLISH: Tracker.scan -> Projector.bundle -> 备份快照 -> Gateway.publish -> 更新快照

批量操作并发执行（asyncio.gather），单个资源失败不影响其他资源，
返回每个资源的 SyncResult。
"""

import asyncio
import inspect
import logging
import time
from pathlib import Path
from typing import Any, Awaitable, Callable, Iterable, Optional, Union

from pydantic import BaseModel

from bubo.client import ApiClient
from bubo.config_loader import AppConfig
from bubo.errors import UserCancelled, ValidationError
from bubo.file_store import LocalFileStore
from bubo.gateway import ThingsBoardGateway
from bubo.history import SyncHistory
from bubo.models import LocalResourceRef, ResourceType, extract_id, safe_path_name
from bubo.projector import DashboardProjector, WidgetProjector
from bubo.session_store import SessionStore
from bubo.sync_state import SyncAction, SyncResult, SyncStatus
from bubo.tracker import IGNORE, ModificationTracker

logger = logging.getLogger(__name__)

# 发布前的确认回调，可以是同步或异步函数；抛出 UserCancelled 表示用户中止
ConfirmCallback = Callable[[list[LocalResourceRef]], Union[bool, Awaitable[bool]]]


class ResourceSync:
    """widget / dashboard 通用的同步流程。子类提供资源相关的远程调用与本地路径。"""

    resource_type: ResourceType

    def __init__(
        self,
        config: AppConfig,
        gateway: ThingsBoardGateway,
        session: SessionStore,
        store: LocalFileStore | None = None,
        history: SyncHistory | None = None,
    ):
        self.config = config
        self.gateway = gateway
        self.session = session
        self.store = store or LocalFileStore()
        self.history = history
        self.reference_root = config.scratch_root / self.resource_type.value
        self.tracker = ModificationTracker(
            self.store,
            self.resource_type,
            self.workspace_root,
            self.reference_root,
        )
        self.projector = self._make_projector()

    # ── 子类实现 ──────────────────────────────────────

    @property
    def workspace_root(self) -> Path:
        raise NotImplementedError

    def _make_projector(self):
        raise NotImplementedError

    async def _fetch(self, resource_id: str) -> dict[str, Any]:
        raise NotImplementedError

    async def _publish(self, resource_json: dict[str, Any]) -> dict[str, Any]:
        raise NotImplementedError

    async def local_dir(self, resource_json: dict[str, Any]) -> Path:
        """资源在本地工作区中的目录。"""
        raise NotImplementedError

    def _set_active(self, resource_id: str):
        raise NotImplementedError

    # ── 路径 ──────────────────────────────────────────

    def reference_path(self, resource_id: str) -> Path:
        return self.tracker.reference_path(resource_id)

    def backup_path(self, resource_id: str) -> Path:
        return self.reference_path(resource_id).with_suffix(".json.bak")

    def _name(self, resource_json: dict[str, Any]) -> Optional[str]:
        return resource_json.get(self.resource_type.name_field)

    # ── GET ───────────────────────────────────────────

    async def fetch_and_save(self, resource_id: str) -> dict[str, Any]:
        """下载资源并保存为参考快照。"""
        resource_json = await self._fetch(resource_id)
        self.store.write_json(self.reference_path(resource_id), resource_json)
        logger.info(f"[{resource_id}] 参考快照已保存")
        return resource_json

    async def fetch_and_parse(self, resource_id: str) -> SyncResult:
        """下载资源并投影到本地工作区。"""
        return await self._tracked(SyncAction.FETCH, resource_id, self._fetch_and_parse(resource_id))

    async def _fetch_and_parse(self, resource_id: str) -> SyncResult:
        resource_json = await self.fetch_and_save(resource_id)
        resource_dir = await self.local_dir(resource_json)
        self.projector.write(resource_json, resource_dir)
        # 投影文件晚于快照写入；更新快照时间，刚下载的资源不算已修改
        self.store.touch(self.reference_path(resource_id))
        self._set_active(resource_id)
        return self._result(
            SyncAction.FETCH,
            resource_id,
            self._name(resource_json),
            message=f"已下载到 {resource_dir}",
            local_path=resource_dir,
        )

    async def get_many(self, resource_ids: Iterable[str]) -> list[SyncResult]:
        ids = [i.strip() for i in resource_ids if i and i.strip()]
        return await self._gather(SyncAction.FETCH, [(i, None, self.fetch_and_parse(i)) for i in ids])

    async def sync_sources(self, missing_only: bool = False) -> list[SyncResult]:
        """
        重新下载所有本地投影的参考快照（不改动本地文件）。
        注意：快照时间更新后，本地的未发布修改不再被识别为已修改。
        """
        refs = self.tracker.available()
        if missing_only:
            refs = [ref for ref in refs if not ref.has_reference]
        jobs = [(ref.id, ref.name, self._tracked(SyncAction.SYNC, ref.id, self._sync_source(ref))) for ref in refs]
        return await self._gather(SyncAction.SYNC, jobs)

    async def _sync_source(self, ref: LocalResourceRef) -> SyncResult:
        await self.fetch_and_save(ref.id)
        return self._result(SyncAction.SYNC, ref.id, ref.name, local_path=ref.resource_dir)

    # ── PUBLISH ───────────────────────────────────────

    def local_refs(self) -> list[LocalResourceRef]:
        return self.tracker.available()

    def publish_candidates(self) -> list[LocalResourceRef]:
        return self.tracker.publish_candidates()

    def find_local(self, resource_id: str) -> LocalResourceRef:
        for ref in self.tracker.discover():
            if ref.id == resource_id:
                return ref
        raise ValidationError(f"[{resource_id}] 本地工作区中没有该资源")

    def resolve_local_dir(self, path: str | Path) -> Path:
        """从投影目录中的任意文件路径向上查找带标记文件的资源目录。"""
        path = Path(path).expanduser()
        if not path.is_absolute():
            path = self.config.root / path
        marker = self.resource_type.marker_file
        for candidate in (path, *path.parents):
            if (candidate / marker).is_file():
                return candidate
            if candidate == self.workspace_root:
                break
        raise ValidationError(f"{path} 不在任何本地 {self.resource_type.value[:-1]} 目录中")

    async def publish_local(self, target: Union[Path, LocalResourceRef]) -> SyncResult:
        """打包本地目录并发布。target 可以是目录或 discover() 的结果。"""
        resource_id = target.id if isinstance(target, LocalResourceRef) else None
        resource_dir = target.resource_dir if isinstance(target, LocalResourceRef) else Path(target)
        if self.tracker.assets_modified_since(resource_dir) == IGNORE:
            logger.info(f"[{resource_id or resource_dir.name}] 目录中有 .ignore 标记，跳过发布")
            name = target.name if isinstance(target, LocalResourceRef) else resource_dir.name
            result = self._result(
                SyncAction.PUBLISH,
                resource_id,
                name,
                status=SyncStatus.SKIPPED,
                message="已忽略 (.ignore)",
                local_path=resource_dir,
            )
            self._record(result)
            return result
        return await self._tracked(SyncAction.PUBLISH, resource_id, self._publish_local(resource_dir))

    async def _publish_local(self, resource_dir: Path) -> SyncResult:
        bundled = self.projector.bundle(resource_dir)
        resource_id = extract_id(bundled)
        if not resource_id:
            raise ValidationError(f"{resource_dir} 缺少资源 ID")

        reference_path = self.reference_path(resource_id)
        previous = None
        if self.store.exists(reference_path):
            previous = self.store.read_json(reference_path, resource_id=resource_id)
            self.store.copy(reference_path, self.backup_path(resource_id))
        else:
            logger.warning(f"[{resource_id}] 没有参考快照，跳过备份")

        published = await self._publish(bundled) or bundled
        name = self._name(bundled)
        logger.info(f"[{resource_id}] {self.resource_type.value[:-1]} {name} 已发布")

        # 名称被修改时同步重命名本地目录
        renamed = False
        if previous is not None and name and self._name(previous) != name:
            target_dir = resource_dir.parent / safe_path_name(name)
            if target_dir != resource_dir and self.store.exists(target_dir):
                logger.warning(f"[{resource_id}] 目标目录已存在，未重命名: {target_dir}")
            elif target_dir != resource_dir:
                self.store.move(resource_dir, target_dir)
                logger.info(f"[{resource_id}] 本地目录已重命名: {resource_dir.name} -> {target_dir.name}")
                resource_dir = target_dir
                renamed = True

        self.projector.refresh_protected(resource_dir, published)
        # 最后写快照：快照时间不早于任何本地文件
        self.store.write_json(reference_path, published)

        return self._result(
            SyncAction.PUBLISH,
            resource_id,
            name,
            message="已发布",
            local_path=resource_dir,
            renamed=renamed,
        )

    async def publish_many(self, refs: Iterable[LocalResourceRef]) -> list[SyncResult]:
        refs = list(refs)
        return await self._gather(SyncAction.PUBLISH, [(ref.id, ref.name, self.publish_local(ref)) for ref in refs])

    async def publish_modified(
        self,
        confirm: Optional[ConfirmCallback] = None,
        force: bool = False,
    ) -> list[SyncResult]:
        """
        发布所有已修改的资源。

        Args:
            confirm: 发布前的确认回调，返回 False 时不发布
            force: 跳过确认
        """
        modified = self.tracker.modified()
        if not modified:
            logger.info(f"没有发现已修改的 {self.resource_type.value}")
            return []

        if force:
            logger.warning(f"强制发布所有已修改的 {self.resource_type.value}")
        elif confirm is not None:
            try:
                answer = confirm(modified)
                if inspect.isawaitable(answer):
                    answer = await answer
            except UserCancelled:
                logger.debug("用户取消了发布")
                answer = False
            if not answer:
                logger.info(f"没有发布任何 {self.resource_type.value}")
                return [
                    self._result(SyncAction.PUBLISH, ref.id, ref.name, status=SyncStatus.CANCELLED)
                    for ref in modified
                ]

        return await self.publish_many(modified)

    # ── 共享 ─────────────────────────────────────────

    async def _tracked(self, action: SyncAction, resource_id: str | None, operation: Awaitable[SyncResult]) -> SyncResult:
        """执行单个操作，无论成功失败都写入同步历史。异常继续向上抛出。"""
        try:
            result = await operation
        except UserCancelled:
            logger.debug(f"[{resource_id}] 用户取消")
            self._record(self._result(action, resource_id, status=SyncStatus.CANCELLED))
            raise
        except Exception as e:
            self._record(self._error_result(action, resource_id, None, e))
            raise
        self._record(result)
        return result

    async def _gather(
        self,
        action: SyncAction,
        jobs: list[tuple[str | None, str | None, Awaitable[SyncResult]]],
    ) -> list[SyncResult]:
        """并发执行，单个失败转换为错误结果。"""
        if not jobs:
            return []
        outcomes = await asyncio.gather(*(job for _, _, job in jobs), return_exceptions=True)

        results = []
        for (resource_id, name, _), outcome in zip(jobs, outcomes):
            if isinstance(outcome, UserCancelled):
                results.append(self._result(action, resource_id, name, status=SyncStatus.CANCELLED))
            elif isinstance(outcome, Exception):
                logger.error(f"[{resource_id}] {action.value} 失败: {outcome}")
                results.append(self._error_result(action, resource_id, name, outcome))
            elif isinstance(outcome, BaseException):
                raise outcome
            else:
                results.append(outcome)

        failed = sum(1 for r in results if r.status is SyncStatus.ERROR)
        logger.info(f"{action.value} {self.resource_type.value}: {len(results) - failed} 成功, {failed} 失败")
        return results

    def _result(
        self,
        action: SyncAction,
        resource_id: str | None,
        name: str | None = None,
        status: SyncStatus = SyncStatus.SUCCESS,
        message: str | None = None,
        local_path: Path | None = None,
        renamed: bool = False,
    ) -> SyncResult:
        return SyncResult(
            resource_type=self.resource_type,
            resource_id=resource_id,
            name=name,
            action=action,
            status=status,
            message=message,
            local_path=str(local_path) if local_path else None,
            renamed=renamed,
            timestamp=time.time(),
        )

    def _error_result(self, action: SyncAction, resource_id: str | None, name: str | None, error: Exception) -> SyncResult:
        result = self._result(action, resource_id, name, status=SyncStatus.ERROR, message=str(error))
        result.error_type = type(error).__name__
        return result

    def _record(self, result: SyncResult):
        if self.history is not None:
            self.history.record(result)


# ── Widgets ──────────────────────────────────────────

class WidgetTemplate(BaseModel):
    """create_widget 使用的系统模板 widget。"""
    title: str
    bundle_alias: str
    alias: str
    description: Optional[str] = None


WIDGET_TEMPLATES: dict[str, WidgetTemplate] = {
    "timeseries": WidgetTemplate(
        title="Time Series",
        bundle_alias="charts",
        alias="basic_timeseries",
        description="Displays changes to timeseries data over time. For example, temperature or humidity readings.",
    ),
    "latest": WidgetTemplate(
        title="Latest Values",
        bundle_alias="cards",
        alias="attributes_card",
        description="Displays one or more latest values of the entity. Supports multiple entities.",
    ),
    "control": WidgetTemplate(
        title="Control Widget",
        bundle_alias="gpio_widgets",
        alias="basic_gpio_control",
        description="Allows to change state of the GPIO for target device using RPC commands.",
    ),
    "alarm": WidgetTemplate(
        title="Alarm Widget",
        bundle_alias="alarm_widgets",
        alias="alarms_table",
        description="Displays alarms based on defined time window and other filters.",
    ),
    "static": WidgetTemplate(
        title="Static Widget",
        bundle_alias="cards",
        alias="html_card",
    ),
}


class WidgetSync(ResourceSync):
    resource_type = ResourceType.WIDGET

    @property
    def workspace_root(self) -> Path:
        return self.config.widget_root

    def _make_projector(self) -> WidgetProjector:
        return WidgetProjector(self.store)

    async def _fetch(self, resource_id: str) -> dict[str, Any]:
        return await self.gateway.get_widget(resource_id)

    async def _publish(self, resource_json: dict[str, Any]) -> dict[str, Any]:
        return await self.gateway.publish_widget(resource_json)

    def _set_active(self, resource_id: str):
        self.session.widget_id = resource_id

    async def local_dir(self, resource_json: dict[str, Any]) -> Path:
        bundle_alias = await self.resolve_bundle_alias(resource_json)
        name = self._name(resource_json) or extract_id(resource_json) or "widget"
        return self.workspace_root / safe_path_name(bundle_alias) / safe_path_name(name)

    async def resolve_bundle_alias(self, widget_json: dict[str, Any]) -> str:
        """
        bundle alias 的确定顺序：
        1. 显式的 bundleAlias 字段
        2. fqn 的第一段（fqn 至少两段时）
        3. 租户名称（/api/tenant/info）
        """
        if widget_json.get("bundleAlias"):
            return widget_json["bundleAlias"]

        widget_id = extract_id(widget_json)
        chunks = (widget_json.get("fqn") or "").split(".")
        if len(chunks) >= 2 and chunks[0]:
            logger.info(f"[{widget_id}] fqn: {widget_json['fqn']} bundleAlias: {chunks[0]}")
            return chunks[0]

        tenant_id = extract_id({"id": widget_json.get("tenantId")})
        if not tenant_id:
            raise ValidationError(f"[{widget_id}] 无法确定 bundle alias (缺少 bundleAlias、fqn 和 tenantId)")
        tenant = await self.gateway.get_tenant_info(tenant_id)
        logger.warning(f"[{widget_id}] 找不到 bundleAlias，使用租户名称 {tenant.get('name')}")
        if not tenant.get("name"):
            raise ValidationError(f"[{widget_id}] 租户 {tenant_id} 没有名称")
        return tenant["name"]

    # ── 浏览 ──────────────────────────────────────────

    async def list_bundles(self) -> dict[str, list[dict[str, Any]]]:
        """按租户 / 系统分组列出 widget bundle，组内按标题排序。"""
        tenant_id = self.gateway.api.tokens.tenant_id()
        grouped: dict[str, list[dict[str, Any]]] = {"tenant": [], "system": []}
        for bundle in await self.gateway.list_widget_bundles():
            is_system = extract_id({"id": bundle.get("tenantId")}) != tenant_id
            grouped["system" if is_system else "tenant"].append({
                "title": bundle.get("title") or bundle.get("alias"),
                "alias": bundle.get("alias"),
                "is_system": is_system,
                "description": bundle.get("description"),
            })
        for bundles in grouped.values():
            bundles.sort(key=lambda b: (b["title"] or "").lower())
        return grouped

    async def list_bundle_widgets(self, bundle_alias: str, is_system: bool) -> list[dict[str, Any]]:
        widgets = await self.gateway.list_widgets_in_bundle(bundle_alias, is_system)
        items = [
            {"id": extract_id(w), "name": w.get("name"), "description": w.get("description")}
            for w in widgets
        ]
        return sorted(items, key=lambda w: (w["name"] or "").lower())

    # ── 创建 ──────────────────────────────────────────

    async def create_widget(
        self,
        name: str,
        template: str,
        bundle_alias: str,
        download: bool = True,
    ) -> SyncResult:
        """基于 WIDGET_TEMPLATES 中的系统模板在指定 bundle 中创建 widget。"""
        if not name or not name.strip():
            raise ValidationError("Specify a widget name")
        tpl = WIDGET_TEMPLATES.get(template)
        if tpl is None:
            raise ValidationError(f"未知的 widget 模板: {template} (可选: {', '.join(WIDGET_TEMPLATES)})")

        payload = {"name": name.strip(), "bundleAlias": bundle_alias}
        created = await self.gateway.create_widget(tpl.bundle_alias, True, tpl.alias, payload)
        widget_id = extract_id(created)
        result = self._result(SyncAction.CREATE, widget_id, created.get("name") or name, message=f"模板 {tpl.title}")
        self._record(result)

        if download and widget_id:
            return await self.fetch_and_parse(widget_id)
        return result


# ── Dashboards ───────────────────────────────────────

class DashboardSync(ResourceSync):
    resource_type = ResourceType.DASHBOARD

    @property
    def workspace_root(self) -> Path:
        return self.config.dashboard_root

    def _make_projector(self) -> DashboardProjector:
        return DashboardProjector(self.store)

    async def _fetch(self, resource_id: str) -> dict[str, Any]:
        return await self.gateway.get_dashboard(resource_id)

    async def _publish(self, resource_json: dict[str, Any]) -> dict[str, Any]:
        return await self.gateway.publish_dashboard(resource_json)

    def _set_active(self, resource_id: str):
        self.session.dashboard_id = resource_id

    async def local_dir(self, resource_json: dict[str, Any]) -> Path:
        name = self._name(resource_json) or resource_json.get("name") or extract_id(resource_json) or "dashboard"
        return self.workspace_root / safe_path_name(name)


# ── 组装 ─────────────────────────────────────────────

class SyncService:
    """持有 HTTP 客户端、网关与两类资源的同步流程。"""

    def __init__(
        self,
        config: AppConfig,
        session: SessionStore,
        history: SyncHistory | None = None,
        store: LocalFileStore | None = None,
        transport=None,
    ):
        self.config = config
        self.session = session
        self.history = history
        self.store = store or LocalFileStore()
        self.api = ApiClient(config.host, session, timeout=config.request_timeout, transport=transport)
        self.tokens = self.api.tokens
        self.gateway = ThingsBoardGateway(self.api)
        self.widgets = WidgetSync(config, self.gateway, session, self.store, history)
        self.dashboards = DashboardSync(config, self.gateway, session, self.store, history)

    def for_type(self, resource_type: ResourceType) -> ResourceSync:
        return self.widgets if resource_type is ResourceType.WIDGET else self.dashboards

    async def aclose(self):
        await self.api.aclose()
