"""
FastAPI 路由：本地同步 API，供编辑器插件和脚本调用。
"""

import logging
from typing import Any, Optional

from fastapi import APIRouter, FastAPI, Request
from fastapi.responses import JSONResponse

from bubo.errors import (
    AuthError,
    BuboError,
    ConfigNotFoundError,
    ParseError,
    TransientIOError,
    UserCancelled,
    ValidationError,
)
from bubo.models import (
    CreateWidgetRequest,
    GetRequest,
    LocalResourceRef,
    PasswordLogin,
    PublishRequest,
    ResourceType,
    SyncSourcesRequest,
    TokenLogin,
)
from bubo.sync_service import WIDGET_TEMPLATES, ResourceSync, SyncService
from bubo.sync_state import SyncResult

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api")

# 这些全局引用会在 main.py 中注入
_service: SyncService | None = None
_history = None


def init_api(service: SyncService | None, history=None):
    """注入全局依赖（由 main.py 调用）。没有配置文件时 service 为 None。"""
    global _service, _history
    _service = service
    _history = history


def _require_service() -> SyncService:
    if _service is None:
        raise ConfigNotFoundError("找不到 bubo 配置文件，请先运行初始化")
    return _service


def _sync(resource_type: ResourceType) -> ResourceSync:
    return _require_service().for_type(resource_type)


# ── 错误映射 ──────────────────────────────────────────

# 子类在前
_STATUS_CODES: list[tuple[type[BuboError], int]] = [
    (ValidationError, 400),
    (AuthError, 401),
    (UserCancelled, 409),
    (ParseError, 422),
    (TransientIOError, 502),
    (ConfigNotFoundError, 503),
]


def status_code_for(error: BuboError) -> int:
    for error_type, status_code in _STATUS_CODES:
        if isinstance(error, error_type):
            return status_code
    return 500


async def _handle_bubo_error(request: Request, exc: BuboError) -> JSONResponse:
    status_code = status_code_for(exc)
    if isinstance(exc, UserCancelled):
        logger.debug(f"{request.method} {request.url.path}: 用户取消")
    else:
        logger.error(f"{request.method} {request.url.path} -> {status_code}: {exc}")

    body: dict[str, Any] = {"error": type(exc).__name__, "message": str(exc)}
    resource_id = getattr(exc, "resource_id", None)
    if resource_id:
        body["resource_id"] = resource_id
    return JSONResponse(status_code=status_code, content=body)


def register_error_handlers(app: FastAPI):
    app.add_exception_handler(BuboError, _handle_bubo_error)


# ── 序列化 ───────────────────────────────────────────

def _ref_summary(ref: LocalResourceRef) -> dict[str, Any]:
    return {
        "id": ref.id,
        "name": ref.name,
        "path": str(ref.resource_dir),
        "modified": ref.modified,
        "has_reference": ref.has_reference,
        "assets_modified": ref.assets_modified,
        "reference_modified": ref.reference_modified,
    }


def _results(results: list[SyncResult]) -> dict[str, Any]:
    failed = [r for r in results if not r.ok]
    return {
        "total": len(results),
        "failed": len(failed),
        "results": [r.model_dump(mode="json") for r in results],
    }


# ── 状态与鉴权 ────────────────────────────────────────

@router.get("/status")
async def get_status() -> dict[str, Any]:
    """当前配置与登录状态。"""
    service = _require_service()
    authenticated = await service.tokens.check_status()
    return {
        "host": service.config.host,
        "authenticated": authenticated,
        "auth_state": service.tokens.state.value,
        "widget_id": service.session.widget_id,
        "dashboard_id": service.session.dashboard_id,
        "widget_root": str(service.config.widget_root),
        "dashboard_root": str(service.config.dashboard_root),
        "auto_publish": service.config.auto_publish,
    }


@router.post("/auth/token")
async def login_with_token(body: TokenLogin) -> dict:
    """使用从 ThingsBoard 复制的 JWT 登录。"""
    service = _require_service()
    await service.tokens.login_with_token(body.token)
    return {"message": "已登录", "tenant_id": service.tokens.tenant_id()}


@router.post("/auth/login")
async def login_with_password(body: PasswordLogin) -> dict:
    service = _require_service()
    await service.tokens.login(body.username, body.password)
    return {"message": "已登录", "tenant_id": service.tokens.tenant_id()}


@router.post("/auth/refresh")
async def refresh_auth() -> dict:
    """校验当前 token，失效时用 refresh token 换取新 token。"""
    service = _require_service()
    authenticated = await service.tokens.ensure_valid_token()
    return {"authenticated": authenticated, "auth_state": service.tokens.state.value}


@router.post("/auth/reset")
async def reset_auth() -> dict:
    _require_service().tokens.reset_tokens()
    return {"message": "凭据已清除"}


# ── Widgets ──────────────────────────────────────────

@router.get("/widgets/local")
async def list_local_widgets() -> list[dict]:
    """本地 widget：已修改的在前（最近优先），其余按名称排序。"""
    return [_ref_summary(ref) for ref in _sync(ResourceType.WIDGET).publish_candidates()]


@router.get("/widgets/bundles")
async def list_widget_bundles() -> dict[str, list[dict]]:
    return await _require_service().widgets.list_bundles()


@router.get("/widgets/bundles/{bundle_alias}")
async def list_bundle_widgets(bundle_alias: str, is_system: bool = False) -> list[dict]:
    return await _require_service().widgets.list_bundle_widgets(bundle_alias, is_system)


@router.get("/widgets/templates")
async def list_widget_templates() -> dict[str, dict]:
    return {key: tpl.model_dump() for key, tpl in WIDGET_TEMPLATES.items()}


@router.post("/widgets/get")
async def get_widgets(body: GetRequest) -> dict:
    return await _get(ResourceType.WIDGET, body)


@router.post("/widgets/sync")
async def sync_widget_sources(body: Optional[SyncSourcesRequest] = None) -> dict:
    """重新下载本地 widget 的参考快照。"""
    missing_only = body.missing_only if body else False
    return _results(await _sync(ResourceType.WIDGET).sync_sources(missing_only=missing_only))


@router.post("/widgets/publish")
async def publish_widgets(body: PublishRequest) -> dict:
    return await _publish(ResourceType.WIDGET, body)


@router.post("/widgets/publish-modified")
async def publish_modified_widgets() -> dict:
    return _results(await _sync(ResourceType.WIDGET).publish_modified(force=True))


@router.post("/widgets/create")
async def create_widget(body: CreateWidgetRequest) -> dict:
    result = await _require_service().widgets.create_widget(
        body.name,
        body.template,
        body.bundle_alias,
        download=body.download,
    )
    return result.model_dump(mode="json")


# ── Dashboards ───────────────────────────────────────

@router.get("/dashboards/local")
async def list_local_dashboards() -> list[dict]:
    return [_ref_summary(ref) for ref in _sync(ResourceType.DASHBOARD).publish_candidates()]


@router.get("/dashboards/info/{dashboard_id}")
async def get_dashboard_info(dashboard_id: str) -> dict:
    """远程 dashboard 的基本信息（不含 configuration）。"""
    return await _require_service().gateway.get_dashboard_info(dashboard_id)


@router.post("/dashboards/get")
async def get_dashboards(body: GetRequest) -> dict:
    return await _get(ResourceType.DASHBOARD, body)


@router.post("/dashboards/publish")
async def publish_dashboards(body: PublishRequest) -> dict:
    return await _publish(ResourceType.DASHBOARD, body)


@router.post("/dashboards/publish-modified")
async def publish_modified_dashboards() -> dict:
    return _results(await _sync(ResourceType.DASHBOARD).publish_modified(force=True))


# ── 历史 ─────────────────────────────────────────────

@router.get("/history")
async def get_history(resource_id: Optional[str] = None, limit: int = 100) -> list[dict]:
    if _history is None:
        return []
    return _history.get_history(resource_id, limit=limit)


@router.get("/history/latest")
async def get_latest_history() -> list[dict]:
    """每个资源最近一次同步结果。"""
    if _history is None:
        return []
    return _history.all_latest()


@router.delete("/history/{resource_id}")
async def clear_history(resource_id: str) -> dict:
    if _history is None:
        return {"message": "没有同步历史"}
    _history.clear(resource_id)
    return {"message": f"{resource_id} 的同步历史已清除"}


# ── 共享 ─────────────────────────────────────────────

async def _get(resource_type: ResourceType, body: GetRequest) -> dict:
    """单个 ID 时错误直接映射为 HTTP 状态码；多个 ID 时返回每个资源的结果。"""
    sync = _sync(resource_type)
    ids = [i.strip() for i in body.ids if i and i.strip()]
    if not ids:
        session = sync.session
        active = session.widget_id if resource_type is ResourceType.WIDGET else session.dashboard_id
        if not active:
            raise ValidationError(f"Specify a {resource_type.value[:-1]}Id")
        ids = [active]

    if len(ids) == 1:
        return _results([await sync.fetch_and_parse(ids[0])])
    return _results(await sync.get_many(ids))


async def _publish(resource_type: ResourceType, body: PublishRequest) -> dict:
    sync = _sync(resource_type)
    if body.path:
        return _results([await sync.publish_local(sync.resolve_local_dir(body.path))])
    if not body.ids:
        raise ValidationError(f"Specify a {resource_type.value[:-1]}Id or path")

    refs = [sync.find_local(resource_id.strip()) for resource_id in body.ids]
    if len(refs) == 1:
        return _results([await sync.publish_local(refs[0])])
    return _results(await sync.publish_many(refs))
