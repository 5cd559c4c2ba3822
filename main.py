"""
Bubo Sync 主入口：启动本地同步 API 服务。
"""

import logging
import sys
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI

from bubo import api
from bubo.config_loader import AppConfig, load_config
from bubo.errors import ConfigNotFoundError
from bubo.history import SyncHistory
from bubo.session_store import SessionStore
from bubo.sync_service import SyncService
from bubo.watcher import AutoPublisher

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"

# 日志配置
logging.basicConfig(
    level=logging.INFO,
    format=LOG_FORMAT,
)
logger = logging.getLogger(__name__)


_file_handler: logging.Handler | None = None


def setup_file_logging(config: AppConfig):
    """额外写入 <scratch>/logs/bubo.log。重复调用时替换之前的文件 handler。"""
    global _file_handler
    root_logger = logging.getLogger()
    if _file_handler is not None:
        root_logger.removeHandler(_file_handler)
        _file_handler.close()

    log_root = config.log_root
    log_root.mkdir(parents=True, exist_ok=True)
    _file_handler = logging.FileHandler(log_root / "bubo.log", encoding="utf-8")
    _file_handler.setFormatter(logging.Formatter(LOG_FORMAT))
    root_logger.addHandler(_file_handler)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan 事件处理：启动时和关闭时的逻辑。"""
    service: SyncService | None = app.state.service
    publisher = None

    if service is not None:
        if service.config.auto_publish:
            publisher = AutoPublisher(
                [service.widgets, service.dashboards],
                service.config.scratch_root,
            )
            publisher.start()
        if not service.session.token:
            logger.warning("尚未登录，请调用 POST /api/auth/token")

    yield  # 应用运行中

    # 关闭时：停止监控，关闭连接并写回 session
    logger.info("正在关闭...")
    if publisher is not None:
        publisher.stop()
    if service is not None:
        await service.aclose()
        service.session.close()
    if app.state.history is not None:
        app.state.history.close()


def create_app(config: AppConfig | None = None, transport=None) -> FastAPI:
    """创建并配置 FastAPI 应用。"""
    app = FastAPI(
        title="Bubo Sync API",
        description="Sync ThingsBoard widgets and dashboards with a local workspace",
        version="0.1.0",
        lifespan=lifespan,
    )

    # ── 初始化核心组件 ────────────────────────────────────────
    if config is None:
        logger.info("正在加载配置...")
        try:
            config = load_config()
        except ConfigNotFoundError as e:
            # 没有配置时 API 仍然启动，所有同步接口返回 503
            logger.error(f"{e}")

    service = None
    history = None
    if config is not None:
        setup_file_logging(config)

        # Session 位于项目目录之外，按 host 区分
        session = SessionStore(config.session_root, namespace=config.host)

        # 同步历史
        history = SyncHistory(config.scratch_root / "history.json")

        service = SyncService(config, session, history=history, transport=transport)

    # 注入依赖到 API 模块
    api.init_api(service, history)

    # 注册 API 路由
    app.include_router(api.router)
    api.register_error_handlers(app)

    # 将组件存到 app.state，供 lifespan 访问
    app.state.config = config
    app.state.service = service
    app.state.history = history

    return app


def main():
    """主入口。"""
    port = int(sys.argv[1]) if len(sys.argv) > 1 else 8410

    logger.info(f"🚀 启动 Bubo Sync (port={port})...")

    app = create_app()

    uvicorn.run(
        app,
        host="127.0.0.1",
        port=port,
        log_level="info",
    )


if __name__ == "__main__":
    main()
