"""
自动发布：监控本地工作区的文件变更，冷却后发布所有已修改的资源。
仅在配置 autoPublish: true 时启用。
"""

import asyncio
import logging
import os
import threading
from pathlib import Path

from watchdog.events import FileSystemEventHandler
from watchdog.observers import Observer

from bubo.models import IGNORE_MARKER
from bubo.sync_service import ResourceSync

logger = logging.getLogger(__name__)

# 冷却时间（秒）：期间的连续变更合并为一次发布
COOLDOWN = 1.5


class AutoPublishHandler(FileSystemEventHandler):
    """文件变更事件处理：在应用事件循环上调度 publish_modified。"""

    def __init__(
        self,
        sync: ResourceSync,
        loop: asyncio.AbstractEventLoop,
        excluded_dirs: list[Path] | None = None,
        cooldown: float = COOLDOWN,
    ):
        self.sync = sync
        self.loop = loop
        self.cooldown = cooldown
        self.excluded_dirs = [Path(d).resolve() for d in excluded_dirs or []]
        self._pending = False
        self._lock = threading.Lock()

    def _should_trigger(self, path: str) -> bool:
        if os.path.basename(path) == IGNORE_MARKER:
            return False
        resolved = Path(path).resolve()
        # 快照目录在工作区内时，发布写入的快照不触发新的发布
        for excluded in self.excluded_dirs:
            if resolved == excluded or excluded in resolved.parents:
                return False
        return True

    def on_any_event(self, event):
        if event.is_directory or event.event_type in ("opened", "closed_no_write"):
            return
        if not self._should_trigger(event.src_path):
            return

        with self._lock:
            if self._pending:
                return
            self._pending = True

        logger.info(f"检测到变更: {event.src_path}")
        asyncio.run_coroutine_threadsafe(self._publish_after_cooldown(), self.loop)

    async def _publish_after_cooldown(self):
        await asyncio.sleep(self.cooldown)
        with self._lock:
            self._pending = False
        try:
            results = await self.sync.publish_modified(force=True)
        except Exception as e:
            # 后台任务没有调用方，只能记录
            logger.error(f"自动发布失败: {e}")
            return
        for result in results:
            if not result.ok:
                logger.error(f"[{result.resource_id}] 自动发布失败: {result.message}")


class AutoPublisher:
    """管理 watchdog Observer 的生命周期。"""

    def __init__(self, syncs: list[ResourceSync], scratch_root: Path, cooldown: float = COOLDOWN):
        self.syncs = syncs
        self.scratch_root = Path(scratch_root)
        self.cooldown = cooldown
        self.observer: Observer | None = None

    def start(self, loop: asyncio.AbstractEventLoop | None = None):
        loop = loop or asyncio.get_running_loop()
        self.observer = Observer()
        for sync in self.syncs:
            root = sync.workspace_root
            if not root.is_dir():
                logger.warning(f"工作区不存在，跳过监控: {root}")
                continue
            handler = AutoPublishHandler(sync, loop, excluded_dirs=[self.scratch_root], cooldown=self.cooldown)
            self.observer.schedule(handler, str(root), recursive=True)
            logger.info(f"👁️  监控目录: {root}")
        self.observer.start()

    def stop(self):
        if self.observer is None:
            return
        self.observer.stop()
        self.observer.join()
        self.observer = None
        logger.info("自动发布已停止")
