"""
Session 存储：跨 CLI 调用持久化 token、refresh token 和当前活动的资源 ID。
统一存储到 session.json 文件中，每个 ThingsBoard host 作为顶层 key。
"""

import json
import logging
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

_SESSION_FILE = "session.json"

TOKEN = "token"
REFRESH_TOKEN = "refreshToken"
WIDGET_ID = "widgetId"
DASHBOARD_ID = "dashboardId"


class SessionStore:
    """
    基于文件的 session 存储（位于项目目录之外）。
    启动时 load()，set/remove 直接写回，退出时 close()。
    """

    def __init__(self, session_dir: str | Path, namespace: str | None = None, autoflush: bool = True):
        self.session_dir = Path(session_dir)
        self.session_file = self.session_dir / _SESSION_FILE
        self.namespace = namespace or "default"
        self.autoflush = autoflush
        self._all: dict[str, dict[str, Any]] = {}
        self._dirty = False
        self.load()

    # ── 生命周期 ──────────────────────────────────────

    def load(self):
        """从磁盘加载 session。"""
        if not self.session_file.exists():
            self._all = {}
            return
        try:
            with open(self.session_file, "r", encoding="utf-8") as f:
                data = json.load(f)
            self._all = data if isinstance(data, dict) else {}
        except (json.JSONDecodeError, IOError) as e:
            logger.error(f"读取 session 文件失败: {e}")
            self._all = {}
        logger.debug(f"Session 已加载: {self.session_file} ({self.namespace})")

    def flush(self):
        """将 session 写回磁盘。"""
        if not self._dirty:
            return
        try:
            self.session_dir.mkdir(parents=True, exist_ok=True)
            with open(self.session_file, "w", encoding="utf-8") as f:
                json.dump(self._all, f, indent=2, ensure_ascii=False)
            self._dirty = False
        except IOError as e:
            logger.error(f"保存 session 文件失败: {e}")

    def close(self):
        self.flush()

    # ── 通用读写 ──────────────────────────────────────

    @property
    def _data(self) -> dict[str, Any]:
        return self._all.setdefault(self.namespace, {})

    def get(self, key: str) -> Any:
        return self._all.get(self.namespace, {}).get(key)

    def set(self, key: str, value: Any):
        if value is None:
            self.remove(key)
            return
        self._data[key] = value
        self._changed()

    def remove(self, key: str):
        if key in self._all.get(self.namespace, {}):
            del self._all[self.namespace][key]
            self._changed()

    def _changed(self):
        self._dirty = True
        if self.autoflush:
            self.flush()

    # ── 具体字段 ──────────────────────────────────────

    @property
    def token(self) -> str | None:
        return self.get(TOKEN)

    @token.setter
    def token(self, value: str | None):
        self.set(TOKEN, value)

    @property
    def refresh_token(self) -> str | None:
        return self.get(REFRESH_TOKEN)

    @refresh_token.setter
    def refresh_token(self, value: str | None):
        self.set(REFRESH_TOKEN, value)

    @property
    def widget_id(self) -> str | None:
        # 用户可能手动编辑过文件
        value = self.get(WIDGET_ID)
        if not isinstance(value, str):
            return None
        return value.strip() or None

    @widget_id.setter
    def widget_id(self, value: str | None):
        self.set(WIDGET_ID, value.strip() if value else None)

    @property
    def dashboard_id(self) -> str | None:
        value = self.get(DASHBOARD_ID)
        if not isinstance(value, str):
            return None
        return value.strip() or None

    @dashboard_id.setter
    def dashboard_id(self, value: str | None):
        self.set(DASHBOARD_ID, value.strip() if value else None)

    def reset_tokens(self):
        """清除 token 和 refresh token，保留活动资源 ID。"""
        self.remove(TOKEN)
        self.remove(REFRESH_TOKEN)
        logger.info(f"Session tokens 已清除 ({self.namespace})")
