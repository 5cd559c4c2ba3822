"""
同步历史：基于 TinyDB 记录每次 fetch / publish 的结果。
latest 表按资源 ID 去重，history 表只追加。
"""

import logging
import time
from pathlib import Path
from typing import Any

from tinydb import Query, TinyDB

from bubo.sync_state import SyncResult

logger = logging.getLogger(__name__)


class SyncHistory:
    """TinyDB 数据操作封装。"""

    def __init__(self, db_path: str | Path):
        db_path = Path(db_path)
        db_path.parent.mkdir(parents=True, exist_ok=True)

        self.db = TinyDB(str(db_path), indent=2, ensure_ascii=False)
        self.latest_table = self.db.table("latest")
        self.history_table = self.db.table("history")
        logger.info(f"同步历史已打开: {db_path}")

    # ── 写入 ──────────────────────────────────────────

    def record(self, result: SyncResult) -> dict[str, Any]:
        """记录一次同步结果：更新 latest，并追加到 history。"""
        if not result.timestamp:
            result.timestamp = time.time()
        record = result.model_dump(mode="json")
        key = result.resource_id or result.name or ""
        record["key"] = key

        Entry = Query()
        self.latest_table.upsert(record, Entry.key == key)
        self.history_table.insert(record)
        logger.debug(f"[{key}] 同步结果已记录: {result.action.value} {result.status.value}")
        return record

    # ── 查询 ──────────────────────────────────────────

    def get_latest(self, resource_id: str) -> dict | None:
        """获取指定资源最近一次同步结果。"""
        Entry = Query()
        results = self.latest_table.search(Entry.key == resource_id)
        return results[0] if results else None

    def all_latest(self) -> list[dict]:
        return self.latest_table.all()

    def get_history(self, resource_id: str | None = None, limit: int = 100) -> list[dict]:
        """获取历史记录（按时间倒序）。不指定资源时返回全部。"""
        if resource_id:
            Entry = Query()
            records = self.history_table.search(Entry.key == resource_id)
        else:
            records = self.history_table.all()
        records.sort(key=lambda r: r.get("timestamp", 0), reverse=True)
        return records[:limit]

    # ── 管理 ──────────────────────────────────────────

    def clear(self, resource_id: str):
        Entry = Query()
        self.latest_table.remove(Entry.key == resource_id)
        self.history_table.remove(Entry.key == resource_id)

    def close(self):
        self.db.close()
