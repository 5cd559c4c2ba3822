"""
同步操作的结果定义。
批量操作对每个资源返回一个 SyncResult，而不是在第一个失败时中止。
"""

from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field

from bubo.models import ResourceType


class SyncAction(str, Enum):
    FETCH = "fetch"
    PUBLISH = "publish"
    SYNC = "sync" # 仅刷新参考快照
    CREATE = "create"


class SyncStatus(str, Enum):
    SUCCESS = "success"
    ERROR = "error"
    CANCELLED = "cancelled" # 用户中止，不算错误
    SKIPPED = "skipped"


class SyncResult(BaseModel):
    """单个资源的同步结果。"""
    resource_type: ResourceType
    resource_id: Optional[str] = None
    name: Optional[str] = None
    action: SyncAction
    status: SyncStatus = SyncStatus.SUCCESS
    message: Optional[str] = None
    error_type: Optional[str] = None # 异常类名，便于 API 层映射

    # 发布后目录重命名时记录新路径
    local_path: Optional[str] = None
    renamed: bool = False

    timestamp: float = Field(default=0.0)

    @property
    def ok(self) -> bool:
        return self.status in (SyncStatus.SUCCESS, SyncStatus.SKIPPED)
