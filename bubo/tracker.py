"""
修改追踪器：扫描本地工作区，比较文件修改时间与参考快照，判断哪些资源需要发布。
"""

import logging
from pathlib import Path
from typing import Literal, Union

from bubo.errors import BuboError, ValidationError
from bubo.file_store import LocalFileStore
from bubo.models import IGNORE_MARKER, PROTECTED_KEY, LocalResourceRef, ResourceType, extract_id

logger = logging.getLogger(__name__)

IGNORE = "ignore"

AssetsModified = Union[float, Literal["ignore"], None]


class ModificationTracker:
    """
    本地投影发现与修改检测。

    workspace_root: 本地投影根目录 (widgets/ 或 dashboards/)
    reference_root: 参考快照目录 (<scratch>/widgets 或 <scratch>/dashboards)
    """

    def __init__(
        self,
        store: LocalFileStore,
        resource_type: ResourceType,
        workspace_root: Path,
        reference_root: Path,
    ):
        self.store = store
        self.resource_type = resource_type
        self.workspace_root = Path(workspace_root)
        self.reference_root = Path(reference_root)

    def reference_path(self, resource_id: str) -> Path:
        if not resource_id:
            raise ValidationError(f"Specify a {self.resource_type.value[:-1]} id")
        return self.reference_root / f"{resource_id}.json"

    # ── 发现 ──────────────────────────────────────────

    def discover(self) -> list[LocalResourceRef]:
        """通过 widget.json / dashboard.json 标记文件找到所有本地投影。"""
        if not self.workspace_root.is_dir():
            logger.info(f"工作区不存在: {self.workspace_root}")
            return []

        marker = self.resource_type.marker_file
        refs = []
        for json_path in sorted(self.workspace_root.rglob(marker)):
            try:
                refs.append(self._build_ref(json_path))
            except BuboError as e:
                # 单个资源出错不影响其他资源
                logger.error(f"无法读取本地投影 {json_path}: {e}")

        if not refs:
            logger.info(f"没有找到本地 {self.resource_type.value}")
        return refs

    def _build_ref(self, json_path: Path) -> LocalResourceRef:
        local_json = self.store.read_json(json_path)
        resource_id = extract_id(local_json.get(PROTECTED_KEY))
        if not resource_id:
            raise ValidationError(f"{json_path} 缺少 protected.id")

        resource_dir = json_path.parent
        reference_path = self.reference_path(resource_id)
        assets_modified = self.assets_modified_since(resource_dir)
        name = local_json.get(self.resource_type.name_field) or resource_dir.name

        return LocalResourceRef(
            resource_type=self.resource_type,
            id=resource_id,
            name=name,
            json_path=json_path,
            resource_dir=resource_dir,
            reference_path=reference_path,
            reference_modified=self.store.mtime(reference_path),
            assets_modified=None if assets_modified == IGNORE else assets_modified,
            ignored=assets_modified == IGNORE,
        )

    # ── 修改检测 ──────────────────────────────────────

    def assets_modified_since(self, resource_dir: Path) -> AssetsModified:
        """
        目录下最新的文件修改时间。

        任何位置出现 .ignore 文件时返回 "ignore"（整个资源被排除），
        目录不存在时返回 None。
        """
        if not Path(resource_dir).is_dir():
            return None

        recently_modified = None
        for file_path in self.store.walk_files(resource_dir):
            if file_path.name == IGNORE_MARKER:
                return IGNORE
            mtime = self.store.mtime(file_path)
            if mtime is not None and (recently_modified is None or mtime > recently_modified):
                recently_modified = mtime
        return recently_modified

    # ── 列表 ──────────────────────────────────────────

    def available(self) -> list[LocalResourceRef]:
        """所有未被忽略的本地投影。"""
        refs = self.discover()
        ignored = [ref.name for ref in refs if ref.ignored]
        if ignored:
            logger.info(f"已忽略 {len(ignored)} 个资源: {', '.join(ignored)}")
        for ref in refs:
            if not ref.ignored and not ref.has_reference:
                logger.warning(f"[{ref.id}] 缺少参考快照 {ref.reference_path}，请先同步")
        return [ref for ref in refs if not ref.ignored]

    def modified(self) -> list[LocalResourceRef]:
        """已修改的资源，按修改时间倒序。"""
        refs = [ref for ref in self.available() if ref.modified]
        return sorted(refs, key=lambda r: r.assets_modified, reverse=True)

    def publish_candidates(self) -> list[LocalResourceRef]:
        """用于手动选择：先列已修改（最近优先），再按名称列未修改的。"""
        refs = self.available()
        modified = sorted((r for r in refs if r.modified), key=lambda r: r.assets_modified, reverse=True)
        clean = sorted((r for r in refs if not r.modified), key=lambda r: r.name.lower())
        return modified + clean
