"""
本地文件存储：所有文件系统读写都经过这里。
"""

import json
import logging
import os
import shutil
from pathlib import Path
from typing import Any, Iterator

from bubo.errors import ParseError, TransientIOError

logger = logging.getLogger(__name__)


def format_json(data: Any) -> str:
    """与 ThingsBoard 导出一致的缩进格式。"""
    return json.dumps(data, indent=2, ensure_ascii=False)


class LocalFileStore:
    """文本 / JSON 文件的读写原语。"""

    def exists(self, path: Path) -> bool:
        return Path(path).exists()

    def ensure_dir(self, path: Path) -> Path:
        path = Path(path)
        if not path.is_dir():
            logger.debug(f"创建目录: {path}")
            try:
                path.mkdir(parents=True, exist_ok=True)
            except OSError as e:
                raise TransientIOError(str(e), operation=f"mkdir {path}") from e
        return path

    # ── 文本 ──────────────────────────────────────────

    def read_text(self, path: Path) -> str:
        # newline="" 关闭换行转换，保证往返时字节一致
        try:
            with open(path, "r", encoding="utf-8", newline="") as f:
                return f.read()
        except OSError as e:
            raise TransientIOError(str(e), operation=f"read {path}") from e

    def write_text(self, path: Path, data: str):
        path = Path(path)
        self.ensure_dir(path.parent)
        try:
            with open(path, "w", encoding="utf-8", newline="") as f:
                f.write(data)
        except OSError as e:
            raise TransientIOError(str(e), operation=f"write {path}") from e

    # ── JSON ──────────────────────────────────────────

    def read_json(self, path: Path, resource_id: str | None = None) -> Any:
        raw = self.read_text(path)
        try:
            return json.loads(raw)
        except json.JSONDecodeError as e:
            raise ParseError(f"JSON 解析失败: {e}", resource_id=resource_id, path=str(path)) from e

    def write_json(self, path: Path, data: Any):
        self.write_text(path, format_json(data))

    # ── 文件操作 ──────────────────────────────────────

    def copy(self, src: Path, dst: Path):
        self.ensure_dir(Path(dst).parent)
        try:
            shutil.copyfile(src, dst)
        except OSError as e:
            raise TransientIOError(str(e), operation=f"copy {src} -> {dst}") from e

    def move(self, src: Path, dst: Path):
        self.ensure_dir(Path(dst).parent)
        try:
            os.replace(src, dst)
        except OSError as e:
            raise TransientIOError(str(e), operation=f"move {src} -> {dst}") from e

    def touch(self, path: Path):
        try:
            Path(path).touch()
        except OSError as e:
            raise TransientIOError(str(e), operation=f"touch {path}") from e

    def mtime(self, path: Path) -> float | None:
        """文件修改时间，不存在时返回 None。"""
        try:
            return Path(path).stat().st_mtime
        except FileNotFoundError:
            return None

    def walk_files(self, root: Path) -> Iterator[Path]:
        """递归列出目录下的所有文件（不含目录本身）。"""
        for dirpath, _dirnames, filenames in os.walk(root):
            for name in filenames:
                yield Path(dirpath) / name
