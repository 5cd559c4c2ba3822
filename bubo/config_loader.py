"""
配置加载器：将项目根目录下的 bubo 配置文件解析为 Pydantic 模型。
"""

import logging
import os
from pathlib import Path
from typing import Any, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError as PydanticValidationError, field_validator

from bubo.errors import ConfigNotFoundError, ParseError

logger = logging.getLogger(__name__)


# ── 顶层配置 ──────────────────────────────────────────

class AppConfig(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    # ThingsBoard 地址，例如 https://demo.thingsboard.io
    host: Optional[str] = Field(default=None, alias="thingsBoardHost")
    widget_dir: str = Field(default="widgets", alias="widgetWorkingDirectory")
    dashboard_dir: str = Field(default="dashboards", alias="dashboardWorkingDirectory")
    scratch_dir: str = Field(default=".bubo", alias="scratchDirectory")
    # Session 存放在项目目录之外
    session_dir: Optional[str] = Field(default=None, alias="sessionDirectory")
    auto_publish: bool = Field(default=False, alias="autoPublish")
    request_timeout: float = Field(default=30.0, alias="requestTimeout")

    # 项目根目录，不来自配置文件
    root: Path = Field(default_factory=Path.cwd, exclude=True)

    @field_validator("host")
    @classmethod
    def strip_trailing_slash(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        value = value.strip().rstrip("/")
        return value or None

    def _resolve(self, sub: str) -> Path:
        path = Path(sub).expanduser()
        return path if path.is_absolute() else self.root / path

    @property
    def widget_root(self) -> Path:
        return self._resolve(self.widget_dir)

    @property
    def dashboard_root(self) -> Path:
        return self._resolve(self.dashboard_dir)

    @property
    def scratch_root(self) -> Path:
        return self._resolve(self.scratch_dir)

    @property
    def session_root(self) -> Path:
        if self.session_dir:
            return self._resolve(self.session_dir)
        return Path.home() / ".bubo"

    @property
    def log_root(self) -> Path:
        return self.scratch_root / "logs"


# ── Loading ──────────────────────────────────────────

_CONFIG_FILE_NAMES = [
    "bubo.config.yaml",
    "bubo.config.yml",
    "bubo.config.json",
]


def find_project_root() -> Path:
    """项目根目录：BUBO_ROOT 环境变量，默认当前目录。"""
    return Path(os.getenv("BUBO_ROOT", ".")).resolve()


def find_config_file(root: Optional[Path] = None) -> Optional[Path]:
    """在项目根目录下查找配置文件，找不到返回 None。"""
    root = root or find_project_root()
    for name in _CONFIG_FILE_NAMES:
        path = root / name
        if path.is_file():
            return path
    return None


def _read_raw(path: Path) -> dict[str, Any]:
    # YAML 是 JSON 的超集，旧版 bubo.config.json 也能直接读取
    try:
        with open(path, "r", encoding="utf-8") as f:
            content = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ParseError(f"配置文件格式错误: {e}", path=str(path)) from e

    if content is None:
        return {}
    if not isinstance(content, dict):
        raise ParseError("配置文件顶层必须是对象", path=str(path))
    return content


def load_config(path: Optional[str | Path] = None) -> AppConfig:
    """
    加载项目配置。

    Raises:
        ConfigNotFoundError: 找不到配置文件（由首次运行向导处理）
        ParseError: 文件无法解析或字段校验失败
    """
    if path is None:
        path = find_config_file()
        if path is None:
            raise ConfigNotFoundError(f"在 {find_project_root()} 下找不到 bubo 配置文件")
    path = Path(path)
    if not path.is_file():
        raise ConfigNotFoundError(f"配置文件不存在: {path}")

    raw = _read_raw(path)

    host_override = os.getenv("BUBO_HOST")
    if host_override:
        raw["thingsBoardHost"] = host_override
        raw.pop("host", None)

    try:
        config = AppConfig.model_validate({**raw, "root": path.resolve().parent})
    except PydanticValidationError as e:
        raise ParseError(f"配置校验失败: {e}", path=str(path)) from e

    logger.info(f"已加载配置: {path} (host={config.host})")
    return config
