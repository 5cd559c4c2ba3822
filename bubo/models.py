"""
Data models for synced resources and the asset tables that drive projection.
"""

import re
from enum import Enum
from pathlib import Path
from typing import Any, FrozenSet, Optional

from pydantic import BaseModel, ConfigDict, Field


class ResourceType(str, Enum):
    WIDGET = "widgets"
    DASHBOARD = "dashboards"

    @property
    def marker_file(self) -> str:
        """The local JSON file that marks a projection directory."""
        return "widget.json" if self is ResourceType.WIDGET else "dashboard.json"

    @property
    def name_field(self) -> str:
        return "name" if self is ResourceType.WIDGET else "title"

    @property
    def protected_fields(self) -> tuple[str, ...]:
        if self is ResourceType.WIDGET:
            return WIDGET_PROTECTED_FIELDS
        return DASHBOARD_PROTECTED_FIELDS


# Server-owned fields, hoisted into `protected` in the local JSON.
WIDGET_PROTECTED_FIELDS = ("id", "createdTime", "tenantId", "ownerId", "bundleAlias", "version")
DASHBOARD_PROTECTED_FIELDS = (
    "id",
    "createdTime",
    "tenantId",
    "ownerId",
    "customerId",
    "assignedCustomers",
    "version",
)

PROTECTED_KEY = "protected"
ACTION_CONFIG_PROPERTY = "defaultConfig"
IGNORE_MARKER = ".ignore"


# ── Asset tables ─────────────────────────────────────────

class AssetKind(str, Enum):
    """Every descriptor/action property that is projected into its own file."""
    CONTROLLER_SCRIPT = "controllerScript"
    TEMPLATE_HTML = "templateHtml"
    TEMPLATE_CSS = "templateCss"
    SETTINGS_SCHEMA = "settingsSchema"
    DATA_KEY_SETTINGS_SCHEMA = "dataKeySettingsSchema"
    # Action assets
    CUSTOM_FUNCTION = "customFunction"
    CUSTOM_HTML = "customHtml"
    CUSTOM_CSS = "customCss"
    SHOW_WIDGET_ACTION_FUNCTION = "showWidgetActionFunction"


class AssetEntry(BaseModel):
    """One row of an asset table: property -> file."""
    model_config = ConfigDict(frozen=True)

    kind: AssetKind
    extension: str
    name: Optional[str] = Field(default=None, description="Fixed file name; otherwise derived")
    types: Optional[FrozenSet[str]] = Field(default=None, description="Only for actions of these types")

    @property
    def property_name(self) -> str:
        return self.kind.value

    def file_name(self, default_name: str) -> str:
        return f"{self.name or default_name}.{self.extension}"

    def applies_to(self, action_type: Optional[str]) -> bool:
        return self.types is None or action_type in self.types


WIDGET_ASSETS: tuple[AssetEntry, ...] = (
    AssetEntry(kind=AssetKind.CONTROLLER_SCRIPT, extension="js"),
    AssetEntry(kind=AssetKind.TEMPLATE_HTML, extension="html"),
    AssetEntry(kind=AssetKind.TEMPLATE_CSS, extension="css"),
    AssetEntry(kind=AssetKind.SETTINGS_SCHEMA, extension="SETTINGS_SCHEMA.json"),
    AssetEntry(kind=AssetKind.DATA_KEY_SETTINGS_SCHEMA, extension="DATAKEY_SETTINGS_SCHEMA.json"),
)

ACTION_ASSETS: tuple[AssetEntry, ...] = (
    AssetEntry(
        kind=AssetKind.CUSTOM_FUNCTION,
        extension="js",
        name="customFunction",
        types=frozenset({"custom", "customPretty"}),
    ),
    AssetEntry(kind=AssetKind.CUSTOM_HTML, extension="html", name="customHtml", types=frozenset({"customPretty"})),
    AssetEntry(kind=AssetKind.CUSTOM_CSS, extension="css", name="customCss", types=frozenset({"customPretty"})),
    AssetEntry(kind=AssetKind.SHOW_WIDGET_ACTION_FUNCTION, extension="js", name="showWidgetActionFunction"),
)


# ── Local projections ────────────────────────────────────

class LocalResourceRef(BaseModel):
    """A local projection paired with its reference snapshot."""
    resource_type: ResourceType
    id: str
    name: str
    json_path: Path
    resource_dir: Path
    reference_path: Path
    reference_modified: Optional[float] = Field(default=None, description="mtime of the reference snapshot")
    assets_modified: Optional[float] = Field(default=None, description="Newest file mtime in resource_dir")
    ignored: bool = False

    @property
    def has_reference(self) -> bool:
        return self.reference_modified is not None

    @property
    def modified(self) -> bool:
        # Equal timestamps count as unmodified
        if self.ignored or self.assets_modified is None or self.reference_modified is None:
            return False
        return self.assets_modified > self.reference_modified


# ── Helpers ──────────────────────────────────────────────

def extract_id(resource_json: dict[str, Any] | None) -> Optional[str]:
    """ThingsBoard ids are {"entityType": ..., "id": ...}; bare strings are accepted too."""
    if not resource_json:
        return None
    value = resource_json.get("id")
    if isinstance(value, dict):
        value = value.get("id")
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def resource_alias(widget_json: dict[str, Any]) -> Optional[str]:
    """Base file name for widget assets: `alias`, else derived from `fqn`."""
    alias = widget_json.get("alias")
    if alias:
        return alias
    fqn = widget_json.get("fqn")
    if not fqn:
        return None
    chunks = fqn.split(".")
    return chunks[1] if len(chunks) > 1 and chunks[1] else chunks[0]


_UNSAFE_PATH_CHARS = re.compile(r'[\\/:*?"<>|\x00-\x1f]')


def safe_path_name(name: str) -> str:
    cleaned = _UNSAFE_PATH_CHARS.sub("_", name).strip()
    if cleaned in ("", ".", ".."):
        return "_"
    return cleaned


# ── API request bodies ───────────────────────────────────

class TokenLogin(BaseModel):
    """A JWT copied from the ThingsBoard UI."""
    token: str


class PasswordLogin(BaseModel):
    username: str
    password: str


class GetRequest(BaseModel):
    """Fetch by id; with no ids the last active resource is used."""
    ids: list[str] = Field(default_factory=list)


class PublishRequest(BaseModel):
    """Publish by id, or by the path of a local projection directory."""
    ids: list[str] = Field(default_factory=list)
    path: Optional[str] = Field(default=None, description="Any path inside a projection directory")


class SyncSourcesRequest(BaseModel):
    missing_only: bool = False


class CreateWidgetRequest(BaseModel):
    name: str
    template: str = Field(description="Key of WIDGET_TEMPLATES")
    bundle_alias: str
    download: bool = True
