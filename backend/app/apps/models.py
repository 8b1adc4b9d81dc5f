# backend/app/apps/models.py
from __future__ import annotations

from datetime import datetime, timezone
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_serializer, field_validator

from .lifecycle import AppStatus, InstallState, UpdateState


def _utcnow_iso() -> str:
    return datetime.now(timezone.utc).replace(microsecond=0).isoformat().replace("+00:00", "Z")


AppKind = Literal["preinstalled", "packaged", "pwa"]


# -----------------------------
# Wire record
# -----------------------------

class AppRecord(BaseModel):
    """
    Public view of one tracked app.

    This is exactly what clients compare against, so the field set is closed:
    name, installState, manifestUrl, status, updateState, updateUrl,
    allowedAutoDownload.

    - updateUrl: None means "no update source". It goes out as "" and an
      incoming "" is read back as None.
    - manifestUrl: frozen once the record exists.
    """

    model_config = ConfigDict(extra="forbid")

    name: str
    installState: InstallState = InstallState.INSTALLED
    manifestUrl: str = Field(frozen=True)
    status: AppStatus = AppStatus.ENABLED
    updateState: UpdateState = UpdateState.IDLE
    updateUrl: Optional[str] = None
    allowedAutoDownload: bool = False

    @field_validator("updateUrl", mode="before")
    @classmethod
    def _empty_update_url(cls, v):
        if isinstance(v, str) and not v.strip():
            return None
        return v

    @field_serializer("updateUrl")
    def _serialize_update_url(self, v: Optional[str]) -> str:
        return v or ""

    @property
    def has_update_source(self) -> bool:
        return self.updateUrl is not None


class RegistryEntry(BaseModel):
    """
    What the registry persists: the public record plus bookkeeping that must
    not show up on the wire.
    """

    model_config = ConfigDict(extra="ignore")

    record: AppRecord
    kind: AppKind = "preinstalled"
    version: Optional[str] = None
    pending_version: Optional[str] = None
    install_path: Optional[str] = None
    installed_at: str = Field(default_factory=_utcnow_iso)
    updated_at: str = Field(default_factory=_utcnow_iso)

    @property
    def name(self) -> str:
        return self.record.name


# -----------------------------
# Manifests
# -----------------------------

class UpdateManifest(BaseModel):
    """
    Mini-manifest served at an app's updateUrl.

    Example:

    {
      "name": "ciautotest",
      "version": "1.0.1",
      "package_path": "ciautotest.zip",
      "size": 12345
    }

    package_path may be absolute or relative to the mini-manifest URL.
    """

    model_config = ConfigDict(extra="allow")

    name: str
    version: str = ""
    package_path: Optional[str] = None
    size: Optional[int] = None
    developer: Optional[dict] = None


class WebAppManifest(BaseModel):
    """
    manifest.webapp found inside a package, or a PWA web manifest.
    Unknown keys are kept so newer manifests don't break.
    """

    model_config = ConfigDict(extra="allow")

    name: str
    short_name: Optional[str] = None
    version: Optional[str] = None
    description: Optional[str] = None
    start_url: Optional[str] = None
    launch_path: Optional[str] = None
    display: Optional[str] = None
    icons: List[dict] = Field(default_factory=list)


class PreinstalledApp(BaseModel):
    """One entry of webapps.json."""

    model_config = ConfigDict(extra="allow")

    name: str
    manifestUrl: str
    updateUrl: Optional[str] = None
    version: Optional[str] = None


class PreinstalledList(BaseModel):
    version: int = 1
    apps: List[PreinstalledApp] = Field(default_factory=list)


# -----------------------------
# API requests / results
# -----------------------------

class InstallRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    url: str
    force: bool = False  # if true, reinstall over an existing app


class SetEnabledRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    enabled: bool


class SetAutoDownloadRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    allowed: bool


class OperationError(BaseModel):
    code: str
    message: str


OperationStatus = Literal[
    "installed",
    "updated",
    "update-available",
    "no-update",
    "uninstalled",
    "failed",
]


class OperationResult(BaseModel):
    """
    Outcome of install / update / uninstall.

    Expected operational failures (a download that did not complete) come back
    here with status="failed" and the record as it stands after rollback,
    instead of being raised.
    """

    status: OperationStatus
    record: Optional[AppRecord] = None
    error: Optional[OperationError] = None

    @property
    def ok(self) -> bool:
        return self.status != "failed"


EventKind = Literal[
    "installing",
    "installed",
    "download-failed",
    "update-available",
    "updating",
    "updated",
    "uninstalled",
    "status-changed",
]


class AppsEvent(BaseModel):
    kind: EventKind
    name: str
    record: Optional[AppRecord] = None
    error: Optional[OperationError] = None
    at: str = Field(default_factory=_utcnow_iso)
