from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Mapping, Optional

from pydantic import BaseModel, Field

logger = logging.getLogger("appsd.config")

ENV_PREFIX = "APPSD_"


def _core_root() -> Path:
    # backend/app/config.py -> app -> backend -> <core_root>
    return Path(__file__).resolve().parents[2]


def _default_preinstalled_path() -> Path:
    return Path(__file__).resolve().parent / "apps" / "default_webapps.json"


class AppsSettings(BaseModel):
    """
    Runtime settings. Every field can be overridden with APPSD_<FIELD>,
    e.g. APPSD_DATA_DIR=/var/lib/appsd or APPSD_LOCAL_PORT=8443.
    """

    data_dir: Path = Field(default_factory=lambda: _core_root() / "data" / "apps")
    log_dir: Path = Path("logs")

    # Origin apps are served from on the device
    local_domain: str = "local"
    local_port: int = 4443

    download_timeout: float = 20.0
    # 0 disables the periodic check
    update_check_interval: int = 6 * 60 * 60

    preinstalled_path: Path = Field(default_factory=_default_preinstalled_path)
    max_events: int = 100

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "AppsSettings":
        env = os.environ if environ is None else environ
        overrides = {}
        for field in cls.model_fields:
            key = f"{ENV_PREFIX}{field.upper()}"
            if key in env:
                overrides[field] = env[key]
        if overrides:
            logger.info(f"Settings overridden from environment: {sorted(overrides)}")
        return cls.model_validate(overrides)


_settings: AppsSettings | None = None


def get_settings() -> AppsSettings:
    global _settings
    if _settings is None:
        _settings = AppsSettings.from_env()
    return _settings
