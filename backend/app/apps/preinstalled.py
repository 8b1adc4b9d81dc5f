from __future__ import annotations

from pathlib import Path
from typing import List

import json
import logging

from pydantic import ValidationError

from .lifecycle import AppStatus, InstallState, UpdateState
from .models import AppRecord, PreinstalledList, RegistryEntry
from .registry import AppRegistry

logger = logging.getLogger("appsd.preinstalled")


def load_preinstalled(path: Path) -> PreinstalledList:
    """
    Read webapps.json.

    - A missing file is not an error: there are simply no preinstalled apps.
    - Invalid JSON / schema errors are raised so startup reports them.
    """
    if not path.exists():
        logger.warning("Preinstalled apps file does not exist: %s", path)
        return PreinstalledList()

    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as e:
        logger.exception(f"Invalid JSON in {path}")
        raise ValueError(f"Invalid JSON in {path}: {e}")

    try:
        return PreinstalledList.model_validate(raw)
    except ValidationError as e:
        logger.error(f"Invalid preinstalled apps list in {path}: {e}")
        raise ValueError(f"Invalid preinstalled apps list in {path}: {e}")


def seed_preinstalled(registry: AppRegistry, path: Path) -> List[str]:
    """
    Register every listed app not already in the registry, in file order.
    Apps the user uninstalled stay uninstalled.
    Returns the names that were added. Duplicates in the file are skipped.
    """
    listing = load_preinstalled(path)
    added: List[str] = []

    for app in listing.apps:
        if app.name in registry:
            logger.debug("Preinstalled app '%s' already registered", app.name)
            continue
        if registry.was_removed(app.name):
            logger.debug("Preinstalled app '%s' was uninstalled; not seeding it", app.name)
            continue

        entry = RegistryEntry(
            record=AppRecord(
                name=app.name,
                installState=InstallState.INSTALLED,
                manifestUrl=app.manifestUrl,
                status=AppStatus.ENABLED,
                updateState=UpdateState.IDLE,
                updateUrl=app.updateUrl,
                allowedAutoDownload=False,
            ),
            kind="preinstalled",
            version=app.version,
        )
        registry.upsert(entry)
        added.append(app.name)
        logger.info("Registered preinstalled app '%s'", app.name)

    return added
