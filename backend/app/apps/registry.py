from __future__ import annotations

import json
import logging
import threading
from pathlib import Path
from typing import Dict, FrozenSet, List, Optional, Tuple

from pydantic import BaseModel, Field, ValidationError

from .errors import AppNotFoundError
from .models import AppRecord, RegistryEntry, _utcnow_iso

logger = logging.getLogger("appsd.registry")


class RegistryDocument(BaseModel):
    version: int = 1
    apps: List[RegistryEntry] = Field(default_factory=list)
    # names uninstalled by the user; preinstalled seeding skips them
    removed: List[str] = Field(default_factory=list)


class AppRegistry:
    """
    Ordered, persisted store of RegistryEntry objects keyed by app name.

    Copy-on-write: every mutation builds a new dict (insertion order kept) and
    swaps `self._entries` under the write lock. Readers grab whatever dict is
    current without locking, so polling never waits on an install or update,
    and callers always get copies. Re-fetch to observe later writes.
    """

    def __init__(self, path: Optional[Path] = None):
        self.path = path
        self._write_lock = threading.Lock()
        self._entries: Dict[str, RegistryEntry] = {}
        self._removed: FrozenSet[str] = frozenset()
        if self.path is not None:
            self._entries, self._removed = self._load()

    # ----------------------------
    # Persistence
    # ----------------------------

    def _load(self) -> Tuple[Dict[str, RegistryEntry], FrozenSet[str]]:
        assert self.path is not None
        if not self.path.exists():
            logger.info(f"No registry file at {self.path}; starting empty")
            return {}, frozenset()

        try:
            raw = json.loads(self.path.read_text(encoding="utf-8"))
            doc = RegistryDocument.model_validate(raw)
        except (json.JSONDecodeError, ValidationError) as e:
            logger.error(f"Failed to load registry from {self.path}: {e}")
            raise RuntimeError(f"Failed to load registry: {e}")

        entries: Dict[str, RegistryEntry] = {}
        for entry in doc.apps:
            if entry.name in entries:
                logger.error(f"Duplicate app '{entry.name}' in {self.path}; keeping first")
                continue
            entries[entry.name] = entry
        logger.info(f"Loaded {len(entries)} app(s) from {self.path}")
        return entries, frozenset(doc.removed)

    def _save(self, entries: Dict[str, RegistryEntry], removed: FrozenSet[str]) -> None:
        if self.path is None:
            return
        self.path.parent.mkdir(parents=True, exist_ok=True)
        doc = RegistryDocument(apps=list(entries.values()), removed=sorted(removed))
        tmp = self.path.with_suffix(".json.tmp")
        tmp.write_text(doc.model_dump_json(indent=2), encoding="utf-8")
        tmp.replace(self.path)

    # ----------------------------
    # Reads (lock-free)
    # ----------------------------

    def __contains__(self, name: str) -> bool:
        return name in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def get_entry(self, name: str) -> RegistryEntry:
        entry = self._entries.get(name)
        if entry is None:
            raise AppNotFoundError(name)
        return entry.model_copy(deep=True)

    def find_entry(self, name: str) -> Optional[RegistryEntry]:
        entry = self._entries.get(name)
        return entry.model_copy(deep=True) if entry is not None else None

    def get(self, name: str) -> AppRecord:
        return self.get_entry(name).record

    def get_all(self) -> List[AppRecord]:
        entries = self._entries
        return [e.record.model_copy() for e in entries.values()]

    def entries(self) -> List[RegistryEntry]:
        return [e.model_copy(deep=True) for e in self._entries.values()]

    def was_removed(self, name: str) -> bool:
        """True if the app was uninstalled and has not been installed again since."""
        return name in self._removed

    # ----------------------------
    # Writes
    # ----------------------------

    def _commit(self, entry: RegistryEntry) -> AppRecord:
        # caller holds the write lock
        stored = entry.model_copy(deep=True)
        stored.updated_at = _utcnow_iso()
        new_entries = dict(self._entries)
        new_entries[stored.name] = stored
        new_removed = self._removed - {stored.name}
        self._save(new_entries, new_removed)
        self._entries = new_entries
        self._removed = new_removed
        logger.debug(
            f"Committed app '{stored.name}': installState={int(stored.record.installState)} "
            f"updateState={int(stored.record.updateState)} status={int(stored.record.status)}"
        )
        return stored.record.model_copy()

    def upsert(self, entry: RegistryEntry) -> AppRecord:
        """Replace by name (keeping its position) or append."""
        with self._write_lock:
            current = self._entries.get(entry.name)
            if current is not None and current.record.manifestUrl != entry.record.manifestUrl:
                raise ValueError(f"manifestUrl of app '{entry.name}' cannot be changed")
            return self._commit(entry)

    def update_record(self, name: str, **changes) -> AppRecord:
        """Apply field changes to one record (manifestUrl excluded)."""
        if "manifestUrl" in changes or "name" in changes:
            raise ValueError("name and manifestUrl cannot be changed")
        with self._write_lock:
            current = self._entries.get(name)
            if current is None:
                raise AppNotFoundError(name)
            entry = current.model_copy(deep=True)
            entry.record = entry.record.model_copy(update=changes)
            return self._commit(entry)

    def remove(self, name: str, *, remember: bool = False) -> RegistryEntry:
        """
        Drop an app. With remember=True the name is kept in the removed list
        so preinstalled seeding does not bring it back on the next start.
        """
        with self._write_lock:
            if name not in self._entries:
                raise AppNotFoundError(name)
            new_entries = dict(self._entries)
            removed = new_entries.pop(name)
            new_removed = (self._removed | {name}) if remember else self._removed
            self._save(new_entries, new_removed)
            self._entries = new_entries
            self._removed = new_removed
            logger.info(f"Removed app '{name}' from registry")
            return removed
