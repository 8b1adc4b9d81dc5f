from __future__ import annotations
import logging
logger = logging.getLogger("appsd.service")

import asyncio
import hashlib
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, List, Optional

from ..config import AppsSettings
from ..logging_config import bind_app_logger
from .errors import (
    AppAlreadyInstalledError,
    AppConflictError,
    AppsError,
    DownloadFailedError,
    InvalidManifestError,
    NoUpdateSourceError,
)
from .events import AppsEventBus
from .installer import PackageInstaller
from .lifecycle import (
    AppStatus,
    InstallState,
    UpdateState,
    advance_install,
    advance_update,
)
from .locks import OperationLocks
from .manifests import ManifestFetcher
from .models import (
    AppKind,
    AppRecord,
    OperationError,
    OperationResult,
    RegistryEntry,
    WebAppManifest,
    _utcnow_iso,
)
from .normalize import (
    normalize_app_name,
    packaged_manifest_url,
    pwa_manifest_url,
    require_http_url,
    resolve_package_url,
)
from .preinstalled import seed_preinstalled
from .registry import AppRegistry


@dataclass
class _Prepared:
    """A downloaded payload waiting to be put in place."""

    version: str
    commit: Callable[[], Path]
    discard: Callable[[], None]


def _pwa_version(manifest: WebAppManifest) -> str:
    if manifest.version:
        return manifest.version
    # PWAs rarely carry a version; fall back to a content hash
    body = manifest.model_dump_json(exclude_none=True).encode("utf-8")
    return "sha256:" + hashlib.sha256(body).hexdigest()[:16]


class AppsService:
    """
    Application registry: install, update, uninstall and query apps.

    Install machine: PENDING -> INSTALLING -> INSTALLED.
    Update machine:  IDLE -> AVAILABLE -> DOWNLOADING -> UPDATING -> IDLE.

    Download failures are reported in the returned OperationResult after the
    record has been put back the way it was before the call.
    """

    def __init__(
        self,
        settings: AppsSettings,
        *,
        registry: Optional[AppRegistry] = None,
        fetcher: Optional[ManifestFetcher] = None,
        installer: Optional[PackageInstaller] = None,
        events: Optional[AppsEventBus] = None,
        locks: Optional[OperationLocks] = None,
    ):
        self.settings = settings
        self.registry = registry or AppRegistry(settings.data_dir / "registry.json")
        self.fetcher = fetcher or ManifestFetcher(
            settings.data_dir / "manifest_cache",
            timeout=settings.download_timeout,
        )
        self.installer = installer or PackageInstaller(settings.data_dir, self.fetcher)
        self.events = events or AppsEventBus(max_events=settings.max_events)
        self.locks = locks or OperationLocks()

    # ----------------------------
    # Startup
    # ----------------------------

    def startup(self) -> None:
        self.recover_interrupted()
        added = seed_preinstalled(self.registry, self.settings.preinstalled_path)
        logger.info(f"Registry ready: {len(self.registry)} app(s), {len(added)} preinstalled added")

    def recover_interrupted(self) -> List[str]:
        """
        Put records left in a transient state by a crash back into a steady one.

        - install never finished: dropped if nothing was ever installed,
          otherwise back to INSTALLED.
        - update never finished: back to AVAILABLE if a newer version was
          known, else IDLE.
        """
        recovered: List[str] = []
        for entry in self.registry.entries():
            record = entry.record
            changes = {}

            if record.installState != InstallState.INSTALLED:
                if entry.version is None and entry.install_path is None and entry.kind != "preinstalled":
                    logger.warning(f"Dropping half-installed app '{entry.name}'")
                    self.registry.remove(entry.name)
                    recovered.append(entry.name)
                    continue
                changes["installState"] = InstallState.INSTALLED

            if record.updateState in (UpdateState.DOWNLOADING, UpdateState.UPDATING):
                changes["updateState"] = (
                    UpdateState.AVAILABLE if entry.pending_version else UpdateState.IDLE
                )

            if changes:
                logger.warning(f"Recovering interrupted operation on '{entry.name}': {changes}")
                self.registry.update_record(entry.name, **changes)
                recovered.append(entry.name)

        return recovered

    # ----------------------------
    # Queries
    # ----------------------------

    def get(self, name: str) -> AppRecord:
        return self.registry.get(name)

    def get_all(self) -> List[AppRecord]:
        return self.registry.get_all()

    # ----------------------------
    # Helpers
    # ----------------------------

    def _failed(self, name: Optional[str], exc: AppsError, record: Optional[AppRecord]) -> OperationResult:
        error = OperationError(code=exc.code, message=str(exc))
        if name is not None:
            bind_app_logger(name).warning(f"{exc.code}: {exc}")
            self.events.emit("download-failed", name, record, error)
        return OperationResult(status="failed", record=record, error=error)

    def _set(self, entry: RegistryEntry, **changes) -> AppRecord:
        entry.record = entry.record.model_copy(update=changes)
        return self.registry.upsert(entry)

    def _restore(
        self, name: str, before: Optional[RegistryEntry], was_removed: bool = False
    ) -> Optional[AppRecord]:
        if before is None:
            if name in self.registry:
                self.registry.remove(name, remember=was_removed)
            return None
        return self.registry.upsert(before)

    def _prepare_packaged(self, name: str, update_url: str, mini=None) -> _Prepared:
        if mini is None:
            mini, _ = self.fetcher.fetch_update_manifest(update_url)
            if normalize_app_name(mini.name) != name:
                raise InvalidManifestError(
                    f"Update manifest at {update_url} is for {mini.name!r}, not '{name}'"
                )
        if not mini.package_path:
            raise InvalidManifestError(f"Update manifest at {update_url} has no package_path")

        package_url = resolve_package_url(update_url, mini.package_path)
        staged = self.installer.stage_package(name, package_url)
        version = mini.version or staged.manifest.version or ""
        return _Prepared(
            version=version,
            commit=lambda: self.installer.activate(staged),
            discard=lambda: self.installer.discard(staged),
        )

    def _prepare_pwa(self, name: str, url: str, manifest: Optional[WebAppManifest] = None) -> _Prepared:
        if manifest is None:
            manifest, _ = self.fetcher.fetch_web_manifest(url)
            if normalize_app_name(manifest.name) != name:
                raise InvalidManifestError(f"Web manifest at {url} is for {manifest.name!r}, not '{name}'")
        return _Prepared(
            version=_pwa_version(manifest),
            commit=lambda: self.installer.cache_pwa(name, manifest),
            discard=lambda: None,
        )

    def _prepare_for(self, entry: RegistryEntry) -> _Prepared:
        url = entry.record.updateUrl
        assert url is not None
        if entry.kind == "pwa":
            return self._prepare_pwa(entry.name, url)
        return self._prepare_packaged(entry.name, url)

    def _remote_version(self, entry: RegistryEntry) -> str:
        url = entry.record.updateUrl
        assert url is not None
        if entry.kind == "pwa":
            manifest, _ = self.fetcher.fetch_web_manifest(url)
            return _pwa_version(manifest)
        mini, _ = self.fetcher.fetch_update_manifest(url)
        return mini.version

    def _require_update_source(self, name: str) -> RegistryEntry:
        entry = self.registry.get_entry(name)
        if not entry.record.has_update_source:
            logger.info(f"App '{name}' has no update source")
            raise NoUpdateSourceError(name)
        return entry

    # ----------------------------
    # Install
    # ----------------------------

    def install(self, update_url: str, force: bool = False) -> OperationResult:
        """Install a packaged app from its mini-manifest URL."""
        require_http_url(update_url)
        logger.info(f"Install requested from {update_url} (force={force})")

        try:
            mini, _ = self.fetcher.fetch_update_manifest(update_url, conditional=False)
            name = normalize_app_name(mini.name)
        except (DownloadFailedError, InvalidManifestError) as e:
            logger.warning(f"Could not use update manifest {update_url}: {e}")
            return self._failed(None, e, None)

        manifest_url = packaged_manifest_url(name, self.settings.local_domain, self.settings.local_port)
        return self._run_install(
            name,
            manifest_url=manifest_url,
            update_url=update_url,
            kind="packaged",
            force=force,
            prepare=lambda: self._prepare_packaged(name, update_url, mini),
        )

    def install_pwa(self, url: str, force: bool = False) -> OperationResult:
        """Install a PWA from its web manifest URL."""
        require_http_url(url)
        logger.info(f"PWA install requested from {url} (force={force})")

        try:
            manifest, _ = self.fetcher.fetch_web_manifest(url, conditional=False)
            name = normalize_app_name(manifest.name)
        except (DownloadFailedError, InvalidManifestError) as e:
            logger.warning(f"Could not use web manifest {url}: {e}")
            return self._failed(None, e, None)

        manifest_url = pwa_manifest_url(name, self.settings.local_domain, self.settings.local_port)
        return self._run_install(
            name,
            manifest_url=manifest_url,
            update_url=url,
            kind="pwa",
            force=force,
            prepare=lambda: self._prepare_pwa(name, url, manifest),
        )

    def _run_install(
        self,
        name: str,
        *,
        manifest_url: str,
        update_url: str,
        kind: AppKind,
        force: bool,
        prepare: Callable[[], _Prepared],
    ) -> OperationResult:
        app_log = bind_app_logger(name)

        with self.locks.hold(name):
            before = self.registry.find_entry(name)
            was_removed = self.registry.was_removed(name)
            if before is not None:
                if not force:
                    raise AppAlreadyInstalledError(name)
                if before.record.manifestUrl != manifest_url:
                    raise InvalidManifestError(
                        f"App '{name}' is registered with {before.record.manifestUrl}, "
                        f"refusing to reinstall it as {manifest_url}"
                    )
                entry = before.model_copy(deep=True)
                pending = self._set(
                    entry,
                    installState=advance_install(entry.record.installState, InstallState.PENDING),
                )
            else:
                entry = RegistryEntry(
                    record=AppRecord(
                        name=name,
                        installState=InstallState.PENDING,
                        manifestUrl=manifest_url,
                        updateUrl=update_url,
                    ),
                    kind=kind,
                )
                pending = self.registry.upsert(entry)

            app_log.info(f"Installing '{name}' ({kind}) from {update_url}")
            self.events.emit("installing", name, pending)
            self._set(entry, installState=advance_install(InstallState.PENDING, InstallState.INSTALLING))

            try:
                prepared = prepare()
            except DownloadFailedError as e:
                restored = self._restore(name, before, was_removed)
                return self._failed(name, e, restored)
            except Exception:
                self._restore(name, before, was_removed)
                raise

            try:
                install_path = prepared.commit()
            except Exception:
                prepared.discard()
                self._restore(name, before, was_removed)
                raise

            now = _utcnow_iso()
            entry.kind = kind
            entry.version = prepared.version
            entry.pending_version = None
            entry.install_path = str(install_path)
            entry.installed_at = now
            record = self._set(
                entry,
                installState=advance_install(InstallState.INSTALLING, InstallState.INSTALLED),
                updateState=UpdateState.IDLE,
                updateUrl=update_url,
            )

            app_log.info(f"Installed '{name}' version {prepared.version or '?'} at {install_path}")
            self.events.emit("installed", name, record)
            return OperationResult(status="installed", record=record)

    # ----------------------------
    # Update
    # ----------------------------

    def check_for_update(self, name: str) -> OperationResult:
        """
        Ask the update source for a newer version. Moves updateState to
        AVAILABLE when one exists, and applies it right away when the app
        allows auto download.
        """
        self._require_update_source(name)
        with self.locks.hold(name):
            origin = self.registry.get_entry(name)
            result = self._check_locked(origin)
            if result.status == "update-available" and result.record is not None and result.record.allowedAutoDownload:
                logger.info(f"Auto-downloading update for '{name}'")
                # on failure the app stays AVAILABLE
                return self._apply_locked(name, self.registry.get_entry(name))
            return result

    def update(self, name: str) -> OperationResult:
        """Download and apply an update, checking first if none is known yet."""
        self._require_update_source(name)
        with self.locks.hold(name):
            origin = self.registry.get_entry(name)
            if origin.record.updateState != UpdateState.AVAILABLE:
                result = self._check_locked(origin)
                if result.status != "update-available":
                    return result
            return self._apply_locked(name, origin)

    def _check_locked(self, origin: RegistryEntry) -> OperationResult:
        name = origin.name
        app_log = bind_app_logger(name)
        try:
            remote_version = self._remote_version(origin)
        except DownloadFailedError as e:
            return self._failed(name, e, origin.record)

        if remote_version == (origin.version or ""):
            app_log.debug(f"No update for '{name}' (version {remote_version or '?'})")
            if origin.record.updateState != UpdateState.AVAILABLE:
                return OperationResult(status="no-update", record=origin.record)
            # the advertised update was withdrawn
            entry = origin.model_copy(deep=True)
            entry.pending_version = None
            record = self._set(
                entry,
                updateState=advance_update(UpdateState.AVAILABLE, UpdateState.IDLE),
            )
            return OperationResult(status="no-update", record=record)

        entry = origin.model_copy(deep=True)
        entry.pending_version = remote_version
        if entry.record.updateState == UpdateState.AVAILABLE:
            record = self.registry.upsert(entry)
        else:
            record = self._set(
                entry,
                updateState=advance_update(entry.record.updateState, UpdateState.AVAILABLE),
            )

        app_log.info(f"Update available for '{name}': {origin.version or '?'} -> {remote_version}")
        self.events.emit("update-available", name, record)
        return OperationResult(status="update-available", record=record)

    def _apply_locked(self, name: str, origin: RegistryEntry) -> OperationResult:
        """
        DOWNLOADING -> UPDATING -> IDLE. On failure the entry goes back to
        `origin`, i.e. what it was when the caller's operation started.
        """
        app_log = bind_app_logger(name)
        entry = self.registry.get_entry(name)
        downloading = self._set(
            entry,
            updateState=advance_update(entry.record.updateState, UpdateState.DOWNLOADING),
        )
        app_log.info(f"Downloading update for '{name}'")
        self.events.emit("updating", name, downloading)

        try:
            prepared = self._prepare_for(entry)
        except DownloadFailedError as e:
            restored = self._restore(name, origin)
            return self._failed(name, e, restored)
        except Exception:
            self._restore(name, origin)
            raise

        try:
            self._set(entry, updateState=advance_update(UpdateState.DOWNLOADING, UpdateState.UPDATING))
            install_path = prepared.commit()
        except Exception:
            prepared.discard()
            self._restore(name, origin)
            raise

        entry.version = prepared.version
        entry.pending_version = None
        entry.install_path = str(install_path)
        if entry.kind == "preinstalled":
            # the updated payload now lives in the data dir
            entry.kind = "packaged"
        record = self._set(entry, updateState=advance_update(UpdateState.UPDATING, UpdateState.IDLE))

        app_log.info(f"Updated '{name}' to version {prepared.version or '?'}")
        self.events.emit("updated", name, record)
        return OperationResult(status="updated", record=record)

    def check_all_for_updates(self) -> List[OperationResult]:
        """Check every app that has an update source. Busy or failing apps are skipped."""
        results: List[OperationResult] = []
        for record in self.get_all():
            if not record.has_update_source:
                continue
            try:
                results.append(self.check_for_update(record.name))
            except AppConflictError:
                logger.info(f"Skipping update check for busy app '{record.name}'")
            except AppsError as e:
                logger.warning(f"Update check failed for '{record.name}': {e}")
        return results

    # ----------------------------
    # Uninstall / settings
    # ----------------------------

    def uninstall(self, name: str) -> OperationResult:
        self.registry.get_entry(name)
        with self.locks.hold(name):
            entry = self.registry.remove(name, remember=True)
            warnings = self.installer.remove(entry.install_path)
            for w in warnings:
                logger.warning(w)
            if entry.record.updateUrl:
                self.fetcher.forget(entry.record.updateUrl)

            bind_app_logger(name).info(f"Uninstalled '{name}'")
            self.events.emit("uninstalled", name, entry.record)
            return OperationResult(status="uninstalled", record=entry.record)

    def set_enabled(self, name: str, enabled: bool) -> AppRecord:
        self.registry.get_entry(name)
        status = AppStatus.ENABLED if enabled else AppStatus.DISABLED
        with self.locks.hold(name):
            before = self.registry.get(name)
            if before.status == status:
                return before
            record = self.registry.update_record(name, status=status)
            logger.info(f"App '{name}' status {before.status.name} -> {status.name}")
            self.events.emit("status-changed", name, record)
            return record

    def set_auto_download(self, name: str, allowed: bool) -> AppRecord:
        self.registry.get_entry(name)
        with self.locks.hold(name):
            record = self.registry.update_record(name, allowedAutoDownload=allowed)
            logger.info(f"App '{name}' allowedAutoDownload={allowed}")
            return record


# ----------------------------
# Periodic update check
# ----------------------------

async def _update_check_loop(service: AppsService, interval_seconds: int) -> None:
    while True:
        await asyncio.sleep(interval_seconds)
        try:
            results = await asyncio.to_thread(service.check_all_for_updates)
            available = [r.record.name for r in results if r.status == "update-available" and r.record]
            logger.info(f"Periodic update check done; updates available: {available}")
        except Exception:
            logger.exception("Periodic update check failed")


def start_update_check_task(app, service: AppsService, interval_seconds: int) -> None:
    if interval_seconds <= 0:
        logger.info("Periodic update check disabled")
        return
    task = asyncio.create_task(_update_check_loop(service, interval_seconds))
    app.state.update_check_task = task


async def stop_update_check_task(app) -> None:
    task = getattr(app.state, "update_check_task", None)
    if task is None:
        return
    task.cancel()
    try:
        await task
    except asyncio.CancelledError:
        return
