from __future__ import annotations

import logging
logger = logging.getLogger("appsd.installer")

import json
import shutil
import tempfile
import zipfile
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Tuple

from pydantic import ValidationError

from .errors import DownloadFailedError, InvalidManifestError
from .manifests import ManifestFetcher
from .models import WebAppManifest
from .normalize import normalize_app_name

MANIFEST_NAME = "manifest.webapp"


def _find_manifest(root: Path) -> Tuple[Path | None, Path | None]:
    """
    Find manifest.webapp in an unpacked package.

    Returns (manifest_path, app_root_dir).
    - app_root_dir is the folder that becomes <apps_dir>/<name>.
    """
    # Case 1: manifest at root
    direct_manifest = root / MANIFEST_NAME
    if direct_manifest.exists():
        return direct_manifest, root

    # Case 2: single top-level directory with the manifest inside
    children = [p for p in root.iterdir() if p.is_dir()]
    if len(children) == 1:
        candidate = children[0] / MANIFEST_NAME
        if candidate.exists():
            return candidate, children[0]

    return None, None


def _safe_extract(zip_path: Path, dest: Path) -> None:
    with zipfile.ZipFile(zip_path, "r") as zf:
        root = dest.resolve()
        for member in zf.namelist():
            target = (dest / member).resolve()
            if root != target and root not in target.parents:
                raise InvalidManifestError(f"Package entry escapes the install dir: {member}")
        zf.extractall(dest)


def read_manifest(app_root: Path) -> WebAppManifest:
    manifest_path = app_root / MANIFEST_NAME
    if not manifest_path.exists():
        raise InvalidManifestError(f"{MANIFEST_NAME} not found at {manifest_path}")
    try:
        raw = json.loads(manifest_path.read_text(encoding="utf-8"))
        return WebAppManifest.model_validate(raw)
    except (json.JSONDecodeError, ValidationError) as e:
        raise InvalidManifestError(f"{MANIFEST_NAME} is invalid: {e}")


@dataclass
class StagedPackage:
    name: str
    path: Path
    manifest: WebAppManifest
    tmp_dir: Path


class PackageInstaller:
    """
    Puts app payloads on disk.

    Packaged apps: <data_dir>/installed/<name>/ (unpacked zip).
    PWAs:          <data_dir>/pwa/<name>/manifest.webapp (cached web manifest).

    Packages go through two steps so callers can report progress in between:
    stage_package() downloads and validates into a temp dir, activate() swaps
    the staged payload into place. discard() drops a staged payload.
    """

    def __init__(self, data_dir: Path, fetcher: ManifestFetcher):
        self.apps_dir = data_dir / "installed"
        self.pwa_dir = data_dir / "pwa"
        self.fetcher = fetcher

    def stage_package(self, name: str, package_url: str) -> StagedPackage:
        logger.info(f"Staging package for '{name}' from {package_url}")
        tmp_dir = Path(tempfile.mkdtemp(prefix=f"appsd-install-{name}-"))
        zip_path = tmp_dir / "package.zip"

        try:
            self.fetcher.download(package_url, zip_path)

            extract_dir = tmp_dir / "unpacked"
            extract_dir.mkdir()
            try:
                _safe_extract(zip_path, extract_dir)
            except zipfile.BadZipFile:
                raise DownloadFailedError(package_url, "package is not a valid zip archive")

            manifest_path, app_root = _find_manifest(extract_dir)
            if manifest_path is None or app_root is None:
                raise InvalidManifestError(
                    f"Could not find {MANIFEST_NAME} in package. "
                    "Expected at root or inside a single top-level folder."
                )

            manifest = read_manifest(app_root)
            if normalize_app_name(manifest.name) != name:
                raise InvalidManifestError(
                    f"Package manifest name {manifest.name!r} does not match app '{name}'"
                )
        except Exception:
            shutil.rmtree(tmp_dir, ignore_errors=True)
            raise

        return StagedPackage(name=name, path=app_root, manifest=manifest, tmp_dir=tmp_dir)

    def activate(self, staged: StagedPackage) -> Path:
        """
        Move a staged payload to <apps_dir>/<name>. An existing install is
        replaced only once the new payload sits next to it.
        """
        self.apps_dir.mkdir(parents=True, exist_ok=True)
        name = staged.name
        target_dir = self.apps_dir / name
        staging_dir = self.apps_dir / f".{name}.new"
        old_dir = self.apps_dir / f".{name}.old"

        try:
            shutil.rmtree(staging_dir, ignore_errors=True)
            shutil.rmtree(old_dir, ignore_errors=True)
            shutil.move(str(staged.path), str(staging_dir))
            if target_dir.exists():
                target_dir.rename(old_dir)
            staging_dir.rename(target_dir)
        except OSError:
            logger.exception(f"Failed to activate package for '{name}'")
            if old_dir.exists() and not target_dir.exists():
                old_dir.rename(target_dir)
            shutil.rmtree(staging_dir, ignore_errors=True)
            raise
        finally:
            self.discard(staged)
        shutil.rmtree(old_dir, ignore_errors=True)

        logger.info(f"Installed package for '{name}' at {target_dir}")
        return target_dir

    def discard(self, staged: StagedPackage) -> None:
        shutil.rmtree(staged.tmp_dir, ignore_errors=True)

    def cache_pwa(self, name: str, manifest: WebAppManifest) -> Path:
        target_dir = self.pwa_dir / name
        target_dir.mkdir(parents=True, exist_ok=True)
        path = target_dir / MANIFEST_NAME
        tmp = path.with_suffix(".webapp.tmp")
        tmp.write_text(manifest.model_dump_json(indent=2, exclude_none=True), encoding="utf-8")
        tmp.replace(path)
        logger.info(f"Cached PWA manifest for '{name}' at {path}")
        return target_dir

    def remove(self, install_path: Optional[str]) -> List[str]:
        """
        Remove an app payload. Returns warnings; never raises for a missing dir.
        Paths outside the data dirs are left alone.
        """
        warnings: List[str] = []
        if not install_path:
            return warnings

        path = Path(install_path)
        allowed = (self.apps_dir.resolve(), self.pwa_dir.resolve())
        if not any(root in path.resolve().parents for root in allowed):
            logger.warning("Refusing to remove path outside data dirs: %s", path)
            warnings.append(f"Install path is outside the data dir (not removed): {path}")
            return warnings

        try:
            if path.exists():
                shutil.rmtree(path)
                logger.info("Removed app dir: %s", path)
            else:
                warnings.append(f"App dir not found: {path}")
                logger.warning("App dir not found: %s", path)
        except OSError as e:
            logger.exception("Failed removing app dir: %s", path)
            warnings.append(f"Failed removing app dir: {path} ({e})")
        return warnings
