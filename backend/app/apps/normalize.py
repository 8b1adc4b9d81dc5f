from __future__ import annotations
import logging
import re
logger = logging.getLogger("appsd.normalize")

from urllib.parse import urljoin, urlparse

from .errors import InvalidManifestError

_NAME_RE = re.compile(r"^[a-z0-9][a-z0-9-]*$")

# fixed segments under /api/apps that an app name would collide with
RESERVED_NAMES = frozenset({"events", "install", "install-pwa"})


def normalize_app_name(raw: str) -> str:
    """
    Turn a manifest name into the registry key: lowercase, spaces and
    underscores become '-', anything else outside [a-z0-9-] is dropped.
    "CI AutoTest" -> "ci-autotest", "hellopwa" -> "hellopwa".
    """
    name = raw.strip().lower()
    name = re.sub(r"[\s_]+", "-", name)
    name = re.sub(r"[^a-z0-9-]", "", name).strip("-")
    if not name or not _NAME_RE.match(name):
        logger.error(f"Cannot derive an app name from {raw!r}")
        raise InvalidManifestError(f"Invalid app name in manifest: {raw!r}")
    if name in RESERVED_NAMES:
        logger.error(f"App name {name!r} is reserved")
        raise InvalidManifestError(f"App name {name!r} is reserved")
    return name


def require_http_url(url: str) -> str:
    parsed = urlparse(url)
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        raise InvalidManifestError(f"Not an http(s) URL: {url}")
    return url


def resolve_package_url(update_url: str, package_path: str) -> str:
    """package_path may be absolute or relative to the mini-manifest URL."""
    return require_http_url(urljoin(update_url, package_path))


def packaged_manifest_url(name: str, domain: str, port: int) -> str:
    return f"https://{name}.{domain}:{port}/manifest.webapp"


def pwa_manifest_url(name: str, domain: str, port: int) -> str:
    return f"https://cached.{domain}:{port}/{name}/manifest.webapp"
