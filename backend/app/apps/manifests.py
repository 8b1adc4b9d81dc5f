from __future__ import annotations

import hashlib
import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional, Tuple

import requests
from pydantic import ValidationError

from .errors import DownloadFailedError, InvalidManifestError
from .models import UpdateManifest, WebAppManifest, _utcnow_iso

logger = logging.getLogger("appsd.manifests")

CHUNK_SIZE = 64 * 1024


@dataclass
class FetchResult:
    body: bytes
    changed: bool = True
    status_code: int = 200


class ManifestFetcher:
    """
    Fetch manifests and packages over HTTP.

    Manifest bodies are cached per URL together with ETag / Last-Modified so
    the next fetch is conditional; a 304 hands back the cached body with
    changed=False.
    """

    def __init__(
        self,
        cache_dir: Path,
        *,
        session: Optional[requests.Session] = None,
        timeout: float = 20.0,
    ):
        self.cache_dir = cache_dir
        self.session = session or requests.Session()
        self.timeout = timeout

    # ----------------------------
    # Cache
    # ----------------------------

    def _key(self, url: str) -> str:
        return hashlib.sha1(url.encode("utf-8")).hexdigest()

    def _body_path(self, url: str) -> Path:
        return self.cache_dir / f"{self._key(url)}.json"

    def _headers_path(self, url: str) -> Path:
        return self.cache_dir / f"{self._key(url)}.headers.json"

    def _load_cached_headers(self, url: str) -> dict:
        p = self._headers_path(url)
        if not p.exists():
            return {}
        try:
            return json.loads(p.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError):
            logger.warning(f"Ignoring unreadable header cache {p}")
            return {}

    def _write_atomic(self, path: Path, data: bytes) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp = path.with_suffix(path.suffix + ".tmp")
        tmp.write_bytes(data)
        tmp.replace(path)

    def forget(self, url: str) -> None:
        for p in (self._body_path(url), self._headers_path(url)):
            if p.exists():
                p.unlink()

    # ----------------------------
    # HTTP
    # ----------------------------

    def fetch(self, url: str, *, conditional: bool = True) -> FetchResult:
        headers = {}
        cached_headers = self._load_cached_headers(url) if conditional else {}
        body_path = self._body_path(url)
        if cached_headers and body_path.exists():
            if cached_headers.get("etag"):
                headers["If-None-Match"] = cached_headers["etag"]
            if cached_headers.get("last_modified"):
                headers["If-Modified-Since"] = cached_headers["last_modified"]

        logger.debug(f"GET {url} conditional={bool(headers)}")
        try:
            resp = self.session.get(url, headers=headers, timeout=self.timeout)
        except requests.RequestException as e:
            logger.warning(f"Fetch failed for {url}: {e}")
            raise DownloadFailedError(url, str(e))

        if resp.status_code == 304 and body_path.exists():
            logger.debug(f"{url} not modified")
            return FetchResult(body=body_path.read_bytes(), changed=False, status_code=304)

        if not 200 <= resp.status_code < 300:
            logger.warning(f"Fetch failed for {url}: HTTP {resp.status_code}")
            raise DownloadFailedError(url, f"HTTP {resp.status_code}", resp.status_code)

        body = resp.content
        self._write_atomic(body_path, body)
        new_headers = {"last_fetched_at": _utcnow_iso()}
        if resp.headers.get("ETag"):
            new_headers["etag"] = resp.headers.get("ETag")
        if resp.headers.get("Last-Modified"):
            new_headers["last_modified"] = resp.headers.get("Last-Modified")
        self._write_atomic(self._headers_path(url), json.dumps(new_headers, indent=2).encode("utf-8"))

        return FetchResult(body=body, changed=True, status_code=resp.status_code)

    def _parse_json(self, url: str, body: bytes) -> Any:
        try:
            return json.loads(body.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise InvalidManifestError(f"Manifest at {url} is not valid JSON: {e}")

    def fetch_update_manifest(self, url: str, *, conditional: bool = True) -> Tuple[UpdateManifest, bool]:
        result = self.fetch(url, conditional=conditional)
        data = self._parse_json(url, result.body)
        try:
            manifest = UpdateManifest.model_validate(data)
        except ValidationError as e:
            raise InvalidManifestError(f"Update manifest at {url} is invalid: {e}")
        return manifest, result.changed

    def fetch_web_manifest(self, url: str, *, conditional: bool = True) -> Tuple[WebAppManifest, bool]:
        result = self.fetch(url, conditional=conditional)
        data = self._parse_json(url, result.body)
        try:
            manifest = WebAppManifest.model_validate(data)
        except ValidationError as e:
            raise InvalidManifestError(f"Web manifest at {url} is invalid: {e}")
        return manifest, result.changed

    def download(self, url: str, dest: Path) -> int:
        """Stream url into dest. Returns the number of bytes written."""
        logger.info(f"Downloading {url} -> {dest}")
        dest.parent.mkdir(parents=True, exist_ok=True)
        written = 0
        try:
            with self.session.get(url, stream=True, timeout=self.timeout) as resp:
                if not 200 <= resp.status_code < 300:
                    raise DownloadFailedError(url, f"HTTP {resp.status_code}", resp.status_code)
                with dest.open("wb") as f:
                    for chunk in resp.iter_content(chunk_size=CHUNK_SIZE):
                        if not chunk:
                            continue
                        f.write(chunk)
                        written += len(chunk)
        except requests.RequestException as e:
            logger.warning(f"Download failed for {url}: {e}")
            raise DownloadFailedError(url, str(e))

        if written == 0:
            raise DownloadFailedError(url, "empty download")
        logger.debug(f"Downloaded {written} bytes from {url}")
        return written
