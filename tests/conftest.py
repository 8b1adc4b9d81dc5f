from __future__ import annotations

import io
import json
import zipfile
from typing import Dict, List, Optional, Union

import pytest
import requests
from requests.structures import CaseInsensitiveDict

from backend.app.apps.service import AppsService
from backend.app.config import AppsSettings

from tests.fixtures.results import CIAUTOTEST_UPDATE_URL, HELLOPWA_URL

CIAUTOTEST_PACKAGE_URL = "http://127.0.0.1:8081/tests/fixtures/ciautotest.zip"


# ---------------------------------------------------------------------------
# Fake HTTP
# ---------------------------------------------------------------------------


class FakeResponse:
    def __init__(self, status_code: int = 200, body: bytes = b"", headers: Optional[dict] = None):
        self.status_code = status_code
        self.content = body
        self.headers = CaseInsensitiveDict(headers or {})

    def iter_content(self, chunk_size: int = 1):
        for i in range(0, len(self.content), chunk_size):
            yield self.content[i : i + chunk_size]

    def json(self):
        return json.loads(self.content)

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False


Route = Union[FakeResponse, Exception]


class FakeSession:
    """Stands in for requests.Session: serves canned responses per URL."""

    def __init__(self):
        self.routes: Dict[str, Route] = {}
        self.calls: List[dict] = []

    def serve_json(self, url: str, data: dict, etag: Optional[str] = None) -> None:
        headers = {"ETag": etag} if etag else {}
        self.routes[url] = FakeResponse(200, json.dumps(data).encode("utf-8"), headers)

    def serve_bytes(self, url: str, body: bytes) -> None:
        self.routes[url] = FakeResponse(200, body)

    def fail(self, url: str, status_code: int = 0) -> None:
        if status_code:
            self.routes[url] = FakeResponse(status_code, b"")
        else:
            self.routes[url] = requests.ConnectionError(f"connection refused: {url}")

    def get(self, url, headers=None, timeout=None, stream=False):
        self.calls.append({"url": url, "headers": dict(headers or {}), "stream": stream})
        route = self.routes.get(url)
        if route is None:
            return FakeResponse(404, b"")
        if isinstance(route, Exception):
            raise route
        etag = route.headers.get("ETag")
        if etag and (headers or {}).get("If-None-Match") == etag:
            return FakeResponse(304, b"")
        return route


def make_package(name: str = "ciautotest", version: str = "1.0.0", *, nested: bool = False) -> bytes:
    manifest = {"name": name, "version": version, "launch_path": "/index.html"}
    prefix = f"{name}/" if nested else ""
    buf = io.BytesIO()
    with zipfile.ZipFile(buf, "w") as zf:
        zf.writestr(prefix + "manifest.webapp", json.dumps(manifest))
        zf.writestr(prefix + "index.html", "<html><body>ciautotest</body></html>")
    return buf.getvalue()


def serve_ciautotest(session: FakeSession, version: str = "1.0.0") -> None:
    session.serve_json(
        CIAUTOTEST_UPDATE_URL,
        {"name": "ciautotest", "version": version, "package_path": "ciautotest.zip"},
    )
    session.serve_bytes(CIAUTOTEST_PACKAGE_URL, make_package(version=version))


def serve_hellopwa(session: FakeSession, version: Optional[str] = None) -> None:
    manifest = {"name": "hellopwa", "start_url": "/index.html", "display": "standalone"}
    if version:
        manifest["version"] = version
    session.serve_json(HELLOPWA_URL, manifest)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def settings(tmp_path) -> AppsSettings:
    return AppsSettings(
        data_dir=tmp_path / "data",
        log_dir=tmp_path / "logs",
        update_check_interval=0,
    )


@pytest.fixture
def session() -> FakeSession:
    return FakeSession()


@pytest.fixture
def service(settings, session) -> AppsService:
    svc = AppsService(settings)
    svc.fetcher.session = session
    svc.startup()
    return svc


def dump(records) -> list:
    return [r.model_dump(mode="json") for r in records]
