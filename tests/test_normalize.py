import pytest

from backend.app.apps.errors import InvalidManifestError
from backend.app.apps.normalize import (
    normalize_app_name,
    packaged_manifest_url,
    pwa_manifest_url,
    resolve_package_url,
)


@pytest.mark.parametrize(
    "raw,expected",
    [
        ("ciautotest", "ciautotest"),
        ("CI AutoTest", "ci-autotest"),
        ("hello_pwa!", "hello-pwa"),
    ],
)
def test_normalize_app_name(raw, expected):
    assert normalize_app_name(raw) == expected


@pytest.mark.parametrize("raw", ["", "!!!", "Events", "install", "install-pwa"])
def test_unusable_names_are_rejected(raw):
    with pytest.raises(InvalidManifestError):
        normalize_app_name(raw)


def test_derived_urls():
    assert packaged_manifest_url("ciautotest", "local", 4443) == "https://ciautotest.local:4443/manifest.webapp"
    assert pwa_manifest_url("hellopwa", "local", 4443) == "https://cached.local:4443/hellopwa/manifest.webapp"
    assert (
        resolve_package_url("http://127.0.0.1:8081/tests/fixtures/packaged_app_manifest.json", "ciautotest.zip")
        == "http://127.0.0.1:8081/tests/fixtures/ciautotest.zip"
    )
