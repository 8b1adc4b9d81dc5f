import pytest

from backend.app.apps.errors import DownloadFailedError, InvalidManifestError
from backend.app.apps.manifests import ManifestFetcher

from tests.conftest import CIAUTOTEST_PACKAGE_URL, FakeResponse, make_package
from tests.fixtures.results import CIAUTOTEST_UPDATE_URL


@pytest.fixture
def fetcher(tmp_path, session):
    return ManifestFetcher(tmp_path / "cache", session=session)


def test_second_fetch_is_conditional(fetcher, session):
    session.serve_json(CIAUTOTEST_UPDATE_URL, {"name": "ciautotest", "version": "1.0.0"}, etag='"v1"')

    mini, changed = fetcher.fetch_update_manifest(CIAUTOTEST_UPDATE_URL)
    assert (mini.version, changed) == ("1.0.0", True)

    mini, changed = fetcher.fetch_update_manifest(CIAUTOTEST_UPDATE_URL)
    assert (mini.version, changed) == ("1.0.0", False)
    assert session.calls[-1]["headers"] == {"If-None-Match": '"v1"'}


def test_unconditional_fetch_sends_no_validators(fetcher, session):
    session.serve_json(CIAUTOTEST_UPDATE_URL, {"name": "ciautotest"}, etag='"v1"')
    fetcher.fetch(CIAUTOTEST_UPDATE_URL)
    fetcher.fetch(CIAUTOTEST_UPDATE_URL, conditional=False)
    assert session.calls[-1]["headers"] == {}


def test_forget_drops_cache(fetcher, session):
    session.serve_json(CIAUTOTEST_UPDATE_URL, {"name": "ciautotest"}, etag='"v1"')
    fetcher.fetch(CIAUTOTEST_UPDATE_URL)
    fetcher.forget(CIAUTOTEST_UPDATE_URL)
    result = fetcher.fetch(CIAUTOTEST_UPDATE_URL)
    assert result.changed
    assert session.calls[-1]["headers"] == {}


def test_http_error_is_download_failure(fetcher, session):
    session.fail(CIAUTOTEST_UPDATE_URL, status_code=503)
    with pytest.raises(DownloadFailedError) as exc:
        fetcher.fetch(CIAUTOTEST_UPDATE_URL)
    assert exc.value.status_code == 503


def test_connection_error_is_download_failure(fetcher, session):
    session.fail(CIAUTOTEST_UPDATE_URL)
    with pytest.raises(DownloadFailedError):
        fetcher.fetch_update_manifest(CIAUTOTEST_UPDATE_URL)


def test_bad_manifest_is_invalid(fetcher, session):
    session.routes[CIAUTOTEST_UPDATE_URL] = FakeResponse(200, b"<html>")
    with pytest.raises(InvalidManifestError):
        fetcher.fetch_update_manifest(CIAUTOTEST_UPDATE_URL)

    session.serve_json(CIAUTOTEST_UPDATE_URL, {"version": "1.0.0"})
    with pytest.raises(InvalidManifestError):
        fetcher.fetch_update_manifest(CIAUTOTEST_UPDATE_URL)


def test_download_streams_to_file(fetcher, session, tmp_path):
    body = make_package()
    session.serve_bytes(CIAUTOTEST_PACKAGE_URL, body)
    dest = tmp_path / "dl" / "package.zip"

    assert fetcher.download(CIAUTOTEST_PACKAGE_URL, dest) == len(body)
    assert dest.read_bytes() == body
    assert session.calls[-1]["stream"] is True


def test_download_empty_body_fails(fetcher, session, tmp_path):
    session.serve_bytes(CIAUTOTEST_PACKAGE_URL, b"")
    with pytest.raises(DownloadFailedError):
        fetcher.download(CIAUTOTEST_PACKAGE_URL, tmp_path / "package.zip")
