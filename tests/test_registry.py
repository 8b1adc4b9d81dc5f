import json

import pytest
from pydantic import ValidationError

from backend.app.apps.errors import AppNotFoundError
from backend.app.apps.lifecycle import AppStatus, InstallState, UpdateState
from backend.app.apps.models import AppRecord, RegistryEntry
from backend.app.apps.registry import AppRegistry

from tests.fixtures.results import calculator_expected, launcher_expected


def _entry(name, update_url="", **kw):
    return RegistryEntry(
        record=AppRecord(
            name=name,
            manifestUrl=f"https://{name}.local:4443/manifest.webapp",
            updateUrl=update_url,
        ),
        **kw,
    )


def test_record_serializes_exactly_seven_fields():
    record = AppRecord.model_validate(calculator_expected)
    assert record.model_dump(mode="json") == calculator_expected
    assert list(json.loads(record.model_dump_json())) == [
        "name",
        "installState",
        "manifestUrl",
        "status",
        "updateState",
        "updateUrl",
        "allowedAutoDownload",
    ]


def test_empty_update_url_means_no_source():
    record = AppRecord.model_validate(launcher_expected)
    assert record.updateUrl is None
    assert not record.has_update_source
    assert record.model_dump(mode="json")["updateUrl"] == ""


def test_record_rejects_unknown_fields():
    with pytest.raises(ValidationError):
        AppRecord.model_validate({**calculator_expected, "version": "1.0"})


def test_manifest_url_is_frozen():
    record = AppRecord.model_validate(calculator_expected)
    with pytest.raises(ValidationError):
        record.manifestUrl = "https://other.local:4443/manifest.webapp"


def test_get_all_keeps_insertion_order():
    reg = AppRegistry()
    for name in ("calculator", "gallery", "system"):
        reg.upsert(_entry(name))
    reg.upsert(_entry("gallery", update_url="https://store.server/gallery/manifest.webapp"))

    assert [r.name for r in reg.get_all()] == ["calculator", "gallery", "system"]
    assert reg.get("gallery").updateUrl == "https://store.server/gallery/manifest.webapp"


def test_get_unknown_raises_not_found():
    reg = AppRegistry()
    with pytest.raises(AppNotFoundError) as exc:
        reg.get("nope")
    assert str(exc.value) == "App not found: nope"
    assert reg.find_entry("nope") is None


def test_reads_are_copies():
    reg = AppRegistry()
    reg.upsert(_entry("calculator"))
    snapshot = reg.get_all()

    reg.update_record("calculator", status=AppStatus.DISABLED)

    assert snapshot[0].status == AppStatus.ENABLED
    assert reg.get("calculator").status == AppStatus.DISABLED


def test_upsert_refuses_manifest_url_change():
    reg = AppRegistry()
    reg.upsert(_entry("calculator"))
    moved = RegistryEntry(
        record=AppRecord(name="calculator", manifestUrl="https://elsewhere.local:4443/manifest.webapp")
    )
    with pytest.raises(ValueError):
        reg.upsert(moved)


def test_update_record_refuses_identity_fields():
    reg = AppRegistry()
    reg.upsert(_entry("calculator"))
    with pytest.raises(ValueError):
        reg.update_record("calculator", manifestUrl="https://x.local:4443/manifest.webapp")
    with pytest.raises(AppNotFoundError):
        reg.update_record("missing", status=AppStatus.DISABLED)


def test_persists_and_reloads(tmp_path):
    path = tmp_path / "registry.json"
    reg = AppRegistry(path)
    reg.upsert(_entry("calculator", version="1.0.0"))
    reg.upsert(_entry("gallery"))
    reg.update_record("gallery", updateState=UpdateState.AVAILABLE)
    reg.remove("calculator")

    reloaded = AppRegistry(path)
    assert [r.name for r in reloaded.get_all()] == ["gallery"]
    assert reloaded.get("gallery").updateState == UpdateState.AVAILABLE
    assert not path.with_suffix(".json.tmp").exists()


def test_load_keeps_first_duplicate(tmp_path):
    path = tmp_path / "registry.json"
    first = _entry("calculator", version="1.0.0").model_dump(mode="json")
    second = _entry("calculator", version="2.0.0").model_dump(mode="json")
    path.write_text(json.dumps({"version": 1, "apps": [first, second]}), encoding="utf-8")

    reg = AppRegistry(path)
    assert len(reg) == 1
    assert reg.get_entry("calculator").version == "1.0.0"


def test_load_corrupt_file_raises(tmp_path):
    path = tmp_path / "registry.json"
    path.write_text("{not json", encoding="utf-8")
    with pytest.raises(RuntimeError):
        AppRegistry(path)


def test_entry_bookkeeping_stays_off_the_wire():
    reg = AppRegistry()
    reg.upsert(_entry("calculator", version="1.0.0", install_path="/tmp/x", kind="packaged"))
    dumped = reg.get("calculator").model_dump(mode="json")
    assert "version" not in dumped
    assert "install_path" not in dumped
    assert dumped["installState"] == InstallState.INSTALLED


def test_removed_names_persist_until_reinstalled(tmp_path):
    path = tmp_path / "registry.json"
    reg = AppRegistry(path)
    reg.upsert(_entry("calculator"))
    reg.upsert(_entry("gallery"))
    reg.remove("calculator", remember=True)
    reg.remove("gallery")

    reloaded = AppRegistry(path)
    assert reloaded.was_removed("calculator")
    assert not reloaded.was_removed("gallery")

    reloaded.upsert(_entry("calculator"))
    assert not AppRegistry(path).was_removed("calculator")
