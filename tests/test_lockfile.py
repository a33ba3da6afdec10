"""Tests for the lock file manifest."""

import json
import pytest

from mcmanager.core.exceptions import StorageError
from mcmanager.core.server import lockfile
from mcmanager.core.server.lockfile import CoreRecord, Manifest, PluginEntry


def plugin_entry(**overrides):
    data = {
        "name": "LuckPerms",
        "project_id": "Vebnzrzj",
        "version_id": "abc123",
        "version_number": "5.4.102",
        "file_name": "LuckPerms-Bukkit-5.4.102.jar",
        "file_path": "plugins/LuckPerms-Bukkit-5.4.102.jar",
        "size": 1024,
        "date_installed": "2024-05-01T12:00:00+00:00",
        "primary": True
    }
    data.update(overrides)
    return PluginEntry(**data)


class TestManifest:
    """Tests for Manifest parsing and serialization."""

    def test_empty_core_object_means_no_core(self):
        manifest = Manifest.model_validate({"core": {}, "plugins": []})

        assert manifest.core is None
        assert manifest.plugins == {}

    def test_to_json_omits_missing_core(self):
        manifest = Manifest(plugins={"Vebnzrzj": plugin_entry()})
        data = json.loads(manifest.to_json())

        assert "core" not in data
        assert data["plugins"]["Vebnzrzj"]["version_id"] == "abc123"

    def test_to_json_is_indented_with_trailing_newline(self):
        text = Manifest().to_json()

        assert text.endswith("\n")
        assert text == json.dumps({"plugins": {}}, indent=4) + "\n"

    def test_unknown_fields_survive_a_round_trip(self):
        raw = {
            "core": {"project": "paper", "version": "1.21.4", "build": 231, "installed_at": "x", "path": "server.jar", "channel": "STABLE"},
            "plugins": {},
            "notes": "kept"
        }
        data = json.loads(Manifest.model_validate(raw).to_json())

        assert data["notes"] == "kept"
        assert data["core"]["channel"] == "STABLE"


class TestLoadSave:
    """Tests for lockfile.load and lockfile.save."""

    def test_load_missing_file_returns_empty_manifest(self, gateway):
        manifest = lockfile.load(gateway, "mc-manager.lock")

        assert manifest.core is None
        assert manifest.plugins == {}

    def test_load_corrupt_file_returns_empty_manifest(self, gateway):
        gateway.files["mc-manager.lock"] = b"{not json"

        assert lockfile.load(gateway, "mc-manager.lock").plugins == {}

    def test_save_then_load_is_stable(self, gateway):
        manifest = Manifest(
            core=CoreRecord(project="paper", version="1.21.4", build=231, checksum="ab", installed_at="now", path="server.jar"),
            plugins={"Vebnzrzj": plugin_entry()}
        )

        assert lockfile.save(gateway, "mc-manager.lock", manifest) is True
        first = gateway.files["mc-manager.lock"]

        lockfile.save(gateway, "mc-manager.lock", lockfile.load(gateway, "mc-manager.lock"))
        assert gateway.files["mc-manager.lock"] == first

    def test_save_failure_is_soft_by_default(self, gateway):
        gateway.fail_write.add("mc-manager.lock")

        assert lockfile.save(gateway, "mc-manager.lock", Manifest()) is False

    def test_save_failure_raises_when_strict(self, gateway):
        gateway.fail_write.add("mc-manager.lock")

        with pytest.raises(StorageError):
            lockfile.save(gateway, "mc-manager.lock", Manifest(), strict=True)

    def test_load_skips_only_invalid_entries(self, gateway):
        valid = plugin_entry(project_id="a").model_dump()
        invalid = plugin_entry(project_id="b").model_dump()
        invalid["version_id"] = None
        gateway.files["mc-manager.lock"] = json.dumps({"plugins": {"a": valid, "b": invalid}, "notes": "kept"}).encode()

        manifest = lockfile.load(gateway, "mc-manager.lock")

        assert list(manifest.plugins) == ["a"]
        assert manifest.plugins["a"].version_id == "abc123"
        assert json.loads(manifest.to_json())["notes"] == "kept"

    def test_load_invalid_core_keeps_plugins(self, gateway):
        gateway.files["mc-manager.lock"] = json.dumps({
            "core": {"project": "paper", "build": "latest"},
            "plugins": {"a": plugin_entry(project_id="a").model_dump()}
        }).encode()

        manifest = lockfile.load(gateway, "mc-manager.lock")

        assert manifest.core is None
        assert list(manifest.plugins) == ["a"]

    def test_load_non_object_returns_empty_manifest(self, gateway):
        gateway.files["mc-manager.lock"] = b"[1, 2, 3]"

        assert lockfile.load(gateway, "mc-manager.lock").plugins == {}
