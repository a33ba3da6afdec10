"""Tests for the Modrinth catalog functions."""

import io
import json
import zipfile
import pytest
import requests
from unittest.mock import patch

from mcmanager.core.exceptions import NoFileAvailableError
from mcmanager.core.server import addons


def make_jar(files: dict) -> bytes:
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w") as jar:
        for name, content in files.items():
            jar.writestr(name, content)
    return buffer.getvalue()


class TestSearchAddons:
    """Tests for search_addons."""

    def test_builds_facets_and_paging(self):
        with patch("mcmanager.core.server.addons.get_json") as mock_get:
            mock_get.return_value = {"hits": [{"project_id": "P1"}], "total_hits": 41}

            result = addons.search_addons("plugin", "paper", "1.21.1", page=3, query=" luck ")

            url, params = mock_get.call_args[0]
            assert url.endswith("/v2/search")
            assert params["offset"] == 40
            assert params["limit"] == 20
            assert params["query"] == "luck"
            assert json.loads(params["facets"]) == [["categories:paper"], ["versions:1.21.1"], ["project_type:plugin"]]
            assert result == {"hits": [{"project_id": "P1"}], "total_hits": 41}

    def test_include_incompatible_drops_version_facet(self):
        with patch("mcmanager.core.server.addons.get_json") as mock_get:
            mock_get.return_value = {"hits": [], "total_hits": 0}

            addons.search_addons("mod", "fabric", "1.20.1", include_incompatible=True)

            facets = json.loads(mock_get.call_args[0][1]["facets"])
            assert ["versions:1.20.1"] not in facets
            assert ["project_type:mod"] in facets

    def test_timeout_returns_empty_page(self):
        with patch("mcmanager.core.server.addons.get_json", side_effect=requests.exceptions.Timeout("slow")):
            result = addons.search_addons("plugin", "paper", "1.21.1")

        assert result == {"hits": [], "total_hits": 0}

    def test_results_are_cached_per_query(self):
        with patch("mcmanager.core.server.addons.get_json") as mock_get:
            mock_get.return_value = {"hits": [{"project_id": "P1"}], "total_hits": 1}

            addons.search_addons("plugin", "paper", "1.21.1", query="luck")
            addons.search_addons("plugin", "paper", "1.21.1", query="luck")
            addons.search_addons("plugin", "paper", "1.21.1", query="essentials")

            assert mock_get.call_count == 2

    def test_failures_are_not_cached(self):
        with patch("mcmanager.core.server.addons.get_json") as mock_get:
            mock_get.side_effect = [requests.exceptions.ConnectionError("down"), {"hits": [{"project_id": "P1"}], "total_hits": 1}]

            assert addons.search_addons("plugin", "paper", "1.21.1")["total_hits"] == 0
            assert addons.search_addons("plugin", "paper", "1.21.1")["total_hits"] == 1


class TestGetAddonVersions:
    """Tests for get_addon_versions."""

    def test_filters_by_loader_and_game_version(self):
        with patch("mcmanager.core.server.addons.get_json") as mock_get:
            mock_get.return_value = [{"id": "v2"}, {"id": "v1"}]

            versions = addons.get_addon_versions("P1", "paper", "1.21.1")

            url, params = mock_get.call_args[0]
            assert url.endswith("/v2/project/P1/version")
            assert json.loads(params["loaders"]) == ["paper"]
            assert json.loads(params["game_versions"]) == ["1.21.1"]
            assert [v["id"] for v in versions] == ["v2", "v1"]

    def test_include_incompatible_skips_game_versions(self):
        with patch("mcmanager.core.server.addons.get_json", return_value=[]) as mock_get:
            addons.get_addon_versions("P1", "paper", "1.21.1", include_incompatible=True)

            assert "game_versions" not in mock_get.call_args[0][1]

    def test_error_returns_empty_list(self):
        with patch("mcmanager.core.server.addons.get_json", side_effect=requests.exceptions.HTTPError("404")):
            assert addons.get_addon_versions("missing", "paper", "1.21.1") == []

    def test_unexpected_payload_returns_empty_list(self):
        with patch("mcmanager.core.server.addons.get_json", return_value={"error": "not_found"}):
            assert addons.get_addon_versions("P1", "paper", "1.21.1") == []

    def test_empty_version_list_is_cached(self):
        with patch("mcmanager.core.server.addons.get_json", return_value=[]) as mock_get:
            assert addons.get_addon_versions("P1", "paper", "1.21.1") == []
            assert addons.get_addon_versions("P1", "paper", "1.21.1") == []

            assert mock_get.call_count == 1

    def test_failed_version_lookup_is_retried(self):
        with patch("mcmanager.core.server.addons.get_json") as mock_get:
            mock_get.side_effect = [requests.exceptions.ConnectionError("down"), [{"id": "v1"}]]

            assert addons.get_addon_versions("P1", "paper", "1.21.1") == []
            assert addons.get_addon_versions("P1", "paper", "1.21.1") == [{"id": "v1"}]


class TestPrimaryFile:
    """Tests for primary_file."""

    def test_prefers_primary_file(self):
        version = {"files": [{"filename": "a.jar", "primary": False}, {"filename": "b.jar", "primary": True}]}

        assert addons.primary_file(version)["filename"] == "b.jar"

    def test_falls_back_to_first_file(self):
        version = {"files": [{"filename": "a.jar"}, {"filename": "b.jar"}]}

        assert addons.primary_file(version)["filename"] == "a.jar"

    def test_no_files_raises(self):
        with pytest.raises(NoFileAvailableError):
            addons.primary_file({"id": "v1", "files": []})


class TestInspectJar:
    """Tests for inspect_jar."""

    def test_reads_plugin_yml(self):
        data = make_jar({"plugin.yml": "name: Essentials\nversion: 2.20.1\nauthors: [kashike, md678685]\ndescription: Core tools\n"})

        metadata = addons.inspect_jar(data)

        assert metadata.name == "Essentials"
        assert metadata.version == "2.20.1"
        assert metadata.author == "kashike"
        assert metadata.description == "Core tools"

    def test_reads_fabric_mod_json(self):
        data = make_jar({"fabric.mod.json": json.dumps({"id": "sodium", "version": "0.5.8", "authors": [{"name": "jellysquid3"}]})})

        metadata = addons.inspect_jar(data)

        assert metadata.name == "sodium"
        assert metadata.author == "jellysquid3"

    def test_plugin_yml_takes_precedence(self):
        data = make_jar({
            "bungee.yml": "name: Proxy\nversion: 1\n",
            "plugin.yml": "name: Bukkit\nversion: 2\nauthor: someone\n"
        })

        metadata = addons.inspect_jar(data)

        assert metadata.name == "Bukkit"
        assert metadata.author == "someone"

    def test_numeric_version_is_a_string(self):
        metadata = addons.inspect_jar(make_jar({"plugin.yml": "name: Old\nversion: 1.5\n"}))

        assert metadata.version == "1.5"

    def test_not_a_jar_returns_empty_metadata(self):
        metadata = addons.inspect_jar(b"not a zip file", "broken.jar")

        assert metadata.name is None
        assert metadata.version is None
