"""Shared fixtures for mcmanager tests."""

import os
import tempfile

# Keep config and logs out of the user's home directory
os.environ.setdefault("MCMANAGER_HOME", tempfile.mkdtemp(prefix="mcmanager-tests-"))

import posixpath
import pytest
from munch import Munch

from mcmanager.core import constants
from mcmanager.core.exceptions import StorageError, StorageNotFoundError
from mcmanager.core.server.installer import InstallManager
from mcmanager.core.server.storage import FileGateway, clean_path, join_path


class FakeGateway(FileGateway):
    """In-memory server storage.

    ``downloads`` maps a URL to the bytes a pull writes. Paths listed in
    ``fail_pull``, ``fail_rename`` and ``fail_write`` raise StorageError.
    """

    def __init__(self, files: dict = None):
        self.files = {clean_path(k): v for k, v in (files or {}).items()}
        self.downloads = {}
        self.fail_pull = set()
        self.fail_rename = set()
        self.fail_write = set()
        self.fail_delete = set()
        self.calls = []

    def get_content(self, path):
        return self.get_object(path).decode("utf-8")

    def put_content(self, path, content):
        path = clean_path(path)
        self.calls.append(("put_content", path))
        if path in self.fail_write:
            raise StorageError(f"cannot write '{path}'")
        self.files[path] = content.encode("utf-8")

    def get_directory(self, path):
        path = clean_path(path)
        entries = []
        for name, data in sorted(self.files.items()):
            if posixpath.dirname(name) == path:
                entries.append(Munch(
                    name=posixpath.basename(name), size=len(data), directory=False, file=True,
                    mime="application/java-archive" if name.endswith(".jar") else "text/plain",
                    created="2024-01-01T00:00:00", modified="2024-01-01T00:00:00"
                ))
        if not entries and path and not any(n.startswith(path + "/") for n in self.files):
            raise StorageNotFoundError(f"'{path}' does not exist")
        return entries

    def get_object(self, path):
        path = clean_path(path)
        if path not in self.files:
            raise StorageNotFoundError(f"'{path}' does not exist")
        return self.files[path]

    def delete_files(self, root, files):
        missing = []
        for file in files:
            path = join_path(root, file)
            self.calls.append(("delete", path))
            if path in self.fail_delete:
                raise StorageError(f"cannot delete '{path}'")
            if self.files.pop(path, None) is None:
                missing.append(file)
        if missing:
            raise StorageNotFoundError(f"{', '.join(missing)} not found")

    def rename(self, root, source, destination):
        source, destination = join_path(root, source), join_path(root, destination)
        self.calls.append(("rename", source, destination))
        if source in self.fail_rename:
            raise StorageError(f"cannot rename '{source}'")
        if source not in self.files:
            raise StorageNotFoundError(f"'{source}' does not exist")
        if destination in self.files:
            raise StorageError(f"'{destination}' already exists")
        self.files[destination] = self.files.pop(source)

    def pull(self, url, directory, file_name=None):
        path = join_path(directory, file_name or posixpath.basename(url))
        self.calls.append(("pull", url, path))
        if url in self.fail_pull:
            raise StorageError(f"cannot download '{url}'")
        self.files[path] = self.downloads.get(url, b"jar-bytes")
        return path


@pytest.fixture(autouse=True)
def reset_state():
    constants.clear_cache()
    yield
    constants.clear_cache()
    constants.app_config.reset()


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def servers():
    constants.app_config.servers = {
        "survival": {
            "name": "Survival",
            "type": "paper",
            "path": "/srv/survival",
            "environment": {"MINECRAFT_VERSION": "1.21.1"}
        },
        "modded": {
            "name": "Modded",
            "type": "fabric",
            "path": "/srv/modded",
            "environment": {"MC_VERSION": "latest"}
        },
        "vanilla": {
            "name": "Vanilla",
            "type": "vanilla",
            "path": "/srv/vanilla"
        }
    }
    return constants.app_config.servers


@pytest.fixture
def install_manager(gateway, servers):
    return InstallManager(gateway_factory=lambda server: gateway)


def catalog_version(version_id="v2", number="2.0.0", filename="Plugin-2.0.0.jar", url=None, primary=True, size=1024):
    return {
        "id": version_id,
        "version_number": number,
        "files": [{
            "url": url or f"https://cdn.modrinth.com/data/P1/versions/{version_id}/{filename}",
            "filename": filename,
            "primary": primary,
            "size": size
        }]
    }


@pytest.fixture
def make_version():
    return catalog_version
