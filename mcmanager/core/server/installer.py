from typing import Dict, List, Optional
from pydantic import ValidationError
from munch import Munch
from enum import Enum
import threading

from mcmanager.core import constants
from mcmanager.core.server import addons, foundry, lockfile, manager
from mcmanager.core.server.lockfile import CoreRecord, PluginEntry, Manifest
from mcmanager.core.server.storage import FileGateway, clean_path, join_path
from mcmanager.core.constants import format_traceback, get_checksum, remember, utc_now
from mcmanager.core.exceptions import (
    ManagerError, NotFoundError, UnsupportedServerError, NoBuildsFoundError,
    DownloadNotFoundError, StorageError, StorageNotFoundError, InstallError
)


# Installed-state reconciliation
# The InstallManager is the only writer of a server's lock file
# ---------------------------------------------- Global Functions ------------------------------------------------------

# Log wrapper
def send_log(object_data, message, level=None):
    return constants.send_log(f'{__name__}.{object_data}', message, level, 'core')


# Advisory lock per server around every lock file read-modify-write
# Only serializes callers inside this process
server_locks = {}
_server_locks_lock = threading.Lock()

def server_lock(server_id: str) -> threading.Lock:
    with _server_locks_lock:
        if server_id not in server_locks:
            server_locks[server_id] = threading.Lock()
        return server_locks[server_id]


# Jar metadata rarely changes for the same name, size, and creation date
jar_cache_minutes = 60 * 24 * 7



# ------------------------------------------------ Install Steps -------------------------------------------------------

class InstallState(str, Enum):
    PENDING    = 'pending'
    DOWNLOADED = 'downloaded'
    VERIFIED   = 'verified'
    SWAPPED    = 'swapped'
    RECORDED   = 'recorded'


# Tracks the completed steps of one install, update, or core swap
class InstallTask():

    def __init__(self, action: str, server_id: str, target: str):
        self.action = action
        self.server_id = server_id
        self.target = target
        self.state = InstallState.PENDING

    def __repr__(self):
        return f"<{__name__}.{self.__class__.__name__} {self.action} '{self.target}' ({self.state.value})>"

    def advance(self, state: InstallState):
        self.state = state
        send_log('InstallTask', f"'{self.server_id}': {self.action} '{self.target}' -> {state.value}")

    # Returns an InstallError carrying the last completed step
    def fail(self, message: str, exception: Exception = None) -> InstallError:
        details = f": {format_traceback(exception)}" if exception else ''
        send_log('InstallTask', f"'{self.server_id}': {self.action} '{self.target}' failed after '{self.state.value}': {message}{details}", 'error')
        return InstallError(message, state=self.state)



# ----------------------------------------------- Install Manager ------------------------------------------------------

# Server add-on and core install manager, every method is scoped by 'server_id'
class InstallManager():

    # Internal log wrapper
    def _send_log(self, message: str, level: str = None):
        return send_log(self.__class__.__name__, message, level)

    def __init__(self, gateway_factory=None):
        self._gateway_factory = gateway_factory or manager.server_gateway

    def _server(self, server_id: str) -> Munch:
        return manager.server_config(server_id)

    def _gateway(self, server: Munch) -> FileGateway:
        return self._gateway_factory(server)

    @staticmethod
    def _classify(server: Munch) -> Munch:
        classification = manager.classify(server)
        if not classification:
            raise UnsupportedServerError(f"'{server.name}' ({server.get('type') or 'unknown'}) does not support plugins or mods")
        return classification

    @staticmethod
    def _lock_path() -> str:
        return constants.app_config.lock_file

    def _load(self, gateway: FileGateway) -> Manifest:
        return lockfile.load(gateway, self._lock_path())

    def _save(self, gateway: FileGateway, manifest: Manifest):
        return lockfile.save(gateway, self._lock_path(), manifest, strict=constants.app_config.strict_storage)

    # Deletes a server file, a missing file counts as deleted
    # Failures are logged and ignored unless 'strict_storage' is set
    def _delete(self, gateway: FileGateway, path: str) -> bool:
        directory, name = clean_path(path).rpartition('/')[::2]
        try:
            gateway.delete_files(directory, [name])

        except StorageNotFoundError:
            self._send_log(f"'{path}' was already removed")

        except StorageError as e:
            self._send_log(f"failed to delete '{path}': {format_traceback(e)}", 'error')
            if constants.app_config.strict_storage:
                raise
            return False

        return True

    @staticmethod
    def _plugin_entry(project: dict, version: dict, file: dict, file_path: str) -> PluginEntry:
        project_id = project.get('project_id') or project.get('id')
        return PluginEntry(
            name = project.get('title') or project.get('name') or project_id,
            project_id = project_id,
            version_id = version.get('id'),
            version_number = version.get('version_number'),
            file_name = file.get('filename'),
            file_path = file_path,
            size = file.get('size'),
            date_installed = utc_now(),
            icon_url = project.get('icon_url'),
            description = project.get('description'),
            primary = bool(file.get('primary', False))
        )

    # Renames 'temp_name' over 'target_name' inside 'directory'
    # An existing target is kept as '.<name>.old' until the rename succeeds, and restored if it fails
    def _swap_file(self, gateway: FileGateway, task: InstallTask, directory: str, temp_name: str, target_name: str):
        target_path = join_path(directory, target_name)
        temp_path = join_path(directory, temp_name)
        backup_name = f".{target_name}.old"
        backup_path = join_path(directory, backup_name)
        backup = None

        if gateway.exists(target_path):
            if gateway.exists(backup_path):
                self._delete(gateway, backup_path)
            try:
                gateway.rename(directory, target_name, backup_name)
                backup = backup_path
            except StorageError as e:
                error = task.fail(f"'{target_path}' could not be moved aside", e)
                self._delete(gateway, temp_path)
                raise error from e

        try:
            gateway.rename(directory, temp_name, target_name)
        except StorageError as e:
            if backup:
                try:
                    gateway.rename(directory, backup_name, target_name)
                except StorageError as restore_error:
                    self._send_log(f"'{task.server_id}': failed to restore '{target_path}': {format_traceback(restore_error)}", 'fatal')
            error = task.fail(f"'{temp_path}' could not be renamed to '{target_path}'", e)
            self._delete(gateway, temp_path)
            raise error from e

        if backup:
            self._delete(gateway, backup)

    # Download --> verify --> remove the previous file --> record
    # The previous file stays in place until the new one is confirmed on disk
    def _install_file(self, server: Munch, gateway: FileGateway, folder: str, project: dict, version: dict, file: dict = None, action: str = 'install') -> PluginEntry:
        file = file or addons.primary_file(version)
        if not file.get('url'):
            raise DownloadNotFoundError(f"Download URL not found for '{file.get('filename')}'")

        entry = self._plugin_entry(project, version, file, join_path(folder, file.get('filename')))
        task = InstallTask(action, server.id, entry.project_id)

        # A file already at the target path is only replaced after the download is verified
        download_name = entry.file_name
        if gateway.exists(entry.file_path):
            download_name = f".{entry.file_name}.download"
        download_path = join_path(folder, download_name)

        try:
            gateway.pull(file['url'], folder, download_name)
        except StorageError as e:
            raise task.fail(f"Download of '{entry.file_name}' could not be started", e) from e
        task.advance(InstallState.DOWNLOADED)

        if not gateway.exists(download_path):
            raise task.fail(f"'{download_path}' is not present after the download")
        task.advance(InstallState.VERIFIED)

        manifest = self._load(gateway)
        previous = manifest.plugins.get(entry.project_id)
        if download_path != entry.file_path:
            self._swap_file(gateway, task, folder, download_name, entry.file_name)
        if previous and clean_path(previous.file_path) != entry.file_path:
            self._delete(gateway, previous.file_path)
        task.advance(InstallState.SWAPPED)

        manifest.plugins[entry.project_id] = entry
        self._save(gateway, manifest)
        task.advance(InstallState.RECORDED)

        self._send_log(f"'{server.id}': {action}ed '{entry.name}' {entry.version_number} to '{entry.file_path}'", 'info')
        return entry

    def _inspect_file(self, gateway: FileGateway, path: str) -> Munch:
        try:
            return addons.inspect_jar(gateway.get_object(path), path)
        except StorageError as e:
            self._send_log(f"failed to read '{path}': {format_traceback(e)}", 'warning')
            return Munch(name=None, version=None, author=None, description=None)


    # ------------------------------------------- Server Info ----------------------------------------------------------

    # Returns Minecraft version, loader, and add-on counts for the server header
    def get_server_info(self, server_id: str) -> dict:
        server = self._server(server_id)
        classification = manager.classify(server)
        manifest = self._load(self._gateway(server))

        return {
            'id': server.id,
            'name': server.name,
            'minecraft_version': manager.get_minecraft_version(server),
            'loader': classification.loader if classification else None,
            'project_type': classification.project_type if classification else None,
            'folder': classification.folder if classification else None,
            'installed': len(manifest.plugins),
            'core': manifest.core.model_dump() if manifest.core else None
        }

    def get_minecraft_version(self, server_id: str) -> str:
        return manager.get_minecraft_version(self._server(server_id))


    # ------------------------------------------- Catalog Browsing -----------------------------------------------------

    # Returns a page of catalog projects compatible with the server
    def search_projects(self, server_id: str, page: int = 1, query: Optional[str] = None, include_incompatible: bool = False) -> dict:
        server = self._server(server_id)
        classification = manager.classify(server)
        if not classification:
            return {'hits': [], 'total_hits': 0}

        return addons.search_addons(
            classification.project_type,
            classification.loader,
            manager.get_minecraft_version(server),
            page,
            query,
            include_incompatible
        )

    # Returns catalog versions of a project for the server, newest first
    def list_versions(self, server_id: str, project_id: str, include_incompatible: bool = False) -> list:
        server = self._server(server_id)
        classification = manager.classify(server)
        if not classification:
            return []

        return addons.get_addon_versions(project_id, classification.loader, manager.get_minecraft_version(server), include_incompatible)


    # ------------------------------------------- Installed Plugins ----------------------------------------------------

    def get_installed_core(self, server_id: str) -> Optional[CoreRecord]:
        return self._load(self._gateway(self._server(server_id))).core

    def get_installed_plugins(self, server_id: str) -> List[PluginEntry]:
        return list(self._load(self._gateway(self._server(server_id))).plugins.values())

    # Returns {project_id: newest version} for every tracked project with a newer catalog version
    def get_available_updates(self, server_id: str) -> Dict[str, dict]:
        server = self._server(server_id)
        classification = manager.classify(server)
        if not classification:
            return {}

        minecraft_version = manager.get_minecraft_version(server)
        manifest = self._load(self._gateway(server))
        updates = {}

        for project_id, entry in manifest.plugins.items():
            versions = addons.get_addon_versions(project_id, classification.loader, minecraft_version)
            if not versions:
                continue

            if versions[0].get('id') != entry.version_id:
                updates[project_id] = versions[0]

        if updates:
            self._send_log(f"'{server_id}': {len(updates)} update(s) available: {', '.join(updates)}", 'info')
        return updates

    # Downloads a catalog version into the plugin folder and tracks it
    def install_plugin(self, server_id: str, project: dict, version: dict, file: Optional[dict] = None) -> PluginEntry:
        server = self._server(server_id)
        classification = self._classify(server)
        gateway = self._gateway(server)

        with server_lock(server.id):
            return self._install_file(server, gateway, classification.folder, project, version, file, 'install')

    # Replaces a tracked project with 'new_version'
    def update_plugin(self, server_id: str, project_id: str, new_version: dict) -> PluginEntry:
        server = self._server(server_id)
        classification = self._classify(server)
        gateway = self._gateway(server)

        with server_lock(server.id):
            entry = self._load(gateway).plugins.get(project_id)
            if not entry:
                raise NotFoundError(f"'{project_id}' is not installed on '{server_id}'")

            project = {
                'id': entry.project_id,
                'title': entry.name,
                'icon_url': entry.icon_url,
                'description': entry.description
            }
            return self._install_file(server, gateway, classification.folder, project, new_version, None, 'update')

    # Updates every project with a newer catalog version
    # {'updated': {project_id: version_number}, 'failed': {project_id: reason}}
    def update_all(self, server_id: str) -> dict:
        results = {'updated': {}, 'failed': {}}

        for project_id, version in self.get_available_updates(server_id).items():
            try:
                entry = self.update_plugin(server_id, project_id, version)
                results['updated'][project_id] = entry.version_number
            except (ManagerError, ValidationError) as e:
                self._send_log(f"'{server_id}': failed to update '{project_id}': {format_traceback(e)}", 'error')
                results['failed'][project_id] = str(e)

        return results

    # Removes a tracked project's file and its lock file entry
    def delete_installed_plugin(self, server_id: str, project_id: str) -> None:
        server = self._server(server_id)
        gateway = self._gateway(server)

        with server_lock(server.id):
            manifest = self._load(gateway)
            entry = manifest.plugins.get(project_id)
            if not entry:
                raise NotFoundError(f"'{project_id}' is not installed on '{server_id}'")

            self._delete(gateway, entry.file_path)
            del manifest.plugins[project_id]
            self._save(gateway, manifest)

        self._send_log(f"'{server_id}': deleted '{entry.name}' ('{entry.file_path}')", 'info')

    # Lists jar files in the plugin folder with their embedded metadata
    def scan_addons(self, server_id: str, query: Optional[str] = None) -> List[dict]:
        server = self._server(server_id)
        classification = manager.classify(server)
        if not classification:
            return []

        gateway = self._gateway(server)
        try:
            files = gateway.get_directory(classification.folder)
        except StorageError as e:
            self._send_log(f"'{server_id}': failed to list '{classification.folder}': {e}", 'warning')
            return []

        tracked = {clean_path(e.file_path): e for e in self._load(gateway).plugins.values()}
        query = query.strip().lower() if query else None
        results = []

        for file in files:
            if file.get('directory') or not (file['name'].endswith('.jar') or file.get('mime') in ('application/jar', 'application/java-archive')):
                continue
            if query and query not in file['name'].lower():
                continue

            path = join_path(classification.folder, file['name'])
            key = f"jar_metadata:{server.id}:{file['name']}:{file.get('size')}:{file.get('created')}"
            metadata = remember(key, jar_cache_minutes, lambda p=path: self._inspect_file(gateway, p))
            entry = tracked.get(path)

            results.append({
                'name': file['name'],
                'size': file.get('size'),
                'date_modified': file.get('modified'),
                'version': (entry.version_number if entry else None) or metadata.version or 'Unknown',
                'description': (entry.description if entry else None) or metadata.description or '',
                'author': metadata.author or 'Unknown',
                'icon_url': entry.icon_url if entry else None,
                'project_id': entry.project_id if entry else None,
                'tracked': bool(entry)
            })

        return results


    # ---------------------------------------------- Server Core -------------------------------------------------------

    # Returns the core project and its Minecraft versions, newest first
    def get_core_versions(self, server_id: str, project: str = 'paper') -> dict:
        self._server(server_id)
        data = foundry.get_core_project(project)
        return {
            'project': data['project'],
            'versions': {major: foundry.sort_versions(minors) for major, minors in data['versions'].items()}
        }

    def get_core_builds(self, server_id: str, project: str = 'paper', version: Optional[str] = None) -> list:
        server = self._server(server_id)
        return foundry.get_core_builds(project, version or manager.get_minecraft_version(server))

    # Download to a temporary name --> verify --> swap with the current core --> record
    # The previous core is restored if the swap fails, and the lock file is only written after a successful swap
    def install_core(self, server_id: str, project: str, version: str, build_id: int, download_url: str, checksum: Optional[str] = None) -> CoreRecord:
        if not download_url:
            raise DownloadNotFoundError("Download URL not found")

        server = self._server(server_id)
        gateway = self._gateway(server)
        core_name = clean_path(manager.core_file_name(server))
        core_folder, core_base = core_name.rpartition('/')[::2]
        temp_name = f".{core_base}.download"
        temp_path = join_path(core_folder, temp_name)
        task = InstallTask('install core', server.id, f"{project} {version} #{build_id}")

        with server_lock(server.id):
            try:
                gateway.pull(download_url, core_folder, temp_name)
            except StorageError as e:
                raise task.fail(f"Download of build {build_id} could not be started", e) from e
            task.advance(InstallState.DOWNLOADED)

            if not gateway.exists(temp_path):
                raise task.fail(f"'{temp_path}' is not present after the download")

            if checksum and constants.app_config.verify_checksums:
                try:
                    actual = get_checksum(gateway.get_object(temp_path))
                except StorageError as e:
                    raise task.fail(f"'{temp_path}' could not be read for verification", e) from e

                if actual.lower() != checksum.lower():
                    self._delete(gateway, temp_path)
                    raise task.fail(f"Checksum mismatch for build {build_id}: expected {checksum}, got {actual}")
            task.advance(InstallState.VERIFIED)

            self._swap_file(gateway, task, core_folder, temp_name, core_base)
            task.advance(InstallState.SWAPPED)

            manifest = self._load(gateway)
            manifest.core = CoreRecord(
                project = project,
                version = version,
                build = build_id,
                checksum = checksum,
                installed_at = utc_now(),
                path = core_name
            )
            self._save(gateway, manifest)
            task.advance(InstallState.RECORDED)

        self._send_log(f"'{server_id}': installed {project} {version} build {build_id} as '{core_name}'", 'info')
        return manifest.core

    # Installs the newest build of a core project
    def install_latest_core(self, server_id: str, project: str = 'paper', version: Optional[str] = None) -> CoreRecord:
        server = self._server(server_id)
        version = version or manager.get_minecraft_version(server)

        build = foundry.latest_build(foundry.get_core_builds(project, version))
        if not build:
            raise NoBuildsFoundError(f"No builds found for {project} {version}")

        download = foundry.get_build_download(build)
        return self.install_core(server_id, project, version, build['id'], download.url, download.checksum)

    # Returns the newest build if it's newer than the installed core
    def get_core_update(self, server_id: str) -> Optional[dict]:
        core = self.get_installed_core(server_id)
        if not core:
            return None

        build = foundry.latest_build(foundry.get_core_builds(core.project, core.version))
        if build and int(build.get('id', 0)) > core.build:
            return build
        return None

    # Installs the newest build of the installed core project
    def update_core(self, server_id: str) -> Optional[CoreRecord]:
        core = self.get_installed_core(server_id)
        if not core:
            raise NotFoundError(f"No core is installed on '{server_id}'")

        build = self.get_core_update(server_id)
        if not build:
            self._send_log(f"'{server_id}': {core.project} {core.version} build {core.build} is up to date", 'info')
            return None

        try:
            download = foundry.get_build_download(build)
        except DownloadNotFoundError:
            raise DownloadNotFoundError("Download not found for latest build")

        record = self.install_core(server_id, core.project, core.version, build['id'], download.url, download.checksum)
        self._send_log(f"'{server_id}': updated to build {record.build}", 'info')
        return record
