from urllib.parse import urlparse, unquote
from datetime import datetime as dt
from shutil import rmtree
from munch import Munch
import mimetypes
import posixpath
import requests
import os

from mcmanager.core import constants
from mcmanager.core.constants import folder_check, format_traceback
from mcmanager.core.exceptions import StorageError, StorageNotFoundError


# Server file storage
# Every server path is '/'-separated and relative to the server root
# ------------------------------------------------ Global Functions ----------------------------------------------------

# Log wrapper
def send_log(object_data, message, level=None):
    return constants.send_log(f'{__name__}.{object_data}', message, level, 'core')


# Normalizes a server path to 'folder/file.jar' form
def clean_path(path: str) -> str:
    path = posixpath.normpath('/' + str(path or '').replace('\\', '/')).lstrip('/')
    return '' if path == '.' else path


# Joins server path segments
def join_path(*parts: str) -> str:
    return clean_path(posixpath.join(*[str(p or '') for p in parts]))


# Returns the file name a URL would be saved as
def url_file_name(url: str) -> str:
    name = posixpath.basename(unquote(urlparse(url).path))
    if not name:
        raise StorageError(f"cannot determine a file name from '{url}'")
    return name



# ------------------------------------------------ Gateway Objects -----------------------------------------------------

# Base gateway, methods are implemented per storage backend
class FileGateway():

    # Internal log wrapper
    def _send_log(self, message: str, level: str = None):
        return send_log(self.__class__.__name__, message, level)

    def get_content(self, path: str) -> str:
        raise NotImplementedError

    def put_content(self, path: str, content: str):
        raise NotImplementedError

    def get_directory(self, path: str) -> list:
        raise NotImplementedError

    def get_object(self, path: str) -> bytes:
        raise NotImplementedError

    def delete_files(self, root: str, files: list):
        raise NotImplementedError

    def rename(self, root: str, source: str, destination: str):
        raise NotImplementedError

    def pull(self, url: str, directory: str, file_name: str = None) -> str:
        raise NotImplementedError

    # Checks the parent listing for a file
    def exists(self, path: str) -> bool:
        path = clean_path(path)
        directory, name = posixpath.split(path)
        try:
            return name in [f['name'] for f in self.get_directory(directory)]
        except StorageNotFoundError:
            return False


# Server directory on this machine
class LocalFileGateway(FileGateway):

    def __init__(self, root: str, timeout: float = None, download_timeout: float = None):
        self.root = os.path.realpath(root)
        self.timeout = timeout or constants.app_config.request_timeout
        self.download_timeout = download_timeout or constants.app_config.download_timeout

    def __repr__(self):
        return f"<{__name__}.{self.__class__.__name__} '{self.root}'>"

    # Returns the absolute path of a server path, rejecting anything outside the root
    def _resolve(self, path: str) -> str:
        full_path = os.path.realpath(os.path.join(self.root, clean_path(path)))
        if full_path != self.root and not full_path.startswith(self.root + os.sep):
            raise StorageError(f"'{path}' is outside of the server directory")
        return full_path

    def get_content(self, path: str) -> str:
        return self.get_object(path).decode('utf-8', errors='ignore')

    def put_content(self, path: str, content: str):
        full_path = self._resolve(path)
        try:
            folder_check(os.path.dirname(full_path))
            with open(full_path, 'w', encoding='utf-8', newline='\n') as file:
                file.write(content)
        except OSError as e:
            raise StorageError(f"failed to write '{path}': {e}") from e

    def get_directory(self, path: str) -> list:
        full_path = self._resolve(path)
        if not os.path.isdir(full_path):
            raise StorageNotFoundError(f"'{path}' does not exist")

        files = []
        with os.scandir(full_path) as entries:
            for entry in sorted(entries, key=lambda e: e.name):
                stat = entry.stat()
                files.append(Munch(
                    name = entry.name,
                    size = stat.st_size,
                    directory = entry.is_dir(),
                    file = entry.is_file(),
                    mime = 'inode/directory' if entry.is_dir() else (mimetypes.guess_type(entry.name)[0] or 'application/octet-stream'),
                    created = dt.fromtimestamp(stat.st_ctime).isoformat(),
                    modified = dt.fromtimestamp(stat.st_mtime).isoformat()
                ))
        return files

    def get_object(self, path: str) -> bytes:
        full_path = self._resolve(path)
        try:
            with open(full_path, 'rb') as file:
                return file.read()
        except FileNotFoundError as e:
            raise StorageNotFoundError(f"'{path}' does not exist") from e
        except OSError as e:
            raise StorageError(f"failed to read '{path}': {e}") from e

    def delete_files(self, root: str, files: list):
        missing = []
        for file in files:
            full_path = self._resolve(join_path(root, file))
            try:
                if os.path.isdir(full_path): rmtree(full_path)
                else: os.remove(full_path)
                self._send_log(f"deleted '{join_path(root, file)}'")
            except FileNotFoundError:
                missing.append(file)
            except OSError as e:
                raise StorageError(f"failed to delete '{file}': {e}") from e

        if missing:
            raise StorageNotFoundError(f"{', '.join(missing)} not found in '/{clean_path(root)}'")

    def rename(self, root: str, source: str, destination: str):
        source_path = self._resolve(join_path(root, source))
        destination_path = self._resolve(join_path(root, destination))

        if not os.path.exists(source_path):
            raise StorageNotFoundError(f"'{source}' does not exist")
        if os.path.exists(destination_path):
            raise StorageError(f"'{destination}' already exists")

        try:
            folder_check(os.path.dirname(destination_path))
            os.rename(source_path, destination_path)
        except OSError as e:
            raise StorageError(f"failed to rename '{source}' to '{destination}': {e}") from e

    # Download file from URL to directory
    def pull(self, url: str, directory: str, file_name: str = None) -> str:
        file_name = file_name or url_file_name(url)
        server_path = join_path(directory, file_name)
        full_path = self._resolve(server_path)

        # Existing file at the destination is only replaced once the download is complete
        part_path = self._resolve(join_path(directory, f'.{file_name}.part'))
        self._send_log(f"requesting from '{url}' to download '{file_name}' to '/{clean_path(directory)}'...")

        try:
            response = requests.get(
                url,
                headers = {'User-Agent': constants.user_agent},
                stream = True,
                timeout = (self.timeout, self.download_timeout)
            )
            response.raise_for_status()

            folder_check(os.path.dirname(full_path))
            with open(part_path, 'wb') as file:
                for chunk in response.iter_content(chunk_size=8192):
                    file.write(chunk)
            os.replace(part_path, full_path)

        except Exception as e:
            self._send_log(f"request to '{url}' error: {format_traceback(e)}", 'error')
            if os.path.isfile(part_path):
                os.remove(part_path)
            raise StorageError(f"failed to download '{url}': {e}") from e

        self._send_log(f"download of '{file_name}' complete: '{server_path}'")
        return server_path


# Server managed by the panel's file daemon (Wings)
class DaemonFileGateway(FileGateway):

    def __init__(self, url: str, token: str, server_uuid: str, timeout: float = None, download_timeout: float = None):
        self.url = url.rstrip('/')
        self.server_uuid = server_uuid
        self.timeout = timeout or constants.app_config.request_timeout
        self.download_timeout = download_timeout or constants.app_config.download_timeout

        self._session = requests.Session()
        self._session.headers.update({
            'Authorization': f'Bearer {token}',
            'Accept': 'application/json',
            'User-Agent': constants.user_agent
        })

    def __repr__(self):
        return f"<{__name__}.{self.__class__.__name__} '{self.server_uuid}' at '{self.url}'>"

    def _request(self, method: str, endpoint: str, read_timeout: float = None, **kwargs) -> requests.Response:
        url = f"{self.url}/api/servers/{self.server_uuid}/files/{endpoint}"

        try:
            response = self._session.request(method, url, timeout=(self.timeout, read_timeout or self.timeout), **kwargs)
        except requests.exceptions.RequestException as e:
            self._send_log(f"error requesting '{url}': {format_traceback(e)}", 'error')
            raise StorageError(f"daemon request to '{endpoint}' failed: {e}") from e

        self._send_log(f"{method} '{url}': {response.status_code}")

        if response.status_code == 404:
            raise StorageNotFoundError(f"daemon could not find the requested file ({endpoint})")
        if response.status_code >= 400:
            try: detail = response.json()['errors'][0]['detail']
            except Exception: detail = response.text[:200]
            raise StorageError(f"daemon rejected '{endpoint}' with {response.status_code}: {detail}")

        return response

    def get_content(self, path: str) -> str:
        return self._request('GET', 'contents', params={'file': '/' + clean_path(path)}).text

    def put_content(self, path: str, content: str):
        self._request('POST', 'write', params={'file': '/' + clean_path(path)}, data=content.encode('utf-8'))

    def get_directory(self, path: str) -> list:
        data = self._request('GET', 'list-directory', params={'directory': '/' + clean_path(path)}).json()
        return [Munch(f) for f in data]

    def get_object(self, path: str) -> bytes:
        return self._request('GET', 'contents', params={'file': '/' + clean_path(path)}, read_timeout=self.download_timeout).content

    def delete_files(self, root: str, files: list):
        self._request('POST', 'delete', json={'root': '/' + clean_path(root), 'files': list(files)})

    def rename(self, root: str, source: str, destination: str):
        self._request('PUT', 'rename', json={'root': '/' + clean_path(root), 'files': [{'from': source, 'to': destination}]})

    # Server-side download, blocks until the daemon finished writing the file
    def pull(self, url: str, directory: str, file_name: str = None) -> str:
        file_name = file_name or url_file_name(url)
        self._request(
            'POST', 'pull',
            read_timeout = self.download_timeout,
            json = {
                'url': url,
                'root': '/' + clean_path(directory),
                'file_name': file_name,
                'use_header': False,
                'foreground': True
            }
        )
        return join_path(directory, file_name)
