from functools import cmp_to_key
from munch import Munch

from mcmanager.core import constants
from mcmanager.core.constants import get_json, remember, format_traceback, version_check
from mcmanager.core.exceptions import DownloadNotFoundError


# PaperMC core builds
# ---------------------------------------------- Global Functions ------------------------------------------------------

# Log wrapper
def send_log(object_data, message, level=None):
    return constants.send_log(f'{__name__}.{object_data}', message, level, 'core')


# Preferred named download of a build
default_download = 'server:default'


# Returns project info and its Minecraft versions grouped by major version
# {'project': {'id': 'paper', 'name': 'Paper'}, 'versions': {'1.21': ['1.21.4', '1.21.3', ...]}}
def get_core_project(project: str) -> dict:
    config = constants.app_config

    def fetch():
        try:
            data = get_json(f"{config.papermc_url}/v3/projects/{project}")
            versions = data.get('versions') or {}

            # Older API responses list versions without grouping
            if isinstance(versions, list):
                grouped = {}
                for version in versions:
                    grouped.setdefault('.'.join(version.split('.')[:2]), []).append(version)
                versions = grouped

        except Exception as e:
            send_log('get_core_project', f"error retrieving project '{project}': {format_traceback(e)}", 'error')
            return None

        return {'project': data.get('project') or {}, 'versions': versions}

    return remember(f"papermc_project:{project}", config.version_cache_minutes, fetch, cache_none=False) \
        or {'project': {}, 'versions': {}}


# Returns every build of a project for a Minecraft version, newest last
def get_core_builds(project: str, minecraft_version: str) -> list:
    config = constants.app_config
    log_tag = f"'{project}' ({minecraft_version})"

    def fetch():
        try:
            builds = get_json(f"{config.papermc_url}/v3/projects/{project}/versions/{minecraft_version}/builds")
            if not isinstance(builds, list):
                raise ValueError(f"expected a list of builds, got '{type(builds).__name__}'")

        except Exception as e:
            send_log('get_core_builds', f"error retrieving builds for {log_tag}: {format_traceback(e)}", 'error')
            return None

        send_log('get_core_builds', f"found {len(builds)} build(s) for {log_tag}")
        return builds

    return remember(f"papermc_builds:{project}:{minecraft_version}", config.build_cache_minutes, fetch, cache_none=False) or []


# The catalog lists the newest build last
def latest_build(builds: list) -> dict or None:
    return builds[-1] if builds else None


# Returns {name, url, size, checksum} of the server download of a build
def get_build_download(build: dict) -> Munch:
    downloads = build.get('downloads') or {}
    download = downloads.get(default_download)

    if not download and downloads:
        download = next(iter(downloads.values()))

    if not download or not download.get('url'):
        raise DownloadNotFoundError(f"Download not found for build {build.get('id')}")

    return Munch(
        name = download.get('name'),
        url = download['url'],
        size = download.get('size'),
        checksum = (download.get('checksums') or {}).get('sha256')
    )


# Returns versions sorted newest first, for display only
def sort_versions(versions: list) -> list:
    def compare(a, b):
        if version_check(a, '>', b): return -1
        if version_check(a, '<', b): return 1
        return 0

    return sorted(versions, key=cmp_to_key(compare))
