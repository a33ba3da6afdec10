from zipfile import ZipFile, BadZipFile
from munch import Munch
import json
import yaml
import io

from mcmanager.core import constants
from mcmanager.core.constants import get_json, remember, format_traceback
from mcmanager.core.exceptions import NoFileAvailableError


# Modrinth catalog
# ----------------------------------------------- Global Functions -----------------------------------------------------

# Log wrapper
def send_log(object_data, message, level=None):
    return constants.send_log(f'{__name__}.{object_data}', message, level, 'core')


# Metadata files checked inside of an add-on jar, in order
# file name --> parser
jar_metadata_files = {
    'plugin.yml': 'yaml',
    'fabric.mod.json': 'json',
    'bungee.yml': 'yaml',
    'velocity-plugin.json': 'json'
}



# ------------------------------------------- Addon Web Functions ------------------------------------------------------

# Returns a page of catalog projects according to search
# {'hits': [project, ...], 'total_hits': int}
def search_addons(project_type: str, loader: str, minecraft_version: str, page: int = 1, query: str = None, include_incompatible: bool = False) -> dict:
    config = constants.app_config
    page = max(int(page or 1), 1)
    query = query.strip() if query else None

    facets = [[f"categories:{loader}"], [f"versions:{minecraft_version}"], [f"project_type:{project_type}"]]
    if include_incompatible:
        facets.pop(1)

    params = {
        'offset': (page - 1) * config.page_size,
        'limit': config.page_size,
        'facets': json.dumps(facets)
    }

    key = f"modrinth_projects:{project_type}:{minecraft_version}:{loader}:{page}"
    if include_incompatible:
        key += ":all"
    if query:
        params['query'] = query
        key += f":{query}"

    log_tag = f"'{query or ''}' ({project_type}, {loader} {minecraft_version}, page {page})"

    def fetch():
        send_log('search_addons', f"searching for {log_tag}...", 'info')
        try:
            data = get_json(f"{config.modrinth_url}/v2/search", params)
            results = {'hits': list(data.get('hits', [])), 'total_hits': int(data.get('total_hits', 0))}

        except Exception as e:
            send_log('search_addons', f"error searching for {log_tag}: {format_traceback(e)}", 'error')
            return None

        send_log('search_addons', f"found {results['total_hits']} project(s) for {log_tag}", 'info')
        return results

    return remember(key, config.search_cache_minutes, fetch, cache_none=False) or {'hits': [], 'total_hits': 0}


# Returns every catalog version of a project, newest first as the catalog orders them
def get_addon_versions(project_id: str, loader: str, minecraft_version: str, include_incompatible: bool = False) -> list:
    config = constants.app_config

    params = {'loaders': json.dumps([loader])}
    if not include_incompatible:
        params['game_versions'] = json.dumps([minecraft_version])

    key = f"modrinth_versions:{project_id}:{minecraft_version}:{loader}"
    if include_incompatible:
        key += ":all"

    log_tag = f"'{project_id}' ({loader} {minecraft_version})"

    def fetch():
        try:
            versions = get_json(f"{config.modrinth_url}/v2/project/{project_id}/version", params)
            if not isinstance(versions, list):
                raise ValueError(f"expected a list of versions, got '{type(versions).__name__}'")

        except Exception as e:
            send_log('get_addon_versions', f"error retrieving versions for {log_tag}: {format_traceback(e)}", 'error')
            return None

        send_log('get_addon_versions', f"found {len(versions)} version(s) for {log_tag}")
        return versions

    return remember(key, config.version_cache_minutes, fetch, cache_none=False) or []


# Returns the file to download for a catalog version
# The first file flagged primary, otherwise the first file
def primary_file(version: dict) -> dict:
    files = version.get('files') or []

    for file in files:
        if file.get('primary'):
            return file

    if files:
        return files[0]

    raise NoFileAvailableError(f"No file found for version '{version.get('version_number') or version.get('id')}'")



# -------------------------------------------- Addon File Functions ----------------------------------------------------

# Returns metadata from the contents of an add-on jar file
# bytes --> {'name', 'version', 'author', 'description'}
def inspect_jar(data: bytes, file_name: str = 'unknown.jar') -> Munch:
    try:
        with ZipFile(io.BytesIO(data), 'r') as jar_file:
            names = set(jar_file.namelist())

            for metadata_file, parser in jar_metadata_files.items():
                if metadata_file not in names:
                    continue

                content = jar_file.read(metadata_file).decode('utf-8', errors='ignore')
                metadata = yaml.safe_load(content) if parser == 'yaml' else json.loads(content)
                if not isinstance(metadata, dict):
                    break

                return Munch(
                    name = metadata.get('name') or metadata.get('id'),
                    version = str(metadata['version']) if metadata.get('version') is not None else None,
                    author = _first_author(metadata),
                    description = metadata.get('description')
                )

    except (BadZipFile, yaml.YAMLError, json.JSONDecodeError, KeyError) as e:
        send_log('inspect_jar', f"error reading metadata of '{file_name}': {format_traceback(e)}", 'warning')

    return Munch(name=None, version=None, author=None, description=None)


# Authors are a string, a list of strings, or a list of {'name': str} objects
def _first_author(metadata: dict) -> str or None:
    if metadata.get('author'):
        return str(metadata['author'])

    authors = metadata.get('authors') or []
    if isinstance(authors, str):
        return authors
    if authors:
        author = authors[0]
        return author.get('name') if isinstance(author, dict) else str(author)
    return None
