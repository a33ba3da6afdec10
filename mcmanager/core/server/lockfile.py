from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator
from typing import Dict, Optional
import json

from mcmanager.core import constants
from mcmanager.core.constants import format_traceback
from mcmanager.core.exceptions import StorageError, StorageNotFoundError


# Installed-state lock file, one per server at the server root
# {
#   "core": {"project": "paper", "version": "1.21.4", "build": 231, ...},
#   "plugins": {"<project_id>": {...}, ...}
# }
# ----------------------------------------------- Lock File Objects ----------------------------------------------------

# Log wrapper
def send_log(object_data, message, level=None):
    return constants.send_log(f'{__name__}.{object_data}', message, level, 'core')


# Installed server core binary
class CoreRecord(BaseModel):
    model_config = ConfigDict(extra='allow')

    project: str
    version: str
    build: int
    checksum: Optional[str] = None
    installed_at: str
    path: str


# Installed catalog project
class PluginEntry(BaseModel):
    model_config = ConfigDict(extra='allow')

    name: str
    project_id: str
    version_id: str
    version_number: Optional[str] = None
    file_name: str
    file_path: str
    size: Optional[int] = None
    date_installed: str
    icon_url: Optional[str] = None
    description: Optional[str] = None
    primary: bool = True


class Manifest(BaseModel):
    model_config = ConfigDict(extra='allow')

    core: Optional[CoreRecord] = None
    plugins: Dict[str, PluginEntry] = Field(default_factory=dict)

    # An empty core object means no core was installed
    @field_validator('core', mode='before')
    @classmethod
    def _empty_core(cls, value):
        return value or None

    @field_validator('plugins', mode='before')
    @classmethod
    def _empty_plugins(cls, value):
        return value or {}

    def to_json(self) -> str:
        data = self.model_dump(mode='json')
        if data.get('core') is None:
            data.pop('core', None)
        return json.dumps(data, indent=4) + '\n'



# ---------------------------------------------- Lock File Functions ---------------------------------------------------

# Returns the manifest stored at 'path', or an empty one if it's missing or unreadable
# Entries that don't match the schema are skipped so the rest of the manifest survives
def load(gateway, path: str) -> Manifest:
    try:
        content = gateway.get_content(path)
        data = json.loads(content)
        if not isinstance(data, dict):
            raise ValueError(f"expected an object, got {type(data).__name__}")

    except StorageNotFoundError:
        send_log('load', f"'{path}' does not exist yet, using an empty manifest")
        return Manifest()

    except Exception as e:
        send_log('load', f"failed to read '{path}', using an empty manifest: {format_traceback(e)}", 'warning')
        return Manifest()

    core = data.pop('core', None) or None
    if core is not None:
        try:
            core = CoreRecord.model_validate(core)
        except ValidationError as e:
            send_log('load', f"ignoring invalid core record in '{path}': {format_traceback(e)}", 'warning')
            core = None

    plugins = data.pop('plugins', None) or {}
    if not isinstance(plugins, dict):
        send_log('load', f"ignoring invalid plugin list in '{path}'", 'warning')
        plugins = {}

    entries = {}
    for project_id, entry in plugins.items():
        try:
            entries[project_id] = PluginEntry.model_validate(entry)
        except ValidationError as e:
            send_log('load', f"ignoring invalid entry '{project_id}' in '{path}': {format_traceback(e)}", 'warning')

    return Manifest(core=core, plugins=entries, **data)


# Writes the manifest to 'path'
# Failures are logged and ignored unless 'strict' is set
def save(gateway, path: str, manifest: Manifest, strict: bool = False) -> bool:
    try:
        gateway.put_content(path, manifest.to_json())

    except Exception as e:
        send_log('save', f"failed to save '{path}': {format_traceback(e)}", 'error')
        if strict:
            if isinstance(e, StorageError): raise
            raise StorageError(f"failed to save '{path}': {e}") from e
        return False

    send_log('save', f"saved '{path}' ({len(manifest.plugins)} plugin(s){', core' if manifest.core else ''})")
    return True
