from munch import Munch

from mcmanager.core import constants
from mcmanager.core.exceptions import NotFoundError, StorageError
from mcmanager.core.server.storage import FileGateway, LocalFileGateway, DaemonFileGateway


# ---------------------------------------------- Global Functions ------------------------------------------------------

# Log wrapper
def send_log(object_data, message, level=None):
    return constants.send_log(f'{__name__}.{object_data}', message, level, 'core')


# Alternate names of Modrinth loaders used in server configurations
loader_aliases = {
    'craftbukkit': 'bukkit',
    'bungee': 'bungeecord',
    'neo-forge': 'neoforge'
}


# Returns Modrinth loader name of a server type
def server_loader(specific_type: str) -> str:
    specific_type = str(specific_type or '').lower().strip()
    return loader_aliases.get(specific_type, specific_type)


# Returns 'plugin', 'mod', or None if the server type can't load add-ons
def server_type(specific_type: str) -> str or None:
    loader = server_loader(specific_type)
    if loader in constants.plugin_loaders:
        return 'plugin'
    elif loader in constants.mod_loaders:
        return 'mod'
    return None


# Returns {project_type, loader, folder} for a server, or None for vanilla and unknown types
def classify(server: dict) -> Munch or None:
    project_type = server_type(server.get('type'))
    if not project_type:
        return None

    return Munch(
        project_type = project_type,
        loader = server_loader(server.get('type')),
        folder = 'plugins' if project_type == 'plugin' else 'mods'
    )


# Returns the server's Minecraft version, 'latest' resolves to the configured release
def get_minecraft_version(server: dict) -> str:
    environment = server.get('environment') or {}
    version = environment.get('MINECRAFT_VERSION') or environment.get('MC_VERSION')

    if not version or str(version).lower() == 'latest':
        return constants.app_config.latest_minecraft_version

    return str(version)


# Returns the name of the core binary in the server root
def core_file_name(server: dict) -> str:
    environment = server.get('environment') or {}
    return environment.get('SERVER_JARFILE') or constants.app_config.core_file_name



# ----------------------------------------------- Server Registry ------------------------------------------------------

# server_id --> server properties from the global configuration
# {
#   'id': 'survival',
#   'name': 'Survival',
#   'type': 'paper',
#   'path': '/srv/minecraft/survival',     (local storage)
#   'uuid': '0f1e...',                    (daemon storage)
#   'environment': {'MINECRAFT_VERSION': '1.21.4', 'SERVER_JARFILE': 'server.jar'}
# }
def server_config(server_id: str) -> Munch:
    servers = constants.app_config.servers or {}

    if server_id not in servers:
        send_log('server_config', f"'{server_id}' is not a configured server", 'warning')
        raise NotFoundError(f"Server '{server_id}' does not exist")

    server = Munch.fromDict(dict(servers[server_id]))
    server.id = server_id
    server.name = server.get('name') or server_id
    server.environment = server.get('environment') or Munch()
    return server


# Returns the storage gateway of a server
def server_gateway(server: dict) -> FileGateway:
    if server.get('path'):
        return LocalFileGateway(server['path'])

    if server.get('uuid'):
        daemon = server.get('daemon') or constants.app_config.daemon
        if not daemon.get('url'):
            raise StorageError(f"'{server.get('id')}' uses daemon storage, but no daemon URL is configured")
        return DaemonFileGateway(daemon['url'], daemon.get('token'), server['uuid'])

    raise StorageError(f"'{server.get('id')}' has no 'path' or 'uuid' to store files")
