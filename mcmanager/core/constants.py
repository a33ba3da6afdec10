from datetime import datetime as dt, timezone
from colorama import Fore, Style
from collections import deque
from munch import Munch
from glob import glob
import traceback
import threading
import requests
import hashlib
import time
import json
import sys
import os
import re


# ---------------------------------------------- Global Variables ------------------------------------------------------

app_version  = "1.2.0"
app_title    = "pelican-mc-manager"
project_link = "https://github.com/pelican-dev/plugins"
user_agent   = f"{app_title}/{app_version} ({project_link})"


# Global debug mode, set with the MCMANAGER_DEBUG environment variable
debug          = os.getenv("MCMANAGER_DEBUG", "").lower() in ('1', 'true', 'yes')
enable_logging = True


# Paths
os_name = 'windows' if os.name == 'nt' else 'linux' if os.name == 'posix' else os.name

home = os.path.expanduser('~')
applicationFolder = os.getenv("MCMANAGER_HOME") or os.path.join(home, f'.{app_title}')
configDir = os.path.join(applicationFolder, 'Config')
logDir    = os.path.join(applicationFolder, 'Logs')


# Catalog endpoints
modrinth_url = "https://api.modrinth.com"
papermc_url  = "https://fill.papermc.io"


# Modrinth loaders grouped by the type of project they run
plugin_loaders = ('paper', 'purpur', 'folia', 'spigot', 'bukkit', 'velocity', 'bungeecord', 'waterfall')
mod_loaders    = ('fabric', 'quilt', 'forge', 'neoforge')

text_logo = [
    "                                      ",
    "  █▀▄▀█ █▀▀   █▀▄▀█ ▄▀█ █▄░█ ▄▀█ █▀▀  ",
    "  █░▀░█ █▄▄   █░▀░█ █▀█ █░▀█ █▀█ █▄█  ",
    "                                      "
]


# ---------------------------------------------- Global Functions ------------------------------------------------------

# Returns full error into a string for logging
def format_traceback(exception: Exception) -> str:
    last_trace = traceback.format_exc()
    return f'{exception}\nTraceback:\n{last_trace}'


# Format date string to be cross-platform compatible
def fmt_date(date_string: str):
    if os_name == 'windows': return date_string
    else: return date_string.replace('%#','%-')


# Returns current UTC time as an ISO-8601 string
def utc_now() -> str:
    return dt.now(timezone.utc).isoformat()


# Create folder if it doesn't exist
def folder_check(directory: str):
    if not os.path.exists(directory):
        try:
            os.makedirs(directory)
            send_log('folder_check', f"Created '{directory}'")
        except FileExistsError:
            pass
    else:
        send_log('folder_check', f"'{directory}' already exists")


# Returns SHA-256 checksum of file contents
def get_checksum(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


# Comparison tool for Minecraft version strings
def version_check(version_a: str, comparator: str, version_b: str) -> bool:
    def parse_version(version):
        # Split the version into parts, including handling pre-releases (-preX) and release candidates (-rcX)
        match = re.match(r'^(\d+(?:\.\d+)*)(?:-(pre|rc)(\d*))?', version.lower().strip())
        if not match:
            return ()

        parsed = [int(part) for part in match.group(1).split('.')]
        while len(parsed) < 3:
            parsed.append(0)

        # Pre-release marker, always less than the full release
        if match.group(2):
            parsed.extend([-1, int(match.group(3) or 0)])
        else:
            parsed.append(0)

        return tuple(parsed)

    try:
        # Parse both versions into comparable tuples
        parsed_a = parse_version(version_a)
        parsed_b = parse_version(version_b)

        # Perform the comparison
        if comparator == ">":
            return parsed_a > parsed_b
        elif comparator == ">=":
            return parsed_a >= parsed_b
        elif comparator == "<":
            return parsed_a < parsed_b
        elif comparator == "<=":
            return parsed_a <= parsed_b
        elif comparator == "==":
            return parsed_a == parsed_b
        else:
            raise ValueError(f"Invalid comparator: {comparator}")
    except Exception as e:
        send_log('version_check', f"could not compare '{version_a}' {comparator} '{version_b}': {e}", 'warning')
        return False


# --------------------------------------------- Request Functions ------------------------------------------------------

# Time-boxed in-memory cache for catalog responses
# {key: (expiry, value)}
request_cache = {}
_cache_lock = threading.Lock()

# Returns the cached value of 'key', or calls 'func' and remembers the result for 'minutes'
# With 'cache_none' unset, a None result (a failed fetch) is not remembered
def remember(key: str, minutes: float, func, cache_none=True):
    now = time.monotonic()

    with _cache_lock:
        if key in request_cache:
            expiry, value = request_cache[key]
            if expiry > now:
                send_log('remember', f"cache hit for '{key}'")
                return value
            del request_cache[key]

    value = func()

    if value is not None or cache_none:
        with _cache_lock:
            request_cache[key] = (now + (minutes * 60), value)

    return value


# Drops every cached catalog response, or only keys starting with 'prefix'
def clear_cache(prefix: str = None):
    with _cache_lock:
        if not prefix:
            request_cache.clear()
        else:
            for key in [k for k in request_cache if k.startswith(prefix)]:
                del request_cache[key]


# Return decoded JSON of a GET request, raises on transport and HTTP errors
def get_json(url: str, params: dict = None, timeout: float = None):
    timeout = timeout or app_config.request_timeout
    headers = {'User-Agent': user_agent, 'Accept': 'application/json'}

    try:
        response = requests.get(url, params=params, headers=headers, timeout=(timeout, timeout))
        send_log('get_json', f"request to '{url}': {response.status_code}")
        response.raise_for_status()
        return response.json()

    except Exception as e:
        send_log('get_json', f"error requesting '{url}': {format_traceback(e)}", 'error')
        raise e


# -------------------------------------------- Global Logging Functions ------------------------------------------------

class LoggingManager():

    # Internal log wrapper
    def _send_log(self, message: str, level: str = None, **kw):
        return self._dispatch(self.__class__.__name__, message, level, **kw)

    def __init__(self):
        self._line_header = '   >  '
        self._max_run_logs = 3
        self._object_width = 40
        self.path = os.path.join(logDir, "application")

        # Identify this launch (timestamp + pid -> short hash)
        self._launch_ts = dt.now()
        self._launch_id = hashlib.sha1(f"{self._launch_ts.isoformat()}-{os.getpid()}".encode("utf-8")).hexdigest()[:6]

        self._log_db = deque(maxlen=2500)
        self._db_lock = threading.Lock()  # protect _log_db
        self._io_lock = threading.Lock()  # serialize stdout writes to avoid interweaving

        # All stacks listed here are not logged unless "debug" is enabled
        self.debug_stacks = ('uvicorn',)

        self._title = self._generate_title()
        self._send_log(f'{Style.BRIGHT}{self._title}{Style.RESET_ALL}', 'info', _raw=True)

    def _generate_title(self):
        self.header_len = 50
        box = ('┃', '━', '┏', '┓', '┗', '┛')
        header = f"{box[2]}{box[1] * round(self.header_len / 2)}  {app_title} v{app_version}  {box[1] * round(self.header_len / 2)}{box[3]}"
        logo   = '\n'.join([f'{box[0]}   {i.ljust(len(header) - 5, " ")}{box[0]}' for i in text_logo])
        footer = f"{box[4]}{box[1] * (len(header) - 2)}{box[5]}"
        return f'{header}\n{logo}\n{footer}'

    # Receive from the rest of the app
    def _dispatch(self, object_data: str, message: str, level: str = None, stack: str = None, _raw=False):
        if '.' not in object_data and object_data not in ['main', 'api']:
            object_data = f'{__name__}.{object_data}'
        if object_data.startswith('mcmanager.'):
            object_data = object_data.split('.', 2)[-1]
        object_data = object_data.strip('. \n')
        if not level: level = 'debug'
        if not stack: stack = 'core'

        # Reject debug log stacks
        if stack in self.debug_stacks and level == 'debug':
            return

        data = self._add_entry(str(object_data), str(message), str(level), str(stack))
        self._print(data, _raw)

    def _add_entry(self, object_data: str, message: str, level: str, stack: str):
        data = {'time': dt.now(), 'object_data': object_data, 'level': level, 'stack': stack, 'message': message}
        with self._db_lock:
            self._log_db.append(data)
        return data

    def _prune_logs(self):
        files = sorted(
            (p for p in glob(os.path.join(self.path, f"{app_title}_*.log")) if os.path.isfile(p)),
            key = os.path.getmtime,
            reverse = True
        )
        for p in files[self._max_run_logs:]:
            try: os.remove(p)
            except OSError: pass

    def _get_file_name(self):
        time_stamp = self._launch_ts.strftime(fmt_date("%#H-%M-%S_%#m-%#d-%y"))
        return os.path.join(self.path, f"{app_title}_{time_stamp}.log")

    def _print(self, data: dict, _raw: bool = False):
        object_data = data['object_data']
        message = data['message']
        level = data['level']
        stack = data['stack']

        # Only send messages if logging is enabled, and only log debug messages in debug mode
        if not (enable_logging and not (not debug and level == 'debug')):
            return

        level_color = {
            'debug': Fore.MAGENTA,
            'info': Fore.GREEN,
            'warning': Fore.YELLOW,
            'error': Fore.RED,
            'fatal': Fore.RED,
        }

        text_color = {
            'debug': Fore.RESET,
            'info': Fore.RESET,
            'warning': Fore.YELLOW,
            'error': Fore.RED,
            'fatal': Fore.RED,
        }

        def fmt_block(text: str, color: Fore = Fore.CYAN):
            return f'{Style.BRIGHT}{Fore.LIGHTBLACK_EX}[{color}{text}{Fore.LIGHTBLACK_EX}]{Style.RESET_ALL}'

        with self._io_lock:
            for x, line in enumerate(message.splitlines(), 0):

                if not _raw:
                    object_width = self._object_width - len(level)
                    timestamp = data['time'].strftime('%I:%M:%S %p')
                    tc = text_color.get(level, Fore.CYAN)
                    content = f'{tc}{line.strip()}' if x == 0 else f'{Fore.LIGHTBLACK_EX}{self._line_header}{tc}{line.rstrip()}'
                    line = (
                        f"{fmt_block(timestamp, Fore.WHITE)} "
                        f"{fmt_block(level.upper(), level_color.get(level, Fore.CYAN))} "
                        f"{fmt_block(f'{stack}: {object_data}'.ljust(object_width))} "
                        f"{content}"
                    ) if x == 0 else content

                else: line = line.strip()

                encoding = (sys.stdout and sys.stdout.encoding) or "utf-8"
                print(line.encode(encoding, errors="ignore").decode(encoding, errors="ignore"))

    # Write the entire in-memory log to a file, and clear the db
    def dump_to_disk(self) -> str:
        path = self._get_file_name()

        if not enable_logging or not self._log_db:
            with self._db_lock: self._log_db.clear()
            return path

        self._send_log(f"flushing logger to '{path}'")

        with self._db_lock:
            entries = list(self._log_db)
            self._log_db.clear()

        if not os.path.exists(path):
            folder_check(self.path)
            with open(path, "a+", encoding="utf-8", newline="\n") as f:
                launch_stamp = self._launch_ts.strftime(fmt_date("%#I:%M:%S %p %#m/%#d/%Y"))
                f.write(f"# {launch_stamp} (pid {os.getpid()}) id={self._launch_id}\n\n")

        with open(path, "a+", encoding="utf-8", newline="\n") as f:
            for e in entries:

                # Replace title log with formatting-free one
                if self._title in e['message']:
                    f.write(self._title + '\n')
                    continue

                if not debug and e['level'] == 'debug':
                    continue

                object_width = self._object_width - len(e['level'])
                timestamp = e['time'].strftime("%I:%M:%S %p")
                block = f"{e['stack']}: {e['object_data']}".ljust(object_width)

                lines = str(e['message']).splitlines() or [""]
                for i, line in enumerate(lines):
                    if i == 0: f.write(f"[{timestamp}] [{e['level'].upper()}] [{block}] {line.rstrip()}\n")
                    else: f.write(f"{self._line_header}{line.rstrip()}\n")

        self._prune_logs()
        return path

# Global logger wrapper
# Levels: 'debug', 'info', 'warning', 'error', 'fatal'
# Stacks: 'core', 'api'
log_manager: LoggingManager = LoggingManager()
send_log = log_manager._dispatch


# --------------------------------------------- Global Config Functions ------------------------------------------------

# Handles all operations when writing/reading from global config. Adding attributes changes the config file
class ConfigManager():

    # Internal log wrapper
    def _send_log(self, message: str, level: str = None):
        return send_log(self.__class__.__name__, message, level)

    def __init__(self, path: str = None):
        self._path = path or os.path.join(configDir, 'app-config.json')
        self._defaults = self._init_defaults()
        self._data = Munch({})

        if self.load_config(): self._send_log("initialized ConfigManager successfully", 'info')

    # Specify default values
    @staticmethod
    def _init_defaults():
        defaults = Munch({})
        defaults.latest_minecraft_version = "1.21.4"
        defaults.modrinth_url = modrinth_url
        defaults.papermc_url = papermc_url
        defaults.request_timeout = 5
        defaults.download_timeout = 120
        defaults.search_cache_minutes = 30
        defaults.version_cache_minutes = 30
        defaults.build_cache_minutes = 5
        defaults.page_size = 20
        defaults.lock_file = "mc-manager.lock"
        defaults.core_file_name = "server.jar"
        defaults.strict_storage = False
        defaults.verify_checksums = True
        defaults.daemon = {
            'url': None,
            'token': None
        }
        defaults.api = {
            'host': "127.0.0.1",
            'port': 7010
        }
        defaults.servers = {}
        return defaults

    def __setattr__(self, key, value):
        if key.startswith('_'):
            super().__setattr__(key, value)
        elif key not in self._defaults:
            raise AttributeError(f"'{self.__class__.__name__}' does not support '{key}'")
        else:
            self._data[key] = value
            self.save_config()

    def __getattr__(self, key):
        if key.startswith('_'):
            raise AttributeError(key)

        if key in self._data:

            # First, fix empty dictionaries
            if isinstance(self._data[key], dict) and isinstance(self._defaults[key], dict):
                for k, v in self._defaults[key].items():
                    if k not in self._data[key]:
                        self._data[key][k] = v

            return self._data[key]

        elif key in self._defaults:
            return self._defaults[key]
        raise AttributeError(f"'{self.__class__.__name__}' object has no attribute '{key}'")

    def load_config(self):
        if os.path.exists(self._path):
            with open(self._path, 'r', encoding='utf-8', errors='ignore') as file:
                try:
                    self._data = Munch.fromDict(json.loads(file.read()))
                    self._send_log(f"successfully loaded global configuration from '{self._path}'")
                    return True
                except json.decoder.JSONDecodeError:
                    pass

            self._send_log('failed to read global configuration, resetting...', 'error')
            self.reset()
            return False

        self._data = Munch({})
        return True

    def save_config(self):
        try:
            folder_check(os.path.dirname(self._path))
            with open(self._path, 'w') as file:
                json.dump(self._data, file, indent=2)

        except Exception as e: self._send_log(f"failed to save global configuration to '{self._path}': {format_traceback(e)}", 'error')
        else:                  self._send_log(f"successfully saved global configuration to '{self._path}'")

    def reset(self):
        if os.path.exists(self._path): os.remove(self._path)
        self._data = Munch({})
        self.save_config()

# Global config manager
app_config: ConfigManager = ConfigManager()
