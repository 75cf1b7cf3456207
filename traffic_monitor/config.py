import logging
import os
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Union

import yaml

log = logging.getLogger("TrafficMonitor.Config")

# --- Configuration ---
# The configuration file path. Can be overridden with the
# TRAFFIC_MONITOR_CONFIG environment variable or the --config argument.
CONFIG_FILE = os.getenv('TRAFFIC_MONITOR_CONFIG', 'traffic.yaml')
# The database file path.
# This is a relative path by default, so it will be created in the current
# working directory. It can be overridden with the TRAFFIC_MONITOR_DB_PATH
# environment variable or the `database.path` key of the config file.
DATABASE_FILE = os.getenv('TRAFFIC_MONITOR_DB_PATH', 'traffic.db')

SERVER_HOST = "127.0.0.1"
SERVER_PORT = 8766
UPDATE_INTERVAL_SECONDS = 60  # How often in-memory counters are flushed to the database
HEARTBEAT_INTERVAL_SECONDS = 30

# --- Log Following Configuration ---
START_POSITIONS = ('end', 'start', 'resume')
DEFAULT_START_POSITION = 'end'
READ_CHUNK_SIZE = 64 * 1024  # Bytes read per call while draining new data
MAX_LINE_BYTES = 1024 * 1024  # A pending line longer than this is discarded
FOLLOWER_POLL_INTERVAL_SECONDS = 5.0  # Fallback wake-up when no filesystem event arrives
FOLLOWER_RETRY_DELAY_SECONDS = 5.0  # Backoff between failed open attempts

# --- Database Concurrency Configuration ---
DB_THREAD_POOL_SIZE = 2  # A single flusher only ever needs one writer, plus one for status reads
DB_CONNECTION_TIMEOUT = 30.0  # SQLite busy timeout (seconds), bounds every write
DB_MAX_RETRIES = 3  # Number of retry attempts for locked database
DB_RETRY_BASE_DELAY = 0.5  # Base delay between retries (seconds)
DB_RETRY_MAX_DELAY = 5.0  # Maximum delay between retries (seconds)

# --- Store Limits ---
MAX_HOSTNAME_LENGTH = 200
MAX_BYTE_COUNT = 2 ** 63 - 1  # SQLite INTEGER is a signed 64-bit value


class ConfigError(Exception):
    """Raised when the configuration file is missing, unreadable or invalid."""


@dataclass(frozen=True)
class LogFileConfig:
    path: str
    start_position: str = DEFAULT_START_POSITION


@dataclass(frozen=True)
class DatabaseConfig:
    path: str = DATABASE_FILE
    timeout: float = DB_CONNECTION_TIMEOUT


@dataclass(frozen=True)
class ServerConfig:
    host: str = SERVER_HOST
    port: int = SERVER_PORT


@dataclass(frozen=True)
class TrafficConfig:
    logfiles: List[LogFileConfig] = field(default_factory=list)
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    server: ServerConfig = field(default_factory=ServerConfig)
    update_interval: float = UPDATE_INTERVAL_SECONDS
    max_line_bytes: int = MAX_LINE_BYTES


def _parse_logfile(entry: Union[str, Dict[str, Any]]) -> LogFileConfig:
    if isinstance(entry, str):
        path, start_position = entry, DEFAULT_START_POSITION
    elif isinstance(entry, dict):
        path = entry.get('path')
        start_position = entry.get('start_position', DEFAULT_START_POSITION)
    else:
        raise ConfigError(f"Invalid logfiles entry: {entry!r}. Expected a path or a mapping with 'path'.")

    if not isinstance(path, str) or not path:
        raise ConfigError(f"Invalid logfiles entry: {entry!r}. 'path' must be a non-empty string.")
    if start_position not in START_POSITIONS:
        raise ConfigError(
            f"Invalid start_position '{start_position}' for '{path}'. Expected one of {', '.join(START_POSITIONS)}.")
    return LogFileConfig(path=path, start_position=start_position)


def _positive_number(value: Any, name: str, kind=float):
    # bool is an int subclass, reject it explicitly
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ConfigError(f"'{name}' must be a number, got {value!r}.")
    if value <= 0:
        raise ConfigError(f"'{name}' must be greater than zero, got {value!r}.")
    return kind(value)


def parse_config(data: Optional[Dict[str, Any]], logfiles: Optional[List[str]] = None) -> TrafficConfig:
    """
    Validates a raw configuration mapping and builds a TrafficConfig.

    Log file paths passed in `logfiles` (from the command line) replace the
    configured list entirely.
    """
    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise ConfigError("Configuration root must be a mapping.")

    if logfiles:
        files = [LogFileConfig(path=p) for p in logfiles]
    else:
        raw_files = data.get('logfiles') or []
        if not isinstance(raw_files, list):
            raise ConfigError("'logfiles' must be a list.")
        files = [_parse_logfile(entry) for entry in raw_files]

    if not files:
        raise ConfigError("No log files configured. Add 'logfiles' to the config or pass paths on the command line.")

    paths = [f.path for f in files]
    if len(set(paths)) != len(paths):
        raise ConfigError("The same log file is configured more than once.")

    db_data = data.get('database')
    if db_data is None:
        db_data = {}
    if not isinstance(db_data, dict):
        raise ConfigError("'database' must be a mapping.")
    db_path = db_data.get('path', DATABASE_FILE)
    if not isinstance(db_path, str) or not db_path:
        raise ConfigError("'database.path' must be a non-empty string.")
    database = DatabaseConfig(
        path=db_path,
        timeout=_positive_number(db_data.get('timeout', DB_CONNECTION_TIMEOUT), 'database.timeout'),
    )

    server_data = data.get('server')
    if server_data is None:
        server_data = {}
    if not isinstance(server_data, dict):
        raise ConfigError("'server' must be a mapping.")
    port = server_data.get('port', SERVER_PORT)
    if isinstance(port, bool) or not isinstance(port, int) or not 1 <= port <= 65535:
        raise ConfigError(f"'server.port' must be an integer between 1 and 65535, got {port!r}.")
    server = ServerConfig(host=str(server_data.get('host', SERVER_HOST)), port=port)

    return TrafficConfig(
        logfiles=files,
        database=database,
        server=server,
        update_interval=_positive_number(data.get('update_interval', UPDATE_INTERVAL_SECONDS), 'update_interval'),
        max_line_bytes=_positive_number(data.get('max_line_bytes', MAX_LINE_BYTES), 'max_line_bytes', int),
    )


def load_config(path: Optional[str] = None, logfiles: Optional[List[str]] = None) -> TrafficConfig:
    """
    Loads the YAML configuration file. A missing file is only acceptable when
    log files are given on the command line; defaults are used for the rest.
    """
    path = path or CONFIG_FILE
    data = None
    try:
        with open(path, 'r', encoding='utf-8') as f:
            data = yaml.safe_load(f)
        log.info(f"Loaded configuration from '{path}'.")
    except FileNotFoundError:
        if not logfiles:
            raise ConfigError(f"Configuration file '{path}' not found.")
        log.info(f"Configuration file '{path}' not found, using defaults.")
    except OSError as e:
        raise ConfigError(f"Cannot read configuration file '{path}': {e}") from e
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in configuration file '{path}': {e}") from e

    return parse_config(data, logfiles)
