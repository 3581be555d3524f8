# swarmboard/config.py - Fallback <- environment <- config.json
import json
import os
from pathlib import Path

from dotenv import load_dotenv

from .errors import ConfigurationError

# Define fallback values
FALLBACK_CONFIG = {
    "DATA_PATH": "./data",
    "LOG_LEVEL": "INFO",
    "TRACKER_REFRESH_SECONDS": 10,
    "RECONNECT_DELAY_SECONDS": None,
    "CLIENTS": [],
    # Single-client shorthand, used when CLIENTS is empty
    "TORRENT_CLIENT_TYPE": "",
    "TORRENT_CLIENT_HOST": "localhost",
    "TORRENT_CLIENT_PORT": None,
    "TORRENT_CLIENT_USERNAME": "",
    "TORRENT_CLIENT_PASSWORD": "",
}

DEFAULT_PORTS = {
    "amule": 4712,
    "deluge": 8112,
    "qbittorrent": 8080,
    "rtorrent": 8000,
    "transmission": 9091,
}

INT_KEYS = ("TRACKER_REFRESH_SECONDS", "RECONNECT_DELAY_SECONDS", "TORRENT_CLIENT_PORT")


def get_data_path(config=None) -> Path:
    raw = (config or {}).get("DATA_PATH") or os.getenv("DATA_PATH", FALLBACK_CONFIG["DATA_PATH"])
    data_path = Path(raw).resolve()
    data_path.mkdir(parents=True, exist_ok=True)
    return data_path


def _coerce_env(key, value):
    if key == "CLIENTS":
        try:
            return json.loads(value)
        except json.JSONDecodeError as e:
            raise ConfigurationError(f"CLIENTS is not valid JSON: {e}") from e
    if key in INT_KEYS:
        try:
            return int(value)
        except ValueError as e:
            raise ConfigurationError(f"{key} must be an integer, got {value!r}") from e
    return value


def load_config(config_file=None) -> dict:
    load_dotenv()
    config = FALLBACK_CONFIG.copy()

    env_config = {key: _coerce_env(key, os.getenv(key)) for key in config.keys() if os.getenv(key) is not None}
    config.update(env_config)

    config_file = Path(config_file) if config_file else get_data_path(config) / "config.json"
    if config_file.exists():
        with open(config_file, "r") as f:
            try:
                json_config = json.load(f)
            except json.JSONDecodeError as e:
                raise ConfigurationError(f"{config_file} is not valid JSON: {e}") from e
        config.update(json_config)

    if not config.get("CLIENTS") and config.get("TORRENT_CLIENT_TYPE"):
        config["CLIENTS"] = [{
            "type": config["TORRENT_CLIENT_TYPE"],
            "host": config.get("TORRENT_CLIENT_HOST"),
            "port": config.get("TORRENT_CLIENT_PORT"),
            "username": config.get("TORRENT_CLIENT_USERNAME"),
            "password": config.get("TORRENT_CLIENT_PASSWORD"),
        }]
    return config


def save_config(config, config_file=None) -> None:
    config_to_save = {key: config.get(key) for key in FALLBACK_CONFIG.keys()}
    config_file = Path(config_file) if config_file else get_data_path(config) / "config.json"
    with open(config_file, "w") as f:
        json.dump(config_to_save, f, indent=4)


def normalize_client_config(record, global_config=None) -> dict:
    """
    Validates one client record and fills in defaults. The instance id is
    '<type>-<host>-<port>' unless the record names one.
    """
    if not isinstance(record, dict):
        raise ConfigurationError(f"Client record must be an object, got {type(record).__name__}")
    client_type = (record.get("type") or "").lower()
    if client_type not in DEFAULT_PORTS:
        raise ConfigurationError(f"Unsupported client type: {record.get('type')!r}")

    host = record.get("host") or "localhost"
    try:
        port = int(record.get("port") or DEFAULT_PORTS[client_type])
    except (TypeError, ValueError) as e:
        raise ConfigurationError(f"Invalid port for {client_type} client: {record.get('port')!r}") from e

    normalized = dict(record)
    normalized.update({
        "type": client_type,
        "host": host,
        "port": port,
        "enabled": bool(record.get("enabled", True)),
        "useSsl": bool(record.get("useSsl", False)),
        "username": record.get("username") or "",
        "password": record.get("password") or "",
    })
    normalized["id"] = record.get("id") or f"{client_type}-{host}-{port}"

    global_delay = (global_config or {}).get("RECONNECT_DELAY_SECONDS")
    if not record.get("reconnectDelay") and global_delay:
        normalized["reconnectDelay"] = int(global_delay)
    return normalized
