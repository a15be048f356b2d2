# feedsync/config.py
# Description: TOML configuration: built-in defaults, the user's config file, then environment overrides.
#
# Imports
import copy
import os
import tomllib
from pathlib import Path
from typing import Any, Dict, Optional, Union
#
# 3rd-Party Imports
import toml
from loguru import logger
#
# Local Imports
#
#######################################################################################################################
#
# Functions:

DEFAULT_CONFIG_PATH = Path.home() / ".config" / "feedsync" / "config.toml"
BASE_DATA_DIR = Path.home() / ".local" / "share" / "feedsync"

CONFIG_TOML_CONTENT = """
# Configuration for feedsync
[API]
base_url = "http://127.0.0.1:8080/api/v0"
token = ""
timeout = 30.0

[Sync]
client_id = "feedsync_local_instance_v1"
page_size = 20
database_insertion = true
max_batch_load_from_disk = 40

[Database]
path = "~/.local/share/feedsync/feed_cache.db"
enable_fts = true

[Logging]
level = "INFO"
log_file = ""
log_max_bytes = 10485760
log_backup_count = 5

# Per-channel query parameters, passed to the server unmodified.
# [Channels."1234"]
# include_annotations = 1
"""

# Environment variable -> (section, key)
ENV_OVERRIDES = {
    "FEEDSYNC_API_URL": ("API", "base_url"),
    "FEEDSYNC_API_TOKEN": ("API", "token"),
    "FEEDSYNC_DB_PATH": ("Database", "path"),
}

try:
    DEFAULT_CONFIG_FROM_TOML: Dict[str, Any] = tomllib.loads(CONFIG_TOML_CONTENT)
except tomllib.TOMLDecodeError as e:
    logger.critical(f"FATAL: Could not parse internal CONFIG_TOML_CONTENT: {e}.")
    DEFAULT_CONFIG_FROM_TOML = {}


def deep_merge_dicts(base: Dict, update: Dict) -> Dict:
    """Recursively merges update into a copy of base."""
    merged = copy.deepcopy(base)
    for key, value in update.items():
        if isinstance(value, dict) and key in merged and isinstance(merged[key], dict):
            merged[key] = deep_merge_dicts(merged[key], value)
        else:
            merged[key] = value
    return merged


def _apply_env_overrides(config: Dict[str, Any], environ: Optional[Dict[str, str]] = None) -> Dict[str, Any]:
    environ = os.environ if environ is None else environ
    for env_name, (section, key) in ENV_OVERRIDES.items():
        value = environ.get(env_name)
        if value:
            config.setdefault(section, {})[key] = value
            logger.debug(f"Config [{section}].{key} overridden by ${env_name}")
    return config


_CONFIG_CACHE: Optional[Dict[str, Any]] = None


def load_settings(force_reload: bool = False, config_path: Optional[Path] = None,
                  environ: Optional[Dict[str, str]] = None) -> Dict[str, Any]:
    """
    Loads settings from `config_path` (default ~/.config/feedsync/config.toml) merged over
    the built-in defaults, then applies environment overrides. A missing file is not an
    error. A malformed file is logged and ignored.
    """
    global _CONFIG_CACHE
    if _CONFIG_CACHE is not None and not force_reload and config_path is None:
        return _CONFIG_CACHE

    path = Path(config_path) if config_path is not None else DEFAULT_CONFIG_PATH
    loaded_config = copy.deepcopy(DEFAULT_CONFIG_FROM_TOML)

    if path.exists():
        try:
            with open(path, "rb") as f:
                user_config_from_file = tomllib.load(f)
            loaded_config = deep_merge_dicts(loaded_config, user_config_from_file)
            logger.info(f"Loaded config from {path}")
        except tomllib.TOMLDecodeError as e:
            logger.error(f"Error decoding TOML config file {path}: {e}. Using internal defaults.")
        except OSError as e:
            logger.error(f"Could not read config file {path}: {e}. Using internal defaults.")
    else:
        logger.info(f"Config file not found at {path}. Using internal defaults.")

    loaded_config = _apply_env_overrides(loaded_config, environ)
    if config_path is None:
        _CONFIG_CACHE = loaded_config
    logger.debug(f"load_settings returning config with top-level keys: {list(loaded_config.keys())}")
    return loaded_config


def get_setting(section: str, key: str, default: Any = None, settings: Optional[Dict[str, Any]] = None) -> Any:
    config = settings if settings is not None else load_settings()
    section_data = config.get(section)
    if isinstance(section_data, dict):
        return section_data.get(key, default)
    return default


def save_setting_to_config(section: str, key: str, value: Any, config_path: Optional[Path] = None) -> bool:
    """
    Writes one setting into the user's config file, keeping everything else in it.
    Returns False if the file could not be read or written.
    """
    global _CONFIG_CACHE
    path = Path(config_path) if config_path is not None else DEFAULT_CONFIG_PATH
    config_data: Dict[str, Any] = {}
    try:
        if path.exists():
            with open(path, "rb") as f:
                config_data = tomllib.load(f)
        config_data.setdefault(section, {})[key] = value
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "w", encoding="utf-8") as f:
            toml.dump(config_data, f)
    except (OSError, tomllib.TOMLDecodeError) as e:
        logger.error(f"Failed to save [{section}].{key} to {path}: {e}")
        return False
    _CONFIG_CACHE = None
    logger.info(f"Saved [{section}].{key} to {path}")
    return True


def get_db_path(settings: Optional[Dict[str, Any]] = None) -> Union[str, Path]:
    default_db_path_str = DEFAULT_CONFIG_FROM_TOML.get("Database", {}).get(
        "path", str(BASE_DATA_DIR / "feed_cache.db"))
    db_path_str = get_setting("Database", "path", default_db_path_str, settings=settings)
    if db_path_str == ":memory:":
        return db_path_str
    return Path(db_path_str).expanduser().resolve()


def get_channel_parameters(settings: Optional[Dict[str, Any]] = None) -> Dict[str, Dict[str, Any]]:
    config = settings if settings is not None else load_settings()
    channels = config.get("Channels", {})
    if not isinstance(channels, dict):
        logger.error(f"Config [Channels] is not a table. Found: {type(channels)}. Ignoring it.")
        return {}
    return {str(channel_id): dict(params) for channel_id, params in channels.items() if isinstance(params, dict)}

#
# End of feedsync/config.py
#######################################################################################################################
