# notesync/config.py
# Description: Configuration management for the notesync package.
#
# Imports
import copy
import os
import sys
if sys.version_info < (3, 11):
    import tomli as tomllib
else:
    import tomllib
from pathlib import Path
from typing import Dict, Any, Optional, Tuple
#
# Third-Party Imports
import toml
from loguru import logger
#
#######################################################################################################################
#
# Functions:

# --- Path to the configuration file ---
DEFAULT_CONFIG_PATH = Path.home() / ".config" / "notesync" / "config.toml"
BASE_DATA_DIR = Path.home() / ".local" / "share" / "notesync"

CONFIG_TOML_CONTENT = """
# Configuration for notesync
# Values in this file override the built-in defaults.

[remote]
# Supabase project URL and anon key. When either is empty (and the
# SUPABASE_URL / SUPABASE_ANON_KEY environment variables are unset) the
# notes run in local-only mode.
url = ""
anon_key = ""
url_env_var = "SUPABASE_URL"
anon_key_env_var = "SUPABASE_ANON_KEY"
poll_interval_seconds = 5.0
request_timeout_seconds = 30.0

[sync]
debounce_seconds = 1.0
sync_interval_seconds = 30
retry_delay_seconds = 5
max_retries = 3

[database]
notes_db_path = "~/.local/share/notesync/notes.db"

[logging]
log_level = "INFO"
log_filename = "notesync.log"
console = true

[ai]
# Defaults to <remote.url>/functions/v1 when empty
functions_url = ""
"""

try:
    DEFAULT_CONFIG_FROM_TOML: Dict[str, Any] = tomllib.loads(CONFIG_TOML_CONTENT)
except tomllib.TOMLDecodeError as e:
    logger.critical(f"Could not parse internal CONFIG_TOML_CONTENT: {e}")
    DEFAULT_CONFIG_FROM_TOML = {}

_CONFIG_CACHE: Optional[Dict[str, Any]] = None


def get_config_path() -> Path:
    """Config file location; NOTESYNC_CONFIG_PATH overrides the default."""
    env_path = os.getenv("NOTESYNC_CONFIG_PATH")
    if env_path:
        return Path(env_path).expanduser()
    return DEFAULT_CONFIG_PATH


def deep_merge_dicts(base: Dict, update: Dict) -> Dict:
    """Recursively merges update_dict into base_dict."""
    merged = copy.deepcopy(base)
    for key, value in update.items():
        if isinstance(value, dict) and key in merged and isinstance(merged[key], dict):
            merged[key] = deep_merge_dicts(merged[key], value)
        else:
            merged[key] = value
    return merged


def load_config(force_reload: bool = False) -> Dict[str, Any]:
    """
    Loads settings from the TOML config file.
    If the file doesn't exist, it's created from CONFIG_TOML_CONTENT.
    File values are merged on top of the built-in defaults.
    """
    global _CONFIG_CACHE
    if _CONFIG_CACHE is not None and not force_reload:
        return _CONFIG_CACHE

    loaded_config = copy.deepcopy(DEFAULT_CONFIG_FROM_TOML)
    config_path = get_config_path()

    if not config_path.exists():
        logger.info(f"Config file not found at {config_path}. Creating it with default values.")
        try:
            config_path.parent.mkdir(parents=True, exist_ok=True)
            with open(config_path, "w", encoding="utf-8") as f:
                f.write(CONFIG_TOML_CONTENT)
        except OSError as e:
            logger.error(f"Could not create default config file {config_path}: {e}. Using internal defaults.")
    else:
        try:
            with open(config_path, "rb") as f:
                user_config = tomllib.load(f)
            loaded_config = deep_merge_dicts(loaded_config, user_config)
            logger.info(f"Loaded config from {config_path}")
        except tomllib.TOMLDecodeError as e:
            logger.error(f"Error decoding TOML config file {config_path}: {e}. Using internal defaults.")
        except OSError as e:
            logger.error(f"Could not read config file {config_path}: {e}. Using internal defaults.")

    _CONFIG_CACHE = loaded_config
    return _CONFIG_CACHE


def get_setting(section: str, key: str, default: Any = None) -> Any:
    """Helper to get a specific setting from the loaded configuration."""
    config = load_config()
    section_data = config.get(section)
    if isinstance(section_data, dict):
        return section_data.get(key, default)
    return default


def save_setting(section: str, key: str, value: Any) -> bool:
    """
    Saves a single setting to the user's TOML file and reloads the cache.

    Nested sections use dotted names (e.g. "remote.extra").

    Returns:
        True if the setting was written, False otherwise.
    """
    config_path = get_config_path()
    logger.info(f"Saving setting [{section}].{key}")

    config_data: Dict[str, Any] = {}
    if config_path.exists():
        try:
            with open(config_path, "rb") as f:
                config_data = tomllib.load(f)
        except tomllib.TOMLDecodeError as e:
            logger.error(f"Corrupted config file at {config_path}. Cannot save: {e}")
            return False

    current_level = config_data
    try:
        for part in section.split('.'):
            current_level = current_level.setdefault(part, {})
        current_level[key] = value
    except (TypeError, AttributeError):
        logger.error(f"Could not set '{key}' in section '{section}': part of the path is not a table")
        return False

    try:
        config_path.parent.mkdir(parents=True, exist_ok=True)
        with open(config_path, "w", encoding="utf-8") as f:
            toml.dump(config_data, f)
    except OSError as e:
        logger.error(f"Failed to write config to {config_path}: {e}")
        return False

    load_config(force_reload=True)
    return True


def get_notes_db_path() -> Path:
    default_path = str(BASE_DATA_DIR / "notes.db")
    db_path_str = get_setting("database", "notes_db_path", default_path)
    return Path(db_path_str).expanduser().resolve()


def get_log_file_path() -> Path:
    log_filename = get_setting("logging", "log_filename", "notesync.log")
    return get_notes_db_path().parent / log_filename


def get_remote_credentials() -> Tuple[Optional[str], Optional[str]]:
    """
    Resolve the Supabase URL and anon key.

    The config file wins; the environment variables named in [remote] are the fallback.
    Empty values come back as None.
    """
    url = get_setting("remote", "url", "") or None
    anon_key = get_setting("remote", "anon_key", "") or None
    if not url:
        url = os.getenv(get_setting("remote", "url_env_var", "SUPABASE_URL")) or None
    if not anon_key:
        anon_key = os.getenv(get_setting("remote", "anon_key_env_var", "SUPABASE_ANON_KEY")) or None
    return url, anon_key


def get_sync_settings() -> Dict[str, Any]:
    """Typed view of the [sync] and [remote] timing settings."""
    return {
        'debounce_seconds': float(get_setting("sync", "debounce_seconds", 1.0)),
        'sync_interval': float(get_setting("sync", "sync_interval_seconds", 30)),
        'retry_delay': float(get_setting("sync", "retry_delay_seconds", 5)),
        'max_retries': int(get_setting("sync", "max_retries", 3)),
        'poll_interval': float(get_setting("remote", "poll_interval_seconds", 5.0)),
        'request_timeout': float(get_setting("remote", "request_timeout_seconds", 30.0)),
    }


def get_ai_functions_url() -> Optional[str]:
    functions_url = get_setting("ai", "functions_url", "")
    if functions_url:
        return functions_url.rstrip('/')
    url, _ = get_remote_credentials()
    if url:
        return f"{url.rstrip('/')}/functions/v1"
    return None

#
# End of config.py
#######################################################################################################################
