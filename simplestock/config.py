"""
Project configuration and constants.

Settings live in ``data/settings.json`` next to the database; missing keys
fall back to DEFAULT_SETTINGS.  The database location can be overridden with
the SIMPLESTOCK_DB_PATH environment variable.
"""
import json
import logging
import os
from pathlib import Path
from typing import Any, Dict, Optional

from .utils.paths import get_data_dir, get_db_path

logger = logging.getLogger(__name__)

DB_PATH_ENV = "SIMPLESTOCK_DB_PATH"
SETTINGS_FILENAME = "settings.json"

DEFAULT_SETTINGS: Dict[str, Any] = {
    "seed_on_startup": True,
    "backup_before_migrations": True,
    "max_backups": 10,
}

# Name of the synthetic section that collects uncategorized products
UNCATEGORIZED_SECTION = "Otros"


def get_database_path() -> Path:
    """Database path: SIMPLESTOCK_DB_PATH if set, else data/simplestock.db."""
    override = os.getenv(DB_PATH_ENV, "").strip()
    if override:
        return Path(override)
    return get_db_path()


def get_settings_file(data_dir: Optional[Path] = None) -> Path:
    return (data_dir or get_data_dir()) / SETTINGS_FILENAME


def load_settings(settings_file: Optional[Path] = None) -> Dict[str, Any]:
    """
    Load settings from settings.json merged over DEFAULT_SETTINGS.

    Unreadable or malformed files are logged and ignored.
    """
    settings = dict(DEFAULT_SETTINGS)
    path = settings_file or get_settings_file()

    if not path.exists():
        return settings

    try:
        with open(path, 'r', encoding='utf-8') as f:
            stored = json.load(f)
    except (json.JSONDecodeError, OSError) as e:
        logger.warning("Ignoring unreadable settings file %s: %s", path, e)
        return settings

    if not isinstance(stored, dict):
        logger.warning("Ignoring settings file %s: expected a JSON object", path)
        return settings

    for key, default in DEFAULT_SETTINGS.items():
        value = stored.get(key, default)
        if isinstance(value, type(default)):
            settings[key] = value
        else:
            logger.warning("Setting %r has invalid type %s, using default", key, type(value).__name__)

    return settings


def save_settings(updates: Dict[str, Any], settings_file: Optional[Path] = None) -> bool:
    """
    Merge *updates* into settings.json.

    Returns:
        True if successful, False otherwise
    """
    unknown = set(updates) - set(DEFAULT_SETTINGS)
    if unknown:
        raise KeyError(f"Unknown settings: {', '.join(sorted(unknown))}")

    path = settings_file or get_settings_file()
    settings = load_settings(path)
    settings.update(updates)

    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, 'w', encoding='utf-8') as f:
            json.dump(settings, f, indent=2)
        return True
    except OSError as e:
        logger.error("Could not write settings file %s: %s", path, e)
        return False
