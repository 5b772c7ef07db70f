"""
Filesystem locations used by SimpleStock.

Everything lives under one home directory:

    <home>/data/simplestock.db     database
    <home>/data/settings.json      settings
    <home>/data/backups/           pre-migration and manual backups
    <home>/logs/                   rotating log files

The home directory is SIMPLESTOCK_HOME when set, the folder holding the
executable for frozen builds, or the project root when running from source.
If a directory under it cannot be written, a per-user location is used
instead (%APPDATA%/SimpleStock on Windows, $XDG_DATA_HOME/simplestock or
~/.local/share/simplestock elsewhere).
"""

import os
import sys
from pathlib import Path

HOME_ENV = "SIMPLESTOCK_HOME"
DB_FILENAME = "simplestock.db"


def get_home_dir() -> Path:
    override = os.getenv(HOME_ENV, "").strip()
    if override:
        return Path(override).expanduser()
    if getattr(sys, "frozen", False):
        return Path(sys.executable).resolve().parent
    # simplestock/utils/paths.py -> project root
    return Path(__file__).resolve().parents[2]


def _user_dir() -> Path:
    if sys.platform.startswith("win"):
        return Path(os.environ.get("APPDATA") or Path.home()) / "SimpleStock"
    xdg = os.environ.get("XDG_DATA_HOME")
    return (Path(xdg) if xdg else Path.home() / ".local" / "share") / "simplestock"


def _is_writable(directory: Path) -> bool:
    """Create *directory* if needed and probe it with a throwaway file."""
    try:
        directory.mkdir(parents=True, exist_ok=True)
        probe = directory / ".simplestock_probe"
        probe.write_bytes(b"")
        probe.unlink()
    except OSError:
        return False
    return True


def _resolve(name: str) -> Path:
    preferred = get_home_dir() / name
    if _is_writable(preferred):
        return preferred
    fallback = _user_dir() / name
    fallback.mkdir(parents=True, exist_ok=True)
    return fallback


def get_data_dir() -> Path:
    return _resolve("data")


def get_logs_dir() -> Path:
    return _resolve("logs")


def get_db_path() -> Path:
    return get_data_dir() / DB_FILENAME


def get_backup_dir() -> Path:
    return get_data_dir() / "backups"
