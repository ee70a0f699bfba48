# src/turtleops/config.py
"""
Configuration + paths for turtleops.

Layers, lowest to highest precedence:
- built-in defaults below
- console settings (default timezone, report sort) saved in
  <data>/config.json
- TURTLEOPS_* environment variables
Per-organization settings live in the `project_config` table; these values
only apply to an organization that has none.

Data directory:
- TURTLEOPS_DATA_DIR (default /data) holds turtleops.sqlite and config.json
"""

from __future__ import annotations

import json
import os
import time
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError


DEFAULT_TIMEZONE = "America/New_York"
REPORT_SORTS = ("date_desc", "date_asc", "turtle")


# ----------------------------
# Low-level env parsing
# ----------------------------

def env_str(name: str, default: str) -> str:
    v = os.getenv(name)
    return v if v is not None and v.strip() else default


def env_int(name: str, default: int) -> int:
    v = os.getenv(name)
    if v is None or not v.strip():
        return default
    try:
        return int(v)
    except ValueError:
        return default


def valid_timezone(tz: str | None, fallback: str = DEFAULT_TIMEZONE) -> str:
    """
    Return ``tz`` if it names a known IANA zone, else ``fallback``.
    """
    if not tz:
        return fallback
    try:
        ZoneInfo(tz)
    except (ZoneInfoNotFoundError, ValueError):
        return fallback
    return tz


# ----------------------------
# Data types
# ----------------------------

@dataclass
class Settings:
    """
    Persistent console settings.

    Notes:
    - default_timezone is used for report dates when an organization has no
      project_config row.
    - search_limit caps turtle search results.
    """
    default_timezone: str = DEFAULT_TIMEZONE
    report_sort: str = "date_desc"
    search_limit: int = 200

    # misc
    last_updated_utc: float = 0.0

    def with_env_overrides(self) -> "Settings":
        """
        Copy with TURTLEOPS_* values applied on top.  The persisted
        settings are left as they were.
        """
        s = Settings(**asdict(self))
        s.default_timezone = valid_timezone(
            env_str("TURTLEOPS_TIMEZONE", s.default_timezone), s.default_timezone
        )
        sort = env_str("TURTLEOPS_REPORT_SORT", s.report_sort)
        if sort in REPORT_SORTS:
            s.report_sort = sort
        s.search_limit = max(1, env_int("TURTLEOPS_SEARCH_LIMIT", s.search_limit))
        return s


# ----------------------------
# Paths
# ----------------------------

def data_dir() -> Path:
    return Path(env_str("TURTLEOPS_DATA_DIR", "/data")).expanduser().resolve()


def config_path() -> Path:
    return data_dir() / "config.json"


def db_path() -> Path:
    # used by db.py default if TURTLEOPS_DB_URL not set
    return data_dir() / "turtleops.sqlite"


def _ensure_dir(path: Path) -> Path:
    """
    mkdir -p ``path``.  Without permission (no root, so no ``/data``) use a
    directory of the same name under the working directory and return that
    instead.
    """
    try:
        path.mkdir(parents=True, exist_ok=True)
        return path
    except PermissionError:
        fallback = Path.cwd() / path.name
        fallback.mkdir(parents=True, exist_ok=True)
        return fallback


def ensure_dirs() -> None:
    """
    Ensure the data directory exists.

    When the configured directory cannot be created (no access to `/data`),
    `./data` is used instead and TURTLEOPS_DATA_DIR is updated so subsequent
    calls to `data_dir()` in this process return the fallback.
    """
    dd_original = data_dir()
    dd = _ensure_dir(dd_original)
    if dd != dd_original:
        os.environ["TURTLEOPS_DATA_DIR"] = str(dd)


# ----------------------------
# Serialization
# ----------------------------

def _settings_from_dict(d: dict[str, Any]) -> Settings:
    sort = str(d.get("report_sort", "date_desc"))
    # Unknown keys are dropped.
    return Settings(
        default_timezone=valid_timezone(str(d.get("default_timezone", DEFAULT_TIMEZONE))),
        report_sort=sort if sort in REPORT_SORTS else "date_desc",
        search_limit=max(1, int(d.get("search_limit", 200))),
        last_updated_utc=float(d.get("last_updated_utc", 0.0)),
    )


def load_settings() -> Settings:
    """
    Read <data>/config.json (written with defaults on first run) and apply
    the environment overrides.
    """
    ensure_dirs()
    p = config_path()
    if not p.exists():
        s = Settings(last_updated_utc=time.time())
        save_settings(s)
        return s.with_env_overrides()

    try:
        data = json.loads(p.read_text(encoding="utf-8"))
        if not isinstance(data, dict):
            raise ValueError("config.json root is not an object")
        s = _settings_from_dict(data)
    except (OSError, ValueError, TypeError):
        # Unreadable file: start over from defaults.
        s = Settings(last_updated_utc=time.time())

    return s.with_env_overrides()


def save_settings(s: Settings) -> None:
    """
    Write <data>/config.json via a temp file + rename.
    """
    ensure_dirs()
    p = config_path()
    s = Settings(**asdict(s))
    s.last_updated_utc = time.time()

    tmp = p.with_suffix(".json.tmp")
    tmp.write_text(json.dumps(asdict(s), indent=2, sort_keys=True), encoding="utf-8")
    tmp.replace(p)
