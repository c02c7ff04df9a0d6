# config.py - Runtime configuration (DB path, engine settings)
#
# Single place for loading configuration. Persistence (database.py) and the
# services import from here instead of defining config logic themselves.

import json
import logging
import os
import sys
from dataclasses import dataclass
from pathlib import Path

from domain.errors import ValidationError

logger = logging.getLogger(__name__)

# Environment variable to override database path directly (highest priority)
DB_PATH_ENV = "CAL_LIFECYCLE_DB_PATH"
CONFIG_FILE_NAME = "config.json"

MONTH_OVERFLOW_CLAMP = "clamp"
MONTH_OVERFLOW_ROLLOVER = "rollover"

# Engine setting -> (environment variable, parser)
_SETTING_ENV = {
    "month_overflow": ("CAL_LIFECYCLE_MONTH_OVERFLOW", str),
    "due_soon_days": ("CAL_LIFECYCLE_DUE_SOON_DAYS", int),
    "default_graticule_constant": ("CAL_LIFECYCLE_GRATICULE_CONSTANT", float),
    "max_frequency_months": ("CAL_LIFECYCLE_MAX_FREQUENCY", int),
    "archive_retention_days": ("CAL_LIFECYCLE_ARCHIVE_RETENTION_DAYS", int),
}


@dataclass(frozen=True)
class EngineSettings:
    month_overflow: str = MONTH_OVERFLOW_CLAMP
    due_soon_days: int = 30
    default_graticule_constant: float = 50000.0
    max_frequency_months: int = 120
    archive_retention_days: int = 365

    def __post_init__(self):
        if self.month_overflow not in (MONTH_OVERFLOW_CLAMP, MONTH_OVERFLOW_ROLLOVER):
            raise ValidationError(f"month_overflow must be 'clamp' or 'rollover', not {self.month_overflow!r}")
        if self.due_soon_days < 0:
            raise ValidationError("due_soon_days must be >= 0")
        if self.default_graticule_constant <= 0:
            raise ValidationError("default_graticule_constant must be > 0")
        if self.max_frequency_months < 1:
            raise ValidationError("max_frequency_months must be >= 1")
        if self.archive_retention_days < 0:
            raise ValidationError("archive_retention_days must be >= 0")


DEFAULT_SETTINGS = EngineSettings()


def get_app_base_dir() -> Path:
    """Directory containing the app (install dir when frozen, script dir when run from source)."""
    if getattr(sys, "frozen", False):
        return Path(sys.executable).resolve().parent
    return Path(__file__).resolve().parent


def get_user_data_dir() -> Path:
    """Per-user data directory (%APPDATA%\\CalibrationLifecycle or ~/.config/CalibrationLifecycle)."""
    if sys.platform == "win32":
        base = os.environ.get("APPDATA", "")
        base = Path(base) if base else Path.home() / "AppData" / "Roaming"
    else:
        base = Path.home() / ".config"
    return base / "CalibrationLifecycle"


def _read_config_file(base: Path | None = None) -> tuple[dict, Path | None]:
    """Return (parsed config.json, its path). Missing or unreadable file gives ({}, None)."""
    config_path = (base or get_app_base_dir()) / CONFIG_FILE_NAME
    if not config_path.is_file():
        return {}, None
    try:
        with open(config_path, "r", encoding="utf-8") as f:
            data = json.load(f)
    except (json.JSONDecodeError, OSError) as e:
        logger.warning("Ignoring unreadable config file %s: %s", config_path, e)
        return {}, None
    if not isinstance(data, dict):
        logger.warning("Ignoring config file %s: top level is not an object", config_path)
        return {}, None
    return data, config_path


def load_db_path(base: Path | None = None) -> Path:
    """
    Load database path from configuration.
    Order: DB_PATH_ENV > config.json "db_path" > per-user default.
    """
    env_path = os.environ.get(DB_PATH_ENV)
    if env_path and env_path.strip():
        return Path(env_path.strip())

    data, config_path = _read_config_file(base)
    raw = data.get("db_path")
    if raw and isinstance(raw, str) and raw.strip():
        p = Path(raw.strip())
        if not p.is_absolute() and config_path is not None:
            p = (config_path.parent / p).resolve()
        return p

    return get_user_data_dir() / "calibration.db"


def load_engine_settings(base: Path | None = None) -> EngineSettings:
    """
    Engine settings from the "lifecycle" object in config.json, each
    overridable by its environment variable. Raises ValidationError on bad values.
    """
    data, _ = _read_config_file(base)
    section = data.get("lifecycle") or {}
    if not isinstance(section, dict):
        raise ValidationError("config.json 'lifecycle' must be an object")

    values = {}
    for name, (env_name, parse) in _SETTING_ENV.items():
        raw = os.environ.get(env_name)
        source = env_name
        if raw is None or not raw.strip():
            if name not in section:
                continue
            raw = section[name]
            source = f"config.json lifecycle.{name}"
        try:
            values[name] = parse(raw.strip() if isinstance(raw, str) else raw)
        except (TypeError, ValueError):
            raise ValidationError(f"Invalid value for {source}: {raw!r}") from None
    return EngineSettings(**values)
