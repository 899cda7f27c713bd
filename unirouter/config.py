"""
Central settings loader for unirouter.

Reads ``config/config.yaml`` and ``.env``, merges environment-variable
overrides (``UNIROUTER_`` prefix), and exposes a typed :class:`Settings`
singleton via :func:`get_settings`.

These are process-level defaults (cache sizes, health-check timers,
logging).  The routing rules themselves live in the JSON router
configuration handled by :mod:`unirouter.router_config`.
"""

import logging
import os
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional

import yaml
from dotenv import load_dotenv

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Resolve project root (directory containing ``config/``)
# ---------------------------------------------------------------------------

_THIS_DIR = Path(__file__).resolve().parent          # unirouter/
_PROJECT_ROOT = _THIS_DIR.parent                     # repo root


def _project_path(*parts: str) -> Path:
    """Build an absolute path relative to the project root."""
    return _PROJECT_ROOT.joinpath(*parts)


def resolve_path(path: str) -> Path:
    """Resolve a configured path: absolute, cwd-relative, else project-relative."""
    candidate = Path(path).expanduser()
    if candidate.is_absolute() or candidate.exists():
        return candidate
    return _project_path(path)


# ---------------------------------------------------------------------------
# Nested settings dataclasses
# ---------------------------------------------------------------------------


@dataclass
class RouterSettings:
    config_path: str = "config/router.json"
    default_route: str = "openrouter,anthropic/claude-3.5-sonnet"
    external_function_timeout_seconds: float = 5.0


@dataclass
class CacheSettings:
    enabled: bool = True
    max_entries: int = 1000
    ttl_seconds: int = 300


@dataclass
class InstanceSettings:
    max_instances: int = 10
    health_check_interval_seconds: float = 30.0
    health_check_timeout_seconds: float = 5.0
    recovery_timeout_seconds: float = 60.0
    max_connections: int = 100
    drain_poll_interval_seconds: float = 1.0
    load_balancing: str = "round-robin"


@dataclass
class LoggingSettings:
    level: str = "INFO"
    format: str = "text"
    log_to_file: bool = False
    log_dir: str = "logs"


@dataclass
class Settings:
    """Top-level settings container."""
    router: RouterSettings = field(default_factory=RouterSettings)
    cache: CacheSettings = field(default_factory=CacheSettings)
    instances: InstanceSettings = field(default_factory=InstanceSettings)
    logging: LoggingSettings = field(default_factory=LoggingSettings)


# ---------------------------------------------------------------------------
# YAML loader
# ---------------------------------------------------------------------------

def _load_yaml(path: Path) -> Dict[str, Any]:
    """Read and parse a YAML file.  Returns ``{}`` if the file is missing."""
    if not path.exists():
        logger.warning("Config file not found: %s", path)
        return {}
    with open(path, "r", encoding="utf-8") as fh:
        data = yaml.safe_load(fh)
    return data if isinstance(data, dict) else {}


def _apply_dict(target: object, data: Dict[str, Any], section_name: str = "") -> None:
    """Apply *data* values onto a settings section, ignoring unknown keys.

    Quoted YAML scalars (``max_entries: "500"``) are cast to the field's
    type the same way environment overrides are.
    """
    for key, value in data.items():
        if not hasattr(target, key):
            logger.debug("Ignoring unknown setting: %s.%s", section_name, key)
            continue
        current = getattr(target, key)
        if isinstance(value, str) and not isinstance(current, str):
            try:
                value = _TYPE_MAP[type(current)](value)
            except (KeyError, ValueError):
                logger.warning("Invalid value for %s.%s: %r", section_name, key, value)
                continue
        setattr(target, key, value)


# ---------------------------------------------------------------------------
# Env-var overrides  (UNIROUTER_SECTION_KEY  e.g. UNIROUTER_CACHE_TTL_SECONDS)
# ---------------------------------------------------------------------------

_SECTIONS = ["router", "cache", "instances", "logging"]

_TYPE_MAP = {
    int: int,
    float: float,
    bool: lambda v: v.lower() in ("1", "true", "yes"),
    str: str,
}


def _apply_env_overrides(settings: Settings) -> None:
    """Override scalar fields via ``UNIROUTER_<SECTION>_<KEY>`` env vars."""
    for section_name in _SECTIONS:
        section = getattr(settings, section_name, None)
        if section is None:
            continue
        prefix = f"UNIROUTER_{section_name.upper()}_"
        for key in list(vars(section)):
            env_key = prefix + key.upper()
            env_val = os.environ.get(env_key)
            if env_val is None:
                continue
            current = getattr(section, key)
            cast = _TYPE_MAP.get(type(current), str)
            try:
                setattr(section, key, cast(env_val))
                logger.debug("Env override applied: %s=%s", env_key, env_val)
            except (ValueError, TypeError):
                logger.warning("Invalid env override %s=%s", env_key, env_val)


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------

# Mirrors ``unirouter.instances.models.StrategyType``; importing it here
# would be circular.
LOAD_BALANCING_STRATEGIES = ("round-robin", "least-connections", "random", "weighted")
LOG_FORMATS = ("text", "json")

_CHOICES = {
    ("instances", "load_balancing"): LOAD_BALANCING_STRATEGIES,
    ("logging", "format"): LOG_FORMATS,
}

# Zero disables the health-check loop and expiry, so only these must be > 0.
_POSITIVE = [
    ("router", "external_function_timeout_seconds"),
    ("cache", "max_entries"),
    ("instances", "max_instances"),
    ("instances", "max_connections"),
    ("instances", "health_check_timeout_seconds"),
    ("instances", "drain_poll_interval_seconds"),
]

_NON_NEGATIVE = [
    ("cache", "ttl_seconds"),
    ("instances", "health_check_interval_seconds"),
    ("instances", "recovery_timeout_seconds"),
]


def _reset_field(settings: Settings, section_name: str, key: str, reason: str) -> None:
    section = getattr(settings, section_name)
    default = getattr(type(section)(), key)
    logger.warning(
        "Invalid setting %s.%s=%r (%s); using %r",
        section_name, key, getattr(section, key), reason, default,
    )
    setattr(section, key, default)


def _validate_settings(settings: Settings) -> None:
    """Reset out-of-range values to their defaults.

    Strategy and log-format names are compared case-insensitively and
    stored lower-cased.
    """
    for (section_name, key), allowed in _CHOICES.items():
        section = getattr(settings, section_name)
        value = str(getattr(section, key)).strip().lower()
        if value in allowed:
            setattr(section, key, value)
        else:
            _reset_field(settings, section_name, key, f"expected one of {', '.join(allowed)}")

    for section_name, key in _POSITIVE:
        value = getattr(getattr(settings, section_name), key)
        if isinstance(value, bool) or not isinstance(value, (int, float)) or value <= 0:
            _reset_field(settings, section_name, key, "must be positive")

    for section_name, key in _NON_NEGATIVE:
        value = getattr(getattr(settings, section_name), key)
        if isinstance(value, bool) or not isinstance(value, (int, float)) or value < 0:
            _reset_field(settings, section_name, key, "must not be negative")


# ---------------------------------------------------------------------------
# Singleton
# ---------------------------------------------------------------------------

_settings: Optional[Settings] = None
_lock = threading.Lock()


def get_settings(
    *,
    yaml_path: Optional[Path] = None,
    env_path: Optional[Path] = None,
    _force_reload: bool = False,
) -> Settings:
    """Return the application-wide :class:`Settings` singleton.

    On first call (or when ``_force_reload=True``) the function:

    1. Calls ``load_dotenv()`` to populate env vars from ``.env``.
    2. Reads ``config/config.yaml``.
    3. Applies ``UNIROUTER_*`` environment-variable overrides.
    4. Resets invalid values (unknown strategy, negative timers) to defaults.

    Args:
        yaml_path: Override the YAML config file path (testing).
        env_path: Override the ``.env`` file path (testing).
        _force_reload: Re-read everything even if already loaded.

    Returns:
        The global ``Settings`` instance.
    """
    global _settings

    if _settings is not None and not _force_reload:
        return _settings

    with _lock:
        if _settings is not None and not _force_reload:
            return _settings

        dotenv_path = env_path or _project_path(".env")
        load_dotenv(dotenv_path, override=True)

        config_path = yaml_path or _project_path("config", "config.yaml")
        raw = _load_yaml(config_path)

        settings = Settings()
        for section_name in _SECTIONS:
            section_data = raw.get(section_name)
            if isinstance(section_data, dict):
                _apply_dict(getattr(settings, section_name), section_data, section_name)

        _apply_env_overrides(settings)
        _validate_settings(settings)

        _settings = settings
        logger.info("Settings loaded from %s", config_path)
        return _settings


def reset_settings() -> None:
    """Clear the cached singleton (for testing)."""
    global _settings
    with _lock:
        _settings = None
