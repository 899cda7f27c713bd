"""
Router configuration document.

The router is configured by a JSON document of the form::

    {
      "Providers": [{"name": "...", "models": [...], "defaultModel": "..."}],
      "Router": {"engine": "unified", "defaultRoute": "...", "rules": [...],
                 "cache": {...}, "debug": {...}}
    }

Older documents use a flat ``Router`` block (``default``, ``background``,
``think``, ``longContext``, ``webSearch``).  Those are converted into the
equivalent rule set on load, and :func:`migrate_config` rewrites them
permanently.
"""

import copy
import json
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple, Union

from pydantic import BaseModel, Field, ValidationError

from unirouter.config import get_settings, resolve_path
from unirouter.exceptions import ConfigurationError
from unirouter.routing.providers import ProviderConfig
from unirouter.routing.rules import RouteRule

logger = logging.getLogger(__name__)

UNIFIED_ENGINE = "unified"
DEFAULT_LONG_CONTEXT_THRESHOLD = 60000
SUBAGENT_MARKER = "<CCR-SUBAGENT-MODEL>"

# Legacy Router keys -> name of the rule that carries the same route.
_LEGACY_ROUTE_RULES = {
    "longContext": "longContext",
    "background": "background",
    "webSearch": "webSearch",
    "think": "thinking",
}


# ---------------------------------------------------------------------------
# Models
# ---------------------------------------------------------------------------


class CacheConfig(BaseModel):
    """``Router.cache`` block.  ``ttl`` is in milliseconds."""

    enabled: bool = True
    max_size: int = Field(default=1000, alias="maxSize", gt=0)
    ttl: int = Field(default=300000, ge=0)

    model_config = {"populate_by_name": True}

    @property
    def ttl_seconds(self) -> float:
        return self.ttl / 1000.0


class DebugConfig(BaseModel):
    """``Router.debug`` block."""

    enabled: bool = False
    log_level: str = Field(default="info", alias="logLevel")
    log_to_file: bool = Field(default=False, alias="logToFile")
    log_to_console: bool = Field(default=True, alias="logToConsole")
    log_dir: Optional[str] = Field(default=None, alias="logDir")

    model_config = {"populate_by_name": True}


class ContextThreshold(BaseModel):
    default: int = 1000
    long_context: int = Field(default=DEFAULT_LONG_CONTEXT_THRESHOLD, alias="longContext")

    model_config = {"populate_by_name": True}


class UnifiedRouterConfig(BaseModel):
    """The ``Router`` block in its unified (rule-based) form.

    Attributes:
        engine: Always ``"unified"``.
        default_route: Route used when no rule matches or routing fails.
        rules: Rules in load order.
        cache: Result cache settings.
        debug: Logging settings applied by the router.
        context_threshold: Token thresholds carried over from legacy
            configurations.
    """

    engine: str = UNIFIED_ENGINE
    default_route: str = Field(alias="defaultRoute")
    rules: List[RouteRule] = Field(default_factory=list)
    cache: CacheConfig = Field(default_factory=CacheConfig)
    debug: DebugConfig = Field(default_factory=DebugConfig)
    context_threshold: Optional[ContextThreshold] = Field(default=None, alias="contextThreshold")

    model_config = {"populate_by_name": True, "extra": "allow"}


class RouterConfig(BaseModel):
    """A complete router configuration document."""

    providers: List[ProviderConfig] = Field(default_factory=list, alias="Providers")
    router: UnifiedRouterConfig = Field(alias="Router")

    model_config = {"populate_by_name": True, "extra": "allow"}

    def to_dict(self) -> Dict[str, Any]:
        """Serialise back to the camelCase JSON layout."""
        return self.model_dump(by_alias=True, exclude_none=True)


# ---------------------------------------------------------------------------
# Format detection
# ---------------------------------------------------------------------------


def _router_block(raw: Any) -> Optional[Dict[str, Any]]:
    if not isinstance(raw, dict):
        return None
    block = raw.get("Router")
    return block if isinstance(block, dict) else None


def is_unified_format(raw: Any) -> bool:
    """Whether the document's ``Router`` block declares the unified engine."""
    block = _router_block(raw)
    return block is not None and block.get("engine") == UNIFIED_ENGINE


def is_legacy_format(raw: Any) -> bool:
    """Whether the document uses the flat legacy ``Router`` block."""
    block = _router_block(raw)
    return block is not None and not is_unified_format(raw) and bool(block.get("default"))


def needs_migration(raw: Any) -> bool:
    """Whether :func:`migrate_config` would change the document."""
    block = _router_block(raw)
    if block is None or block.get("engine") == UNIFIED_ENGINE:
        return False
    return any(block.get(key) for key in ("default", "background", "think", "longContext", "webSearch"))


# ---------------------------------------------------------------------------
# Conversion
# ---------------------------------------------------------------------------


def _rule(name: str, priority: int, condition: Dict[str, Any], route: str, description: str) -> Dict[str, Any]:
    return {
        "name": name,
        "priority": priority,
        "enabled": True,
        "condition": condition,
        "action": {"route": route, "transformers": [], "description": description},
    }


def _default_cache_block() -> Dict[str, Any]:
    cache = get_settings().cache
    return {"enabled": cache.enabled, "maxSize": cache.max_entries, "ttl": int(cache.ttl_seconds * 1000)}


def _default_debug_block() -> Dict[str, Any]:
    return {"enabled": False, "logLevel": "info", "logToFile": False, "logToConsole": True}


def convert_legacy_to_unified(legacy: Dict[str, Any]) -> Dict[str, Any]:
    """Build the unified ``Router`` block equivalent to a legacy one.

    Rules whose legacy route is empty are omitted; the subagent, direct
    mapping and user-specified rules are always generated.

    Args:
        legacy: Flat legacy ``Router`` mapping.

    Returns:
        A unified ``Router`` mapping in the JSON (camelCase) layout.
    """
    threshold = legacy.get("longContextThreshold") or DEFAULT_LONG_CONTEXT_THRESHOLD
    rules: List[Dict[str, Any]] = []

    if legacy.get("longContext"):
        rules.append(_rule(
            "longContext", 100,
            {"type": "tokenThreshold", "value": threshold, "operator": "gt"},
            legacy["longContext"],
            "Long context: route large prompts by token threshold",
        ))

    rules.append(_rule(
        "subagent", 90,
        {"type": "fieldExists", "field": "system.1.text", "operator": "contains", "value": SUBAGENT_MARKER},
        "${subagent}",
        "Subagent: model named by the marker in the system prompt",
    ))

    if legacy.get("background"):
        rules.append(_rule(
            "background", 80,
            {"type": "modelContains", "value": "haiku", "operator": "contains"},
            legacy["background"],
            "Background: haiku requests go to a lightweight model",
        ))

    if legacy.get("webSearch"):
        rules.append(_rule(
            "webSearch", 70,
            {"type": "toolExists", "value": "web_search", "operator": "exists"},
            legacy["webSearch"],
            "Web search: requests carrying a web_search tool",
        ))

    if legacy.get("think"):
        rules.append(_rule(
            "thinking", 60,
            {"type": "fieldExists", "field": "thinking", "operator": "exists"},
            legacy["think"],
            "Thinking: requests with the thinking parameter",
        ))

    rules.append(_rule(
        "directMapping", 50,
        {"type": "custom", "customFunction": "directModelMapping"},
        "${mappedModel}",
        "Direct mapping: bare provider or model code resolved via the catalog",
    ))

    rules.append(_rule(
        "userSpecified", 40,
        {"type": "custom", "customFunction": "modelContainsComma"},
        "${userModel}",
        "User specified: request names an explicit provider,model pair",
    ))

    return {
        "engine": UNIFIED_ENGINE,
        "defaultRoute": legacy.get("default") or "",
        "rules": rules,
        "cache": _default_cache_block(),
        "debug": _default_debug_block(),
        "contextThreshold": {"default": 1000, "longContext": threshold},
    }


def convert_unified_to_legacy(unified: Dict[str, Any]) -> Dict[str, Any]:
    """Extract the flat legacy ``Router`` block from a unified one.

    Routes are picked up from the rules named ``background``,
    ``thinking``, ``longContext`` and ``webSearch``.
    """
    threshold = (unified.get("contextThreshold") or {}).get("longContext") or DEFAULT_LONG_CONTEXT_THRESHOLD
    legacy: Dict[str, Any] = {
        "default": unified.get("defaultRoute", ""),
        "background": "",
        "think": "",
        "longContext": "",
        "longContextThreshold": threshold,
        "webSearch": "",
    }
    by_rule = {rule_name: key for key, rule_name in _LEGACY_ROUTE_RULES.items()}
    for rule in unified.get("rules") or []:
        key = by_rule.get(rule.get("name"))
        if key:
            legacy[key] = (rule.get("action") or {}).get("route", "")
    return legacy


def normalize_config(raw: Dict[str, Any]) -> Dict[str, Any]:
    """Return a copy of *raw* whose ``Router`` block is in unified form.

    * No ``Router`` block: a unified block with the default route and no
      rules.
    * Legacy block: converted with :func:`convert_legacy_to_unified`.
    * Unified block: missing ``engine``, ``defaultRoute``, ``rules``,
      ``cache`` and ``debug`` are filled in.
    """
    normalized = copy.deepcopy(raw) if isinstance(raw, dict) else {}
    default_route = get_settings().router.default_route
    block = _router_block(normalized)

    if block is None:
        normalized["Router"] = {
            "engine": UNIFIED_ENGINE,
            "defaultRoute": default_route,
            "rules": [],
            "cache": _default_cache_block(),
            "debug": _default_debug_block(),
        }
        return normalized

    if is_legacy_format(normalized):
        normalized["Router"] = convert_legacy_to_unified(block)
        logger.info("Legacy router block converted", extra={"rules": len(normalized["Router"]["rules"])})
        return normalized

    block.setdefault("engine", UNIFIED_ENGINE)
    if not block.get("defaultRoute"):
        block["defaultRoute"] = default_route
    if block.get("rules") is None:
        block["rules"] = []
    if not block.get("cache"):
        block["cache"] = _default_cache_block()
    if not block.get("debug"):
        block["debug"] = _default_debug_block()
    return normalized


def migrate_config(raw: Dict[str, Any], keep_legacy: bool = False) -> Tuple[Dict[str, Any], bool, List[str]]:
    """Rewrite a legacy document into the unified format.

    Args:
        raw: Parsed configuration document (not modified).
        keep_legacy: Keep the original flat block under ``LegacyRouter``.

    Returns:
        ``(config, migrated, errors)``.  ``config`` is *raw* itself when
        no migration was needed.
    """
    if not needs_migration(raw):
        return raw, False, []

    migrated = copy.deepcopy(raw)
    legacy_block = {
        key: raw["Router"].get(key)
        for key in ("default", "background", "think", "longContext", "webSearch", "longContextThreshold")
    }
    try:
        migrated["Router"] = convert_legacy_to_unified(legacy_block)
    except (TypeError, ValueError, AttributeError) as exc:
        logger.error("Config migration failed", extra={"error": str(exc)})
        return raw, False, [f"Migration failed: {exc}"]

    if keep_legacy:
        migrated["LegacyRouter"] = legacy_block

    logger.info(
        "Config migrated",
        extra={"rules": len(migrated["Router"]["rules"]), "default_route": migrated["Router"]["defaultRoute"]},
    )
    return migrated, True, []


# ---------------------------------------------------------------------------
# Validation and loading
# ---------------------------------------------------------------------------


def validate_unified_config(router: Any) -> List[str]:
    """Check a unified ``Router`` mapping and describe every problem found.

    Returns:
        Human-readable errors; empty when the block is usable.
    """
    if not isinstance(router, dict):
        return ["Router block must be an object"]

    errors: List[str] = []
    if not router.get("defaultRoute"):
        errors.append("defaultRoute is required")

    rules = router.get("rules")
    if not isinstance(rules, list):
        errors.append("rules must be an array")
        return errors

    for index, rule in enumerate(rules):
        if not isinstance(rule, dict):
            errors.append(f"Rule at index {index} must be an object")
            continue
        name = rule.get("name")
        if not name:
            errors.append(f"Rule at index {index} must have a name")
        label = name or f"#{index}"
        if not rule.get("condition"):
            errors.append(f'Rule "{label}" must have a condition')
        action = rule.get("action")
        if not action:
            errors.append(f'Rule "{label}" must have an action')
        if not isinstance(action, dict) or not action.get("route"):
            errors.append(f'Rule "{label}" must have a route in action')
    return errors


def parse_router_config(raw: Dict[str, Any]) -> RouterConfig:
    """Normalise, validate and parse a configuration mapping.

    Raises:
        ConfigurationError: If the document is not a usable config.
    """
    if not isinstance(raw, dict):
        raise ConfigurationError("Router configuration must be a JSON object")

    normalized = normalize_config(raw)
    errors = validate_unified_config(normalized["Router"])
    if errors:
        raise ConfigurationError("Invalid router configuration: " + "; ".join(errors))

    try:
        return RouterConfig.model_validate(normalized)
    except ValidationError as exc:
        raise ConfigurationError(f"Invalid router configuration: {exc}") from exc


def load_router_config(path: Optional[Union[str, Path]] = None) -> RouterConfig:
    """Read a router configuration file.

    Args:
        path: JSON file; defaults to ``settings.router.config_path``.

    Raises:
        ConfigurationError: If the file is missing, not JSON, or invalid.
    """
    config_path = resolve_path(str(path or get_settings().router.config_path))
    try:
        with open(config_path, "r", encoding="utf-8") as fh:
            raw = json.load(fh)
    except FileNotFoundError as exc:
        raise ConfigurationError(f"Router config not found: {config_path}") from exc
    except json.JSONDecodeError as exc:
        raise ConfigurationError(f"Router config is not valid JSON: {config_path}: {exc}") from exc

    config = parse_router_config(raw)
    logger.info(
        "Router config loaded",
        extra={"path": str(config_path), "rules": len(config.router.rules), "providers": len(config.providers)},
    )
    return config
