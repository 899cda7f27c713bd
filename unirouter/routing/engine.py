"""
Unified routing engine.

:class:`UnifiedRouter` decides which ``provider,model`` target serves a
request:

1. Build a :class:`RouteContext` from the request.
2. Walk the enabled rules by descending priority; the first rule whose
   condition matches wins.
3. Substitute route variables, map bare model codes and fill in a
   provider's default model.
4. Consult / populate the result cache and update statistics.

``evaluate`` never raises.  If anything escapes the steps above (for
example a rule with an unsupported condition type) the caller gets the
default route with ``metadata["fallback"] = True``.
"""

import logging
import threading
import time
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple, Union

from pydantic import BaseModel, Field

from unirouter.cache.route_cache import RouteCache
from unirouter.config import get_settings
from unirouter.exceptions import ConfigurationError
from unirouter.instances.groups import GroupManager
from unirouter.instances.models import RouteInstance
from unirouter.logger import configure_logging
from unirouter.router_config import RouterConfig, UnifiedRouterConfig
from unirouter.routing.conditions import ConditionEvaluator, describe_condition
from unirouter.routing.context import RouteContext
from unirouter.routing.providers import (
    ProviderConfig,
    coerce_providers,
    has_provider_qualifier,
    resolve_provider_model,
)
from unirouter.routing.rules import RouteAction, RouteRule, RuleStore
from unirouter.routing.variables import SUBAGENT, VariableResolver, has_placeholder

logger = logging.getLogger(__name__)

DEFAULT_RULE_LABEL = "default"
DIRECT_MAPPING_RULE = "directMapping"

# update_config accepts both the JSON spelling and the attribute name.
_CONFIG_ALIASES = {
    "defaultRoute": "default_route",
    "contextThreshold": "context_threshold",
}


class RouteResult(BaseModel):
    """Outcome of one routing decision.

    Attributes:
        route: Target ``provider,model`` (or the literal ``${subagent}``
            template when no subagent marker was found).
        matched_rule: Name of the rule credited with the decision,
            ``"default"`` when none was, ``None`` for a fallback result.
        transformers: Transformers named by the matched rule's action.
        decision_time_ms: Time spent computing the decision.
        from_cache: Whether the result was served from the cache.
        metadata: Request summary, rule metadata, debug trace, or the
            ``error`` / ``fallback`` markers of a failed evaluation.
    """

    route: str
    matched_rule: Optional[str] = None
    transformers: List[str] = Field(default_factory=list)
    decision_time_ms: float = 0.0
    from_cache: bool = False
    metadata: Dict[str, Any] = Field(default_factory=dict)


class RouteStats(BaseModel):
    """Routing counters snapshot.

    Attributes:
        total_routes: Successful routing calls (cache hits included).
        rule_matches: Computed decisions per credited rule label.
        cache_hits: Calls served from the cache.
        cache_misses: Calls that computed a fresh decision.
        avg_route_time_ms: Running mean over computed decisions.
        group_stats: Per-group registry counters, if groups are managed.
    """

    total_routes: int = 0
    rule_matches: Dict[str, int] = Field(default_factory=dict)
    cache_hits: int = 0
    cache_misses: int = 0
    avg_route_time_ms: float = 0.0
    group_stats: Dict[str, Any] = Field(default_factory=dict)


class UnifiedRouter:
    """Rule-based request router.

    Args:
        config: The unified ``Router`` block.
        providers: Provider catalog used when a call does not pass one.
        evaluator: Condition evaluator; a default one (with the settings'
            external timeout) is created when omitted.
        group_manager: Optional groups used by :meth:`select_instance`.
    """

    def __init__(
        self,
        config: UnifiedRouterConfig,
        providers: Optional[Sequence[Any]] = None,
        evaluator: Optional[ConditionEvaluator] = None,
        group_manager: Optional[GroupManager] = None,
    ) -> None:
        self._config = config
        self._providers: List[ProviderConfig] = coerce_providers(providers)
        self._rules = RuleStore(config.rules)
        self._evaluator = evaluator or ConditionEvaluator(
            external_timeout=get_settings().router.external_function_timeout_seconds,
        )
        self._group_manager = group_manager
        self._cache = RouteCache(max_size=config.cache.max_size, ttl_seconds=config.cache.ttl_seconds)

        self._stats = RouteStats()
        self._stats_lock = threading.Lock()

        self._apply_debug_settings()
        logger.info(
            "UnifiedRouter initialised",
            extra={
                "rules": len(self._rules),
                "default_route": config.default_route,
                "cache_enabled": config.cache.enabled,
            },
        )

    @classmethod
    def from_config(cls, router_config: RouterConfig, **kwargs: Any) -> "UnifiedRouter":
        """Build a router from a complete configuration document."""
        return cls(router_config.router, providers=router_config.providers, **kwargs)

    # ------------------------------------------------------------------
    # Routing
    # ------------------------------------------------------------------

    def route(
        self,
        request: Mapping[str, Any],
        token_count: int,
        config: Optional[Any] = None,
        last_usage: Any = None,
        **kwargs: Any,
    ) -> str:
        """Return only the target route; see :meth:`evaluate`."""
        return self.evaluate(request, token_count, config, last_usage, **kwargs).route

    def evaluate(
        self,
        request: Mapping[str, Any],
        token_count: int,
        config: Optional[Any] = None,
        last_usage: Any = None,
        *,
        session_id: Optional[str] = None,
        event: Any = None,
        timeout: Optional[float] = None,
    ) -> RouteResult:
        """Route one request.

        Args:
            request: Request body (``model``, ``messages``, ``system``,
                ``tools``, ``thinking`` ...).
            token_count: Pre-computed prompt token count.
            config: Per-call configuration carrying a provider catalog
                (``{"Providers": [...]}`` or a :class:`RouterConfig`);
                the router's own catalog is used when omitted.
            last_usage: Usage stats from the previous turn.
            session_id: Caller session id (defaults to the body's).
            event: Opaque event payload for external predicates.
            timeout: Seconds to wait for each external predicate.

        Returns:
            The routing decision.  Never raises.
        """
        start = time.perf_counter()
        router_config = self._config
        default_route = router_config.default_route

        try:
            providers = self._providers_for(config)
            context = RouteContext.from_request(
                request,
                token_count,
                providers=providers,
                last_usage=last_usage,
                session_id=session_id,
                event=event,
            )

            matched_rule, action, trace = self._match_rules(context, timeout)
            route, label = self._resolve_route(matched_rule, action, context, default_route)

            cache_key = RouteCache.generate_key(self._fingerprint(context, route))
            cache = self._cache
            result: Optional[RouteResult] = None
            if router_config.cache.enabled:
                cached = cache.get(cache_key)
                if cached is not None:
                    result = cached.model_copy(update={"from_cache": True})
                    logger.debug("Route served from cache", extra={"route": result.route})

            if result is None:
                metadata: Dict[str, Any] = {
                    "context": {
                        "token_count": token_count,
                        "has_tools": bool(context.tools),
                        "has_thinking": bool(context.request.get("thinking")),
                        "session_id": context.session_id,
                    },
                }
                if action is not None and action.metadata:
                    metadata["rule_metadata"] = dict(action.metadata)
                if router_config.debug.enabled:
                    metadata["evaluations"] = trace
                result = RouteResult(
                    route=route,
                    matched_rule=label,
                    transformers=list(action.transformers) if action is not None else [],
                    decision_time_ms=(time.perf_counter() - start) * 1000,
                    from_cache=False,
                    metadata=metadata,
                )
                if router_config.cache.enabled:
                    cache.set(cache_key, result)

            self._record(result)
            self._log_decision(result, context)
            return result
        except Exception as exc:
            logger.error(
                "Route evaluation failed; using default route",
                extra={"error": str(exc), "requested_model": (request or {}).get("model")},
                exc_info=True,
            )
            return RouteResult(
                route=default_route,
                matched_rule=None,
                decision_time_ms=(time.perf_counter() - start) * 1000,
                from_cache=False,
                metadata={"error": str(exc) or exc.__class__.__name__, "fallback": True},
            )

    def _match_rules(
        self, context: RouteContext, timeout: Optional[float]
    ) -> Tuple[Optional[str], Optional[RouteAction], List[Dict[str, Any]]]:
        """First-match-wins walk over the enabled rules."""
        rules = self._rules.sorted_rules(enabled_only=True)
        if not rules:
            logger.warning("No enabled routing rules")
            return None, None, []

        trace: List[Dict[str, Any]] = []
        for rule in rules:
            outcome = self._evaluator.evaluate(rule.condition, context, timeout=timeout)
            outcome.rule_name = rule.name
            entry = outcome.model_dump()
            entry["condition"] = describe_condition(rule.condition)
            trace.append(entry)
            logger.debug(
                "Rule evaluated",
                extra={
                    "rule": rule.name,
                    "priority": rule.priority,
                    "matches": outcome.matches,
                    "error": outcome.error,
                },
            )
            if outcome.matches:
                return rule.name, rule.action, trace
        return None, None, trace

    def _resolve_route(
        self,
        matched_rule: Optional[str],
        action: Optional[RouteAction],
        context: RouteContext,
        default_route: str,
    ) -> Tuple[str, str]:
        """Turn the matched action into a concrete route and credited label."""
        route = action.route if action is not None else default_route
        label = matched_rule or DEFAULT_RULE_LABEL
        providers = context.providers

        if has_placeholder(route):
            route, failed = VariableResolver(default_route).resolve(route, context)
            if has_placeholder(route):
                label = DEFAULT_RULE_LABEL
                if SUBAGENT in route:
                    # Kept literally so the caller can see the marker was absent.
                    logger.debug("subagent placeholder left unresolved", extra={"route": route})
                    return route, label
                logger.warning(
                    "Route variables unresolved; using default route",
                    extra={"route": route, "failed": failed},
                )
                route = default_route
        elif matched_rule == DIRECT_MAPPING_RULE:
            requested = context.requested_model
            if requested and not has_provider_qualifier(requested):
                mapped = resolve_provider_model(requested, providers)
                if mapped is None:
                    route, label = default_route, DEFAULT_RULE_LABEL
                else:
                    route = mapped
                    label = DEFAULT_RULE_LABEL if mapped == default_route else DIRECT_MAPPING_RULE

        route = resolve_provider_model(route, providers, fallback_to_input=True) or route
        return route, label

    @staticmethod
    def _fingerprint(context: RouteContext, route: str) -> Dict[str, Any]:
        body = context.request
        return {
            "model": body.get("model"),
            "route": route,
            "token_count": context.token_count,
            "has_tools": bool(context.tools),
            "has_system": bool(body.get("system")),
            "thinking": body.get("thinking") or False,
            "session_id": context.session_id,
        }

    def _providers_for(self, config: Optional[Any]) -> List[ProviderConfig]:
        if config is None:
            return self._providers
        if isinstance(config, RouterConfig):
            return list(config.providers)
        if isinstance(config, Mapping):
            raw = config.get("Providers", config.get("providers"))
            if raw is not None:
                return coerce_providers(raw)
        return self._providers

    def _record(self, result: RouteResult) -> None:
        with self._stats_lock:
            stats = self._stats
            stats.total_routes += 1
            if result.from_cache:
                stats.cache_hits += 1
                return
            stats.cache_misses += 1
            label = result.matched_rule or DEFAULT_RULE_LABEL
            stats.rule_matches[label] = stats.rule_matches.get(label, 0) + 1
            n = stats.cache_misses
            stats.avg_route_time_ms = (stats.avg_route_time_ms * (n - 1) + result.decision_time_ms) / n

    def _log_decision(self, result: RouteResult, context: RouteContext) -> None:
        if result.matched_rule == DEFAULT_RULE_LABEL:
            logger.info("Default route used", extra={"route": result.route, "from_cache": result.from_cache})
        else:
            logger.info(
                "Rule matched",
                extra={
                    "rule": result.matched_rule,
                    "requested_model": context.requested_model,
                    "route": result.route,
                    "from_cache": result.from_cache,
                },
            )

    # ------------------------------------------------------------------
    # Rule management
    # ------------------------------------------------------------------

    def add_rule(self, rule: Union[RouteRule, Mapping[str, Any]]) -> None:
        """Add a rule, replacing any existing rule with the same name."""
        if not isinstance(rule, RouteRule):
            rule = RouteRule.model_validate(dict(rule))
        self._rules.add(rule)

    def remove_rule(self, name: str) -> bool:
        return self._rules.remove(name)

    def toggle_rule(self, name: str, enabled: bool) -> bool:
        return self._rules.toggle(name, enabled)

    def get_rule(self, name: str) -> Optional[RouteRule]:
        return self._rules.get(name)

    def get_rules(self) -> List[RouteRule]:
        """All rules (disabled included) by descending priority."""
        return self._rules.sorted_rules()

    @property
    def evaluator(self) -> ConditionEvaluator:
        return self._evaluator

    # ------------------------------------------------------------------
    # Cache, stats and configuration
    # ------------------------------------------------------------------

    def clear_cache(self) -> None:
        self._cache.clear()

    @property
    def cache(self) -> RouteCache:
        return self._cache

    def get_stats(self) -> RouteStats:
        """Return a snapshot of the routing counters."""
        with self._stats_lock:
            snapshot = self._stats.model_copy(deep=True)
        if self._group_manager is not None:
            snapshot.group_stats = self._group_manager.stats()
        return snapshot

    def reset_stats(self) -> None:
        with self._stats_lock:
            self._stats = RouteStats()

    def get_config(self) -> UnifiedRouterConfig:
        """Current configuration, with the live rule set."""
        return self._config.model_copy(update={"rules": self._rules.in_load_order()})

    def update_config(self, **changes: Any) -> UnifiedRouterConfig:
        """Merge configuration changes and apply them atomically.

        Keys may use either attribute names (``default_route``) or the
        JSON spelling (``defaultRoute``).  New rules replace the whole
        rule set.  The result cache is rebuilt when its settings change
        and cleared otherwise.

        Raises:
            ConfigurationError: If the merged configuration is invalid.
        """
        current = self.get_config()
        data = current.model_dump()
        for key, value in changes.items():
            data[_CONFIG_ALIASES.get(key, key)] = value

        try:
            updated = UnifiedRouterConfig.model_validate(data)
        except ValueError as exc:
            raise ConfigurationError(f"Invalid router configuration: {exc}") from exc

        if "rules" in changes:
            self._rules.replace(updated.rules)
        if updated.cache != current.cache:
            self._cache = RouteCache(max_size=updated.cache.max_size, ttl_seconds=updated.cache.ttl_seconds)
        else:
            self._cache.clear()

        self._config = updated
        if updated.debug != current.debug:
            self._apply_debug_settings()
        logger.info("Router config updated", extra={"changed": sorted(changes)})
        return self.get_config()

    def set_providers(self, providers: Sequence[Any]) -> None:
        self._providers = coerce_providers(providers)
        self._cache.clear()

    @property
    def providers(self) -> List[ProviderConfig]:
        return list(self._providers)

    def _apply_debug_settings(self) -> None:
        debug = self._config.debug
        if not debug.enabled:
            return
        configure_logging(
            level=debug.log_level,
            log_to_console=debug.log_to_console,
            log_to_file=debug.log_to_file,
            log_dir=debug.log_dir,
        )

    # ------------------------------------------------------------------
    # Instance selection
    # ------------------------------------------------------------------

    @property
    def group_manager(self) -> Optional[GroupManager]:
        return self._group_manager

    def select_instance(self, result_or_route: Union[RouteResult, str]) -> Optional[RouteInstance]:
        """Pick an instance from the group that serves a routed target.

        Returns:
            An instance snapshot, or ``None`` if no group serves the
            route or none of its instances is healthy.
        """
        if self._group_manager is None:
            return None
        route = result_or_route.route if isinstance(result_or_route, RouteResult) else result_or_route
        group = self._group_manager.get_group_by_route(route)
        if group is None:
            logger.debug("No group serves route", extra={"route": route})
            return None
        return self._group_manager.select_instance(group)
