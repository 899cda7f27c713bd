"""Tests for the unified routing engine."""

import pytest

from unirouter.exceptions import ConfigurationError
from unirouter.instances.groups import GroupManager
from unirouter.router_config import parse_router_config
from unirouter.routing.engine import RouteResult, UnifiedRouter

DEFAULT_ROUTE = "openrouter,claude-3.5-sonnet"


@pytest.fixture
def router(sample_document) -> UnifiedRouter:
    return UnifiedRouter.from_config(parse_router_config(sample_document))


# ---------------------------------------------------------------------------
# Built-in rules
# ---------------------------------------------------------------------------


class TestBuiltinRules:
    def test_long_context(self, router: UnifiedRouter) -> None:
        result = router.evaluate({"model": "claude-3.5-sonnet"}, 70000)
        assert result.route == "openrouter,claude-3.7-sonnet"
        assert result.matched_rule == "longContext"

    def test_threshold_is_exclusive(self, router: UnifiedRouter) -> None:
        result = router.evaluate({"model": "x,y"}, 60000)
        assert result.matched_rule != "longContext"

    def test_subagent(self, router: UnifiedRouter, subagent_system) -> None:
        result = router.evaluate({"model": "claude-3.5-sonnet", "system": subagent_system}, 100)
        assert result.route == "deepseek,deepseek-reasoner"
        assert result.matched_rule == "subagent"

    def test_subagent_without_model_keeps_literal(self, router: UnifiedRouter) -> None:
        system = [
            {"type": "text", "text": "intro"},
            {"type": "text", "text": "<CCR-SUBAGENT-MODEL></CCR-SUBAGENT-MODEL>"},
        ]
        result = router.evaluate({"model": "claude-3.5-sonnet", "system": system}, 100)
        assert result.route == "${subagent}"
        assert result.matched_rule == "default"

    def test_background_uses_provider_default_model(self, router: UnifiedRouter) -> None:
        result = router.evaluate({"model": "claude-3-5-haiku-20241022"}, 100)
        assert result.route == "haiku-glm,glm-4.7"
        assert result.matched_rule == "background"

    def test_web_search_carries_transformers(self, router: UnifiedRouter) -> None:
        request = {"model": "x,y", "tools": [{"type": "web_search_20250305", "name": "web_search"}]}
        result = router.evaluate(request, 100)
        assert result.route == "deepseek,deepseek-chat"
        assert result.matched_rule == "webSearch"
        assert result.transformers == ["websearch"]

    def test_thinking(self, router: UnifiedRouter) -> None:
        result = router.evaluate({"model": "x,y", "thinking": {"type": "enabled"}}, 100)
        assert result.route == "deepseek,deepseek-reasoner"
        assert result.matched_rule == "thinking"

    def test_direct_mapping(self, router: UnifiedRouter) -> None:
        result = router.evaluate({"model": "deepseek-reasoner"}, 100)
        assert result.route == "deepseek,deepseek-chat"
        assert result.matched_rule == "directMapping"

    def test_direct_mapping_provider_name(self, router: UnifiedRouter) -> None:
        result = router.evaluate({"model": "DeepSeek"}, 100)
        assert result.route == "deepseek,deepseek-chat"
        assert result.matched_rule == "directMapping"

    def test_direct_mapping_onto_default_is_credited_to_default(self, router: UnifiedRouter) -> None:
        result = router.evaluate({"model": "claude-3.7-sonnet"}, 100)
        assert result.route == DEFAULT_ROUTE
        assert result.matched_rule == "default"

    def test_direct_mapping_unknown_model(self, router: UnifiedRouter) -> None:
        result = router.evaluate({"model": "gpt-5"}, 100)
        assert result.route == DEFAULT_ROUTE
        assert result.matched_rule == "default"

    def test_user_specified(self, router: UnifiedRouter) -> None:
        result = router.evaluate({"model": "deepseek,deepseek-chat"}, 100)
        assert result.route == "deepseek,deepseek-chat"
        assert result.matched_rule == "userSpecified"
        assert result.transformers == []

    def test_no_match_uses_default(self, router: UnifiedRouter) -> None:
        result = router.evaluate({"messages": []}, 100)
        assert result.route == DEFAULT_ROUTE
        assert result.matched_rule == "default"

    def test_route_returns_string(self, router: UnifiedRouter) -> None:
        assert router.route({"model": "deepseek,deepseek-chat"}, 10) == "deepseek,deepseek-chat"

    def test_metadata_context(self, router: UnifiedRouter) -> None:
        result = router.evaluate({"model": "x,y", "tools": [{"name": "t"}]}, 42, session_id="s1")
        assert result.metadata["context"] == {
            "token_count": 42,
            "has_tools": True,
            "has_thinking": False,
            "session_id": "s1",
        }
        assert "evaluations" not in result.metadata


# ---------------------------------------------------------------------------
# Rule ordering and management
# ---------------------------------------------------------------------------


class TestRulePriority:
    def test_higher_priority_wins(self, router: UnifiedRouter) -> None:
        router.add_rule({
            "name": "premium",
            "priority": 200,
            "condition": {"type": "tokenThreshold", "value": 10, "operator": "gt"},
            "action": {"route": "openrouter,claude-3.7-sonnet"},
        })
        result = router.evaluate({"model": "deepseek,deepseek-chat"}, 70000)
        assert result.matched_rule == "premium"

    def test_lower_priority_loses(self, router: UnifiedRouter) -> None:
        router.add_rule({
            "name": "cheap",
            "priority": 1,
            "condition": {"type": "tokenThreshold", "value": 10, "operator": "gt"},
            "action": {"route": "deepseek,deepseek-chat"},
        })
        result = router.evaluate({"model": "claude-3.5-sonnet"}, 70000)
        assert result.matched_rule == "longContext"

    def test_default_priority_is_lowest(self, router: UnifiedRouter) -> None:
        router.add_rule({
            "name": "catchAll",
            "condition": {"type": "tokenThreshold", "value": 0, "operator": "gt"},
            "action": {"route": "deepseek,deepseek-chat"},
        })
        assert router.evaluate({"model": "a,b"}, 5).matched_rule == "userSpecified"
        assert router.evaluate({}, 5).matched_rule == "catchAll"

    def test_disabled_rule_skipped(self, router: UnifiedRouter) -> None:
        assert router.toggle_rule("longContext", False) is True
        result = router.evaluate({"model": "deepseek,deepseek-chat"}, 70000)
        assert result.matched_rule == "userSpecified"

    def test_remove_rule(self, router: UnifiedRouter) -> None:
        assert router.remove_rule("userSpecified") is True
        assert router.remove_rule("userSpecified") is False
        assert router.get_rule("userSpecified") is None
        assert router.evaluate({"model": "a,b"}, 5).matched_rule == "default"

    def test_get_rules_sorted(self, router: UnifiedRouter) -> None:
        priorities = [rule.priority for rule in router.get_rules()]
        assert priorities == sorted(priorities, reverse=True)

    def test_no_rules_uses_default(self, sample_document) -> None:
        sample_document["Router"]["rules"] = []
        router = UnifiedRouter.from_config(parse_router_config(sample_document))
        result = router.evaluate({"model": "a,b"}, 5)
        assert result.route == DEFAULT_ROUTE
        assert result.matched_rule == "default"


class TestFallback:
    def test_unsupported_condition_falls_back(self, router: UnifiedRouter) -> None:
        router.add_rule({
            "name": "broken",
            "priority": 1000,
            "condition": {"type": "timeOfDay", "value": "night"},
            "action": {"route": "deepseek,deepseek-chat"},
        })
        result = router.evaluate({"model": "a,b"}, 5)
        assert result.route == DEFAULT_ROUTE
        assert result.matched_rule is None
        assert result.metadata["fallback"] is True
        assert "timeOfDay" in result.metadata["error"]
        assert router.get_stats().total_routes == 0

    def test_failing_custom_predicate_is_non_match(self, router: UnifiedRouter) -> None:
        def explode(context, condition):
            raise RuntimeError("boom")

        router.evaluator.register_custom("explode", explode)
        router.add_rule({
            "name": "exploding",
            "priority": 1000,
            "condition": {"type": "custom", "customFunction": "explode"},
            "action": {"route": "deepseek,deepseek-chat"},
        })
        result = router.evaluate({"model": "a,b"}, 5)
        assert result.matched_rule == "userSpecified"


# ---------------------------------------------------------------------------
# Cache and statistics
# ---------------------------------------------------------------------------


class TestCaching:
    def test_second_call_is_cached(self, router: UnifiedRouter) -> None:
        first = router.evaluate({"model": "a,b"}, 5)
        second = router.evaluate({"model": "a,b"}, 5)
        assert first.from_cache is False
        assert second.from_cache is True
        assert second.route == first.route
        assert second.matched_rule == first.matched_rule

    def test_cached_result_not_mutated(self, router: UnifiedRouter) -> None:
        router.evaluate({"model": "a,b"}, 5)
        router.evaluate({"model": "a,b"}, 5)
        third = router.evaluate({"model": "a,b"}, 5)
        assert third.from_cache is True
        assert router.cache.size == 1

    def test_different_inputs_not_shared(self, router: UnifiedRouter) -> None:
        router.evaluate({"model": "a,b"}, 5)
        assert router.evaluate({"model": "a,b"}, 6).from_cache is False
        assert router.evaluate({"model": "a,b"}, 5, session_id="other").from_cache is False

    def test_clear_cache(self, router: UnifiedRouter) -> None:
        router.evaluate({"model": "a,b"}, 5)
        router.clear_cache()
        assert router.evaluate({"model": "a,b"}, 5).from_cache is False

    def test_disabled_cache(self, sample_document) -> None:
        sample_document["Router"]["cache"]["enabled"] = False
        router = UnifiedRouter.from_config(parse_router_config(sample_document))
        router.evaluate({"model": "a,b"}, 5)
        assert router.evaluate({"model": "a,b"}, 5).from_cache is False
        assert router.cache.size == 0


class TestStats:
    def test_counters(self, router: UnifiedRouter) -> None:
        router.evaluate({"model": "a,b"}, 5)
        router.evaluate({"model": "a,b"}, 5)
        router.evaluate({"model": "claude-3.5-sonnet"}, 70000)
        router.evaluate({}, 5)

        stats = router.get_stats()
        assert stats.total_routes == 4
        assert stats.cache_hits == 1
        assert stats.cache_misses == 3
        assert stats.rule_matches == {"userSpecified": 1, "longContext": 1, "default": 1}
        assert stats.avg_route_time_ms >= 0.0

    def test_snapshot_is_detached(self, router: UnifiedRouter) -> None:
        router.evaluate({}, 5)
        snapshot = router.get_stats()
        router.evaluate({}, 6)
        assert snapshot.total_routes == 1

    def test_reset(self, router: UnifiedRouter) -> None:
        router.evaluate({}, 5)
        router.reset_stats()
        stats = router.get_stats()
        assert stats.total_routes == 0
        assert stats.rule_matches == {}


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


class TestConfiguration:
    def test_update_default_route(self, router: UnifiedRouter) -> None:
        router.evaluate({}, 5)
        config = router.update_config(defaultRoute="deepseek,deepseek-chat")
        assert config.default_route == "deepseek,deepseek-chat"

        result = router.evaluate({}, 5)
        assert result.route == "deepseek,deepseek-chat"
        assert result.from_cache is False

    def test_update_rules_replaces_set(self, router: UnifiedRouter) -> None:
        router.update_config(rules=[{
            "name": "only",
            "condition": {"type": "tokenThreshold", "value": 0, "operator": "gt"},
            "action": {"route": "deepseek,deepseek-chat"},
        }])
        assert [rule.name for rule in router.get_rules()] == ["only"]
        assert router.evaluate({"model": "a,b"}, 1).matched_rule == "only"

    def test_update_cache_settings_rebuilds_cache(self, router: UnifiedRouter) -> None:
        old_cache = router.cache
        router.update_config(cache={"enabled": True, "maxSize": 5, "ttl": 1000})
        assert router.cache is not old_cache
        assert router.cache.stats().max_size == 5

    def test_invalid_update_rejected(self, router: UnifiedRouter) -> None:
        with pytest.raises(ConfigurationError):
            router.update_config(cache={"maxSize": 0})
        assert router.get_config().cache.max_size == 100

    def test_get_config_reflects_live_rules(self, router: UnifiedRouter) -> None:
        router.remove_rule("thinking")
        names = [rule.name for rule in router.get_config().rules]
        assert "thinking" not in names
        assert names[0] == "longContext"

    def test_per_call_providers(self, router: UnifiedRouter) -> None:
        config = {"Providers": [{"name": "local", "models": ["qwen"]}]}
        result = router.evaluate({"model": "qwen"}, 5, config)
        assert result.route == "local,qwen"
        assert result.matched_rule == "directMapping"

    def test_set_providers(self, router: UnifiedRouter) -> None:
        router.set_providers([{"name": "local", "models": ["qwen"]}])
        assert [p.name for p in router.providers] == ["local"]
        assert router.evaluate({"model": "qwen"}, 5).route == "local,qwen"


class TestDebugTrace:
    def test_evaluations_recorded(self, sample_document) -> None:
        sample_document["Router"]["debug"] = {"enabled": True, "logLevel": "debug"}
        router = UnifiedRouter.from_config(parse_router_config(sample_document))

        result = router.evaluate({"model": "x,y", "thinking": {"type": "enabled"}}, 100)
        evaluations = result.metadata["evaluations"]
        assert [e["rule_name"] for e in evaluations] == [
            "longContext", "subagent", "background", "webSearch", "thinking",
        ]
        assert evaluations[-1]["matches"] is True
        assert evaluations[0]["condition"] == "tokens gt 60000"


# ---------------------------------------------------------------------------
# Instance selection
# ---------------------------------------------------------------------------


class TestInstanceSelection:
    @pytest.fixture
    def groups(self):
        manager = GroupManager(start_health_checks=False)
        manager.add_group("reasoners", ["deepseek,deepseek-reasoner"])
        yield manager
        manager.cleanup()

    def test_selects_from_serving_group(self, sample_document, groups) -> None:
        router = UnifiedRouter.from_config(parse_router_config(sample_document), group_manager=groups)
        result = router.evaluate({"model": "x,y", "thinking": {"type": "enabled"}}, 100)

        instance = router.select_instance(result)
        assert instance is not None
        assert instance.route == "deepseek,deepseek-reasoner"
        assert instance.connection_count == 1
        assert "reasoners" in router.get_stats().group_stats

    def test_route_without_group(self, sample_document, groups) -> None:
        router = UnifiedRouter.from_config(parse_router_config(sample_document), group_manager=groups)
        assert router.select_instance(RouteResult(route="a,b")) is None
        assert router.select_instance("a,b") is None

    def test_no_group_manager(self, router: UnifiedRouter) -> None:
        assert router.select_instance("deepseek,deepseek-reasoner") is None
