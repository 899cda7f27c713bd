"""Tests for the condition evaluator."""

import pytest

from unirouter.exceptions import UnsupportedConditionError
from unirouter.routing.conditions import (
    BUILTIN_PREDICATES,
    ConditionEvaluator,
    compare_numbers,
    compare_strings,
    describe_condition,
    get_field_value,
)
from unirouter.routing.context import RouteContext
from unirouter.routing.rules import RouteCondition


def ctx(request=None, tokens: int = 0) -> RouteContext:
    return RouteContext.from_request(request or {}, tokens)


@pytest.fixture
def evaluator() -> ConditionEvaluator:
    return ConditionEvaluator()


# ---------------------------------------------------------------------------
# Field paths
# ---------------------------------------------------------------------------


class TestGetFieldValue:
    def test_nested_dict_and_list(self) -> None:
        body = {"a": {"b": [{"c": 1}, {"c": 2}]}}
        assert get_field_value(body, "a.b.1.c") == 2

    def test_missing_segment_returns_none(self) -> None:
        assert get_field_value({"a": {}}, "a.b.c") is None
        assert get_field_value({"a": [1]}, "a.5") is None
        assert get_field_value({"a": [1]}, "a.x") is None
        assert get_field_value({"a": 3}, "a.b") is None

    def test_text_prefers_content_below_root(self) -> None:
        body = {"system": [{}, {"type": "text", "content": "from content", "text": "from text"}]}
        assert get_field_value(body, "system.1.text") == "from content"

    def test_text_falls_back_to_text(self) -> None:
        body = {"system": [{}, {"type": "text", "text": "only text"}]}
        assert get_field_value(body, "system.1.text") == "only text"

    def test_root_level_text_not_aliased(self) -> None:
        body = {"text": "root", "content": "other"}
        assert get_field_value(body, "text") == "root"


# ---------------------------------------------------------------------------
# Comparisons
# ---------------------------------------------------------------------------


class TestComparisons:
    def test_numbers(self) -> None:
        assert compare_numbers(5, 3, "gt") is True
        assert compare_numbers(5, 3, "lt") is False
        assert compare_numbers(3, 3, "eq") is True
        assert compare_numbers(3, 3, "contains") is False

    def test_strings_case_sensitive(self) -> None:
        assert compare_strings("claude-3-haiku", "haiku", "contains") is True
        assert compare_strings("claude-3-Haiku", "haiku", "contains") is False
        assert compare_strings("claude-3-haiku", "claude", "startsWith") is True
        assert compare_strings("claude", "claude", "eq") is True


# ---------------------------------------------------------------------------
# Evaluator
# ---------------------------------------------------------------------------


class TestTokenThreshold:
    def test_default_operator_is_gt(self, evaluator: ConditionEvaluator) -> None:
        cond = RouteCondition(type="tokenThreshold", value=1000)
        assert evaluator.evaluate(cond, ctx(tokens=1001)).matches is True
        assert evaluator.evaluate(cond, ctx(tokens=1000)).matches is False

    def test_lt_and_eq(self, evaluator: ConditionEvaluator) -> None:
        assert evaluator.evaluate(RouteCondition(type="tokenThreshold", value=10, operator="lt"), ctx(tokens=5)).matches
        assert evaluator.evaluate(RouteCondition(type="tokenThreshold", value=5, operator="eq"), ctx(tokens=5)).matches

    def test_result_records_value_and_time(self, evaluator: ConditionEvaluator) -> None:
        result = evaluator.evaluate(RouteCondition(type="tokenThreshold", value=1), ctx(tokens=42))
        assert result.value == 42
        assert result.evaluation_time_ms >= 0
        assert result.error is None


class TestModelContains:
    def test_contains(self, evaluator: ConditionEvaluator) -> None:
        cond = RouteCondition(type="modelContains", value="haiku")
        assert evaluator.evaluate(cond, ctx({"model": "claude-3-5-haiku"})).matches is True
        assert evaluator.evaluate(cond, ctx({"model": "claude-sonnet"})).matches is False

    def test_missing_model(self, evaluator: ConditionEvaluator) -> None:
        cond = RouteCondition(type="modelContains", value="haiku")
        assert evaluator.evaluate(cond, ctx({})).matches is False

    def test_starts_with(self, evaluator: ConditionEvaluator) -> None:
        cond = RouteCondition(type="modelContains", value="gpt", operator="startsWith")
        assert evaluator.evaluate(cond, ctx({"model": "gpt-4o"})).matches is True
        assert evaluator.evaluate(cond, ctx({"model": "my-gpt"})).matches is False


class TestToolExists:
    def test_matches_tool_type(self, evaluator: ConditionEvaluator) -> None:
        cond = RouteCondition(type="toolExists", value="web_search", operator="exists")
        request = {"tools": [{"type": "web_search_20250305", "name": "web_search"}]}
        assert evaluator.evaluate(cond, ctx(request)).matches is True

    def test_matches_function_name(self, evaluator: ConditionEvaluator) -> None:
        cond = RouteCondition(type="toolExists", value="web_search", operator="exists")
        request = {"tools": [{"type": "function", "function": {"name": "web_search"}}]}
        assert evaluator.evaluate(cond, ctx(request)).matches is True

    def test_absent(self, evaluator: ConditionEvaluator) -> None:
        cond = RouteCondition(type="toolExists", value="web_search", operator="exists")
        request = {"tools": [{"type": "function", "function": {"name": "calculator"}}]}
        result = evaluator.evaluate(cond, ctx(request))
        assert result.matches is False
        assert evaluator.evaluate(cond, ctx({})).matches is False

    def test_top_level_name_ignored(self, evaluator: ConditionEvaluator) -> None:
        cond = RouteCondition(type="toolExists", value="web_search", operator="exists")
        request = {"tools": [{"name": "web_search_notes"}]}
        assert evaluator.evaluate(cond, ctx(request)).matches is False

    def test_eq_compares_presence_to_value(self, evaluator: ConditionEvaluator) -> None:
        cond = RouteCondition(type="toolExists", value="web_search", operator="eq")
        request = {"tools": [{"type": "web_search"}]}
        # presence (True) is compared with the value ("web_search")
        assert evaluator.evaluate(cond, ctx(request)).matches is False


class TestFieldExists:
    def test_exists(self, evaluator: ConditionEvaluator) -> None:
        cond = RouteCondition(type="fieldExists", field="thinking", operator="exists")
        assert evaluator.evaluate(cond, ctx({"thinking": {"type": "enabled"}})).matches is True
        assert evaluator.evaluate(cond, ctx({"thinking": None})).matches is False
        assert evaluator.evaluate(cond, ctx({})).matches is False

    def test_contains_substring(self, evaluator: ConditionEvaluator, subagent_system) -> None:
        cond = RouteCondition(
            type="fieldExists", field="system.1.text", operator="contains", value="<CCR-SUBAGENT-MODEL>"
        )
        assert evaluator.evaluate(cond, ctx({"system": subagent_system})).matches is True
        assert evaluator.evaluate(cond, ctx({"system": [{"text": "a"}, {"text": "b"}]})).matches is False

    def test_contains_uses_content_field(self, evaluator: ConditionEvaluator) -> None:
        cond = RouteCondition(type="fieldExists", field="system.1.text", operator="contains", value="MARK")
        request = {"system": [{"content": "x"}, {"content": "has MARK inside"}]}
        assert evaluator.evaluate(cond, ctx(request)).matches is True

    def test_default_eq(self, evaluator: ConditionEvaluator) -> None:
        cond = RouteCondition(type="fieldExists", field="metadata.user_id", value="u1")
        assert evaluator.evaluate(cond, ctx({"metadata": {"user_id": "u1"}})).matches is True
        assert evaluator.evaluate(cond, ctx({"metadata": {"user_id": "u2"}})).matches is False

    def test_missing_field_path_is_error(self, evaluator: ConditionEvaluator) -> None:
        result = evaluator.evaluate(RouteCondition(type="fieldExists", operator="exists"), ctx({}))
        assert result.matches is False
        assert result.error is not None


class TestCustom:
    def test_model_contains_comma(self, evaluator: ConditionEvaluator) -> None:
        cond = RouteCondition(type="custom", custom_function="modelContainsComma")
        assert evaluator.evaluate(cond, ctx({"model": "openrouter,claude"})).matches is True
        assert evaluator.evaluate(cond, ctx({"model": "claude"})).matches is False
        assert evaluator.evaluate(cond, ctx({})).matches is False

    def test_direct_model_mapping(self, evaluator: ConditionEvaluator) -> None:
        cond = RouteCondition(type="custom", custom_function="directModelMapping")
        assert evaluator.evaluate(cond, ctx({"model": "haiku-glm"})).matches is True
        assert evaluator.evaluate(cond, ctx({"model": "p,m"})).matches is False
        assert evaluator.evaluate(cond, ctx({"model": "   "})).matches is False
        assert evaluator.evaluate(cond, ctx({})).matches is False

    def test_unknown_custom_function_is_false(self, evaluator: ConditionEvaluator) -> None:
        result = evaluator.evaluate(RouteCondition(type="custom", custom_function="nope"), ctx({}))
        assert result.matches is False
        assert result.error is None

    def test_register_custom(self, evaluator: ConditionEvaluator) -> None:
        evaluator.register_custom("isVip", lambda context, condition: context.session_id == "vip")
        cond = RouteCondition(type="custom", custom_function="isVip")
        assert evaluator.evaluate(cond, RouteContext.from_request({}, 0, session_id="vip")).matches is True
        assert "isVip" not in BUILTIN_PREDICATES

    def test_raising_predicate_recorded_as_error(self) -> None:
        def boom(context, condition):
            raise RuntimeError("kaboom")

        evaluator = ConditionEvaluator(custom_predicates={"boom": boom})
        result = evaluator.evaluate(RouteCondition(type="custom", custom_function="boom"), ctx({}))
        assert result.matches is False
        assert result.error == "kaboom"


class TestUnsupportedCondition:
    def test_unknown_type_raises(self, evaluator: ConditionEvaluator) -> None:
        with pytest.raises(UnsupportedConditionError):
            evaluator.evaluate(RouteCondition(type="moonPhase"), ctx({}))


class TestDescribeCondition:
    def test_descriptions(self) -> None:
        assert describe_condition(RouteCondition(type="tokenThreshold", value=5)) == "tokens gt 5"
        assert "haiku" in describe_condition(RouteCondition(type="modelContains", value="haiku"))
        assert "missing path" in describe_condition(RouteCondition(type="externalFunction"))
        assert "unsupported" in describe_condition(RouteCondition(type="other"))
