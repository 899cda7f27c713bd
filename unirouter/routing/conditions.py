"""
Condition evaluator for routing rules.

Each condition type has fixed comparison semantics:

* ``tokenThreshold`` compares the request token count (gt / lt / eq).
* ``modelContains`` compares the requested model string
  (contains / startsWith / eq, case-sensitive).
* ``toolExists`` checks whether any tool's type or function name
  contains the value.
* ``fieldExists`` looks up a dot-separated path in the request body.
* ``custom`` calls a named predicate from the registry.
* ``externalFunction`` loads and calls a predicate from a module.

Evaluation never raises for a failing condition; the failure is recorded
on the result and the condition counts as not matching.  The one
exception is an unknown condition type, which is a configuration error
and propagates as :class:`UnsupportedConditionError`.
"""

import logging
import time
from pathlib import Path
from typing import Any, Callable, Dict, Optional, Tuple, Union

from pydantic import BaseModel

from unirouter.exceptions import UnsupportedConditionError
from unirouter.routing import external
from unirouter.routing.context import RouteContext
from unirouter.routing.providers import ROUTE_SEPARATOR
from unirouter.routing.rules import (
    CUSTOM,
    EXTERNAL_FUNCTION,
    FIELD_EXISTS,
    MODEL_CONTAINS,
    TOKEN_THRESHOLD,
    TOOL_EXISTS,
    RouteCondition,
)

logger = logging.getLogger(__name__)

CustomPredicate = Callable[[RouteContext, RouteCondition], bool]

# Default operator per condition type when the rule omits one.
_DEFAULT_OPERATORS = {
    TOKEN_THRESHOLD: "gt",
    MODEL_CONTAINS: "contains",
    FIELD_EXISTS: "eq",
}


class ConditionEvaluationResult(BaseModel):
    """Outcome of evaluating one rule's condition.

    Attributes:
        rule_name: Rule the condition belongs to (set by the engine).
        matches: Whether the condition holds.
        value: The value the condition looked at.
        evaluation_time_ms: Wall time spent evaluating.
        error: Failure message when evaluation raised.
    """

    rule_name: Optional[str] = None
    matches: bool
    value: Any = None
    evaluation_time_ms: float = 0.0
    error: Optional[str] = None


# ---------------------------------------------------------------------------
# Comparisons
# ---------------------------------------------------------------------------


def compare_numbers(actual: Any, expected: Any, operator: str) -> bool:
    if operator == "gt":
        return actual > expected
    if operator == "lt":
        return actual < expected
    if operator == "eq":
        return actual == expected
    return False


def compare_strings(actual: str, expected: Any, operator: str) -> bool:
    expected = "" if expected is None else str(expected)
    if operator == "contains":
        return expected in actual
    if operator == "startsWith":
        return actual.startswith(expected)
    if operator == "eq":
        return actual == expected
    return False


def compare_values(actual: Any, expected: Any, operator: str) -> bool:
    if operator == "eq":
        return actual == expected
    if operator == "contains":
        if isinstance(actual, (list, tuple)):
            return expected in actual
        return str(expected) in str(actual)
    return False


def get_field_value(obj: Any, field_path: str) -> Any:
    """Follow a dot-separated path through dicts and lists.

    Numeric segments index into lists.  A final ``text`` segment below
    the root (``system.1.text``) reads the entry's ``content`` first and
    only then ``text``, because producers put system text in either.

    Returns:
        The value found, or ``None`` if any segment is missing.
    """
    parts = field_path.split(".")
    current = obj
    for index, part in enumerate(parts):
        if isinstance(current, dict):
            if index == len(parts) - 1 and part == "text" and current is not obj:
                current = current.get("content") or current.get("text")
            else:
                current = current.get(part)
        elif isinstance(current, (list, tuple)):
            try:
                current = current[int(part)]
            except (ValueError, IndexError):
                return None
        else:
            return None
    return current


def describe_condition(condition: RouteCondition) -> str:
    """Short human-readable summary of a condition for debug output."""
    if condition.type == TOKEN_THRESHOLD:
        return f"tokens {condition.operator or 'gt'} {condition.value}"
    if condition.type == MODEL_CONTAINS:
        return f"model {condition.operator or 'contains'} {condition.value!r}"
    if condition.type == TOOL_EXISTS:
        return f"tool {condition.value!r} exists"
    if condition.type == FIELD_EXISTS:
        return f"field {condition.field!r} {condition.operator or 'eq'}"
    if condition.type == CUSTOM:
        return f"custom function {condition.custom_function}"
    if condition.type == EXTERNAL_FUNCTION:
        path = condition.external_function.path if condition.external_function else "<missing path>"
        return f"external function {path}"
    return f"unsupported condition type {condition.type}"


# ---------------------------------------------------------------------------
# Built-in custom predicates
# ---------------------------------------------------------------------------


def model_contains_comma(context: RouteContext, condition: RouteCondition) -> bool:
    """The caller named an explicit ``provider,model`` pair."""
    model = context.requested_model
    return bool(model) and ROUTE_SEPARATOR in model


def direct_model_mapping(context: RouteContext, condition: RouteCondition) -> bool:
    """The caller sent a bare provider or model code that can be mapped."""
    model = context.requested_model
    return bool(model and model.strip()) and ROUTE_SEPARATOR not in model


BUILTIN_PREDICATES: Dict[str, CustomPredicate] = {
    "modelContainsComma": model_contains_comma,
    "directModelMapping": direct_model_mapping,
}


# ---------------------------------------------------------------------------
# Evaluator
# ---------------------------------------------------------------------------


class ConditionEvaluator:
    """Stateless evaluator for :class:`RouteCondition` objects.

    Args:
        custom_predicates: Extra named predicates for ``custom``
            conditions, merged over the built-ins.
        base_dir: Directory relative external rule paths resolve against.
        external_timeout: Default seconds to wait for an external
            predicate; ``None`` waits indefinitely.
    """

    def __init__(
        self,
        custom_predicates: Optional[Dict[str, CustomPredicate]] = None,
        base_dir: Optional[Union[str, Path]] = None,
        external_timeout: Optional[float] = None,
    ) -> None:
        self._predicates: Dict[str, CustomPredicate] = dict(BUILTIN_PREDICATES)
        if custom_predicates:
            self._predicates.update(custom_predicates)
        self._base_dir = base_dir
        self._external_timeout = external_timeout
        self._handlers = {
            TOKEN_THRESHOLD: self._token_threshold,
            MODEL_CONTAINS: self._model_contains,
            TOOL_EXISTS: self._tool_exists,
            FIELD_EXISTS: self._field_exists,
            CUSTOM: self._custom,
            EXTERNAL_FUNCTION: self._external,
        }

    def register_custom(self, name: str, predicate: CustomPredicate) -> None:
        """Register (or replace) a named predicate for ``custom`` conditions."""
        self._predicates[name] = predicate
        logger.info("Custom predicate registered", extra={"predicate": name})

    @property
    def custom_predicates(self) -> Dict[str, CustomPredicate]:
        return dict(self._predicates)

    def evaluate(
        self,
        condition: RouteCondition,
        context: RouteContext,
        timeout: Optional[float] = None,
    ) -> ConditionEvaluationResult:
        """Evaluate a condition against a request context.

        Args:
            condition: The condition to test.
            context: The request being routed.
            timeout: Seconds to wait for an external predicate; falls
                back to the evaluator default.

        Returns:
            A result record; ``error`` is set if evaluation failed.

        Raises:
            UnsupportedConditionError: For an unknown condition type.
        """
        handler = self._handlers.get(condition.type)
        if handler is None:
            raise UnsupportedConditionError(
                f"Unsupported condition type: {condition.type}"
            )

        start = time.perf_counter()
        try:
            matches, value = handler(condition, context, timeout)
        except Exception as exc:
            logger.warning(
                "Condition evaluation failed",
                extra={"condition_type": condition.type, "error": str(exc)},
            )
            return ConditionEvaluationResult(
                matches=False,
                evaluation_time_ms=(time.perf_counter() - start) * 1000,
                error=str(exc) or exc.__class__.__name__,
            )

        return ConditionEvaluationResult(
            matches=bool(matches),
            value=value,
            evaluation_time_ms=(time.perf_counter() - start) * 1000,
        )

    # ------------------------------------------------------------------
    # Per-type handlers: each returns (matches, observed value)
    # ------------------------------------------------------------------

    def _token_threshold(
        self, condition: RouteCondition, context: RouteContext, timeout: Optional[float]
    ) -> Tuple[bool, Any]:
        value = context.token_count
        operator = condition.operator or _DEFAULT_OPERATORS[TOKEN_THRESHOLD]
        return compare_numbers(value, condition.value, operator), value

    def _model_contains(
        self, condition: RouteCondition, context: RouteContext, timeout: Optional[float]
    ) -> Tuple[bool, Any]:
        value = context.requested_model or ""
        operator = condition.operator or _DEFAULT_OPERATORS[MODEL_CONTAINS]
        return compare_strings(value, condition.value, operator), value

    def _tool_exists(
        self, condition: RouteCondition, context: RouteContext, timeout: Optional[float]
    ) -> Tuple[bool, Any]:
        # Only the tool type and function.name are searched; a bare top-level
        # "name" is ignored.
        needle = str(condition.value)
        found = False
        for tool in context.tools:
            if not isinstance(tool, dict):
                continue
            tool_type = tool.get("type")
            function = tool.get("function") or {}
            function_name = function.get("name") if isinstance(function, dict) else None
            if any(isinstance(s, str) and needle in s for s in (tool_type, function_name)):
                found = True
                break
        if condition.operator == "exists":
            return found, found
        return found == condition.value, found

    def _field_exists(
        self, condition: RouteCondition, context: RouteContext, timeout: Optional[float]
    ) -> Tuple[bool, Any]:
        if not condition.field:
            raise ValueError("fieldExists condition requires a field path")
        value = get_field_value(context.request, condition.field)
        operator = condition.operator or _DEFAULT_OPERATORS[FIELD_EXISTS]
        if operator == "exists":
            return value is not None, value
        if operator == "contains":
            if value is None:
                return False, value
            if condition.value is None:
                return True, value
            return compare_values(value, condition.value, operator), value
        return compare_values(value, condition.value, operator), value

    def _custom(
        self, condition: RouteCondition, context: RouteContext, timeout: Optional[float]
    ) -> Tuple[bool, Any]:
        predicate = self._predicates.get(condition.custom_function or "")
        if predicate is None:
            logger.warning(
                "Unknown custom predicate",
                extra={"predicate": condition.custom_function},
            )
            return False, False
        matches = bool(predicate(context, condition))
        return matches, matches

    def _external(
        self, condition: RouteCondition, context: RouteContext, timeout: Optional[float]
    ) -> Tuple[bool, Any]:
        ref = condition.external_function
        if ref is None or not ref.path:
            logger.warning("External condition is missing a module path")
            return False, False

        try:
            module = external.load_module(ref.path, self._base_dir)
            fn = external.select_function(module, ref.function_name)
            if fn is None:
                logger.error(
                    "External module exports no usable predicate",
                    extra={"path": ref.path, "function_name": ref.function_name},
                )
                return False, False
            wait = timeout if timeout is not None else self._external_timeout
            matches = external.call_predicate(fn, context, condition, timeout=wait)
        except Exception as exc:
            logger.error(
                "External predicate failed",
                extra={
                    "path": ref.path,
                    "function_name": ref.function_name,
                    "error": str(exc) or exc.__class__.__name__,
                },
            )
            raise
        logger.debug("External predicate evaluated", extra={"path": ref.path, "matches": matches})
        return matches, matches
