"""Rule storage, condition evaluation and route resolution.

The engine itself lives in :mod:`unirouter.routing.engine`; import it
from there (or from the top-level package).
"""

from unirouter.routing.conditions import ConditionEvaluationResult, ConditionEvaluator
from unirouter.routing.context import RouteContext
from unirouter.routing.providers import ProviderConfig, resolve_provider_model
from unirouter.routing.rules import (
    ExternalFunctionRef,
    RouteAction,
    RouteCondition,
    RouteRule,
    RuleStore,
)
from unirouter.routing.variables import VariableResolver

__all__ = [
    "ConditionEvaluationResult",
    "ConditionEvaluator",
    "ExternalFunctionRef",
    "ProviderConfig",
    "RouteAction",
    "RouteCondition",
    "RouteContext",
    "RouteRule",
    "RuleStore",
    "VariableResolver",
    "resolve_provider_model",
]
