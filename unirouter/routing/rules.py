"""
Routing rules and the rule store.

A rule pairs a single condition with an action (the route template to
use when the condition matches).  Rules are frozen pydantic models; the
:class:`RuleStore` never mutates a rule in place, it swaps in a new
tuple of rules so concurrent readers always see a complete set.
"""

import logging
import threading
from typing import Any, Dict, Iterable, List, Literal, Optional, Tuple

from pydantic import BaseModel, Field, field_validator

logger = logging.getLogger(__name__)

ConditionOperator = Literal["gt", "lt", "eq", "contains", "startsWith", "exists"]

TOKEN_THRESHOLD = "tokenThreshold"
MODEL_CONTAINS = "modelContains"
TOOL_EXISTS = "toolExists"
FIELD_EXISTS = "fieldExists"
CUSTOM = "custom"
EXTERNAL_FUNCTION = "externalFunction"

CONDITION_TYPES = (
    TOKEN_THRESHOLD,
    MODEL_CONTAINS,
    TOOL_EXISTS,
    FIELD_EXISTS,
    CUSTOM,
    EXTERNAL_FUNCTION,
)


class ExternalFunctionRef(BaseModel):
    """Location of an externally supplied predicate.

    Attributes:
        path: Python file path (``.py``) or dotted module name.
        function_name: Preferred attribute to call inside the module.
    """

    path: str
    function_name: Optional[str] = Field(default=None, alias="functionName")

    model_config = {"populate_by_name": True, "frozen": True}


class RouteCondition(BaseModel):
    """A single rule condition.

    ``type`` is kept as a free string so that a rule with an unknown
    condition type can still be loaded; the evaluator rejects it.

    Attributes:
        type: One of :data:`CONDITION_TYPES`.
        field: Dot-separated request path (``fieldExists`` only).
        value: Comparison value.
        operator: Comparison operator; each type has its own default.
        custom_function: Built-in predicate name (``custom`` only).
        external_function: Module reference (``externalFunction`` only).
    """

    type: str
    field: Optional[str] = None
    value: Any = None
    operator: Optional[ConditionOperator] = None
    custom_function: Optional[str] = Field(default=None, alias="customFunction")
    external_function: Optional[ExternalFunctionRef] = Field(
        default=None, alias="externalFunction"
    )

    model_config = {"populate_by_name": True, "frozen": True}


class RouteAction(BaseModel):
    """What to do when a rule matches.

    Attributes:
        route: Target template, e.g. ``"openrouter,claude"`` or ``"${userModel}"``.
        transformers: Names of post-processing transformers to apply.
        metadata: Free-form data carried along with the decision.
        description: Human-readable note shown in rule listings.
    """

    route: str
    transformers: List[str] = Field(default_factory=list)
    metadata: Dict[str, Any] = Field(default_factory=dict)
    description: str = ""

    model_config = {"frozen": True}


class RouteRule(BaseModel):
    """A named, prioritised condition/action pair.

    Attributes:
        name: Unique key within a rule store.
        priority: Higher values are evaluated first.
        enabled: Disabled rules are skipped during evaluation.
        condition: When the rule applies.
        action: Where the request goes if it applies.
    """

    name: str
    priority: int = 0
    enabled: bool = True
    condition: RouteCondition
    action: RouteAction

    model_config = {"frozen": True}

    @field_validator("name")
    @classmethod
    def name_must_not_be_empty(cls, v: str) -> str:
        """Validate that the rule name is not blank."""
        if not v or not v.strip():
            raise ValueError("Rule name must not be empty")
        return v.strip()


def sort_by_priority(rules: Iterable[RouteRule]) -> List[RouteRule]:
    """Sort rules by descending priority, keeping load order for ties."""
    return sorted(rules, key=lambda r: -r.priority)


class RuleStore:
    """Ordered, name-keyed collection of routing rules.

    Reads take a snapshot of an immutable tuple and never lock.  Writes
    build a replacement tuple under a lock and swap it in.

    Args:
        rules: Initial rules in load order.  Duplicate names are
            upserted, so the last definition wins but keeps the first
            position.
    """

    def __init__(self, rules: Optional[Iterable[RouteRule]] = None) -> None:
        self._lock = threading.Lock()
        self._rules: Tuple[RouteRule, ...] = ()
        if rules is not None:
            self.replace(rules)

    # ------------------------------------------------------------------
    # Mutation (copy-on-write)
    # ------------------------------------------------------------------

    def add(self, rule: RouteRule) -> bool:
        """Insert a rule, or replace the existing rule with the same name.

        Args:
            rule: Rule to upsert.

        Returns:
            ``True`` if an existing rule was replaced, ``False`` if added.
        """
        with self._lock:
            current = list(self._rules)
            for index, existing in enumerate(current):
                if existing.name == rule.name:
                    current[index] = rule
                    self._rules = tuple(current)
                    logger.info("Rule replaced", extra={"rule": rule.name})
                    return True
            current.append(rule)
            self._rules = tuple(current)
        logger.info(
            "Rule added",
            extra={"rule": rule.name, "priority": rule.priority},
        )
        return False

    def remove(self, name: str) -> bool:
        """Remove a rule by name.

        Returns:
            ``True`` if a rule was removed, ``False`` if none matched.
        """
        with self._lock:
            remaining = tuple(r for r in self._rules if r.name != name)
            removed = len(remaining) != len(self._rules)
            self._rules = remaining
        if removed:
            logger.info("Rule removed", extra={"rule": name})
        return removed

    def toggle(self, name: str, enabled: bool) -> bool:
        """Enable or disable a rule.

        Returns:
            ``True`` if the rule exists, ``False`` otherwise.
        """
        with self._lock:
            current = list(self._rules)
            for index, existing in enumerate(current):
                if existing.name == name:
                    current[index] = existing.model_copy(update={"enabled": enabled})
                    self._rules = tuple(current)
                    break
            else:
                logger.warning("Cannot toggle unknown rule", extra={"rule": name})
                return False
        logger.info("Rule toggled", extra={"rule": name, "enabled": enabled})
        return True

    def replace(self, rules: Iterable[RouteRule]) -> None:
        """Swap in a whole new rule set (upserting duplicate names)."""
        ordered: Dict[str, RouteRule] = {}
        for rule in rules:
            ordered[rule.name] = rule
        with self._lock:
            self._rules = tuple(ordered.values())

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get(self, name: str) -> Optional[RouteRule]:
        """Return a rule by name, or ``None``."""
        for rule in self._rules:
            if rule.name == name:
                return rule
        return None

    def in_load_order(self) -> List[RouteRule]:
        """Return every rule in the order it was loaded."""
        return list(self._rules)

    def sorted_rules(self, enabled_only: bool = False) -> List[RouteRule]:
        """Return rules by descending priority.

        Args:
            enabled_only: Drop disabled rules.
        """
        snapshot = self._rules
        if enabled_only:
            return sort_by_priority(r for r in snapshot if r.enabled)
        return sort_by_priority(snapshot)

    def __len__(self) -> int:
        return len(self._rules)

    def __contains__(self, name: object) -> bool:
        return any(rule.name == name for rule in self._rules)
