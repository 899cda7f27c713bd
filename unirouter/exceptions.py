"""
unirouter exception hierarchy.

All custom exceptions inherit from UniRouterException so callers can
catch a single base type when they want a broad safety net.
"""


class UniRouterException(Exception):
    """Base exception for all unirouter errors."""


class ConfigurationError(UniRouterException, ValueError):
    """Raised when settings or a router configuration are invalid."""


class UnsupportedConditionError(UniRouterException, ValueError):
    """Raised when a rule carries a condition type the evaluator does not know."""


class ExternalFunctionError(UniRouterException):
    """Raised when an external predicate module cannot be loaded."""


class CapacityError(UniRouterException):
    """Raised when an instance registry is already at its maximum size."""


class GroupNotFoundError(UniRouterException, KeyError):
    """Raised when a lookup requires a group that is not registered."""
