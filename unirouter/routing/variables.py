"""
Route template variables.

Three placeholders are understood:

``${userModel}``
    The model string the caller sent, verbatim.
``${subagent}``
    The ``provider,model`` pair wrapped in the subagent marker tags
    inside the first system entry that carries them.
``${mappedModel}``
    The caller's bare model or provider code resolved against the
    provider catalog.

The resolver only substitutes.  A placeholder it cannot fill is left in
the returned string untouched; deciding what that means (fall back to
the default route, or hand the literal upstream) is the engine's job.
"""

import logging
import re
from typing import List, Optional, Tuple

from unirouter.routing.context import RouteContext
from unirouter.routing.providers import has_provider_qualifier, resolve_provider_model

logger = logging.getLogger(__name__)

USER_MODEL = "${userModel}"
SUBAGENT = "${subagent}"
MAPPED_MODEL = "${mappedModel}"

SUBAGENT_OPEN_TAG = "<CCR-SUBAGENT-MODEL>"
SUBAGENT_CLOSE_TAG = "</CCR-SUBAGENT-MODEL>"

_SUBAGENT_PATTERN = re.compile(
    re.escape(SUBAGENT_OPEN_TAG) + r"(.*?)" + re.escape(SUBAGENT_CLOSE_TAG),
    re.DOTALL,
)


def has_placeholder(route: str) -> bool:
    """Whether *route* still contains any ``${...}`` placeholder."""
    return "${" in route


def _system_entry_text(entry) -> str:
    if isinstance(entry, dict):
        text = entry.get("content") or entry.get("text") or ""
    elif isinstance(entry, str):
        text = entry
    else:
        text = ""
    return text if isinstance(text, str) else ""


def extract_subagent_model(context: RouteContext) -> Optional[str]:
    """Return the model named by the subagent marker, if any.

    Only the first system entry containing the opening tag is examined.
    """
    for entry in context.system:
        text = _system_entry_text(entry)
        if SUBAGENT_OPEN_TAG in text:
            match = _SUBAGENT_PATTERN.search(text)
            if match and match.group(1).strip():
                return match.group(1).strip()
            return None
    return None


class VariableResolver:
    """Substitutes route placeholders for one routing call.

    Args:
        default_route: The router's default route.  A ``${mappedModel}``
            lookup that lands on it is reported as a failure so that the
            decision is attributed to the default rather than the rule.
    """

    def __init__(self, default_route: str) -> None:
        self.default_route = default_route

    def resolve(self, route: str, context: RouteContext) -> Tuple[str, List[str]]:
        """Fill every placeholder this resolver can.

        Args:
            route: Route template from the matched rule.
            context: The request being routed.

        Returns:
            ``(route, failed)`` where *failed* lists the placeholders that
            could not be filled and are still present in *route*.
        """
        failed: List[str] = []
        resolved = route

        if USER_MODEL in resolved:
            user_model = context.requested_model
            if user_model:
                resolved = resolved.replace(USER_MODEL, user_model)
            else:
                logger.warning("userModel substitution failed: request has no model")
                failed.append(USER_MODEL)

        if SUBAGENT in resolved:
            subagent_model = extract_subagent_model(context)
            if subagent_model:
                resolved = resolved.replace(SUBAGENT, subagent_model)
            else:
                logger.warning("subagent substitution failed: no marker in system messages")
                failed.append(SUBAGENT)

        if MAPPED_MODEL in resolved:
            mapped = self.map_model(context)
            if mapped:
                resolved = resolved.replace(MAPPED_MODEL, mapped)
            else:
                logger.warning(
                    "mappedModel substitution failed",
                    extra={"requested_model": context.requested_model},
                )
                failed.append(MAPPED_MODEL)

        if resolved != route:
            logger.debug("Route variables substituted", extra={"template": route, "route": resolved})
        return resolved, failed

    def map_model(self, context: RouteContext) -> Optional[str]:
        """Resolve the caller's bare model code, or ``None``."""
        user_model = context.requested_model
        if not user_model or has_provider_qualifier(user_model):
            return None
        mapped = resolve_provider_model(user_model, context.providers)
        if mapped is None or mapped == self.default_route:
            return None
        return mapped
