"""
Provider catalog and provider/model resolution.

A route is the string ``"provider,model"``.  Callers frequently send
only half of it: a bare model name (``claude-3.7-sonnet``) or a bare
provider code (``haiku-glm``).  :func:`resolve_provider_model` turns
either into a full route by consulting the provider catalog.
"""

import logging
from typing import Any, Iterable, List, Mapping, Optional, Sequence, Tuple

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)

ROUTE_SEPARATOR = ","


class ProviderConfig(BaseModel):
    """One entry of the provider catalog.

    Unknown keys (``api_base_url``, ``api_key``, ``transformer`` ...) are
    kept so the catalog can be passed through to the dispatch layer.

    Attributes:
        name: Provider name, matched case-insensitively.
        models: Models served by this provider; the first is its primary.
        default_model: Model to use when only the provider is named.
        model: Single-model shorthand used by some configurations.
    """

    name: str
    models: List[str] = Field(default_factory=list)
    default_model: Optional[str] = Field(default=None, alias="defaultModel")
    model: Optional[str] = None

    model_config = {"populate_by_name": True, "extra": "allow"}


def coerce_providers(raw: Optional[Iterable[Any]]) -> List[ProviderConfig]:
    """Build a provider list from dicts or ready-made models.

    Entries without a ``name`` are skipped with a warning.
    """
    providers: List[ProviderConfig] = []
    for entry in raw or []:
        if isinstance(entry, ProviderConfig):
            providers.append(entry)
        elif isinstance(entry, Mapping) and entry.get("name"):
            providers.append(ProviderConfig.model_validate(dict(entry)))
        else:
            logger.warning("Skipping provider entry without a name")
    return providers


def split_route(route: str) -> Tuple[str, Optional[str]]:
    """Split ``"provider,model"`` into its parts (model may be ``None``)."""
    provider, sep, model = route.partition(ROUTE_SEPARATOR)
    return provider, (model if sep else None)


def has_provider_qualifier(value: Optional[str]) -> bool:
    """Whether *value* already names both a provider and a model."""
    return bool(value) and ROUTE_SEPARATOR in value


def resolve_provider_model(
    value: str,
    providers: Sequence[ProviderConfig],
    fallback_to_input: bool = False,
) -> Optional[str]:
    """Normalise a bare model or provider name into ``"provider,model"``.

    Resolution order:

    1. Input already contains the separator: returned unchanged.
    2. Input equals a model in some provider's ``models`` list: that
       provider's *first* model is returned (or its ``model`` field when
       that matches).
    3. Input equals a provider name (case-insensitive): the provider's
       ``default_model``, else first of ``models``, else ``model``.

    Args:
        value: Bare model or provider name.
        providers: The provider catalog.
        fallback_to_input: Return *value* instead of ``None`` on a miss.

    Returns:
        The full route, or ``None`` when nothing matches and
        ``fallback_to_input`` is false.
    """
    if ROUTE_SEPARATOR in value:
        return value

    for provider in providers:
        if value in provider.models:
            route = f"{provider.name}{ROUTE_SEPARATOR}{provider.models[0]}"
            logger.info("Model name matched", extra={"request": value, "route": route})
            return route
        if provider.model is not None and provider.model == value:
            route = f"{provider.name}{ROUTE_SEPARATOR}{provider.model}"
            logger.info("Model name matched", extra={"request": value, "route": route})
            return route

    wanted = value.lower()
    matched = next((p for p in providers if p.name.lower() == wanted), None)
    if matched is None:
        logger.debug("No provider or model matches", extra={"input": value})
        return value if fallback_to_input else None

    model = matched.default_model or (matched.models[0] if matched.models else None) or matched.model
    if model:
        route = f"{matched.name}{ROUTE_SEPARATOR}{model}"
        logger.info("Provider name matched", extra={"request": value, "route": route})
        return route

    logger.error("Provider has no models configured", extra={"provider": matched.name})
    return value if fallback_to_input else None
