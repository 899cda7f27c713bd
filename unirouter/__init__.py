"""unirouter: rule-based routing of model-completion requests."""

from unirouter.router_config import RouterConfig, UnifiedRouterConfig, load_router_config
from unirouter.routing.engine import RouteResult, RouteStats, UnifiedRouter

__version__ = "0.1.0"

__all__ = [
    "RouteResult",
    "RouteStats",
    "RouterConfig",
    "UnifiedRouter",
    "UnifiedRouterConfig",
    "load_router_config",
]
