"""Instance registries, load balancing and route groups."""

from unirouter.instances.balancer import select_instance
from unirouter.instances.groups import GroupManager
from unirouter.instances.manager import InstanceManager, default_health_check
from unirouter.instances.models import (
    InstanceManagerConfig,
    InstanceStatus,
    LoadBalancingStrategy,
    RouteInstance,
)

__all__ = [
    "GroupManager",
    "InstanceManager",
    "InstanceManagerConfig",
    "InstanceStatus",
    "LoadBalancingStrategy",
    "RouteInstance",
    "default_health_check",
    "select_instance",
]
