"""Instance registry data models."""

import time
import uuid
from typing import Any, Dict, Literal, Optional

from pydantic import BaseModel, Field

InstanceStatus = Literal["healthy", "unhealthy", "draining"]

HEALTHY = "healthy"
UNHEALTHY = "unhealthy"
DRAINING = "draining"

INSTANCE_STATUSES = (HEALTHY, UNHEALTHY, DRAINING)

StrategyType = Literal["round-robin", "least-connections", "random", "weighted"]

DEFAULT_WEIGHT = 1.0


def generate_instance_id() -> str:
    return f"inst_{uuid.uuid4().hex[:12]}"


class RouteInstance(BaseModel):
    """One addressable backend serving a route.

    Attributes:
        id: Registry-unique identifier.
        route: ``provider,model`` target this instance serves.
        status: ``healthy`` instances are the only selectable ones.
        last_used: Epoch seconds of the last selection (creation time
            until first used).
        connection_count: Selections not yet released.
        metadata: Caller-supplied data (endpoint URL, region ...).
    """

    id: str = Field(default_factory=generate_instance_id)
    route: str
    status: InstanceStatus = HEALTHY
    last_used: float = Field(default_factory=time.time)
    connection_count: int = 0
    metadata: Dict[str, Any] = Field(default_factory=dict)


class LoadBalancingStrategy(BaseModel):
    """Which selection algorithm a registry uses.

    Attributes:
        type: Strategy name.
        weights: Per-route weights for ``weighted``; unlisted routes
            weigh :data:`DEFAULT_WEIGHT`.
    """

    type: StrategyType = "round-robin"
    weights: Dict[str, float] = Field(default_factory=dict)


class InstanceManagerConfig(BaseModel):
    """Per-registry settings; unset fields come from ``settings.instances``.

    Attributes:
        max_instances: Capacity of the registry.
        health_check_interval: Seconds between health passes; ``0``
            disables the background loop.
        health_check_timeout: Seconds to wait for one instance's check.
        recovery_timeout: An instance unused for longer than this is
            considered unhealthy by the default check.
        max_connections: Connection ceiling for the default check.
        drain_poll_interval: Seconds between draining polls.
        load_balancing: Selection strategy.
    """

    max_instances: Optional[int] = Field(default=None, alias="maxInstances")
    health_check_interval: Optional[float] = Field(default=None, alias="healthCheckInterval")
    health_check_timeout: Optional[float] = Field(default=None, alias="healthCheckTimeout")
    recovery_timeout: Optional[float] = Field(default=None, alias="recoveryTimeout")
    max_connections: Optional[int] = Field(default=None, alias="maxConnections")
    drain_poll_interval: Optional[float] = Field(default=None, alias="drainPollInterval")
    load_balancing: Optional[LoadBalancingStrategy] = Field(default=None, alias="loadBalancing")

    model_config = {"populate_by_name": True}
