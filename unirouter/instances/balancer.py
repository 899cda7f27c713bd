"""
Load balancing strategies.

Each strategy picks one instance out of a non-empty list of healthy
candidates.  Strategies are pure: they do not touch connection counts
or timestamps; the instance manager does that after selection.
"""

import random
from typing import Callable, Dict, List, Optional, Sequence

from unirouter.instances.models import DEFAULT_WEIGHT, LoadBalancingStrategy, RouteInstance


def select_round_robin(instances: Sequence[RouteInstance]) -> RouteInstance:
    """Pick the least recently used instance (first one wins ties)."""
    return min(instances, key=lambda inst: inst.last_used)


def select_least_connections(instances: Sequence[RouteInstance]) -> RouteInstance:
    """Pick the instance with the fewest open connections."""
    return min(instances, key=lambda inst: inst.connection_count)


def select_random(instances: Sequence[RouteInstance], rng: Optional[random.Random] = None) -> RouteInstance:
    return (rng or random).choice(list(instances))


def select_weighted(
    instances: Sequence[RouteInstance],
    weights: Dict[str, float],
    rng: Optional[random.Random] = None,
) -> RouteInstance:
    """Weighted random choice keyed by each instance's route."""
    candidates: List[RouteInstance] = list(instances)
    instance_weights = [max(weights.get(inst.route, DEFAULT_WEIGHT), 0.0) for inst in candidates]
    total = sum(instance_weights)
    if total <= 0:
        return candidates[0]

    point = (rng or random).random() * total
    for inst, weight in zip(candidates, instance_weights):
        point -= weight
        if point <= 0:
            return inst
    return candidates[-1]


def select_instance(
    instances: Sequence[RouteInstance],
    strategy: LoadBalancingStrategy,
    rng: Optional[random.Random] = None,
) -> RouteInstance:
    """Apply *strategy* to a non-empty candidate list.

    Raises:
        ValueError: If *instances* is empty.
    """
    if not instances:
        raise ValueError("No candidate instances to select from")

    selectors: Dict[str, Callable[[], RouteInstance]] = {
        "round-robin": lambda: select_round_robin(instances),
        "least-connections": lambda: select_least_connections(instances),
        "random": lambda: select_random(instances, rng),
        "weighted": lambda: select_weighted(instances, strategy.weights, rng),
    }
    return selectors.get(strategy.type, selectors["round-robin"])()
