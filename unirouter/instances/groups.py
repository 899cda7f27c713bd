"""
Group manager.

A group is a named set of routes backed by its own
:class:`InstanceManager` (one instance per route).  Upstream callers
select by group name; the router looks groups up by route.
"""

import logging
import threading
from typing import Any, Dict, List, Optional, Sequence

from unirouter.exceptions import GroupNotFoundError
from unirouter.instances.manager import HealthPredicate, InstanceManager
from unirouter.instances.models import InstanceManagerConfig, RouteInstance

logger = logging.getLogger(__name__)


class _Group:
    __slots__ = ("name", "routes", "manager")

    def __init__(self, name: str, routes: List[str], manager: InstanceManager) -> None:
        self.name = name
        self.routes = routes
        self.manager = manager


class GroupManager:
    """Maps group names to route sets and their instance registries.

    Args:
        health_predicate: Passed to every registry the manager creates.
        start_health_checks: Whether new registries start their
            health-check loop.
    """

    def __init__(
        self,
        health_predicate: Optional[HealthPredicate] = None,
        start_health_checks: bool = True,
    ) -> None:
        self._groups: Dict[str, _Group] = {}
        self._route_to_group: Dict[str, str] = {}
        self._lock = threading.RLock()
        self._health_predicate = health_predicate
        self._start_health_checks = start_health_checks

    def add_group(
        self,
        name: str,
        routes: Sequence[str],
        config: Optional[InstanceManagerConfig] = None,
    ) -> None:
        """Create a group with one instance per route.

        An existing group of the same name is replaced.  A route that
        already belongs to another group is reassigned to this one.

        Raises:
            CapacityError: If *routes* exceeds the registry capacity.
        """
        manager = InstanceManager(
            config=config,
            health_predicate=self._health_predicate,
            start=self._start_health_checks,
        )
        try:
            for route in routes:
                manager.add_instance(route)
        except Exception:
            manager.stop()
            raise

        with self._lock:
            if name in self._groups:
                self._discard(name)
            self._groups[name] = _Group(name, list(routes), manager)
            for route in routes:
                self._route_to_group[route] = name

        logger.info("Group added", extra={"group": name, "routes": len(routes)})

    def remove_group(self, name: str) -> bool:
        """Stop a group's registry and forget the group.

        Returns:
            ``True`` if the group existed, ``False`` otherwise.
        """
        with self._lock:
            removed = self._discard(name)
        if removed:
            logger.info("Group removed", extra={"group": name})
        return removed

    def update_group(
        self,
        name: str,
        routes: Sequence[str],
        config: Optional[InstanceManagerConfig] = None,
    ) -> None:
        """Replace a group wholesale (remove, then add).

        Raises:
            GroupNotFoundError: If the group does not exist.
        """
        with self._lock:
            if name not in self._groups:
                raise GroupNotFoundError(name)
            self._discard(name)
        self.add_group(name, routes, config)

    def get_group(self, name: str) -> Optional[Dict[str, Any]]:
        """Describe a group: its routes and instance snapshots."""
        with self._lock:
            group = self._groups.get(name)
        if group is None:
            return None
        return {
            "name": group.name,
            "routes": list(group.routes),
            "instances": group.manager.get_instances(),
        }

    def get_manager(self, name: str) -> InstanceManager:
        """Return a group's registry.

        Raises:
            GroupNotFoundError: If the group does not exist.
        """
        with self._lock:
            group = self._groups.get(name)
        if group is None:
            raise GroupNotFoundError(name)
        return group.manager

    def select_instance(self, group_name: str) -> Optional[RouteInstance]:
        """Select an instance from a group's registry.

        Returns:
            An instance snapshot, or ``None`` for an unknown group or a
            group without healthy instances.
        """
        with self._lock:
            group = self._groups.get(group_name)
        if group is None:
            logger.warning("Unknown group", extra={"group": group_name})
            return None
        return group.manager.select_instance(group_name)

    def get_group_by_route(self, route: str) -> Optional[str]:
        with self._lock:
            return self._route_to_group.get(route)

    def get_groups(self) -> Dict[str, Dict[str, Any]]:
        with self._lock:
            names = list(self._groups)
        groups = {}
        for name in names:
            described = self.get_group(name)
            if described is not None:
                groups[name] = described
        return groups

    def stats(self) -> Dict[str, Dict[str, Any]]:
        """Per-group routes and registry counters."""
        with self._lock:
            groups = list(self._groups.values())
        return {
            group.name: {"routes": list(group.routes), **group.manager.stats()}
            for group in groups
        }

    def cleanup(self) -> None:
        """Stop every registry and forget all groups."""
        with self._lock:
            groups = list(self._groups.values())
            self._groups.clear()
            self._route_to_group.clear()
        for group in groups:
            group.manager.stop()
        logger.info("Groups cleaned up", extra={"groups": len(groups)})

    def __contains__(self, name: object) -> bool:
        with self._lock:
            return name in self._groups

    def __len__(self) -> int:
        with self._lock:
            return len(self._groups)

    def _discard(self, name: str) -> bool:
        # Caller holds the lock.
        group = self._groups.pop(name, None)
        if group is None:
            return False
        for route in group.routes:
            if self._route_to_group.get(route) == name:
                del self._route_to_group[route]
        group.manager.stop()
        return True
