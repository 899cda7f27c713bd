"""
Instance registry with health checking and graceful draining.

An :class:`InstanceManager` tracks the backend instances that serve one
or more routes.  Three actors touch its state concurrently and all of
them go through one re-entrant lock:

* callers selecting and releasing instances,
* the background health-check loop (a daemon thread),
* per-instance draining pollers started by :meth:`remove_instance`.

Instances handed out by the public methods are snapshots; mutate state
only through the manager.
"""

import logging
import random
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from typing import Any, Callable, Dict, List, Optional

from unirouter.config import get_settings
from unirouter.exceptions import CapacityError
from unirouter.instances import balancer
from unirouter.instances.models import (
    DRAINING,
    HEALTHY,
    INSTANCE_STATUSES,
    UNHEALTHY,
    InstanceManagerConfig,
    InstanceStatus,
    LoadBalancingStrategy,
    RouteInstance,
)

logger = logging.getLogger(__name__)

HealthPredicate = Callable[[RouteInstance], bool]

_MAX_HEALTH_WORKERS = 8


def default_health_check(
    instance: RouteInstance,
    recovery_timeout: float,
    max_connections: int,
    now: Optional[float] = None,
) -> bool:
    """Heuristic used when no health predicate is supplied.

    An instance is healthy while it has been used within
    *recovery_timeout* seconds and holds no more than *max_connections*
    open connections.
    """
    now = time.time() if now is None else now
    if now - instance.last_used >= recovery_timeout:
        return False
    return instance.connection_count <= max_connections


class InstanceManager:
    """Registry of route instances with load-balanced selection.

    Args:
        config: Registry settings; unset fields fall back to
            ``settings.instances``.
        health_predicate: Called with an instance snapshot during each
            health pass; returns whether the instance is healthy.
            Defaults to :func:`default_health_check`.
        rng: Random source for the ``random`` and ``weighted`` strategies.
        start: Start the background health-check loop immediately.
    """

    def __init__(
        self,
        config: Optional[InstanceManagerConfig] = None,
        health_predicate: Optional[HealthPredicate] = None,
        rng: Optional[random.Random] = None,
        start: bool = True,
    ) -> None:
        cfg = config or InstanceManagerConfig()
        defaults = get_settings().instances

        self.max_instances = cfg.max_instances if cfg.max_instances is not None else defaults.max_instances
        self.health_check_interval = (
            cfg.health_check_interval
            if cfg.health_check_interval is not None
            else defaults.health_check_interval_seconds
        )
        self.health_check_timeout = (
            cfg.health_check_timeout
            if cfg.health_check_timeout is not None
            else defaults.health_check_timeout_seconds
        )
        self.recovery_timeout = (
            cfg.recovery_timeout if cfg.recovery_timeout is not None else defaults.recovery_timeout_seconds
        )
        self.max_connections = (
            cfg.max_connections if cfg.max_connections is not None else defaults.max_connections
        )
        self.drain_poll_interval = (
            cfg.drain_poll_interval
            if cfg.drain_poll_interval is not None
            else defaults.drain_poll_interval_seconds
        )
        self.strategy = cfg.load_balancing or LoadBalancingStrategy(type=defaults.load_balancing)

        self._health_predicate = health_predicate or self._default_predicate
        self._rng = rng
        self._instances: Dict[str, RouteInstance] = {}
        self._lock = threading.RLock()
        self._stop_event = threading.Event()
        self._health_thread: Optional[threading.Thread] = None
        self._drain_threads: Dict[str, threading.Thread] = {}

        logger.info(
            "InstanceManager initialised",
            extra={
                "max_instances": self.max_instances,
                "health_check_interval": self.health_check_interval,
                "strategy": self.strategy.type,
            },
        )
        if start:
            self.start()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        """Start the periodic health-check loop and resume draining.

        Instances still ``draining`` after an earlier :meth:`stop` get a
        new poller.  The loop itself is not started when it is already
        running or the interval is disabled.
        """
        with self._lock:
            self._stop_event.clear()
            for instance_id, instance in self._instances.items():
                if instance.status == DRAINING:
                    self._spawn_drain(instance_id)
            if self._health_thread is not None and self._health_thread.is_alive():
                return
            if not self.health_check_interval or self.health_check_interval <= 0:
                logger.debug("Health-check loop disabled")
                return
            self._health_thread = threading.Thread(
                target=self._run_health_loop,
                name="unirouter-health-check",
                daemon=True,
            )
            self._health_thread.start()
        logger.info("Health-check loop started")

    def stop(self, timeout: float = 5.0) -> None:
        """Stop the health-check loop and pause draining pollers.

        Draining instances keep their status; :meth:`start` resumes them.

        Args:
            timeout: Maximum seconds to wait for the loop thread.
        """
        self._stop_event.set()
        thread = self._health_thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=timeout)
        self._health_thread = None
        logger.info("InstanceManager stopped")

    @property
    def is_running(self) -> bool:
        """Whether the health-check loop is active."""
        thread = self._health_thread
        return thread is not None and thread.is_alive() and not self._stop_event.is_set()

    def __enter__(self) -> "InstanceManager":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.stop()

    # ------------------------------------------------------------------
    # Registry operations
    # ------------------------------------------------------------------

    def add_instance(self, route: str, metadata: Optional[Dict[str, Any]] = None) -> str:
        """Register a healthy instance for *route*.

        Returns:
            The new instance id.

        Raises:
            CapacityError: If the registry already holds ``max_instances``.
        """
        with self._lock:
            if len(self._instances) >= self.max_instances:
                raise CapacityError(f"Instance limit reached: {self.max_instances}")
            instance = RouteInstance(route=route, metadata=dict(metadata or {}))
            self._instances[instance.id] = instance

        logger.info("Instance added", extra={"instance_id": instance.id, "route": route})
        return instance.id

    def remove_instance(self, instance_id: str) -> bool:
        """Start draining an instance; it is deleted once idle.

        The instance stops being selectable immediately.  A background
        poller deletes it once its connection count reaches zero.

        Returns:
            ``True`` if the instance exists, ``False`` otherwise.
        """
        with self._lock:
            instance = self._instances.get(instance_id)
            if instance is None:
                logger.warning("Cannot remove unknown instance", extra={"instance_id": instance_id})
                return False
            instance.status = DRAINING
            connections = instance.connection_count
            self._spawn_drain(instance_id)

        logger.info(
            "Instance draining",
            extra={"instance_id": instance_id, "connections": connections},
        )
        return True

    def select_instance(self, group_name: Optional[str] = None) -> Optional[RouteInstance]:
        """Pick a healthy instance using the configured strategy.

        The chosen instance's ``last_used`` is refreshed and its
        connection count incremented; call :meth:`release_instance`
        when the dispatched call completes.

        Args:
            group_name: Only used for log context.

        Returns:
            A snapshot of the chosen instance, or ``None`` if no healthy
            instance is available.
        """
        with self._lock:
            healthy = [inst for inst in self._instances.values() if inst.status == HEALTHY]
            if not healthy:
                logger.warning("No healthy instance available", extra={"group": group_name})
                return None

            chosen = balancer.select_instance(healthy, self.strategy, self._rng)
            chosen.last_used = time.time()
            chosen.connection_count += 1
            snapshot = chosen.model_copy(deep=True)

        logger.debug(
            "Instance selected",
            extra={"instance_id": snapshot.id, "route": snapshot.route, "group": group_name},
        )
        return snapshot

    def release_instance(self, instance_id: str) -> bool:
        """Decrement an instance's connection count (never below zero).

        Returns:
            ``True`` if the instance exists, ``False`` otherwise.
        """
        with self._lock:
            instance = self._instances.get(instance_id)
            if instance is None:
                return False
            instance.connection_count = max(instance.connection_count - 1, 0)
        return True

    def update_instance_status(self, instance_id: str, status: InstanceStatus) -> bool:
        """Set an instance's status directly.

        Returns:
            ``True`` if the instance exists, ``False`` otherwise.

        Raises:
            ValueError: If *status* is not a known status.
        """
        if status not in INSTANCE_STATUSES:
            raise ValueError(f"Unknown instance status: {status}")
        with self._lock:
            instance = self._instances.get(instance_id)
            if instance is None:
                return False
            instance.status = status
        logger.debug("Instance status updated", extra={"instance_id": instance_id, "status": status})
        return True

    def get_instances(self) -> List[RouteInstance]:
        """Snapshots of every registered instance (draining included)."""
        with self._lock:
            return [inst.model_copy(deep=True) for inst in self._instances.values()]

    def get_instance(self, instance_id: str) -> Optional[RouteInstance]:
        with self._lock:
            instance = self._instances.get(instance_id)
            return instance.model_copy(deep=True) if instance is not None else None

    def stats(self) -> Dict[str, Any]:
        """Return registry counters.

        Returns:
            Dict with the instance total, counts per status, open
            connections, strategy and whether the health loop runs.
        """
        with self._lock:
            by_status = {status: 0 for status in INSTANCE_STATUSES}
            connections = 0
            for inst in self._instances.values():
                by_status[inst.status] += 1
                connections += inst.connection_count
            total = len(self._instances)
        return {
            "total": total,
            **by_status,
            "connections": connections,
            "strategy": self.strategy.type,
            "running": self.is_running,
        }

    def __len__(self) -> int:
        with self._lock:
            return len(self._instances)

    # ------------------------------------------------------------------
    # Health checking
    # ------------------------------------------------------------------

    def health_check(self) -> Dict[str, bool]:
        """Run one health pass over every instance concurrently.

        Status flips only on a genuine transition: ``unhealthy`` to
        ``healthy`` is a recovery, ``healthy`` to ``unhealthy`` a
        degradation.  Draining instances keep their status.  A check
        that raises or times out counts as unhealthy.

        Returns:
            Mapping of instance id to the health verdict.
        """
        snapshots = self.get_instances()
        if not snapshots:
            return {}

        verdicts: Dict[str, bool] = {}
        pool = ThreadPoolExecutor(
            max_workers=min(len(snapshots), _MAX_HEALTH_WORKERS),
            thread_name_prefix="unirouter-health",
        )
        try:
            futures = {inst.id: pool.submit(self._health_predicate, inst) for inst in snapshots}
            for instance_id, future in futures.items():
                try:
                    verdicts[instance_id] = bool(future.result(timeout=self.health_check_timeout))
                except FutureTimeoutError:
                    logger.error("Health check timed out", extra={"instance_id": instance_id})
                    verdicts[instance_id] = False
                except Exception as exc:
                    logger.error(
                        "Health check failed",
                        extra={"instance_id": instance_id, "error": str(exc)},
                    )
                    verdicts[instance_id] = False
        finally:
            pool.shutdown(wait=False)

        for instance_id, healthy in verdicts.items():
            self._apply_verdict(instance_id, healthy)
        return verdicts

    def _apply_verdict(self, instance_id: str, healthy: bool) -> None:
        with self._lock:
            instance = self._instances.get(instance_id)
            if instance is None:
                return
            if healthy and instance.status == UNHEALTHY:
                instance.status = HEALTHY
                transition = "recovered"
            elif not healthy and instance.status == HEALTHY:
                instance.status = UNHEALTHY
                transition = "degraded"
            else:
                return

        if transition == "recovered":
            logger.info("Instance recovered", extra={"instance_id": instance_id})
        else:
            logger.warning("Instance unhealthy", extra={"instance_id": instance_id})

    def _default_predicate(self, instance: RouteInstance) -> bool:
        return default_health_check(instance, self.recovery_timeout, self.max_connections)

    # ------------------------------------------------------------------
    # Background threads
    # ------------------------------------------------------------------

    def _run_health_loop(self) -> None:
        """Health-check loop running in a daemon thread."""
        logger.debug("Health-check loop running")
        while not self._stop_event.wait(self.health_check_interval):
            try:
                self.health_check()
            except Exception as exc:
                logger.error("Health-check pass failed", extra={"error": str(exc)}, exc_info=True)

    def _spawn_drain(self, instance_id: str) -> None:
        # Caller holds the lock.
        poller = self._drain_threads.get(instance_id)
        if poller is not None and poller.is_alive():
            return
        poller = threading.Thread(
            target=self._drain,
            args=(instance_id,),
            name=f"unirouter-drain-{instance_id}",
            daemon=True,
        )
        self._drain_threads[instance_id] = poller
        poller.start()

    def _drain(self, instance_id: str) -> None:
        """Poll until a draining instance is idle, then delete it.

        The poller gives up without deleting when the instance leaves the
        ``draining`` state, and pauses when the manager is stopped.
        """
        while True:
            self._stop_event.wait(self.drain_poll_interval)
            with self._lock:
                instance = self._instances.get(instance_id)
                if self._stop_event.is_set():
                    outcome = "paused"
                elif instance is None:
                    outcome = "gone"
                elif instance.status != DRAINING:
                    outcome = "cancelled"
                elif instance.connection_count > 0:
                    continue
                else:
                    del self._instances[instance_id]
                    outcome = "removed"
                if self._drain_threads.get(instance_id) is threading.current_thread():
                    del self._drain_threads[instance_id]

            if outcome == "removed":
                logger.info("Instance removed", extra={"instance_id": instance_id})
            elif outcome == "cancelled":
                logger.info(
                    "Draining cancelled",
                    extra={"instance_id": instance_id, "status": instance.status},
                )
            else:
                logger.debug("Drain poller exited", extra={"instance_id": instance_id, "outcome": outcome})
            return
