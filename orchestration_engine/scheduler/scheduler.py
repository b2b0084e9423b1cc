# orchestration_engine/scheduler/scheduler.py
"""
Dependency/Health Scheduler.

Brings the services of a topology up level by level (topological order),
and tears them down in reverse. Each service is driven by its own
ServiceSupervisor thread; this class owns the shared status table and the
condition every supervisor waits on.
"""

import logging
import threading
import time
from dataclasses import replace
from typing import Callable, Dict, Iterable, List, Optional

from orchestration_engine.core.backoff import BackoffPolicy
from orchestration_engine.core.events import EventEmitter, NullEventEmitter
from orchestration_engine.core.events_model import OrchestratorEvent
from orchestration_engine.core.models import (
    SETTLED_STATES,
    ServiceState,
    ServiceStatus,
    Topology,
)
from orchestration_engine.core.state_machine import ServiceStateMachine
from orchestration_engine.runtime.base import ServiceHandle, ServiceRuntime
from orchestration_engine.scheduler.probes import HealthProber
from orchestration_engine.scheduler.supervisor import ServiceSupervisor
from orchestration_engine.topology.loader import dependents_closure, topological_levels

logger = logging.getLogger(__name__)


StateListener = Callable[[ServiceStatus, ServiceState], None]


class DependencyScheduler:
    """
    Starts services in dependency order, gated by health.

    Listeners are called synchronously, under the scheduler lock, on every
    state change (status copy, previous state). They must not block.
    """

    def __init__(
        self,
        topology: Topology,
        runtime: ServiceRuntime,
        prober: Optional[HealthProber] = None,
        *,
        restart_backoff: Optional[BackoffPolicy] = None,
        events: Optional[EventEmitter] = None,
        level_timeout: float = 300.0,
        shutdown_grace: float = 10.0,
        monitor_interval: float = 1.0,
    ):
        self._topology = topology
        self._runtime = runtime
        self._prober = prober or HealthProber(runtime)
        self._backoff = restart_backoff or BackoffPolicy(initial_delay=1.0, multiplier=2.0, max_delay=60.0)
        self._events = events or NullEventEmitter()
        self._level_timeout = level_timeout
        self._shutdown_grace = shutdown_grace
        self._monitor_interval = monitor_interval

        # Raises DependencyCycleError for cyclic graphs, before anything starts
        self.levels: List[List[str]] = topological_levels(topology.services)

        self._statuses: Dict[str, ServiceStatus] = {
            name: ServiceStatus(name=name) for name in topology.services
        }
        self._condition = threading.Condition()
        self._listeners: List[StateListener] = []
        self._supervisors: Dict[str, ServiceSupervisor] = {}

        self._launcher: Optional[threading.Thread] = None
        self._stopping = threading.Event()

    # ============================================
    # COORDINATOR INTERFACE (used by supervisors)
    # ============================================

    @property
    def condition(self) -> threading.Condition:
        return self._condition

    def state_of(self, name: str) -> ServiceState:
        return self._statuses[name].state

    def dependents_of(self, name: str) -> List[str]:
        """Services that transitively depend on name; they cannot start while it is FAILED."""
        return sorted(dependents_closure(self._topology.services, name))

    def publish(self, status: ServiceStatus, previous: ServiceState) -> None:
        """Called by a supervisor (holding the condition) after a state change."""
        logger.info(f"[scheduler] {status.name}: {previous.value} -> {status.state.value}")
        self.emit(OrchestratorEvent.service_state_changed(status, previous))

        snapshot = replace(status)
        for listener in list(self._listeners):
            try:
                listener(snapshot, previous)
            except Exception as e:
                logger.error(f"[scheduler] State listener failed: {e}", exc_info=True)

    def emit(self, event: OrchestratorEvent) -> None:
        try:
            self._events.emit([event])
        except Exception as e:
            logger.error(f"[scheduler] Failed to emit {event.event_type}: {e}", exc_info=True)

    # ============================================
    # READ INTERFACE
    # ============================================

    def add_listener(self, listener: StateListener) -> None:
        with self._condition:
            self._listeners.append(listener)

    def is_healthy(self, name: str) -> bool:
        status = self._statuses.get(name)
        return status is not None and status.state == ServiceState.HEALTHY

    def handle_of(self, name: str) -> Optional[ServiceHandle]:
        """Runtime handle of a running service (backup hooks exec into it)."""
        supervisor = self._supervisors.get(name)
        return supervisor.handle if supervisor else None

    def snapshot(self) -> Dict[str, ServiceStatus]:
        """Copies of every service status."""
        with self._condition:
            return {name: replace(status) for name, status in self._statuses.items()}

    def wait_for(
        self,
        names: Iterable[str],
        states: Iterable[ServiceState],
        timeout: Optional[float] = None,
    ) -> bool:
        """Block until every named service is in one of `states`."""
        names = list(names)
        states = set(states)
        with self._condition:
            return self._condition.wait_for(
                lambda: all(self._statuses[n].state in states for n in names),
                timeout=timeout,
            )

    def wait_until_settled(self, timeout: Optional[float] = None) -> bool:
        return self.wait_for(self._statuses, SETTLED_STATES, timeout=timeout)

    # ============================================
    # START
    # ============================================

    def start(self, wait: bool = False) -> None:
        """
        Launch the services level by level in a background thread.

        Args:
            wait: Block until the launcher has walked every level
        """
        if self._launcher is not None:
            raise RuntimeError("Scheduler already started")

        logger.info("=" * 80)
        logger.info(f"🚀 SCHEDULER STARTING {len(self._statuses)} service(s) in {len(self.levels)} level(s)")
        logger.info("=" * 80)

        self._launcher = threading.Thread(target=self._launch_levels, name="scheduler-launcher", daemon=True)
        self._launcher.start()
        if wait:
            self._launcher.join()

    def _launch_levels(self) -> None:
        for index, level in enumerate(self.levels):
            if self._stopping.is_set():
                return

            logger.info(f"[scheduler] Level {index}: {', '.join(level)}")
            with self._condition:
                if self._stopping.is_set():
                    return
                for name in level:
                    supervisor = ServiceSupervisor(
                        spec=self._topology.services[name],
                        status=self._statuses[name],
                        runtime=self._runtime,
                        prober=self._prober,
                        backoff=self._backoff,
                        coordinator=self,
                        monitor_interval=self._monitor_interval,
                        stop_timeout=self._shutdown_grace,
                    )
                    self._supervisors[name] = supervisor
                    supervisor.start()

            with self._condition:
                settled = self._condition.wait_for(
                    lambda: self._stopping.is_set()
                    or all(self._statuses[n].state in SETTLED_STATES for n in level),
                    timeout=self._level_timeout,
                )
            if not settled and not self._stopping.is_set():
                pending = [
                    n for n in level
                    if self._statuses[n].state not in SETTLED_STATES
                ]
                logger.warning(
                    f"[scheduler] Level {index} did not settle within "
                    f"{self._level_timeout}s (still waiting on {pending}), continuing"
                )

        logger.info("[scheduler] ✅ All levels launched")

    # ============================================
    # SHUTDOWN
    # ============================================

    def shutdown(self, grace: Optional[float] = None) -> None:
        """
        Stop every service in reverse dependency order.

        Each level gets `grace` seconds to stop; stragglers are killed
        through the runtime.
        """
        grace = self._shutdown_grace if grace is None else grace

        logger.info("[scheduler] Shutting down...")
        self._stopping.set()
        with self._condition:
            self._condition.notify_all()

        for level in reversed(self.levels):
            with self._condition:
                supervisors = [self._supervisors[n] for n in level if n in self._supervisors]
                never_launched = [n for n in level if n not in self._supervisors]

            for supervisor in supervisors:
                supervisor.request_stop()

            deadline = time.monotonic() + grace
            for supervisor in supervisors:
                supervisor.join(max(0.0, deadline - time.monotonic()))
                if supervisor.is_alive():
                    logger.warning(
                        f"[scheduler] {supervisor.spec.name} did not stop within {grace}s, killing"
                    )
                    supervisor.force_stop()

            for name in never_launched:
                self._mark_stopped(name)

        if self._launcher is not None:
            self._launcher.join(timeout=grace)

        logger.info("[scheduler] Shutdown complete")

    def _mark_stopped(self, name: str) -> None:
        """Services whose supervisor never launched have no other writer."""
        with self._condition:
            status = self._statuses[name]
            previous = status.state
            if previous == ServiceState.PENDING:
                ServiceStateMachine.transition(status, ServiceState.STOPPED)
                self.publish(status, previous)
                self._condition.notify_all()
