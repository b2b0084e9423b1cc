# orchestration_engine/scheduler/supervisor.py
"""
Service supervisor - one thread per service.

The supervisor is the only writer of its service's status. It waits for
its dependencies, starts the process, probes it and applies the restart
policy. Every state change goes through the scheduler's condition so that
dependents observe a consistent view.
"""

import logging
import threading
from typing import Optional

from orchestration_engine.core.backoff import BackoffPolicy
from orchestration_engine.core.errors import InvalidStateTransition, ServiceRuntimeError
from orchestration_engine.core.events_model import OrchestratorEvent
from orchestration_engine.core.models import (
    READY_STATES,
    TERMINAL_FAILURE_STATES,
    RestartPolicy,
    ServiceSpec,
    ServiceState,
    ServiceStatus,
)
from orchestration_engine.core.state_machine import SERVICE_TRANSITIONS, ServiceStateMachine
from orchestration_engine.runtime.base import ServiceHandle, ServiceRuntime
from orchestration_engine.scheduler.probes import HealthProber

logger = logging.getLogger(__name__)


# A dependency in one of these will never become ready
UNREACHABLE_STATES = TERMINAL_FAILURE_STATES | {ServiceState.STOPPING, ServiceState.STOPPED}


class ServiceSupervisor(threading.Thread):
    """
    Drives one service through its lifecycle.

    Args:
        spec: Service to supervise
        status: Status record owned by this supervisor
        runtime: Service runtime used to start/stop the process
        prober: Health prober
        backoff: Restart backoff and attempt ceiling
        coordinator: Scheduler providing the shared condition, dependency
            lookups and event publication
        monitor_interval: Poll interval for services without a health check
        stop_timeout: Grace given to the runtime when stopping the process
    """

    def __init__(
        self,
        spec: ServiceSpec,
        status: ServiceStatus,
        runtime: ServiceRuntime,
        prober: HealthProber,
        backoff: BackoffPolicy,
        coordinator,
        *,
        monitor_interval: float = 1.0,
        stop_timeout: float = 10.0,
    ):
        super().__init__(name=f"supervisor-{spec.name}", daemon=True)
        self.spec = spec
        self.status = status
        self._runtime = runtime
        self._prober = prober
        self._backoff = backoff
        self._coordinator = coordinator
        self._monitor_interval = monitor_interval
        self._stop_timeout = stop_timeout

        self._stop_event = threading.Event()
        self._handle: Optional[ServiceHandle] = None

    @property
    def handle(self) -> Optional[ServiceHandle]:
        return self._handle

    def request_stop(self) -> None:
        """Ask the supervisor to stop its service and exit."""
        self._stop_event.set()
        with self._coordinator.condition:
            self._coordinator.condition.notify_all()

    def force_stop(self) -> None:
        """Kill the process immediately (used when the grace period ran out)."""
        handle = self._handle
        if handle is None:
            return
        try:
            self._runtime.stop(handle, timeout=0)
        except ServiceRuntimeError as e:
            logger.error(f"[{self.spec.name}] Force stop failed: {e}")

    # ============================================
    # THREAD BODY
    # ============================================

    def run(self):
        try:
            self._supervise()
        except Exception as e:
            logger.error(f"[{self.spec.name}] Supervisor error: {e}", exc_info=True)
            self._abort(f"supervisor error: {e}")

        # Terminal or stopping: hold the final state until shutdown
        self._stop_event.wait()
        self._shutdown()

    def _supervise(self) -> None:
        if not self._await_dependencies(then=ServiceState.STARTING):
            return

        while not self._stop_event.is_set():
            exit_code = self._start_and_watch()

            if self._stop_event.is_set():
                return
            if self.status.state != ServiceState.UNHEALTHY:
                # COMPLETED or BLOCKED
                return
            if not self._schedule_restart(exit_code):
                return

            self._transition(ServiceState.STARTING)

    # ============================================
    # DEPENDENCIES
    # ============================================

    def _await_dependencies(self, then: ServiceState) -> bool:
        """
        Block until every dependency is ready, then move to `then`.

        The check and the transition happen under the same lock, so no
        dependency can regress in between. Returns False if the service
        got BLOCKED or a stop was requested.
        """
        condition = self._coordinator.condition
        with condition:
            while True:
                if self._stop_event.is_set():
                    return False

                states = {dep: self._coordinator.state_of(dep) for dep in self.spec.depends_on}

                unreachable = sorted(dep for dep, state in states.items() if state in UNREACHABLE_STATES)
                if unreachable:
                    self._transition(
                        ServiceState.BLOCKED,
                        error=f"dependency not available: {', '.join(unreachable)}",
                    )
                    logger.warning(f"[{self.spec.name}] BLOCKED by {unreachable}")
                    return False

                if all(state in READY_STATES for state in states.values()):
                    self._transition(then)
                    return True

                condition.wait(timeout=self._monitor_interval)

    # ============================================
    # START / WATCH
    # ============================================

    def _start_and_watch(self) -> Optional[int]:
        """
        Start the process and watch it until it completes, turns unhealthy
        or a stop is requested.

        Returns:
            Exit code of the process if it exited, else None
        """
        logger.info(f"[{self.spec.name}] Starting (attempt {self.status.restart_attempts + 1})")
        try:
            self._handle = self._runtime.start(self.spec)
        except ServiceRuntimeError as e:
            logger.error(f"[{self.spec.name}] ❌ Start failed: {e}")
            self._transition(ServiceState.UNHEALTHY, error=f"start failed: {e}")
            return None

        if self.spec.is_one_shot:
            return self._await_completion()

        if not self._await_dependencies(then=ServiceState.HEALTH_CHECKING):
            self._release_handle()
            return None

        return self._watch_health()

    def _await_completion(self) -> Optional[int]:
        exit_code = self._poll_exit()
        if exit_code is None:
            return None

        self._release_handle()

        if exit_code == 0:
            logger.info(f"[{self.spec.name}] ✅ Completed")
            self._transition(ServiceState.COMPLETED, exit_code=exit_code)
        else:
            logger.warning(f"[{self.spec.name}] One-shot exited with code {exit_code}")
            self._transition(
                ServiceState.UNHEALTHY,
                error=f"exited with code {exit_code}",
                exit_code=exit_code,
            )
        return exit_code

    def _poll_exit(self) -> Optional[int]:
        while not self._stop_event.is_set():
            exit_code = self._runtime.exit_status(self._handle)
            if exit_code is not None:
                return exit_code
            self._stop_event.wait(self._monitor_interval)
        return None

    def _watch_health(self) -> Optional[int]:
        health_check = self.spec.health_check
        interval = health_check.interval_seconds if health_check else self._monitor_interval

        if health_check and health_check.initial_delay_seconds > 0:
            if self._stop_event.wait(health_check.initial_delay_seconds):
                return None

        while not self._stop_event.is_set():
            try:
                exit_code = self._runtime.exit_status(self._handle)
            except ServiceRuntimeError as e:
                logger.warning(f"[{self.spec.name}] Could not read process status: {e}")
                exit_code = None

            if exit_code is not None:
                logger.warning(f"[{self.spec.name}] ❌ Process exited with code {exit_code}")
                self._transition(
                    ServiceState.UNHEALTHY,
                    error=f"exited with code {exit_code}",
                    exit_code=exit_code,
                )
                return exit_code

            healthy = self._prober.probe(self.spec, self._handle)
            if self._record_probe(healthy):
                return None

            self._stop_event.wait(interval)

        return None

    def _record_probe(self, healthy: bool) -> bool:
        """Update the counters. Returns True if the service turned UNHEALTHY."""
        health_check = self.spec.health_check
        success_threshold = health_check.success_threshold if health_check else 1
        failure_threshold = health_check.failure_threshold if health_check else 1

        with self._coordinator.condition:
            status = self.status
            if healthy:
                status.consecutive_successes += 1
                status.consecutive_failures = 0
                if (
                    status.state == ServiceState.HEALTH_CHECKING
                    and status.consecutive_successes >= success_threshold
                ):
                    logger.info(f"[{self.spec.name}] ✅ HEALTHY")
                    status.restart_attempts = 0
                    self._transition(ServiceState.HEALTHY)
                return False

            status.consecutive_failures += 1
            status.consecutive_successes = 0
            logger.debug(
                f"[{self.spec.name}] Health check failed "
                f"({status.consecutive_failures}/{failure_threshold})"
            )
            if status.consecutive_failures >= failure_threshold:
                logger.warning(f"[{self.spec.name}] ❌ UNHEALTHY after {status.consecutive_failures} failed checks")
                self._transition(
                    ServiceState.UNHEALTHY,
                    error=f"{status.consecutive_failures} consecutive failed health checks",
                )
                return True
            return False

    # ============================================
    # RESTART POLICY
    # ============================================

    def _schedule_restart(self, exit_code: Optional[int]) -> bool:
        """
        Apply the restart policy to an UNHEALTHY service.

        Returns True if the service should be started again.
        """
        policy = self.spec.restart_policy
        reason = self.status.last_error or "unhealthy"

        if policy == RestartPolicy.NEVER:
            self._fail(f"{reason} (restart policy: never)")
            return False

        if policy == RestartPolicy.ON_FAILURE and exit_code == 0:
            self._fail("exited")
            return False

        attempts = self.status.restart_attempts
        if self._backoff.exhausted(attempts):
            self._fail(f"restart ceiling reached after {attempts} attempt(s): {reason}")
            return False

        attempt = attempts + 1
        delay = self._backoff.delay_for(attempt)

        self._release_handle()

        logger.warning(
            f"[{self.spec.name}] Restarting in {delay:.1f}s "
            f"(attempt {attempt}/{self._backoff.max_attempts})"
        )
        if self._stop_event.wait(delay):
            return False

        with self._coordinator.condition:
            self.status.restart_attempts = attempt
        return True

    def _fail(self, reason: str) -> None:
        self._release_handle()
        with self._coordinator.condition:
            self._transition(ServiceState.FAILED, error=reason)
            self._coordinator.emit(OrchestratorEvent.service_failed(
                self.status,
                self._coordinator.dependents_of(self.spec.name),
            ))
        logger.error(f"[{self.spec.name}] ❌ FAILED: {reason}")

    def _abort(self, reason: str) -> None:
        """Move to FAILED from wherever the supervisor crashed, if the table allows it."""
        self._release_handle()
        state = self.status.state
        if ServiceState.FAILED in SERVICE_TRANSITIONS.get(state, set()):
            self._fail(reason)
        elif ServiceState.UNHEALTHY in SERVICE_TRANSITIONS.get(state, set()):
            self._transition(ServiceState.UNHEALTHY, error=reason)
            self._fail(reason)

    # ============================================
    # SHUTDOWN
    # ============================================

    def _shutdown(self) -> None:
        state = self.status.state
        try:
            if state == ServiceState.STOPPED:
                return
            if ServiceState.STOPPED in SERVICE_TRANSITIONS.get(state, set()):
                self._release_handle()
                self._transition(ServiceState.STOPPED)
                return

            self._transition(ServiceState.STOPPING)
            self._release_handle()
            self._transition(ServiceState.STOPPED)
            logger.info(f"[{self.spec.name}] Stopped")
        except InvalidStateTransition as e:
            logger.error(f"[{self.spec.name}] Shutdown transition rejected: {e}")

    def _release_handle(self) -> None:
        handle = self._handle
        if handle is None:
            return
        self._handle = None
        try:
            self._runtime.stop(handle, timeout=self._stop_timeout)
        except ServiceRuntimeError as e:
            logger.error(f"[{self.spec.name}] Failed to stop process: {e}")

    # ============================================
    # STATE
    # ============================================

    def _transition(
        self,
        new_state: ServiceState,
        *,
        error: Optional[str] = None,
        exit_code: Optional[int] = None,
    ) -> None:
        with self._coordinator.condition:
            previous = self.status.state
            if error is not None:
                self.status.last_error = error
            if exit_code is not None:
                self.status.last_exit_code = exit_code
            ServiceStateMachine.transition(self.status, new_state)
            if previous != new_state:
                self._coordinator.publish(self.status, previous)
            self._coordinator.condition.notify_all()
