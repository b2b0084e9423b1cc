#tests\conftest.py

"""Pytest configuration and fixtures."""

import itertools
import threading
import time
from collections import deque
from dataclasses import replace
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple

import pytest

from orchestration_engine.backup.hooks import BackupHook
from orchestration_engine.core.backoff import BackoffPolicy
from orchestration_engine.core.clock import ManualClock
from orchestration_engine.core.errors import BackupFailure, ServiceRuntimeError
from orchestration_engine.core.events import RecordingEventEmitter
from orchestration_engine.core.models import (
    HealthCheckDefinition,
    HealthCheckType,
    Profile,
    RestartPolicy,
    ServiceSpec,
    Topology,
)
from orchestration_engine.infrastructure.memory.repository import (
    InMemoryBackupRepository,
    InMemoryCertificateRepository,
)
from orchestration_engine.infrastructure.sql.database import create_db_engine, get_session_factory, init_db
from orchestration_engine.runtime.base import ServiceHandle, ServiceRuntime
from orchestration_engine.scheduler.probes import HealthProber
from orchestration_engine.scheduler.scheduler import DependencyScheduler


# ============================================
# Fakes
# ============================================

class FakeRuntime(ServiceRuntime):
    """
    In-process service runtime.

    Scripting:
        exit_plan[name]: exit codes, one per start (instances keep running
            once the plan is used up)
        start_failures[name]: number of starts that raise
        exec_results[name]: (exit_code, output) returned by exec
        on_start[name]: callback invoked with the ServiceSpec on every start
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._ids = itertools.count(1)
        self._running: Dict[str, str] = {}
        self._exited: Dict[str, int] = {}
        self._stopped: set = set()

        self.exit_plan: Dict[str, deque] = {}
        self.start_failures: Dict[str, int] = {}
        self.exec_results: Dict[str, Tuple[int, bytes]] = {}
        self.on_start: Dict[str, callable] = {}

        self.started: List[str] = []
        self.stopped: List[str] = []
        self.started_specs: List[ServiceSpec] = []
        self.exec_calls: List[Tuple[str, Tuple[str, ...]]] = []

    def plan_exits(self, name: str, *codes: int) -> None:
        self.exit_plan[name] = deque(codes)

    def start(self, spec: ServiceSpec) -> ServiceHandle:
        with self._lock:
            remaining = self.start_failures.get(spec.name, 0)
            if remaining > 0:
                self.start_failures[spec.name] = remaining - 1
                raise ServiceRuntimeError(f"cannot start {spec.name}")

            runtime_id = f"{spec.name}-{next(self._ids)}"
            self.started.append(spec.name)
            self.started_specs.append(spec)
            self._running[runtime_id] = spec.name

            plan = self.exit_plan.get(spec.name)
            if plan:
                self._exited[runtime_id] = plan.popleft()

            callback = self.on_start.get(spec.name)

        if callback is not None:
            callback(spec)
        return ServiceHandle(service=spec.name, runtime_id=runtime_id)

    def stop(self, handle: ServiceHandle, timeout: float = 10.0) -> None:
        with self._lock:
            if handle.runtime_id in self._stopped:
                return
            self._stopped.add(handle.runtime_id)
            self._running.pop(handle.runtime_id, None)
            self.stopped.append(handle.service)

    def exit_status(self, handle: ServiceHandle) -> Optional[int]:
        with self._lock:
            if handle.runtime_id in self._exited:
                return self._exited[handle.runtime_id]
            if handle.runtime_id in self._stopped:
                return 137
            return None

    def crash(self, name: str, code: int = 1) -> None:
        """Make every running instance of name exit with code."""
        with self._lock:
            for runtime_id, service in self._running.items():
                if service == name:
                    self._exited[runtime_id] = code

    def exec(self, handle: ServiceHandle, command: Sequence[str], timeout: float) -> Tuple[int, bytes]:
        with self._lock:
            self.exec_calls.append((handle.service, tuple(command)))
            return self.exec_results.get(handle.service, (0, b""))

    def logs(self, handle: ServiceHandle, tail: int = 50) -> str:
        return f"logs of {handle.service}"

    def running(self) -> List[str]:
        with self._lock:
            return sorted(self._running.values())


class ScriptedProber(HealthProber):
    """
    Prober with scripted answers.

    healthy[name]: current answer (default True)
    fail_first[name]: number of probes answered False before `healthy` applies
    """

    def __init__(self):
        super().__init__(runtime=None)
        self._lock = threading.Lock()
        self.healthy: Dict[str, bool] = {}
        self.fail_first: Dict[str, int] = {}
        self.probes: List[str] = []

    def set_healthy(self, name: str, healthy: bool) -> None:
        with self._lock:
            self.healthy[name] = healthy

    def probe(self, spec: ServiceSpec, handle: Optional[ServiceHandle]) -> bool:
        with self._lock:
            self.probes.append(spec.name)
            remaining = self.fail_first.get(spec.name, 0)
            if remaining > 0:
                self.fail_first[spec.name] = remaining - 1
                return False
            return self.healthy.get(spec.name, True)


class FileHook(BackupHook):
    """Writes a small dump named after the clock; fails while `failing` is set."""

    def __init__(self, clock):
        self.clock = clock
        self.failing = False
        self.block = None
        self.calls = 0

    def backup(self, destination_dir: Path) -> Path:
        self.calls += 1
        if self.block is not None:
            self.block.wait(5)
        if self.failing:
            raise BackupFailure("pg_dump: connection refused")
        destination_dir = Path(destination_dir)
        destination_dir.mkdir(parents=True, exist_ok=True)
        path = destination_dir / f"dump-{self.clock.now():%Y%m%dT%H%M%S}.sql"
        path.write_text("dump")
        return path


# ============================================
# Builders
# ============================================

FAST_HEALTH_CHECK = HealthCheckDefinition(
    type=HealthCheckType.HTTP,
    path="/health",
    interval_seconds=0.01,
    timeout_seconds=0.1,
    success_threshold=1,
    failure_threshold=2,
)


# Keeps a failing service in HEALTH_CHECKING instead of turning it UNHEALTHY
PATIENT_HEALTH_CHECK = replace(FAST_HEALTH_CHECK, failure_threshold=100_000)


def wait_until(predicate, timeout: float = 10.0, interval: float = 0.01) -> bool:
    """Poll predicate until it holds or timeout expires."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()


def make_service(
    name: str,
    depends_on: Sequence[str] = (),
    *,
    profile: Profile = Profile.DEFAULT,
    restart_policy: Optional[RestartPolicy] = None,
    ports: Sequence[int] = (8000,),
    health_check: Optional[HealthCheckDefinition] = FAST_HEALTH_CHECK,
) -> ServiceSpec:
    if restart_policy is None:
        restart_policy = RestartPolicy.ON_FAILURE if profile == Profile.DEFAULT else RestartPolicy.NEVER
    return ServiceSpec(
        name=name,
        image=f"{name}:latest",
        ports=tuple(ports),
        depends_on=frozenset(depends_on),
        health_check=health_check if profile == Profile.DEFAULT else None,
        profile=profile,
        restart_policy=restart_policy,
    )


def make_topology(*services: ServiceSpec, routes=(), domains=()) -> Topology:
    return Topology(
        services={s.name: s for s in services},
        routes=tuple(routes),
        domains=tuple(domains),
    )


# ============================================
# Fixtures
# ============================================

@pytest.fixture
def runtime():
    """Scriptable in-process runtime."""
    return FakeRuntime()


@pytest.fixture
def prober():
    """Scriptable health prober."""
    return ScriptedProber()


@pytest.fixture
def clock():
    """Manual clock starting at 2025-01-01 UTC."""
    return ManualClock()


@pytest.fixture
def events():
    """Recording event emitter."""
    return RecordingEventEmitter()


@pytest.fixture
def fast_backoff():
    """Restart backoff with millisecond delays and a ceiling of 2 restarts."""
    return BackoffPolicy(initial_delay=0.01, multiplier=1.0, max_delay=0.01, max_attempts=2)


@pytest.fixture
def scheduler_factory(runtime, prober, events, fast_backoff):
    """Build schedulers with fast timings; every scheduler is shut down after the test."""
    created = []

    def factory(topology: Topology, **kwargs) -> DependencyScheduler:
        kwargs.setdefault("restart_backoff", fast_backoff)
        kwargs.setdefault("events", events)
        kwargs.setdefault("level_timeout", 5.0)
        kwargs.setdefault("shutdown_grace", 1.0)
        kwargs.setdefault("monitor_interval", 0.01)
        scheduler = DependencyScheduler(topology, runtime, prober, **kwargs)
        created.append(scheduler)
        return scheduler

    yield factory

    for scheduler in created:
        scheduler.shutdown(grace=1.0)


@pytest.fixture
def session_factory():
    """Session factory over a fresh in-memory SQLite database."""
    engine = create_db_engine("sqlite://")
    init_db(engine)
    yield get_session_factory(engine)
    engine.dispose()


@pytest.fixture
def certificate_repository():
    """In-memory certificate repository."""
    return InMemoryCertificateRepository()


@pytest.fixture
def backup_repository():
    """In-memory backup repository."""
    return InMemoryBackupRepository()
