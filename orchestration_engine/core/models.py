"""Core domain models: topology configuration and runtime-owned state."""

from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, Optional, Tuple
from uuid import UUID, uuid4


# ============================================
# ENUMS
# ============================================

class Profile(Enum):
    """Run context a service belongs to."""
    DEFAULT = "default"
    BUILD = "build"
    SSL = "ssl"


class RestartPolicy(Enum):
    NEVER = "never"
    ON_FAILURE = "on-failure"
    ALWAYS = "always"


class HealthCheckType(Enum):
    HTTP = "http"
    TCP = "tcp"
    COMMAND = "command"


class ServiceState(Enum):
    """Service lifecycle state machine."""
    PENDING = "PENDING"
    STARTING = "STARTING"
    HEALTH_CHECKING = "HEALTH_CHECKING"
    HEALTHY = "HEALTHY"
    UNHEALTHY = "UNHEALTHY"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    BLOCKED = "BLOCKED"
    STOPPING = "STOPPING"
    STOPPED = "STOPPED"


# Dependencies in these states unblock their dependents
READY_STATES = frozenset({ServiceState.HEALTHY, ServiceState.COMPLETED})

# A level of the scheduler is settled once every service is in one of these
SETTLED_STATES = frozenset({
    ServiceState.HEALTHY,
    ServiceState.COMPLETED,
    ServiceState.FAILED,
    ServiceState.BLOCKED,
    ServiceState.STOPPED,
})

TERMINAL_FAILURE_STATES = frozenset({ServiceState.FAILED, ServiceState.BLOCKED})


class CertificateState(Enum):
    """Certificate lifecycle state machine."""
    UNREQUESTED = "UNREQUESTED"
    REQUESTING = "REQUESTING"
    ISSUED = "ISSUED"
    ACTIVE = "ACTIVE"
    EXPIRING = "EXPIRING"
    RENEWING = "RENEWING"
    FAILED = "FAILED"


# ============================================
# TOPOLOGY (immutable after load)
# ============================================

@dataclass(frozen=True)
class HealthCheckDefinition:
    """Health check configuration."""
    type: HealthCheckType
    path: str = "/"
    port: Optional[int] = None
    command: Tuple[str, ...] = ()
    interval_seconds: float = 10.0
    timeout_seconds: float = 5.0
    success_threshold: int = 1
    failure_threshold: int = 3
    initial_delay_seconds: float = 0.0


@dataclass(frozen=True)
class ServiceSpec:
    """A declared service (container image or build context)."""
    name: str
    image: Optional[str] = None
    build: Optional[str] = None
    command: Tuple[str, ...] = ()
    ports: Tuple[int, ...] = ()
    environment: Dict[str, str] = field(default_factory=dict)
    volumes: Tuple[str, ...] = ()
    depends_on: frozenset = frozenset()
    health_check: Optional[HealthCheckDefinition] = None
    profile: Profile = Profile.DEFAULT
    restart_policy: RestartPolicy = RestartPolicy.ON_FAILURE
    hostname: Optional[str] = None

    @property
    def is_one_shot(self) -> bool:
        """Build-profile services run to completion instead of staying resident."""
        return self.profile == Profile.BUILD

    @property
    def address(self) -> str:
        return self.hostname or self.name

    @property
    def default_port(self) -> Optional[int]:
        return self.ports[0] if self.ports else None

    def with_command(self, command: Tuple[str, ...], environment: Dict[str, str]) -> "ServiceSpec":
        """Copy of this spec with a rendered command and extra environment."""
        return replace(
            self,
            command=tuple(command),
            environment={**self.environment, **environment},
        )


@dataclass(frozen=True)
class HeaderRewrite:
    """Header directives applied to forwarded requests."""
    set: Dict[str, str] = field(default_factory=dict)
    remove: Tuple[str, ...] = ()


@dataclass(frozen=True)
class RouteRule:
    """Path-prefix route to a target service."""
    prefix: str
    service: str
    port: Optional[int] = None
    strip_prefix: bool = False
    preserve_host: bool = True
    headers: HeaderRewrite = field(default_factory=HeaderRewrite)
    timeout_seconds: float = 30.0
    retries: int = 0
    enabled: bool = True

    def matches(self, path: str) -> bool:
        """True if path equals the prefix or continues it at a '/' boundary."""
        if self.prefix == "/" or self.prefix.endswith("/"):
            return path.startswith(self.prefix)
        return path == self.prefix or path.startswith(self.prefix + "/")

    def upstream_path(self, path: str) -> str:
        if not self.strip_prefix or self.prefix == "/":
            return path
        stripped = path[len(self.prefix.rstrip("/")):]
        return stripped if stripped.startswith("/") else "/" + stripped


@dataclass(frozen=True)
class DomainSpec:
    """A domain served over HTTPS once it holds an active certificate."""
    name: str
    email: Optional[str] = None
    redirect_http: bool = True


@dataclass(frozen=True)
class IngressSpec:
    host: str = "0.0.0.0"
    http_port: int = 80
    https_port: Optional[int] = 443
    challenge_prefix: str = "/.well-known/acme-challenge/"


@dataclass(frozen=True)
class Topology:
    """The full declared set of services, routes and domains."""
    services: Dict[str, ServiceSpec] = field(default_factory=dict)
    routes: Tuple[RouteRule, ...] = ()
    domains: Tuple[DomainSpec, ...] = ()
    ingress: IngressSpec = field(default_factory=IngressSpec)

    def service(self, name: str) -> ServiceSpec:
        return self.services[name]

    def services_with_profile(self, profile: Profile) -> Tuple[ServiceSpec, ...]:
        return tuple(s for s in self.services.values() if s.profile == profile)

    def domain(self, name: str) -> Optional[DomainSpec]:
        for domain in self.domains:
            if domain.name == name:
                return domain
        return None


# ============================================
# SERVICE RUNTIME STATE
# ============================================

@dataclass
class ServiceStatus:
    """Runtime record of one service, written only by its supervisor."""
    name: str
    state: ServiceState = ServiceState.PENDING
    consecutive_successes: int = 0
    consecutive_failures: int = 0
    restart_attempts: int = 0
    last_exit_code: Optional[int] = None
    last_error: Optional[str] = None
    updated_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "state": self.state.value,
            "consecutive_successes": self.consecutive_successes,
            "consecutive_failures": self.consecutive_failures,
            "restart_attempts": self.restart_attempts,
            "last_exit_code": self.last_exit_code,
            "last_error": self.last_error,
            "updated_at": self.updated_at.isoformat(),
        }


# ============================================
# CERTIFICATES
# ============================================

@dataclass(frozen=True)
class CertificateMaterial:
    """Key material and signed certificate on disk."""
    cert_path: str
    key_path: str
    not_before: datetime
    not_after: datetime

    def is_valid_at(self, now: datetime) -> bool:
        return self.not_before <= now < self.not_after


@dataclass
class Certificate:
    """Certificate lifecycle record for one domain."""
    domain: str
    state: CertificateState = CertificateState.UNREQUESTED

    material: Optional[CertificateMaterial] = None
    # Previous good material, kept while a renewal is in flight
    last_good: Optional[CertificateMaterial] = None

    last_attempt_at: Optional[datetime] = None
    next_attempt_at: Optional[datetime] = None
    failure_count: int = 0
    last_error: Optional[str] = None

    version: int = 0

    @property
    def not_before(self) -> Optional[datetime]:
        return self.material.not_before if self.material else None

    @property
    def not_after(self) -> Optional[datetime]:
        return self.material.not_after if self.material else None

    def serving_material(self, now: datetime) -> Optional[CertificateMaterial]:
        """Newest material that is still valid at now, if any."""
        for material in (self.material, self.last_good):
            if material is not None and material.is_valid_at(now):
                return material
        return None

    def needs_renewal(self, now: datetime, renewal_window: timedelta) -> bool:
        if self.material is None:
            return False
        return now >= self.material.not_after - renewal_window

    def record_failure(self, error: str, next_attempt_at: Optional[datetime]) -> None:
        self.failure_count += 1
        self.last_error = error
        self.next_attempt_at = next_attempt_at
        self.version += 1

    def install(self, material: CertificateMaterial) -> None:
        """Adopt freshly issued material; the current one becomes last-known-good."""
        if self.material is not None:
            self.last_good = self.material
        self.material = material
        self.failure_count = 0
        self.last_error = None
        self.next_attempt_at = None
        self.version += 1

    def to_dict(self) -> Dict[str, Any]:
        return {
            "domain": self.domain,
            "state": self.state.value,
            "not_before": self.not_before.isoformat() if self.not_before else None,
            "not_after": self.not_after.isoformat() if self.not_after else None,
            "last_attempt_at": self.last_attempt_at.isoformat() if self.last_attempt_at else None,
            "next_attempt_at": self.next_attempt_at.isoformat() if self.next_attempt_at else None,
            "failure_count": self.failure_count,
            "last_error": self.last_error,
        }


# ============================================
# BACKUPS
# ============================================

@dataclass
class BackupRecord:
    """A stored snapshot of persistent state."""
    created_at: datetime
    size_bytes: int
    path: str
    expires_at: datetime
    backup_id: UUID = field(default_factory=uuid4)

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at <= now

    def to_dict(self) -> Dict[str, Any]:
        return {
            "backup_id": str(self.backup_id),
            "created_at": self.created_at.isoformat(),
            "size_bytes": self.size_bytes,
            "path": self.path,
            "expires_at": self.expires_at.isoformat(),
        }
