# orchestration_engine/router/config.py
"""
Router configuration snapshots and the atomic swap store.

A RouterConfig is immutable. Readers grab the current reference once per
request (or TLS handshake) and keep using it; writers build and validate a
complete replacement before swapping the reference under a lock.
"""

import logging
import ssl
import threading
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Iterable, Mapping, Optional, Tuple

from orchestration_engine.core.clock import Clock, SystemClock
from orchestration_engine.core.errors import RouterConfigError
from orchestration_engine.core.events import EventEmitter, NullEventEmitter
from orchestration_engine.core.events_model import OrchestratorEvent
from orchestration_engine.core.models import (
    CertificateMaterial,
    DomainSpec,
    Profile,
    RouteRule,
    ServiceSpec,
)

logger = logging.getLogger(__name__)


# ============================================
# SNAPSHOT
# ============================================

@dataclass(frozen=True)
class CertificateBinding:
    """Certificate material bound to a domain, with its loaded server context."""
    domain: str
    material: CertificateMaterial
    context: ssl.SSLContext = field(compare=False, repr=False)

    @property
    def not_after(self) -> datetime:
        return self.material.not_after


@dataclass(frozen=True)
class RouterConfig:
    version: int
    routes: Tuple[RouteRule, ...] = ()
    certificates: Mapping[str, CertificateBinding] = field(default_factory=dict)
    services: Mapping[str, ServiceSpec] = field(default_factory=dict)
    domains: Mapping[str, DomainSpec] = field(default_factory=dict)
    created_at: Optional[datetime] = None

    def match(self, path: str) -> Optional[RouteRule]:
        """Longest enabled prefix matching path."""
        for rule in self.routes:
            if rule.enabled and rule.matches(path):
                return rule
        return None

    def binding(self, domain: Optional[str]) -> Optional[CertificateBinding]:
        if not domain:
            return None
        return self.certificates.get(domain.lower().rstrip("."))

    def should_redirect(self, host: Optional[str]) -> bool:
        """True if plain-HTTP requests for host must move to HTTPS."""
        binding = self.binding(host)
        if binding is None:
            return False
        domain = self.domains.get(binding.domain)
        return domain is not None and domain.redirect_http

    def upstream(self, rule: RouteRule) -> Tuple[str, int]:
        spec = self.services[rule.service]
        return spec.address, rule.port or spec.default_port

    def to_dict(self) -> Dict:
        return {
            "version": self.version,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "routes": [
                {
                    "prefix": r.prefix,
                    "service": r.service,
                    "port": r.port or self.services[r.service].default_port,
                    "strip_prefix": r.strip_prefix,
                    "enabled": r.enabled,
                }
                for r in self.routes
            ],
            "certificates": {
                domain: {
                    "not_before": b.material.not_before.isoformat(),
                    "not_after": b.material.not_after.isoformat(),
                    "cert_path": b.material.cert_path,
                }
                for domain, b in sorted(self.certificates.items())
            },
        }


# ============================================
# BUILD + VALIDATE
# ============================================

def sort_routes(routes: Iterable[RouteRule]) -> Tuple[RouteRule, ...]:
    """Longest prefix first; ties broken by prefix text for determinism."""
    return tuple(sorted(routes, key=lambda r: (-len(r.prefix), r.prefix)))


def validate_routes(routes: Iterable[RouteRule], services: Mapping[str, ServiceSpec]) -> None:
    seen = set()
    for rule in routes:
        if not rule.prefix.startswith("/"):
            raise RouterConfigError(f"Route prefix '{rule.prefix}' must start with '/'")
        spec = services.get(rule.service)
        if spec is None:
            raise RouterConfigError(f"Route '{rule.prefix}' targets unknown service '{rule.service}'")
        if spec.profile != Profile.DEFAULT:
            raise RouterConfigError(
                f"Route '{rule.prefix}' targets '{rule.service}' which is a {spec.profile.value} service"
            )
        if (rule.port or spec.default_port) is None:
            raise RouterConfigError(f"Route '{rule.prefix}' has no target port")
        if rule.enabled:
            if rule.prefix in seen:
                raise RouterConfigError(f"Duplicate route prefix '{rule.prefix}'")
            seen.add(rule.prefix)


def load_binding(domain: str, material: CertificateMaterial, now: datetime) -> CertificateBinding:
    """
    Load certificate material into a server SSLContext.

    Raises:
        RouterConfigError: if the files are missing, do not parse, the key
            does not match the certificate, or the certificate is not valid now
    """
    if not material.is_valid_at(now):
        raise RouterConfigError(
            f"Certificate for {domain} is not valid at {now.isoformat()} "
            f"({material.not_before.isoformat()} - {material.not_after.isoformat()})"
        )

    context = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)
    context.minimum_version = ssl.TLSVersion.TLSv1_2
    try:
        context.load_cert_chain(certfile=material.cert_path, keyfile=material.key_path)
    except FileNotFoundError as e:
        raise RouterConfigError(f"Certificate files for {domain} not found: {e}") from e
    except ssl.SSLError as e:
        raise RouterConfigError(f"Certificate for {domain} does not load: {e}") from e
    except OSError as e:
        raise RouterConfigError(f"Certificate for {domain} could not be read: {e}") from e

    return CertificateBinding(domain=domain, material=material, context=context)


# ============================================
# STORE
# ============================================

class ConfigStore:
    """
    Owner of the current RouterConfig.

    current() is a plain attribute read. reconfigure() serializes writers,
    builds the new snapshot outside the readers' view, validates it and
    swaps it in one assignment.
    """

    def __init__(
        self,
        services: Mapping[str, ServiceSpec],
        routes: Iterable[RouteRule] = (),
        domains: Iterable[DomainSpec] = (),
        *,
        clock: Optional[Clock] = None,
        events: Optional[EventEmitter] = None,
    ):
        self._clock = clock or SystemClock()
        self._events = events or NullEventEmitter()
        self._write_lock = threading.Lock()

        services = dict(services)
        routes = sort_routes(routes)
        try:
            validate_routes(routes, services)
        except RouterConfigError:
            logger.error("[router] Initial route table is invalid")
            raise

        self._current = RouterConfig(
            version=1,
            routes=routes,
            certificates={},
            services=services,
            domains={d.name: d for d in domains},
            created_at=self._clock.now(),
        )
        logger.info(f"[router] Initial config v1 with {len(routes)} route(s)")

    def current(self) -> RouterConfig:
        return self._current

    @property
    def version(self) -> int:
        return self._current.version

    def reconfigure(
        self,
        routes: Optional[Iterable[RouteRule]] = None,
        certificates: Optional[Mapping[str, Optional[CertificateMaterial]]] = None,
    ) -> RouterConfig:
        """
        Build, validate and atomically install a new snapshot.

        Args:
            routes: Replacement route table (None keeps the current one)
            certificates: Binding updates per domain; None as a value
                removes that domain's binding. Domains not mentioned keep
                their current binding.

        Returns:
            The installed snapshot

        Raises:
            RouterConfigError: validation failed; the previous snapshot stays
        """
        with self._write_lock:
            old = self._current
            now = self._clock.now()

            try:
                new = self._build(old, routes, certificates, now)
            except RouterConfigError as e:
                logger.error(f"[router] ❌ Reconfiguration rejected, keeping v{old.version}: {e}")
                self._emit(OrchestratorEvent.router_reconfigure_failed(str(e), now))
                raise

            self._current = new

        logger.info(f"[router] ✅ Swapped config v{old.version} -> v{new.version}")
        self._emit(OrchestratorEvent.router_reconfigured(new.version, now))
        return new

    def bind_certificate(self, domain: str, material: CertificateMaterial) -> RouterConfig:
        return self.reconfigure(certificates={domain: material})

    def unbind_certificate(self, domain: str) -> RouterConfig:
        return self.reconfigure(certificates={domain: None})

    def _build(
        self,
        old: RouterConfig,
        routes: Optional[Iterable[RouteRule]],
        certificates: Optional[Mapping[str, Optional[CertificateMaterial]]],
        now: datetime,
    ) -> RouterConfig:
        new_routes = old.routes if routes is None else sort_routes(routes)
        validate_routes(new_routes, old.services)

        bindings = dict(old.certificates)
        for domain, material in (certificates or {}).items():
            if material is None:
                bindings.pop(domain, None)
                continue
            current = bindings.get(domain)
            if current is not None and current.material == material:
                continue
            bindings[domain] = load_binding(domain, material, now)

        return RouterConfig(
            version=old.version + 1,
            routes=new_routes,
            certificates=bindings,
            services=old.services,
            domains=old.domains,
            created_at=now,
        )

    def _emit(self, event: OrchestratorEvent) -> None:
        try:
            self._events.emit([event])
        except Exception as e:
            logger.error(f"[router] Failed to emit {event.event_type}: {e}", exc_info=True)
