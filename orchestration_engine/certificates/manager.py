# orchestration_engine/certificates/manager.py
"""
Certificate Lifecycle Manager.

A scheduled state machine per domain:

    UNREQUESTED -> REQUESTING -> ISSUED -> ACTIVE -> EXPIRING -> RENEWING -> ACTIVE
    REQUESTING / RENEWING -> FAILED -> (retry with backoff) REQUESTING / RENEWING

The manager only touches routing state through ConfigStore, and every
decision reads time from the injected clock, so tick() is deterministic
under a ManualClock.
"""

import logging
import threading
from datetime import datetime, timedelta
from typing import Dict, Iterable, List, Optional

from orchestration_engine.certificates.authority import CertificateAuthority
from orchestration_engine.certificates.challenges import ChallengeStore
from orchestration_engine.core.backoff import BackoffPolicy
from orchestration_engine.core.clock import Clock, SystemClock
from orchestration_engine.core.errors import (
    CertificateIssuanceFailure,
    RenewalFailure,
    RouterConfigError,
)
from orchestration_engine.core.events import EventEmitter, NullEventEmitter
from orchestration_engine.core.events_model import OrchestratorEvent
from orchestration_engine.core.models import Certificate, CertificateState, DomainSpec
from orchestration_engine.core.repository import CertificateRepository
from orchestration_engine.core.state_machine import CertificateStateMachine
from orchestration_engine.core.timeouts import CallTimeout, call_with_timeout
from orchestration_engine.router.config import ConfigStore

logger = logging.getLogger(__name__)


# Stored mid-flight states mean the previous process died during issuance
INTERRUPTED_STATES = (CertificateState.REQUESTING, CertificateState.ISSUED, CertificateState.RENEWING)


class CertificateManager:
    """
    Issues, installs and renews certificates for the topology's domains.

    Args:
        domains: Domains to manage
        authority: Certificate authority used for issuance
        store: Router configuration store (the only way to bind certificates)
        repository: Certificate persistence
        challenges: Challenge store served by the ingress
        clock: Time source
        backoff: Retry backoff and attempt ceiling for failed issuance
        renewal_window: Renew this long before not_after
        check_interval: Seconds between worker ticks
        issuance_timeout: Upper bound for one authority call
        events: Event emitter
    """

    def __init__(
        self,
        domains: Iterable[DomainSpec],
        authority: CertificateAuthority,
        store: ConfigStore,
        repository: CertificateRepository,
        challenges: ChallengeStore,
        *,
        clock: Optional[Clock] = None,
        backoff: Optional[BackoffPolicy] = None,
        renewal_window: timedelta = timedelta(days=30),
        check_interval: float = 3600.0,
        issuance_timeout: float = 300.0,
        events: Optional[EventEmitter] = None,
    ):
        self._domains: Dict[str, DomainSpec] = {d.name: d for d in domains}
        self._authority = authority
        self._store = store
        self._repository = repository
        self._challenges = challenges
        self._clock = clock or SystemClock()
        self._backoff = backoff or BackoffPolicy(initial_delay=60.0, multiplier=4.0, max_delay=86400.0)
        self._renewal_window = renewal_window
        self._check_interval = check_interval
        self._issuance_timeout = issuance_timeout
        self._events = events or NullEventEmitter()

        self._locks = {name: threading.Lock() for name in self._domains}
        self._wake = {name: threading.Event() for name in self._domains}
        self._manual_requests = set()
        self._manual_lock = threading.Lock()

        self._stop_event = threading.Event()
        self._threads: List[threading.Thread] = []

    @property
    def domains(self) -> List[str]:
        return list(self._domains)

    # ============================================
    # BOOTSTRAP
    # ============================================

    def bootstrap(self) -> None:
        """
        Load stored certificates and re-bind the ones still valid.

        Domains without a record start in UNREQUESTED and are requested on
        their first tick.
        """
        now = self._clock.now()
        for name in self._domains:
            with self._locks[name]:
                cert = self._repository.get(name)
                if cert is None:
                    cert = Certificate(domain=name)
                    self._repository.save(cert)
                    logger.info(f"[certs] {name}: no stored certificate, will request")
                    continue

                if cert.state in INTERRUPTED_STATES:
                    logger.warning(f"[certs] {name}: issuance was interrupted in {cert.state.value}, retrying")
                    self._transition(cert, CertificateState.FAILED, now)
                    cert.last_error = "interrupted"
                    cert.next_attempt_at = now
                    self._repository.save(cert)

                material = cert.serving_material(now)
                if material is None:
                    continue
                try:
                    self._store.bind_certificate(name, material)
                    logger.info(f"[certs] {name}: re-bound stored certificate (expires {material.not_after.isoformat()})")
                except RouterConfigError as e:
                    logger.error(f"[certs] {name}: stored certificate rejected by router: {e}")

    # ============================================
    # TICK
    # ============================================

    def tick(self) -> Dict[str, Certificate]:
        """Advance every domain once."""
        results = {}
        for name in self._domains:
            try:
                results[name] = self.tick_domain(name)
            except Exception as e:
                logger.error(f"[certs] {name}: tick failed: {e}", exc_info=True)
        return results

    def tick_domain(self, name: str) -> Certificate:
        """Advance one domain's state machine according to the clock."""
        domain = self._domains[name]
        with self._locks[name]:
            cert = self._repository.get(name) or Certificate(domain=name)
            now = self._clock.now()

            self._enforce_expiry(cert, now)

            with self._manual_lock:
                manual = name in self._manual_requests
                self._manual_requests.discard(name)

            if manual:
                cert.failure_count = 0
                cert.next_attempt_at = None
                cert.version += 1
                self._repository.save(cert)

            state = cert.state

            if manual and state == CertificateState.ACTIVE:
                logger.info(f"[certs] {name}: manual request, re-issuing")
                self._issue(cert, domain, renewal=False)

            elif state == CertificateState.UNREQUESTED:
                self._issue(cert, domain, renewal=False)

            elif state == CertificateState.ACTIVE:
                if cert.needs_renewal(now, self._renewal_window):
                    logger.info(
                        f"[certs] {name}: expires {cert.not_after.isoformat()}, "
                        f"inside the {self._renewal_window.days}-day renewal window"
                    )
                    self._transition(cert, CertificateState.EXPIRING, now)
                    self._repository.save(cert)
                    self._issue(cert, domain, renewal=True)

            elif state == CertificateState.EXPIRING:
                self._issue(cert, domain, renewal=True)

            elif state == CertificateState.FAILED:
                if not manual and self._backoff.exhausted(cert.failure_count):
                    self._warn_exhausted(cert, now)
                elif manual or cert.next_attempt_at is None or now >= cert.next_attempt_at:
                    self._issue(cert, domain, renewal=cert.material is not None)

            return cert

    def request_certificate(self, name: str, *, wait: bool = False) -> Optional[Certificate]:
        """
        Manually trigger issuance and reset the failure counter.

        Without wait this only queues the request, so it never blocks behind
        an issuance in flight. The reset is applied by the next tick of the
        domain.

        Args:
            name: Domain name
            wait: Run the issuance in the caller's thread instead of waking the worker

        Raises:
            KeyError: unknown domain
        """
        if name not in self._domains:
            raise KeyError(name)

        with self._manual_lock:
            self._manual_requests.add(name)

        logger.info(f"[certs] {name}: manual certificate request")

        if wait:
            return self.tick_domain(name)
        self._wake[name].set()
        return None

    # ============================================
    # ISSUANCE
    # ============================================

    def _issue(self, cert: Certificate, domain: DomainSpec, *, renewal: bool) -> None:
        target = CertificateState.RENEWING if renewal else CertificateState.REQUESTING
        self._transition(cert, target, self._clock.now())
        self._repository.save(cert)

        failure_type = RenewalFailure if renewal else CertificateIssuanceFailure

        try:
            material = call_with_timeout(
                self._authority.issue,
                self._issuance_timeout,
                domain.name,
                domain.email,
                self._challenges,
            )
        except CallTimeout:
            self._fail(cert, failure_type(f"issuance timed out after {self._issuance_timeout}s"))
            return
        except CertificateIssuanceFailure as e:
            self._fail(cert, e)
            return
        except Exception as e:
            logger.error(f"[certs] {cert.domain}: authority error: {e}", exc_info=True)
            self._fail(cert, failure_type(str(e)))
            return

        now = self._clock.now()
        if not renewal:
            self._transition(cert, CertificateState.ISSUED, now)
            self._repository.save(cert)

        try:
            self._store.bind_certificate(cert.domain, material)
        except RouterConfigError as e:
            self._fail(cert, failure_type(f"router rejected certificate: {e}"))
            return

        cert.install(material)
        self._transition(cert, CertificateState.ACTIVE, now)
        self._repository.save(cert)

        logger.info(
            f"[certs] ✅ {cert.domain}: certificate active until {material.not_after.isoformat()}"
        )

    def _fail(self, cert: Certificate, error: CertificateIssuanceFailure) -> None:
        now = self._clock.now()
        self._transition(cert, CertificateState.FAILED, now)

        attempt = cert.failure_count + 1
        if self._backoff.exhausted(attempt):
            next_attempt_at = None
        else:
            next_attempt_at = now + timedelta(seconds=self._backoff.delay_for(attempt))

        cert.record_failure(str(error), next_attempt_at)
        self._repository.save(cert)

        if next_attempt_at is not None:
            logger.warning(
                f"[certs] ❌ {cert.domain}: {type(error).__name__}: {error} "
                f"(attempt {attempt}, next try at {next_attempt_at.isoformat()})"
            )
        else:
            logger.error(
                f"[certs] ❌ {cert.domain}: {type(error).__name__}: {error} "
                f"(attempt {attempt}, giving up until a manual request)"
            )
            self._warn_exhausted(cert, now)

    def _warn_exhausted(self, cert: Certificate, now: datetime) -> None:
        serving = cert.serving_material(now)
        if serving is not None:
            message = (
                f"automatic issuance stopped after {cert.failure_count} failures; "
                f"serving previous certificate until {serving.not_after.isoformat()}"
            )
        else:
            message = (
                f"automatic issuance stopped after {cert.failure_count} failures; "
                f"no valid certificate, serving HTTP only"
            )
        logger.warning(f"[certs] ⚠️ {cert.domain}: {message}")
        self._emit(OrchestratorEvent.certificate_warning(cert, message, now))

    # ============================================
    # EXPIRY
    # ============================================

    def _enforce_expiry(self, cert: Certificate, now: datetime) -> None:
        """Never leave an expired certificate bound."""
        binding = self._store.current().binding(cert.domain)
        if binding is None or binding.material.is_valid_at(now):
            return

        replacement = cert.serving_material(now)
        if replacement is not None and replacement != binding.material:
            try:
                self._store.bind_certificate(cert.domain, replacement)
                return
            except RouterConfigError as e:
                logger.error(f"[certs] {cert.domain}: replacement rejected: {e}")

        message = f"certificate expired at {binding.not_after.isoformat()}, degrading to HTTP"
        logger.warning(f"[certs] ⚠️ {cert.domain}: {message}")
        try:
            self._store.unbind_certificate(cert.domain)
        except RouterConfigError as e:
            logger.error(f"[certs] {cert.domain}: could not unbind expired certificate: {e}")
        self._emit(OrchestratorEvent.certificate_warning(cert, message, now))

    # ============================================
    # STATE
    # ============================================

    def _transition(self, cert: Certificate, new_state: CertificateState, now: datetime) -> None:
        previous = cert.state
        CertificateStateMachine.transition(cert, new_state, now=now)
        if previous != new_state:
            logger.info(f"[certs] {cert.domain}: {previous.value} -> {new_state.value}")
            self._emit(OrchestratorEvent.certificate_state_changed(cert, previous, now))

    def _emit(self, event: OrchestratorEvent) -> None:
        try:
            self._events.emit([event])
        except Exception as e:
            logger.error(f"[certs] Failed to emit {event.event_type}: {e}", exc_info=True)

    def status(self) -> List[Dict]:
        config = self._store.current()
        now = self._clock.now()
        result = []
        for name in self._domains:
            cert = self._repository.get(name) or Certificate(domain=name)
            entry = cert.to_dict()
            entry["bound"] = config.binding(name) is not None
            with self._manual_lock:
                entry["manual_request_pending"] = name in self._manual_requests
            entry["retries_exhausted"] = (
                cert.state == CertificateState.FAILED and self._backoff.exhausted(cert.failure_count)
            )
            entry["serving_last_good"] = (
                cert.state != CertificateState.ACTIVE and cert.serving_material(now) is not None
            )
            result.append(entry)
        return result

    # ============================================
    # WORKERS
    # ============================================

    def start(self) -> None:
        """Bootstrap, then run one worker thread per domain."""
        self.bootstrap()

        logger.info("=" * 80)
        logger.info(f"🔐 CERTIFICATE MANAGER STARTED for {len(self._domains)} domain(s)")
        logger.info(f"Renewal window: {self._renewal_window.days} days")
        logger.info(f"Check interval: {self._check_interval}s")
        logger.info("=" * 80)

        for name in self._domains:
            thread = threading.Thread(target=self._worker, args=(name,), name=f"certs-{name}", daemon=True)
            self._threads.append(thread)
            thread.start()

    def stop(self, timeout: float = 10.0) -> None:
        self._stop_event.set()
        for event in self._wake.values():
            event.set()
        for thread in self._threads:
            thread.join(timeout=timeout)
        logger.info("[certs] Certificate manager stopped")

    def _worker(self, name: str) -> None:
        while not self._stop_event.is_set():
            try:
                self.tick_domain(name)
            except Exception as e:
                logger.error(f"[certs] {name}: error in check cycle: {e}", exc_info=True)

            if self._stop_event.is_set():
                break
            self._wake[name].wait(self.seconds_until_next_check(name))
            self._wake[name].clear()

    def seconds_until_next_check(self, name: str) -> float:
        """Worker sleep for name: the check interval, cut short by a due retry or the bound certificate expiring."""
        now = self._clock.now()
        wait = self._check_interval

        cert = self._repository.get(name)
        if cert is not None and cert.state == CertificateState.FAILED and cert.next_attempt_at:
            until_retry = (cert.next_attempt_at - now).total_seconds()
            wait = min(wait, max(until_retry, 0.0))

        binding = self._store.current().binding(name)
        if binding is not None:
            until_expiry = (binding.not_after - now).total_seconds()
            # Still bound after expiry means the unbind was rejected; retry shortly
            wait = min(wait, until_expiry if until_expiry > 0 else 1.0)

        return max(wait, 0.0)
