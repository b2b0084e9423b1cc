#tests\test_certificates.py

"""Test the certificate lifecycle manager, authorities and challenge store."""

import shutil
import threading
import time
from datetime import timedelta
from pathlib import Path

import pytest

from orchestration_engine.certificates.authority import (
    CERT_FILE,
    KEY_FILE,
    CertificateAuthority,
    ProfileServiceAuthority,
    SelfSignedAuthority,
    read_certificate_validity,
)
from orchestration_engine.certificates.challenges import ChallengeStore
from orchestration_engine.certificates.manager import CertificateManager
from orchestration_engine.core.backoff import BackoffPolicy
from orchestration_engine.core.errors import CertificateIssuanceFailure
from orchestration_engine.core.models import (
    Certificate,
    CertificateState,
    DomainSpec,
    Profile,
)
from orchestration_engine.infrastructure.sql.repository import SqlCertificateRepository
from orchestration_engine.router.config import ConfigStore

from conftest import make_service, wait_until


DOMAIN = "example.com"
SERVICES = {"web": make_service("web", ports=(80,))}


class FlakyAuthority(CertificateAuthority):
    """Self-signed authority that fails a scripted number of times."""

    def __init__(self, inner: SelfSignedAuthority, failures: int = 0):
        self.inner = inner
        self.failures = failures
        self.calls = 0
        self.block = None

    def issue(self, domain, email, challenges):
        self.calls += 1
        if self.block is not None:
            self.block.wait(5)
        if self.failures > 0:
            self.failures -= 1
            raise CertificateIssuanceFailure("challenge failed")
        return self.inner.issue(domain, email, challenges)


@pytest.fixture
def store(clock, events):
    """Router store sharing the test clock."""
    return ConfigStore(SERVICES, domains=(DomainSpec(name=DOMAIN),), clock=clock, events=events)


@pytest.fixture
def authority(tmp_path, clock):
    """Flaky self-signed authority issuing 90-day certificates."""
    return FlakyAuthority(SelfSignedAuthority(str(tmp_path / "certs"), clock=clock))


@pytest.fixture
def manager_factory(authority, store, certificate_repository, clock, events):
    """Build certificate managers around the shared fixtures."""
    managers = []

    def factory(**kwargs):
        kwargs.setdefault("repository", certificate_repository)
        kwargs.setdefault("authority", authority)
        manager = CertificateManager(
            [DomainSpec(name=DOMAIN, email="ops@example.com")],
            kwargs.pop("authority"),
            store,
            kwargs.pop("repository"),
            ChallengeStore(),
            clock=clock,
            backoff=BackoffPolicy(initial_delay=60, multiplier=2, max_delay=3600, max_attempts=3),
            renewal_window=timedelta(days=30),
            check_interval=kwargs.pop("check_interval", 3600),
            issuance_timeout=kwargs.pop("issuance_timeout", 10),
            events=events,
        )
        managers.append(manager)
        return manager

    yield factory

    for manager in managers:
        manager.stop(timeout=2)


def transitions(events):
    return [
        (e.metadata["from"], e.metadata["to"])
        for e in events.recent("certificate.state_changed")
    ]


class TestIssuance:
    """Test first issuance."""

    def test_bootstrap_creates_unrequested_record(self, manager_factory, certificate_repository):
        """Test a domain without a stored record starts UNREQUESTED."""
        manager = manager_factory()

        manager.bootstrap()

        assert certificate_repository.get(DOMAIN).state == CertificateState.UNREQUESTED

    def test_first_tick_issues_and_binds(self, manager_factory, store, events):
        """Test UNREQUESTED -> REQUESTING -> ISSUED -> ACTIVE and the router binding."""
        manager = manager_factory()
        manager.bootstrap()

        cert = manager.tick_domain(DOMAIN)

        assert cert.state == CertificateState.ACTIVE
        assert transitions(events) == [
            ("UNREQUESTED", "REQUESTING"),
            ("REQUESTING", "ISSUED"),
            ("ISSUED", "ACTIVE"),
        ]
        binding = store.current().binding(DOMAIN)
        assert binding is not None
        assert binding.material == cert.material
        assert events.recent("router.reconfigured")

    def test_tick_outside_window_is_idle(self, manager_factory, authority, clock):
        """Test an active certificate far from expiry is left alone."""
        manager = manager_factory()
        manager.tick_domain(DOMAIN)

        clock.advance(timedelta(days=30))
        cert = manager.tick_domain(DOMAIN)

        assert cert.state == CertificateState.ACTIVE
        assert authority.calls == 1

    def test_material_validity_matches_file(self, manager_factory):
        """Test the recorded validity window is read back from the certificate."""
        manager = manager_factory()

        cert = manager.tick_domain(DOMAIN)

        not_before, not_after = read_certificate_validity(cert.material.cert_path)
        assert (not_before, not_after) == (cert.not_before, cert.not_after)

    def test_unknown_domain(self, manager_factory):
        """Test manual requests for unmanaged domains are rejected."""
        with pytest.raises(KeyError):
            manager_factory().request_certificate("other.example")


class TestRenewal:
    """Test renewal inside the window."""

    def test_renewal_cycle(self, manager_factory, store, clock, events):
        """Test ACTIVE -> EXPIRING -> RENEWING -> ACTIVE swaps the served certificate."""
        manager = manager_factory()
        first = manager.tick_domain(DOMAIN).material
        old_config = store.current()

        clock.advance(timedelta(days=61))
        cert = manager.tick_domain(DOMAIN)

        assert cert.state == CertificateState.ACTIVE
        assert transitions(events)[-3:] == [
            ("ACTIVE", "EXPIRING"),
            ("EXPIRING", "RENEWING"),
            ("RENEWING", "ACTIVE"),
        ]
        assert cert.material != first
        assert cert.last_good == first
        assert store.current().binding(DOMAIN).material == cert.material
        assert old_config.binding(DOMAIN).material == first
        assert old_config.binding(DOMAIN).context is not store.current().binding(DOMAIN).context

    def test_failed_renewal_keeps_serving(self, manager_factory, authority, store, clock):
        """Test a failed renewal leaves the previous certificate bound."""
        manager = manager_factory()
        first = manager.tick_domain(DOMAIN).material

        authority.failures = 1
        clock.advance(timedelta(days=61))
        cert = manager.tick_domain(DOMAIN)

        assert cert.state == CertificateState.FAILED
        assert "challenge failed" in cert.last_error
        assert store.current().binding(DOMAIN).material == first

        status = manager.status()[0]
        assert status["bound"] is True
        assert status["serving_last_good"] is True

        clock.advance(timedelta(seconds=60))
        cert = manager.tick_domain(DOMAIN)

        assert cert.state == CertificateState.ACTIVE
        assert cert.failure_count == 0


class TestFailures:
    """Test retry backoff, exhaustion and manual requests."""

    def test_backoff_between_attempts(self, manager_factory, authority, clock):
        """Test retries wait for next_attempt_at."""
        authority.failures = 10
        manager = manager_factory()

        cert = manager.tick_domain(DOMAIN)
        assert cert.state == CertificateState.FAILED
        assert cert.failure_count == 1
        assert cert.next_attempt_at == clock.now() + timedelta(seconds=60)

        manager.tick_domain(DOMAIN)
        assert authority.calls == 1

        clock.advance(timedelta(seconds=60))
        cert = manager.tick_domain(DOMAIN)
        assert authority.calls == 2
        assert cert.next_attempt_at == clock.now() + timedelta(seconds=120)

    def test_exhaustion_warns_and_stops(self, manager_factory, authority, clock, events):
        """Test automatic retries stop at the ceiling with a warning."""
        authority.failures = 10
        manager = manager_factory()

        for _ in range(3):
            manager.tick_domain(DOMAIN)
            clock.advance(timedelta(hours=2))

        cert = manager.tick_domain(DOMAIN)

        assert authority.calls == 3
        assert cert.failure_count == 3
        assert cert.next_attempt_at is None
        warnings = events.recent("certificate.warning")
        assert len(warnings) >= 2
        assert "serving HTTP only" in warnings[-1].metadata["message"]
        assert manager.status()[0]["retries_exhausted"] is True

    def test_manual_request_resets(self, manager_factory, authority, clock, store):
        """Test a manual request resumes issuance after exhaustion."""
        authority.failures = 3
        manager = manager_factory()
        for _ in range(3):
            manager.tick_domain(DOMAIN)
            clock.advance(timedelta(hours=2))

        cert = manager.request_certificate(DOMAIN, wait=True)

        assert cert.state == CertificateState.ACTIVE
        assert cert.failure_count == 0
        assert store.current().binding(DOMAIN) is not None

    def test_manual_request_reissues_active(self, manager_factory, events):
        """Test a manual request on an active certificate issues a fresh one."""
        manager = manager_factory()
        first = manager.tick_domain(DOMAIN).material

        cert = manager.request_certificate(DOMAIN, wait=True)

        assert cert.state == CertificateState.ACTIVE
        assert cert.material != first
        assert ("ACTIVE", "REQUESTING") in transitions(events)

    def test_manual_request_does_not_wait_for_issuance(self, manager_factory, authority, clock):
        """Test a request returns while an issuance is in flight and is applied by the next tick."""
        manager = manager_factory()
        manager.tick_domain(DOMAIN)
        authority.block = threading.Event()

        # Re-issue on a certificate inside the renewal window, held by the authority
        clock.advance(timedelta(days=75))
        ticking = threading.Thread(target=manager.tick_domain, args=(DOMAIN,))
        ticking.start()
        try:
            assert wait_until(lambda: authority.calls == 2)

            started = time.monotonic()
            assert manager.request_certificate(DOMAIN) is None
            assert time.monotonic() - started < 1.0
            assert manager.status()[0]["manual_request_pending"] is True
        finally:
            authority.block.set()
            ticking.join(timeout=10)

        cert = manager.tick_domain(DOMAIN)

        assert authority.calls == 3
        assert cert.state == CertificateState.ACTIVE
        assert cert.failure_count == 0
        assert manager.status()[0]["manual_request_pending"] is False

    def test_issuance_timeout(self, manager_factory, authority):
        """Test a hung authority call fails the attempt."""
        authority.block = threading.Event()
        manager = manager_factory(issuance_timeout=0.05)

        try:
            cert = manager.tick_domain(DOMAIN)
        finally:
            authority.block.set()

        assert cert.state == CertificateState.FAILED
        assert "timed out" in cert.last_error

    def test_router_rejection_is_a_failure(self, manager_factory, tmp_path, clock):
        """Test material the router cannot load counts as a failed issuance."""

        class BrokenAuthority(CertificateAuthority):
            def issue(self, domain, email, challenges):
                material = SelfSignedAuthority(str(tmp_path / "broken"), clock=clock).issue(domain, email, challenges)
                Path(material.key_path).unlink()
                return material

        manager = manager_factory(authority=BrokenAuthority())

        cert = manager.tick_domain(DOMAIN)

        assert cert.state == CertificateState.FAILED
        assert "router rejected" in cert.last_error


class TestExpiry:
    """Test expired certificates are never served."""

    def test_expired_certificate_is_unbound(self, manager_factory, authority, store, clock, events):
        """Test the binding is dropped once the certificate expires."""
        manager = manager_factory()
        manager.tick_domain(DOMAIN)
        authority.failures = 100

        clock.advance(timedelta(days=91))
        manager.tick_domain(DOMAIN)

        assert store.current().binding(DOMAIN) is None
        messages = [e.metadata["message"] for e in events.recent("certificate.warning")]
        assert any("expired" in m for m in messages)

    def test_worker_wakes_at_expiry(self, manager_factory, authority, store, clock):
        """Test the check interval is cut short so the binding is dropped when the certificate expires."""
        manager = manager_factory(check_interval=3600)
        cert = manager.tick_domain(DOMAIN)
        assert manager.seconds_until_next_check(DOMAIN) == 3600

        clock.set(cert.not_after - timedelta(seconds=30))
        assert manager.seconds_until_next_check(DOMAIN) == 30

        authority.failures = 100
        clock.advance(timedelta(seconds=30))
        manager.tick_domain(DOMAIN)

        assert store.current().binding(DOMAIN) is None
        assert manager.seconds_until_next_check(DOMAIN) == 60


class TestBootstrap:
    """Test restart behaviour."""

    def test_rebinds_stored_certificate(self, manager_factory, certificate_repository, authority, clock):
        """Test a valid stored certificate is bound again without re-issuing."""
        first = manager_factory()
        material = first.tick_domain(DOMAIN).material

        fresh_store = ConfigStore(SERVICES, domains=(DomainSpec(name=DOMAIN),), clock=clock)
        second = CertificateManager(
            [DomainSpec(name=DOMAIN)],
            authority,
            fresh_store,
            certificate_repository,
            ChallengeStore(),
            clock=clock,
        )
        second.bootstrap()

        assert fresh_store.current().binding(DOMAIN).material == material
        assert authority.calls == 1

    def test_interrupted_issuance_is_retried(self, manager_factory, certificate_repository, authority):
        """Test a record left in REQUESTING becomes FAILED and is retried at once."""
        certificate_repository.save(Certificate(domain=DOMAIN, state=CertificateState.REQUESTING))
        manager = manager_factory()

        manager.bootstrap()
        assert certificate_repository.get(DOMAIN).state == CertificateState.FAILED

        cert = manager.tick_domain(DOMAIN)
        assert cert.state == CertificateState.ACTIVE

    def test_persists_through_sql_repository(self, manager_factory, session_factory):
        """Test the lifecycle record survives in the SQL store."""
        repository = SqlCertificateRepository(session_factory)
        manager = manager_factory(repository=repository)

        issued = manager.tick_domain(DOMAIN)

        stored = SqlCertificateRepository(session_factory).get(DOMAIN)
        assert stored.state == CertificateState.ACTIVE
        assert stored.material == issued.material
        assert stored.not_after.tzinfo is not None

    def test_worker_issues_in_background(self, manager_factory, store):
        """Test start() runs the per-domain worker."""
        manager = manager_factory()

        manager.start()

        assert wait_until(lambda: store.current().binding(DOMAIN) is not None, timeout=10)


class TestChallengeStore:
    """Test the challenge token store."""

    def test_publish_and_remove(self):
        """Test tokens are served until removed."""
        challenges = ChallengeStore()

        challenges.publish("abc-DEF_123", "abc-DEF_123.key")
        assert challenges.lookup("abc-DEF_123") == "abc-DEF_123.key"
        assert len(challenges) == 1

        challenges.remove("abc-DEF_123")
        assert challenges.lookup("abc-DEF_123") is None

    def test_rejects_path_like_tokens(self):
        """Test tokens cannot escape the challenge directory."""
        challenges = ChallengeStore()

        with pytest.raises(ValueError):
            challenges.publish("../etc/passwd", "x")
        assert challenges.lookup("../etc/passwd") is None

    def test_webroot_tokens(self, tmp_path):
        """Test tokens written by an external client into the webroot are served."""
        challenge_dir = tmp_path / ".well-known" / "acme-challenge"
        challenge_dir.mkdir(parents=True)
        (challenge_dir / "tok").write_text("tok.key\n")

        assert ChallengeStore(webroot=str(tmp_path)).lookup("tok") == "tok.key"
        assert ChallengeStore(webroot=str(tmp_path)).lookup("missing") is None


class TestProfileServiceAuthority:
    """Test issuance through the ssl-profile service."""

    @pytest.fixture
    def certbot(self):
        return make_service(
            "certbot",
            profile=Profile.SSL,
        ).with_command(
            ("certonly", "--webroot", "-d", "{domain}", "--email", "{email}"),
            {},
        )

    def test_issue(self, certbot, runtime, tmp_path, clock):
        """Test the rendered service runs to completion and its PEMs are read."""
        live_dir = tmp_path / "live"
        source = SelfSignedAuthority(str(tmp_path / "source"), clock=clock).issue(DOMAIN, None, ChallengeStore())

        def write_pems(spec):
            target = live_dir / DOMAIN
            target.mkdir(parents=True, exist_ok=True)
            shutil.copy(source.cert_path, target / CERT_FILE)
            shutil.copy(source.key_path, target / KEY_FILE)

        runtime.on_start["certbot"] = write_pems
        runtime.plan_exits("certbot", 0)
        authority = ProfileServiceAuthority(certbot, runtime, live_dir=str(live_dir), timeout=5, poll_interval=0.01)

        material = authority.issue(DOMAIN, "ops@example.com", ChallengeStore())

        spec = runtime.started_specs[0]
        assert spec.command == ("certonly", "--webroot", "-d", DOMAIN, "--email", "ops@example.com")
        assert spec.environment["CERT_DOMAIN"] == DOMAIN
        assert runtime.stopped == ["certbot"]
        assert material.cert_path == str(live_dir / DOMAIN / CERT_FILE)
        assert (material.not_before, material.not_after) == (source.not_before, source.not_after)

    def test_non_zero_exit(self, certbot, runtime, tmp_path):
        """Test a failing run raises with the service output."""
        runtime.plan_exits("certbot", 1)
        authority = ProfileServiceAuthority(certbot, runtime, live_dir=str(tmp_path), timeout=5, poll_interval=0.01)

        with pytest.raises(CertificateIssuanceFailure, match="exited with code 1.*logs of certbot"):
            authority.issue(DOMAIN, None, ChallengeStore())

        assert runtime.stopped == ["certbot"]

    def test_missing_output(self, certbot, runtime, tmp_path):
        """Test a clean exit without certificate files is a failure."""
        runtime.plan_exits("certbot", 0)
        authority = ProfileServiceAuthority(certbot, runtime, live_dir=str(tmp_path), timeout=5, poll_interval=0.01)

        with pytest.raises(CertificateIssuanceFailure, match="not found"):
            authority.issue(DOMAIN, None, ChallengeStore())
