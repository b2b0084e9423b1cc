#tests\test_state_machine.py

"""Test lifecycle state machines and restart backoff."""

from datetime import datetime, timedelta, timezone

import pytest

from orchestration_engine.core.backoff import BackoffPolicy
from orchestration_engine.core.errors import InvalidStateTransition
from orchestration_engine.core.models import (
    Certificate,
    CertificateMaterial,
    CertificateState,
    ServiceState,
    ServiceStatus,
)
from orchestration_engine.core.state_machine import CertificateStateMachine, ServiceStateMachine


NOW = datetime(2025, 1, 1, tzinfo=timezone.utc)


def material(days_valid: int = 90, start: datetime = NOW) -> CertificateMaterial:
    return CertificateMaterial(
        cert_path="/certs/fullchain.pem",
        key_path="/certs/privkey.pem",
        not_before=start,
        not_after=start + timedelta(days=days_valid),
    )


class TestServiceStateMachine:
    """Test service state transitions."""

    def test_happy_path(self):
        """Test PENDING -> STARTING -> HEALTH_CHECKING -> HEALTHY -> STOPPING -> STOPPED."""
        status = ServiceStatus(name="api")

        for state in (
            ServiceState.STARTING,
            ServiceState.HEALTH_CHECKING,
            ServiceState.HEALTHY,
            ServiceState.STOPPING,
            ServiceState.STOPPED,
        ):
            ServiceStateMachine.transition(status, state, now=NOW)

        assert status.state == ServiceState.STOPPED
        assert status.updated_at == NOW

    def test_cannot_skip_health_check(self):
        """Test a service never becomes HEALTHY straight from STARTING."""
        status = ServiceStatus(name="api", state=ServiceState.STARTING)

        with pytest.raises(InvalidStateTransition):
            ServiceStateMachine.transition(status, ServiceState.HEALTHY)

    def test_failed_is_terminal(self):
        """Test FAILED only moves to STOPPED."""
        status = ServiceStatus(name="api", state=ServiceState.FAILED)

        with pytest.raises(InvalidStateTransition):
            ServiceStateMachine.transition(status, ServiceState.STARTING)

        ServiceStateMachine.transition(status, ServiceState.STOPPED)
        assert status.state == ServiceState.STOPPED

    def test_restart_cycle(self):
        """Test UNHEALTHY -> STARTING resets the probe counters."""
        status = ServiceStatus(name="api", state=ServiceState.UNHEALTHY)
        status.consecutive_failures = 3

        ServiceStateMachine.transition(status, ServiceState.STARTING)

        assert status.consecutive_failures == 0
        assert status.consecutive_successes == 0

    def test_same_state_is_noop(self):
        """Test transitioning to the current state changes nothing."""
        status = ServiceStatus(name="api", state=ServiceState.HEALTHY, updated_at=NOW)

        ServiceStateMachine.transition(status, ServiceState.HEALTHY, now=NOW + timedelta(hours=1))

        assert status.updated_at == NOW


class TestCertificateStateMachine:
    """Test certificate state transitions."""

    def test_issuance_path(self):
        """Test UNREQUESTED -> REQUESTING -> ISSUED -> ACTIVE."""
        cert = Certificate(domain="example.com")

        CertificateStateMachine.transition(cert, CertificateState.REQUESTING, now=NOW)
        CertificateStateMachine.transition(cert, CertificateState.ISSUED, now=NOW)
        CertificateStateMachine.transition(cert, CertificateState.ACTIVE, now=NOW)

        assert cert.state == CertificateState.ACTIVE
        assert cert.last_attempt_at == NOW
        assert cert.version == 3

    def test_renewal_path(self):
        """Test ACTIVE -> EXPIRING -> RENEWING -> ACTIVE."""
        cert = Certificate(domain="example.com", state=CertificateState.ACTIVE)

        CertificateStateMachine.transition(cert, CertificateState.EXPIRING, now=NOW)
        CertificateStateMachine.transition(cert, CertificateState.RENEWING, now=NOW)
        CertificateStateMachine.transition(cert, CertificateState.ACTIVE, now=NOW)

        assert cert.state == CertificateState.ACTIVE

    def test_active_cannot_fail_directly(self):
        """Test only in-flight states move to FAILED."""
        cert = Certificate(domain="example.com", state=CertificateState.ACTIVE)

        with pytest.raises(InvalidStateTransition):
            CertificateStateMachine.transition(cert, CertificateState.FAILED)

    def test_failed_retries(self):
        """Test FAILED goes back to REQUESTING or RENEWING."""
        for target in (CertificateState.REQUESTING, CertificateState.RENEWING):
            cert = Certificate(domain="example.com", state=CertificateState.FAILED)
            CertificateStateMachine.transition(cert, target, now=NOW)
            assert cert.state == target


class TestCertificateModel:
    """Test certificate record helpers."""

    def test_install_keeps_last_good(self):
        """Test installing new material keeps the previous one as last-known-good."""
        old, new = material(), material(start=NOW + timedelta(days=60))
        cert = Certificate(domain="example.com")
        cert.install(old)
        cert.record_failure("boom", NOW)

        cert.install(new)

        assert cert.material == new
        assert cert.last_good == old
        assert cert.failure_count == 0
        assert cert.last_error is None

    def test_serving_material_falls_back(self):
        """Test serving material falls back to the last good certificate."""
        old = material()
        cert = Certificate(domain="example.com", material=material(start=NOW + timedelta(days=10)), last_good=old)

        assert cert.serving_material(NOW + timedelta(days=1)) == old
        assert cert.serving_material(NOW + timedelta(days=200)) is None

    def test_needs_renewal(self):
        """Test the renewal window is measured back from not_after."""
        cert = Certificate(domain="example.com", material=material(days_valid=90))

        assert not cert.needs_renewal(NOW + timedelta(days=59), timedelta(days=30))
        assert cert.needs_renewal(NOW + timedelta(days=60), timedelta(days=30))


class TestBackoffPolicy:
    """Test restart/retry backoff."""

    def test_delays_grow_and_cap(self):
        """Test delays follow the multiplier up to the cap."""
        policy = BackoffPolicy(initial_delay=10, multiplier=3, max_delay=300, max_attempts=5)

        assert [policy.delay_for(n) for n in range(1, 7)] == [10, 30, 90, 270, 300, 300]
        assert policy.delay_for(0) == 0.0

    def test_exhausted(self):
        """Test the attempt ceiling."""
        policy = BackoffPolicy(max_attempts=3)

        assert not policy.exhausted(2)
        assert policy.exhausted(3)

    def test_invalid_parameters(self):
        """Test nonsensical policies are rejected."""
        with pytest.raises(ValueError):
            BackoffPolicy(multiplier=0.5)
        with pytest.raises(ValueError):
            BackoffPolicy(initial_delay=-1)
