# orchestration_engine/core/state_machine.py

from datetime import datetime, timezone

from orchestration_engine.core.errors import InvalidStateTransition
from orchestration_engine.core.models import (
    Certificate,
    CertificateState,
    ServiceState,
    ServiceStatus,
)


SERVICE_TRANSITIONS = {
    ServiceState.PENDING: {
        ServiceState.STARTING,
        ServiceState.BLOCKED,
        ServiceState.STOPPED,
    },
    ServiceState.STARTING: {
        ServiceState.HEALTH_CHECKING,
        ServiceState.UNHEALTHY,
        ServiceState.COMPLETED,
        ServiceState.FAILED,
        ServiceState.BLOCKED,
        ServiceState.STOPPING,
    },
    ServiceState.HEALTH_CHECKING: {
        ServiceState.HEALTHY,
        ServiceState.UNHEALTHY,
        ServiceState.STOPPING,
    },
    ServiceState.HEALTHY: {
        ServiceState.UNHEALTHY,
        ServiceState.STOPPING,
    },
    ServiceState.UNHEALTHY: {
        ServiceState.STARTING,
        ServiceState.FAILED,
        ServiceState.STOPPING,
    },
    ServiceState.COMPLETED: {
        ServiceState.STOPPED,
    },
    ServiceState.FAILED: {
        ServiceState.STOPPED,
    },
    ServiceState.BLOCKED: {
        ServiceState.STOPPED,
    },
    ServiceState.STOPPING: {
        ServiceState.STOPPED,
    },
}


CERTIFICATE_TRANSITIONS = {
    CertificateState.UNREQUESTED: {
        CertificateState.REQUESTING,
    },
    CertificateState.REQUESTING: {
        CertificateState.ISSUED,
        CertificateState.FAILED,
    },
    CertificateState.ISSUED: {
        CertificateState.ACTIVE,
        CertificateState.FAILED,
    },
    CertificateState.ACTIVE: {
        CertificateState.EXPIRING,
        CertificateState.REQUESTING,
    },
    CertificateState.EXPIRING: {
        CertificateState.RENEWING,
    },
    CertificateState.RENEWING: {
        CertificateState.ACTIVE,
        CertificateState.FAILED,
    },
    CertificateState.FAILED: {
        CertificateState.REQUESTING,
        CertificateState.RENEWING,
    },
}


class ServiceStateMachine:
    @staticmethod
    def transition(
        status: ServiceStatus,
        new_state: ServiceState,
        *,
        now: datetime | None = None,
    ) -> ServiceStatus:
        now = now or datetime.now(timezone.utc)

        current = status.state

        if current == new_state:
            return status

        allowed = SERVICE_TRANSITIONS.get(current, set())
        if new_state not in allowed:
            raise InvalidStateTransition(
                f"Service {status.name}: cannot transition from {current.value} to {new_state.value}"
            )

        # Counter semantics
        if new_state in (ServiceState.STARTING, ServiceState.HEALTH_CHECKING):
            status.consecutive_successes = 0
            status.consecutive_failures = 0

        status.state = new_state
        status.updated_at = now
        return status


class CertificateStateMachine:
    @staticmethod
    def transition(
        certificate: Certificate,
        new_state: CertificateState,
        *,
        now: datetime | None = None,
    ) -> Certificate:
        now = now or datetime.now(timezone.utc)

        current = certificate.state

        if current == new_state:
            return certificate

        allowed = CERTIFICATE_TRANSITIONS.get(current, set())
        if new_state not in allowed:
            raise InvalidStateTransition(
                f"Certificate {certificate.domain}: cannot transition from "
                f"{current.value} to {new_state.value}"
            )

        if new_state in (CertificateState.REQUESTING, CertificateState.RENEWING):
            certificate.last_attempt_at = now

        certificate.state = new_state
        certificate.version += 1
        return certificate
