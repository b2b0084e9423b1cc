# orchestration_engine/core/errors.py

# -----------------------------
# Base Errors
# -----------------------------

class OrchestratorError(Exception):
    """Base class for all orchestrator errors."""
    pass


# -----------------------------
# Configuration Errors (fatal)
# -----------------------------

class ConfigError(OrchestratorError):
    """Malformed topology or settings. The orchestrator refuses to start."""
    pass


class DependencyCycleError(ConfigError):
    """The depends_on graph contains a cycle."""

    def __init__(self, cycle):
        self.cycle = list(cycle)
        super().__init__(
            "Dependency cycle detected: " + " -> ".join(self.cycle)
        )


class RouterConfigError(ConfigError):
    """A candidate router configuration failed validation; the swap was aborted."""
    pass


# -----------------------------
# State Machine Errors
# -----------------------------

class InvalidStateTransition(OrchestratorError):
    """Illegal state transition attempted."""
    pass


# -----------------------------
# Runtime Errors (recoverable)
# -----------------------------

class ServiceRuntimeError(OrchestratorError):
    """The service runtime could not start, stop or inspect a service."""
    pass


class HealthCheckFailure(OrchestratorError):
    """A health probe failed or timed out."""
    pass


class ForwardingFailure(OrchestratorError):
    """A request could not be forwarded to its upstream."""

    def __init__(self, message: str, status_code: int = 502):
        super().__init__(message)
        self.status_code = status_code


class CertificateIssuanceFailure(OrchestratorError):
    """Certificate issuance failed (challenge, CA exchange, or installation)."""
    pass


class RenewalFailure(CertificateIssuanceFailure):
    """Certificate renewal failed."""
    pass


class BackupFailure(OrchestratorError):
    """A backup attempt failed."""
    pass


# -----------------------------
# Persistence Errors
# -----------------------------

class RepositoryError(OrchestratorError):
    pass


class RecordNotFound(RepositoryError):
    pass
