"""Event models for the orchestrator."""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Optional


@dataclass
class OrchestratorEvent:
    """Base orchestrator event."""

    event_type: str
    subject: str
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "event_type": self.event_type,
            "subject": self.subject,
            "timestamp": self.timestamp.isoformat(),
            "metadata": self.metadata,
        }

    @staticmethod
    def service_state_changed(status, previous) -> "OrchestratorEvent":
        return OrchestratorEvent(
            event_type="service.state_changed",
            subject=status.name,
            timestamp=status.updated_at,
            metadata={
                "from": previous.value,
                "to": status.state.value,
                "restart_attempts": status.restart_attempts,
                "error": status.last_error,
            },
        )

    @staticmethod
    def service_failed(status, dependents=()) -> "OrchestratorEvent":
        return OrchestratorEvent(
            event_type="service.failed",
            subject=status.name,
            timestamp=status.updated_at,
            metadata={
                "restart_attempts": status.restart_attempts,
                "error": status.last_error,
                "dependents": sorted(dependents),
            },
        )

    @staticmethod
    def certificate_state_changed(certificate, previous, now: datetime) -> "OrchestratorEvent":
        return OrchestratorEvent(
            event_type="certificate.state_changed",
            subject=certificate.domain,
            timestamp=now,
            metadata={
                "from": previous.value,
                "to": certificate.state.value,
                "failure_count": certificate.failure_count,
            },
        )

    @staticmethod
    def certificate_warning(certificate, message: str, now: datetime) -> "OrchestratorEvent":
        return OrchestratorEvent(
            event_type="certificate.warning",
            subject=certificate.domain,
            timestamp=now,
            metadata={
                "message": message,
                "failure_count": certificate.failure_count,
                "last_error": certificate.last_error,
            },
        )

    @staticmethod
    def router_reconfigured(version: int, now: datetime) -> "OrchestratorEvent":
        return OrchestratorEvent(
            event_type="router.reconfigured",
            subject="router",
            timestamp=now,
            metadata={"version": version},
        )

    @staticmethod
    def router_reconfigure_failed(error: str, now: datetime) -> "OrchestratorEvent":
        return OrchestratorEvent(
            event_type="router.reconfigure_failed",
            subject="router",
            timestamp=now,
            metadata={"error": error},
        )

    @staticmethod
    def backup_completed(record) -> "OrchestratorEvent":
        return OrchestratorEvent(
            event_type="backup.completed",
            subject="backup",
            timestamp=record.created_at,
            metadata={
                "backup_id": str(record.backup_id),
                "path": record.path,
                "size_bytes": record.size_bytes,
            },
        )

    @staticmethod
    def backup_failed(error: str, now: datetime) -> "OrchestratorEvent":
        return OrchestratorEvent(
            event_type="backup.failed",
            subject="backup",
            timestamp=now,
            metadata={"error": error},
        )

    @staticmethod
    def backup_pruned(record, now: datetime, error: Optional[str] = None) -> "OrchestratorEvent":
        return OrchestratorEvent(
            event_type="backup.pruned",
            subject="backup",
            timestamp=now,
            metadata={
                "backup_id": str(record.backup_id),
                "path": record.path,
                "error": error,
            },
        )
