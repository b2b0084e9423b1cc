# orchestration_engine/runtime/base.py

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, Optional, Sequence, Tuple

from orchestration_engine.core.models import ServiceSpec


@dataclass
class ServiceHandle:
    """Reference to one running instance of a service."""
    service: str
    runtime_id: str
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    details: Dict[str, str] = field(default_factory=dict)


class ServiceRuntime(ABC):
    """
    Executes services (containers or processes).

    Implementations raise ServiceRuntimeError for anything that goes wrong
    on the runtime side.
    """

    @abstractmethod
    def start(self, spec: ServiceSpec) -> ServiceHandle:
        """Create and start an instance of spec. Returns once it is running."""
        raise NotImplementedError

    @abstractmethod
    def stop(self, handle: ServiceHandle, timeout: float = 10.0) -> None:
        """Stop the instance; after timeout seconds it is killed."""
        raise NotImplementedError

    @abstractmethod
    def exit_status(self, handle: ServiceHandle) -> Optional[int]:
        """Exit code if the instance has exited, None while it is running."""
        raise NotImplementedError

    @abstractmethod
    def exec(
        self,
        handle: ServiceHandle,
        command: Sequence[str],
        timeout: float,
    ) -> Tuple[int, bytes]:
        """Run a command inside the instance. Returns (exit_code, output)."""
        raise NotImplementedError

    def logs(self, handle: ServiceHandle, tail: int = 50) -> str:
        return ""
