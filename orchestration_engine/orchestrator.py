# orchestration_engine/orchestrator.py
"""
Orchestrator - owns the running components and their start/stop order.

Start: scheduler -> ingress -> certificate manager -> backup scheduler.
Shutdown runs the reverse order.
"""

import logging
import threading
from typing import Any, Dict, List, Optional

from orchestration_engine.backup.scheduler import BackupScheduler
from orchestration_engine.certificates.challenges import ChallengeStore
from orchestration_engine.certificates.manager import CertificateManager
from orchestration_engine.core.events import RecordingEventEmitter
from orchestration_engine.core.models import Topology
from orchestration_engine.router.config import ConfigStore
from orchestration_engine.router.server import IngressServer
from orchestration_engine.scheduler.scheduler import DependencyScheduler
from orchestration_engine.topology.loader import describe

logger = logging.getLogger(__name__)


class Orchestrator:
    """Facade over the scheduler, router, certificate and backup components."""

    def __init__(
        self,
        topology: Topology,
        scheduler: DependencyScheduler,
        store: ConfigStore,
        challenges: ChallengeStore,
        *,
        ingress: Optional[IngressServer] = None,
        certificate_manager: Optional[CertificateManager] = None,
        backup_scheduler: Optional[BackupScheduler] = None,
        history: Optional[RecordingEventEmitter] = None,
    ):
        self.topology = topology
        self.scheduler = scheduler
        self.store = store
        self.challenges = challenges
        self.ingress = ingress
        self.certificate_manager = certificate_manager
        self.backup_scheduler = backup_scheduler
        self.history = history or RecordingEventEmitter()

        self._stop_event = threading.Event()
        self._started = False

    # ============================================
    # LIFECYCLE
    # ============================================

    def start(self) -> None:
        if self._started:
            raise RuntimeError("Orchestrator already started")
        self._started = True

        logger.info("=" * 80)
        logger.info("🚀 ORCHESTRATOR STARTING")
        logger.info("=" * 80)
        logger.info(f"Services: {', '.join(self.topology.services) or '-'}")
        logger.info(f"Routes: {len(self.topology.routes)}")
        logger.info(f"Domains: {', '.join(d.name for d in self.topology.domains) or '-'}")
        logger.info("=" * 80)

        self.scheduler.start()

        # The ingress binds right away: the challenge route is needed before
        # any certificate exists, and unhealthy targets get 503 meanwhile.
        if self.ingress is not None:
            self.ingress.start()

        if self.certificate_manager is not None:
            self.certificate_manager.start()

        if self.backup_scheduler is not None:
            self.backup_scheduler.start()

    def request_stop(self) -> None:
        self._stop_event.set()

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until request_stop() is called."""
        return self._stop_event.wait(timeout)

    def shutdown(self) -> None:
        logger.info("🛑 Shutting down orchestrator...")
        self._stop_event.set()

        if self.backup_scheduler is not None:
            self.backup_scheduler.stop()
        if self.certificate_manager is not None:
            self.certificate_manager.stop()
        if self.ingress is not None:
            self.ingress.stop()
        self.scheduler.shutdown()

        logger.info("✅ Orchestrator stopped")

    # ============================================
    # STATUS
    # ============================================

    def service_status(self) -> List[Dict[str, Any]]:
        result = []
        for name, status in self.scheduler.snapshot().items():
            entry = status.to_dict()
            entry["profile"] = self.topology.services[name].profile.value
            result.append(entry)
        return result

    def certificate_status(self) -> List[Dict[str, Any]]:
        if self.certificate_manager is None:
            return []
        return self.certificate_manager.status()

    def router_status(self) -> Dict[str, Any]:
        return self.store.current().to_dict()

    def backup_status(self) -> Dict[str, Any]:
        recent = [e.to_dict() for e in self.history.recent(prefix="backup.", limit=20)]
        if self.backup_scheduler is None:
            return {"enabled": False, "recent_events": recent}
        return {"enabled": True, **self.backup_scheduler.status(), "recent_events": recent}

    def status(self) -> Dict[str, Any]:
        return {
            "topology": describe(self.topology),
            "services": self.service_status(),
            "certificates": self.certificate_status(),
            "router": self.router_status(),
            "backups": self.backup_status(),
            "events": [e.to_dict() for e in self.history.recent(limit=50)],
        }
