# orchestration_engine/run_orchestrator.py
"""Run the orchestrator: services, ingress, certificates, backups and the admin API."""

import logging
import signal
import sys
import threading

import uvicorn

from orchestration_engine.api.main import create_app
from orchestration_engine.config import get_settings
from orchestration_engine.container import build_orchestrator
from orchestration_engine.core.errors import ConfigError, ServiceRuntimeError

# Setup logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)

logger = logging.getLogger(__name__)


def main():
    """Main entry point."""
    settings = get_settings()

    try:
        orchestrator = build_orchestrator(settings)
    except ConfigError as e:
        logger.error(f"❌ Configuration error: {e}")
        sys.exit(1)
    except ServiceRuntimeError as e:
        logger.error(f"❌ Service runtime unavailable: {e}")
        sys.exit(1)

    def signal_handler(sig, frame):
        """Handle Ctrl+C gracefully."""
        logger.info(f"🛑 Received signal {sig}, shutting down...")
        orchestrator.request_stop()

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    logger.info("=" * 80)
    logger.info("🚀 ORCHESTRATION ENGINE")
    logger.info("=" * 80)
    logger.info(f"Topology: {settings.topology_file}")
    logger.info(f"Profiles: {settings.active_profiles} (excluded: {settings.excluded_profiles or '-'})")
    logger.info(f"Admin API: http://{settings.admin_host}:{settings.admin_port}")
    logger.info("")
    logger.info("Press Ctrl+C to stop")
    logger.info("=" * 80)
    logger.info("")

    admin = uvicorn.Server(
        uvicorn.Config(
            create_app(orchestrator),
            host=settings.admin_host,
            port=settings.admin_port,
            log_level="warning",
        )
    )
    admin_thread = threading.Thread(target=admin.run, name="admin-api", daemon=True)

    orchestrator.start()
    admin_thread.start()

    try:
        while not orchestrator.wait(timeout=1.0):
            pass
    finally:
        admin.should_exit = True
        orchestrator.shutdown()
        admin_thread.join(timeout=5)

    logger.info("Orchestration engine stopped")


if __name__ == "__main__":
    main()
