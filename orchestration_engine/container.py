#orchestration_engine\container.py

"""Dependency injection container - wires all components together."""

import shlex
from dataclasses import replace
from datetime import timedelta
from typing import Optional, Tuple

from orchestration_engine.backup.hooks import BackupHook, CommandBackupHook, ServiceExecBackupHook
from orchestration_engine.backup.scheduler import BackupScheduler
from orchestration_engine.certificates.authority import (
    CertificateAuthority,
    ProfileServiceAuthority,
    SelfSignedAuthority,
)
from orchestration_engine.certificates.challenges import ChallengeStore
from orchestration_engine.certificates.manager import CertificateManager
from orchestration_engine.config import OrchestratorSettings, get_settings
from orchestration_engine.core.clock import Clock, SystemClock
from orchestration_engine.core.errors import ConfigError
from orchestration_engine.core.events import LoggingEventEmitter, MultiEventEmitter, RecordingEventEmitter
from orchestration_engine.core.models import Profile, Topology
from orchestration_engine.infrastructure.sql.database import create_db_engine, get_session_factory, init_db
from orchestration_engine.infrastructure.sql.repository import SqlBackupRepository, SqlCertificateRepository
from orchestration_engine.orchestrator import Orchestrator
from orchestration_engine.router.config import ConfigStore
from orchestration_engine.router.proxy import create_proxy_app
from orchestration_engine.router.server import IngressServer
from orchestration_engine.runtime.base import ServiceRuntime
from orchestration_engine.runtime.docker_runtime import DockerServiceRuntime
from orchestration_engine.scheduler.probes import HealthProber
from orchestration_engine.scheduler.scheduler import DependencyScheduler
from orchestration_engine.topology import loader, profiles

# ============================================
# TOPOLOGY
# ============================================

def load_topology(settings: OrchestratorSettings) -> Tuple[Topology, Topology]:
    """
    Load and validate the topology file.

    Returns:
        (full topology, profile-selected topology with ingress overrides)
    """
    full = loader.load(settings.topology_file)

    active = profiles.parse_profiles(settings.active_profile_names)
    excluded = profiles.parse_profiles(settings.excluded_profile_names)
    selected = profiles.select(full, active, excluded)

    overrides = {
        key: value
        for key, value in (
            ("host", settings.ingress_host),
            ("http_port", settings.ingress_http_port),
            ("https_port", settings.ingress_https_port),
        )
        if value is not None
    }
    if overrides:
        selected = replace(selected, ingress=replace(selected.ingress, **overrides))
    return full, selected


# ============================================
# CERTIFICATES
# ============================================

# Time left after the authority gives up, for stopping the service and reading its logs
ISSUANCE_CLEANUP_MARGIN = 30.0


def authority_timeout(issuance_timeout: float) -> float:
    """Inner timeout for the ssl-profile service, strictly below the manager's issuance timeout."""
    return issuance_timeout - min(ISSUANCE_CLEANUP_MARGIN, issuance_timeout / 2)


def build_authority(
    settings: OrchestratorSettings,
    topology: Topology,
    runtime: ServiceRuntime,
    clock: Clock,
) -> CertificateAuthority:
    kind = settings.certificate_authority.strip().lower()

    if kind == "self-signed":
        return SelfSignedAuthority(
            settings.certificate_dir,
            validity=timedelta(days=settings.self_signed_validity_days),
            clock=clock,
        )

    if kind == "profile":
        ssl_services = topology.services_with_profile(Profile.SSL)
        if not ssl_services:
            raise ConfigError("Domains are declared but the topology has no ssl-profile service")
        if len(ssl_services) > 1:
            names = ", ".join(s.name for s in ssl_services)
            raise ConfigError(f"Expected one ssl-profile service, found: {names}")
        return ProfileServiceAuthority(
            ssl_services[0],
            runtime,
            live_dir=settings.certificate_live_dir,
            timeout=authority_timeout(settings.issuance_timeout_seconds),
        )

    raise ConfigError(f"Unknown certificate authority '{settings.certificate_authority}'")


# ============================================
# BACKUPS
# ============================================

def build_backup_hook(
    settings: OrchestratorSettings,
    topology: Topology,
    runtime: ServiceRuntime,
    scheduler: DependencyScheduler,
    clock: Clock,
) -> BackupHook:
    if settings.backup_command:
        return CommandBackupHook(settings.backup_command, timeout=settings.backup_timeout_seconds, clock=clock)

    if settings.backup_service:
        if settings.backup_service not in topology.services:
            raise ConfigError(f"Backup service '{settings.backup_service}' is not part of the active topology")
        if not settings.backup_exec_command:
            raise ConfigError("BACKUP_EXEC_COMMAND is required with BACKUP_SERVICE")
        return ServiceExecBackupHook(
            runtime,
            settings.backup_service,
            scheduler.handle_of,
            shlex.split(settings.backup_exec_command),
            timeout=settings.backup_timeout_seconds,
            clock=clock,
        )

    raise ConfigError("Backups are enabled but neither BACKUP_COMMAND nor BACKUP_SERVICE is set")


# ============================================
# ORCHESTRATOR
# ============================================

def build_orchestrator(
    settings: Optional[OrchestratorSettings] = None,
    *,
    runtime: Optional[ServiceRuntime] = None,
    clock: Optional[Clock] = None,
) -> Orchestrator:
    """
    Build a fully wired orchestrator.

    Raises:
        ConfigError: invalid topology or settings (nothing has started yet)
    """
    settings = settings or get_settings()
    clock = clock or SystemClock()

    full_topology, topology = load_topology(settings)
    runnable = profiles.scheduled(topology)

    # Events
    history = RecordingEventEmitter()
    events = MultiEventEmitter([LoggingEventEmitter(), history])

    # Persistence
    engine = create_db_engine(settings.database_url, echo=settings.echo_sql)
    init_db(engine)
    session_factory = get_session_factory(engine)
    certificate_repository = SqlCertificateRepository(session_factory)
    backup_repository = SqlBackupRepository(session_factory)

    # Runtime
    if runtime is None:
        runtime = DockerServiceRuntime(
            project=settings.runtime_project,
            network=settings.runtime_network,
        )

    # Scheduler
    scheduler = DependencyScheduler(
        runnable,
        runtime,
        HealthProber(runtime),
        restart_backoff=settings.restart_backoff,
        events=events,
        level_timeout=settings.level_timeout_seconds,
        shutdown_grace=settings.shutdown_grace_seconds,
    )

    # Router
    store = ConfigStore(
        topology.services,
        topology.routes,
        topology.domains,
        clock=clock,
        events=events,
    )
    challenges = ChallengeStore(webroot=settings.challenge_webroot)
    ingress_spec = topology.ingress
    https_port = ingress_spec.https_port if topology.domains else None
    proxy_app = create_proxy_app(
        store,
        scheduler.is_healthy,
        challenges,
        challenge_prefix=ingress_spec.challenge_prefix,
        https_port=https_port,
    )
    ingress = IngressServer(
        proxy_app,
        store,
        host=ingress_spec.host,
        http_port=ingress_spec.http_port,
        https_port=https_port,
    )

    # Certificates
    certificate_manager = None
    if topology.domains:
        certificate_manager = CertificateManager(
            topology.domains,
            build_authority(settings, full_topology, runtime, clock),
            store,
            certificate_repository,
            challenges,
            clock=clock,
            backoff=settings.certificate_backoff,
            renewal_window=timedelta(days=settings.renewal_window_days),
            check_interval=settings.certificate_check_interval,
            issuance_timeout=settings.issuance_timeout_seconds,
            events=events,
        )

    # Backups
    backup_scheduler = None
    if settings.backup_enabled:
        backup_scheduler = BackupScheduler(
            build_backup_hook(settings, runnable, runtime, scheduler, clock),
            backup_repository,
            backup_dir=settings.backup_dir,
            retention=timedelta(days=settings.backup_retention_days),
            interval=settings.backup_interval_seconds,
            timeout=settings.backup_timeout_seconds,
            clock=clock,
            events=events,
        )

    return Orchestrator(
        topology,
        scheduler,
        store,
        challenges,
        ingress=ingress,
        certificate_manager=certificate_manager,
        backup_scheduler=backup_scheduler,
        history=history,
    )
