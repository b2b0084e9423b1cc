#orchestration_engine\config.py

from typing import List, Optional

from pydantic_settings import BaseSettings, SettingsConfigDict

from orchestration_engine.core.backoff import BackoffPolicy


def _split(value: str) -> List[str]:
    return [p.strip() for p in value.split(",") if p.strip()]


class OrchestratorSettings(BaseSettings):
    """Orchestrator configuration from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    # Topology
    topology_file: str = "topology.yml"
    active_profiles: str = "default"  # comma separated
    excluded_profiles: str = ""

    # Service runtime
    runtime_project: str = "orchestrator"
    # Defaults to "<runtime_project>_default"; the orchestrator must be attached to it
    runtime_network: Optional[str] = None

    # Persistence
    database_url: str = "sqlite:///orchestrator.db"
    echo_sql: bool = False

    # Ingress overrides (None keeps the topology value)
    ingress_host: Optional[str] = None
    ingress_http_port: Optional[int] = None
    ingress_https_port: Optional[int] = None

    # Administrative status surface
    admin_host: str = "127.0.0.1"
    admin_port: int = 9100

    # Scheduler
    restart_initial_delay: float = 1.0
    restart_multiplier: float = 2.0
    restart_max_delay: float = 60.0
    restart_max_attempts: int = 5
    level_timeout_seconds: float = 300.0
    shutdown_grace_seconds: float = 10.0

    # Certificates
    certificate_authority: str = "profile"  # "profile" (ssl-profile service) or "self-signed"
    certificate_dir: str = "certs"
    challenge_webroot: str = "certbot/www"
    certificate_live_dir: str = "certbot/conf/live"
    renewal_window_days: int = 30
    certificate_check_interval: float = 3600.0
    issuance_timeout_seconds: float = 300.0
    certificate_initial_delay: float = 60.0
    certificate_multiplier: float = 4.0
    certificate_max_delay: float = 86400.0
    certificate_max_attempts: int = 5
    self_signed_validity_days: int = 90

    # Backups
    backup_enabled: bool = False
    backup_dir: str = "backups"
    backup_interval_seconds: float = 86400.0
    backup_retention_days: int = 7
    backup_command: Optional[str] = None
    backup_service: Optional[str] = None
    backup_exec_command: Optional[str] = None
    backup_timeout_seconds: float = 600.0

    @property
    def active_profile_names(self) -> List[str]:
        return _split(self.active_profiles)

    @property
    def excluded_profile_names(self) -> List[str]:
        return _split(self.excluded_profiles)

    @property
    def restart_backoff(self) -> BackoffPolicy:
        return BackoffPolicy(
            initial_delay=self.restart_initial_delay,
            multiplier=self.restart_multiplier,
            max_delay=self.restart_max_delay,
            max_attempts=self.restart_max_attempts,
        )

    @property
    def certificate_backoff(self) -> BackoffPolicy:
        return BackoffPolicy(
            initial_delay=self.certificate_initial_delay,
            multiplier=self.certificate_multiplier,
            max_delay=self.certificate_max_delay,
            max_attempts=self.certificate_max_attempts,
        )


def get_settings() -> OrchestratorSettings:
    return OrchestratorSettings()
