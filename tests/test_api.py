#tests\test_api.py

"""Test the administrative status API."""

import pytest
from datetime import timedelta
from fastapi.testclient import TestClient

from orchestration_engine.api.main import create_app
from orchestration_engine.backup.scheduler import BackupScheduler
from orchestration_engine.certificates.authority import SelfSignedAuthority
from orchestration_engine.certificates.challenges import ChallengeStore
from orchestration_engine.certificates.manager import CertificateManager
from orchestration_engine.core.models import DomainSpec, RouteRule
from orchestration_engine.orchestrator import Orchestrator
from orchestration_engine.router.config import ConfigStore

from conftest import FileHook, make_service, make_topology


DOMAIN = "example.com"


@pytest.fixture
def topology():
    """Two services behind one route and one domain."""
    return make_topology(
        make_service("db", ports=(5432,)),
        make_service("web", ["db"], ports=(80,)),
        routes=[RouteRule(prefix="/", service="web")],
        domains=[DomainSpec(name=DOMAIN)],
    )


@pytest.fixture
def orchestrator(
    tmp_path,
    topology,
    scheduler_factory,
    certificate_repository,
    backup_repository,
    clock,
    events,
):
    """Orchestrator with every component wired, nothing started."""
    scheduler = scheduler_factory(topology)
    store = ConfigStore(topology.services, topology.routes, topology.domains, clock=clock, events=events)
    challenges = ChallengeStore()
    manager = CertificateManager(
        topology.domains,
        SelfSignedAuthority(str(tmp_path / "certs"), clock=clock),
        store,
        certificate_repository,
        challenges,
        clock=clock,
        events=events,
    )
    backups = BackupScheduler(
        FileHook(clock),
        backup_repository,
        backup_dir=str(tmp_path / "backups"),
        retention=timedelta(days=7),
        clock=clock,
        events=events,
    )
    return Orchestrator(
        topology,
        scheduler,
        store,
        challenges,
        certificate_manager=manager,
        backup_scheduler=backups,
        history=events,
    )


@pytest.fixture
def client(orchestrator):
    """Test client for the admin API."""
    return TestClient(create_app(orchestrator))


class TestHealth:
    """Test the liveness endpoint."""

    def test_health(self, client):
        """Test /health answers ok."""
        response = client.get("/health")

        assert response.status_code == 200
        assert response.json() == {"status": "ok"}


class TestStatus:
    """Test status endpoints."""

    def test_services_before_start(self, client):
        """Test services are listed as PENDING before the scheduler starts."""
        response = client.get("/status/services")

        assert response.status_code == 200
        states = {s["name"]: (s["state"], s["profile"]) for s in response.json()}
        assert states == {"db": ("PENDING", "default"), "web": ("PENDING", "default")}

    def test_services_after_start(self, client, orchestrator):
        """Test service states follow the scheduler."""
        orchestrator.scheduler.start()
        assert orchestrator.scheduler.wait_until_settled(timeout=5)

        states = {s["name"]: s["state"] for s in client.get("/status/services").json()}

        assert states == {"db": "HEALTHY", "web": "HEALTHY"}

    def test_certificates(self, client, orchestrator):
        """Test certificate status reflects the manager."""
        before = client.get("/status/certificates").json()
        assert before[0]["domain"] == DOMAIN
        assert before[0]["state"] == "UNREQUESTED"
        assert before[0]["bound"] is False

        orchestrator.certificate_manager.tick_domain(DOMAIN)
        after = client.get("/status/certificates").json()

        assert after[0]["state"] == "ACTIVE"
        assert after[0]["bound"] is True
        assert after[0]["retries_exhausted"] is False

    def test_router(self, client, orchestrator):
        """Test router status shows the active configuration."""
        body = client.get("/status/router").json()

        assert body["version"] == 1
        assert body["routes"] == [
            {"prefix": "/", "service": "web", "port": 80, "strip_prefix": False, "enabled": True}
        ]
        assert body["certificates"] == {}

        orchestrator.certificate_manager.tick_domain(DOMAIN)
        body = client.get("/status/router").json()

        assert body["version"] == 2
        assert DOMAIN in body["certificates"]

    def test_backups(self, client, orchestrator):
        """Test backup status lists records and recent events."""
        record = orchestrator.backup_scheduler.tick()

        body = client.get("/status/backups").json()

        assert body["enabled"] is True
        assert body["count"] == 1
        assert body["records"][0]["backup_id"] == str(record.backup_id)
        assert body["recent_events"][0]["event_type"] == "backup.completed"

    def test_full_status(self, client):
        """Test /status combines every view."""
        body = client.get("/status").json()

        assert set(body) == {"topology", "services", "certificates", "router", "backups", "events"}
        assert body["topology"]["services"]["web"]["depends_on"] == ["db"]
        assert body["topology"]["domains"] == [DOMAIN]


class TestCertificateRequest:
    """Test manual certificate requests."""

    def test_request_accepted(self, client, orchestrator):
        """Test a request for a managed domain is accepted and queued for the next tick."""
        response = client.post(f"/certificates/{DOMAIN}/request")

        assert response.status_code == 202
        assert response.json() == {"domain": DOMAIN, "accepted": True}
        assert client.get("/status/certificates").json()[0]["manual_request_pending"] is True

        orchestrator.certificate_manager.tick_domain(DOMAIN)
        after = client.get("/status/certificates").json()[0]

        assert after["manual_request_pending"] is False
        assert after["state"] == "ACTIVE"

    def test_request_is_case_insensitive(self, client):
        """Test domain names are normalised to lower case."""
        response = client.post("/certificates/EXAMPLE.com/request")

        assert response.status_code == 202
        assert response.json()["domain"] == DOMAIN

    def test_unknown_domain(self, client):
        """Test an unmanaged domain is 404."""
        assert client.post("/certificates/other.example/request").status_code == 404

    def test_no_manager(self, orchestrator):
        """Test requests are 404 when no domains are managed."""
        orchestrator.certificate_manager = None
        client = TestClient(create_app(orchestrator))

        assert client.post(f"/certificates/{DOMAIN}/request").status_code == 404
        assert client.get("/status/certificates").json() == []
