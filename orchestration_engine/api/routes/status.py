# orchestration_engine/api/routes/status.py
"""Read-only status routes."""

from typing import Any, Dict, List

from fastapi import APIRouter, Depends

from orchestration_engine.api.dependencies import get_orchestrator
from orchestration_engine.api.schemas.status import (
    BackupStatusResponse,
    CertificateStatusResponse,
    RouterStatusResponse,
    ServiceStatusResponse,
)

router = APIRouter(prefix="/status", tags=["status"])


@router.get("")
def full_status(orchestrator=Depends(get_orchestrator)) -> Dict[str, Any]:
    """Everything: services, certificates, router, backups and recent events."""
    return orchestrator.status()


@router.get("/services", response_model=List[ServiceStatusResponse])
def service_status(orchestrator=Depends(get_orchestrator)):
    return orchestrator.service_status()


@router.get("/certificates", response_model=List[CertificateStatusResponse])
def certificate_status(orchestrator=Depends(get_orchestrator)):
    return orchestrator.certificate_status()


@router.get("/router", response_model=RouterStatusResponse)
def router_status(orchestrator=Depends(get_orchestrator)):
    return orchestrator.router_status()


@router.get("/backups", response_model=BackupStatusResponse)
def backup_status(orchestrator=Depends(get_orchestrator)):
    return orchestrator.backup_status()
