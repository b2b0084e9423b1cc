# orchestration_engine/api/routes/certificates.py
"""Certificate management routes."""

from fastapi import APIRouter, Depends, HTTPException

from orchestration_engine.api.dependencies import get_orchestrator
from orchestration_engine.api.schemas.status import CertificateRequestResponse

router = APIRouter(prefix="/certificates", tags=["certificates"])


@router.post("/{domain}/request", response_model=CertificateRequestResponse, status_code=202)
def request_certificate(domain: str, orchestrator=Depends(get_orchestrator)):
    """
    Trigger issuance for a domain now.

    Resets the failure counter, so this also resumes a domain whose
    automatic retries are exhausted.
    """
    if orchestrator.certificate_manager is None:
        raise HTTPException(status_code=404, detail="No domains are managed")

    try:
        orchestrator.certificate_manager.request_certificate(domain.lower())
    except KeyError:
        raise HTTPException(status_code=404, detail=f"Unknown domain: {domain}")

    return CertificateRequestResponse(domain=domain.lower(), accepted=True)
