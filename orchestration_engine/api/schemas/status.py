from typing import Any, Dict, List, Optional

from pydantic import BaseModel


class ServiceStatusResponse(BaseModel):
    name: str
    state: str
    profile: str
    consecutive_successes: int
    consecutive_failures: int
    restart_attempts: int
    last_exit_code: Optional[int]
    last_error: Optional[str]
    updated_at: str


class CertificateStatusResponse(BaseModel):
    domain: str
    state: str
    not_before: Optional[str]
    not_after: Optional[str]
    last_attempt_at: Optional[str]
    next_attempt_at: Optional[str]
    failure_count: int
    last_error: Optional[str]
    bound: bool
    retries_exhausted: bool
    serving_last_good: bool
    manual_request_pending: bool = False


class CertificateRequestResponse(BaseModel):
    domain: str
    accepted: bool


class RouteResponse(BaseModel):
    prefix: str
    service: str
    port: Optional[int]
    strip_prefix: bool
    enabled: bool


class RouterStatusResponse(BaseModel):
    version: int
    created_at: Optional[str]
    routes: List[RouteResponse]
    certificates: Dict[str, Dict[str, Any]]


class BackupStatusResponse(BaseModel):
    enabled: bool
    records: List[Dict[str, Any]] = []
    count: int = 0
    last_run_at: Optional[str] = None
    last_error: Optional[str] = None
    recent_events: List[Dict[str, Any]] = []
