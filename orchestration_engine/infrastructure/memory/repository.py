# orchestration_engine/infrastructure/memory/repository.py

import copy
from datetime import datetime
from threading import Lock
from typing import List, Optional
from uuid import UUID

from orchestration_engine.core.errors import RecordNotFound, RepositoryError
from orchestration_engine.core.models import BackupRecord, Certificate
from orchestration_engine.core.repository import BackupRepository, CertificateRepository


class InMemoryCertificateRepository(CertificateRepository):
    def __init__(self):
        self._store: dict[str, Certificate] = {}
        self._lock = Lock()

    def get(self, domain: str) -> Optional[Certificate]:
        with self._lock:
            certificate = self._store.get(domain)
            return copy.deepcopy(certificate) if certificate else None

    def save(self, certificate: Certificate) -> None:
        with self._lock:
            self._store[certificate.domain] = copy.deepcopy(certificate)

    def list_all(self) -> List[Certificate]:
        with self._lock:
            return [copy.deepcopy(c) for c in self._store.values()]


class InMemoryBackupRepository(BackupRepository):
    def __init__(self):
        self._store: dict[UUID, BackupRecord] = {}
        self._lock = Lock()

    def add(self, record: BackupRecord) -> None:
        with self._lock:
            if record.backup_id in self._store:
                raise RepositoryError(f"Backup {record.backup_id} already exists")
            self._store[record.backup_id] = copy.copy(record)

    def delete(self, backup_id: UUID) -> None:
        with self._lock:
            if backup_id not in self._store:
                raise RecordNotFound(f"Backup {backup_id} not found")
            del self._store[backup_id]

    def list_all(self) -> List[BackupRecord]:
        with self._lock:
            records = [copy.copy(r) for r in self._store.values()]
        return sorted(records, key=lambda r: r.created_at)

    def list_expired(self, now: datetime) -> List[BackupRecord]:
        return [r for r in self.list_all() if r.is_expired(now)]
