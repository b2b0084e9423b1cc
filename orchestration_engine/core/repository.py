# orchestration_engine/core/repository.py

from abc import ABC, abstractmethod
from datetime import datetime
from typing import List, Optional
from uuid import UUID

from orchestration_engine.core.models import BackupRecord, Certificate


class CertificateRepository(ABC):
    """
    Persistence contract for certificate lifecycle records.
    Only the Certificate Manager writes through it.
    """

    @abstractmethod
    def get(self, domain: str) -> Optional[Certificate]:
        """
        Fetch certificate record by domain.
        Returns None if not found.
        """
        raise NotImplementedError

    @abstractmethod
    def save(self, certificate: Certificate) -> None:
        """Insert or replace the record for certificate.domain."""
        raise NotImplementedError

    @abstractmethod
    def list_all(self) -> List[Certificate]:
        raise NotImplementedError


class BackupRepository(ABC):
    """
    Persistence contract for backup records.
    Only the Backup Scheduler writes through it.
    """

    @abstractmethod
    def add(self, record: BackupRecord) -> None:
        """
        Persist a new record.
        Must fail if backup_id already exists.
        """
        raise NotImplementedError

    @abstractmethod
    def delete(self, backup_id: UUID) -> None:
        """Remove a record. Raises RecordNotFound if missing."""
        raise NotImplementedError

    @abstractmethod
    def list_all(self) -> List[BackupRecord]:
        """All records, oldest first."""
        raise NotImplementedError

    @abstractmethod
    def list_expired(self, now: datetime) -> List[BackupRecord]:
        """Records whose retention expiry is at or before now, oldest first."""
        raise NotImplementedError

    def latest(self) -> Optional[BackupRecord]:
        records = self.list_all()
        return records[-1] if records else None
