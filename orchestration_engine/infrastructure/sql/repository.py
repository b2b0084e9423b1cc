#orchestration_engine\infrastructure\sql\repository.py

"""SQLAlchemy repository implementations for certificates and backups."""

import logging
from datetime import datetime, timezone
from typing import List, Optional
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from orchestration_engine.core.errors import RecordNotFound, RepositoryError
from orchestration_engine.core.models import BackupRecord, Certificate, CertificateMaterial
from orchestration_engine.core.repository import BackupRepository, CertificateRepository
from orchestration_engine.infrastructure.sql.models import BackupRecordORM, CertificateORM

logger = logging.getLogger(__name__)


# ============================================
# Mapping Functions
# ============================================

def _aware(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite drops tzinfo; everything is stored as UTC."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def _material(cert_path, key_path, not_before, not_after) -> Optional[CertificateMaterial]:
    if not cert_path or not key_path or not_before is None or not_after is None:
        return None
    return CertificateMaterial(
        cert_path=cert_path,
        key_path=key_path,
        not_before=_aware(not_before),
        not_after=_aware(not_after),
    )


def certificate_to_domain(orm: CertificateORM) -> Certificate:
    """Convert ORM model to domain model."""
    return Certificate(
        domain=orm.domain,
        state=orm.state,
        material=_material(orm.cert_path, orm.key_path, orm.not_before, orm.not_after),
        last_good=_material(
            orm.last_good_cert_path,
            orm.last_good_key_path,
            orm.last_good_not_before,
            orm.last_good_not_after,
        ),
        last_attempt_at=_aware(orm.last_attempt_at),
        next_attempt_at=_aware(orm.next_attempt_at),
        failure_count=orm.failure_count,
        last_error=orm.last_error,
        version=orm.version,
    )


def _apply_certificate(orm: CertificateORM, certificate: Certificate) -> CertificateORM:
    """Copy domain fields onto an ORM row."""
    material = certificate.material
    last_good = certificate.last_good

    orm.state = certificate.state
    orm.cert_path = material.cert_path if material else None
    orm.key_path = material.key_path if material else None
    orm.not_before = material.not_before if material else None
    orm.not_after = material.not_after if material else None
    orm.last_good_cert_path = last_good.cert_path if last_good else None
    orm.last_good_key_path = last_good.key_path if last_good else None
    orm.last_good_not_before = last_good.not_before if last_good else None
    orm.last_good_not_after = last_good.not_after if last_good else None
    orm.last_attempt_at = certificate.last_attempt_at
    orm.next_attempt_at = certificate.next_attempt_at
    orm.failure_count = certificate.failure_count
    orm.last_error = certificate.last_error
    orm.version = certificate.version
    return orm


def backup_to_domain(orm: BackupRecordORM) -> BackupRecord:
    return BackupRecord(
        backup_id=orm.backup_id,
        created_at=_aware(orm.created_at),
        size_bytes=orm.size_bytes,
        path=orm.path,
        expires_at=_aware(orm.expires_at),
    )


def backup_to_orm(record: BackupRecord) -> BackupRecordORM:
    return BackupRecordORM(
        backup_id=record.backup_id,
        created_at=record.created_at,
        size_bytes=record.size_bytes,
        path=record.path,
        expires_at=record.expires_at,
    )


# ============================================
# Repository Implementations
# ============================================

class SqlCertificateRepository(CertificateRepository):
    """Certificate records in a SQL database, with session factory injection."""

    def __init__(self, session_factory: sessionmaker):
        self._session_factory = session_factory

    def _get_session(self) -> Session:
        return self._session_factory()

    def get(self, domain: str) -> Optional[Certificate]:
        session = self._get_session()
        try:
            orm = session.get(CertificateORM, domain)
            return certificate_to_domain(orm) if orm else None
        except SQLAlchemyError as e:
            raise RepositoryError(f"Failed to load certificate {domain}: {e}") from e
        finally:
            session.close()

    def save(self, certificate: Certificate) -> None:
        session = self._get_session()
        try:
            orm = session.get(CertificateORM, certificate.domain)
            if orm is None:
                orm = CertificateORM(domain=certificate.domain)
                session.add(orm)
            _apply_certificate(orm, certificate)
            session.commit()
            logger.debug(f"[sql] save certificate {certificate.domain} -> {certificate.state.value}")
        except SQLAlchemyError as e:
            session.rollback()
            raise RepositoryError(f"Failed to save certificate {certificate.domain}: {e}") from e
        finally:
            session.close()

    def list_all(self) -> List[Certificate]:
        session = self._get_session()
        try:
            rows = session.execute(select(CertificateORM).order_by(CertificateORM.domain)).scalars()
            return [certificate_to_domain(orm) for orm in rows]
        except SQLAlchemyError as e:
            raise RepositoryError(f"Failed to list certificates: {e}") from e
        finally:
            session.close()


class SqlBackupRepository(BackupRepository):
    """Backup records in a SQL database."""

    def __init__(self, session_factory: sessionmaker):
        self._session_factory = session_factory

    def _get_session(self) -> Session:
        return self._session_factory()

    def add(self, record: BackupRecord) -> None:
        session = self._get_session()
        try:
            session.add(backup_to_orm(record))
            session.commit()
        except IntegrityError as e:
            session.rollback()
            raise RepositoryError(f"Backup {record.backup_id} already exists") from e
        except SQLAlchemyError as e:
            session.rollback()
            raise RepositoryError(f"Failed to add backup record: {e}") from e
        finally:
            session.close()

    def delete(self, backup_id: UUID) -> None:
        session = self._get_session()
        try:
            orm = session.get(BackupRecordORM, backup_id)
            if orm is None:
                raise RecordNotFound(f"Backup {backup_id} not found")
            session.delete(orm)
            session.commit()
        except SQLAlchemyError as e:
            session.rollback()
            raise RepositoryError(f"Failed to delete backup {backup_id}: {e}") from e
        finally:
            session.close()

    def list_all(self) -> List[BackupRecord]:
        session = self._get_session()
        try:
            rows = session.execute(
                select(BackupRecordORM).order_by(BackupRecordORM.created_at)
            ).scalars()
            return [backup_to_domain(orm) for orm in rows]
        except SQLAlchemyError as e:
            raise RepositoryError(f"Failed to list backups: {e}") from e
        finally:
            session.close()

    def list_expired(self, now: datetime) -> List[BackupRecord]:
        # Compared in Python: SQLite stores naive timestamps
        return [r for r in self.list_all() if r.is_expired(now)]
