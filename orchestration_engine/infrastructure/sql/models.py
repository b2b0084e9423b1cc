#orchestration_engine\infrastructure\sql\models.py
"""SQLAlchemy ORM models for the orchestrator state store."""

from sqlalchemy import Column, String, Integer, BigInteger, DateTime, Text, Uuid, Enum as SQLEnum, Index

from orchestration_engine.core.models import CertificateState
from orchestration_engine.infrastructure.sql.database import Base


class CertificateORM(Base):
    """
    Certificate table - one row per domain.

    Holds the current material and the last-known-good material so a
    restart can rebind the router without re-issuing.
    """

    __tablename__ = "certificates"

    domain = Column(String(255), primary_key=True)

    state = Column(
        SQLEnum(CertificateState, name="certificate_state"),
        nullable=False,
        default=CertificateState.UNREQUESTED,
        index=True
    )

    # Current material
    cert_path = Column(Text, nullable=True)
    key_path = Column(Text, nullable=True)
    not_before = Column(DateTime(timezone=True), nullable=True)
    not_after = Column(DateTime(timezone=True), nullable=True)

    # Last-known-good material
    last_good_cert_path = Column(Text, nullable=True)
    last_good_key_path = Column(Text, nullable=True)
    last_good_not_before = Column(DateTime(timezone=True), nullable=True)
    last_good_not_after = Column(DateTime(timezone=True), nullable=True)

    # Attempts
    last_attempt_at = Column(DateTime(timezone=True), nullable=True)
    next_attempt_at = Column(DateTime(timezone=True), nullable=True)
    failure_count = Column(Integer, nullable=False, default=0)
    last_error = Column(Text, nullable=True)

    version = Column(Integer, nullable=False, default=0)

    def __repr__(self) -> str:
        return (
            f"<CertificateORM(domain={self.domain}, "
            f"state={self.state.value if self.state else None}, "
            f"not_after={self.not_after})>"
        )


class BackupRecordORM(Base):
    """Backup record table."""

    __tablename__ = "backup_records"

    backup_id = Column(Uuid, primary_key=True)
    created_at = Column(DateTime(timezone=True), nullable=False)
    size_bytes = Column(BigInteger, nullable=False, default=0)
    path = Column(Text, nullable=False)
    expires_at = Column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        # Retention pruning scans by expiry
        Index("ix_backup_records_expires_at", "expires_at"),
        Index("ix_backup_records_created_at", "created_at"),
    )

    def __repr__(self) -> str:
        return f"<BackupRecordORM(backup_id={self.backup_id}, created_at={self.created_at})>"
