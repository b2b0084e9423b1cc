# orchestration_engine/backup/scheduler.py
"""
Backup/Retention Scheduler.

Every tick takes one backup and then prunes records whose retention has
expired. A failed backup prunes nothing, and the newest record is never
pruned, so there is always a last good backup on disk.
"""

import logging
import threading
from datetime import datetime, timedelta
from pathlib import Path
from typing import List, Optional

from orchestration_engine.backup.hooks import BackupHook
from orchestration_engine.core.clock import Clock, SystemClock
from orchestration_engine.core.errors import BackupFailure, RepositoryError
from orchestration_engine.core.events import EventEmitter, NullEventEmitter
from orchestration_engine.core.events_model import OrchestratorEvent
from orchestration_engine.core.models import BackupRecord
from orchestration_engine.core.repository import BackupRepository
from orchestration_engine.core.timeouts import CallTimeout, call_with_timeout

logger = logging.getLogger(__name__)


class BackupScheduler:
    """
    Periodic backup with time-based retention.

    Args:
        hook: Backup hook producing the artifact
        repository: Backup record persistence
        backup_dir: Directory artifacts are written to
        retention: How long a record is kept (expires_at = created_at + retention)
        interval: Seconds between backups
        timeout: Upper bound for one hook call
        clock: Time source
        events: Event emitter
    """

    def __init__(
        self,
        hook: BackupHook,
        repository: BackupRepository,
        *,
        backup_dir: str,
        retention: timedelta = timedelta(days=7),
        interval: float = 86400.0,
        timeout: float = 600.0,
        clock: Optional[Clock] = None,
        events: Optional[EventEmitter] = None,
    ):
        self._hook = hook
        self._repository = repository
        self._backup_dir = Path(backup_dir)
        self._retention = retention
        self._interval = interval
        self._timeout = timeout
        self._clock = clock or SystemClock()
        self._events = events or NullEventEmitter()

        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self.last_error: Optional[str] = None
        self.last_run_at: Optional[datetime] = None

    # ============================================
    # TICK
    # ============================================

    def tick(self) -> Optional[BackupRecord]:
        """
        Take one backup, then apply retention.

        Returns:
            The new record, or None if the backup failed
        """
        now = self._clock.now()
        self.last_run_at = now

        try:
            artifact = call_with_timeout(self._hook.backup, self._timeout, self._backup_dir)
            size = Path(artifact).stat().st_size
        except CallTimeout:
            self._failed(f"backup timed out after {self._timeout}s", now)
            return None
        except BackupFailure as e:
            self._failed(str(e), now)
            return None
        except OSError as e:
            self._failed(f"backup artifact unreadable: {e}", now)
            return None
        except Exception as e:
            logger.error(f"[backup] Unexpected hook error: {e}", exc_info=True)
            self._failed(str(e), now)
            return None

        record = BackupRecord(
            created_at=now,
            size_bytes=size,
            path=str(artifact),
            expires_at=now + self._retention,
        )
        self._repository.add(record)
        self.last_error = None

        logger.info(f"[backup] ✅ {record.path} ({record.size_bytes} bytes), expires {record.expires_at.isoformat()}")
        self._emit(OrchestratorEvent.backup_completed(record))

        self.prune(now)
        return record

    def prune(self, now: Optional[datetime] = None) -> List[BackupRecord]:
        """Delete expired records and their artifacts, never the newest record."""
        now = now or self._clock.now()
        latest = self._repository.latest()

        pruned = []
        for record in self._repository.list_expired(now):
            if latest is not None and record.backup_id == latest.backup_id:
                continue

            try:
                Path(record.path).unlink(missing_ok=True)
            except OSError as e:
                logger.warning(f"[backup] Could not delete {record.path}: {e}")
                self._emit(OrchestratorEvent.backup_pruned(record, now, error=str(e)))
                continue

            try:
                self._repository.delete(record.backup_id)
            except RepositoryError as e:
                logger.warning(f"[backup] Could not delete record {record.backup_id}: {e}")
                continue

            logger.info(f"[backup] Pruned {record.path} (created {record.created_at.isoformat()})")
            self._emit(OrchestratorEvent.backup_pruned(record, now))
            pruned.append(record)

        return pruned

    def _failed(self, error: str, now: datetime) -> None:
        self.last_error = error
        logger.error(f"[backup] ❌ Backup failed: {error}")
        self._emit(OrchestratorEvent.backup_failed(error, now))

    def _emit(self, event: OrchestratorEvent) -> None:
        try:
            self._events.emit([event])
        except Exception as e:
            logger.error(f"[backup] Failed to emit {event.event_type}: {e}", exc_info=True)

    def status(self) -> dict:
        records = self._repository.list_all()
        return {
            "records": [r.to_dict() for r in records],
            "count": len(records),
            "last_run_at": self.last_run_at.isoformat() if self.last_run_at else None,
            "last_error": self.last_error,
            "retention_days": self._retention.days,
            "interval_seconds": self._interval,
        }

    # ============================================
    # LOOP
    # ============================================

    def start(self) -> None:
        if self._thread is not None:
            raise RuntimeError("Backup scheduler already started")

        logger.info("=" * 80)
        logger.info("💾 BACKUP SCHEDULER STARTED")
        logger.info(f"Interval: {self._interval}s")
        logger.info(f"Retention: {self._retention}")
        logger.info(f"Directory: {self._backup_dir}")
        logger.info("=" * 80)

        self._thread = threading.Thread(target=self._run, name="backup", daemon=True)
        self._thread.start()

    def stop(self, timeout: float = 10.0) -> None:
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout=timeout)
        logger.info("[backup] Backup scheduler stopped")

    def _run(self) -> None:
        # Resume the cadence from the last stored backup
        if self._stop_event.wait(self._initial_wait()):
            return

        while not self._stop_event.is_set():
            try:
                self.tick()
            except Exception as e:
                logger.error(f"[backup] Error in backup cycle: {e}", exc_info=True)

            self._stop_event.wait(self._interval)

    def _initial_wait(self) -> float:
        latest = self._repository.latest()
        if latest is None:
            return 0.0
        due = latest.created_at + timedelta(seconds=self._interval)
        return max(0.0, (due - self._clock.now()).total_seconds())
