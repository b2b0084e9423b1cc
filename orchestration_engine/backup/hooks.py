# orchestration_engine/backup/hooks.py
"""
Backup hooks - the narrow interface to whatever actually dumps the store.

A hook writes one artifact into the destination directory and returns its
path, or raises BackupFailure.
"""

import logging
import os
import shlex
import subprocess
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Callable, Optional, Sequence

from orchestration_engine.core.clock import Clock, SystemClock
from orchestration_engine.core.errors import BackupFailure, ServiceRuntimeError
from orchestration_engine.runtime.base import ServiceHandle, ServiceRuntime

logger = logging.getLogger(__name__)


class BackupHook(ABC):

    @abstractmethod
    def backup(self, destination_dir: Path) -> Path:
        """Create a backup artifact in destination_dir and return its path."""
        raise NotImplementedError


def _artifact_path(destination_dir: Path, clock: Clock, suffix: str) -> Path:
    stamp = clock.now().strftime("%Y%m%dT%H%M%SZ")
    return Path(destination_dir) / f"backup-{stamp}{suffix}"


class CommandBackupHook(BackupHook):
    """
    Runs an external backup script.

    `{output}` in the command is replaced by the artifact path; the path is
    also exported as BACKUP_OUTPUT.
    """

    def __init__(
        self,
        command: str,
        *,
        timeout: float = 600.0,
        suffix: str = ".sql.gz",
        clock: Optional[Clock] = None,
    ):
        self._argv = shlex.split(command)
        if not self._argv:
            raise ValueError("Backup command is empty")
        self._timeout = timeout
        self._suffix = suffix
        self._clock = clock or SystemClock()

    def backup(self, destination_dir: Path) -> Path:
        destination_dir = Path(destination_dir)
        destination_dir.mkdir(parents=True, exist_ok=True)
        output = _artifact_path(destination_dir, self._clock, self._suffix)

        argv = [part.replace("{output}", str(output)) for part in self._argv]
        env = {**os.environ, "BACKUP_OUTPUT": str(output), "BACKUP_DIR": str(destination_dir)}

        logger.info(f"[backup] Running {argv[0]}")
        try:
            result = subprocess.run(
                argv,
                capture_output=True,
                timeout=self._timeout,
                env=env,
                check=False,
            )
        except subprocess.TimeoutExpired as e:
            raise BackupFailure(f"Backup command timed out after {self._timeout}s") from e
        except OSError as e:
            raise BackupFailure(f"Could not run backup command: {e}") from e

        if result.returncode != 0:
            stderr = result.stderr.decode("utf-8", errors="replace").strip()
            raise BackupFailure(
                f"Backup command exited with code {result.returncode}"
                + (f": {stderr.splitlines()[-1]}" if stderr else "")
            )

        if not output.exists():
            raise BackupFailure(f"Backup command did not produce {output}")
        return output


class ServiceExecBackupHook(BackupHook):
    """
    Dumps a store by executing a command inside its running service.

    The command's output is the artifact (e.g. `pg_dump -U app app`).
    """

    def __init__(
        self,
        runtime: ServiceRuntime,
        service: str,
        handle_of: Callable[[str], Optional[ServiceHandle]],
        command: Sequence[str],
        *,
        timeout: float = 600.0,
        suffix: str = ".sql",
        clock: Optional[Clock] = None,
    ):
        self._runtime = runtime
        self._service = service
        self._handle_of = handle_of
        self._command = tuple(command)
        self._timeout = timeout
        self._suffix = suffix
        self._clock = clock or SystemClock()

    def backup(self, destination_dir: Path) -> Path:
        handle = self._handle_of(self._service)
        if handle is None:
            raise BackupFailure(f"Service {self._service} is not running")

        try:
            exit_code, output = self._runtime.exec(handle, self._command, timeout=self._timeout)
        except ServiceRuntimeError as e:
            raise BackupFailure(f"Dump in {self._service} failed: {e}") from e

        if exit_code != 0:
            raise BackupFailure(f"Dump in {self._service} exited with code {exit_code}")

        destination_dir = Path(destination_dir)
        destination_dir.mkdir(parents=True, exist_ok=True)
        path = _artifact_path(destination_dir, self._clock, self._suffix)
        try:
            path.write_bytes(output)
        except OSError as e:
            raise BackupFailure(f"Could not write {path}: {e}") from e
        return path
