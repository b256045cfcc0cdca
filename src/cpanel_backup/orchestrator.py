#!/usr/bin/env python3
"""Backup orchestration: trigger, detect, wait for stable size, download, verify, clean up."""

import enum
import os
import re
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Generic, Iterable, Optional, Pattern, TypeVar

from rich.console import Console
from rich.progress import Progress

from .cpanel_client import trigger_full_backup
from .errors import (
    FTPAuthenticationError,
    FTPConnectionError,
    FTPDeletionError,
    FTPGatewayError,
    FTPListingError,
    TriggerError,
)
from .ftp_gateway import FTPGateway, RemoteFile
from .logger import get_logger
from .pipeline import ProgressThrottle
from .stats import get_stats_tracker
from .utils import ensure_dir, join_posix, vprint
from .verify import verify_backup

BACKUP_FILENAME_PATTERN = re.compile(r"backup-.*\.tar\.gz")

T = TypeVar("T")


class ErrorKind(enum.Enum):
    CONNECTION = "connection"
    AUTHENTICATION = "authentication"
    LISTING = "listing"
    TRIGGER = "trigger"
    DETECTION_TIMEOUT = "detection_timeout"
    STABILITY_TIMEOUT = "stability_timeout"
    TRANSFER = "transfer"
    VERIFICATION = "verification"
    DELETION = "deletion"


@dataclass(frozen=True)
class BackupError:
    kind: ErrorKind
    message: str
    cause: Optional[BaseException] = None

    def __str__(self) -> str:
        return self.message


@dataclass(frozen=True)
class Result(Generic[T]):
    """Either a value or a BackupError; check ok before reading value."""
    value: Optional[T] = None
    error: Optional[BackupError] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def success(cls, value: Optional[T] = None) -> "Result[T]":
        return cls(value=value)

    @classmethod
    def failure(cls, kind: ErrorKind, message: str, cause: Optional[BaseException] = None) -> "Result[T]":
        return cls(error=BackupError(kind, message, cause))


@dataclass(frozen=True)
class BackupReport:
    remote_name: str
    local_path: str
    bytes_downloaded: int
    expected_bytes: int
    verified: Optional[bool]
    deleted: Optional[bool]
    duration: float


class Deadline:
    """Absolute wall-clock cutoff, fixed at construction."""

    def __init__(self, seconds: float, clock: Callable[[], float] = time.time):
        self._clock = clock
        self.at = clock() + seconds

    def expired(self) -> bool:
        return self._clock() >= self.at

    def remaining(self) -> float:
        return max(0.0, self.at - self._clock())


def find_youngest_backup(files: Iterable[RemoteFile],
                         pattern: Pattern = BACKUP_FILENAME_PATTERN) -> Optional[RemoteFile]:
    """Return the matching file with the latest modification time; the first one wins ties."""
    youngest = None
    for f in files:
        if not pattern.fullmatch(f.name):
            continue
        if youngest is None or youngest.modified_at < f.modified_at:
            youngest = f
    return youngest


def error_kind_for(exc: BaseException) -> ErrorKind:
    """Map a raised collaborator error onto the result taxonomy."""
    if isinstance(exc, TriggerError):
        return ErrorKind.TRIGGER
    if isinstance(exc, FTPAuthenticationError):
        return ErrorKind.AUTHENTICATION
    if isinstance(exc, FTPListingError):
        return ErrorKind.LISTING
    if isinstance(exc, FTPDeletionError):
        return ErrorKind.DELETION
    if isinstance(exc, FTPConnectionError) or type(exc) is FTPGatewayError:
        return ErrorKind.CONNECTION
    return ErrorKind.TRANSFER


class BackupOrchestrator:
    """
    Runs one remote full backup from trigger to cleanup.

    Gateway errors are converted into Result failures here; the polling loops
    return timeout results instead of raising. Both polling phases share one
    Deadline that starts right after the trigger. The download itself is not
    bounded by it.
    """

    def __init__(self, cfg: Dict[str, Any], gateway: Optional[FTPGateway] = None,
                 trigger: Optional[Callable[[Dict[str, Any]], None]] = None,
                 verifier: Optional[Callable[[str], bool]] = None,
                 console: Optional[Console] = None, progress: Optional[Progress] = None,
                 clock: Callable[[], float] = time.time, sleep: Callable[[float], None] = time.sleep):
        self.cfg = cfg
        self._backup = cfg["backup"]
        self._gateway = gateway or FTPGateway.from_config(cfg["ftp"])
        self._trigger = trigger or trigger_full_backup
        self._verifier = verifier or verify_backup
        self._console = console or Console()
        self._progress = progress
        self._clock = clock
        self._sleep = sleep
        self._logger = get_logger()
        self._stats = get_stats_tracker()

    @property
    def remote_dir(self) -> str:
        return self._backup.get("remote_dir", "/")

    @property
    def poll_interval(self) -> float:
        return self._backup.get("poll_interval", 15)

    def run(self) -> Result[BackupReport]:
        """Perform the whole sequence; never raises for expected failure modes."""
        result = self._run_steps()
        if result.ok:
            try:
                self._gateway.logout()
            except FTPGatewayError as e:
                self._logger.warning(f"Logout failed: {e}", error=str(e))
        else:
            self._gateway.close()
            self._logger.error(result.error.message, event="backup_failed", kind=result.error.kind.value)
        return result

    def _run_steps(self) -> Result[BackupReport]:
        started = self._clock()

        try:
            self._gateway.login()
        except FTPGatewayError as e:
            return Result.failure(error_kind_for(e), f"Cannot log in to the FTP server: {e}", e)

        baseline = self.find_baseline()
        if not baseline.ok:
            return Result(error=baseline.error)
        prev_name = baseline.value
        self._logger.debug(f"Youngest backup before we started: {prev_name or 'none'}")

        triggered = self.trigger_backup()
        if not triggered.ok:
            return Result(error=triggered.error)

        # Polling starts now; both loops share this deadline
        deadline = Deadline(self._backup.get("timeout", 300), self._clock)

        detected = self.detect_new_backup(prev_name, deadline)
        if not detected.ok:
            return Result(error=detected.error)
        name = detected.value

        stable = self.wait_for_stable_size(name, deadline)
        if not stable.ok:
            return Result(error=stable.error)
        expected = stable.value

        downloaded = self.download(name, expected)
        if not downloaded.ok:
            return Result(error=downloaded.error)
        local_path, received = downloaded.value

        verified = None
        if self._backup.get("verify", True):
            checked = self.verify(local_path, name)
            if not checked.ok:
                return Result(error=checked.error)
            verified = True

        deleted = None
        if self._backup.get("delete", True):
            deleted = self.delete_remote(name)

        self._console.print("[bold green]Done.[/bold green]")
        return Result.success(BackupReport(
            remote_name=name,
            local_path=local_path,
            bytes_downloaded=received,
            expected_bytes=expected,
            verified=verified,
            deleted=deleted,
            duration=self._clock() - started,
        ))

    # -- steps -----------------------------------------------------------------

    def find_baseline(self) -> Result[Optional[str]]:
        """Name of the youngest backup present before the trigger, or None."""
        try:
            files = self._gateway.list_directory(self.remote_dir)
        except FTPGatewayError as e:
            return Result.failure(error_kind_for(e), f"Cannot list existing backups in {self.remote_dir}: {e}", e)
        self._stats.record_listing_poll()
        youngest = find_youngest_backup(files)
        return Result.success(youngest.name if youngest else None)

    def trigger_backup(self) -> Result[None]:
        c = self.cfg["cpanel"]
        self._console.print("[green][START][/green] Starting cPanel backup")
        try:
            with self._logger.operation_timer("trigger_backup", host=c["host"]):
                self._trigger(c)
        except TriggerError as e:
            return Result.failure(ErrorKind.TRIGGER, f"Cannot start the cPanel backup: {e}", e)
        self._logger.backup_triggered(c["host"], c["skin"], bool(c.get("https")))
        return Result.success()

    def detect_new_backup(self, prev_name: Optional[str], deadline: Deadline) -> Result[str]:
        """Poll until the youngest backup differs from prev_name (or exists at all)."""
        self._console.print("[cyan][POLL][/cyan] Polling for the backup we just started")
        polls = 0
        while not deadline.expired():
            polls += 1
            try:
                files = self._gateway.list_directory(self.remote_dir)
            except FTPGatewayError as e:
                return Result.failure(error_kind_for(e),
                                      f"Listing {self.remote_dir} failed while looking for the new backup: {e}", e)
            self._stats.record_listing_poll()

            youngest = find_youngest_backup(files)
            if youngest is not None and youngest.name != prev_name:
                self._logger.backup_detected(youngest.name, prev_name, polls)
                self._console.print(f"[cyan][POLL][/cyan] Found {youngest.name}")
                return Result.success(youngest.name)

            vprint(self._console, f"[poll {polls}] youngest backup still {youngest.name if youngest else 'none'}")
            self._sleep(self.poll_interval)

        return Result.failure(
            ErrorKind.DETECTION_TIMEOUT,
            f"Cannot find the new backup: nothing new matching backup-*.tar.gz appeared in "
            f"{self.remote_dir} after {polls} polls (timeout polling for file)"
        )

    def wait_for_stable_size(self, name: str, deadline: Deadline) -> Result[int]:
        """
        Poll the file size until two consecutive readings are equal and at
        least min_file_bytes; returns that size.
        """
        path = join_posix(self.remote_dir, name)
        min_bytes = self._backup.get("min_file_bytes", 5000)
        self._console.print(f"[cyan][POLL][/cyan] Polling for {name} to reach its final size")

        last_size: Optional[int] = None
        current_size: Optional[int] = None

        def unstable() -> bool:
            return (last_size is None or current_size < min_bytes or current_size != last_size)

        polls = 0
        while unstable() and not deadline.expired():
            try:
                info = self._gateway.get_file_metadata(path)
            except FTPGatewayError as e:
                return Result.failure(error_kind_for(e), f"Cannot read the size of {path}: {e}", e)
            polls += 1
            self._stats.record_metadata_poll()
            last_size, current_size = current_size, info.size
            vprint(self._console, f"[poll {polls}] {name}: {current_size} bytes")
            if unstable():
                self._sleep(self.poll_interval)

        if unstable():
            return Result.failure(
                ErrorKind.STABILITY_TIMEOUT,
                f"Backup file size did not become stable in time ({name}, last size "
                f"{current_size if current_size is not None else 'unknown'} bytes)"
            )
        self._logger.size_stable(name, current_size, polls)
        return Result.success(current_size)

    def download(self, name: str, expected_bytes: int) -> Result[tuple]:
        """Download into output_dir/name via a .part file; returns (local_path, bytes)."""
        out_dir = self._backup.get("output_dir", ".")
        local_path = os.path.join(out_dir, name)
        if os.path.exists(local_path):
            return Result.failure(ErrorKind.TRANSFER, f'Cannot create "{local_path}", file already exists')

        tmp = local_path + ".part"
        try:
            ensure_dir(out_dir)
            sink = open(tmp, "xb")
        except FileExistsError as e:
            return Result.failure(ErrorKind.TRANSFER,
                                  f'Cannot create "{tmp}", file already exists (another run, or left over from one)', e)
        except OSError as e:
            return Result.failure(ErrorKind.TRANSFER, f'Cannot create "{tmp}": {e}', e)

        remote_path = join_posix(self.remote_dir, name)
        self._stats.start_transfer(name, expected_bytes)
        self._logger.transfer_start(name, local_path, expected_bytes)
        self._console.print(f"[green][PROC][/green] Downloading {name} to {local_path}")

        task = self._progress.add_task(f"[white]{name}", total=100) if self._progress is not None else None

        def _report(percentage: int) -> None:
            if task is not None:
                self._progress.update(task, completed=percentage)
            self._logger.transfer_progress(name, expected_bytes * percentage // 100, expected_bytes)

        start_time = time.time()
        try:
            with sink:
                received = self._gateway.download_file(remote_path, sink, ProgressThrottle(_report), expected_bytes)
        except FTPGatewayError as e:
            self._stats.complete_transfer(0, error=str(e))
            self._logger.transfer_error(name, str(e))
            self._discard(tmp)
            return Result.failure(error_kind_for(e), f"Cannot download backup: {e}", e)
        finally:
            if task is not None:
                self._progress.remove_task(task)

        try:
            os.replace(tmp, local_path)
        except OSError as e:
            self._stats.complete_transfer(received, error=str(e))
            return Result.failure(ErrorKind.TRANSFER, f'Cannot move "{tmp}" to "{local_path}": {e}', e)
        duration = time.time() - start_time
        self._stats.complete_transfer(received)
        self._logger.transfer_complete(name, received, duration)
        self._console.print(f"[green][PROC][/green] Downloaded {received} bytes successfully")
        return Result.success((local_path, received))

    def verify(self, local_path: str, name: str) -> Result[None]:
        self._console.print(f"[green][CHECK][/green] Verifying {local_path}")
        try:
            ok = self._verifier(local_path)
        except OSError as e:
            return Result.failure(ErrorKind.VERIFICATION, f"Could not verify downloaded file {local_path}: {e}", e)
        if not ok:
            return Result.failure(
                ErrorKind.VERIFICATION,
                f"Could not verify downloaded file {local_path}; {name} was left on the server"
            )
        self._console.print("[green][CHECK][/green] OK")
        return Result.success()

    def delete_remote(self, name: str) -> bool:
        """Delete the remote copy; failure is reported but never fails the run."""
        path = join_posix(self.remote_dir, name)
        self._console.print(f"[magenta][DELETE][/magenta] Deleting {name} on server")
        try:
            self._gateway.delete_file(path)
        except FTPGatewayError as e:
            self._logger.deletion_error(name, str(e))
            self._console.print(f"[red][ERR][/red] {name} was not deleted on server: {e}")
            return False
        return True

    def _discard(self, path: str) -> None:
        try:
            os.unlink(path)
        except OSError as e:
            self._logger.warning(f"Cannot remove partial download {path}: {e}", path=path)
