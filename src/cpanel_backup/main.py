#!/usr/bin/env python3
"""Main entry point for cpanel_backup."""

import argparse
import atexit
import fcntl
import os
import signal
import sys
import tempfile
from typing import Any, Dict, List, Optional

from rich.console import Console
from rich.progress import BarColumn, Progress, TextColumn, TimeRemainingColumn

from .config import load_config
from .errors import ConfigError
from .logger import get_logger, init_logger, log_config_loaded, log_session_end, log_session_start
from .orchestrator import BackupOrchestrator, ErrorKind
from .secrets import maybe_load_dotenv, resolve_credentials
from .stats import get_stats_tracker
from .utils import set_flags

EXIT_OK = 0
EXIT_ERROR = 1
EXIT_LOCKED = 9

EXIT_CODES = {
    ErrorKind.CONNECTION: 2,
    ErrorKind.AUTHENTICATION: 2,
    ErrorKind.LISTING: 3,
    ErrorKind.TRIGGER: 4,
    ErrorKind.DETECTION_TIMEOUT: 5,
    ErrorKind.STABILITY_TIMEOUT: 6,
    ErrorKind.TRANSFER: 7,
    ErrorKind.VERIFICATION: 8,
    ErrorKind.DELETION: 7,
}

# Global variables for lock management
_lock_fd = None
_lockfile = None


def cleanup_lock():
    """Clean up the lock file and file descriptor."""
    global _lock_fd, _lockfile
    if _lock_fd is not None:
        fcntl.flock(_lock_fd, fcntl.LOCK_UN)
        os.close(_lock_fd)
        _lock_fd = None
    if _lockfile is not None:
        try:
            os.unlink(_lockfile)
        except FileNotFoundError:
            pass
        _lockfile = None


def signal_handler(signum, frame):
    """Handle SIGINT (Ctrl+C) and SIGTERM."""
    print("\nReceived interrupt signal. Cleaning up...", file=sys.stderr)
    cleanup_lock()
    sys.exit(130)


def acquire_lock(lockfile: str) -> bool:
    """Acquire an exclusive lock to prevent two runs against the same host."""
    global _lock_fd, _lockfile
    fd = os.open(lockfile, os.O_CREAT | os.O_RDWR)
    try:
        fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
    except OSError:
        os.close(fd)
        return False

    _lock_fd = fd
    _lockfile = lockfile
    os.ftruncate(fd, 0)
    os.write(fd, str(os.getpid()).encode())
    os.fsync(fd)

    # Register cleanup function for normal exit
    atexit.register(cleanup_lock)
    return True


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="cpanel-backup",
        description="Triggers a full backup on a remote cPanel server, then downloads it over FTP",
    )
    parser.add_argument("host", nargs="?", help="cPanel and FTP host to connect to")
    parser.add_argument("outdir", nargs="?", help="Directory to store the backup in (default: current directory)")
    parser.add_argument("--user", help="Username for cPanel and FTP login")
    parser.add_argument("--password", help="Password for cPanel and FTP login (env:NAME and keyring:... allowed)")
    parser.add_argument("--https", action="store_true", default=None, help="Connect to cPanel using HTTPS")
    parser.add_argument("--backup-timeout", type=int, help="Seconds to wait for the backup to complete on the server (default: 300)")
    parser.add_argument("--poll-interval", type=int, help="Seconds between checks whether the backup is complete (default: 15)")
    parser.add_argument("--cpanel-skin", help='cPanel skin of your instance (default: "paper_lantern")')
    parser.add_argument("--cpanel-port", type=int, help="cPanel port (default: 2082 for HTTP / 2083 for HTTPS)")
    parser.add_argument("--ftp-port", type=int, help="FTP control port (default: 21)")
    parser.add_argument("--ftp-tls", action="store_true", default=None, help="Use explicit FTPS")
    parser.add_argument("--remote-dir", help="Remote directory cPanel writes backups to (default: /)")
    parser.add_argument("--min-file-bytes", type=int, help="Smallest size accepted as a finished backup (default: 5000)")
    parser.add_argument("--no-verify", action="store_true", help="Skip verification of the downloaded backup")
    parser.add_argument("--no-delete", action="store_true", help="Keep the backup on the remote server")
    parser.add_argument("--config", help="Path to JSON config")
    parser.add_argument("--verbose", action="store_true", help="Verbose logging")
    parser.add_argument("--json-logs", action="store_true", help="Output structured JSON logs")
    parser.add_argument("--log-level", default="INFO", choices=["DEBUG", "INFO", "WARNING", "ERROR"],
                        help="Set logging level")
    return parser


def overrides_from_args(args: argparse.Namespace) -> Dict[str, Dict[str, Any]]:
    """Translate parsed arguments into config overrides (None means "not given")."""
    return {
        "cpanel": {
            "host": args.host,
            "user": args.user,
            "password": args.password,
            "https": args.https,
            "skin": args.cpanel_skin,
            "port": args.cpanel_port,
        },
        "ftp": {
            "port": args.ftp_port,
            "tls": args.ftp_tls,
        },
        "backup": {
            "output_dir": args.outdir,
            "remote_dir": args.remote_dir,
            "timeout": args.backup_timeout,
            "poll_interval": args.poll_interval,
            "min_file_bytes": args.min_file_bytes,
            "verify": False if args.no_verify else None,
            "delete": False if args.no_delete else None,
        },
    }


def print_summary(console: Console, report) -> None:
    stats = get_stats_tracker()
    summary = stats.get_session_summary()
    console.print("\n[bold green]Session Summary[/bold green]")
    console.print(f"Duration: {summary['duration']:.1f}s")
    console.print(f"Polls: {summary['polls']['listing']} listings, {summary['polls']['metadata']} size checks")
    if report is not None:
        console.print(f"Backup: {report.local_path}")
        console.print(f"Data transferred: {stats.format_size(report.bytes_downloaded)}")
        console.print(f"Average speed: {stats.format_speed(summary['transfer_speed']['average'])}")
        if report.deleted is False:
            console.print(f"[yellow]Remote copy {report.remote_name} is still on the server[/yellow]")


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point. Returns the process exit code."""
    parser = build_parser()
    args = parser.parse_args(argv)

    logger = init_logger(
        level=args.log_level,
        json_output=args.json_logs,
        console_output=not args.json_logs  # Use console output unless JSON requested
    )
    set_flags(verbose=bool(args.verbose))
    console = Console()

    try:
        cfg = load_config(args.config, overrides_from_args(args))
    except ConfigError as e:
        console.print(f"[red]ERROR:[/red] {e}")
        parser.print_usage(sys.stderr)
        return EXIT_ERROR
    host = cfg["cpanel"]["host"]
    log_config_loaded(args.config, host)

    # One run per host at a time
    lockfile = os.path.join(tempfile.gettempdir(), f"cpanel_backup-{host}.lock")
    if not acquire_lock(lockfile):
        console.print(f"[red]ERROR:[/red] Another backup of {host} is already running.")
        return EXIT_LOCKED

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    stats = get_stats_tracker()
    stats.start_session()
    log_session_start(host)

    maybe_load_dotenv(cfg, console)
    resolve_credentials(cfg, console)

    result = None
    try:
        with Progress(
            TextColumn("[bold blue]{task.description}"),
            BarColumn(),
            TextColumn("{task.percentage:>3.0f}%"),
            TimeRemainingColumn(elapsed_when_finished=True),
            console=console,
            transient=False,
        ) as progress:
            orchestrator = BackupOrchestrator(cfg, console=console, progress=progress)
            result = orchestrator.run()
    finally:
        stats.end_session()
        log_session_end(
            success=result is not None and result.ok,
            error_kind=result.error.kind.value if result is not None and not result.ok else None
        )
        get_logger().info("Session statistics", **stats.get_session_summary())
        cleanup_lock()

    if not result.ok:
        console.print(f"[red]ERROR:[/red] {result.error.message}")
        return EXIT_CODES.get(result.error.kind, EXIT_ERROR)

    if not args.json_logs:
        print_summary(console, result.value)
    logger.debug("Run finished", local_path=result.value.local_path)
    return EXIT_OK


if __name__ == "__main__":
    sys.exit(main())
