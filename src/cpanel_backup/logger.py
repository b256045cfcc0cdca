#!/usr/bin/env python3
"""Structured logging system for cpanel_backup."""

import json
import logging
import sys
import time
from contextlib import contextmanager
from datetime import datetime
from typing import Optional

from rich.console import Console
from rich.logging import RichHandler


class StructuredLogger:
    """Structured logger with JSON and console output capabilities."""

    def __init__(self, name: str = "cpanel_backup", level: str = "INFO",
                 json_output: bool = False, console_output: bool = True):
        self.logger = logging.getLogger(name)
        self.logger.setLevel(getattr(logging, level.upper()))
        self.logger.handlers.clear()

        self.json_output = json_output
        self.console_output = console_output
        self.console = Console(stderr=True)

        # JSON formatter for structured logs
        if json_output:
            json_handler = logging.StreamHandler(sys.stdout)
            json_handler.setFormatter(JSONFormatter())
            self.logger.addHandler(json_handler)

        # Rich console handler for human-readable output
        if console_output:
            rich_handler = RichHandler(console=self.console, show_time=True, show_path=False)
            rich_handler.setFormatter(logging.Formatter("%(message)s"))
            self.logger.addHandler(rich_handler)

    def debug(self, message: str, **kwargs):
        """Log debug message with optional structured data."""
        self._log(logging.DEBUG, message, **kwargs)

    def info(self, message: str, **kwargs):
        """Log info message with optional structured data."""
        self._log(logging.INFO, message, **kwargs)

    def warning(self, message: str, **kwargs):
        """Log warning message with optional structured data."""
        self._log(logging.WARNING, message, **kwargs)

    def error(self, message: str, **kwargs):
        """Log error message with optional structured data."""
        self._log(logging.ERROR, message, **kwargs)

    def _log(self, level: int, message: str, **kwargs):
        """Internal logging method that handles structured data."""
        if kwargs:
            extra = {"structured_data": kwargs}
        else:
            extra = {}
        self.logger.log(level, message, extra=extra)

    def backup_triggered(self, host: str, skin: str, https: bool):
        """Log that the full backup job was requested."""
        self.info(
            f"Full backup requested on {host}",
            event="backup_triggered",
            host=host,
            skin=skin,
            https=https
        )

    def backup_detected(self, remote_name: str, previous_name: Optional[str], polls: int):
        """Log detection of the backup file we started."""
        self.info(
            f"New backup detected: {remote_name}",
            event="backup_detected",
            remote_name=remote_name,
            previous_name=previous_name,
            polls=polls
        )

    def size_stable(self, remote_name: str, size: int, polls: int):
        """Log that the remote backup stopped growing."""
        self.info(
            f"Backup size stable: {remote_name} ({size} bytes)",
            event="size_stable",
            remote_name=remote_name,
            size=size,
            polls=polls
        )

    def transfer_start(self, remote_name: str, local_path: str, total_size: int):
        """Log start of transfer with structured data."""
        self.info(
            f"Starting transfer: {remote_name}",
            event="transfer_start",
            remote_name=remote_name,
            local_path=local_path,
            total_size=total_size
        )

    def transfer_progress(self, remote_name: str, bytes_transferred: int, total_size: int):
        """Log transfer progress with structured data."""
        self.debug(
            f"Transfer progress: {remote_name}",
            event="transfer_progress",
            remote_name=remote_name,
            bytes_transferred=bytes_transferred,
            total_size=total_size,
            progress_percent=round((bytes_transferred / total_size) * 100, 2) if total_size > 0 else 0
        )

    def transfer_complete(self, remote_name: str, bytes_transferred: int, duration: float):
        """Log transfer completion with structured data."""
        self.info(
            f"Transfer complete: {remote_name}",
            event="transfer_complete",
            remote_name=remote_name,
            bytes_transferred=bytes_transferred,
            duration=duration,
            average_speed=bytes_transferred / duration if duration > 0 else 0
        )

    def transfer_error(self, remote_name: str, error: str):
        """Log transfer error with structured data."""
        self.error(
            f"Transfer failed: {remote_name} - {error}",
            event="transfer_error",
            remote_name=remote_name,
            error=error
        )

    def deletion_error(self, remote_name: str, error: str):
        """Log a failed remote cleanup; the local backup is kept."""
        self.error(
            f"Remote backup not deleted: {remote_name} - {error}",
            event="deletion_error",
            remote_name=remote_name,
            error=error
        )

    @contextmanager
    def operation_timer(self, operation: str, **context):
        """Context manager for timing operations."""
        start_time = time.time()
        self.debug(f"Starting operation: {operation}", event="operation_start",
                   operation=operation, **context)
        try:
            yield
            duration = time.time() - start_time
            self.debug(f"Completed operation: {operation}", event="operation_complete",
                       operation=operation, duration=duration, **context)
        except Exception as e:
            duration = time.time() - start_time
            self.error(f"Failed operation: {operation} - {e}", event="operation_error",
                       operation=operation, duration=duration, error=str(e), **context)
            raise


class JSONFormatter(logging.Formatter):
    """JSON formatter for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON."""
        log_entry = {
            "timestamp": datetime.fromtimestamp(record.created).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage()
        }

        # Add structured data if present
        if hasattr(record, "structured_data"):
            log_entry.update(record.structured_data)

        # Add exception info if present
        if record.exc_info:
            log_entry["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_entry, ensure_ascii=False, default=str)


# Global logger instance
_logger: Optional[StructuredLogger] = None


def get_logger() -> StructuredLogger:
    """Get the global logger instance."""
    global _logger
    if _logger is None:
        _logger = StructuredLogger()
    return _logger


def init_logger(level: str = "INFO", json_output: bool = False,
                console_output: bool = True) -> StructuredLogger:
    """Initialize the global logger with specified settings."""
    global _logger
    _logger = StructuredLogger(level=level, json_output=json_output,
                               console_output=console_output)
    return _logger


def log_config_loaded(config_path: Optional[str], host: str):
    """Log configuration loading."""
    logger = get_logger()
    logger.info(
        f"Configuration loaded: {config_path or 'command line'}",
        event="config_loaded",
        config_path=config_path,
        host=host
    )


def log_session_start(host: str):
    """Log session start."""
    logger = get_logger()
    logger.info(
        f"cPanel backup session started for {host}",
        event="session_start",
        host=host,
        timestamp=datetime.now().isoformat()
    )


def log_session_end(success: bool, error_kind: Optional[str] = None):
    """Log session end with summary."""
    logger = get_logger()
    logger.info(
        f"cPanel backup session ended - {'success' if success else 'failed'}",
        event="session_end",
        success=success,
        error_kind=error_kind,
        timestamp=datetime.now().isoformat()
    )
