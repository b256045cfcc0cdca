#!/usr/bin/env python3
"""Exception hierarchy for cpanel_backup."""

from typing import Optional


class BackupToolError(Exception):
    """Base class for all errors raised by cpanel_backup."""


class ConfigError(BackupToolError, ValueError):
    """Configuration could not be loaded or failed validation."""


class TriggerError(BackupToolError):
    """The cPanel full-backup request could not be sent or was rejected."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class FTPGatewayError(BackupToolError):
    """An FTP operation failed after the gateway was asked to perform it."""

    def __init__(self, message: str, reply_code: Optional[int] = None):
        super().__init__(message)
        self.reply_code = reply_code


class FTPConnectionError(FTPGatewayError):
    """Control connection could not be established."""


class FTPAuthenticationError(FTPGatewayError):
    """Credentials were rejected."""


class NotLoggedInError(FTPAuthenticationError):
    """An operation needing an authenticated session was called without one."""


class FTPListingError(FTPGatewayError):
    """Directory listing or single-file metadata query failed."""


class FTPTransferError(FTPGatewayError):
    """Download, or the transfer-mode setup before it, failed."""


class FTPDeletionError(FTPGatewayError):
    """Remote file could not be deleted."""


class PipelineError(BackupToolError):
    """The background drain worker stopped before the producer finished."""
