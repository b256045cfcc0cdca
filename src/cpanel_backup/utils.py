#!/usr/bin/env python3
"""Utility functions for cpanel_backup."""

import os
import posixpath

from rich.console import Console


# Flags
VERBOSE = False


def set_flags(verbose: bool = False) -> None:
    """Set global flags."""
    global VERBOSE
    VERBOSE = verbose


def vprint(console: Console, msg: str) -> None:
    """Print verbose message if verbose mode is enabled."""
    if VERBOSE:
        console.log(msg)


def ensure_dir(path: str) -> None:
    """Create directory if it doesn't exist."""
    if not path:
        return
    try:
        os.makedirs(path, exist_ok=True)
    except OSError as e:
        from .logger import get_logger
        get_logger().error(f"Error creating directory: {path} - {e}", path=path, error=str(e))
        raise


def posix_norm(p: str) -> str:
    """Normalize to POSIX path (collapse //, ensure forward slashes)."""
    return posixpath.normpath((p or "").replace("\\", "/"))


def join_posix(a: str, b: str) -> str:
    """Join POSIX safely and normalize (no double slashes)."""
    return posix_norm(posixpath.join(a or "", b or ""))


def mask_secret(value: str) -> str:
    """Show only the first character of a secret for log output."""
    if not value:
        return ""
    return value[:1] + "***"
