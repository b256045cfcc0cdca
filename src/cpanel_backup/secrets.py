#!/usr/bin/env python3
"""Secrets management for cpanel_backup."""

import os
from typing import Any, Dict, Optional

import keyring
from dotenv import load_dotenv
from keyring.errors import KeyringError
from rich.console import Console

from .utils import vprint


def maybe_load_dotenv(cfg: Dict[str, Any], console: Console) -> None:
    """Load environment variables from .env file if configured."""
    secrets = cfg.setdefault("secrets", {})
    if not bool(secrets.get("use_dotenv", False)):
        return
    path = secrets.get("dotenv_path")
    if path:
        loaded = load_dotenv(dotenv_path=path, override=False)
    else:
        loaded = load_dotenv(override=False)
    vprint(console, "[secrets] .env loaded" if loaded else "[secrets] no .env file found")


def _expand_env(s: Optional[str]) -> Optional[str]:
    """Expand environment variables in string."""
    if not isinstance(s, str):
        return s
    return os.path.expandvars(s)


def resolve_secret(val: Optional[str], cfg: Dict[str, Any], *, username: Optional[str] = None,
                   console: Optional[Console] = None) -> Optional[str]:
    """Resolve secret from various sources (env, dotenv, keyring)."""
    if val is None or not isinstance(val, str):
        return val
    val = _expand_env(val)
    if val.startswith("env:") or val.startswith("dotenv:"):
        key = val.split(":", 1)[1]
        out = os.getenv(key)
        if out is None and console:
            vprint(console, f"[secrets] env var '{key}' not set")
        return out
    if val.startswith("keyring:"):
        token = val.split(":", 1)[1]
        if "/" in token:
            service, item = token.split("/", 1)
        else:
            service = cfg.get("secrets", {}).get("keyring_service", "cpanel_backup")
            item = token
        if not item:
            item = username
        try:
            return keyring.get_password(service, item)
        except KeyringError as e:
            if console:
                vprint(console, f"[secrets] keyring lookup failed ({service}/{item}): {e!r}")
            return None
    return val


def resolve_credentials(cfg: Dict[str, Any], console: Optional[Console] = None) -> None:
    """Resolve cPanel and FTP credentials in place."""
    for section in ("cpanel", "ftp"):
        s = cfg[section]
        s["user"] = resolve_secret(s.get("user"), cfg, console=console) or s.get("user")
        s["password"] = resolve_secret(s.get("password"), cfg, username=s.get("user"), console=console) or ""
