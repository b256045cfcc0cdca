#!/usr/bin/env python3
"""Configuration management for cpanel_backup."""

import json
from typing import Any, Dict, Optional

from .errors import ConfigError


def load_config(path: Optional[str] = None, overrides: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """
    Load configuration from an optional JSON file, apply overrides and defaults.

    Overrides use the same nested layout as the file ({"cpanel": {...}, "ftp": {...}, ...});
    keys whose value is None are ignored so unset command line options never
    shadow values from the file.
    """
    cfg: Dict[str, Any] = {}
    if path:
        try:
            with open(path, "r", encoding="utf-8") as f:
                cfg = json.load(f)
        except (OSError, ValueError) as e:
            raise ConfigError(f"Cannot read configuration file {path}: {e}") from e
        if not isinstance(cfg, dict):
            raise ConfigError(f"Configuration file {path} must contain a JSON object")

    for section, values in (overrides or {}).items():
        target = cfg.setdefault(section, {})
        for key, value in values.items():
            if value is not None:
                target[key] = value

    c = cfg.setdefault("cpanel", {})
    c.setdefault("host", "")
    c.setdefault("user", "")
    c.setdefault("password", "")
    c.setdefault("https", False)
    c.setdefault("skin", "paper_lantern")
    if c.get("port") is None:
        c["port"] = 2083 if c["https"] else 2082
    c.setdefault("notify_email", None)
    c.setdefault("timeout", 30)

    # FTP runs against the same host and account unless told otherwise
    s = cfg.setdefault("ftp", {})
    if not s.get("host"):
        s["host"] = c["host"]
    if not s.get("user"):
        s["user"] = c["user"]
    if not s.get("password"):
        s["password"] = c["password"]
    s.setdefault("port", 21)
    s.setdefault("passive", True)
    s.setdefault("tls", False)
    s.setdefault("tls_verify", True)
    s.setdefault("timeout", 30)
    s.setdefault("blocksize", 262144)
    s.setdefault("queue_chunks", 64)

    b = cfg.setdefault("backup", {})
    b.setdefault("output_dir", ".")
    b.setdefault("remote_dir", "/")
    b.setdefault("timeout", 300)
    b.setdefault("poll_interval", 15)
    b.setdefault("min_file_bytes", 5000)
    b.setdefault("verify", True)
    b.setdefault("delete", True)

    cfg.setdefault("secrets", {"use_dotenv": False, "dotenv_path": None, "keyring_service": "cpanel_backup"})

    _validate_config(cfg)
    return cfg


def _validate_config(cfg: Dict[str, Any]) -> None:
    """Validate configuration values and raise meaningful errors."""
    errors = []

    c = cfg["cpanel"]
    if not c.get("host") or not isinstance(c["host"], str):
        errors.append("cpanel.host is required and must be a string")
    elif "://" in c["host"] or "/" in c["host"]:
        errors.append("cpanel.host must be a bare host name, without scheme or path")
    if not c.get("user"):
        errors.append("cpanel.user is required")
    if not isinstance(c.get("skin"), str) or not c["skin"].strip():
        errors.append("cpanel.skin must be a non-empty string")

    s = cfg["ftp"]
    for field in ("host", "user"):
        if not s.get(field):
            errors.append(f"ftp.{field} is required")

    # Validate ports
    for section, port in (("cpanel", c.get("port")), ("ftp", s.get("port"))):
        if not isinstance(port, int) or isinstance(port, bool) or port < 1 or port > 65535:
            errors.append(f"{section}.port must be an integer between 1 and 65535")

    # Validate numeric settings
    numeric_fields = {
        ("ftp", "timeout"): (1, 300),
        ("ftp", "blocksize"): (1024, 10 * 1024 * 1024),
        ("ftp", "queue_chunks"): (1, 4096),
        ("cpanel", "timeout"): (1, 300),
        ("backup", "timeout"): (1, 24 * 3600),
        ("backup", "poll_interval"): (0, 3600),
        ("backup", "min_file_bytes"): (0, 1024 * 1024 * 1024),
    }

    for (section, field), (min_val, max_val) in numeric_fields.items():
        val = cfg[section].get(field)
        if not isinstance(val, (int, float)) or isinstance(val, bool) or val < min_val or val > max_val:
            errors.append(f"{section}.{field} must be a number between {min_val} and {max_val}")

    b = cfg["backup"]
    for field in ("output_dir", "remote_dir"):
        if not isinstance(b.get(field), str) or not b[field].strip():
            errors.append(f"backup.{field} must be a non-empty string")

    if errors:
        raise ConfigError("Configuration validation failed:\n" + "\n".join(f"  - {error}" for error in errors))
