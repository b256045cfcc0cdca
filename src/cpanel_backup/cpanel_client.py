#!/usr/bin/env python3
"""cPanel HTTP client functionality for cpanel_backup."""

from typing import Any, Dict, Optional

import requests
from requests.auth import HTTPBasicAuth

from .errors import TriggerError
from .logger import get_logger

FULL_BACKUP_PATH = "/frontend/{skin}/backup/dofullbackup.html"


def backup_url(c: Dict[str, Any]) -> str:
    """Build the full-backup form URL from the "cpanel" config section."""
    scheme = "https" if c.get("https") else "http"
    return f"{scheme}://{c['host']}:{c['port']}" + FULL_BACKUP_PATH.format(skin=c["skin"])


def backup_form(c: Dict[str, Any]) -> Dict[str, Any]:
    """Form fields for a full backup written to the account's home directory."""
    data = {
        "dest": "homedir",
        "email_radio": 0,
        # Only used when dest is a remote FTP server
        "server": "",
        "port": "",
        "rdir": "",
        "user": c["user"],
        "pass": c.get("password") or "",
    }
    if c.get("notify_email"):
        data["email_radio"] = 1
        data["email"] = c["notify_email"]
    return data


def trigger_full_backup(c: Dict[str, Any], session: Optional[requests.Session] = None) -> None:
    """
    Ask cPanel to start a full backup. One attempt only.

    Raises TriggerError on any transport failure or non-2xx status; the
    response body is not interpreted.
    """
    logger = get_logger()
    url = backup_url(c)
    http = session or requests.Session()
    logger.debug(f"POST {url}", url=url)
    try:
        resp = http.post(
            url,
            data=backup_form(c),
            auth=HTTPBasicAuth(c["user"], c.get("password") or ""),
            timeout=c.get("timeout", 30),
        )
        resp.raise_for_status()
    except requests.HTTPError as e:
        status = e.response.status_code if e.response is not None else None
        logger.error(f"Starting cPanel backup failed with HTTP status {status}", url=url, status=status)
        raise TriggerError(f"cPanel rejected the backup request (HTTP {status})", status) from e
    except requests.RequestException as e:
        logger.error(f"Starting cPanel backup failed because of {e}", url=url, error=str(e))
        raise TriggerError(f"cannot reach cPanel at {url}: {e}") from e
    finally:
        if session is None:
            http.close()
    logger.debug(f"cPanel answered HTTP {resp.status_code}", status=resp.status_code)
