#!/usr/bin/env python3
"""Integrity check for downloaded backup archives."""

import tarfile
import zlib

from .logger import get_logger

VERIFY_BUFFER_SIZE_BYTES = 100000


def verify_backup(path: str, buffer_size: int = VERIFY_BUFFER_SIZE_BYTES) -> bool:
    """
    Read a .tar.gz end to end, decompressing every member.

    Returns False if the gzip stream or the tar structure is damaged or
    truncated; never raises for archive errors.
    """
    logger = get_logger()
    members = 0
    try:
        with tarfile.open(path, mode="r:gz", bufsize=buffer_size) as archive:
            for member in archive:
                members += 1
                if not member.isfile():
                    continue
                stream = archive.extractfile(member)
                if stream is None:
                    continue
                with stream:
                    while stream.read(buffer_size):
                        pass
    except (tarfile.TarError, zlib.error, EOFError, OSError) as e:
        logger.error(f"Verification of {path} failed after {members} entries: {e}", path=path, error=str(e))
        return False
    logger.debug(f"Verified {path}: {members} entries", path=path, members=members)
    return True
