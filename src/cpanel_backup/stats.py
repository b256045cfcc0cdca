#!/usr/bin/env python3
"""Statistics tracking system for cpanel_backup."""

import time
from dataclasses import dataclass, field
from threading import Lock
from typing import Dict, List, Optional


@dataclass
class TransferStats:
    """Statistics for the backup file transfer."""
    remote_name: str
    start_time: float
    end_time: Optional[float] = None
    bytes_transferred: int = 0
    total_size: int = 0
    error: Optional[str] = None

    @property
    def duration(self) -> float:
        """Get transfer duration in seconds."""
        if self.end_time is None:
            return time.time() - self.start_time
        return self.end_time - self.start_time

    @property
    def average_speed(self) -> float:
        """Get average transfer speed in bytes/second."""
        duration = self.duration
        if duration <= 0:
            return 0
        return self.bytes_transferred / duration

    @property
    def is_successful(self) -> bool:
        return self.end_time is not None and self.error is None


@dataclass
class SessionStats:
    """Statistics for the entire session."""
    start_time: float = field(default_factory=time.time)
    end_time: Optional[float] = None
    listing_polls: int = 0
    metadata_polls: int = 0
    connection_attempts: int = 0
    connection_failures: int = 0
    transfers: List[TransferStats] = field(default_factory=list)

    @property
    def duration(self) -> float:
        """Get session duration in seconds."""
        if self.end_time is None:
            return time.time() - self.start_time
        return self.end_time - self.start_time

    @property
    def bytes_transferred(self) -> int:
        return sum(t.bytes_transferred for t in self.transfers if t.is_successful)

    @property
    def connection_success_rate(self) -> float:
        """Get connection success rate as percentage."""
        if self.connection_attempts == 0:
            return 0
        return ((self.connection_attempts - self.connection_failures) / self.connection_attempts) * 100


class StatsTracker:
    """Thread-safe statistics tracker for cpanel_backup operations."""

    def __init__(self):
        self._lock = Lock()
        self.session = SessionStats()
        self._active: Optional[TransferStats] = None

    def start_session(self):
        """Start a new session."""
        with self._lock:
            self.session = SessionStats()
            self._active = None

    def end_session(self):
        """End the current session."""
        with self._lock:
            self.session.end_time = time.time()

    def record_listing_poll(self):
        with self._lock:
            self.session.listing_polls += 1

    def record_metadata_poll(self):
        with self._lock:
            self.session.metadata_polls += 1

    def record_connection_attempt(self, success: bool = True):
        """Record a connection attempt."""
        with self._lock:
            self.session.connection_attempts += 1
            if not success:
                self.session.connection_failures += 1

    def start_transfer(self, remote_name: str, total_size: int = 0) -> None:
        """Start tracking the backup transfer."""
        with self._lock:
            self._active = TransferStats(
                remote_name=remote_name,
                start_time=time.time(),
                total_size=total_size
            )

    def complete_transfer(self, bytes_transferred: int, error: Optional[str] = None) -> Optional[TransferStats]:
        """Mark the active transfer as complete and return it."""
        with self._lock:
            transfer = self._active
            if transfer is None:
                return None
            transfer.end_time = time.time()
            transfer.bytes_transferred = bytes_transferred
            transfer.error = error
            self.session.transfers.append(transfer)
            self._active = None
            return transfer

    def get_session_summary(self) -> Dict:
        """Get a summary of the session statistics."""
        with self._lock:
            speeds = [t.average_speed for t in self.session.transfers if t.is_successful]
            average = speeds[-1] if speeds else 0
            return {
                "duration": self.session.duration,
                "polls": {
                    "listing": self.session.listing_polls,
                    "metadata": self.session.metadata_polls,
                },
                "bytes": {
                    "transferred": self.session.bytes_transferred,
                },
                "transfer_speed": {
                    "average": round(average, 2),
                    "average_mbps": round(average / (1024 * 1024), 2)
                },
                "connections": {
                    "attempts": self.session.connection_attempts,
                    "failures": self.session.connection_failures,
                    "success_rate": round(self.session.connection_success_rate, 2),
                }
            }

    def format_speed(self, bytes_per_second: float) -> str:
        """Format transfer speed in human-readable format."""
        if bytes_per_second < 1024:
            return f"{bytes_per_second:.1f} B/s"
        elif bytes_per_second < 1024 * 1024:
            return f"{bytes_per_second / 1024:.1f} KB/s"
        elif bytes_per_second < 1024 * 1024 * 1024:
            return f"{bytes_per_second / (1024 * 1024):.1f} MB/s"
        else:
            return f"{bytes_per_second / (1024 * 1024 * 1024):.1f} GB/s"

    def format_size(self, bytes_size: int) -> str:
        """Format file size in human-readable format."""
        if bytes_size < 1024:
            return f"{bytes_size} B"
        elif bytes_size < 1024 * 1024:
            return f"{bytes_size / 1024:.1f} KB"
        elif bytes_size < 1024 * 1024 * 1024:
            return f"{bytes_size / (1024 * 1024):.1f} MB"
        else:
            return f"{bytes_size / (1024 * 1024 * 1024):.1f} GB"


# Global stats tracker
_stats_tracker: Optional[StatsTracker] = None


def get_stats_tracker() -> StatsTracker:
    """Get the global statistics tracker."""
    global _stats_tracker
    if _stats_tracker is None:
        _stats_tracker = StatsTracker()
    return _stats_tracker


def reset_stats():
    """Reset the global statistics tracker."""
    global _stats_tracker
    _stats_tracker = StatsTracker()
