from datetime import datetime, timezone

import pytest

from cpanel_backup import logger as logger_module
from cpanel_backup import stats as stats_module
from cpanel_backup.config import load_config
from cpanel_backup.ftp_gateway import RemoteFile


@pytest.fixture(autouse=True)
def quiet_globals():
    """Fresh logger and stats tracker per test, no console handler."""
    logger_module.init_logger(level="DEBUG", console_output=False)
    stats_module.reset_stats()
    yield
    logger_module._logger = None
    stats_module._stats_tracker = None


def remote(name, size=0, day=1, hour=0):
    return RemoteFile(name=name, size=size, modified_at=datetime(2024, 1, day, hour, tzinfo=timezone.utc))


class FakeClock:
    """Wall clock that only moves when sleep() is called."""

    def __init__(self, start=1000.0):
        self.now = start
        self.sleeps = []

    def __call__(self):
        return self.now

    def sleep(self, seconds):
        self.sleeps.append(seconds)
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def make_config(tmp_path):
    def _make(**backup):
        values = {
            "output_dir": str(tmp_path / "out"),
            "timeout": 300,
            "poll_interval": 15,
            "min_file_bytes": 100,
        }
        values.update(backup)
        return load_config(overrides={
            "cpanel": {"host": "example.com", "user": "me", "password": "secret"},
            "backup": values,
        })
    return _make
