import os
from datetime import datetime, timedelta, timezone

import pytest

from pocketlog.config import Config


class FakeClock:
    """Mutable clock usable as a ``time_func``."""

    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)

    def set(self, value: datetime):
        self.now = value


@pytest.fixture
def clock():
    return FakeClock(datetime(2025, 1, 15, 12, 30, 0, tzinfo=timezone.utc))


@pytest.fixture
def root(tmp_path):
    path = tmp_path / "segments"
    path.mkdir()
    return str(path)


@pytest.fixture
def make_config(tmp_path, root):
    def _make(**overrides):
        defaults = dict(
            s3_bucket="test-bucket",
            s3_prefix="pocketlog",
            log_root=root,
            delete_after_upload=True,
            min_age_sec=120,
            clock="utc",
            store_backend="filesystem",
            store_dir=str(tmp_path / "store"),
            host="127.0.0.1",
            tcp_port=0,
            udp_port=0,
            fsync_interval_sec=0.05,
        )
        defaults.update(overrides)
        return Config(**defaults)

    return _make


def write_file(path, content: bytes = b"", mtime: float | None = None):
    with open(path, "wb") as f:
        f.write(content)
    if mtime is not None:
        os.utime(path, (mtime, mtime))
    return str(path)
