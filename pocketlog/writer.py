"""Append-only segment writer with one open hour segment at a time."""

import fcntl
import logging
import os
import threading

from pocketlog.record import LogRecord, format_record
from pocketlog.segments import (
    CLOCK_LOCAL,
    clock_func,
    compressed_path,
    segment_id,
    segment_path,
)

logger = logging.getLogger(__name__)

DIR_MODE = 0o755
FILE_MODE = 0o644


class SegmentWriter:
    """Appends formatted records to the segment for the current hour.

    The segment file is created lazily on the first record of the hour and held
    open with a shared advisory lock until the hour changes. The rotator takes
    a non-blocking exclusive lock before compressing, so it skips any segment
    this writer still holds.

    The writer never moves backwards: a record stamped just before an hour
    boundary that reaches the lock after the switch lands in the newer segment,
    and a backward clock jump keeps appending to the newest segment.
    """

    def __init__(self, root: str, time_func=None):
        self._root = root
        self._time_func = time_func or clock_func(CLOCK_LOCAL)
        self._lock = threading.Lock()
        self._file = None
        self._segment_id = None
        self._latest_id = None
        self._dirty = False
        self._records_written = 0

    @property
    def segment_id(self) -> str | None:
        with self._lock:
            return self._segment_id

    @property
    def records_written(self) -> int:
        with self._lock:
            return self._records_written

    def write(self, record: LogRecord) -> str:
        """Append one record. Returns the id of the segment it was written to."""
        line = format_record(record).encode("utf-8")
        seg_id = segment_id(record.received_at)

        with self._lock:
            if self._latest_id is not None and seg_id < self._latest_id:
                logger.warning(
                    "Record stamped for %s arrived after %s was opened; appending to %s",
                    seg_id, self._latest_id, self._latest_id,
                )
                seg_id = self._latest_id
            if seg_id != self._segment_id:
                self._switch_locked(seg_id)
            self._file.write(line)
            self._file.flush()
            self._dirty = True
            self._records_written += 1
        return seg_id

    def sync(self):
        """fsync the open segment if anything was written since the last sync."""
        with self._lock:
            if self._file is not None and self._dirty:
                os.fsync(self._file.fileno())
                self._dirty = False

    def roll(self) -> bool:
        """Close the open segment once its hour has elapsed. Returns True if closed."""
        current = segment_id(self._time_func())
        with self._lock:
            if self._segment_id is None or current <= self._segment_id:
                return False
            logger.info("Hour %s elapsed, closing segment", self._segment_id)
            self._close_locked()
            return True

    def close(self):
        with self._lock:
            self._close_locked()

    def _switch_locked(self, seg_id: str):
        self._close_locked()
        os.makedirs(self._root, mode=DIR_MODE, exist_ok=True)
        if os.path.exists(compressed_path(self._root, seg_id)):
            logger.error(
                "Segment %s was already compressed; clock skew or a backward jump? "
                "Late records will be merged by the rotator",
                seg_id,
            )
        self._file = self._open_locked(segment_path(self._root, seg_id))
        self._segment_id = seg_id
        self._latest_id = seg_id
        logger.info("Opened segment %s", seg_id)

    @staticmethod
    def _open_locked(path: str):
        while True:
            fd = os.open(path, os.O_WRONLY | os.O_APPEND | os.O_CREAT, FILE_MODE)
            try:
                fcntl.flock(fd, fcntl.LOCK_SH)
                # The rotator may have compressed and unlinked the file while we
                # waited for the lock; appending to that inode would lose data.
                if os.fstat(fd).st_ino != os.stat(path).st_ino:
                    raise FileNotFoundError(path)
            except FileNotFoundError:
                os.close(fd)
                continue
            except BaseException:
                os.close(fd)
                raise
            if os.fstat(fd).st_uid == os.geteuid():
                os.fchmod(fd, FILE_MODE)
            return os.fdopen(fd, "ab")

    def _close_locked(self):
        if self._file is None:
            return
        try:
            self._file.flush()
            os.fsync(self._file.fileno())
        finally:
            self._file.close()
            self._file = None
            self._segment_id = None
            self._dirty = False
