"""Compress every finished hour segment in place.

A segment is finished when its id differs from the current hour's id. Ids
compare lexically, so a segment newer than "now" means the clock moved
backwards; such segments are left alone and reported. The receiver's advisory
lock is honoured as a second guard.
"""

import fcntl
import gzip
import logging
import os
import shutil
import tempfile
import time
from dataclasses import dataclass, field

from pocketlog.segments import (
    CLOCK_LOCAL,
    TMP_SUFFIX,
    Segment,
    SegmentState,
    clock_func,
    compressed_path,
    scan_segments,
    segment_filename,
    segment_id,
)

logger = logging.getLogger(__name__)

FILE_MODE = 0o644
STALE_TMP_SEC = 3600
COPY_CHUNK = 1024 * 1024


@dataclass
class RotationResult:
    compressed: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)
    removed_empty: list[str] = field(default_factory=list)


def compress_file(src, dest_path: str, name: str, mtime: float, prefix_path: str | None = None):
    """Gzip *src* (an open binary file) into *dest_path* atomically.

    When *prefix_path* names an existing gzip file, its decompressed content is
    written first, so late records are appended to what was already finalized.
    """
    directory = os.path.dirname(dest_path)
    fd, tmp = tempfile.mkstemp(dir=directory, prefix=f".{name}.", suffix=TMP_SUFFIX)
    try:
        with os.fdopen(fd, "wb") as raw:
            with gzip.GzipFile(filename=name, mode="wb", fileobj=raw, mtime=int(mtime)) as gz:
                if prefix_path is not None:
                    with gzip.open(prefix_path, "rb") as prev:
                        shutil.copyfileobj(prev, gz, COPY_CHUNK)
                shutil.copyfileobj(src, gz, COPY_CHUNK)
            raw.flush()
            os.fsync(raw.fileno())
        os.chmod(tmp, FILE_MODE)
        os.replace(tmp, dest_path)
    except BaseException:
        if os.path.exists(tmp):
            os.unlink(tmp)
        raise


def _same_content(plain, gz_path: str) -> bool:
    """Compare an open plain file with a gzip file's decompressed content."""
    plain.seek(0)
    with gzip.open(gz_path, "rb") as gz:
        while True:
            a = plain.read(COPY_CHUNK)
            b = gz.read(COPY_CHUNK)
            if a != b:
                return False
            if not a:
                return True


class Rotator:
    def __init__(self, root: str, time_func=None, wall_func=None):
        self._root = root
        self._time_func = time_func or clock_func(CLOCK_LOCAL)
        self._wall_func = wall_func or time.time

    def run_once(self) -> RotationResult:
        """Finalize every closed segment. Safe to run as often as desired."""
        result = RotationResult()
        current_id = segment_id(self._time_func())
        self._remove_stale_tmp()

        for seg in scan_segments(self._root, current_id):
            if seg.state is not SegmentState.CLOSED:
                continue
            if seg.segment_id > current_id:
                logger.error(
                    "Segment %s is newer than the current hour %s; clock moved backwards? "
                    "Leaving it untouched",
                    seg.segment_id, current_id,
                )
                result.skipped.append(seg.segment_id)
                continue
            try:
                outcome = self._finalize(seg)
            except (OSError, EOFError, gzip.BadGzipFile):
                logger.exception("Failed to compress segment %s, will retry", seg.segment_id)
                result.failed.append(seg.segment_id)
                continue
            getattr(result, outcome).append(seg.segment_id)

        logger.info(
            "Rotation done: %d compressed, %d empty removed, %d skipped, %d failed",
            len(result.compressed), len(result.removed_empty),
            len(result.skipped), len(result.failed),
        )
        return result

    def _finalize(self, seg: Segment) -> str:
        try:
            f = open(seg.path, "rb")
        except FileNotFoundError:
            # Finalized by a concurrent rotator run.
            return "skipped"
        with f:
            try:
                fcntl.flock(f.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
            except BlockingIOError:
                logger.warning("Segment %s is still held by the receiver, skipping", seg.segment_id)
                return "skipped"
            try:
                if os.fstat(f.fileno()).st_ino != os.stat(seg.path).st_ino:
                    return "skipped"
            except FileNotFoundError:
                return "skipped"

            size = os.fstat(f.fileno()).st_size
            gz_path = compressed_path(self._root, seg.segment_id)
            has_gz = os.path.exists(gz_path)

            if size == 0:
                os.unlink(seg.path)
                logger.info("Removed empty segment %s", seg.segment_id)
                return "removed_empty"

            if has_gz and _same_content(f, gz_path):
                # A previous run renamed the archive into place but died before
                # removing the plain file.
                os.unlink(seg.path)
                logger.info("Segment %s was already compressed, removed leftover", seg.segment_id)
                return "compressed"

            f.seek(0)
            if has_gz:
                logger.warning(
                    "Segment %s received records after it was compressed; merging", seg.segment_id
                )
            compress_file(
                f, gz_path, segment_filename(seg.segment_id), seg.mtime,
                prefix_path=gz_path if has_gz else None,
            )
            os.unlink(seg.path)
            logger.info("Compressed segment %s (%d bytes)", seg.segment_id, size)
            return "compressed"

    def _remove_stale_tmp(self):
        try:
            names = os.listdir(self._root)
        except FileNotFoundError:
            return
        cutoff = self._wall_func() - STALE_TMP_SEC
        for name in names:
            if not (name.startswith(".") and name.endswith(TMP_SUFFIX)):
                continue
            path = os.path.join(self._root, name)
            try:
                if os.stat(path).st_mtime < cutoff:
                    os.unlink(path)
                    logger.info("Removed stale working file %s", name)
            except FileNotFoundError:
                continue
