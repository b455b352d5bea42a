"""Ship compressed segments to object storage and purge them.

Keys are a pure function of the segment id and puts are atomic, so a run
interrupted mid-upload leaves either no object or the complete one, and the
next run repairs it: delivery is at-least-once. An existing object of a
different size is never overwritten; the segment is reported as failed and
kept locally. A local artifact is deleted only after the store reports an
object of the same size at its key.
"""

import logging
import os
import time
from dataclasses import dataclass, field
from datetime import timedelta

from pocketlog.config import Config
from pocketlog.ledger import UploadLedger
from pocketlog.segments import (
    Segment,
    SegmentState,
    clock_func,
    object_key,
    parse_segment_id,
    scan_segments,
    segment_id,
)
from pocketlog.store import ObjectStore, StoreError

logger = logging.getLogger(__name__)


@dataclass
class UploadResult:
    attempted: list[str] = field(default_factory=list)
    uploaded: list[str] = field(default_factory=list)
    already_shipped: list[str] = field(default_factory=list)
    too_young: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)
    deleted: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failed


class Uploader:
    def __init__(self, config: Config, store: ObjectStore, time_func=None, wall_func=None):
        self._config = config
        self._store = store
        self._time_func = time_func or clock_func(config.clock)
        self._wall_func = wall_func or time.time

    def eligible(self, segments: list[Segment]) -> tuple[list[Segment], list[Segment]]:
        """Split compressed segments into (old enough to ship, too young)."""
        now = self._wall_func()
        ready, young = [], []
        for seg in segments:
            if seg.state is not SegmentState.COMPRESSED:
                continue
            if now - seg.mtime >= self._config.min_age_sec:
                ready.append(seg)
            else:
                young.append(seg)
        return ready, young

    def run_once(self) -> UploadResult:
        result = UploadResult()
        current_id = segment_id(self._time_func())
        segments = scan_segments(self._config.log_root, current_id)
        ready, young = self.eligible(segments)
        result.too_young.extend(s.segment_id for s in young)

        ledger = UploadLedger.load(self._store, self._config.s3_prefix) if ready else UploadLedger()

        for seg in ready:
            try:
                self._ship(seg, ledger, result)
            except (StoreError, OSError) as exc:
                logger.error("Upload of segment %s failed, will retry: %s", seg.segment_id, exc)
                result.failed.append(seg.segment_id)

        self._enforce_retention(ledger, result)

        logger.info(
            "Upload run: attempted=%d uploaded=%d already_shipped=%d too_young=%d failed=%d deleted=%d",
            len(result.attempted), len(result.uploaded), len(result.already_shipped),
            len(result.too_young), len(result.failed), len(result.deleted),
        )
        return result

    def _ship(self, seg: Segment, ledger: UploadLedger, result: UploadResult):
        key = object_key(self._config.s3_prefix, seg.segment_id)
        try:
            st = os.stat(seg.path)
        except FileNotFoundError:
            # Purged by a concurrent run.
            return

        remote = ledger.get(key) if ledger.complete else self._store.head(key)
        if remote is not None and remote != st.st_size:
            # Puts are atomic, so a size mismatch means different content.
            logger.error(
                "Segment %s: %s already holds %d bytes but the local artifact has %d; "
                "refusing to overwrite shipped records, keeping %s for a manual merge",
                seg.segment_id, self._store.describe(key), remote, st.st_size, seg.path,
            )
            result.failed.append(seg.segment_id)
            return

        if self._config.skip_shipped and remote == st.st_size:
            self._confirm(key, st.st_size)
            result.already_shipped.append(seg.segment_id)
            logger.debug("Segment %s already at %s", seg.segment_id, self._store.describe(key))
        else:
            result.attempted.append(seg.segment_id)
            self._store.put(key, seg.path)
            self._confirm(key, st.st_size)
            ledger.record(key, st.st_size)
            result.uploaded.append(seg.segment_id)
            logger.info(
                "Segment %s -> %s (%s, %d bytes)",
                seg.segment_id, self._store.describe(key), SegmentState.SHIPPED.value, st.st_size,
            )

        if self._config.delete_after_upload:
            if self._purge(seg, st):
                result.deleted.append(seg.segment_id)

    def _confirm(self, key: str, size: int):
        remote = self._store.head(key)
        if remote != size:
            raise StoreError(
                f"{self._store.describe(key)} not confirmed: expected {size} bytes, store has {remote}"
            )

    def _purge(self, seg: Segment, shipped_stat: os.stat_result) -> bool:
        """Delete the local artifact if it is still the file that was shipped."""
        try:
            st = os.stat(seg.path)
        except FileNotFoundError:
            return False
        if (st.st_ino, st.st_size) != (shipped_stat.st_ino, shipped_stat.st_size):
            logger.warning("Segment %s changed after upload, keeping it for the next run", seg.segment_id)
            return False
        os.unlink(seg.path)
        logger.info("Segment %s %s locally", seg.segment_id, SegmentState.PURGED.value)
        return True

    def _enforce_retention(self, ledger: UploadLedger, result: UploadResult):
        """Purge shipped artifacts older than retention_hours when not deleting on upload."""
        hours = self._config.retention_hours
        if self._config.delete_after_upload or hours <= 0:
            return
        cutoff = self._time_func().replace(tzinfo=None) - timedelta(hours=hours)
        current_id = segment_id(self._time_func())
        for seg in scan_segments(self._config.log_root, current_id):
            if seg.state is not SegmentState.COMPRESSED:
                continue
            if parse_segment_id(seg.segment_id) + timedelta(hours=1) > cutoff:
                continue
            key = object_key(self._config.s3_prefix, seg.segment_id)
            try:
                st = os.stat(seg.path)
                if not ledger.is_shipped(key, st.st_size):
                    continue
                self._confirm(key, st.st_size)
                if self._purge(seg, st):
                    result.deleted.append(seg.segment_id)
            except (StoreError, OSError) as exc:
                logger.error("Retention purge of segment %s failed: %s", seg.segment_id, exc)
