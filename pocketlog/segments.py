"""Segment naming and clock: hour keys, file names, object keys.

Every process (receiver, rotator, uploader) must map timestamps to segment ids
in the same clock domain. The receiver only ever appends to the segment whose id
equals the current hour, which is what lets the rotator and uploader work on
every other file without a lock. Mixing local time and UTC between processes
breaks that, so the chosen domain is recorded in the segment root and checked
at startup by ``ensure_clock_domain``.
"""

import enum
import os
import re
from dataclasses import dataclass
from datetime import datetime, timezone

CLOCK_LOCAL = "local"
CLOCK_UTC = "utc"

LOG_SUFFIX = ".log"
GZ_SUFFIX = ".log.gz"
TMP_SUFFIX = ".tmp"
CLOCK_MARKER = ".clock"

SEGMENT_ID_FORMAT = "%Y-%m-%d-%H"
_FILENAME_RE = re.compile(r"^(\d{4})-(\d{2})-(\d{2})-(\d{2})\.log(\.gz)?$")


class ClockDomainError(Exception):
    """Raised when a process starts with a clock domain that differs from the root's."""


class SegmentState(enum.Enum):
    OPEN = "open"
    CLOSED = "closed"
    COMPRESSED = "compressed"
    SHIPPED = "shipped"
    PURGED = "purged"


@dataclass(frozen=True)
class Segment:
    segment_id: str
    state: SegmentState
    path: str
    size: int
    mtime: float


def now(clock: str = CLOCK_LOCAL) -> datetime:
    """Return the current time as an aware datetime in *clock*'s domain."""
    if clock == CLOCK_UTC:
        return datetime.now(timezone.utc)
    if clock == CLOCK_LOCAL:
        return datetime.now().astimezone()
    raise ValueError(f"Unknown clock domain: {clock!r}")


def clock_func(clock: str):
    """Return a zero-argument callable producing ``now(clock)``."""
    if clock not in (CLOCK_LOCAL, CLOCK_UTC):
        raise ValueError(f"Unknown clock domain: {clock!r}")
    return lambda: now(clock)


def hour_key(ts: datetime) -> tuple[str, str, str, str]:
    """Map a timestamp to its zero-padded (year, month, day, hour) key."""
    return (f"{ts.year:04d}", f"{ts.month:02d}", f"{ts.day:02d}", f"{ts.hour:02d}")


def segment_id(ts: datetime) -> str:
    return "-".join(hour_key(ts))


def parse_segment_id(seg_id: str) -> datetime:
    """Inverse of ``segment_id``; returns a naive datetime at the top of the hour."""
    return datetime.strptime(seg_id, SEGMENT_ID_FORMAT)


def segment_filename(seg_id: str) -> str:
    return seg_id + LOG_SUFFIX


def compressed_filename(seg_id: str) -> str:
    return seg_id + GZ_SUFFIX


def segment_path(root: str, seg_id: str) -> str:
    return os.path.join(root, segment_filename(seg_id))


def compressed_path(root: str, seg_id: str) -> str:
    return os.path.join(root, compressed_filename(seg_id))


def object_key(prefix: str, seg_id: str) -> str:
    """Deterministic upload key: ``<prefix>/YYYY/MM/DD/YYYY-MM-DD-HH.log.gz``.

    The key depends only on the segment id, so a re-upload after a crash
    overwrites the same object instead of creating a second one.
    """
    year, month, day, _hour = seg_id.split("-")
    parts = [year, month, day, compressed_filename(seg_id)]
    prefix = (prefix or "").strip("/")
    if prefix:
        parts.insert(0, prefix)
    return "/".join(parts)


def parse_filename(name: str) -> tuple[str, str] | tuple[None, None]:
    """Return ``(segment_id, "log" | "gz")`` for segment files, ``(None, None)`` otherwise."""
    match = _FILENAME_RE.match(name)
    if not match:
        return None, None
    seg_id = "-".join(match.group(1, 2, 3, 4))
    try:
        parse_segment_id(seg_id)
    except ValueError:
        return None, None
    return seg_id, ("gz" if match.group(5) else "log")


def scan_segments(root: str, current_id: str) -> list[Segment]:
    """List segment files under *root* with their locally derivable state, sorted by id."""
    try:
        names = os.listdir(root)
    except FileNotFoundError:
        return []

    segments = []
    for name in names:
        seg_id, kind = parse_filename(name)
        if seg_id is None:
            continue
        path = os.path.join(root, name)
        try:
            st = os.stat(path)
        except FileNotFoundError:
            # Compressed or purged by another process between listdir and stat.
            continue
        if kind == "gz":
            state = SegmentState.COMPRESSED
        elif seg_id == current_id:
            state = SegmentState.OPEN
        else:
            state = SegmentState.CLOSED
        segments.append(Segment(seg_id, state, path, st.st_size, st.st_mtime))

    segments.sort(key=lambda s: (s.segment_id, s.path))
    return segments


def ensure_clock_domain(root: str, clock: str) -> None:
    """Record *clock* in the root on first use; raise if a different domain was recorded."""
    if clock not in (CLOCK_LOCAL, CLOCK_UTC):
        raise ClockDomainError(f"Unknown clock domain: {clock!r}")
    os.makedirs(root, mode=0o755, exist_ok=True)
    marker = os.path.join(root, CLOCK_MARKER)
    try:
        fd = os.open(marker, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o644)
    except FileExistsError:
        with open(marker, "r", encoding="utf-8") as f:
            recorded = f.read().strip()
        # An empty marker means a concurrent starter has not written it yet.
        if recorded and recorded != clock:
            raise ClockDomainError(
                f"Segment root {root} uses clock domain {recorded!r} "
                f"but this process is configured for {clock!r}"
            )
        return
    with os.fdopen(fd, "w", encoding="utf-8") as f:
        f.write(clock + "\n")
