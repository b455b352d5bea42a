"""Inspector logic: list segments, read their records, and search them."""

import gzip
import os
from collections.abc import Iterator

from pocketlog.record import LogRecord, RecordFormatError, parse_line
from pocketlog.segments import Segment, scan_segments


def list_segments(root: str, current_id: str) -> list[Segment]:
    return scan_segments(root, current_id)


def _open_text(path: str):
    if path.endswith(".gz"):
        return gzip.open(path, "rt", encoding="utf-8", newline="\n")
    return open(path, "r", encoding="utf-8", newline="\n")


def read_lines(path: str) -> Iterator[str]:
    """Yield raw segment lines, transparently decompressing .gz files."""
    if not os.path.exists(path):
        raise FileNotFoundError(f"File not found: {path}")
    with _open_text(path) as f:
        for line in f:
            yield line


def read_records(path: str) -> Iterator[LogRecord]:
    """Yield the records of a segment. Raises RecordFormatError on a corrupt line."""
    for line_num, line in enumerate(read_lines(path), 1):
        try:
            yield parse_line(line)
        except RecordFormatError as exc:
            raise RecordFormatError(f"{path}:{line_num}: {exc}") from exc


def search_segments(root: str, current_id: str, text: str) -> list[tuple[str, int, str]]:
    """Search for text across all segments. Returns (filename, line_num, line) tuples."""
    results = []
    for seg in list_segments(root, current_id):
        filename = os.path.basename(seg.path)
        try:
            for line_num, line in enumerate(read_lines(seg.path), 1):
                if text in line:
                    results.append((filename, line_num, line.rstrip("\n")))
        except (OSError, EOFError, gzip.BadGzipFile):
            continue
    return results
