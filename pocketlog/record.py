"""LogRecord and the canonical on-disk line format.

One received payload maps to exactly one line::

    _time=2025-01-15T12:00:00.000000+00:00 host=10.0.0.5 msg='hello'

The payload is wrapped, never parsed. A single trailing line terminator is
trimmed; everything else is kept and escaped so the line stays single-line and
the closing quote is unambiguous. ``parse_line`` inverts ``format_record``.
"""

import re
from dataclasses import dataclass
from datetime import datetime

_ESCAPES = {
    "\\": "\\\\",
    "'": "\\'",
    "\n": "\\n",
    "\r": "\\r",
}
_UNESCAPES = {
    "\\": b"\\",
    "'": b"'",
    "n": b"\n",
    "r": b"\r",
}
_ESCAPE_RE = re.compile(r"\\(x[0-9a-f]{2}|.)", re.DOTALL)
_LINE_RE = re.compile(r"^_time=(\S+) host=(\S*) msg='(.*)'$", re.DOTALL)


class RecordFormatError(ValueError):
    """Raised when a segment line is not in the canonical record format."""


@dataclass(frozen=True)
class LogRecord:
    received_at: datetime
    host: str
    payload: bytes


def trim_terminator(payload: bytes) -> bytes:
    """Drop exactly one trailing line terminator (LF or CRLF)."""
    if payload.endswith(b"\r\n"):
        return payload[:-2]
    if payload.endswith(b"\n"):
        return payload[:-1]
    return payload


def escape_payload(payload: bytes) -> str:
    # surrogateescape maps each undecodable byte to U+DC80..U+DCFF so it can be
    # written back out as \xNN.
    text = payload.decode("utf-8", errors="surrogateescape")
    out = []
    for ch in text:
        escaped = _ESCAPES.get(ch)
        if escaped is not None:
            out.append(escaped)
        elif "\udc80" <= ch <= "\udcff":
            out.append(f"\\x{ord(ch) - 0xDC00:02x}")
        else:
            out.append(ch)
    return "".join(out)


def unescape_payload(text: str) -> bytes:
    out = bytearray()
    pos = 0
    for match in _ESCAPE_RE.finditer(text):
        chunk = text[pos:match.start()]
        if "'" in chunk:
            raise RecordFormatError("unescaped quote in msg")
        out += chunk.encode("utf-8")
        code = match.group(1)
        if len(code) == 3 and code.startswith("x"):
            out.append(int(code[1:], 16))
        elif code in _UNESCAPES:
            out += _UNESCAPES[code]
        else:
            raise RecordFormatError(f"unknown escape sequence \\{code}")
        pos = match.end()
    tail = text[pos:]
    if "\\" in tail or "'" in tail:
        raise RecordFormatError("dangling escape or unescaped quote in msg")
    out += tail.encode("utf-8")
    return bytes(out)


def format_timestamp(ts: datetime) -> str:
    """Fixed-width RFC 3339 timestamp with microseconds and a numeric offset."""
    if ts.tzinfo is None:
        ts = ts.astimezone()
    return ts.isoformat(timespec="microseconds")


def format_record(record: LogRecord) -> str:
    """Render a record as one newline-terminated segment line."""
    payload = escape_payload(trim_terminator(record.payload))
    host = record.host.replace(" ", "_") or "-"
    return f"_time={format_timestamp(record.received_at)} host={host} msg='{payload}'\n"


def parse_line(line: str) -> LogRecord:
    """Parse one segment line back into a LogRecord."""
    if line.endswith("\n"):
        line = line[:-1]
    match = _LINE_RE.match(line)
    if not match:
        raise RecordFormatError(f"not a record line: {line[:80]!r}")
    time_str, host, msg = match.groups()
    try:
        received_at = datetime.fromisoformat(time_str)
    except ValueError as exc:
        raise RecordFormatError(f"bad timestamp {time_str!r}") from exc
    return LogRecord(received_at=received_at, host=host, payload=unescape_payload(msg))
