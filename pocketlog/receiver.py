"""Receiver: stamps inbound payloads and appends them to the current hour segment."""

import logging
import threading

from pocketlog.config import Config
from pocketlog.record import LogRecord
from pocketlog.segments import clock_func
from pocketlog.server import TCPListener, UDPListener
from pocketlog.writer import SegmentWriter

logger = logging.getLogger(__name__)


class Receiver:
    """Long-lived ingestion process.

    The receipt time comes from the receiver's own clock, never from anything
    inside the payload. Listeners run in daemon threads; a housekeeping thread
    fsyncs the open segment and closes it once its hour has elapsed, so a
    quiet receiver does not keep a finished segment locked.
    """

    def __init__(self, config: Config, shutdown_event: threading.Event | None = None,
                 time_func=None):
        self._config = config
        self._time_func = time_func or clock_func(config.clock)
        self._shutdown = shutdown_event or threading.Event()
        self._writer = SegmentWriter(config.log_root, self._time_func)
        self._lock = threading.Lock()
        self._accepted = 0
        self._failed = 0
        self._threads: list[threading.Thread] = []
        self.listeners = []

        if config.enable_tcp:
            self.listeners.append(TCPListener(
                config.host, config.tcp_port, self.accept, self._shutdown,
                buffer_size=config.buffer_size, max_line_bytes=config.max_line_bytes,
            ))
        if config.enable_udp:
            self.listeners.append(UDPListener(
                config.host, config.udp_port, self.accept, self._shutdown,
                buffer_size=config.buffer_size,
            ))

    @property
    def writer(self) -> SegmentWriter:
        return self._writer

    @property
    def stats(self) -> dict:
        snap = {"tcp_connections": 0, "udp_datagrams": 0}
        for listener in self.listeners:
            if isinstance(listener, TCPListener):
                snap["tcp_connections"] += listener.active_connections
            else:
                snap["udp_datagrams"] += listener.received_count
        with self._lock:
            snap.update(accepted=self._accepted, failed=self._failed)
        return snap

    def accept(self, payload: bytes, host: str) -> str | None:
        """Append one payload. Returns the segment id, or None if the append failed."""
        record = LogRecord(received_at=self._time_func(), host=host, payload=payload)
        try:
            seg_id = self._writer.write(record)
        except OSError as exc:
            # Disk full or permissions; the listener keeps serving.
            with self._lock:
                self._failed += 1
            logger.error("Failed to append record from %s: %s", host, exc)
            return None
        with self._lock:
            self._accepted += 1
        return seg_id

    def start(self):
        """Start listeners and housekeeping in background threads."""
        for listener in self.listeners:
            t = threading.Thread(target=listener.start, daemon=True,
                                 name=type(listener).__name__)
            t.start()
            self._threads.append(t)
        t = threading.Thread(target=self._housekeeping, daemon=True, name="housekeeping")
        t.start()
        self._threads.append(t)
        logger.info("Receiver started, writing segments to %s", self._config.log_root)

    def serve_forever(self):
        self.start()
        try:
            self._shutdown.wait()
        finally:
            self.stop()

    def stop(self):
        self._shutdown.set()
        for listener in self.listeners:
            listener.stop()
        for t in self._threads:
            t.join(timeout=5)
        self._writer.close()
        snap = self.stats
        logger.info(
            "Receiver stopped. accepted=%d failed=%d udp_datagrams=%d",
            snap["accepted"], snap["failed"], snap["udp_datagrams"],
        )

    def _housekeeping(self):
        while not self._shutdown.wait(self._config.fsync_interval_sec):
            try:
                self._writer.sync()
                self._writer.roll()
            except OSError:
                logger.exception("Segment housekeeping failed")
