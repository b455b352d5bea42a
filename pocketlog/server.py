"""Network listeners that hand raw payloads and the sender address to a sink.

TCP is newline framed, one thread per client. UDP treats each datagram as one
payload. Neither listener looks inside the payload.
"""

import logging
import socket
import threading

logger = logging.getLogger(__name__)


def _deliver(sink, payload: bytes, host: str):
    try:
        sink(payload, host)
    except Exception:
        logger.exception("Sink failed for payload from %s", host)


class TCPListener:
    """Multi-threaded TCP accept loop."""

    def __init__(self, host: str, port: int, sink, shutdown_event: threading.Event,
                 buffer_size: int = 65536, max_line_bytes: int = 65536):
        self._host = host
        self._port = port
        self._sink = sink
        self._shutdown_event = shutdown_event
        self._buffer_size = buffer_size
        self._max_line_bytes = max_line_bytes
        self._sock = None
        self._server_address = None
        self._lock = threading.Lock()
        self._connections = 0

    @property
    def server_address(self) -> tuple:
        """Return (host, port) the listener is bound to. Useful when port=0."""
        return self._server_address

    @property
    def active_connections(self) -> int:
        with self._lock:
            return self._connections

    def start(self):
        """Bind, listen, and accept connections until shutdown."""
        self._sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        self._sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        self._sock.settimeout(1.0)
        self._sock.bind((self._host, self._port))
        self._sock.listen(128)

        self._server_address = self._sock.getsockname()
        logger.info("TCP listener on %s:%d", *self._server_address)

        while not self._shutdown_event.is_set():
            try:
                conn, addr = self._sock.accept()
            except socket.timeout:
                continue
            except OSError:
                break

            t = threading.Thread(target=self._handle_client, args=(conn, addr), daemon=True)
            t.start()

    def stop(self):
        self._shutdown_event.set()
        if self._sock:
            try:
                self._sock.close()
            except OSError:
                pass

    def _handle_client(self, conn: socket.socket, addr: tuple):
        host = addr[0]
        with self._lock:
            self._connections += 1
        logger.debug("Client connected: %s:%d", addr[0], addr[1])
        conn.settimeout(1.0)

        buffer = b""
        try:
            while not self._shutdown_event.is_set():
                try:
                    data = conn.recv(self._buffer_size)
                except socket.timeout:
                    continue
                except OSError:
                    break

                if not data:
                    break

                buffer += data
                buffer = self._drain(buffer, host)

            if buffer.strip(b"\r\n"):
                # Sender closed without a final newline.
                _deliver(self._sink, buffer, host)
        finally:
            conn.close()
            with self._lock:
                self._connections -= 1
            logger.debug("Client disconnected: %s:%d", addr[0], addr[1])

    def _drain(self, buffer: bytes, host: str) -> bytes:
        """Deliver every complete line in *buffer*; return the unconsumed rest."""
        while True:
            idx = buffer.find(b"\n", 0, self._max_line_bytes)
            if idx == -1:
                if len(buffer) >= self._max_line_bytes:
                    _deliver(self._sink, buffer[:self._max_line_bytes], host)
                    buffer = buffer[self._max_line_bytes:]
                    continue
                return buffer
            line, buffer = buffer[:idx + 1], buffer[idx + 1:]
            if line.strip(b"\r\n"):
                _deliver(self._sink, line, host)


class UDPListener:
    """Datagram loop. Delivery is best effort; nothing is acknowledged."""

    def __init__(self, host: str, port: int, sink, shutdown_event: threading.Event,
                 buffer_size: int = 65536):
        self._host = host
        self._port = port
        self._sink = sink
        self._shutdown = shutdown_event
        self._buffer_size = buffer_size
        self._sock = None
        self._received = 0
        self._lock = threading.Lock()
        self.server_address = None

    @property
    def received_count(self) -> int:
        with self._lock:
            return self._received

    def start(self):
        sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_RCVBUF, 4 * 1024 * 1024)
        sock.settimeout(1.0)
        sock.bind((self._host, self._port))
        self._sock = sock

        self.server_address = sock.getsockname()
        actual_rcvbuf = sock.getsockopt(socket.SOL_SOCKET, socket.SO_RCVBUF)
        logger.info(
            "UDP listener on %s:%d (SO_RCVBUF=%d bytes)",
            self.server_address[0], self.server_address[1], actual_rcvbuf,
        )

        while not self._shutdown.is_set():
            try:
                data, addr = sock.recvfrom(self._buffer_size)
            except socket.timeout:
                continue
            except OSError:
                if self._shutdown.is_set() or sock.fileno() == -1:
                    break
                # e.g. ICMP errors surfaced on the socket; keep serving.
                logger.exception("UDP receive failed on %s:%d", *self.server_address)
                continue

            if not data.strip(b"\r\n"):
                continue
            with self._lock:
                self._received += 1
            _deliver(self._sink, data, addr[0])

    def stop(self):
        self._shutdown.set()
        if self._sock:
            self._sock.close()
            self._sock = None
