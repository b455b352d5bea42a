"""Integration tests — start real listeners and talk to them with real sockets."""

import logging
import socket
import threading
import time
from unittest import mock

import pytest

from pocketlog.server import TCPListener, UDPListener


class Collector:
    def __init__(self):
        self.items = []
        self._lock = threading.Lock()

    def __call__(self, payload: bytes, host: str):
        with self._lock:
            self.items.append((payload, host))

    def wait_for(self, count: int, timeout: float = 5.0):
        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            with self._lock:
                if len(self.items) >= count:
                    return list(self.items)
            time.sleep(0.02)
        with self._lock:
            return list(self.items)


def _start(listener):
    thread = threading.Thread(target=listener.start, daemon=True)
    thread.start()
    for _ in range(100):
        if listener.server_address is not None:
            break
        time.sleep(0.05)
    else:
        raise RuntimeError("Listener failed to bind")
    return thread


@pytest.fixture
def tcp():
    sink = Collector()
    listener = TCPListener("127.0.0.1", 0, sink, threading.Event(), max_line_bytes=64)
    thread = _start(listener)
    yield listener, sink
    listener.stop()
    thread.join(timeout=5)


@pytest.fixture
def udp():
    sink = Collector()
    listener = UDPListener("127.0.0.1", 0, sink, threading.Event())
    thread = _start(listener)
    yield listener, sink
    listener.stop()
    thread.join(timeout=5)


def _tcp_send(address, data: bytes):
    with socket.create_connection(address, timeout=5) as sock:
        sock.sendall(data)


class TestTCPListener:
    def test_newline_framing(self, tcp):
        listener, sink = tcp
        _tcp_send(listener.server_address, b"hello\nworld\n")
        items = sink.wait_for(2)
        assert items == [(b"hello\n", "127.0.0.1"), (b"world\n", "127.0.0.1")]

    def test_line_split_across_sends(self, tcp):
        listener, sink = tcp
        with socket.create_connection(listener.server_address, timeout=5) as sock:
            sock.sendall(b"hel")
            time.sleep(0.1)
            sock.sendall(b"lo\r\n")
        assert sink.wait_for(1) == [(b"hello\r\n", "127.0.0.1")]

    def test_final_line_without_newline(self, tcp):
        listener, sink = tcp
        _tcp_send(listener.server_address, b"first\nlast")
        assert [p for p, _ in sink.wait_for(2)] == [b"first\n", b"last"]

    def test_blank_lines_skipped(self, tcp):
        listener, sink = tcp
        _tcp_send(listener.server_address, b"\n\r\nreal\n")
        assert [p for p, _ in sink.wait_for(1)] == [b"real\n"]

    def test_oversized_line_split(self, tcp):
        listener, sink = tcp
        _tcp_send(listener.server_address, b"a" * 100 + b"\n")
        payloads = [p for p, _ in sink.wait_for(2)]
        assert payloads == [b"a" * 64, b"a" * 36 + b"\n"]

    def test_concurrent_clients(self, tcp):
        listener, sink = tcp

        def client(n):
            _tcp_send(listener.server_address, b"".join(f"c{n}-{i}\n".encode() for i in range(20)))

        threads = [threading.Thread(target=client, args=(n,)) for n in range(5)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert len(sink.wait_for(100)) == 100

    def test_sink_error_does_not_kill_connection(self):
        calls = []

        def sink(payload, host):
            calls.append(payload)
            if payload.startswith(b"boom"):
                raise RuntimeError("sink failure")

        listener = TCPListener("127.0.0.1", 0, sink, threading.Event())
        thread = _start(listener)
        try:
            _tcp_send(listener.server_address, b"boom\nok\n")
            deadline = time.monotonic() + 5
            while len(calls) < 2 and time.monotonic() < deadline:
                time.sleep(0.02)
            assert calls == [b"boom\n", b"ok\n"]
        finally:
            listener.stop()
            thread.join(timeout=5)


class TestUDPListener:
    def test_datagram_is_one_payload(self, udp):
        listener, sink = udp
        sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        try:
            sock.sendto(b"<13>Jan 15 12:00:00 host app: multi\nline", listener.server_address)
        finally:
            sock.close()
        items = sink.wait_for(1)
        assert items == [(b"<13>Jan 15 12:00:00 host app: multi\nline", "127.0.0.1")]
        assert listener.received_count == 1

    def test_empty_datagram_ignored(self, udp):
        listener, sink = udp
        sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        try:
            sock.sendto(b"\n", listener.server_address)
            sock.sendto(b"real", listener.server_address)
        finally:
            sock.close()
        assert [p for p, _ in sink.wait_for(1)] == [b"real"]
        assert listener.received_count == 1

    def test_receive_error_does_not_stop_listener(self, caplog):
        sink = Collector()
        shutdown = threading.Event()

        class FlakySocket:
            """Datagram socket whose first recvfrom fails, as after an ICMP error."""

            def __init__(self):
                self.events = [
                    ConnectionRefusedError(111, "Connection refused"),
                    (b"after the error", ("10.0.0.5", 5140)),
                ]

            def setsockopt(self, *args):
                pass

            def getsockopt(self, *args):
                return 0

            def settimeout(self, timeout):
                pass

            def bind(self, address):
                pass

            def getsockname(self):
                return ("127.0.0.1", 5140)

            def fileno(self):
                return 7

            def close(self):
                pass

            def recvfrom(self, size):
                if not self.events:
                    shutdown.set()
                    raise socket.timeout()
                event = self.events.pop(0)
                if isinstance(event, Exception):
                    raise event
                return event

        listener = UDPListener("127.0.0.1", 0, sink, shutdown)
        with mock.patch("pocketlog.server.socket.socket", return_value=FlakySocket()):
            with caplog.at_level(logging.ERROR, logger="pocketlog.server"):
                listener.start()

        assert sink.items == [(b"after the error", "10.0.0.5")]
        assert listener.received_count == 1
        assert "UDP receive failed" in caplog.text
