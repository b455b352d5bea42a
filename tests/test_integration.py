"""End-to-end: receive over real sockets, rotate, upload, read back."""

import gzip
import os
import socket
import threading
import time

from pocketlog.inspector import read_records
from pocketlog.receiver import Receiver
from pocketlog.record import LogRecord, parse_line
from pocketlog.rotator import Rotator
from pocketlog.store import build_store
from pocketlog.uploader import Uploader
from pocketlog.writer import SegmentWriter


def _wait_bound(receiver):
    for _ in range(100):
        if all(l.server_address is not None for l in receiver.listeners):
            return
        time.sleep(0.05)
    raise RuntimeError("Listeners failed to bind")


def _wait_until(predicate, timeout=5.0):
    deadline = time.monotonic() + timeout
    while not predicate() and time.monotonic() < deadline:
        time.sleep(0.02)
    return predicate()


def test_receive_rotate_upload(make_config, clock, root, tmp_path):
    config = make_config()
    receiver = Receiver(config, time_func=clock)
    receiver.start()
    try:
        _wait_bound(receiver)
        with socket.create_connection(receiver.listeners[0].server_address, timeout=5) as sock:
            sock.sendall(b"hello\n")
        udp = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        try:
            udp.sendto(b"world", receiver.listeners[1].server_address)
        finally:
            udp.close()
        assert _wait_until(lambda: receiver.stats["accepted"] == 2)

        # Nothing is finished yet.
        assert Rotator(root, clock).run_once().compressed == []

        clock.advance(hours=1)
        assert _wait_until(lambda: receiver.writer.segment_id is None)
    finally:
        receiver.stop()

    assert Rotator(root, clock).run_once().compressed == ["2025-01-15-12"]

    later = time.time() + 3600
    result = Uploader(config, build_store(config), time_func=clock, wall_func=lambda: later).run_once()
    assert result.uploaded == ["2025-01-15-12"]
    assert result.deleted == ["2025-01-15-12"]
    assert not os.path.exists(os.path.join(root, "2025-01-15-12.log.gz"))

    obj = tmp_path / "store" / "pocketlog" / "2025" / "01" / "15" / "2025-01-15-12.log.gz"
    records = list(read_records(str(obj)))
    assert sorted(r.payload for r in records) == [b"hello", b"world"]
    assert {r.host for r in records} == {"127.0.0.1"}
    assert all(r.received_at == clock.now.replace(hour=12) for r in records)


def test_rotation_during_reception_loses_nothing(make_config, clock, root):
    config = make_config(enable_udp=False)
    receiver = Receiver(config, time_func=clock)
    receiver.start()
    stop = threading.Event()
    errors = []

    def rotate_loop():
        rotator = Rotator(root, clock)
        while not stop.is_set():
            try:
                rotator.run_once()
            except Exception as e:
                errors.append(e)
            time.sleep(0.01)

    rotating = threading.Thread(target=rotate_loop)
    rotating.start()
    try:
        _wait_bound(receiver)
        with socket.create_connection(receiver.listeners[0].server_address, timeout=5) as sock:
            for i in range(300):
                if i == 150:
                    assert _wait_until(lambda: receiver.stats["accepted"] == 150)
                    clock.advance(hours=1)
                sock.sendall(f"msg-{i}\n".encode())
        assert _wait_until(lambda: receiver.stats["accepted"] == 300)
        clock.advance(hours=1)
        assert _wait_until(lambda: receiver.writer.segment_id is None)
        time.sleep(0.1)
    finally:
        stop.set()
        rotating.join(timeout=5)
        receiver.stop()

    Rotator(root, clock).run_once()
    assert errors == []
    assert sorted(os.listdir(root)) == ["2025-01-15-12.log.gz", "2025-01-15-13.log.gz"]

    seen = []
    for name in sorted(os.listdir(root)):
        with gzip.open(os.path.join(root, name), "rt", encoding="utf-8", newline="\n") as f:
            seen.extend(parse_line(line).payload for line in f)
    assert sorted(seen) == sorted(f"msg-{i}".encode() for i in range(300))
    assert len(seen) == 300


def test_late_records_for_shipped_hour_keep_remote_intact(make_config, clock, root, tmp_path):
    config = make_config()
    store = build_store(config)
    hour_11 = clock.now.replace(hour=11)
    late = b"late records arriving after the hour was shipped"
    later = time.time() + 3600

    writer = SegmentWriter(root, time_func=lambda: hour_11)
    writer.write(LogRecord(hour_11, "10.0.0.5", b"original"))
    writer.close()
    Rotator(root, clock).run_once()
    first = Uploader(config, store, time_func=clock, wall_func=lambda: later).run_once()
    assert first.deleted == ["2025-01-15-11"]

    # A restarted receiver with a stepped-back clock writes into hour 11 again.
    writer = SegmentWriter(root, time_func=lambda: hour_11)
    writer.write(LogRecord(hour_11, "10.0.0.5", late))
    writer.close()
    Rotator(root, clock).run_once()
    second = Uploader(config, store, time_func=clock, wall_func=lambda: later).run_once()

    assert second.failed == ["2025-01-15-11"]
    obj = tmp_path / "store" / "pocketlog" / "2025" / "01" / "15" / "2025-01-15-11.log.gz"
    assert [r.payload for r in read_records(str(obj))] == [b"original"]
    local = os.path.join(root, "2025-01-15-11.log.gz")
    assert [r.payload for r in read_records(local)] == [late]
