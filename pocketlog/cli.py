"""Command-line entry points: receive, rotate, upload, list, read, search.

Exit status: 0 on success, 1 when a run finished with per-segment failures,
2 on configuration or clock-domain errors (nothing is attempted).
"""

import argparse
import logging
import os
import signal
import sys
import threading

from pocketlog.config import DEFAULT_CONFIG_PATH, Config, ConfigError, load_config
from pocketlog.inspector import list_segments, read_lines, read_records, search_segments
from pocketlog.receiver import Receiver
from pocketlog.record import RecordFormatError
from pocketlog.rotator import Rotator
from pocketlog.segments import ClockDomainError, clock_func, ensure_clock_domain, segment_id
from pocketlog.store import StoreError, build_store
from pocketlog.uploader import Uploader

logger = logging.getLogger("pocketlog")

EXIT_OK = 0
EXIT_FAILURES = 1
EXIT_CONFIG = 2


def _setup_logging(level: str):
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s [pocketlog] %(levelname)s %(name)s %(message)s",
        stream=sys.stderr,
    )


def _install_signal_handlers(shutdown_event: threading.Event):
    def _signal_handler(sig, _frame):
        logger.info("Shutdown signal received (signal %d), stopping...", sig)
        shutdown_event.set()

    signal.signal(signal.SIGINT, _signal_handler)
    signal.signal(signal.SIGTERM, _signal_handler)


def _format_size(size: int) -> str:
    if size < 1024:
        return f"{size} B"
    if size < 1024 * 1024:
        return f"{size / 1024:.1f} KB"
    return f"{size / (1024 * 1024):.1f} MB"


def _repeat(run, loop_seconds: float | None) -> int:
    """Run once, or every *loop_seconds* until signalled. Returns the last exit code."""
    if not loop_seconds:
        return run()
    shutdown_event = threading.Event()
    _install_signal_handlers(shutdown_event)
    code = EXIT_OK
    while not shutdown_event.is_set():
        code = run()
        shutdown_event.wait(loop_seconds)
    return code


def cmd_receive(config, args) -> int:
    shutdown_event = threading.Event()
    _install_signal_handlers(shutdown_event)
    receiver = Receiver(config, shutdown_event)
    receiver.serve_forever()
    return EXIT_OK


def cmd_rotate(config, args) -> int:
    rotator = Rotator(config.log_root, clock_func(config.clock))

    def run():
        result = rotator.run_once()
        return EXIT_FAILURES if result.failed else EXIT_OK

    return _repeat(run, args.loop)


def cmd_upload(config, args) -> int:
    def run():
        try:
            uploader = Uploader(config, build_store(config))
            result = uploader.run_once()
        except StoreError as exc:
            # Unreachable store or broken credentials: ship nothing this cycle.
            logger.error("Uploader could not run: %s", exc)
            print("Uploaded 0 file(s).", flush=True)
            return EXIT_FAILURES
        print(f"Uploaded {len(result.uploaded)} file(s).", flush=True)
        return EXIT_OK if result.ok else EXIT_FAILURES

    return _repeat(run, args.loop)


def cmd_list(config, args) -> int:
    current_id = segment_id(clock_func(config.clock)())
    segments = list_segments(config.log_root, current_id)
    if not segments:
        print("No segments found.")
        return EXIT_OK
    for seg in segments:
        name = os.path.basename(seg.path)
        print(f"  {name}  {seg.state.value:<10}  ({_format_size(seg.size)})")
    return EXIT_OK


def cmd_read(config, args) -> int:
    path = args.segment
    if not os.path.isabs(path) and not os.path.exists(path):
        path = os.path.join(config.log_root, path)
    try:
        if args.raw:
            for line in read_lines(path):
                sys.stdout.write(line)
        else:
            out = sys.stdout.buffer
            for record in read_records(path):
                out.write(record.payload + b"\n")
            out.flush()
    except FileNotFoundError as e:
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_FAILURES
    except RecordFormatError as e:
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_FAILURES
    return EXIT_OK


def cmd_search(config, args) -> int:
    current_id = segment_id(clock_func(config.clock)())
    results = search_segments(config.log_root, current_id, args.text)
    if not results:
        print(f"No matches found for '{args.text}'.")
        return EXIT_OK
    for filename, line_num, line in results:
        print(f"  [{filename}:{line_num}] {line}")
    return EXIT_OK


COMMANDS = {
    "receive": cmd_receive,
    "rotate": cmd_rotate,
    "upload": cmd_upload,
    "list": cmd_list,
    "read": cmd_read,
    "search": cmd_search,
}
# Commands that touch the segment root and must agree on the clock domain.
GUARDED = ("receive", "rotate", "upload")
# Configuration checks that run before anything is written to the root.
PRECHECKS = {
    "receive": Config.require_listener,
    "upload": Config.require_destination,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="pocketlog", description="Hourly log segment receiver and shipper")
    parser.add_argument("--config", default=os.environ.get("POCKETLOG_CONFIG", DEFAULT_CONFIG_PATH),
                        help="YAML config file, or a legacy KEY=\"value\" .conf file")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("receive", help="Accept TCP/UDP payloads into hourly segments")

    for name, help_text in (("rotate", "Compress finished hour segments"),
                            ("upload", "Ship compressed segments to object storage")):
        p = sub.add_parser(name, help=help_text)
        p.add_argument("--loop", type=float, metavar="SECONDS",
                       help="Repeat every SECONDS instead of running once")

    sub.add_parser("list", help="List local segments and their state")

    p = sub.add_parser("read", help="Print the payloads stored in a segment")
    p.add_argument("segment", help="Segment file name or path")
    p.add_argument("--raw", action="store_true", help="Print stored lines instead of payloads")

    p = sub.add_parser("search", help="Search text across local segments")
    p.add_argument("text")
    return parser


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    try:
        config = load_config(args.config)
    except ConfigError as exc:
        _setup_logging("INFO")
        logger.error("Configuration error: %s", exc)
        return EXIT_CONFIG
    _setup_logging(config.log_level)

    try:
        precheck = PRECHECKS.get(args.command)
        if precheck is not None:
            precheck(config)
        if args.command in GUARDED:
            ensure_clock_domain(config.log_root, config.clock)
        return COMMANDS[args.command](config, args)
    except (ConfigError, ClockDomainError) as exc:
        logger.error("Configuration error: %s", exc)
        return EXIT_CONFIG


if __name__ == "__main__":
    sys.exit(main())
