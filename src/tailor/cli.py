#!/usr/bin/env python3
"""
Command line front end: follow a file or directory like ``tail -f``.

Usage:
    tailor /var/log/app.log
    tailor /var/log/myapp --backfill-existing
    python -m tailor.cli /var/log/app.log --polling --poll-interval 500
"""

import argparse
import logging
import signal
import sys
import threading
from pathlib import Path
from typing import List, Optional, TextIO

from dotenv import load_dotenv

from .config import TailorConfig
from .engine import Tailor
from .models import INVALID_CLIENT_ID, MessageType


logger = logging.getLogger("tailor.cli")

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
LOG_DATEFMT = "%Y-%m-%d %H:%M:%S"

NORMAL = "normal"
DEBUG = "debug"
WARNING = "warning"
ERROR = "error"

_STYLES = {
    DEBUG: "\033[36m",
    WARNING: "\033[30;43m",
    ERROR: "\033[30;41m",
}
_RESET = "\033[0m"


def classify_line(line: str) -> str:
    """
    Guess the severity of a log line from its keywords.

    Args:
        line: Line text

    Returns:
        One of "debug", "warning", "error" or "normal"
    """
    if "DEBUG" in line or "debug" in line:
        return DEBUG
    if "WARNING" in line or "WARN" in line or "warning" in line:
        return WARNING
    if "ERROR" in line or "ERR" in line or "error" in line or "Error" in line:
        return ERROR
    return NORMAL


def highlight(line: str, color: bool = True) -> str:
    """Wrap a line in the ANSI style for its severity."""
    if not color:
        return line
    style = _STYLES.get(classify_line(line))
    if style is None:
        return line
    return f"{style}{line}{_RESET}"


class LinePrinter:
    """Callback that writes delivered lines to a stream."""

    def __init__(self, out: TextIO = sys.stdout, err: TextIO = sys.stderr, color: bool = True):
        self.out = out
        self.err = err
        self.color = color
        self._lock = threading.Lock()

    def __call__(self, client_id: int, msg_type: MessageType, lines: List[str]) -> None:
        with self._lock:
            if msg_type == MessageType.NEW_FILE_STARTED:
                print(f"==> new file started (client {client_id}) <==", file=self.err)
            for line in lines:
                print(highlight(line, self.color), file=self.out)
            self.out.flush()


class GracefulShutdown:
    """Handle graceful shutdown on SIGINT/SIGTERM."""

    def __init__(self):
        self.event = threading.Event()
        signal.signal(signal.SIGINT, self._handler)
        signal.signal(signal.SIGTERM, self._handler)

    def _handler(self, signum, frame):
        logger.info("Received shutdown signal, stopping...")
        self.event.set()

    @property
    def should_exit(self) -> bool:
        return self.event.is_set()


def setup_logging(verbose: bool = False, log_file: Optional[Path] = None) -> None:
    """
    Configure the root logger for the command line.

    The console only shows warnings unless verbose; the log file gets
    INFO and above.
    """
    console = logging.StreamHandler(sys.stderr)
    console.setLevel(logging.DEBUG if verbose else logging.WARNING)
    handlers: List[logging.Handler] = [console]

    if log_file:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_file, mode="w", encoding="utf-8"))

    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format=LOG_FORMAT,
        datefmt=LOG_DATEFMT,
        handlers=handlers,
    )
    logging.getLogger("watchdog").setLevel(logging.WARNING)


def build_config(args: argparse.Namespace) -> TailorConfig:
    """Build the engine config from the environment and command line flags."""
    overrides = {}
    if args.polling:
        overrides["use_polling"] = True
    if args.poll_interval is not None:
        overrides["poll_interval_ms"] = args.poll_interval
    if args.recursive:
        overrides["recursive"] = True
    if args.backfill_existing:
        overrides["backfill_existing"] = True
    return TailorConfig.from_env(**overrides)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="tailor",
        description="Follow a file, or every file in a directory, and print new lines",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Follow a single log file
  tailor /var/log/app.log

  # Follow every file in a directory, including ones created later
  tailor /var/log/myapp --backfill-existing

Environment variables prefixed with TAILOR_ (e.g. TAILOR_USE_POLLING=1)
override defaults; a .env file in the working directory is loaded first.
        """,
    )
    parser.add_argument("path", help="File or directory to follow")
    parser.add_argument("--polling", action="store_true", help="Use polling instead of OS events")
    parser.add_argument("--poll-interval", type=int, default=None, help="Polling interval in ms")
    parser.add_argument("--recursive", action="store_true", help="Include files in subdirectories")
    parser.add_argument("--backfill-existing", action="store_true",
                        help="Print the content of files already in a watched directory")
    parser.add_argument("--no-color", action="store_true", help="Disable severity highlighting")
    parser.add_argument("--log-file", default=None, help="Write engine logs to this file")
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    load_dotenv(Path.cwd() / ".env")

    args = build_parser().parse_args(argv)
    setup_logging(args.verbose, Path(args.log_file) if args.log_file else None)

    path = Path(args.path)
    if not path.exists():
        logger.error(f"Path does not exist: {path}")
        return 1

    try:
        config = build_config(args)
    except ValueError as e:
        logger.error(f"Invalid configuration: {e}")
        return 2

    color = not args.no_color and sys.stdout.isatty()
    shutdown = GracefulShutdown()

    with Tailor(config=config, callback=LinePrinter(color=color)) as tailor:
        client_id = tailor.watch(path)
        if client_id == INVALID_CLIENT_ID:
            logger.error(f"Cannot watch {path}")
            return 1

        logger.info(f"Following {path.resolve()} as client {client_id}")
        while not shutdown.should_exit:
            shutdown.event.wait(timeout=3.0)
            if client_id not in tailor.clients():
                logger.error(f"Watch on {path} ended")
                return 1

        tailor.stop(client_id)

    return 0


if __name__ == "__main__":
    sys.exit(main())
