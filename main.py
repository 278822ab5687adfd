"""TusQueue — entry point.

Configures logging, builds the application, queues the requested files and
drives the upload queue until it drains.  Ctrl+C pauses the queue so a
later run resumes from the last acknowledged offset.
"""

from __future__ import annotations

import argparse
import getpass
import logging
import sys
import threading
from pathlib import Path

from tusqueue import App
from tusqueue.config import ConfigManager
from tusqueue.upload_queue import QueueSnapshot, QueueStatus
from tusqueue.utils.path_helpers import normalize_local_path

_LOG_FORMAT = "%(asctime)s  %(levelname)-8s  %(name)s — %(message)s"
_DATE_FORMAT = "%H:%M:%S"

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_INTERRUPTED = 130


def _configure_logging(level: str) -> None:
    """Set up root logging to stderr."""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format=_LOG_FORMAT,
        datefmt=_DATE_FORMAT,
        stream=sys.stderr,
    )
    # Quieten noisy third-party loggers
    logging.getLogger("urllib3").setLevel(logging.WARNING)
    logging.getLogger("PIL").setLevel(logging.WARNING)


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="tusqueue", description=__doc__.splitlines()[0])
    parser.add_argument("--config-dir", type=Path, default=None, help="settings directory")
    parser.add_argument("--log-level", default=None, help="DEBUG, INFO, WARNING, ...")
    sub = parser.add_subparsers(dest="command", required=True)

    upload = sub.add_parser("upload", help="upload files one at a time")
    upload.add_argument("endpoint", help="tus upload creation URL")
    upload.add_argument("files", nargs="+", type=Path)
    upload.add_argument("--reencode", action="store_true", help="re-encode images to PNG")

    token = sub.add_parser("set-token", help="save an endpoint profile and its bearer token")
    token.add_argument("name")
    token.add_argument("endpoint")

    sub.add_parser("profiles", help="list saved endpoint profiles")
    return parser


class _ProgressPrinter:
    """Prints one line whenever an item's status or whole-percent progress changes."""

    def __init__(self) -> None:
        self._last: dict[str, tuple[QueueStatus, int]] = {}
        self._lock = threading.Lock()

    def __call__(self, snapshot: QueueSnapshot) -> None:
        with self._lock:
            for item in snapshot.items:
                key = (item.status, int(item.progress * 100))
                if self._last.get(item.id) == key:
                    continue
                self._last[item.id] = key
                line = f"[{item.status.name:<7}] {key[1]:3d}%  {Path(item.source).name}"
                if item.upload_url:
                    line += f"  → {item.upload_url}"
                if item.error:
                    line += f"  ({item.error})"
                print(line, flush=True)


def _run_upload(app: App, args: argparse.Namespace) -> int:
    log = logging.getLogger(__name__)
    if args.reencode:
        app.reencode_images = True

    app.queue.subscribe(_ProgressPrinter())
    for path in args.files:
        app.queue.enqueue(str(normalize_local_path(path)), args.endpoint)
    app.queue.start()

    try:
        while not app.queue.wait_idle(timeout=0.5):
            pass
    except KeyboardInterrupt:
        log.warning("Interrupted — pausing queue")
        app.queue.pause()
        return EXIT_INTERRUPTED

    items = app.queue.snapshot().items
    failed = [item for item in items if item.status != QueueStatus.SUCCESS]
    log.info("%d of %d upload(s) succeeded", len(items) - len(failed), len(items))
    return EXIT_FAILED if failed else EXIT_OK


def main(argv: list[str] | None = None) -> int:
    """Bootstrap and run TusQueue."""
    args = _build_parser().parse_args(argv)
    config = ConfigManager(base_dir=args.config_dir)
    _configure_logging(args.log_level or config.get("log_level", "INFO"))
    log = logging.getLogger(__name__)

    if args.command == "set-token":
        token = getpass.getpass(f"Bearer token for {args.name}: ")
        config.save_profile({"name": args.name, "endpoint": args.endpoint})
        if token:
            config.store_token(args.name, token)
        return EXIT_OK

    if args.command == "profiles":
        for profile in config.get_profiles():
            print(f"{profile.get('name')}\t{profile.get('endpoint', '')}")
        return EXIT_OK

    log.info("Starting TusQueue")
    app = App(config)
    try:
        return _run_upload(app, args)
    finally:
        app.runner.shutdown(wait=False)


if __name__ == "__main__":
    sys.exit(main())
