"""Entry point: python -m spiff.web

Runs the local server (dispatcher, reset tracker, agent store and star chart)
in one process, on 127.0.0.1:8080 unless told otherwise.
"""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path

import uvicorn

from spiff.config import load_settings
from spiff.web.app import create_app


def setup_logging(log_dir: Path, level: str = "INFO") -> None:
    """Configure logging for the server."""
    log_dir.mkdir(parents=True, exist_ok=True)
    log_file = log_dir / "spiff.log"

    formatter = logging.Formatter(
        "[%(asctime)s] %(levelname)s %(name)s: %(message)s", datefmt="%H:%M:%S",
    )

    file_handler = logging.FileHandler(log_file, mode="a")
    file_handler.setFormatter(formatter)

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(formatter)

    root = logging.getLogger("spiff")
    root.setLevel(level.upper())
    root.handlers.clear()
    root.addHandler(file_handler)
    root.addHandler(console_handler)

    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)

    logging.getLogger(__name__).info("Logging to %s", log_file)


def main() -> None:
    parser = argparse.ArgumentParser(
        description="Spiff: local SpaceTraders server",
    )
    parser.add_argument("--host", help="Address to bind (default: from settings)")
    parser.add_argument("--port", type=int, help="Port to listen on (default: from settings)")
    parser.add_argument("--dbpath", type=Path, help="Path of the sqlite database to use")
    args = parser.parse_args()

    settings = load_settings()
    if args.host:
        settings.host = args.host
    if args.port:
        settings.port = args.port
    if args.dbpath:
        settings.db_path = args.dbpath
    setup_logging(settings.data_dir / "logs", settings.log_level)

    app = create_app(settings)
    uvicorn.run(app, host=settings.host, port=settings.port, log_level="warning")


if __name__ == "__main__":
    main()
