"""Application logging setup."""

from __future__ import annotations

import logging
import sys
from pathlib import Path

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"


def setup_logging(level: str = "INFO", log_path: Path | None = None) -> None:
    """Log to stderr and, when ``log_path`` is given, to that file."""
    root = logging.getLogger()
    root.setLevel(getattr(logging, level.upper(), logging.INFO))
    formatter = logging.Formatter(LOG_FORMAT)

    stream = logging.StreamHandler(sys.stderr)
    stream.setFormatter(formatter)
    root.addHandler(stream)

    if log_path is not None:
        try:
            log_path.parent.mkdir(parents=True, exist_ok=True)
            handler = logging.FileHandler(log_path, encoding="utf-8")
        except OSError as exc:
            root.warning("File logging disabled: %s", exc)
        else:
            handler.setFormatter(formatter)
            root.addHandler(handler)
            logging.getLogger(__name__).info("Logging to %s", log_path)

    # websocket-client traces every frame at DEBUG.
    logging.getLogger("websocket").setLevel(logging.WARNING)
