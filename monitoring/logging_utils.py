import logging
import os
from pathlib import Path
from typing import Optional


def setup_logging(
    level: Optional[int] = None,
    log_format: Optional[str] = None,
    log_file: Optional[str] = None,
) -> None:
    """
    Configure process-wide logging for the engine.

    Called once from the entrypoint. The level falls back to the ``LOG_LEVEL``
    environment variable; when ``log_file`` is given, records are also written
    there so order history survives restarts. Subsequent calls are ignored.
    """
    root = logging.getLogger()
    if root.handlers:
        return

    if level is None:
        level = getattr(logging, os.getenv("LOG_LEVEL", "INFO").upper(), logging.INFO)
    fmt = log_format or "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
    logging.basicConfig(level=level, format=fmt)

    if log_file:
        path = Path(log_file)
        path.parent.mkdir(parents=True, exist_ok=True)
        handler = logging.FileHandler(path)
        handler.setFormatter(logging.Formatter(fmt))
        root.addHandler(handler)
