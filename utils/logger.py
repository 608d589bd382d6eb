# utils/logger.py
"""Process logging for the sync engine.

``setup_logger`` is driven by the ``LOGGING`` section of the loaded
configuration (see ``core.initialization.load_configuration``); components
get children of the engine logger, and pollers a ``[stream]``-tagged adapter
so interleaved stream output stays readable in one file."""
import logging
import os
from logging.handlers import RotatingFileHandler
from typing import Any, Mapping, Optional

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

DEFAULT_LOGGING = {
    "level": "INFO",
    "file": "logs/sync.log",
    "max_mb": 5,
    "backups": 5,
    "quiet": ["aiohttp", "asyncio"],
}


def _level(value: Any) -> int:
    if isinstance(value, int):
        return value
    return getattr(logging, str(value).upper(), logging.INFO)


def setup_logger(name: str,
                 settings: Optional[Mapping[str, Any]] = None,
                 to_console: bool = True) -> logging.Logger:
    """
    Configure ``name`` once from ``settings`` (missing keys fall back to
    ``DEFAULT_LOGGING``). An empty ``file`` disables the file handler.
    Calling it again for a configured name returns the logger untouched.
    """
    logger = logging.getLogger(name)
    if logger.handlers:
        return logger

    opts = {**DEFAULT_LOGGING, **(settings or {})}
    level = _level(opts["level"])
    logger.setLevel(level)
    formatter = logging.Formatter(fmt=LOG_FORMAT, datefmt=DATE_FORMAT)

    handlers = []
    if opts["file"]:
        log_dir = os.path.dirname(opts["file"])
        if log_dir:
            os.makedirs(log_dir, exist_ok=True)
        handlers.append(RotatingFileHandler(
            opts["file"],
            maxBytes=int(opts["max_mb"]) * 1024 * 1024,
            backupCount=int(opts["backups"]),
            encoding="utf-8",
        ))
    if to_console:
        handlers.append(logging.StreamHandler())

    for handler in handlers:
        handler.setFormatter(formatter)
        handler.setLevel(level)
        logger.addHandler(handler)

    for noisy in opts["quiet"]:
        logging.getLogger(noisy).setLevel(logging.WARNING)

    return logger


class StreamLogAdapter(logging.LoggerAdapter):
    """Prefixes every record with the stream key."""

    def process(self, msg, kwargs):
        return f"[{self.extra['stream']}] {msg}", kwargs


def stream_logger(parent: logging.Logger, stream_key: str) -> StreamLogAdapter:
    return StreamLogAdapter(parent.getChild(stream_key), {"stream": stream_key})
