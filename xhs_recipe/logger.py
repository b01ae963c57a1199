"""Application logging.

Every module logs through a child of the ``xhs_recipe`` logger:

    from .logger import get_logger
    log = get_logger(__name__)
    log.warning("mcp retry", extra={"data": {"tool": name}})

``init_logging`` adds a rotating file under ``<data_dir>/logs/app.log`` and
an in-memory buffer of recent entries that the API serves to the log viewer.
"""

import json
import logging
from collections import deque
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Deque, Dict, List, Optional

ROOT_LOGGER = "xhs_recipe"
MAX_ENTRIES = 400

_initialized = False
_log_dir: Optional[Path] = None


class MemoryHandler(logging.Handler):
    """Keeps the last N records as plain dicts."""

    def __init__(self, capacity: int = MAX_ENTRIES) -> None:
        super().__init__()
        self.entries: Deque[Dict[str, Any]] = deque(maxlen=capacity)

    def emit(self, record: logging.LogRecord) -> None:
        self.entries.append(
            {
                "ts": datetime.fromtimestamp(record.created, timezone.utc).isoformat().replace("+00:00", "Z"),
                "level": record.levelname.lower(),
                "logger": record.name,
                "message": record.getMessage(),
                "data": getattr(record, "data", None),
            }
        )


class _DataFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        data = getattr(record, "data", None)
        if data:
            line = f"{line} {json.dumps(data, ensure_ascii=False, default=str)}"
        return line


_memory_handler = MemoryHandler()


def init_logging(data_dir: Optional[str] = None, level: int = logging.INFO) -> None:
    """Attach the file and memory handlers. Safe to call more than once."""
    global _initialized, _log_dir
    root = logging.getLogger(ROOT_LOGGER)
    root.setLevel(level)
    if _memory_handler not in root.handlers:
        root.addHandler(_memory_handler)
    if _initialized or not data_dir:
        return
    _initialized = True
    _log_dir = Path(data_dir) / "logs"
    try:
        _log_dir.mkdir(parents=True, exist_ok=True)
        handler = RotatingFileHandler(
            str(_log_dir / "app.log"),
            maxBytes=5 * 1024 * 1024,
            backupCount=5,
            encoding="utf-8",
        )
    except OSError:
        root.warning("file logging unavailable", extra={"data": {"dir": str(_log_dir)}})
        return
    handler.setFormatter(
        _DataFormatter(
            fmt="%(asctime)s.%(msecs)03d | %(levelname)-5s | %(name)s | %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )
    )
    root.addHandler(handler)


def get_logger(name: str) -> logging.Logger:
    short = name.rsplit(".", 1)[-1]
    logger = logging.getLogger(f"{ROOT_LOGGER}.{short}")
    root = logging.getLogger(ROOT_LOGGER)
    if _memory_handler not in root.handlers:
        root.addHandler(_memory_handler)
        if root.level == logging.NOTSET:
            root.setLevel(logging.INFO)
    return logger


def get_entries() -> List[Dict[str, Any]]:
    return list(_memory_handler.entries)


def logs_folder() -> Optional[Path]:
    return _log_dir


def truncate(text: str, max_len: int = 600) -> str:
    if not text:
        return ""
    if len(text) <= max_len:
        return text
    return text[:max_len] + "…"
