"""In-memory ring buffer of recent log records.

``treadle run`` installs ``DebugLogHandler`` on the package logger; the remote
``get_state`` payload shows the latest warnings from the buffer and a failed
run dumps the whole buffer next to the session for post-mortem reading.
"""

from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING

from treadle.limits import MAX_LOG_MESSAGE_LENGTH

if TYPE_CHECKING:
    from pathlib import Path

MAX_LOG_LINES = 2000
TRUNCATION_SUFFIX = "... [truncated]"


@dataclass(frozen=True, slots=True)
class LogEntry:
    levelno: int
    logger: str
    message: str
    timestamp: float

    @property
    def level(self) -> str:
        return logging.getLevelName(self.levelno)


log_buffer: deque[LogEntry] = deque(maxlen=MAX_LOG_LINES)


def _truncate(message: str) -> str:
    if len(message) <= MAX_LOG_MESSAGE_LENGTH:
        return message
    return message[:MAX_LOG_MESSAGE_LENGTH] + TRUNCATION_SUFFIX


class TruncatingFormatter(logging.Formatter):
    """Caps each formatted record so a chatty agent cannot bloat the log file."""

    def format(self, record: logging.LogRecord) -> str:
        return _truncate(super().format(record))


class DebugLogHandler(logging.Handler):
    def emit(self, record: logging.LogRecord) -> None:
        try:
            entry = LogEntry(
                levelno=record.levelno,
                logger=record.name,
                message=_truncate(self.format(record)),
                timestamp=record.created,
            )
        except Exception:
            self.handleError(record)
            return
        log_buffer.append(entry)


_installed = False


def setup_logging(level: int = logging.INFO, *, log_file: Path | None = None) -> None:
    """Attach the buffer handler, plus a file handler when ``log_file`` is given.

    Handlers are attached once per process; later calls only change the level.
    """
    global _installed

    package_logger = logging.getLogger("treadle")
    package_logger.setLevel(level)
    if _installed:
        return

    buffer_handler = DebugLogHandler()
    buffer_handler.setFormatter(logging.Formatter("%(name)s: %(message)s"))
    package_logger.addHandler(buffer_handler)

    if log_file is not None:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file, encoding="utf-8")
        file_handler.setFormatter(
            TruncatingFormatter("%(asctime)s %(levelname)s %(name)s: %(message)s")
        )
        package_logger.addHandler(file_handler)

    _installed = True
    package_logger.debug("Logging configured (level=%s)", logging.getLevelName(level))


def clear_log_buffer() -> None:
    log_buffer.clear()


def recent_entries(limit: int = 50, *, min_level: int = logging.DEBUG) -> list[LogEntry]:
    """Newest ``limit`` entries at or above ``min_level``, oldest first."""
    if limit <= 0:
        return []
    return [entry for entry in log_buffer if entry.levelno >= min_level][-limit:]


def format_entry(entry: LogEntry) -> str:
    stamp = datetime.fromtimestamp(entry.timestamp).strftime("%Y-%m-%d %H:%M:%S.%f")[:-3]
    return f"{stamp} [{entry.level}] {entry.message}"


def export_logs_to_file(file_path: Path) -> int:
    """Write every buffered entry to ``file_path`` and return how many were written."""
    entries = list(log_buffer)
    file_path.parent.mkdir(parents=True, exist_ok=True)
    with file_path.open("w", encoding="utf-8") as handle:
        handle.write(f"# treadle debug log export ({len(entries)} entries)\n\n")
        handle.writelines(format_entry(entry) + "\n" for entry in entries)
    return len(entries)
