from __future__ import annotations

import sys
from collections import deque
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from pathlib import Path

from .runtime.events import LOG, EventBus
from .writers import NdjsonWriter

LEVELS = ("info", "warn", "error")


@dataclass(frozen=True, slots=True)
class LogEntry:
    time: str
    message: str
    level: str = "info"


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds")


class Runlog:
    """In-memory ring of recent entries, mirrored to the bus and an NDJSON file."""

    def __init__(
        self,
        bus: EventBus,
        *,
        max_entries: int = 200,
        path: Path | None = None,
        writer: NdjsonWriter | None = None,
    ) -> None:
        self._bus = bus
        self._entries: deque[LogEntry] = deque(maxlen=max_entries)
        self._writer = writer
        if self._writer is None and path is not None:
            self._writer = NdjsonWriter(path)
        self._writer_failed = False

    def log(self, message: str, level: str = "info") -> LogEntry:
        if level not in LEVELS:
            raise ValueError(f"invalid log level: {level}")
        entry = LogEntry(time=_utc_now_iso(), message=message, level=level)
        self._entries.append(entry)
        self._write(entry)
        self._bus.publish(LOG, entry)
        return entry

    def info(self, message: str) -> LogEntry:
        return self.log(message, "info")

    def warn(self, message: str) -> LogEntry:
        return self.log(message, "warn")

    def error(self, message: str) -> LogEntry:
        return self.log(message, "error")

    def recent(self, limit: int | None = None) -> list[LogEntry]:
        entries = list(self._entries)
        if limit is not None:
            entries = entries[-limit:]
        return entries

    def close(self) -> None:
        if self._writer is not None:
            self._writer.close()

    def _write(self, entry: LogEntry) -> None:
        if self._writer is None or self._writer_failed:
            return
        error = self._writer.error()
        if error is not None:
            self._writer_failed = True
            print(f"runlog failure: {type(error).__name__}: {error}", file=sys.stderr)
            return
        self._writer.enqueue_nowait({"record_type": "log", **asdict(entry)})


def format_console(entry: LogEntry) -> str:
    try:
        stamp = datetime.fromisoformat(entry.time).astimezone().strftime("%H:%M:%S")
    except ValueError:
        stamp = entry.time
    return f"[{stamp}] {entry.level.upper()}: {entry.message}"
