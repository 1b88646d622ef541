from __future__ import annotations

import contextlib
import os
import queue
import threading
import time
from pathlib import Path
from typing import Any, Callable

import orjson

_WRITER_STOP = object()
_ORJSON_NDJSON_OPTIONS = orjson.OPT_APPEND_NEWLINE
if hasattr(orjson, "OPT_ESCAPE_NON_ASCII"):
    _ORJSON_NDJSON_OPTIONS |= orjson.OPT_ESCAPE_NON_ASCII

ErrorCallback = Callable[[Exception], None]


def write_atomic(path: Path, payload: bytes) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_name(f".{path.name}.tmp")
    with tmp_path.open("wb") as handle:
        handle.write(payload)
        handle.flush()
        os.fsync(handle.fileno())
    os.replace(tmp_path, path)


class NdjsonWriter:
    """Append records to one NDJSON file from a daemon thread."""

    def __init__(
        self,
        path: Path,
        *,
        max_queue: int = 10000,
        flush_interval_seconds: float = 0.5,
        batch_size: int = 200,
        thread_name: str = "runlog-writer",
    ) -> None:
        self._path = Path(path)
        self._queue: queue.Queue[object] = queue.Queue(maxsize=max_queue)
        self._flush_interval_seconds = flush_interval_seconds
        self._batch_size = batch_size
        self._dropped = 0
        self._error: Exception | None = None
        self._error_count = 0
        self._thread = threading.Thread(
            target=self._run,
            name=thread_name,
            daemon=True,
        )
        self._thread.start()

    @property
    def path(self) -> Path:
        return self._path

    def enqueue_nowait(self, record: dict[str, Any]) -> bool:
        if self._error is not None:
            return False
        try:
            self._queue.put_nowait(record)
        except queue.Full:
            self._dropped += 1
            return False
        return True

    def close(self, timeout_seconds: float = 5.0) -> None:
        with contextlib.suppress(queue.Full):
            self._queue.put_nowait(_WRITER_STOP)
        self._thread.join(timeout=timeout_seconds)

    def stats(self) -> dict[str, int]:
        return {
            "queue_size": self._queue.qsize(),
            "dropped": self._dropped,
            "errors": self._error_count,
        }

    def error(self) -> Exception | None:
        return self._error

    def _record_error(self, exc: Exception) -> None:
        if self._error is None:
            self._error = exc
        self._error_count += 1

    def _run(self) -> None:
        handle = None
        pending: list[bytes] = []
        last_flush = time.monotonic()
        try:
            while True:
                try:
                    item = self._queue.get(timeout=self._flush_interval_seconds)
                except queue.Empty:
                    item = None
                if item is _WRITER_STOP:
                    break
                if item is not None:
                    pending.append(orjson.dumps(item, option=_ORJSON_NDJSON_OPTIONS))
                now = time.monotonic()
                if len(pending) >= self._batch_size or (
                    pending and now - last_flush >= self._flush_interval_seconds
                ):
                    handle = self._flush_pending(pending, handle)
                    last_flush = now
        except Exception as exc:
            self._record_error(exc)
        finally:
            with contextlib.suppress(Exception):
                handle = self._flush_pending(pending, handle)
            if handle is not None:
                with contextlib.suppress(Exception):
                    handle.flush()
                    handle.close()

    def _flush_pending(self, pending: list[bytes], handle: Any) -> Any:
        if not pending:
            return handle
        try:
            if handle is None:
                self._path.parent.mkdir(parents=True, exist_ok=True)
                handle = self._path.open("ab")
            handle.write(b"".join(pending))
            handle.flush()
        except Exception as exc:
            self._record_error(exc)
        pending.clear()
        return handle


class SnapshotWriter:
    """Rewrite whole JSON documents off the event loop; the newest snapshot per path wins."""

    def __init__(
        self,
        *,
        on_error: ErrorCallback | None = None,
        thread_name: str = "snapshot-writer",
    ) -> None:
        self._on_error = on_error
        self._lock = threading.Lock()
        self._latest: dict[Path, bytes] = {}
        self._wake = threading.Event()
        self._idle = threading.Event()
        self._idle.set()
        self._closed = False
        self._writes = 0
        self._errors = 0
        self._thread = threading.Thread(
            target=self._run,
            name=thread_name,
            daemon=True,
        )
        self._thread.start()

    def submit(self, path: Path, payload: bytes) -> bool:
        with self._lock:
            if self._closed:
                return False
            self._latest[Path(path)] = payload
            self._idle.clear()
        self._wake.set()
        return True

    def flush(self, timeout_seconds: float = 5.0) -> bool:
        return self._idle.wait(timeout=timeout_seconds)

    def close(self, timeout_seconds: float = 5.0) -> None:
        with self._lock:
            self._closed = True
        self._wake.set()
        self._thread.join(timeout=timeout_seconds)

    def stats(self) -> dict[str, int]:
        return {"writes": self._writes, "errors": self._errors}

    def _take(self) -> dict[Path, bytes]:
        with self._lock:
            batch = self._latest
            self._latest = {}
            return batch

    def _run(self) -> None:
        while True:
            self._wake.wait()
            self._wake.clear()
            batch = self._take()
            for path, payload in batch.items():
                try:
                    write_atomic(path, payload)
                    self._writes += 1
                except OSError as exc:
                    self._errors += 1
                    if self._on_error is not None:
                        self._on_error(exc)
            with self._lock:
                if not self._latest:
                    self._idle.set()
                if self._closed and not self._latest:
                    return
