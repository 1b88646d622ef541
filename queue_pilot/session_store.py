from __future__ import annotations

from collections import deque
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any, Callable, Iterable

import orjson

from .writers import SnapshotWriter, write_atomic

DEFAULT_MAX_SESSIONS = 200
STORE_VERSION = 1


@dataclass(frozen=True, slots=True)
class CompletedSession:
    start_position: int
    start_time: float
    end_time: float
    duration_ms: int
    day_of_week: int
    start_hour: int
    positions_per_hour: int

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> "CompletedSession":
        if "start_position" not in raw and "startPos" in raw:
            return cls._from_legacy(raw)
        return cls(
            start_position=int(raw["start_position"]),
            start_time=float(raw["start_time"]),
            end_time=float(raw["end_time"]),
            duration_ms=int(raw["duration_ms"]),
            day_of_week=int(raw["day_of_week"]) % 7,
            start_hour=int(raw["start_hour"]) % 24,
            positions_per_hour=int(raw["positions_per_hour"]),
        )

    @classmethod
    def _from_legacy(cls, raw: dict[str, Any]) -> "CompletedSession":
        # camelCase entries with millisecond timestamps
        start_ms = float(raw["startTimeMs"])
        end_ms = float(raw["endTimeMs"])
        return cls(
            start_position=int(raw["startPos"]),
            start_time=start_ms / 1000.0,
            end_time=end_ms / 1000.0,
            duration_ms=int(raw.get("durationMs", end_ms - start_ms)),
            day_of_week=int(raw["dayOfWeek"]) % 7,
            start_hour=int(raw["startHour"]) % 24,
            positions_per_hour=int(raw["positionsPerHour"]),
        )


def _parse_sessions(raw: Any) -> tuple[list[CompletedSession], int]:
    if not isinstance(raw, dict) or not isinstance(raw.get("sessions"), list):
        return [], 0
    sessions: list[CompletedSession] = []
    skipped = 0
    for item in raw["sessions"]:
        if not isinstance(item, dict):
            skipped += 1
            continue
        try:
            sessions.append(CompletedSession.from_dict(item))
        except (KeyError, TypeError, ValueError):
            skipped += 1
    return sessions, skipped


class SessionStore:
    """Bounded, append-only history of completed queue sessions."""

    def __init__(
        self,
        path: Path | str | None,
        *,
        max_sessions: int = DEFAULT_MAX_SESSIONS,
        writer: SnapshotWriter | None = None,
        on_error: Callable[[Exception], None] | None = None,
    ) -> None:
        if max_sessions <= 0:
            raise ValueError("max_sessions must be >= 1")
        self._path = Path(path) if path is not None else None
        self._max_sessions = max_sessions
        self._writer = writer
        self._on_error = on_error
        self._sessions: deque[CompletedSession] = deque()
        self.load_skipped = 0
        self.persist_failures = 0

    @property
    def path(self) -> Path | None:
        return self._path

    @property
    def max_sessions(self) -> int:
        return self._max_sessions

    def __len__(self) -> int:
        return len(self._sessions)

    def sessions(self) -> list[CompletedSession]:
        return list(self._sessions)

    def load(self) -> int:
        self._sessions.clear()
        self.load_skipped = 0
        if self._path is None or not self._path.exists():
            return 0
        try:
            raw = orjson.loads(self._path.read_bytes())
        except (OSError, orjson.JSONDecodeError):
            return 0
        sessions, skipped = _parse_sessions(raw)
        self.load_skipped = skipped
        self._extend(sessions)
        return len(self._sessions)

    def append(self, session: CompletedSession) -> None:
        self._extend([session])
        self._persist()

    def snapshot_bytes(self) -> bytes:
        document = {
            "version": STORE_VERSION,
            "sessions": [session.to_dict() for session in self._sessions],
        }
        return orjson.dumps(document, option=orjson.OPT_INDENT_2)

    def _extend(self, sessions: Iterable[CompletedSession]) -> None:
        for session in sessions:
            self._sessions.append(session)
        while len(self._sessions) > self._max_sessions:
            self._sessions.popleft()

    def _persist(self) -> None:
        if self._path is None:
            return
        payload = self.snapshot_bytes()
        if self._writer is not None and self._writer.submit(self._path, payload):
            return
        try:
            write_atomic(self._path, payload)
        except OSError as exc:
            self.persist_failures += 1
            if self._on_error is not None:
                self._on_error(exc)
