from __future__ import annotations

import math
import time
from collections import deque
from dataclasses import dataclass
from datetime import datetime, tzinfo
from typing import Callable

from .session_store import CompletedSession, SessionStore

LIVE_WINDOW = 30
LIVE_MIN_SAMPLES = 5
LIVE_MIN_ELAPSED_SECONDS = 60.0
MIN_SESSION_SECONDS = 120.0
MAX_POSITIONS_PER_HOUR = 10_000

BASE_WEIGHT = 0.5
HISTORICAL_WEIGHT_PER_SESSION = 0.04
HISTORICAL_WEIGHT_CAP = 0.5
LIVE_WEIGHT_PER_SAMPLE = 0.02
LIVE_WEIGHT_CAP = 0.4

HOUR_SIGMA = 4.0
OFF_DAY_TYPE_WEIGHT = 0.35
WEEKEND_DAYS = (0, 6)


@dataclass(frozen=True, slots=True)
class QueueSample:
    timestamp: float
    position: int


@dataclass(frozen=True, slots=True)
class HistoricalRate:
    rate: float
    effective_sessions: float
    sessions: int


def day_of_week(moment: datetime) -> int:
    # 0 = Sunday ... 6 = Saturday
    return (moment.weekday() + 1) % 7


def is_weekend(dow: int) -> bool:
    return dow in WEEKEND_DAYS


def hour_distance(a: int, b: int) -> int:
    diff = abs(a - b) % 24
    return min(diff, 24 - diff)


def hour_weight(session_hour: int, hour: int) -> float:
    distance = hour_distance(session_hour, hour)
    return math.exp(-(distance * distance) / (2.0 * HOUR_SIGMA * HOUR_SIGMA))


def round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def format_eta(minutes: float) -> str:
    total = max(0, int(minutes))
    return f"{total // 60}h {total % 60}m"


def format_duration(seconds: float) -> str:
    total_min = max(0, round(seconds / 60.0))
    hours, mins = divmod(total_min, 60)
    if hours == 0:
        return f"{mins}m"
    return f"{hours}h {mins}m"


class ETAEstimator:
    def __init__(
        self,
        store: SessionStore,
        *,
        clock: Callable[[], float] = time.time,
        tz: tzinfo | None = None,
    ) -> None:
        self._store = store
        self._clock = clock
        self._tz = tz
        self._samples: deque[QueueSample] = deque(maxlen=LIVE_WINDOW)
        self._start_position: int | None = None
        self._start_time: float | None = None

    @property
    def store(self) -> SessionStore:
        return self._store

    @property
    def session_active(self) -> bool:
        return self._start_time is not None

    @property
    def start_position(self) -> int | None:
        return self._start_position

    @property
    def start_time(self) -> float | None:
        return self._start_time

    @property
    def samples(self) -> list[QueueSample]:
        return list(self._samples)

    def now(self) -> datetime:
        return datetime.fromtimestamp(self._clock(), self._tz)

    def begin_session(self, start_position: int) -> bool:
        if self.session_active:
            return False
        now = self._clock()
        self._start_position = int(start_position)
        self._start_time = now
        self._samples.clear()
        self._samples.append(QueueSample(now, int(start_position)))
        return True

    def record_sample(self, position: int) -> None:
        self._samples.append(QueueSample(self._clock(), int(position)))

    def complete_session(self) -> CompletedSession | None:
        if not self.session_active:
            return None
        try:
            return self._build_session(self._start_position or 0)
        finally:
            self.discard_session()

    def record_partial(self, end_position: int) -> CompletedSession | None:
        if not self.session_active:
            return None
        try:
            start = self._start_position or 0
            if end_position >= start:
                return None
            return self._build_session(start - end_position)
        finally:
            self.discard_session()

    def discard_session(self) -> None:
        self._start_position = None
        self._start_time = None
        self._samples.clear()

    def _build_session(self, positions_moved: int) -> CompletedSession | None:
        assert self._start_time is not None and self._start_position is not None
        end_time = self._clock()
        duration_s = end_time - self._start_time
        if duration_s < MIN_SESSION_SECONDS:
            return None
        rate = round_half_up(positions_moved / (duration_s / 3600.0))
        if rate <= 0 or rate > MAX_POSITIONS_PER_HOUR:
            return None
        started = datetime.fromtimestamp(self._start_time, self._tz)
        session = CompletedSession(
            start_position=self._start_position,
            start_time=self._start_time,
            end_time=end_time,
            duration_ms=int(round(duration_s * 1000)),
            day_of_week=day_of_week(started),
            start_hour=started.hour,
            positions_per_hour=rate,
        )
        self._store.append(session)
        return session

    def live_rate(self) -> float | None:
        if len(self._samples) < LIVE_MIN_SAMPLES:
            return None
        oldest = self._samples[0]
        newest = self._samples[-1]
        elapsed_s = newest.timestamp - oldest.timestamp
        if elapsed_s < LIVE_MIN_ELAPSED_SECONDS:
            return None
        dropped = oldest.position - newest.position
        if dropped <= 0:
            return None
        return dropped / (elapsed_s / 3600.0)

    def historical_rate(self, now: datetime | None = None) -> HistoricalRate | None:
        sessions = self._store.sessions()
        if not sessions:
            return None
        now = now or self.now()
        hour = now.hour
        weekend = is_weekend(day_of_week(now))
        ordered = sorted(sessions, key=lambda s: s.start_time, reverse=True)
        count = len(ordered)
        weighted_sum = 0.0
        total_weight = 0.0
        total_sq = 0.0
        for idx, session in enumerate(ordered):
            day_type = 1.0 if is_weekend(session.day_of_week) == weekend else OFF_DAY_TYPE_WEIGHT
            recency = (count - idx) / count
            weight = hour_weight(session.start_hour, hour) * day_type * recency
            weighted_sum += session.positions_per_hour * weight
            total_weight += weight
            total_sq += weight * weight
        if total_weight <= 0 or total_sq <= 0:
            return None
        effective = min(float(count), (total_weight * total_weight) / total_sq)
        return HistoricalRate(
            rate=weighted_sum / total_weight,
            effective_sessions=effective,
            sessions=count,
        )

    def estimate_minutes(
        self,
        current_position: int,
        base_minutes: float,
        now: datetime | None = None,
    ) -> int:
        if not math.isfinite(base_minutes):
            base_minutes = 0.0
        candidates: list[tuple[float, float]] = [(base_minutes, BASE_WEIGHT)]

        historical = self.historical_rate(now)
        if historical is not None and historical.rate > 0:
            weight = min(
                HISTORICAL_WEIGHT_CAP,
                HISTORICAL_WEIGHT_PER_SESSION * historical.effective_sessions,
            )
            candidates.append((current_position / historical.rate * 60.0, weight))

        live = self.live_rate()
        if live is not None and live > 0:
            weight = min(LIVE_WEIGHT_CAP, LIVE_WEIGHT_PER_SAMPLE * len(self._samples))
            candidates.append((current_position / live * 60.0, weight))

        total_weight = sum(weight for _minutes, weight in candidates)
        blended = sum(minutes * (weight / total_weight) for minutes, weight in candidates)
        return max(1, round_half_up(blended))

    def summary(self, now: datetime | None = None) -> str:
        text = f"{len(self._store)} sessions total"
        historical = self.historical_rate(now)
        if historical is not None:
            text += (
                f", ~{round(historical.rate)} pos/hr historical"
                f" ({historical.effective_sessions:.1f} eff.)"
            )
        return text
