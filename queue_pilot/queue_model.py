from __future__ import annotations

import math
from pathlib import Path
from typing import Callable

import orjson

from .writers import SnapshotWriter, write_atomic

DECAY_CONSTANT = 150.0

DEFAULT_PLACES = (257, 789, 93, 418, 666, 826, 231, 506, 550, 207, 586, 486, 412, 758)
DEFAULT_FACTORS = (
    0.9999291667668093,
    0.9999337457796981,
    0.9998618838664679,
    0.9999168965649361,
    0.9999219189483673,
    0.9999279556964097,
    0.9999234240704379,
    0.9999262577896301,
    0.9999462301738332,
    0.9999220416881794,
    0.999938895110192,
    0.9999440195022513,
    0.9999410569845172,
    0.9999473463335498,
)


def interpolate_linear(x: float, xs: list[float], ys: list[float]) -> float:
    """Piecewise-linear interpolation; outside the range the nearest segment is extended."""
    if not xs or len(xs) != len(ys):
        raise ValueError("interpolation needs matching, non-empty point lists")
    points = sorted(zip(xs, ys))
    if len(points) == 1:
        return points[0][1]
    if x <= points[0][0]:
        (x0, y0), (x1, y1) = points[0], points[1]
    elif x >= points[-1][0]:
        (x0, y0), (x1, y1) = points[-2], points[-1]
    else:
        idx = 1
        while points[idx][0] < x:
            idx += 1
        (x0, y0), (x1, y1) = points[idx - 1], points[idx]
    if x1 == x0:
        return (y0 + y1) / 2.0
    return y0 + (y1 - y0) * (x - x0) / (x1 - x0)


class QueueModel:
    def __init__(
        self,
        places: list[float] | None = None,
        factors: list[float] | None = None,
        *,
        path: Path | str | None = None,
        writer: SnapshotWriter | None = None,
        on_error: Callable[[Exception], None] | None = None,
    ) -> None:
        self.places = list(places if places is not None else DEFAULT_PLACES)
        self.factors = list(factors if factors is not None else DEFAULT_FACTORS)
        if not self.places or len(self.places) != len(self.factors):
            raise ValueError("places and factors must be non-empty and the same length")
        self._path = Path(path) if path is not None else None
        self._writer = writer
        self._on_error = on_error

    @classmethod
    def load(
        cls,
        path: Path | str,
        *,
        writer: SnapshotWriter | None = None,
        on_error: Callable[[Exception], None] | None = None,
    ) -> "QueueModel":
        path = Path(path)
        places = factors = None
        try:
            raw = orjson.loads(path.read_bytes())
        except (OSError, orjson.JSONDecodeError):
            raw = None
        if isinstance(raw, dict):
            raw_places = raw.get("place")
            raw_factors = raw.get("factor")
            if (
                isinstance(raw_places, list)
                and isinstance(raw_factors, list)
                and raw_places
                and len(raw_places) == len(raw_factors)
            ):
                try:
                    places = [float(value) for value in raw_places]
                    factors = [float(value) for value in raw_factors]
                except (TypeError, ValueError):
                    places = factors = None
        return cls(places, factors, path=path, writer=writer, on_error=on_error)

    def factor_for(self, queue_length: float) -> float:
        return interpolate_linear(queue_length, self.places, self.factors)

    def wait_seconds(self, queue_length: float, queue_pos: float) -> float:
        b = self.factor_for(queue_length)
        if not 0.0 < b < 1.0:
            return 0.0
        ratio = (queue_pos + DECAY_CONSTANT) / (queue_length + DECAY_CONSTANT)
        if ratio <= 0:
            return 0.0
        return math.log(ratio) / math.log(b)

    def base_minutes(self, start_position: int, position: int) -> float:
        total = self.wait_seconds(start_position, 0)
        elapsed = self.wait_seconds(start_position, position)
        return max(0.0, (total - elapsed) / 60.0)

    def learn(self, start_position: int, elapsed_seconds: float) -> float | None:
        if start_position <= 0 or elapsed_seconds <= 0:
            return None
        factor = (DECAY_CONSTANT / (start_position + DECAY_CONSTANT)) ** (1.0 / elapsed_seconds)
        self.places.append(float(start_position))
        self.factors.append(factor)
        self.save()
        return factor

    def save(self) -> None:
        if self._path is None:
            return
        payload = orjson.dumps({"place": self.places, "factor": self.factors})
        if self._writer is not None and self._writer.submit(self._path, payload):
            return
        try:
            write_atomic(self._path, payload)
        except OSError as exc:
            if self._on_error is not None:
                self._on_error(exc)
