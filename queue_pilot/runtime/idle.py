from __future__ import annotations

import asyncio
import math
import random
from dataclasses import dataclass
from typing import Callable

from queue_pilot.config import Config
from queue_pilot.transport import CONTROLS, Avatar, Vec3

DEFAULT_MAX_DRIFT = 2.0

# name -> (interval multiplier, max jitter as a fraction of the base interval)
ACTION_PLAN: dict[str, tuple[float, float]] = {
    "walk": (1.0, 0.2),
    "look": (0.7, 0.1333),
    "jump": (1.5, 0.3333),
    "swing": (2.0, 0.2667),
    "sneak": (3.0, 0.3333),
}
WALK_DIRECTIONS = ("forward", "back", "left", "right")


@dataclass(frozen=True, slots=True)
class IdleOptions:
    walk: bool = True
    look: bool = True
    jump: bool = True
    swing: bool = True
    sneak: bool = True
    interval_seconds: float = 15.0
    max_drift: float = DEFAULT_MAX_DRIFT

    @classmethod
    def from_config(cls, config: Config) -> "IdleOptions":
        return cls(
            walk=config.idle_walk,
            look=config.idle_look,
            jump=config.idle_jump,
            swing=config.idle_swing,
            sneak=config.idle_sneak,
            interval_seconds=config.idle_interval_seconds,
            max_drift=config.idle_max_drift,
        )

    def enabled_actions(self) -> list[str]:
        return [name for name in ACTION_PLAN if getattr(self, name)]


def yaw_towards(source: Vec3, target: Vec3) -> float:
    dx = target.x - source.x
    dz = target.z - source.z
    return math.atan2(-dx, dz)


class IdlePreventionScheduler:
    """Randomized repeating actions kept within max_drift of the start position."""

    def __init__(
        self,
        avatar: Avatar,
        options: IdleOptions | None = None,
        *,
        rng: random.Random | None = None,
        on_error: Callable[[str], None] | None = None,
    ) -> None:
        self._avatar = avatar
        self._options = options or IdleOptions()
        self._rng = rng or random.Random()
        self._on_error = on_error
        self._loop: asyncio.AbstractEventLoop | None = None
        self._tasks: dict[str, asyncio.TimerHandle] = {}
        self._followups: set[asyncio.TimerHandle] = set()
        self.running = False
        self.origin: Vec3 | None = None
        self.action_counts: dict[str, int] = {name: 0 for name in ACTION_PLAN}

    @property
    def options(self) -> IdleOptions:
        return self._options

    def pending_tasks(self) -> int:
        return len(self._tasks) + len(self._followups)

    def start(self) -> bool:
        if self.running:
            return False
        self._loop = asyncio.get_running_loop()
        self.running = True
        self.origin = self._avatar.position()
        for name in self._options.enabled_actions():
            self._schedule(name)
        return True

    def stop(self) -> bool:
        if not self.running:
            return False
        self.running = False
        for handle in self._tasks.values():
            handle.cancel()
        self._tasks.clear()
        for handle in self._followups:
            handle.cancel()
        self._followups.clear()
        self._release_all()
        return True

    def next_delay(self, name: str) -> float:
        multiplier, jitter_fraction = ACTION_PLAN[name]
        base = self._options.interval_seconds
        return base * multiplier + self._rng.uniform(0.0, base * jitter_fraction)

    def distance_from_origin(self) -> float:
        position = self._avatar.position()
        if self.origin is None or position is None:
            return 0.0
        return position.horizontal_distance(self.origin)

    def is_too_far(self) -> bool:
        return self.distance_from_origin() >= self._options.max_drift

    def _schedule(self, name: str) -> None:
        assert self._loop is not None
        self._tasks[name] = self._loop.call_later(self.next_delay(name), self._tick, name)

    def _tick(self, name: str) -> None:
        self._tasks.pop(name, None)
        if not self.running:
            return
        self._run_action(name)
        if self.running:
            self._schedule(name)

    def _run_action(self, name: str) -> None:
        action = getattr(self, f"_action_{name}")
        try:
            action()
            self.action_counts[name] += 1
        except Exception as exc:
            self._report(f"Idle prevention {name} error: {exc}")

    def _later(self, delay: float, callback: Callable[[], None]) -> None:
        assert self._loop is not None
        handle: asyncio.TimerHandle | None = None

        def _fire() -> None:
            self._followups.discard(handle)
            if not self.running:
                return
            try:
                callback()
            except Exception as exc:
                self._report(f"Idle prevention follow-up error: {exc}")

        handle = self._loop.call_later(delay, _fire)
        self._followups.add(handle)

    def _release(self, control: str) -> Callable[[], None]:
        return lambda: self._avatar.set_control(control, False)

    def _action_walk(self) -> None:
        distance = self.distance_from_origin()
        if self.origin is not None and distance >= self._options.max_drift:
            self.return_to_origin(max_seconds=0.6)
            return
        self._avatar.look(self._rng.uniform(0.0, math.pi * 2), 0.0)
        direction = self._rng.choice(WALK_DIRECTIONS)
        self._avatar.set_control(direction, True)

        def _finish_walk() -> None:
            self._avatar.set_control(direction, False)
            if self.is_too_far():
                self.return_to_origin(max_seconds=0.8)

        self._later(self._rng.uniform(0.2, 0.5), _finish_walk)

    def return_to_origin(self, *, max_seconds: float = 0.8) -> bool:
        position = self._avatar.position()
        if self.origin is None or position is None:
            return False
        distance = position.horizontal_distance(self.origin)
        self._avatar.look(yaw_towards(position, self.origin), 0.0)
        self._avatar.set_control("forward", True)
        self._later(min(max_seconds, distance * 0.2), self._release("forward"))
        return True

    def _action_look(self) -> None:
        yaw = self._rng.uniform(0.0, math.pi * 2)
        pitch = (self._rng.random() - 0.5) * math.pi * 0.8
        self._avatar.look(yaw, pitch)

    def _action_jump(self) -> None:
        if self._rng.random() > 0.4:
            self._avatar.set_control("jump", True)
            self._later(self._rng.uniform(0.3, 0.6), self._release("jump"))

    def _action_swing(self) -> None:
        self._avatar.swing()

    def _action_sneak(self) -> None:
        self._avatar.set_control("sneak", True)
        self._later(self._rng.uniform(1.0, 4.0), self._release("sneak"))

    def _release_all(self) -> None:
        for control in CONTROLS:
            try:
                self._avatar.set_control(control, False)
            except Exception:
                # connection already gone; nothing left to release
                continue

    def _report(self, message: str) -> None:
        if self._on_error is not None:
            self._on_error(message)
