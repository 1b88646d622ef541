from __future__ import annotations

from dataclasses import dataclass, fields
from enum import Enum
from typing import Any


class LifecycleState(str, Enum):
    IDLE = "idle"
    AUTHENTICATING = "authenticating"
    QUEUEING = "queueing"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"
    # terminal: run-duration budget spent
    STOPPED = "stopped"


@dataclass(frozen=True, slots=True)
class QueueHistoryPoint:
    timestamp: float
    position: int


@dataclass(frozen=True, slots=True)
class LifecycleSnapshot:
    state: LifecycleState
    in_queue: bool
    position: int | None
    eta: str | None
    finish_time: str | None
    auto_restart: bool
    idle_prevention_active: bool
    consumer_attached: bool
    username: str | None
    health: float | None
    food: float | None
    started_at: float | None

    def to_dict(self) -> dict[str, Any]:
        payload = {field.name: getattr(self, field.name) for field in fields(self)}
        payload["state"] = self.state.value
        return payload


@dataclass(slots=True)
class LifecycleStatus:
    state: LifecycleState = LifecycleState.IDLE
    in_queue: bool = False
    position: int | None = None
    eta: str | None = None
    finish_time: str | None = None
    auto_restart: bool = False
    idle_prevention_active: bool = False
    consumer_attached: bool = False
    username: str | None = None
    health: float | None = None
    food: float | None = None
    started_at: float | None = None

    def apply(self, changes: dict[str, Any]) -> bool:
        changed = False
        for name, value in changes.items():
            if not hasattr(self, name):
                raise AttributeError(f"unknown lifecycle field: {name}")
            if getattr(self, name) != value:
                setattr(self, name, value)
                changed = True
        return changed

    def snapshot(self) -> LifecycleSnapshot:
        return LifecycleSnapshot(
            state=self.state,
            in_queue=self.in_queue,
            position=self.position,
            eta=self.eta,
            finish_time=self.finish_time,
            auto_restart=self.auto_restart,
            idle_prevention_active=self.idle_prevention_active,
            consumer_attached=self.consumer_attached,
            username=self.username,
            health=self.health,
            food=self.food,
            started_at=self.started_at,
        )
