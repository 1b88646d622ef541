from __future__ import annotations

import asyncio
import sys
from dataclasses import dataclass
from typing import Any, Callable

STATE_CHANGE = "state_change"
QUEUE_UPDATE = "queue_update"
QUEUE_FINISHED = "queue_finished"
STOPPED = "stopped"
LOG = "log"
POSITION_ALERT = "position_alert"

TOPICS = (STATE_CHANGE, QUEUE_UPDATE, QUEUE_FINISHED, STOPPED, LOG, POSITION_ALERT)

Subscriber = Callable[[Any], None]


@dataclass(frozen=True, slots=True)
class QueueUpdate:
    position: int
    eta: str
    finish_time: str


@dataclass(frozen=True, slots=True)
class PositionAlert:
    position: int
    threshold: int


class EventBus:
    """Fan lifecycle events out to front-end callbacks, one loop callback per delivery."""

    def __init__(self) -> None:
        self._subscribers: dict[str, list[Subscriber]] = {topic: [] for topic in TOPICS}
        self.subscriber_errors = 0

    def subscribe(self, topic: str, callback: Subscriber) -> Callable[[], None]:
        if topic not in self._subscribers:
            raise ValueError(f"unknown topic: {topic}")
        self._subscribers[topic].append(callback)

        def _unsubscribe() -> None:
            callbacks = self._subscribers[topic]
            if callback in callbacks:
                callbacks.remove(callback)

        return _unsubscribe

    def publish(self, topic: str, payload: Any = None) -> None:
        callbacks = list(self._subscribers.get(topic, ()))
        if not callbacks:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            loop = None
        for callback in callbacks:
            if loop is None:
                self._deliver(topic, callback, payload)
            else:
                loop.call_soon(self._deliver, topic, callback, payload)

    def _deliver(self, topic: str, callback: Subscriber, payload: Any) -> None:
        try:
            callback(payload)
        except Exception as exc:
            self.subscriber_errors += 1
            print(f"subscriber failure on {topic}: {type(exc).__name__}: {exc}", file=sys.stderr)
