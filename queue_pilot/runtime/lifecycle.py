from __future__ import annotations

import asyncio
import random
import time
from collections import deque
from dataclasses import asdict
from datetime import datetime, timezone
from typing import Any, Callable

from queue_pilot.config import Config
from queue_pilot.eta import ETAEstimator, format_duration, format_eta
from queue_pilot.queue_model import QueueModel
from queue_pilot.runlog import Runlog
from queue_pilot.session_store import CompletedSession, SessionStore
from queue_pilot.signals import is_finish_marker, is_queue_notice, parse_position
from queue_pilot.text_extract import extract_text
from queue_pilot.transport import Connection, InboundMessage, Transport, close_reason

from .events import (
    POSITION_ALERT,
    QUEUE_FINISHED,
    QUEUE_UPDATE,
    STATE_CHANGE,
    STOPPED,
    EventBus,
    PositionAlert,
    QueueUpdate,
)
from .idle import IdleOptions, IdlePreventionScheduler
from .state import LifecycleSnapshot, LifecycleState, LifecycleStatus, QueueHistoryPoint

QUEUE_STATES = (LifecycleState.AUTHENTICATING, LifecycleState.QUEUEING)
RECENT_LOGS = 50


def _describe(reason: Any) -> str:
    if isinstance(reason, BaseException):
        text = str(reason) or type(reason).__name__
        return text
    if reason:
        return str(reason)
    return "Unknown reason"


class ConnectionLifecycle:
    def __init__(
        self,
        config: Config,
        transport: Transport,
        *,
        bus: EventBus | None = None,
        store: SessionStore | None = None,
        estimator: ETAEstimator | None = None,
        queue_model: QueueModel | None = None,
        runlog: Runlog | None = None,
        clock: Callable[[], float] = time.time,
        rng: random.Random | None = None,
    ) -> None:
        self._config = config
        self._transport = transport
        self.bus = bus or EventBus()
        self.runlog = runlog or Runlog(self.bus, max_entries=config.log_buffer_size)
        if store is None:
            store = SessionStore(None, max_sessions=config.history_max_sessions)
        self.store = store
        self.estimator = estimator or ETAEstimator(self.store, clock=clock)
        self.queue_model = queue_model or QueueModel()
        self._clock = clock
        self._rng = rng
        self._status = LifecycleStatus(auto_restart=config.restart_queue)
        self._loop: asyncio.AbstractEventLoop | None = None
        self._conn: Connection | None = None
        self._open_task: asyncio.Task | None = None
        self._pump_task: asyncio.Task | None = None
        self._probe_task: asyncio.Task | None = None
        self._reconnect_handle: asyncio.TimerHandle | None = None
        self._status_handle: asyncio.TimerHandle | None = None
        self._idle: IdlePreventionScheduler | None = None
        self._idle_wanted = config.idle_prevention_enabled
        self._stopped_by_operator = False
        self._finished = False
        self._history: deque[QueueHistoryPoint] = deque(
            maxlen=config.queue_history_max_points
        )
        self._run_started = clock()
        self.relog_count = 0
        self.terminated = asyncio.Event()
        self.exit_code = 0
        self._closing: set[asyncio.Task] = set()
        self._reset_session_tracking()

    @property
    def state(self) -> LifecycleState:
        return self._status.state

    @property
    def connection(self) -> Connection | None:
        return self._conn

    @property
    def idle_scheduler(self) -> IdlePreventionScheduler | None:
        return self._idle

    def snapshot(self) -> LifecycleSnapshot:
        return self._status.snapshot()

    def queue_history(self) -> list[QueueHistoryPoint]:
        return list(self._history)

    def get_state(self) -> dict[str, Any]:
        payload = self.snapshot().to_dict()
        payload["logs"] = [asdict(entry) for entry in self.runlog.recent(RECENT_LOGS)]
        payload["queue_history"] = [asdict(point) for point in self._history]
        payload["stored_sessions"] = len(self.store)
        payload["relog_count"] = self.relog_count
        payload["mode"] = self._config.mode
        return payload

    def _update(self, **changes: Any) -> None:
        if self._status.apply(changes):
            self.bus.publish(STATE_CHANGE, self._status.snapshot())

    def _log(self, message: str, level: str = "info") -> None:
        self.runlog.log(message, level)

    def report_persistence_error(self, exc: Exception) -> None:
        """Safe to call from writer threads."""
        message = f"Failed to save data: {exc}"
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if self._loop is not None and running is not self._loop and not self._loop.is_closed():
            self._loop.call_soon_threadsafe(self._log, message, "warn")
            return
        self._log(message, "warn")

    def _reset_session_tracking(self) -> None:
        self._last_position: int | None = None
        self._queue_start_place: int | None = None
        self._queue_start_time: float | None = None
        self._pos_at_last_status: int | None = None
        self._parse_error_logged = False
        self._notification_sent = False
        self._relog_pending = False

    def start(self) -> bool:
        if self._status.in_queue:
            self._log("Already in queue", "warn")
            return False
        if self._status.state is LifecycleState.STOPPED:
            self._log("Run duration budget spent; not starting", "warn")
            return False
        self._loop = asyncio.get_running_loop()
        self._stopped_by_operator = False
        self._log("Starting queue...")
        self._history.clear()
        self._cleanup()
        self._update(
            state=LifecycleState.AUTHENTICATING,
            in_queue=True,
            started_at=self._clock(),
            position=None,
            eta=None,
            finish_time=None,
        )
        self._open_task = self._loop.create_task(self._open_connection())
        return True

    def stop(self) -> None:
        self._stopped_by_operator = True
        self._idle_wanted = self._config.idle_prevention_enabled
        self._close_session()
        self._cleanup()
        self._update(
            state=LifecycleState.IDLE,
            in_queue=False,
            position=None,
            eta=None,
            finish_time=None,
            consumer_attached=False,
            idle_prevention_active=False,
            health=None,
            food=None,
        )
        self._log("Queue stopped")
        self.bus.publish(STOPPED, self.snapshot())

    def toggle_auto_restart(self) -> bool:
        enabled = not self._status.auto_restart
        self._update(auto_restart=enabled)
        self._log(f"Auto-restart {'enabled' if enabled else 'disabled'}")
        return enabled

    def toggle_idle_prevention(self) -> bool:
        if self._idle is not None and self._idle.running:
            self._stop_idle()
            self._idle_wanted = False
            self._log("Idle prevention disabled")
            return False
        if self._finished:
            self._idle_wanted = True
        else:
            self._idle_wanted = not self._idle_wanted
        if not self._idle_wanted:
            self._log("Idle prevention disabled")
            return False
        if self._try_start_idle():
            return True
        if self._finished:
            self._log("Idle prevention enabled (will activate when no player is attached)")
        else:
            self._log("Idle prevention enabled (will activate after queue)")
        return True

    async def _open_connection(self) -> None:
        try:
            conn = await self._transport.open()
        except Exception as exc:
            self._open_task = None
            self._log(f"Failed to open connection: {_describe(exc)}", "error")
            self._update(in_queue=False)
            self._after_disconnect()
            return
        self._open_task = None
        if self._stopped_by_operator or self._status.state not in QUEUE_STATES:
            await self._close_quietly(conn)
            return
        self._conn = conn
        self._reset_session_tracking()
        assert self._loop is not None
        self._pump_task = self._loop.create_task(self._pump(conn))

    async def _pump(self, conn: Connection) -> None:
        try:
            async for message in conn:
                if conn is not self._conn:
                    return
                self.handle_message(message)
        except Exception as exc:
            self.handle_disconnect(exc, conn)
        else:
            self.handle_disconnect("end", conn)

    async def _close_quietly(self, conn: Connection) -> None:
        try:
            await conn.close()
        except Exception as exc:
            self._log(f"Error while closing connection: {_describe(exc)}", "warn")

    def _release_connection(self) -> None:
        conn = self._conn
        self._conn = None
        pump = self._pump_task
        self._pump_task = None
        if pump is not None and pump is not asyncio.current_task():
            pump.cancel()
        if conn is not None and self._loop is not None:
            task = self._loop.create_task(self._close_quietly(conn))
            self._closing.add(task)
            task.add_done_callback(self._closing.discard)

    def _cancel_timers(self) -> None:
        if self._reconnect_handle is not None:
            self._reconnect_handle.cancel()
            self._reconnect_handle = None
        self._stop_status_ticker()
        for task in (self._probe_task, self._open_task):
            if task is not None and task is not asyncio.current_task():
                task.cancel()
        self._probe_task = None
        self._open_task = None

    def _cleanup(self) -> None:
        self._finished = False
        self._stop_idle()
        self._cancel_timers()
        self._release_connection()
        self._reset_session_tracking()

    def handle_message(self, message: InboundMessage) -> None:
        kind = message.kind
        data = message.data
        if kind == "login":
            username = data.get("username") if isinstance(data, dict) else None
            self.handle_login(username)
        elif kind == "header":
            self.handle_header(data)
        elif kind == "chat":
            self.handle_chat(data)
        elif kind == "health" and isinstance(data, dict):
            self._update(health=data.get("health"), food=data.get("food"))
        elif kind == "consumer_attached":
            username = data.get("username") if isinstance(data, dict) else None
            self.handle_consumer_attached(username)
        elif kind == "consumer_detached":
            self.handle_consumer_detached()
        elif kind in ("kick", "error"):
            self.handle_disconnect(close_reason(message))

    def handle_login(self, username: str | None = None) -> None:
        changes: dict[str, Any] = {}
        if username:
            self._log(f"Authenticated as {username}")
            changes["username"] = username
        queued = self._status.state is LifecycleState.AUTHENTICATING
        if queued:
            changes["state"] = LifecycleState.QUEUEING
        self._update(**changes)
        if queued:
            self._log("Waiting in queue...")

    def handle_header(self, payload: Any) -> None:
        if self._finished or self._relog_pending:
            return
        position = parse_position(extract_text(payload))
        if position is None:
            if not self._parse_error_logged:
                self._parse_error_logged = True
                self._log("Could not read queue position from tab header.", "warn")
            return
        self.handle_position(position)

    def handle_position(self, position: int) -> None:
        if self._finished or self._relog_pending:
            return
        if self._status.state not in QUEUE_STATES:
            return
        if self._status.state is LifecycleState.AUTHENTICATING:
            self._update(state=LifecycleState.QUEUEING)
        first = self._last_position is None
        if first:
            self._queue_start_place = position
            self._queue_start_time = self._clock()
            self.estimator.begin_session(position)
            self._start_status_ticker(position)
            self._log(f"Queue entered at #{position} | ETA learner: {self.estimator.summary()}")
        self.estimator.record_sample(position)
        if position == self._last_position:
            return
        self._last_position = position
        self._publish_position(position)
        self._check_thresholds(position, first=first)

    def handle_chat(self, payload: Any) -> None:
        if self._finished:
            return
        text = extract_text(payload)
        if not text:
            return
        if is_queue_notice(text):
            self._log(f"Server: {text}")
        if is_finish_marker(text, self._config.finish_marker):
            self._handle_queue_finished()

    def handle_consumer_attached(self, username: str | None = None) -> None:
        self._log(f"Player connected: {username or 'unknown'}")
        self._stop_idle()
        changes: dict[str, Any] = {"consumer_attached": True}
        if username:
            changes["username"] = username
        self._update(**changes)

    def handle_consumer_detached(self) -> None:
        self._log("Player disconnected")
        self._update(consumer_attached=False)
        self._try_start_idle()

    def handle_disconnect(self, reason: Any = None, conn: Connection | None = None) -> None:
        self._disconnect(reason, conn)

    def _publish_position(self, position: int) -> None:
        start = self._queue_start_place if self._queue_start_place is not None else position
        base_minutes = self.queue_model.base_minutes(start, position)
        minutes = self.estimator.estimate_minutes(position, base_minutes)
        eta = format_eta(minutes)
        now = self._clock()
        finish_time = datetime.fromtimestamp(now + minutes * 60, timezone.utc).isoformat(
            timespec="seconds"
        )
        self._history.append(QueueHistoryPoint(timestamp=now, position=position))
        self._update(position=position, eta=eta, finish_time=finish_time)
        self._log(f"Queue position: {position} | ETA: {eta}")
        self.bus.publish(QUEUE_UPDATE, QueueUpdate(position, eta, finish_time))

    def _check_thresholds(self, position: int, *, first: bool) -> None:
        if self._config.collector:
            if not first and position <= self._config.relog_threshold:
                self._relog(position)
            return
        threshold = self._config.notify_threshold
        if self._config.notify_enabled and position <= threshold and not self._notification_sent:
            self._notification_sent = True
            self._log(f"Queue position {position} reached alert threshold {threshold}")
            self.bus.publish(POSITION_ALERT, PositionAlert(position, threshold))

    def _relog(self, position: int) -> None:
        self._relog_pending = True
        self.relog_count += 1
        elapsed = self._clock() - (self._queue_start_time or self._clock())
        summary = f"~{format_duration(elapsed)} session"
        rate = self._session_rate()
        if rate is not None:
            summary += f", ~{round(rate)} pos/hr"
        self._log(
            f"Position #{position} <= {self._config.relog_threshold}: "
            f"saving session and re-queueing ({summary})"
        )
        self._close_session()
        self._disconnect("re-queue", self._conn, requeue=True, level="info")

    def _close_session(self) -> CompletedSession | None:
        if not self.estimator.session_active:
            return None
        start = self.estimator.start_position
        last = self._last_position
        if start is None or last is None or last >= start:
            self.estimator.discard_session()
            return None
        session = self.estimator.record_partial(last)
        if session is not None:
            self._log(
                f"Partial session saved (#{start} -> #{last}, "
                f"~{session.positions_per_hour} pos/hr)"
            )
        return session

    def _handle_queue_finished(self) -> None:
        self._log("Queue finished! Connected to server.")
        self._stop_status_ticker()
        session = self.estimator.complete_session()
        if session is not None:
            self._log(
                f"ETA learner: saved session - {session.start_position} positions in "
                f"{format_duration(session.duration_ms / 1000)} ≈ "
                f"{session.positions_per_hour}/hr"
            )
        if (
            self._config.expand_queue_data
            and self._queue_start_place
            and self._queue_start_time is not None
        ):
            self.queue_model.learn(
                self._queue_start_place, self._clock() - self._queue_start_time
            )

        if self._status.auto_restart and not self._status.consumer_attached:
            self._log("No client connected and restart enabled. Restarting queue...")
            self._cleanup()
            self._update(state=LifecycleState.RECONNECTING, in_queue=False)
            self._fire_reconnect()
            return

        self._finished = True
        self._update(
            state=LifecycleState.CONNECTED,
            position=None,
            eta="NOW",
            finish_time=None,
        )
        self._try_start_idle()
        self.bus.publish(QUEUE_FINISHED, self.snapshot())

    def _disconnect(
        self,
        reason: Any,
        conn: Connection | None,
        *,
        requeue: bool = False,
        level: str = "warn",
    ) -> None:
        # error and end both fire for one failure; only the first gets through
        if self._conn is None:
            return
        if conn is not None and conn is not self._conn:
            return
        if self._reconnect_handle is not None:
            return
        self._stop_status_ticker()
        self._stop_idle()
        self._log(f"Disconnected: {_describe(reason)}", level)
        self._close_session()
        self._release_connection()
        self._finished = False
        self._reset_session_tracking()
        self._update(
            in_queue=False,
            consumer_attached=False,
            idle_prevention_active=False,
            position=None,
            eta=None,
            finish_time=None,
        )
        self._after_disconnect(requeue=requeue)

    def _budget_exhausted(self) -> bool:
        budget = self._config.max_run_seconds
        return budget is not None and self._clock() - self._run_started >= budget

    def _after_disconnect(self, *, requeue: bool = False) -> None:
        recover = requeue or (self._config.reconnect_on_error and not self._stopped_by_operator)
        if recover and self._budget_exhausted():
            self._terminate()
            return
        if not recover:
            if self._config.collector and not self._stopped_by_operator:
                self._terminate()
            else:
                self._update(state=LifecycleState.IDLE)
            return
        delay = self._config.reconnect_delay_seconds
        self._log(f"Reconnecting in {delay:g} seconds...")
        self._update(state=LifecycleState.RECONNECTING)
        assert self._loop is not None
        self._reconnect_handle = self._loop.call_later(delay, self._fire_reconnect)

    def _fire_reconnect(self) -> None:
        self._reconnect_handle = None
        if self._stopped_by_operator:
            return
        if self._budget_exhausted():
            self._terminate()
            return
        self._log("Attempting reconnect...")
        self._update(state=LifecycleState.RECONNECTING)
        assert self._loop is not None
        self._probe_task = self._loop.create_task(self._probe_and_start())

    async def _probe_and_start(self) -> None:
        try:
            up = await self._transport.probe()
        except Exception as exc:
            self._log(f"Server probe failed: {_describe(exc)}", "warn")
            up = False
        self._probe_task = None
        if self._stopped_by_operator:
            return
        if not up:
            retry = self._config.reconnect_probe_retry_seconds
            self._log(f"Server not responding, retrying in {retry:g}s...", "warn")
            assert self._loop is not None
            self._reconnect_handle = self._loop.call_later(retry, self._fire_reconnect)
            return
        self._log("Server is up, starting queue...")
        self.start()

    def _terminate(self) -> None:
        self._cancel_timers()
        self._stop_idle()
        self._release_connection()
        self._update(state=LifecycleState.STOPPED, in_queue=False)
        if self._budget_exhausted():
            self._log("Run duration budget reached; exiting.")
        else:
            self.exit_code = 1
            self._log("Connection lost and recovery disabled; exiting.", "warn")
        self.bus.publish(STOPPED, self.snapshot())
        self.terminated.set()

    async def shutdown(self) -> None:
        if self._status.state not in (LifecycleState.IDLE, LifecycleState.STOPPED):
            self.stop()
        elif self._conn is not None or self._reconnect_handle is not None:
            self._cleanup()
        if self._closing:
            await asyncio.gather(*list(self._closing), return_exceptions=True)

    def _try_start_idle(self) -> bool:
        if not self._idle_wanted:
            return False
        if self._status.consumer_attached or not self._finished:
            return False
        avatar = getattr(self._conn, "avatar", None)
        if avatar is None:
            return False
        if self._idle is not None and self._idle.running:
            return True
        self._idle = IdlePreventionScheduler(
            avatar,
            IdleOptions.from_config(self._config),
            rng=self._rng,
            on_error=lambda message: self._log(message, "warn"),
        )
        self._idle.start()
        self._update(idle_prevention_active=True)
        self._log("Idle prevention started")
        return True

    def _stop_idle(self) -> None:
        idle = self._idle
        self._idle = None
        if idle is not None and idle.stop():
            self._log("Idle prevention stopped")
        self._update(idle_prevention_active=False)

    def _start_status_ticker(self, position: int) -> None:
        self._stop_status_ticker()
        self._pos_at_last_status = position
        interval = self._config.status_interval_seconds
        if not self._config.collector or interval <= 0 or self._loop is None:
            return
        self._status_handle = self._loop.call_later(interval, self._status_tick)

    def _stop_status_ticker(self) -> None:
        if self._status_handle is not None:
            self._status_handle.cancel()
            self._status_handle = None

    def _status_tick(self) -> None:
        self._status_handle = None
        line = self.status_line()
        if line is not None:
            self._log(line)
        self._pos_at_last_status = self._last_position
        assert self._loop is not None
        self._status_handle = self._loop.call_later(
            self._config.status_interval_seconds, self._status_tick
        )

    def _session_rate(self) -> float | None:
        if self._queue_start_time is None or self._queue_start_place is None:
            return None
        if self._last_position is None:
            return None
        elapsed_hr = (self._clock() - self._queue_start_time) / 3600.0
        if elapsed_hr < 0.005:
            return None
        moved = self._queue_start_place - self._last_position
        if moved <= 0:
            return None
        return moved / elapsed_hr

    def status_line(self) -> str | None:
        position = self._last_position
        if position is None:
            return None
        rate = self._session_rate()
        historical = self.estimator.historical_rate()
        moved: Any = "?"
        if self._pos_at_last_status is not None:
            moved = self._pos_at_last_status - position
        observed = f"{round(rate)} pos/hr" if rate else "n/a"
        hist_text = "n/a"
        if historical is not None:
            hist_text = (
                f"{round(historical.rate)} pos/hr "
                f"({round(historical.effective_sessions)} eff.)"
            )
        eta = format_duration(position / rate * 3600.0) if rate else "?"
        running = format_duration(self._clock() - self._run_started)
        return (
            f"[STATUS] #{position}"
            f"  |  observed: {observed}"
            f"  |  historical: {hist_text}"
            f"  |  moved {moved} in last {self._config.status_interval_seconds:g}s"
            f"  |  stored: {len(self.store)} sessions"
            f"  |  {running} running"
            f"  |  ~{eta} left"
        )
