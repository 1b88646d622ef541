import asyncio
import random

import orjson
import pytest

from queue_pilot.config import Config
from queue_pilot.runtime.events import (
    POSITION_ALERT,
    QUEUE_FINISHED,
    QUEUE_UPDATE,
    STATE_CHANGE,
    STOPPED,
)
from queue_pilot.runtime.lifecycle import ConnectionLifecycle
from queue_pilot.runtime.state import LifecycleState
from queue_pilot.session_store import SessionStore
from queue_pilot.transport import InboundMessage, Vec3

_END = object()


class FakeClock:
    def __init__(self, now: float = 1_700_000_000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeAvatar:
    def __init__(self):
        self.controls: dict[str, bool] = {}

    def position(self):
        return Vec3(0.0, 64.0, 0.0)

    def look(self, yaw, pitch):
        pass

    def set_control(self, control, state):
        self.controls[control] = state

    def swing(self):
        pass


class FakeConnection:
    def __init__(self):
        self.avatar = FakeAvatar()
        self.close_calls = 0
        self._queue: asyncio.Queue = asyncio.Queue()

    def push(self, kind, data=None):
        self._queue.put_nowait(InboundMessage(kind, data))

    def fail(self, exc):
        self._queue.put_nowait(exc)

    def __aiter__(self):
        return self

    async def __anext__(self):
        item = await self._queue.get()
        if item is _END:
            raise StopAsyncIteration
        if isinstance(item, Exception):
            raise item
        return item

    async def close(self):
        self.close_calls += 1
        self._queue.put_nowait(_END)


class FakeTransport:
    def __init__(self, probe_results=None):
        self.connections: list[FakeConnection] = []
        self.probe_results = list(probe_results or [])
        self.probes = 0
        self.fail_open: Exception | None = None

    async def open(self):
        if self.fail_open is not None:
            raise self.fail_open
        conn = FakeConnection()
        self.connections.append(conn)
        return conn

    async def probe(self):
        self.probes += 1
        if self.probe_results:
            return self.probe_results.pop(0)
        return True


async def settle(rounds: int = 10) -> None:
    for _ in range(rounds):
        await asyncio.sleep(0)


def _header(position: int) -> dict:
    return {"text": "2B2T is full\n", "extra": [{"text": f"Position in queue: {position}"}]}


def _build(tmp_path, clock, **overrides):
    settings = {"data_dir": str(tmp_path), "reconnect_delay_seconds": 60.0}
    settings.update(overrides)
    config = Config(**settings)
    transport = FakeTransport()
    store = SessionStore(config.history_path)
    lifecycle = ConnectionLifecycle(
        config, transport, store=store, clock=clock, rng=random.Random(0)
    )
    return lifecycle, transport


async def _enter_queue(lifecycle, transport) -> FakeConnection:
    assert lifecycle.start()
    await settle()
    conn = transport.connections[-1]
    conn.push("login", {"username": "steve"})
    await settle()
    return conn


def _messages(lifecycle, needle: str) -> list[str]:
    return [entry.message for entry in lifecycle.runlog.recent() if needle in entry.message]


@pytest.mark.asyncio
async def test_login_moves_to_queueing(tmp_path):
    lifecycle, transport = _build(tmp_path, FakeClock())
    states = []
    lifecycle.bus.subscribe(STATE_CHANGE, lambda snap: states.append(snap.state))
    await _enter_queue(lifecycle, transport)
    assert lifecycle.state is LifecycleState.QUEUEING
    assert lifecycle.snapshot().username == "steve"
    assert states[:2] == [LifecycleState.AUTHENTICATING, LifecycleState.QUEUEING]
    await lifecycle.shutdown()


@pytest.mark.asyncio
async def test_position_updates_publish_eta(tmp_path):
    clock = FakeClock()
    lifecycle, transport = _build(tmp_path, clock)
    updates = []
    lifecycle.bus.subscribe(QUEUE_UPDATE, updates.append)
    conn = await _enter_queue(lifecycle, transport)
    conn.push("header", _header(500))
    conn.push("header", _header(500))
    clock.advance(60)
    conn.push("header", _header(480))
    await settle()
    assert [update.position for update in updates] == [500, 480]
    snap = lifecycle.snapshot()
    assert snap.position == 480
    assert snap.eta is not None and snap.eta.endswith("m")
    assert snap.finish_time is not None
    assert len(lifecycle.estimator.samples) == 4
    assert [point.position for point in lifecycle.queue_history()] == [500, 480]
    await lifecycle.shutdown()


@pytest.mark.asyncio
async def test_unparseable_header_warns_once(tmp_path):
    lifecycle, transport = _build(tmp_path, FakeClock())
    conn = await _enter_queue(lifecycle, transport)
    conn.push("header", {"text": "Welcome to 2b2t"})
    conn.push("header", "just text")
    await settle()
    assert len(_messages(lifecycle, "Could not read queue position")) == 1
    assert lifecycle.snapshot().position is None
    await lifecycle.shutdown()


@pytest.mark.asyncio
async def test_start_while_queueing_is_rejected(tmp_path):
    lifecycle, transport = _build(tmp_path, FakeClock())
    await _enter_queue(lifecycle, transport)
    assert lifecycle.start() is False
    assert _messages(lifecycle, "Already in queue")
    assert len(transport.connections) == 1
    await lifecycle.shutdown()


@pytest.mark.asyncio
async def test_collector_relogs_once_and_saves_partial_session(tmp_path):
    clock = FakeClock()
    lifecycle, transport = _build(tmp_path, clock, mode="collector", relog_threshold=30)
    conn = await _enter_queue(lifecycle, transport)
    conn.push("header", _header(500))
    await settle()
    clock.advance(600)
    conn.push("header", _header(480))
    await settle()
    clock.advance(1800)
    conn.push("header", _header(30))
    await settle()

    assert lifecycle.relog_count == 1
    assert conn.close_calls == 1
    assert lifecycle.state is LifecycleState.RECONNECTING
    sessions = lifecycle.store.sessions()
    assert len(sessions) == 1
    assert sessions[0].start_position == 500
    assert sessions[0].positions_per_hour == 705
    doc = orjson.loads((tmp_path / "eta-learn.json").read_bytes())
    assert doc["sessions"][0]["positions_per_hour"] == 705

    conn.push("header", _header(20))
    lifecycle.handle_position(20)
    await settle()
    assert lifecycle.relog_count == 1
    assert len(lifecycle.store) == 1
    await lifecycle.shutdown()


@pytest.mark.asyncio
async def test_collector_first_reading_below_threshold_does_not_relog(tmp_path):
    lifecycle, transport = _build(tmp_path, FakeClock(), mode="collector", relog_threshold=30)
    conn = await _enter_queue(lifecycle, transport)
    conn.push("header", _header(12))
    await settle()
    assert lifecycle.relog_count == 0
    assert lifecycle.state is LifecycleState.QUEUEING
    await lifecycle.shutdown()


@pytest.mark.asyncio
async def test_double_disconnect_is_handled_once(tmp_path):
    clock = FakeClock()
    lifecycle, transport = _build(tmp_path, clock)
    conn = await _enter_queue(lifecycle, transport)
    conn.push("header", _header(400))
    await settle()
    clock.advance(300)
    conn.push("header", _header(350))
    await settle()

    lifecycle.handle_disconnect("socket error", conn)
    lifecycle.handle_disconnect("end", conn)
    await settle()

    assert len(_messages(lifecycle, "Disconnected:")) == 1
    assert len(lifecycle.store) == 1
    assert lifecycle.store.sessions()[0].positions_per_hour == 600
    assert lifecycle.state is LifecycleState.RECONNECTING
    assert lifecycle.snapshot().in_queue is False
    assert conn.close_calls == 1
    await lifecycle.shutdown()


@pytest.mark.asyncio
async def test_stream_error_goes_through_disconnect(tmp_path):
    lifecycle, transport = _build(tmp_path, FakeClock())
    conn = await _enter_queue(lifecycle, transport)
    conn.fail(ConnectionResetError("reset by peer"))
    await settle()
    assert _messages(lifecycle, "Disconnected: reset by peer")
    assert lifecycle.state is LifecycleState.RECONNECTING
    await lifecycle.shutdown()


@pytest.mark.asyncio
async def test_disconnect_without_reconnect_goes_idle(tmp_path):
    lifecycle, transport = _build(tmp_path, FakeClock(), reconnect_on_error=False)
    conn = await _enter_queue(lifecycle, transport)
    conn.push("kick", {"reason": "Server restarting"})
    await settle()
    assert _messages(lifecycle, "kicked: Server restarting")
    assert lifecycle.state is LifecycleState.IDLE
    await lifecycle.shutdown()


@pytest.mark.asyncio
async def test_reconnect_probes_until_bridge_is_up(tmp_path):
    lifecycle, transport = _build(
        tmp_path,
        FakeClock(),
        reconnect_delay_seconds=0.01,
        reconnect_probe_retry_seconds=0.01,
    )
    transport.probe_results = [False, True]
    conn = await _enter_queue(lifecycle, transport)
    lifecycle.handle_disconnect("timeout", conn)
    await asyncio.sleep(0.1)
    await settle()
    assert transport.probes == 2
    assert len(transport.connections) == 2
    assert lifecycle.state is LifecycleState.AUTHENTICATING
    assert _messages(lifecycle, "Server not responding")
    await lifecycle.shutdown()


@pytest.mark.asyncio
async def test_open_failure_schedules_reconnect(tmp_path):
    lifecycle, transport = _build(tmp_path, FakeClock())
    transport.fail_open = OSError("connection refused")
    lifecycle.start()
    await settle()
    assert _messages(lifecycle, "Failed to open connection: connection refused")
    assert lifecycle.state is LifecycleState.RECONNECTING
    await lifecycle.shutdown()
    assert lifecycle.state is LifecycleState.IDLE


@pytest.mark.asyncio
async def test_finish_marker_connects_regardless_of_position(tmp_path):
    clock = FakeClock()
    lifecycle, transport = _build(tmp_path, clock)
    finished = []
    lifecycle.bus.subscribe(QUEUE_FINISHED, finished.append)
    conn = await _enter_queue(lifecycle, transport)
    conn.push("header", _header(15))
    await settle()
    clock.advance(600)
    conn.push("chat", '{"text":"Connected to the server."}')
    await settle()

    assert lifecycle.state is LifecycleState.CONNECTED
    assert lifecycle.snapshot().eta == "NOW"
    assert len(finished) == 1
    assert lifecycle.store.sessions()[0].positions_per_hour == 90
    assert lifecycle.snapshot().idle_prevention_active is True
    assert lifecycle.idle_scheduler is not None and lifecycle.idle_scheduler.running

    conn.push("header", _header(3))
    await settle()
    assert lifecycle.state is LifecycleState.CONNECTED
    await lifecycle.shutdown()


@pytest.mark.asyncio
async def test_consumer_attachment_gates_idle_prevention(tmp_path):
    lifecycle, transport = _build(tmp_path, FakeClock())
    conn = await _enter_queue(lifecycle, transport)
    conn.push("chat", "Connected to the server.")
    await settle()
    assert lifecycle.idle_scheduler is not None

    conn.push("consumer_attached", {"username": "steve"})
    await settle()
    assert lifecycle.idle_scheduler is None
    assert lifecycle.snapshot().consumer_attached is True
    assert lifecycle.snapshot().idle_prevention_active is False
    assert conn.avatar.controls.get("forward") is False

    conn.push("consumer_detached")
    await settle()
    assert lifecycle.idle_scheduler is not None and lifecycle.idle_scheduler.running
    assert lifecycle.snapshot().consumer_attached is False
    await lifecycle.shutdown()


@pytest.mark.asyncio
async def test_toggle_idle_prevention(tmp_path):
    lifecycle, transport = _build(tmp_path, FakeClock(), idle_prevention_enabled=False)
    conn = await _enter_queue(lifecycle, transport)
    conn.push("chat", "Connected to the server.")
    await settle()
    assert lifecycle.idle_scheduler is None
    assert lifecycle.toggle_idle_prevention() is True
    assert lifecycle.idle_scheduler is not None
    assert lifecycle.toggle_idle_prevention() is False
    assert lifecycle.idle_scheduler is None
    await lifecycle.shutdown()


@pytest.mark.asyncio
async def test_restart_queue_on_finish_without_consumer(tmp_path):
    lifecycle, transport = _build(tmp_path, FakeClock(), restart_queue=True)
    conn = await _enter_queue(lifecycle, transport)
    conn.push("chat", "Connected to the server.")
    await settle(20)
    assert transport.probes == 1
    assert len(transport.connections) == 2
    assert lifecycle.state is LifecycleState.AUTHENTICATING
    assert conn.close_calls == 1
    await lifecycle.shutdown()


@pytest.mark.asyncio
async def test_restart_queue_skipped_when_consumer_attached(tmp_path):
    lifecycle, transport = _build(tmp_path, FakeClock(), restart_queue=True)
    conn = await _enter_queue(lifecycle, transport)
    conn.push("consumer_attached", {"username": "steve"})
    conn.push("chat", "Connected to the server.")
    await settle(20)
    assert lifecycle.state is LifecycleState.CONNECTED
    assert len(transport.connections) == 1
    await lifecycle.shutdown()


@pytest.mark.asyncio
async def test_position_alert_fires_once(tmp_path):
    lifecycle, transport = _build(tmp_path, FakeClock(), notify_threshold=20)
    alerts = []
    lifecycle.bus.subscribe(POSITION_ALERT, alerts.append)
    conn = await _enter_queue(lifecycle, transport)
    for position in (50, 25, 19, 18, 17):
        conn.push("header", _header(position))
    await settle()
    assert [alert.position for alert in alerts] == [19]
    await lifecycle.shutdown()


@pytest.mark.asyncio
async def test_stop_cancels_timers_and_releases_connection(tmp_path):
    clock = FakeClock()
    lifecycle, transport = _build(tmp_path, clock, mode="collector", status_interval_seconds=30.0)
    stopped = []
    lifecycle.bus.subscribe(STOPPED, stopped.append)
    conn = await _enter_queue(lifecycle, transport)
    conn.push("header", _header(500))
    await settle()
    assert lifecycle._status_handle is not None
    clock.advance(600)
    conn.push("header", _header(400))
    await settle()

    lifecycle.stop()
    await settle()
    assert lifecycle._status_handle is None
    assert lifecycle._reconnect_handle is None
    assert lifecycle.state is LifecycleState.IDLE
    assert conn.close_calls == 1
    assert len(stopped) == 1
    assert len(lifecycle.store) == 1
    assert _messages(lifecycle, "Queue stopped")


@pytest.mark.asyncio
async def test_stop_cancels_pending_reconnect(tmp_path):
    lifecycle, transport = _build(tmp_path, FakeClock(), reconnect_delay_seconds=0.01)
    conn = await _enter_queue(lifecycle, transport)
    lifecycle.handle_disconnect("lost", conn)
    assert lifecycle.state is LifecycleState.RECONNECTING
    lifecycle.stop()
    await asyncio.sleep(0.05)
    assert transport.probes == 0
    assert len(transport.connections) == 1
    assert lifecycle.state is LifecycleState.IDLE


@pytest.mark.asyncio
async def test_run_budget_exhaustion_is_terminal(tmp_path):
    clock = FakeClock()
    lifecycle, transport = _build(tmp_path, clock, mode="collector", max_run_seconds=100.0)
    conn = await _enter_queue(lifecycle, transport)
    clock.advance(200)
    lifecycle.handle_disconnect("lost", conn)
    await settle()
    assert lifecycle.state is LifecycleState.STOPPED
    assert lifecycle.terminated.is_set()
    assert lifecycle.exit_code == 0
    assert lifecycle.start() is False


@pytest.mark.asyncio
async def test_queue_history_capped_and_reset_on_start(tmp_path):
    lifecycle, transport = _build(tmp_path, FakeClock(), queue_history_max_points=3)
    conn = await _enter_queue(lifecycle, transport)
    for position in range(100, 90, -1):
        conn.push("header", _header(position))
    await settle()
    assert [point.position for point in lifecycle.queue_history()] == [93, 92, 91]
    lifecycle.stop()
    await settle()
    lifecycle.start()
    assert lifecycle.queue_history() == []
    await lifecycle.shutdown()


@pytest.mark.asyncio
async def test_get_state_and_toggles(tmp_path):
    lifecycle, transport = _build(tmp_path, FakeClock())
    conn = await _enter_queue(lifecycle, transport)
    conn.push("health", {"health": 20, "food": 18})
    conn.push("header", _header(77))
    await settle()
    assert lifecycle.toggle_auto_restart() is True
    state = lifecycle.get_state()
    assert state["state"] == "queueing"
    assert state["position"] == 77
    assert state["health"] == 20
    assert state["auto_restart"] is True
    assert state["queue_history"][0]["position"] == 77
    assert any("Queue position: 77" in entry["message"] for entry in state["logs"])
    await lifecycle.shutdown()


@pytest.mark.asyncio
async def test_persistence_error_from_writer_thread_is_logged(tmp_path):
    lifecycle, transport = _build(tmp_path, FakeClock())
    await _enter_queue(lifecycle, transport)
    loop = asyncio.get_running_loop()
    await loop.run_in_executor(None, lifecycle.report_persistence_error, OSError("disk full"))
    await settle()
    assert _messages(lifecycle, "Failed to save data: disk full")
    await lifecycle.shutdown()
