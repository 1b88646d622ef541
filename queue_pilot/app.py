from __future__ import annotations

import random
import time
from dataclasses import dataclass
from typing import Callable

from .config import Config
from .eta import ETAEstimator
from .queue_model import QueueModel
from .runlog import Runlog
from .runtime.events import EventBus
from .runtime.lifecycle import ConnectionLifecycle
from .session_store import SessionStore
from .transport import Transport, WebSocketTransport
from .writers import NdjsonWriter, SnapshotWriter


@dataclass(slots=True)
class Runtime:
    config: Config
    bus: EventBus
    runlog: Runlog
    store: SessionStore
    queue_model: QueueModel
    lifecycle: ConnectionLifecycle
    snapshot_writer: SnapshotWriter

    def close(self) -> None:
        self.snapshot_writer.flush()
        self.snapshot_writer.close()
        self.runlog.close()


def build_runtime(
    config: Config,
    transport: Transport | None = None,
    *,
    clock: Callable[[], float] = time.time,
    rng: random.Random | None = None,
) -> Runtime:
    config.validate()
    holder: dict[str, ConnectionLifecycle] = {}

    def _on_persist_error(exc: Exception) -> None:
        lifecycle = holder.get("lifecycle")
        if lifecycle is not None:
            lifecycle.report_persistence_error(exc)

    bus = EventBus()
    runlog_writer = None
    if config.runlog_enabled:
        runlog_writer = NdjsonWriter(config.runlog_path, thread_name="runlog-writer")
    runlog = Runlog(bus, max_entries=config.log_buffer_size, writer=runlog_writer)
    snapshot_writer = SnapshotWriter(on_error=_on_persist_error)
    store = SessionStore(
        config.history_path,
        max_sessions=config.history_max_sessions,
        writer=snapshot_writer,
        on_error=_on_persist_error,
    )
    loaded = store.load()
    queue_model = QueueModel.load(
        config.queue_model_path, writer=snapshot_writer, on_error=_on_persist_error
    )
    lifecycle = ConnectionLifecycle(
        config,
        transport or WebSocketTransport(config),
        bus=bus,
        store=store,
        estimator=ETAEstimator(store, clock=clock),
        queue_model=queue_model,
        runlog=runlog,
        clock=clock,
        rng=rng,
    )
    holder["lifecycle"] = lifecycle
    message = f"Loaded {loaded} stored sessions from {config.history_path}"
    if store.load_skipped:
        message += f" ({store.load_skipped} unreadable entries skipped)"
    runlog.info(message)
    return Runtime(
        config=config,
        bus=bus,
        runlog=runlog,
        store=store,
        queue_model=queue_model,
        lifecycle=lifecycle,
        snapshot_writer=snapshot_writer,
    )
