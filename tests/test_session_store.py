import orjson

from queue_pilot.session_store import CompletedSession, SessionStore
from queue_pilot.writers import SnapshotWriter


def _session(idx: int, rate: int = 600) -> CompletedSession:
    start = 1_700_000_000.0 + idx * 7200
    return CompletedSession(
        start_position=500,
        start_time=start,
        end_time=start + 3000,
        duration_ms=3_000_000,
        day_of_week=2,
        start_hour=14,
        positions_per_hour=rate,
    )


def test_load_missing_file_is_empty(tmp_path):
    store = SessionStore(tmp_path / "eta-learn.json")
    assert store.load() == 0
    assert len(store) == 0


def test_append_persists_full_snapshot(tmp_path):
    path = tmp_path / "eta-learn.json"
    store = SessionStore(path)
    store.append(_session(0))
    store.append(_session(1, rate=700))
    doc = orjson.loads(path.read_bytes())
    assert doc["version"] == 1
    assert [item["positions_per_hour"] for item in doc["sessions"]] == [600, 700]

    reloaded = SessionStore(path)
    assert reloaded.load() == 2
    assert reloaded.sessions() == store.sessions()


def test_cap_evicts_oldest_first(tmp_path):
    store = SessionStore(tmp_path / "h.json", max_sessions=3)
    for idx in range(5):
        store.append(_session(idx, rate=100 + idx))
    assert len(store) == 3
    assert [s.positions_per_hour for s in store.sessions()] == [102, 103, 104]


def test_load_applies_cap(tmp_path):
    path = tmp_path / "h.json"
    big = SessionStore(path, max_sessions=10)
    for idx in range(6):
        big.append(_session(idx, rate=100 + idx))
    small = SessionStore(path, max_sessions=2)
    assert small.load() == 2
    assert [s.positions_per_hour for s in small.sessions()] == [104, 105]


def test_corrupt_file_loads_empty(tmp_path):
    path = tmp_path / "h.json"
    path.write_text("{not json", encoding="utf-8")
    store = SessionStore(path)
    assert store.load() == 0


def test_bad_entries_skipped(tmp_path):
    path = tmp_path / "h.json"
    good = _session(0).to_dict()
    path.write_bytes(orjson.dumps({"version": 1, "sessions": [good, {"start_position": "x"}, 5]}))
    store = SessionStore(path)
    assert store.load() == 1
    assert store.load_skipped == 2


def test_write_failure_reported_and_memory_kept(tmp_path):
    blocker = tmp_path / "blocker"
    blocker.write_text("", encoding="utf-8")
    errors = []
    store = SessionStore(blocker / "h.json", on_error=errors.append)
    store.append(_session(0))
    assert len(store) == 1
    assert store.persist_failures == 1
    assert len(errors) == 1
    assert isinstance(errors[0], OSError)


def test_snapshot_writer_path(tmp_path):
    path = tmp_path / "h.json"
    writer = SnapshotWriter()
    try:
        store = SessionStore(path, writer=writer)
        for idx in range(4):
            store.append(_session(idx))
        assert writer.flush(5.0)
    finally:
        writer.close()
    doc = orjson.loads(path.read_bytes())
    assert len(doc["sessions"]) == 4
    assert not (tmp_path / ".h.json.tmp").exists()


def test_camel_case_entries_load(tmp_path):
    path = tmp_path / "eta-learn.json"
    legacy = {
        "startPos": 640,
        "startTimeMs": 1_700_000_000_000,
        "endTimeMs": 1_700_003_600_000,
        "durationMs": 3_600_000,
        "dayOfWeek": 2,
        "startHour": 21,
        "positionsPerHour": 640,
    }
    path.write_bytes(orjson.dumps({"sessions": [legacy, _session(0).to_dict()]}))
    store = SessionStore(path)
    assert store.load() == 2
    assert store.load_skipped == 0
    session = store.sessions()[0]
    assert session.start_position == 640
    assert session.start_time == 1_700_000_000.0
    assert session.end_time == 1_700_003_600.0
    assert session.duration_ms == 3_600_000
    assert (session.day_of_week, session.start_hour) == (2, 21)
    assert session.positions_per_hour == 640
