import pytest

from queue_pilot.config import Config


def test_defaults():
    cfg = Config()
    assert cfg.mode == "interactive"
    assert cfg.relog_threshold == 30
    assert cfg.history_max_sessions == 200
    assert cfg.max_run_seconds is None
    assert cfg.collector is False


def test_derived_paths(tmp_path):
    cfg = Config(data_dir=str(tmp_path))
    assert cfg.history_path == tmp_path / "eta-learn.json"
    assert cfg.queue_model_path == tmp_path / "queue.json"
    assert cfg.runlog_path == tmp_path / "runlog.ndjson"


def test_env_overrides_cli() -> None:
    cfg = Config.from_env_and_cli(
        {"relog_threshold": 10, "mode": "collector"},
        {"QUEUE_PILOT_RELOG_THRESHOLD": "45"},
    )
    assert cfg.relog_threshold == 45
    assert cfg.mode == "collector"
    assert cfg.collector is True


def test_env_bool_and_float_parse() -> None:
    cfg = Config.from_env_and_cli(
        {},
        {
            "QUEUE_PILOT_RECONNECT_ON_ERROR": "off",
            "QUEUE_PILOT_IDLE_INTERVAL_SECONDS": "7.5",
        },
    )
    assert cfg.reconnect_on_error is False
    assert cfg.idle_interval_seconds == 7.5


def test_env_optional_float_parses() -> None:
    cfg = Config.from_env_and_cli({}, {"QUEUE_PILOT_MAX_RUN_SECONDS": "3600"})
    assert cfg.max_run_seconds == 3600.0
    cfg = Config.from_env_and_cli({"max_run_seconds": 5.0}, {"QUEUE_PILOT_MAX_RUN_SECONDS": "none"})
    assert cfg.max_run_seconds is None


def test_env_invalid_bool_raises() -> None:
    with pytest.raises(ValueError):
        Config.from_env_and_cli({}, {"QUEUE_PILOT_NOTIFY_ENABLED": "maybe"})


def test_validate_rejects_unknown_mode() -> None:
    with pytest.raises(ValueError):
        Config(mode="turbo").validate()


def test_validate_rejects_empty_history() -> None:
    with pytest.raises(ValueError):
        Config(history_max_sessions=0).validate()
