from __future__ import annotations

from dataclasses import dataclass, fields
from pathlib import Path
import types
import typing
from typing import Any, get_args, get_origin

ENV_PREFIX = "QUEUE_PILOT_"
MODES = ("interactive", "collector")


def _parse_bool(value: str) -> bool:
    val = str(value).strip().lower()
    if val in {"1", "true", "yes", "y", "on"}:
        return True
    if val in {"0", "false", "no", "n", "off"}:
        return False
    raise ValueError(f"invalid bool: {value}")


def _parse_number(value: str, target_type: type) -> Any:
    if target_type is int:
        return int(value)
    if target_type is float:
        return float(value)
    return value


def _unwrap_optional(field_type: Any) -> tuple[Any, bool]:
    if isinstance(field_type, str):
        parts = [part.strip() for part in field_type.split("|")]
        if len(parts) == 2 and "None" in parts:
            base = parts[0] if parts[1] == "None" else parts[1]
            return base, True
        return field_type, False
    origin = get_origin(field_type)
    union_type = getattr(types, "UnionType", None)
    if origin not in (typing.Union, union_type):
        return field_type, False
    args = get_args(field_type)
    if args and type(None) in args and len(args) == 2:
        base = args[0] if args[1] is type(None) else args[1]
        return base, True
    return field_type, False


def _is_field_type(field_type: Any, expected: type, expected_name: str) -> bool:
    base_type, _is_optional = _unwrap_optional(field_type)
    if base_type is expected:
        return True
    if isinstance(base_type, str) and base_type == expected_name:
        return True
    return False


def _parse_optional(raw: str, target_type: Any) -> Any:
    text = str(raw).strip()
    if text == "":
        return None
    lower = text.lower()
    if lower in {"none", "null"}:
        return None
    if target_type in (bool, "bool"):
        return _parse_bool(text)
    if target_type in (int, "int"):
        return _parse_number(text, int)
    if target_type in (float, "float"):
        return _parse_number(text, float)
    return text


@dataclass
class Config:
    bridge_url: str = "ws://127.0.0.1:8765/queue"
    bridge_health_url: str = "http://127.0.0.1:8765/health"
    bridge_user_agent: str = "queue_pilot"
    bridge_ping_interval_seconds: float = 20.0
    bridge_ping_timeout_seconds: float = 20.0
    rest_timeout: float = 5.0
    account: str = ""
    server_host: str = "2b2t.org"
    server_port: int = 25565
    mode: str = "interactive"
    reconnect_on_error: bool = True
    reconnect_delay_seconds: float = 30.0
    reconnect_probe_retry_seconds: float = 3.0
    restart_queue: bool = False
    max_run_seconds: float | None = None
    relog_threshold: int = 30
    notify_enabled: bool = True
    notify_threshold: int = 20
    status_interval_seconds: float = 30.0
    idle_prevention_enabled: bool = True
    idle_walk: bool = True
    idle_look: bool = True
    idle_jump: bool = True
    idle_swing: bool = True
    idle_sneak: bool = True
    idle_interval_seconds: float = 15.0
    idle_max_drift: float = 2.0
    history_max_sessions: int = 200
    queue_history_max_points: int = 720
    log_buffer_size: int = 200
    expand_queue_data: bool = False
    data_dir: str = "./data"
    runlog_enabled: bool = True
    finish_marker: str = "Connected to the server"

    @property
    def history_path(self) -> Path:
        return Path(self.data_dir) / "eta-learn.json"

    @property
    def queue_model_path(self) -> Path:
        return Path(self.data_dir) / "queue.json"

    @property
    def runlog_path(self) -> Path:
        return Path(self.data_dir) / "runlog.ndjson"

    @property
    def collector(self) -> bool:
        return self.mode == "collector"

    def validate(self) -> "Config":
        if self.mode not in MODES:
            raise ValueError(f"invalid mode: {self.mode}")
        if self.history_max_sessions <= 0:
            raise ValueError("history_max_sessions must be >= 1")
        if self.queue_history_max_points <= 0:
            raise ValueError("queue_history_max_points must be >= 1")
        if self.log_buffer_size <= 0:
            raise ValueError("log_buffer_size must be >= 1")
        if self.idle_interval_seconds <= 0:
            raise ValueError("idle_interval_seconds must be > 0")
        if self.reconnect_delay_seconds < 0:
            raise ValueError("reconnect_delay_seconds must be >= 0")
        return self

    def apply_overrides(self, overrides: dict[str, Any]) -> "Config":
        for field in fields(self):
            name = field.name
            if name in overrides:
                value = overrides[name]
                if value is None:
                    _base_type, is_optional = _unwrap_optional(field.type)
                    if is_optional:
                        setattr(self, name, None)
                    continue
                setattr(self, name, value)
        return self

    @classmethod
    def from_env_and_cli(cls, cli_overrides: dict[str, Any], env: dict[str, str]) -> "Config":
        cfg = cls().apply_overrides(cli_overrides)
        for field in fields(cfg):
            env_key = ENV_PREFIX + field.name.upper()
            if env_key not in env:
                continue
            raw = env[env_key]
            base_type, is_optional = _unwrap_optional(field.type)
            if is_optional:
                value = _parse_optional(raw, base_type)
            elif _is_field_type(field.type, bool, "bool"):
                value = _parse_bool(raw)
            elif _is_field_type(field.type, int, "int"):
                value = _parse_number(raw, int)
            elif _is_field_type(field.type, float, "float"):
                value = _parse_number(raw, float)
            else:
                value = raw
            setattr(cfg, field.name, value)
        return cfg
