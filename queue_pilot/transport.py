from __future__ import annotations

import asyncio
import contextlib
import inspect
import math
from dataclasses import dataclass
from typing import Any, AsyncIterator, Callable, Protocol

import orjson
import requests
import websockets

from .config import Config

# bridge frames: {"type": <kind>, "data": <payload>}
INBOUND_KINDS = frozenset(
    {
        "login",
        "header",
        "chat",
        "position",
        "health",
        "consumer_attached",
        "consumer_detached",
        "kick",
        "error",
    }
)
CONTROLS = ("forward", "back", "left", "right", "jump", "sneak")
OUTBOUND_QUEUE_MAX = 1000
DEFAULT_CLOSE_TIMEOUT_SECONDS = 5.0

CONNECT_SUPPORTS_CLOSE_TIMEOUT = (
    "close_timeout" in inspect.signature(websockets.connect).parameters
)
CONNECT_HEADERS_PARAM: str | None
if "extra_headers" in inspect.signature(websockets.connect).parameters:
    CONNECT_HEADERS_PARAM = "extra_headers"
elif "additional_headers" in inspect.signature(websockets.connect).parameters:
    CONNECT_HEADERS_PARAM = "additional_headers"
else:
    CONNECT_HEADERS_PARAM = None


class ConnectionClosedByServer(ConnectionError):
    pass


@dataclass(frozen=True, slots=True)
class InboundMessage:
    kind: str
    data: Any = None


@dataclass(frozen=True, slots=True)
class Vec3:
    x: float
    y: float
    z: float

    def horizontal_distance(self, other: "Vec3") -> float:
        return math.hypot(self.x - other.x, self.z - other.z)


class Avatar(Protocol):
    def position(self) -> Vec3 | None: ...

    def look(self, yaw: float, pitch: float) -> None: ...

    def set_control(self, control: str, state: bool) -> None: ...

    def swing(self) -> None: ...


class Connection(Protocol):
    avatar: Avatar | None

    def __aiter__(self) -> AsyncIterator[InboundMessage]: ...

    async def close(self) -> None: ...


class Transport(Protocol):
    async def open(self) -> Connection: ...

    async def probe(self) -> bool: ...


def decode_frame(raw: Any) -> InboundMessage | None:
    if isinstance(raw, str):
        raw = raw.encode("utf-8")
    try:
        payload = orjson.loads(raw)
    except (orjson.JSONDecodeError, TypeError):
        return None
    if not isinstance(payload, dict):
        return None
    kind = payload.get("type")
    if kind not in INBOUND_KINDS:
        return None
    return InboundMessage(kind=kind, data=payload.get("data"))


def parse_vec3(data: Any) -> Vec3 | None:
    if not isinstance(data, dict):
        return None
    try:
        return Vec3(float(data["x"]), float(data["y"]), float(data["z"]))
    except (KeyError, TypeError, ValueError):
        return None


def close_reason(message: InboundMessage) -> str:
    data = message.data
    if isinstance(data, dict):
        reason = data.get("reason") or data.get("message")
    else:
        reason = data
    if message.kind == "kick":
        return f"kicked: {reason or 'unknown'}"
    return str(reason or "bridge error")


class BridgeAvatar:
    def __init__(self, send: Callable[[dict[str, Any]], bool]) -> None:
        self._send = send
        self._position: Vec3 | None = None

    def update_position(self, data: Any) -> None:
        position = parse_vec3(data)
        if position is not None:
            self._position = position

    def position(self) -> Vec3 | None:
        return self._position

    def look(self, yaw: float, pitch: float) -> None:
        self._send({"type": "control", "action": "look", "yaw": yaw, "pitch": pitch})

    def set_control(self, control: str, state: bool) -> None:
        if control not in CONTROLS:
            raise ValueError(f"unknown control: {control}")
        self._send(
            {"type": "control", "action": "set_control", "control": control, "state": state}
        )

    def swing(self) -> None:
        self._send({"type": "control", "action": "swing"})


class BridgeConnection:
    def __init__(self, ws: Any) -> None:
        self._ws = ws
        self._closed = False
        self._outbound: asyncio.Queue[str] = asyncio.Queue(maxsize=OUTBOUND_QUEUE_MAX)
        self.avatar = BridgeAvatar(self.send_nowait)
        self.decode_errors = 0
        self.dropped_outbound = 0
        self._sender = asyncio.get_running_loop().create_task(self._send_loop())

    @property
    def closed(self) -> bool:
        return self._closed

    def send_nowait(self, frame: dict[str, Any]) -> bool:
        if self._closed:
            return False
        try:
            self._outbound.put_nowait(orjson.dumps(frame).decode("utf-8"))
        except asyncio.QueueFull:
            self.dropped_outbound += 1
            return False
        return True

    async def _send_loop(self) -> None:
        while True:
            payload = await self._outbound.get()
            try:
                await self._ws.send(payload)
            except websockets.exceptions.ConnectionClosed:
                return

    async def messages(self) -> AsyncIterator[InboundMessage]:
        async for raw in self._ws:
            message = decode_frame(raw)
            if message is None:
                self.decode_errors += 1
                continue
            if message.kind == "position":
                self.avatar.update_position(message.data)
            elif message.kind in ("kick", "error"):
                raise ConnectionClosedByServer(close_reason(message))
            yield message

    def __aiter__(self) -> AsyncIterator[InboundMessage]:
        return self.messages()

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._sender.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._sender
        await self._ws.close()


def build_connect_kwargs(config: Config) -> dict[str, Any]:
    ping_interval = config.bridge_ping_interval_seconds
    if ping_interval <= 0:
        ping_interval = None
    ping_timeout = config.bridge_ping_timeout_seconds
    if ping_timeout <= 0:
        ping_timeout = None
    connect_kwargs: dict[str, Any] = {
        "ping_interval": ping_interval,
        "ping_timeout": ping_timeout,
    }
    if CONNECT_SUPPORTS_CLOSE_TIMEOUT:
        connect_kwargs["close_timeout"] = DEFAULT_CLOSE_TIMEOUT_SECONDS
    if config.bridge_user_agent and CONNECT_HEADERS_PARAM is not None:
        connect_kwargs[CONNECT_HEADERS_PARAM] = [("User-Agent", config.bridge_user_agent)]
    return connect_kwargs


def probe_bridge(
    url: str,
    timeout: float,
    *,
    user_agent: str = "queue_pilot",
    session: requests.Session | None = None,
) -> bool:
    created_session = False
    if session is None:
        session = requests.Session()
        created_session = True
    try:
        resp = session.get(url, timeout=timeout, headers={"User-Agent": user_agent})
        return resp.status_code == 200
    except requests.RequestException:
        return False
    finally:
        if created_session:
            session.close()


class WebSocketTransport:
    def __init__(self, config: Config) -> None:
        self._config = config

    async def open(self) -> BridgeConnection:
        ws = await websockets.connect(
            self._config.bridge_url,
            **build_connect_kwargs(self._config),
        )
        connection = BridgeConnection(ws)
        connection.send_nowait(
            {
                "type": "hello",
                "account": self._config.account,
                "host": self._config.server_host,
                "port": self._config.server_port,
            }
        )
        return connection

    async def probe(self) -> bool:
        url = self._config.bridge_health_url
        if not url:
            return True
        return await asyncio.to_thread(
            probe_bridge,
            url,
            self._config.rest_timeout,
            user_agent=self._config.bridge_user_agent,
        )
