from __future__ import annotations

import re

POSITION_PATTERNS = (
    re.compile(r"position in queue:\s*(\d+)", re.IGNORECASE),
    re.compile(r"queue position[:\s]+(\d+)", re.IGNORECASE),
)
QUEUE_NOTICES = ("Queued for server", "already queued")
DEFAULT_FINISH_MARKER = "Connected to the server"


def parse_position(text: str) -> int | None:
    if not text:
        return None
    for pattern in POSITION_PATTERNS:
        match = pattern.search(text)
        if match:
            return int(match.group(1))
    return None


def is_finish_marker(text: str, marker: str = DEFAULT_FINISH_MARKER) -> bool:
    return bool(text) and bool(marker) and marker in text


def is_queue_notice(text: str) -> bool:
    return any(notice in text for notice in QUEUE_NOTICES)
