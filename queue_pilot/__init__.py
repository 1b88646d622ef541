"""Queue-position tracking, ETA learning and reconnect supervision for a game-server queue."""

__all__ = [
    "app",
    "cli",
    "config",
    "eta",
    "queue_model",
    "runlog",
    "session_store",
    "signals",
    "text_extract",
    "transport",
    "writers",
]
