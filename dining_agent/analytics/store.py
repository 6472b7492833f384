from __future__ import annotations

import time
from collections import deque
from typing import Any

MAX_EVENTS = 5000

# In-process, append-only; the oldest events fall off once the cap is hit.
_events: deque[dict[str, Any]] = deque(maxlen=MAX_EVENTS)


def record_event(event_type: str, data: dict[str, Any]) -> None:
    _events.append({
        "type": event_type,
        "timestamp": time.time(),
        **data,
    })


def get_events() -> list[dict[str, Any]]:
    return list(_events)


def clear_events() -> None:
    _events.clear()
