"""Status notifications for UI collaborators (panel, popup, CLI status line)."""

from __future__ import annotations

import logging
import time
from collections import deque
from collections.abc import Callable
from contextlib import suppress
from typing import Any

_LOGGER = logging.getLogger("browser_tools.connector.notifications")

SERVER_VALIDATION_SUCCESS = "server-validation-success"
SERVER_VALIDATION_FAILED = "server-validation-failed"
WEBSOCKET_CONNECTED = "websocket-connected"
WEBSOCKET_DISCONNECTED = "websocket-disconnected"
DEBUGGER_ATTACHED = "debugger-attached"
DEBUGGER_DETACHED = "debugger-detached"

Listener = Callable[[dict[str, Any]], None]


def _now_ms() -> int:
    return int(time.time() * 1000)


class Notifier:
    """Fan-out of status events; listeners must never break the connector."""

    def __init__(self, *, history: int = 50) -> None:
        self._listeners: list[Listener] = []
        self._history: deque[dict[str, Any]] = deque(maxlen=max(1, int(history)))

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            with suppress(ValueError):
                self._listeners.remove(listener)

        return _unsubscribe

    def emit(self, event_type: str, **fields: Any) -> dict[str, Any]:
        event = {"type": event_type, "ts": _now_ms(), **fields}
        self._history.append(event)
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:  # noqa: BLE001
                _LOGGER.exception("notification listener failed for %s", event_type)
        return event

    def recent(self, limit: int = 10) -> list[dict[str, Any]]:
        items = list(self._history)
        return items[-max(0, int(limit)) :] if limit else []
