from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from collections.abc import Awaitable, Callable
from typing import Any

from .bounding import bound_array, bound_log_entry, serialized_size, truncate_strings
from .config import RelaySettings
from .http_client import HttpClientError, http_post_json

_LOGGER = logging.getLogger("browser_tools.connector.log_store")

LARGE_PAYLOAD_BYTES = 1_000_000


def _now_ms() -> int:
    return int(time.time() * 1000)


class LogStore:
    """Bounded in-memory buffers of captured entries (oldest evicted first)."""

    def __init__(self, capacity: int = 500) -> None:
        cap = max(1, int(capacity))
        self.console_logs: deque[dict[str, Any]] = deque(maxlen=cap)
        self.console_errors: deque[dict[str, Any]] = deque(maxlen=cap)
        self.network_logs: deque[dict[str, Any]] = deque(maxlen=cap)
        self.selected_element: dict[str, Any] | None = None

    def add(self, entry: dict[str, Any]) -> None:
        kind = entry.get("type")
        if kind == "console-log":
            self.console_logs.append(entry)
        elif kind == "console-error":
            self.console_errors.append(entry)
        elif kind == "network-request":
            self.network_logs.append(entry)
        elif kind == "selected-element":
            self.selected_element = entry

    def clear(self) -> None:
        self.console_logs.clear()
        self.console_errors.clear()
        self.network_logs.clear()
        self.selected_element = None

    def query(self, buffer: deque[dict[str, Any]], settings: RelaySettings) -> list[dict[str, Any]]:
        """Newest `log_limit` entries, strings bounded, total size within `query_limit`."""
        recent = list(buffer)[-max(1, settings.log_limit) :]
        return bound_array(recent, settings.query_limit, lambda e: truncate_strings(e, settings.string_size_limit))

    def counts(self) -> dict[str, int]:
        return {
            "consoleLogs": len(self.console_logs),
            "consoleErrors": len(self.console_errors),
            "networkLogs": len(self.network_logs),
        }


class LogForwarder:
    """Bounds captured entries, buffers them and ships them to the relay server.

    Entries go over the WebSocket while it is open; otherwise they are POSTed to
    /extension-log when the relay identity is confirmed, and dropped when it is not.
    """

    def __init__(
        self,
        store: LogStore,
        settings_provider: Callable[[], RelaySettings],
        *,
        send_frame: Callable[[dict[str, Any]], Awaitable[bool]],
        validate: Callable[[str, int], Awaitable[bool]],
        post_timeout: float = 5.0,
    ) -> None:
        self.store = store
        self._settings = settings_provider
        self._send_frame = send_frame
        self._validate = validate
        self._post_timeout = float(post_timeout)
        self.dropped = 0

    async def forward(self, entry: dict[str, Any]) -> None:
        settings = self._settings()
        bounded = bound_log_entry(entry, settings)
        bounded.setdefault("timestamp", _now_ms())
        self.store.add(bounded)

        if await self._send_frame(bounded):
            return

        if not await self._validate(settings.server_host, settings.server_port):
            self.dropped += 1
            _LOGGER.debug("relay not validated, dropping %s entry", bounded.get("type"))
            return

        payload = {"data": {**bounded, "timestamp": _now_ms()}, "settings": settings.ingest_settings()}
        size = serialized_size(payload)
        if size > LARGE_PAYLOAD_BYTES:
            _LOGGER.warning("large log payload detected: %d bytes", size)
        url = f"{settings.server_base_url}/extension-log"
        try:
            await asyncio.to_thread(http_post_json, url, payload, timeout=self._post_timeout)
        except HttpClientError as exc:
            self.dropped += 1
            _LOGGER.warning("log ingestion failed: %s", exc)

    async def wipe_server_logs(self) -> bool:
        settings = self._settings()
        url = f"{settings.server_base_url}/wipelogs"
        try:
            await asyncio.to_thread(http_post_json, url, None, timeout=self._post_timeout)
        except HttpClientError as exc:
            _LOGGER.warning("wiping server logs failed: %s", exc)
            return False
        _LOGGER.info("server logs wiped")
        return True
