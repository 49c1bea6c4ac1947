"""Async Chrome DevTools Protocol connection (browser-level, flattened sessions)."""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
from collections.abc import Callable
from typing import Any

import websockets

from .http_client import HttpClientError, http_get_json

_LOGGER = logging.getLogger("browser_tools.connector.cdp")

# (method, params, session_id)
CdpListener = Callable[[str, dict[str, Any], "str | None"], None]


class CdpError(Exception):
    def __init__(self, message: str, *, code: int | None = None) -> None:
        super().__init__(message)
        self.code = code


async def discover_browser_ws_url(host: str, port: int, *, timeout: float = 2.0) -> str:
    """Resolve the browser WebSocket endpoint from /json/version."""
    url = f"http://{host}:{int(port)}/json/version"
    try:
        data = await asyncio.to_thread(http_get_json, url, timeout=timeout)
    except HttpClientError as exc:
        raise CdpError(f"DevTools endpoint unreachable at {host}:{port}: {exc}") from exc
    ws_url = data.get("webSocketDebuggerUrl") if isinstance(data, dict) else None
    if not isinstance(ws_url, str) or not ws_url:
        raise CdpError(f"No webSocketDebuggerUrl at {url}")
    return ws_url


class CdpConnection:
    """One WebSocket to the browser; commands correlate by id, events fan out to listeners."""

    def __init__(self, ws_url: str, *, timeout: float = 10.0) -> None:
        self.ws_url = ws_url
        self.timeout = float(timeout)
        self._ws: Any | None = None
        self._reader: asyncio.Task | None = None
        self._next_id = 1
        self._pending: dict[int, asyncio.Future] = {}
        self._listeners: list[CdpListener] = []

    @property
    def is_open(self) -> bool:
        return self._ws is not None and self._reader is not None and not self._reader.done()

    async def open(self) -> None:
        if self.is_open:
            return
        self._ws = await websockets.connect(self.ws_url, ping_interval=None, max_size=None, open_timeout=self.timeout)
        self._reader = asyncio.create_task(self._read_loop(), name="cdp-reader")

    async def close(self) -> None:
        ws = self._ws
        self._ws = None
        if ws is not None:
            with contextlib.suppress(Exception):
                await ws.close()
        reader = self._reader
        self._reader = None
        if reader is not None and not reader.done():
            reader.cancel()
            with contextlib.suppress(asyncio.CancelledError, Exception):
                await reader
        self._fail_pending("CDP connection closed")

    def add_listener(self, listener: CdpListener) -> None:
        if listener not in self._listeners:
            self._listeners.append(listener)

    def remove_listener(self, listener: CdpListener) -> None:
        with contextlib.suppress(ValueError):
            self._listeners.remove(listener)

    async def send(
        self,
        method: str,
        params: dict[str, Any] | None = None,
        *,
        session_id: str | None = None,
        timeout: float | None = None,
    ) -> dict[str, Any]:
        ws = self._ws
        if ws is None:
            raise CdpError("CDP connection is not open")

        msg_id = self._next_id
        self._next_id += 1
        msg: dict[str, Any] = {"id": msg_id, "method": method}
        if params:
            msg["params"] = params
        if session_id:
            msg["sessionId"] = session_id

        fut: asyncio.Future = asyncio.get_running_loop().create_future()
        self._pending[msg_id] = fut
        try:
            await ws.send(json.dumps(msg))
            return await asyncio.wait_for(fut, timeout=timeout if timeout is not None else self.timeout)
        except asyncio.TimeoutError as exc:
            raise CdpError(f"CDP command timed out: {method}") from exc
        except websockets.ConnectionClosed as exc:
            raise CdpError(f"CDP connection closed during {method}") from exc
        finally:
            self._pending.pop(msg_id, None)

    async def _read_loop(self) -> None:
        ws = self._ws
        if ws is None:
            return
        try:
            async for raw in ws:
                try:
                    msg = json.loads(raw)
                except ValueError:
                    continue
                if isinstance(msg, dict):
                    self._on_message(msg)
        except websockets.ConnectionClosed:
            _LOGGER.info("CDP connection closed")
        except Exception:  # noqa: BLE001
            _LOGGER.exception("CDP reader failed")
        finally:
            self._fail_pending("CDP connection closed")

    def _on_message(self, msg: dict[str, Any]) -> None:
        raw_id = msg.get("id")
        if isinstance(raw_id, int):
            fut = self._pending.get(raw_id)
            if fut is None or fut.done():
                return
            err = msg.get("error")
            if isinstance(err, dict):
                fut.set_exception(CdpError(str(err.get("message") or "CDP error"), code=err.get("code")))
            else:
                result = msg.get("result")
                fut.set_result(result if isinstance(result, dict) else {})
            return

        method = msg.get("method")
        if not isinstance(method, str) or not method:
            return
        params = msg.get("params")
        session_id = msg.get("sessionId")
        for listener in list(self._listeners):
            try:
                listener(method, params if isinstance(params, dict) else {}, session_id if isinstance(session_id, str) else None)
            except Exception:  # noqa: BLE001
                _LOGGER.exception("CDP listener failed for %s", method)

    def _fail_pending(self, reason: str) -> None:
        pending = list(self._pending.values())
        self._pending.clear()
        for fut in pending:
            if not fut.done():
                fut.set_exception(CdpError(reason))
