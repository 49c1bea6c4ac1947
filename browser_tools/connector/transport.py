"""WebSocket lifecycle toward the relay server.

One logical Session at a time. Identity validation gates every connection attempt, a
single reconnect timer may be armed, and a heartbeat task runs only while a socket is
open. Every socket failure is logged here; callers only ever see `send()` return False.
"""

from __future__ import annotations

import asyncio
import contextlib
import enum
import json
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, Protocol

import websockets
from websockets.protocol import State

from .config import ReconnectPolicy, RelaySettings
from .notifications import WEBSOCKET_CONNECTED, WEBSOCKET_DISCONNECTED, Notifier

_LOGGER = logging.getLogger("browser_tools.connector.transport")

NORMAL_CLOSE_CODES = frozenset({1000, 1001})


def _now_ms() -> int:
    return int(time.time() * 1000)


class Validator(Protocol):
    last_validation_time: float | None

    async def validate(self, host: str, port: int) -> bool: ...


class TransportState(enum.Enum):
    IDLE = "idle"
    VALIDATING = "validating"
    CONNECTING = "connecting"
    OPEN = "open"
    CLOSING = "closing"
    RECONNECTING = "reconnecting"


@dataclass
class Session:
    ws: Any | None = None
    connecting: bool = False
    intentional_closure: bool = False
    reconnect_attempts: int = 0
    heartbeat_failures: int = 0
    last_validation_time: float | None = None
    reconnect_after_validation: bool = False
    awaiting_heartbeat: bool = False


class TransportSession:
    def __init__(
        self,
        settings_provider: Callable[[], RelaySettings],
        validator: Validator,
        *,
        notifier: Notifier | None = None,
        on_message: Callable[[dict[str, Any]], Awaitable[None]] | None = None,
        on_open: Callable[[], Awaitable[None]] | None = None,
        reconnect: ReconnectPolicy | None = None,
        heartbeat_interval_s: float = 20.0,
        max_heartbeat_failures: int = 3,
        heartbeat_policy: str = "send",
        open_timeout: float = 5.0,
    ) -> None:
        self._settings = settings_provider
        self._validator = validator
        self._notifier = notifier
        self.on_message = on_message
        self.on_open = on_open
        self._policy = reconnect or ReconnectPolicy()
        self._heartbeat_interval_s = float(heartbeat_interval_s)
        self._max_heartbeat_failures = max(1, int(max_heartbeat_failures))
        self._heartbeat_policy = heartbeat_policy
        self._open_timeout = float(open_timeout)

        self.session = Session()
        self.state = TransportState.IDLE
        self._terminated = False
        self._heartbeat: asyncio.Task | None = None
        self._receiver: asyncio.Task | None = None
        self._reconnect_timer: asyncio.Task | None = None
        self._aux: set[asyncio.Task] = set()
        self._last_close: dict[str, Any] | None = None

    @property
    def is_open(self) -> bool:
        ws = self.session.ws
        return ws is not None and ws.state is State.OPEN

    @property
    def reconnect_armed(self) -> bool:
        return self._reconnect_timer is not None and not self._reconnect_timer.done()

    # ─────────────────────────────────────────────────────────────────────────
    # Connect / close
    # ─────────────────────────────────────────────────────────────────────────

    async def connect(self) -> bool:
        if self._terminated:
            _LOGGER.debug("transport shut down, ignoring connect")
            return False
        session = self.session
        if session.connecting:
            _LOGGER.debug("connection attempt already in progress")
            return False

        session.connecting = True
        opened: Session | None = None
        try:
            self._cancel_reconnect_timer()
            await self._stop_heartbeat()
            if session.ws is not None:
                await self._close_socket(session, reason="Replacing connection")

            settings = self._settings()
            self.state = TransportState.VALIDATING
            if not await self._validator.validate(settings.server_host, settings.server_port):
                _LOGGER.warning(
                    "relay server at %s:%s failed validation, not connecting",
                    settings.server_host,
                    settings.server_port,
                )
                session.reconnect_after_validation = True
                self.state = TransportState.IDLE
                self._schedule_reconnect("validation failed")
                return False

            session.last_validation_time = self._validator.last_validation_time
            self.state = TransportState.CONNECTING
            url = settings.websocket_url
            try:
                ws = await websockets.connect(
                    url, ping_interval=None, max_size=None, open_timeout=self._open_timeout
                )
            except Exception as exc:  # noqa: BLE001
                _LOGGER.warning("websocket connect to %s failed: %s", url, exc)
                self.state = TransportState.IDLE
                self._schedule_reconnect("connect failed")
                return False

            if self._terminated:
                with contextlib.suppress(Exception):
                    await ws.close()
                return False

            opened = Session(ws=ws, connecting=True, last_validation_time=session.last_validation_time)
            self.session = opened
            self.state = TransportState.OPEN
            _LOGGER.info("connected to relay server at %s", url)
            self._notify(WEBSOCKET_CONNECTED, url=url)
            self._heartbeat = asyncio.create_task(self._heartbeat_loop(opened), name="relay-heartbeat")

            if self.on_open is not None:
                try:
                    await self.on_open()
                except Exception:  # noqa: BLE001
                    _LOGGER.exception("on_open hook failed")

            self._receiver = asyncio.create_task(self._receive_loop(opened), name="relay-receiver")
            return True
        finally:
            session.connecting = False
            if opened is not None:
                opened.connecting = False

    async def reconnect(self, reason: str) -> bool:
        if self._terminated:
            return False
        _LOGGER.info("forcing reconnection: %s", reason)
        return await self.connect()

    async def handle_server_shutdown(self) -> None:
        """Peer announced shutdown: close normally and stay down until told otherwise."""
        _LOGGER.info("relay server is shutting down, closing connection")
        session = self.session
        session.intentional_closure = True
        session.reconnect_after_validation = False
        self._cancel_reconnect_timer()
        await self._stop_heartbeat()
        await self._close_socket(session, code=1000, reason="Server shutting down")
        self.state = TransportState.IDLE

    async def shutdown(self) -> None:
        self._terminated = True
        session = self.session
        session.intentional_closure = True
        self._cancel_reconnect_timer()
        await self._stop_heartbeat()
        await self._close_socket(session, code=1000, reason="Connector shutting down")
        receiver = self._receiver
        self._receiver = None
        if receiver is not None and receiver is not asyncio.current_task():
            receiver.cancel()
            with contextlib.suppress(asyncio.CancelledError, Exception):
                await receiver
        aux = list(self._aux)
        self._aux.clear()
        for task in aux:
            if task is not asyncio.current_task():
                task.cancel()
        self.state = TransportState.IDLE
        _LOGGER.info("transport shut down")

    async def _close_socket(self, session: Session, *, code: int = 1000, reason: str = "") -> None:
        session.intentional_closure = True
        ws = session.ws
        session.ws = None
        if ws is None:
            return
        self.state = TransportState.CLOSING
        try:
            await ws.close(code, reason)
        except Exception as exc:  # noqa: BLE001
            _LOGGER.debug("socket close failed: %s", exc)

    # ─────────────────────────────────────────────────────────────────────────
    # Send / receive
    # ─────────────────────────────────────────────────────────────────────────

    async def send(self, frame: dict[str, Any]) -> bool:
        """Send one JSON frame; False when the socket is not open. Never raises."""
        return await self._send_on(self.session, frame)

    async def _send_on(self, session: Session, frame: dict[str, Any]) -> bool:
        ws = session.ws
        if ws is None or ws.state is not State.OPEN:
            _LOGGER.debug("socket not open, dropping %s frame", frame.get("type"))
            return False
        try:
            await ws.send(json.dumps(frame, ensure_ascii=False, default=str))
        except Exception as exc:  # noqa: BLE001
            _LOGGER.warning("sending %s frame failed: %s", frame.get("type"), exc)
            return False
        return True

    async def _receive_loop(self, session: Session) -> None:
        ws = session.ws
        if ws is None:
            return
        try:
            async for raw in ws:
                try:
                    msg = json.loads(raw)
                except ValueError:
                    _LOGGER.debug("ignoring non-JSON frame")
                    continue
                if not isinstance(msg, dict):
                    continue
                if msg.get("type") == "heartbeat-response":
                    session.heartbeat_failures = 0
                    session.awaiting_heartbeat = False
                    continue
                if self.on_message is None:
                    continue
                try:
                    await self.on_message(msg)
                except Exception:  # noqa: BLE001
                    _LOGGER.exception("message handler failed for %s", msg.get("type"))
        except websockets.ConnectionClosed:
            pass
        except Exception:  # noqa: BLE001
            _LOGGER.exception("websocket receive failed")
        await self._on_closed(session, ws.close_code, ws.close_reason)

    async def _on_closed(self, session: Session, code: int | None, reason: str | None) -> None:
        self._last_close = {"code": code, "reason": reason or "", "ts": _now_ms()}
        if session is not self.session:
            return
        await self._stop_heartbeat()
        session.ws = None
        if not self._terminated:
            self.state = TransportState.IDLE
        _LOGGER.info("relay connection closed code=%s reason=%s", code, reason or "")
        self._notify(WEBSOCKET_DISCONNECTED, code=code, reason=reason or "")

        if session.intentional_closure or self._terminated:
            return
        if code in NORMAL_CLOSE_CODES and not session.reconnect_after_validation:
            return
        self._schedule_reconnect(f"abnormal closure ({code})")

    # ─────────────────────────────────────────────────────────────────────────
    # Heartbeat / reconnect
    # ─────────────────────────────────────────────────────────────────────────

    async def _heartbeat_loop(self, session: Session) -> None:
        while True:
            await asyncio.sleep(self._heartbeat_interval_s)
            if session is not self.session or session.ws is None:
                return
            if self._heartbeat_policy == "response" and session.awaiting_heartbeat:
                session.heartbeat_failures += 1
            if await self._send_on(session, {"type": "heartbeat", "timestamp": _now_ms()}):
                session.awaiting_heartbeat = True
                _LOGGER.debug("heartbeat sent")
            else:
                session.heartbeat_failures += 1
            if session.heartbeat_failures >= self._max_heartbeat_failures:
                _LOGGER.warning("%d heartbeat failures, reconnecting", session.heartbeat_failures)
                self._spawn(self.reconnect("heartbeat failures"))
                return

    async def _stop_heartbeat(self) -> None:
        task = self._heartbeat
        self._heartbeat = None
        if task is None or task is asyncio.current_task() or task.done():
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task

    def _schedule_reconnect(self, reason: str) -> None:
        if self._terminated:
            return
        if self.reconnect_armed:
            _LOGGER.debug("reconnect already scheduled, ignoring: %s", reason)
            return
        session = self.session
        if not self._policy.allows(session.reconnect_attempts):
            _LOGGER.warning("giving up after %d reconnect attempts", session.reconnect_attempts)
            return
        session.reconnect_attempts += 1
        self.state = TransportState.RECONNECTING
        _LOGGER.info(
            "reconnecting in %.1fs (%s, attempt %d)", self._policy.delay_s, reason, session.reconnect_attempts
        )
        self._reconnect_timer = asyncio.create_task(self._reconnect_after(self._policy.delay_s))

    async def _reconnect_after(self, delay_s: float) -> None:
        await asyncio.sleep(delay_s)
        self._reconnect_timer = None
        await self.connect()

    def _cancel_reconnect_timer(self) -> None:
        timer = self._reconnect_timer
        self._reconnect_timer = None
        if timer is not None and timer is not asyncio.current_task() and not timer.done():
            timer.cancel()

    def _spawn(self, coro: Awaitable[Any]) -> None:
        task = asyncio.ensure_future(coro)
        self._aux.add(task)
        task.add_done_callback(self._aux.discard)

    def status(self) -> dict[str, Any]:
        session = self.session
        settings = self._settings()
        return {
            "state": self.state.value,
            "connected": self.is_open,
            "url": settings.websocket_url,
            "reconnectAttempts": session.reconnect_attempts,
            "heartbeatFailures": session.heartbeat_failures,
            "reconnectScheduled": self.reconnect_armed,
            **({"lastValidationTime": session.last_validation_time} if session.last_validation_time else {}),
            **({"lastClose": dict(self._last_close)} if self._last_close else {}),
        }

    def _notify(self, event_type: str, **fields: Any) -> None:
        if self._notifier is not None:
            self._notifier.emit(event_type, **fields)
