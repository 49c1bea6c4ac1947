"""Connector composition root.

ConnectorAgent wires the relay transport, command dispatcher, capture session and tab
context guard around one BrowserHost, and exposes the host-side hooks (tab activation,
panel shown, page refresh, settings change, unload) as coroutines.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from collections.abc import Awaitable
from typing import Any

from .capture import CaptureInstrumentationSession
from .config import ConnectorConfig, RelaySettings
from .dispatcher import CommandDispatcher
from .evaluator import ScriptRunner
from .host import BrowserHost, CdpBrowserHost
from .identity import IdentityValidator
from .log_store import LogForwarder, LogStore
from .notifications import Notifier
from .tab_context import TabContext, TabContextGuard
from .transport import TransportSession

_LOGGER = logging.getLogger("browser_tools.connector.agent")


def _now_ms() -> int:
    return int(time.time() * 1000)


class ConnectorAgent:
    def __init__(
        self,
        config: ConnectorConfig,
        host: BrowserHost | None = None,
        *,
        notifier: Notifier | None = None,
        validator: IdentityValidator | None = None,
    ) -> None:
        self.config = config
        self._settings = config.settings
        self.notifier = notifier or Notifier()
        self.validator = validator or IdentityValidator(
            self.notifier,
            timeout=config.validation_timeout_s,
            cache_s=config.validation_cache_s,
        )
        self.host: BrowserHost = host or CdpBrowserHost(
            config.cdp_host, config.cdp_port, preferred_tab_id=config.tab_id
        )

        self.context = TabContext(tab_id=config.tab_id, max_failures=config.context_max_failures)
        self.guard = TabContextGuard(
            self.host,
            self.context,
            check_interval_s=config.context_check_interval_s,
            settle_s=config.context_settle_s,
            on_tab_changed=self._on_tab_changed,
        )
        self.store = LogStore(config.log_buffer_size)
        self.transport = TransportSession(
            self.settings,
            self.validator,
            notifier=self.notifier,
            on_open=self._on_transport_open,
            reconnect=config.reconnect,
            heartbeat_interval_s=config.heartbeat_interval_s,
            max_heartbeat_failures=config.max_heartbeat_failures,
            heartbeat_policy=config.heartbeat_policy,
        )
        self.forwarder = LogForwarder(
            self.store,
            self.settings,
            send_frame=self.transport.send,
            validate=self.validator.validate,
        )
        self.capture = CaptureInstrumentationSession(
            self.host,
            self.context,
            emit=self.forwarder.forward,
            notifier=self.notifier,
            on_page_event=self._on_page_event,
        )
        self.runner = ScriptRunner.for_host(self.host)
        self.dispatcher = CommandDispatcher(
            self.transport,
            self.host,
            self.guard,
            self.runner,
            self.store,
            self.settings,
            script_timeout_s=config.script_timeout_s,
            url_retry_count=config.url_retry_count,
            url_retry_delay_s=config.url_retry_delay_s,
        )
        self.transport.on_message = self.dispatcher.dispatch

        self._tasks: set[asyncio.Task] = set()
        self._diagnostics: asyncio.Task | None = None
        self._stopped = asyncio.Event()
        self._started = False

    def settings(self) -> RelaySettings:
        return self._settings

    # ─────────────────────────────────────────────────────────────────────────
    # Lifecycle
    # ─────────────────────────────────────────────────────────────────────────

    async def start(self) -> None:
        if self._started:
            return
        self._started = True
        self._stopped.clear()
        await self.host.start()
        if not self.context.tab_id:
            self.context.tab_id = await self.host.resolve_tab_id()
            _LOGGER.info("instrumenting tab %s", self.context.tab_id)
        await self.capture.attach()
        await self.transport.connect()
        if self.config.diagnostics_interval_s > 0:
            self._diagnostics = asyncio.create_task(self._diagnostics_loop(), name="connector-diagnostics")

    async def run(self) -> None:
        await self.start()
        await self._stopped.wait()

    async def stop(self) -> None:
        """Unload: detach the debugger, close the relay socket, cancel every timer."""
        if not self._started:
            return
        self._started = False
        await self.dispatcher.cancel_pending()
        if self._diagnostics is not None:
            self._diagnostics.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._diagnostics
            self._diagnostics = None
        for task in list(self._tasks):
            task.cancel()
        self._tasks.clear()
        await self.capture.close()
        await self.transport.shutdown()
        with contextlib.suppress(Exception):
            await self.host.stop()
        self._stopped.set()
        _LOGGER.info("connector stopped")

    # ─────────────────────────────────────────────────────────────────────────
    # Host-side hooks
    # ─────────────────────────────────────────────────────────────────────────

    async def update_settings(self, data: dict[str, Any]) -> RelaySettings:
        previous = self._settings
        updated = previous.merged(data)
        self._settings = updated
        if (updated.server_host, updated.server_port) != (previous.server_host, previous.server_port):
            _LOGGER.info("relay endpoint changed to %s:%s", updated.server_host, updated.server_port)
            self.validator.invalidate()
            await self.transport.reconnect("settings changed")
        return updated

    async def handle_page_refresh(self) -> None:
        self.guard.invalidate()
        await self.guard.recover()
        if not self.transport.is_open:
            await self.transport.reconnect("page refresh")

    async def on_tab_activated(self, tab_id: str) -> None:
        if tab_id != self.context.tab_id:
            return
        self.guard.invalidate()
        await self.guard.recover()

    async def on_panel_shown(self) -> None:
        await self.capture.ensure_attached()

    async def handle_navigation(self, url: str | None) -> None:
        await self.forwarder.wipe_server_logs()
        self.store.clear()
        self.runner.forget(self.context.tab_id)
        await self.transport.send(
            {"type": "page-navigated", "url": url, "tabId": self.context.tab_id, "timestamp": _now_ms()}
        )

    def _on_page_event(self, kind: str, data: dict[str, Any]) -> None:
        if kind == "navigated":
            self._spawn(self.handle_navigation(data.get("url")))
        elif kind == "load":
            self.guard.invalidate()
            self._spawn(self.guard.recover())

    def _on_tab_changed(self, tab_id: str) -> None:
        _LOGGER.info("inspected tab changed to %s, re-instrumenting", tab_id)
        self.runner.forget()
        self._spawn(self.capture.attach())

    async def _on_transport_open(self) -> None:
        tab_id = self.context.tab_id
        if not tab_id:
            return
        try:
            tab = await self.host.get_tab(tab_id)
        except Exception as exc:  # noqa: BLE001
            _LOGGER.warning("could not read current URL on connect: %s", exc)
            return
        if not tab or not tab.get("url"):
            return
        await self.transport.send(
            {
                "type": "page-navigated",
                "url": tab.get("url"),
                "tabId": tab_id,
                "timestamp": _now_ms(),
                "source": "initial_connection",
            }
        )

    # ─────────────────────────────────────────────────────────────────────────
    # Diagnostics
    # ─────────────────────────────────────────────────────────────────────────

    def status(self) -> dict[str, Any]:
        ctx = self.context
        return {
            "transport": self.transport.status(),
            "capture": self.capture.status(),
            "tabContext": {
                "tabId": ctx.tab_id,
                "isValid": ctx.is_valid,
                "consecutiveFailures": ctx.consecutive_failures,
                "maxFailures": ctx.max_failures,
            },
            "buffers": self.store.counts(),
            "droppedEntries": self.forwarder.dropped,
            "pendingCommands": len(self.dispatcher.pending),
            "notifications": self.notifier.recent(5),
        }

    async def _diagnostics_loop(self) -> None:
        while True:
            await asyncio.sleep(self.config.diagnostics_interval_s)
            _LOGGER.debug("status %s", self.status())

    def _spawn(self, coro: Awaitable[Any]) -> None:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            _LOGGER.error("connector task failed", exc_info=exc)
