from __future__ import annotations

import asyncio
import itertools
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any, Protocol

from .config import RelaySettings
from .errors import CommandError, ContextError
from .evaluator import ScriptRunner
from .host import BrowserHost
from .log_store import LogStore
from .tab_context import TabContextGuard

_LOGGER = logging.getLogger("browser_tools.connector.dispatcher")

# Inbound kinds not worth an info line each.
_QUIET_KINDS = {"ping", "heartbeat-response"}


def _now_ms() -> int:
    return int(time.time() * 1000)


class Transport(Protocol):
    async def send(self, frame: dict[str, Any]) -> bool: ...

    async def handle_server_shutdown(self) -> None: ...


@dataclass
class PendingCommand:
    request_id: Any
    kind: str
    issued_at: float = field(default_factory=time.monotonic)
    timeout_handle: asyncio.TimerHandle | None = None
    task: asyncio.Task | None = None


class CommandDispatcher:
    """Routes relay commands to handlers; exactly one terminal response per requestId."""

    def __init__(
        self,
        transport: Transport,
        host: BrowserHost,
        guard: TabContextGuard,
        runner: ScriptRunner,
        store: LogStore,
        settings_provider: Callable[[], RelaySettings],
        *,
        script_timeout_s: float = 15.0,
        url_retry_count: int = 2,
        url_retry_delay_s: float = 0.5,
    ) -> None:
        self.transport = transport
        self.host = host
        self.guard = guard
        self.runner = runner
        self.store = store
        self._settings = settings_provider
        self._script_timeout_s = float(script_timeout_s)
        self._url_retry_count = max(0, int(url_retry_count))
        self._url_retry_delay_s = float(url_retry_delay_s)
        self._seq = itertools.count(1)
        self.pending: dict[int, PendingCommand] = {}
        self._sends: set[asyncio.Task] = set()
        self._handlers: dict[str, Callable[[dict[str, Any]], Awaitable[None]]] = {
            "ping": self._ping,
            "take-screenshot": self._take_screenshot,
            "refresh-page": self._refresh_page,
            "run-script": self._run_script,
            "get-current-url": self._get_current_url,
            "get-console-logs": self._get_console_logs,
            "get-console-errors": self._get_console_errors,
            "get-network-logs": self._get_network_logs,
            "wipe-logs": self._wipe_logs,
            "server-shutdown": self._server_shutdown,
        }

    async def dispatch(self, msg: dict[str, Any]) -> None:
        kind = msg.get("type")
        if not isinstance(kind, str):
            return
        if kind in _QUIET_KINDS:
            _LOGGER.debug("received %s", kind)
        else:
            _LOGGER.info("received %s (requestId=%s)", kind, msg.get("requestId"))
        handler = self._handlers.get(kind)
        if handler is None:
            _LOGGER.debug("ignoring unknown message type %s", kind)
            return
        await handler(msg)

    async def cancel_pending(self) -> None:
        """Cancel in-flight commands, answering each with a cancelled error while the socket is up."""
        pending = list(self.pending.values())
        self.pending.clear()
        for cmd in pending:
            if cmd.timeout_handle is not None:
                cmd.timeout_handle.cancel()
            if cmd.task is not None and not cmd.task.done():
                cmd.task.cancel()
        for cmd in pending:
            await self.transport.send(
                {
                    "type": "script-error",
                    "error": "Script execution cancelled",
                    "reason": "cancelled",
                    "requestId": cmd.request_id,
                }
            )
        if pending:
            _LOGGER.info("cancelled %d pending commands", len(pending))

    # ─────────────────────────────────────────────────────────────────────────
    # Handlers
    # ─────────────────────────────────────────────────────────────────────────

    async def _ping(self, msg: dict[str, Any]) -> None:
        await self.transport.send({"type": "pong", "timestamp": _now_ms()})

    async def _server_shutdown(self, msg: dict[str, Any]) -> None:
        await self.transport.handle_server_shutdown()

    async def _take_screenshot(self, msg: dict[str, Any]) -> None:
        request_id = msg.get("requestId")
        settings = self._settings()
        try:
            data = await self.host.capture_visible_tab(self.guard.context.tab_id)
        except Exception as exc:  # noqa: BLE001
            _LOGGER.warning("screenshot capture failed: %s", exc)
            await self.transport.send({"type": "screenshot-error", "error": str(exc), "requestId": request_id})
            return
        await self.transport.send(
            {
                "type": "screenshot-data",
                "data": data,
                "requestId": request_id,
                "path": msg.get("path") or settings.screenshot_path,
                "autoPaste": settings.allow_auto_paste,
            }
        )

    async def _refresh_page(self, msg: dict[str, Any]) -> None:
        frame: dict[str, Any] = {"type": "refresh-page-response", "requestId": msg.get("requestId")}
        tab_id = self.guard.context.tab_id
        try:
            if not tab_id:
                raise CommandError(kind="refresh-page", reason="no-tab", message="No tab to refresh")
            await self.host.reload(tab_id)
        except Exception as exc:  # noqa: BLE001
            _LOGGER.warning("page refresh failed: %s", exc)
            frame.update(success=False, error=str(exc))
        else:
            frame["success"] = True
        await self.transport.send(frame)

    async def _get_current_url(self, msg: dict[str, Any]) -> None:
        request_id = msg.get("requestId")
        tab_id = self.guard.context.tab_id
        attempts = self._url_retry_count + 1
        error = "Tab not found"
        for attempt in range(attempts):
            try:
                tab = await self.host.get_tab(tab_id) if tab_id else None
            except Exception as exc:  # noqa: BLE001
                tab = None
                error = str(exc)
            if tab and tab.get("url"):
                await self.transport.send(
                    {"type": "current-url-response", "url": tab.get("url"), "tabId": tab_id, "requestId": request_id}
                )
                return
            if attempt < attempts - 1:
                await asyncio.sleep(self._url_retry_delay_s)

        _LOGGER.warning("current URL unavailable for tab %s: %s", tab_id, error)
        await self.transport.send(
            {"type": "current-url-response", "url": None, "tabId": tab_id, "error": error, "requestId": request_id}
        )

    async def _get_console_logs(self, msg: dict[str, Any]) -> None:
        await self._send_logs("console-logs-response", self.store.console_logs, msg)

    async def _get_console_errors(self, msg: dict[str, Any]) -> None:
        await self._send_logs("console-errors-response", self.store.console_errors, msg)

    async def _get_network_logs(self, msg: dict[str, Any]) -> None:
        await self._send_logs("network-logs-response", self.store.network_logs, msg)

    async def _send_logs(self, response_type: str, buffer: Any, msg: dict[str, Any]) -> None:
        logs = self.store.query(buffer, self._settings())
        await self.transport.send({"type": response_type, "logs": logs, "requestId": msg.get("requestId")})

    async def _wipe_logs(self, msg: dict[str, Any]) -> None:
        self.store.clear()
        await self.transport.send({"type": "wipe-logs-response", "success": True, "requestId": msg.get("requestId")})

    # ─────────────────────────────────────────────────────────────────────────
    # run-script
    # ─────────────────────────────────────────────────────────────────────────

    async def _run_script(self, msg: dict[str, Any]) -> None:
        script = msg.get("script")
        cmd = PendingCommand(request_id=msg.get("requestId"), kind="run-script")
        key = next(self._seq)
        self.pending[key] = cmd
        if not isinstance(script, str) or not script.strip():
            await self._complete(key, {"type": "script-error", "error": "No script provided", "reason": "invalid"})
            return
        loop = asyncio.get_running_loop()
        cmd.timeout_handle = loop.call_later(self._script_timeout_s, self._on_script_timeout, key)
        cmd.task = asyncio.create_task(self._execute_script(key, script), name=f"run-script-{key}")

    async def _execute_script(self, key: int, script: str) -> None:
        try:
            await self.guard.guard()
            result = await self.runner.run(str(self.guard.context.tab_id), script)
        except ContextError as exc:
            _LOGGER.warning("run-script rejected: %s", exc)
            frame = {"type": "script-error", "error": str(exc), "contextInfo": exc.context_info()}
        except CommandError as exc:
            _LOGGER.info("run-script failed (%s): %s", exc.reason, exc)
            frame = {"type": "script-error", **exc.to_dict()}
        except Exception as exc:  # noqa: BLE001
            _LOGGER.exception("run-script failed")
            frame = {"type": "script-error", "error": f"Script execution failed: {exc}"}
        else:
            self.guard.record_success()
            frame = {"type": "script-result", "result": result}
        await self._complete(key, frame)

    def _on_script_timeout(self, key: int) -> None:
        cmd = self.pending.pop(key, None)
        if cmd is None:
            return
        _LOGGER.warning("run-script timed out (requestId=%s)", cmd.request_id)
        if cmd.task is not None and not cmd.task.done():
            cmd.task.cancel()
        frame = {
            "type": "script-error",
            "error": "Script execution timed out",
            "reason": "timeout",
            "requestId": cmd.request_id,
        }
        task = asyncio.create_task(self.transport.send(frame))
        self._sends.add(task)
        task.add_done_callback(self._sends.discard)

    async def _complete(self, key: int, frame: dict[str, Any]) -> None:
        cmd = self.pending.pop(key, None)
        if cmd is None:
            _LOGGER.debug("discarding late %s result", frame.get("type"))
            return
        if cmd.timeout_handle is not None:
            cmd.timeout_handle.cancel()
        await self.transport.send({**frame, "requestId": cmd.request_id})
