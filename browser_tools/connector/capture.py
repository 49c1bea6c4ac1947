"""Debugger instrumentation of the inspected tab.

Attachment is an explicit state machine (DETACHED -> ATTACHING -> ATTACHED -> DETACHING)
guarded by one asyncio.Lock. Attaching while the tab is already attached, by us or by
another client, forces a clean detach first, and the event listener is registered
exactly once per attachment.
"""

from __future__ import annotations

import asyncio
import contextlib
import enum
import json
import logging
from collections import OrderedDict
from collections.abc import Awaitable, Callable
from typing import Any

from .cdp import CdpError
from .errors import InstrumentationError
from .host import BrowserHost
from .notifications import DEBUGGER_ATTACHED, DEBUGGER_DETACHED, Notifier
from .tab_context import TabContext

_LOGGER = logging.getLogger("browser_tools.connector.capture")

_CAPTURED_RESOURCE_TYPES = {"XHR", "Fetch"}
_UNRENDERABLE_ARGS = "Unable to process console arguments"

# Summary of the element currently selected in the Elements panel ($0).
SELECTED_ELEMENT_SCRIPT = """(() => {
  const el = $0;
  if (!el) return null;
  const rect = el.getBoundingClientRect();
  return {
    tagName: el.tagName,
    id: el.id,
    className: el.className,
    textContent: (el.textContent || "").substring(0, 100),
    attributes: Array.from(el.attributes || []).map((a) => ({ name: a.name, value: a.value })),
    dimensions: { width: rect.width, height: rect.height, top: rect.top, left: rect.left },
    innerHTML: (el.innerHTML || "").substring(0, 500),
  };
})()"""


class AttachState(enum.Enum):
    DETACHED = "detached"
    ATTACHING = "attaching"
    ATTACHED = "attached"
    DETACHING = "detaching"


def _dump(obj: Any) -> str:
    return json.dumps(obj, ensure_ascii=False, default=str)


def render_console_arg(arg: Any) -> str:
    if not isinstance(arg, dict):
        return str(arg)
    if arg.get("type") == "string":
        return str(arg.get("value", ""))
    if arg.get("type") == "object" and arg.get("preview"):
        return _dump(arg.get("preview"))
    if arg.get("description"):
        return str(arg.get("description"))
    if "value" in arg:
        value = arg.get("value")
        return value if isinstance(value, str) else _dump(value)
    return _dump(arg)


def render_console_args(args: Any) -> str:
    items = args if isinstance(args, list) else []
    try:
        return " ".join(render_console_arg(a) for a in items)
    except Exception:  # noqa: BLE001
        first = items[0] if items and isinstance(items[0], dict) else {}
        value = first.get("value")
        return str(value) if value is not None else _UNRENDERABLE_ARGS


def console_entry(params: dict[str, Any]) -> dict[str, Any]:
    level = str(params.get("type") or "log")
    return {
        "type": "console-error" if level == "error" else "console-log",
        "level": level,
        "message": render_console_args(params.get("args")),
    }


def exception_entry(params: dict[str, Any]) -> dict[str, Any]:
    details = params.get("exceptionDetails")
    details = details if isinstance(details, dict) else {}
    exc = details.get("exception")
    message = exc.get("description") if isinstance(exc, dict) else None
    return {
        "type": "console-error",
        "level": "error",
        "message": str(message) if message else _dump(details),
    }


class CaptureInstrumentationSession:
    """Console, exception and network capture for the tab held by `context`."""

    def __init__(
        self,
        host: BrowserHost,
        context: TabContext,
        *,
        emit: Callable[[dict[str, Any]], Awaitable[None]],
        notifier: Notifier | None = None,
        on_page_event: Callable[[str, dict[str, Any]], None] | None = None,
        max_pending_requests: int = 200,
    ) -> None:
        self.host = host
        self.context = context
        self.state = AttachState.DETACHED
        self.attached_tab: str | None = None
        self._emit = emit
        self._notifier = notifier
        self._on_page_event = on_page_event
        self._lock = asyncio.Lock()
        self._requests: OrderedDict[str, dict[str, Any]] = OrderedDict()
        self._max_pending = max(1, int(max_pending_requests))
        self._tasks: set[asyncio.Task] = set()

    @property
    def attached(self) -> bool:
        return self.state is AttachState.ATTACHED

    # ─────────────────────────────────────────────────────────────────────────
    # Attach / detach
    # ─────────────────────────────────────────────────────────────────────────

    async def attach(self) -> bool:
        async with self._lock:
            tab_id = self.context.tab_id
            if not tab_id:
                _LOGGER.warning("no tab to instrument")
                return False

            host_attached = False
            try:
                if self.attached_tab and self.attached_tab != tab_id:
                    await self._detach_locked(self.attached_tab, quiet=True)
                if self.attached or await self.host.is_attached(tab_id):
                    _LOGGER.info("tab %s already attached, detaching first", tab_id)
                    await self._detach_locked(tab_id, quiet=True)

                self.state = AttachState.ATTACHING
                await self.host.attach(tab_id)
                host_attached = True
                for domain in ("Runtime", "Network", "Page"):
                    await self.host.send(tab_id, f"{domain}.enable", {})
            except (InstrumentationError, CdpError) as exc:
                _LOGGER.warning("debugger attach failed for %s: %s", tab_id, exc)
                if host_attached:
                    with contextlib.suppress(InstrumentationError, CdpError):
                        await self.host.detach(tab_id)
                self.state = AttachState.DETACHED
                self.attached_tab = None
                return False

            self.host.remove_listener(self._on_host_event)
            self.host.add_listener(self._on_host_event)
            self.state = AttachState.ATTACHED
            self.attached_tab = tab_id
            _LOGGER.info("debugger attached to %s", tab_id)
            self._notify(DEBUGGER_ATTACHED, tabId=tab_id)
            return True

    async def detach(self) -> None:
        async with self._lock:
            tab_id = self.attached_tab or self.context.tab_id
            if not tab_id:
                return
            await self._detach_locked(tab_id)

    async def ensure_attached(self) -> bool:
        if self.attached and self.attached_tab == self.context.tab_id:
            return True
        return await self.attach()

    async def _detach_locked(self, tab_id: str, *, quiet: bool = False) -> None:
        self.host.remove_listener(self._on_host_event)
        self._requests.clear()
        was_attached = self.attached
        try:
            if not await self.host.is_attached(tab_id):
                self.state = AttachState.DETACHED
                self.attached_tab = None
                return
            self.state = AttachState.DETACHING
            await self.host.detach(tab_id)
        except (InstrumentationError, CdpError) as exc:
            if not quiet:
                _LOGGER.warning("debugger detach failed for %s: %s", tab_id, exc)
        finally:
            self.state = AttachState.DETACHED
            self.attached_tab = None
        if was_attached:
            _LOGGER.info("debugger detached from %s", tab_id)
            self._notify(DEBUGGER_DETACHED, tabId=tab_id)

    async def close(self) -> None:
        await self.detach()
        tasks = list(self._tasks)
        self._tasks.clear()
        for task in tasks:
            task.cancel()
        for task in tasks:
            with contextlib.suppress(asyncio.CancelledError, Exception):
                await task

    # ─────────────────────────────────────────────────────────────────────────
    # Selected element
    # ─────────────────────────────────────────────────────────────────────────

    async def capture_selected_element(self) -> dict[str, Any] | None:
        tab_id = self.context.tab_id
        if not tab_id:
            return None
        try:
            res = await self.host.send(
                tab_id,
                "Runtime.evaluate",
                {"expression": SELECTED_ELEMENT_SCRIPT, "includeCommandLineAPI": True, "returnByValue": True},
            )
        except (InstrumentationError, CdpError) as exc:
            _LOGGER.warning("selected element capture failed: %s", exc)
            return None
        element = (res.get("result") or {}).get("value") if isinstance(res, dict) else None
        if not isinstance(element, dict):
            return None
        entry = {"type": "selected-element", "element": element}
        await self._emit(entry)
        return entry

    # ─────────────────────────────────────────────────────────────────────────
    # Events
    # ─────────────────────────────────────────────────────────────────────────

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
            _LOGGER.error("capture task failed", exc_info=exc)

    def _on_host_event(self, tab_id: str, method: str, params: dict[str, Any]) -> None:
        if tab_id != self.attached_tab:
            return

        if method == "Runtime.consoleAPICalled":
            self._spawn(self._emit(console_entry(params)))
        elif method == "Runtime.exceptionThrown":
            self._spawn(self._emit(exception_entry(params)))
        elif method.startswith("Network."):
            self._on_network_event(tab_id, method, params)
        elif method == "Page.frameNavigated":
            frame = params.get("frame") if isinstance(params.get("frame"), dict) else {}
            if not frame.get("parentId") and self._on_page_event is not None:
                self._on_page_event("navigated", {"tabId": tab_id, "url": frame.get("url")})
        elif method == "Page.loadEventFired":
            if self._on_page_event is not None:
                self._on_page_event("load", {"tabId": tab_id})
        elif method == "Inspector.detached":
            _LOGGER.info("debugger detached by browser: %s", params.get("reason"))
            self.host.remove_listener(self._on_host_event)
            self.state = AttachState.DETACHED
            self.attached_tab = None
            self._notify(DEBUGGER_DETACHED, tabId=tab_id, reason=params.get("reason"))

    def _on_network_event(self, tab_id: str, method: str, params: dict[str, Any]) -> None:
        request_id = str(params.get("requestId") or "")
        if not request_id:
            return

        if method == "Network.requestWillBeSent":
            if params.get("type") not in _CAPTURED_RESOURCE_TYPES:
                return
            request = params.get("request") if isinstance(params.get("request"), dict) else {}
            self._requests[request_id] = {
                "type": "network-request",
                "url": request.get("url"),
                "method": request.get("method"),
                "requestHeaders": request.get("headers") or {},
                "requestBody": request.get("postData"),
            }
            while len(self._requests) > self._max_pending:
                self._requests.popitem(last=False)
            return

        pending = self._requests.get(request_id)
        if pending is None:
            return

        if method == "Network.responseReceived":
            response = params.get("response") if isinstance(params.get("response"), dict) else {}
            pending["status"] = response.get("status")
            pending["responseHeaders"] = response.get("headers") or {}
        elif method == "Network.loadingFinished":
            self._requests.pop(request_id, None)
            self._spawn(self._finish_request(tab_id, request_id, pending))
        elif method == "Network.loadingFailed":
            self._requests.pop(request_id, None)
            pending.setdefault("status", 0)
            pending["error"] = params.get("errorText")
            self._spawn(self._emit(pending))

    async def _finish_request(self, tab_id: str, request_id: str, entry: dict[str, Any]) -> None:
        try:
            res = await self.host.send(tab_id, "Network.getResponseBody", {"requestId": request_id})
        except (InstrumentationError, CdpError) as exc:
            _LOGGER.debug("response body unavailable for %s: %s", request_id, exc)
            res = {}
        if isinstance(res, dict) and not res.get("base64Encoded"):
            entry["responseBody"] = res.get("body")
        await self._emit(entry)

    def status(self) -> dict[str, Any]:
        return {
            "state": self.state.value,
            "tabId": self.attached_tab,
            "pendingRequests": len(self._requests),
        }

    def _notify(self, event_type: str, **fields: Any) -> None:
        if self._notifier is not None:
            self._notifier.emit(event_type, **fields)
