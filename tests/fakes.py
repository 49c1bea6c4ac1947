from __future__ import annotations

import asyncio
import contextlib
from dataclasses import dataclass, field
from typing import Any


def _default_tabs() -> dict[str, dict[str, Any]]:
    return {"T1": {"targetId": "T1", "type": "page", "url": "https://example.test/"}}


@dataclass
class FakeHost:
    """In-memory BrowserHost: tabs, attachments, canned command responses, manual events."""

    tabs: dict[str, dict[str, Any]] = field(default_factory=_default_tabs)
    attached: set[str] = field(default_factory=set)
    listeners: list[Any] = field(default_factory=list)
    sent: list[tuple[str, str, dict[str, Any]]] = field(default_factory=list)
    # method -> dict | Exception | callable(tab_id, params) returning either (or a coroutine)
    responses: dict[str, Any] = field(default_factory=dict)
    fail_attach: bool = False
    screenshot: str = "data:image/png;base64,AAAA"
    screenshot_error: Exception | None = None
    reloads: list[str] = field(default_factory=list)
    attach_calls: int = 0
    detach_calls: int = 0
    started: bool = False

    async def start(self) -> None:
        self.started = True

    async def stop(self) -> None:
        self.started = False

    async def get_targets(self) -> list[dict[str, Any]]:
        return [{**t, "attached": tid in self.attached} for tid, t in self.tabs.items()]

    async def get_tab(self, tab_id: str) -> dict[str, Any] | None:
        return self.tabs.get(tab_id)

    async def resolve_tab_id(self) -> str | None:
        return next(iter(self.tabs), None)

    async def is_attached(self, tab_id: str) -> bool:
        return tab_id in self.attached

    async def attach(self, tab_id: str) -> None:
        from browser_tools.connector.errors import InstrumentationError

        self.attach_calls += 1
        await asyncio.sleep(0)
        if self.fail_attach or tab_id not in self.tabs:
            raise InstrumentationError(f"cannot attach to {tab_id}")
        self.attached.add(tab_id)

    async def detach(self, tab_id: str) -> None:
        self.detach_calls += 1
        await asyncio.sleep(0)
        self.attached.discard(tab_id)

    async def send(self, tab_id: str, method: str, params: dict[str, Any] | None = None) -> dict[str, Any]:
        self.sent.append((tab_id, method, dict(params or {})))
        resp = self.responses.get(method, {})
        if callable(resp):
            resp = resp(tab_id, dict(params or {}))
            if asyncio.iscoroutine(resp):
                resp = await resp
        if isinstance(resp, Exception):
            raise resp
        return resp

    def add_listener(self, listener: Any) -> None:
        if listener not in self.listeners:
            self.listeners.append(listener)

    def remove_listener(self, listener: Any) -> None:
        with contextlib.suppress(ValueError):
            self.listeners.remove(listener)

    def emit(self, tab_id: str, method: str, params: dict[str, Any] | None = None) -> None:
        for listener in list(self.listeners):
            listener(tab_id, method, params or {})

    async def capture_visible_tab(self, tab_id: str | None = None) -> str:
        if self.screenshot_error is not None:
            raise self.screenshot_error
        return self.screenshot

    async def reload(self, tab_id: str) -> None:
        self.reloads.append(tab_id)

    def methods(self) -> list[str]:
        return [m for _tab, m, _p in self.sent]


@dataclass
class FakeTransport:
    """Records frames; `open` toggles whether send() succeeds."""

    open: bool = True
    frames: list[dict[str, Any]] = field(default_factory=list)
    shutdowns: int = 0

    async def send(self, frame: dict[str, Any]) -> bool:
        if not self.open:
            return False
        self.frames.append(frame)
        return True

    async def handle_server_shutdown(self) -> None:
        self.shutdowns += 1
        self.open = False

    def of_type(self, kind: str) -> list[dict[str, Any]]:
        return [f for f in self.frames if f.get("type") == kind]
