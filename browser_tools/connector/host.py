"""Browser host capabilities consumed by the connector.

`BrowserHost` is the seam between the relay core and the browser. `CdpBrowserHost`
implements it over a single browser-level DevTools connection; tests use small fakes.
"""

from __future__ import annotations

import contextlib
import logging
import re
from collections.abc import Callable
from typing import Any, Protocol

from .cdp import CdpConnection, CdpError, discover_browser_ws_url
from .errors import InstrumentationError

_LOGGER = logging.getLogger("browser_tools.connector.host")

# (tab_id, method, params)
HostListener = Callable[[str, str, dict[str, Any]], None]

_CAPTURABLE_URL = re.compile(r"^(https?|file)://")


class BrowserHost(Protocol):
    async def start(self) -> None: ...

    async def stop(self) -> None: ...

    async def get_targets(self) -> list[dict[str, Any]]: ...

    async def get_tab(self, tab_id: str) -> dict[str, Any] | None: ...

    async def resolve_tab_id(self) -> str | None: ...

    async def is_attached(self, tab_id: str) -> bool: ...

    async def attach(self, tab_id: str) -> None: ...

    async def detach(self, tab_id: str) -> None: ...

    async def send(self, tab_id: str, method: str, params: dict[str, Any] | None = None) -> dict[str, Any]: ...

    def add_listener(self, listener: HostListener) -> None: ...

    def remove_listener(self, listener: HostListener) -> None: ...

    async def capture_visible_tab(self, tab_id: str | None = None) -> str: ...

    async def reload(self, tab_id: str) -> None: ...


class CdpBrowserHost:
    """BrowserHost over a browser-level CDP WebSocket with flattened target sessions."""

    def __init__(self, host: str = "127.0.0.1", port: int = 9222, *, preferred_tab_id: str | None = None) -> None:
        self.host = host
        self.port = int(port)
        self.preferred_tab_id = preferred_tab_id
        self._conn: CdpConnection | None = None
        # tab_id -> sessionId for sessions this host created
        self._sessions: dict[str, str] = {}
        self._listeners: list[HostListener] = []

    # ─────────────────────────────────────────────────────────────────────────
    # Lifecycle
    # ─────────────────────────────────────────────────────────────────────────

    async def start(self) -> None:
        if self._conn is not None and self._conn.is_open:
            return
        ws_url = await discover_browser_ws_url(self.host, self.port)
        conn = CdpConnection(ws_url)
        await conn.open()
        conn.add_listener(self._on_cdp_event)
        self._conn = conn
        _LOGGER.info("connected to browser DevTools at %s:%s", self.host, self.port)

    async def stop(self) -> None:
        conn = self._conn
        self._conn = None
        self._sessions.clear()
        if conn is not None:
            await conn.close()

    def _require_conn(self) -> CdpConnection:
        conn = self._conn
        if conn is None or not conn.is_open:
            raise InstrumentationError("Browser DevTools connection is not open")
        return conn

    # ─────────────────────────────────────────────────────────────────────────
    # Targets
    # ─────────────────────────────────────────────────────────────────────────

    async def get_targets(self) -> list[dict[str, Any]]:
        res = await self._require_conn().send("Target.getTargets")
        infos = res.get("targetInfos")
        return [t for t in infos if isinstance(t, dict)] if isinstance(infos, list) else []

    async def get_tab(self, tab_id: str) -> dict[str, Any] | None:
        if not tab_id:
            return None
        try:
            res = await self._require_conn().send("Target.getTargetInfo", {"targetId": tab_id})
        except (CdpError, InstrumentationError):
            return None
        info = res.get("targetInfo")
        if not isinstance(info, dict) or info.get("type") != "page":
            return None
        return info

    async def resolve_tab_id(self) -> str | None:
        """Re-read the tab identifier: the preferred tab if it still exists, else the first real page."""
        targets = await self.get_targets()
        pages = [t for t in targets if t.get("type") == "page"]
        if self.preferred_tab_id and any(t.get("targetId") == self.preferred_tab_id for t in pages):
            return self.preferred_tab_id
        for t in pages:
            if _CAPTURABLE_URL.match(str(t.get("url") or "")):
                return str(t.get("targetId"))
        return str(pages[0].get("targetId")) if pages else None

    async def is_attached(self, tab_id: str) -> bool:
        if tab_id in self._sessions:
            return True
        for t in await self.get_targets():
            if t.get("targetId") == tab_id:
                return bool(t.get("attached"))
        return False

    async def attach(self, tab_id: str) -> None:
        conn = self._require_conn()
        try:
            res = await conn.send("Target.attachToTarget", {"targetId": tab_id, "flatten": True})
        except CdpError as exc:
            raise InstrumentationError(f"attach failed for {tab_id}: {exc}") from exc
        session_id = res.get("sessionId")
        if not isinstance(session_id, str) or not session_id:
            raise InstrumentationError(f"attach returned no session for {tab_id}")
        self._sessions[tab_id] = session_id

    async def detach(self, tab_id: str) -> None:
        conn = self._require_conn()
        session_id = self._sessions.pop(tab_id, None)
        params = {"sessionId": session_id} if session_id else {"targetId": tab_id}
        try:
            await conn.send("Target.detachFromTarget", params)
        except CdpError as exc:
            raise InstrumentationError(f"detach failed for {tab_id}: {exc}") from exc

    async def send(self, tab_id: str, method: str, params: dict[str, Any] | None = None) -> dict[str, Any]:
        conn = self._require_conn()
        session_id = self._sessions.get(tab_id)
        if session_id is not None:
            return await conn.send(method, params, session_id=session_id)

        # No instrumentation session: use a short-lived one.
        res = await conn.send("Target.attachToTarget", {"targetId": tab_id, "flatten": True})
        transient = res.get("sessionId")
        if not isinstance(transient, str):
            raise CdpError(f"could not open a session for {tab_id}")
        try:
            return await conn.send(method, params, session_id=transient)
        finally:
            with contextlib.suppress(CdpError):
                await conn.send("Target.detachFromTarget", {"sessionId": transient})

    # ─────────────────────────────────────────────────────────────────────────
    # Page actions
    # ─────────────────────────────────────────────────────────────────────────

    async def capture_visible_tab(self, tab_id: str | None = None) -> str:
        target = tab_id or await self.resolve_tab_id()
        if not target:
            raise CdpError("No suitable tab found for screenshot")
        res = await self.send(target, "Page.captureScreenshot", {"format": "png"})
        data = res.get("data")
        if not isinstance(data, str) or not data:
            raise CdpError("Screenshot capture returned no data")
        return f"data:image/png;base64,{data}"

    async def reload(self, tab_id: str) -> None:
        await self.send(tab_id, "Page.reload", {})

    # ─────────────────────────────────────────────────────────────────────────
    # Events
    # ─────────────────────────────────────────────────────────────────────────

    def add_listener(self, listener: HostListener) -> None:
        if listener not in self._listeners:
            self._listeners.append(listener)

    def remove_listener(self, listener: HostListener) -> None:
        with contextlib.suppress(ValueError):
            self._listeners.remove(listener)

    @property
    def listener_count(self) -> int:
        return len(self._listeners)

    def _on_cdp_event(self, method: str, params: dict[str, Any], session_id: str | None) -> None:
        if method == "Target.detachedFromTarget":
            sid = params.get("sessionId")
            for tab, known in list(self._sessions.items()):
                if known == sid:
                    self._sessions.pop(tab, None)
        if session_id is None:
            return
        tab_id = next((tab for tab, sid in self._sessions.items() if sid == session_id), None)
        if tab_id is None:
            return
        for listener in list(self._listeners):
            try:
                listener(tab_id, method, params)
            except Exception:  # noqa: BLE001
                _LOGGER.exception("host listener failed for %s", method)
