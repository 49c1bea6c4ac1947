from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field

from .errors import ContextError
from .host import BrowserHost

_LOGGER = logging.getLogger("browser_tools.connector.tab_context")


def _now_ms() -> int:
    return int(time.time() * 1000)


@dataclass
class TabContext:
    tab_id: str | None
    is_valid: bool = True
    last_validation: float | None = None
    consecutive_failures: int = 0
    last_successful_command: int = field(default_factory=_now_ms)
    max_failures: int = 5

    def context_info(self) -> dict:
        return {
            "tabId": self.tab_id,
            "consecutiveFailures": self.consecutive_failures,
            "timeSinceLastSuccess": max(0, _now_ms() - self.last_successful_command),
        }


class TabContextGuard:
    """Keeps the instrumented tab's validity current and gates tab-scoped commands."""

    def __init__(
        self,
        host: BrowserHost,
        context: TabContext,
        *,
        check_interval_s: float = 0.5,
        settle_s: float = 1.0,
        clock: Callable[[], float] = time.monotonic,
        on_tab_changed: Callable[[str], None] | None = None,
    ) -> None:
        self.host = host
        self.context = context
        self.on_tab_changed = on_tab_changed
        self._check_interval_s = float(check_interval_s)
        self._settle_s = float(settle_s)
        self._clock = clock

    async def _probe(self) -> bool:
        tab_id = self.context.tab_id
        if not tab_id:
            return False
        try:
            return await self.host.get_tab(tab_id) is not None
        except Exception:  # noqa: BLE001
            _LOGGER.debug("tab probe failed for %s", tab_id, exc_info=True)
            return False

    async def is_valid(self) -> bool:
        ctx = self.context
        now = self._clock()
        if ctx.last_validation is not None and (now - ctx.last_validation) < self._check_interval_s:
            return ctx.is_valid

        ok = await self._probe()
        ctx.is_valid = ok
        ctx.last_validation = self._clock()
        if ok:
            ctx.consecutive_failures = 0
        else:
            ctx.consecutive_failures += 1
            _LOGGER.warning(
                "tab context invalid tab=%s failures=%d/%d",
                ctx.tab_id,
                ctx.consecutive_failures,
                ctx.max_failures,
            )
        return ok

    def invalidate(self) -> None:
        """Force the next is_valid() call to hit the host."""
        self.context.last_validation = None

    def record_success(self) -> None:
        self.context.consecutive_failures = 0
        self.context.last_successful_command = _now_ms()

    async def recover(self) -> bool:
        ctx = self.context
        try:
            self.invalidate()
            if await self.is_valid():
                _LOGGER.info("tab context recovered immediately")
                return True

            await asyncio.sleep(self._settle_s)
            self.invalidate()
            if await self.is_valid():
                _LOGGER.info("tab context recovered after waiting")
                return True

            tab_id = await self.host.resolve_tab_id()
            if tab_id:
                previous = ctx.tab_id
                ctx.tab_id = tab_id
                ctx.is_valid = True
                ctx.last_validation = self._clock()
                ctx.consecutive_failures = 0
                _LOGGER.info("tab context re-read from host: %s", tab_id)
                if previous != tab_id and self.on_tab_changed is not None:
                    self.on_tab_changed(tab_id)
                return True
        except Exception:  # noqa: BLE001
            _LOGGER.exception("tab context recovery failed")
            return False
        _LOGGER.warning("tab context recovery failed, manual refresh may be needed")
        return False

    async def guard(self) -> None:
        """Raise ContextError unless the tab is usable, recovering while below max_failures."""
        if await self.is_valid():
            return
        ctx = self.context
        if ctx.consecutive_failures < ctx.max_failures:
            if await self.recover():
                return
            raise self._error("inspection context not available after recovery attempt")
        raise self._error("inspection context not available")

    def _error(self, prefix: str) -> ContextError:
        ctx = self.context
        info = ctx.context_info()
        return ContextError(
            f"{prefix} - wrong tab or context lost (failures: {ctx.consecutive_failures}/{ctx.max_failures})",
            tab_id=ctx.tab_id,
            consecutive_failures=ctx.consecutive_failures,
            max_failures=ctx.max_failures,
            since_last_success_ms=int(info["timeSinceLastSuccess"]),
        )
