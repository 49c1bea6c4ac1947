"""Script evaluation in the inspected page.

Two evaluators share one interface:

- IsolatedWorldEvaluator (preferred): runs in a dedicated isolated world of the main
  frame; it sees the DOM but not page globals, and it leaves the page's own JS alone.
- PageContextEvaluator (fallback): runs in the page's main world with the DevTools
  command-line API, the most permissive path and the one a content policy can block.

ScriptRunner probes each evaluator's capability once per tab and walks the chain in
order; a content-policy block on the last evaluator becomes a typed CommandError.
"""

from __future__ import annotations

import logging
from typing import Any, Protocol

from .errors import CommandError
from .host import BrowserHost

_LOGGER = logging.getLogger("browser_tools.connector.evaluator")

ISOLATED_WORLD_NAME = "browser-tools-connector"
_CONTENT_POLICY_MARKERS = ("content security policy", "unsafe-eval", "trusted type")


class EvaluatorUnavailable(Exception):
    pass


class ScriptBlocked(Exception):
    """The page's content policy refused the evaluation."""


class ScriptFailed(Exception):
    """The script itself threw."""


def is_content_policy_error(text: str) -> bool:
    low = (text or "").lower()
    return any(marker in low for marker in _CONTENT_POLICY_MARKERS)


def remote_value(obj: Any) -> Any:
    """Convert a CDP RemoteObject (returnByValue) into a JSON-friendly value."""
    if not isinstance(obj, dict):
        return obj
    if "value" in obj:
        return obj.get("value")
    if "unserializableValue" in obj:
        return str(obj.get("unserializableValue"))
    if obj.get("type") == "undefined":
        return None
    return obj.get("description")


def _exception_text(details: dict[str, Any]) -> str:
    exc = details.get("exception")
    if isinstance(exc, dict) and exc.get("description"):
        return str(exc.get("description"))
    return str(details.get("text") or "Script execution failed")


def _unwrap_evaluation(res: dict[str, Any]) -> Any:
    details = res.get("exceptionDetails")
    if isinstance(details, dict):
        text = _exception_text(details)
        if is_content_policy_error(text):
            raise ScriptBlocked(text)
        raise ScriptFailed(text)
    return remote_value(res.get("result"))


class ScriptEvaluator(Protocol):
    name: str

    async def available(self, tab_id: str) -> bool: ...

    async def evaluate(self, tab_id: str, script: str) -> Any: ...


class IsolatedWorldEvaluator:
    name = "isolated-world"

    def __init__(self, host: BrowserHost) -> None:
        self.host = host

    async def _context_id(self, tab_id: str) -> int:
        try:
            tree = await self.host.send(tab_id, "Page.getFrameTree")
            frame_id = ((tree.get("frameTree") or {}).get("frame") or {}).get("id")
            if not frame_id:
                raise EvaluatorUnavailable("main frame not found")
            world = await self.host.send(
                tab_id,
                "Page.createIsolatedWorld",
                {"frameId": frame_id, "worldName": ISOLATED_WORLD_NAME, "grantUniveralAccess": True},
            )
        except EvaluatorUnavailable:
            raise
        except Exception as exc:  # noqa: BLE001
            raise EvaluatorUnavailable(str(exc)) from exc
        context_id = world.get("executionContextId")
        if not isinstance(context_id, int):
            raise EvaluatorUnavailable("isolated world has no execution context")
        return context_id

    async def available(self, tab_id: str) -> bool:
        try:
            await self._context_id(tab_id)
        except EvaluatorUnavailable as exc:
            _LOGGER.debug("isolated world unavailable on %s: %s", tab_id, exc)
            return False
        return True

    async def evaluate(self, tab_id: str, script: str) -> Any:
        # A fresh world per call: navigation destroys the previous context.
        context_id = await self._context_id(tab_id)
        try:
            res = await self.host.send(
                tab_id,
                "Runtime.evaluate",
                {"expression": script, "contextId": context_id, "returnByValue": True, "awaitPromise": True},
            )
        except Exception as exc:  # noqa: BLE001
            if is_content_policy_error(str(exc)):
                raise ScriptBlocked(str(exc)) from exc
            raise EvaluatorUnavailable(str(exc)) from exc
        return _unwrap_evaluation(res)


class PageContextEvaluator:
    name = "page-context"

    def __init__(self, host: BrowserHost) -> None:
        self.host = host

    async def available(self, tab_id: str) -> bool:
        return bool(tab_id)

    async def evaluate(self, tab_id: str, script: str) -> Any:
        try:
            res = await self.host.send(
                tab_id,
                "Runtime.evaluate",
                {"expression": script, "includeCommandLineAPI": True, "returnByValue": True, "awaitPromise": True},
            )
        except Exception as exc:  # noqa: BLE001
            if is_content_policy_error(str(exc)):
                raise ScriptBlocked(str(exc)) from exc
            raise EvaluatorUnavailable(str(exc)) from exc
        return _unwrap_evaluation(res)


class ScriptRunner:
    """Runs a script through the first capable evaluator, falling back on block/unavailability."""

    def __init__(self, evaluators: list[ScriptEvaluator]) -> None:
        if not evaluators:
            raise ValueError("at least one evaluator is required")
        self.evaluators = evaluators
        # tab_id -> evaluator names that probed as available
        self._capabilities: dict[str, list[str]] = {}

    @classmethod
    def for_host(cls, host: BrowserHost) -> ScriptRunner:
        return cls([IsolatedWorldEvaluator(host), PageContextEvaluator(host)])

    def forget(self, tab_id: str | None = None) -> None:
        if tab_id is None:
            self._capabilities.clear()
        else:
            self._capabilities.pop(tab_id, None)

    async def _capable(self, tab_id: str) -> list[ScriptEvaluator]:
        names = self._capabilities.get(tab_id)
        if names is None:
            names = [ev.name for ev in self.evaluators if await ev.available(tab_id)]
            self._capabilities[tab_id] = names
            _LOGGER.debug("evaluators for %s: %s", tab_id, names)
        return [ev for ev in self.evaluators if ev.name in names]

    async def run(self, tab_id: str, script: str) -> Any:
        chain = await self._capable(tab_id)
        if not chain:
            self.forget(tab_id)
            raise CommandError(kind="run-script", reason="unavailable", message="No script evaluator available")

        blocked: str | None = None
        for evaluator in chain:
            try:
                return await evaluator.evaluate(tab_id, script)
            except EvaluatorUnavailable as exc:
                _LOGGER.info("%s evaluator unavailable, falling back: %s", evaluator.name, exc)
                self.forget(tab_id)
                continue
            except ScriptBlocked as exc:
                _LOGGER.info("%s evaluator blocked by content policy", evaluator.name)
                blocked = str(exc)
                continue
            except ScriptFailed as exc:
                raise CommandError(
                    kind="run-script", reason="exception", message=f"Script execution failed: {exc}"
                ) from exc

        if blocked is not None:
            raise CommandError(
                kind="run-script",
                reason="content-policy",
                message="Script blocked by Content Security Policy - consider using a different approach",
                details={"detail": blocked},
            )
        raise CommandError(kind="run-script", reason="unavailable", message="No script evaluator available")
