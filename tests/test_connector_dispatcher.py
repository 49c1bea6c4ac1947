from __future__ import annotations

import asyncio
from typing import Any

from fakes import FakeHost, FakeTransport


def _dispatcher(host: FakeHost, transport: FakeTransport, *, tab_id: str | None = "T1", script_timeout_s: float = 2.0):
    from browser_tools.connector.config import RelaySettings
    from browser_tools.connector.dispatcher import CommandDispatcher
    from browser_tools.connector.evaluator import PageContextEvaluator, ScriptRunner
    from browser_tools.connector.log_store import LogStore
    from browser_tools.connector.tab_context import TabContext, TabContextGuard

    settings = RelaySettings(screenshot_path="/tmp/shots", allow_auto_paste=True)
    guard = TabContextGuard(host, TabContext(tab_id=tab_id), settle_s=0.0)
    store = LogStore(capacity=10)
    runner = ScriptRunner([PageContextEvaluator(host)])
    return CommandDispatcher(
        transport,
        host,
        guard,
        runner,
        store,
        lambda: settings,
        script_timeout_s=script_timeout_s,
        url_retry_count=2,
        url_retry_delay_s=0.01,
    )


async def _drain(dispatcher: Any) -> None:
    for _ in range(200):
        if not dispatcher.pending:
            break
        await asyncio.sleep(0.01)
    await asyncio.sleep(0)


def test_ping_gets_pong() -> None:
    transport = FakeTransport()
    d = _dispatcher(FakeHost(), transport)
    asyncio.run(d.dispatch({"type": "ping"}))
    assert transport.frames[0]["type"] == "pong"
    assert isinstance(transport.frames[0]["timestamp"], int)


def test_take_screenshot_uses_settings_path() -> None:
    transport = FakeTransport()
    d = _dispatcher(FakeHost(), transport)

    async def _main() -> None:
        await d.dispatch({"type": "take-screenshot", "requestId": "s1"})
        await d.dispatch({"type": "take-screenshot", "requestId": "s2", "path": "/elsewhere"})

    asyncio.run(_main())
    first, second = transport.of_type("screenshot-data")
    assert first == {
        "type": "screenshot-data",
        "data": "data:image/png;base64,AAAA",
        "requestId": "s1",
        "path": "/tmp/shots",
        "autoPaste": True,
    }
    assert second["path"] == "/elsewhere"


def test_take_screenshot_failure_and_disconnected_drop() -> None:
    host = FakeHost(screenshot_error=RuntimeError("no visible tab"))
    transport = FakeTransport()
    d = _dispatcher(host, transport)
    asyncio.run(d.dispatch({"type": "take-screenshot", "requestId": "s1"}))
    assert transport.frames == [{"type": "screenshot-error", "error": "no visible tab", "requestId": "s1"}]

    closed = FakeTransport(open=False)
    d = _dispatcher(FakeHost(), closed)
    asyncio.run(d.dispatch({"type": "take-screenshot", "requestId": "s2"}))
    assert closed.frames == []


def test_refresh_page_reports_success_and_missing_tab() -> None:
    host = FakeHost()
    transport = FakeTransport()
    asyncio.run(_dispatcher(host, transport).dispatch({"type": "refresh-page", "requestId": "r1"}))
    assert host.reloads == ["T1"]
    assert transport.frames == [{"type": "refresh-page-response", "requestId": "r1", "success": True}]

    transport = FakeTransport()
    asyncio.run(_dispatcher(host, transport, tab_id=None).dispatch({"type": "refresh-page", "requestId": "r2"}))
    frame = transport.frames[0]
    assert frame["success"] is False
    assert frame["error"] == "No tab to refresh"


def test_run_script_success_records_context_success() -> None:
    host = FakeHost(responses={"Runtime.evaluate": {"result": {"type": "string", "value": "Example"}}})
    transport = FakeTransport()
    d = _dispatcher(host, transport)
    d.guard.context.consecutive_failures = 3

    async def _main() -> None:
        await d.dispatch({"type": "run-script", "requestId": "q1", "script": "document.title"})
        await _drain(d)

    asyncio.run(_main())
    assert transport.frames == [{"type": "script-result", "result": "Example", "requestId": "q1"}]
    assert d.guard.context.consecutive_failures == 0
    assert d.pending == {}


def test_run_script_timeout_sends_one_error_and_discards_late_result() -> None:
    async def _slow(_tab: str, _params: dict) -> dict:
        await asyncio.sleep(0.3)
        return {"result": {"type": "string", "value": "late"}}

    host = FakeHost(responses={"Runtime.evaluate": _slow})
    transport = FakeTransport()
    d = _dispatcher(host, transport, script_timeout_s=0.05)

    async def _main() -> None:
        await d.dispatch({"type": "run-script", "requestId": "q2", "script": "slow()"})
        await asyncio.sleep(0.5)

    asyncio.run(_main())
    assert transport.frames == [
        {"type": "script-error", "error": "Script execution timed out", "reason": "timeout", "requestId": "q2"}
    ]


def test_run_script_context_error_carries_context_info() -> None:
    host = FakeHost(tabs={})
    transport = FakeTransport()
    d = _dispatcher(host, transport, tab_id="GONE")

    async def _main() -> None:
        await d.dispatch({"type": "run-script", "requestId": "q3", "script": "1"})
        await _drain(d)

    asyncio.run(_main())
    (frame,) = transport.frames
    assert frame["type"] == "script-error"
    assert frame["requestId"] == "q3"
    assert "failures:" in frame["error"]
    assert frame["contextInfo"]["tabId"] == "GONE"
    assert frame["contextInfo"]["consecutiveFailures"] >= 1


def test_run_script_without_script_is_rejected() -> None:
    transport = FakeTransport()
    d = _dispatcher(FakeHost(), transport)
    asyncio.run(d.dispatch({"type": "run-script", "requestId": "q4"}))
    assert transport.frames == [
        {"type": "script-error", "error": "No script provided", "reason": "invalid", "requestId": "q4"}
    ]


def test_get_current_url_retries_then_reports_error() -> None:
    host = FakeHost()
    transport = FakeTransport()
    asyncio.run(_dispatcher(host, transport).dispatch({"type": "get-current-url", "requestId": "u1"}))
    assert transport.frames == [
        {"type": "current-url-response", "url": "https://example.test/", "tabId": "T1", "requestId": "u1"}
    ]

    calls: list[str] = []

    async def _missing(tab_id: str) -> None:
        calls.append(tab_id)
        return None

    host.get_tab = _missing  # type: ignore[method-assign]
    transport = FakeTransport()
    asyncio.run(_dispatcher(host, transport).dispatch({"type": "get-current-url", "requestId": "u2"}))
    assert len(calls) == 3
    frame = transport.frames[0]
    assert frame["url"] is None
    assert frame["error"] == "Tab not found"
    assert frame["requestId"] == "u2"


def test_log_queries_and_wipe() -> None:
    transport = FakeTransport()
    d = _dispatcher(FakeHost(), transport)
    d.store.add({"type": "console-log", "message": "a", "timestamp": 1})
    d.store.add({"type": "console-error", "message": "b", "timestamp": 2})
    d.store.add({"type": "network-request", "url": "https://example.test/api", "timestamp": 3})

    async def _main() -> None:
        await d.dispatch({"type": "get-console-logs", "requestId": "l1"})
        await d.dispatch({"type": "get-console-errors", "requestId": "l2"})
        await d.dispatch({"type": "get-network-logs", "requestId": "l3"})
        await d.dispatch({"type": "wipe-logs", "requestId": "l4"})
        await d.dispatch({"type": "get-console-logs", "requestId": "l5"})

    asyncio.run(_main())
    types = [f["type"] for f in transport.frames]
    assert types == [
        "console-logs-response",
        "console-errors-response",
        "network-logs-response",
        "wipe-logs-response",
        "console-logs-response",
    ]
    assert transport.frames[0]["logs"][0]["message"] == "a"
    assert transport.frames[1]["logs"][0]["message"] == "b"
    assert transport.frames[2]["logs"][0]["url"] == "https://example.test/api"
    assert transport.frames[3] == {"type": "wipe-logs-response", "success": True, "requestId": "l4"}
    assert transport.frames[4]["logs"] == []


def test_server_shutdown_and_unknown_messages() -> None:
    transport = FakeTransport()
    d = _dispatcher(FakeHost(), transport)

    async def _main() -> None:
        await d.dispatch({"type": "mystery", "requestId": "x"})
        await d.dispatch({"noType": True})
        await d.dispatch({"type": "server-shutdown"})

    asyncio.run(_main())
    assert transport.shutdowns == 1
    assert transport.frames == []


def test_cancel_pending_answers_once_and_discards_late_results() -> None:
    async def _slow(_tab: str, _params: dict) -> dict:
        await asyncio.sleep(0.2)
        return {"result": {"type": "number", "value": 1}}

    host = FakeHost(responses={"Runtime.evaluate": _slow})
    transport = FakeTransport()
    d = _dispatcher(host, transport, script_timeout_s=0.1)

    async def _main() -> None:
        await d.dispatch({"type": "run-script", "requestId": "q5", "script": "1"})
        await asyncio.sleep(0.01)
        await d.cancel_pending()
        await asyncio.sleep(0.3)

    asyncio.run(_main())
    assert transport.frames == [
        {"type": "script-error", "error": "Script execution cancelled", "reason": "cancelled", "requestId": "q5"}
    ]
    assert d.pending == {}


def test_cancel_pending_with_closed_socket_sends_nothing() -> None:
    async def _slow(_tab: str, _params: dict) -> dict:
        await asyncio.sleep(0.2)
        return {"result": {"type": "number", "value": 1}}

    host = FakeHost(responses={"Runtime.evaluate": _slow})
    transport = FakeTransport()
    d = _dispatcher(host, transport, script_timeout_s=0.1)

    async def _main() -> None:
        await d.dispatch({"type": "run-script", "requestId": "q6", "script": "1"})
        await asyncio.sleep(0.01)
        transport.open = False
        await d.cancel_pending()
        await asyncio.sleep(0.3)

    asyncio.run(_main())
    assert transport.frames == []
    assert d.pending == {}
