from __future__ import annotations

import asyncio
import json
import socket
from dataclasses import dataclass, field
from typing import Any

import pytest
from fakes import FakeHost


def _free_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("127.0.0.1", 0))
        return int(s.getsockname()[1])


@dataclass
class _DummyValidator:
    ok: bool = True
    calls: int = 0
    invalidations: int = 0
    last_validation_time: float | None = None

    async def validate(self, host: str, port: int) -> bool:
        self.calls += 1
        return self.ok

    def invalidate(self) -> None:
        self.invalidations += 1


@dataclass
class _Relay:
    ws: Any = None
    frames: list[dict[str, Any]] = field(default_factory=list)

    async def handler(self, ws) -> None:  # type: ignore[no-untyped-def]
        self.ws = ws
        async for raw in ws:
            self.frames.append(json.loads(raw))

    def of_type(self, kind: str) -> list[dict[str, Any]]:
        return [f for f in self.frames if f.get("type") == kind]


def _config(port: int, **kwargs: Any):
    from browser_tools.connector.config import ConnectorConfig, ReconnectPolicy, RelaySettings

    return ConnectorConfig(
        settings=RelaySettings(server_host="127.0.0.1", server_port=port),
        tab_id="T1",
        reconnect=ReconnectPolicy(delay_s=10.0),
        diagnostics_interval_s=0,
        context_settle_s=0.0,
        **kwargs,
    )


async def _wait_for(predicate, timeout: float = 2.0) -> bool:  # type: ignore[no-untyped-def]
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while loop.time() < deadline:
        if predicate():
            return True
        await asyncio.sleep(0.01)
    return bool(predicate())


def test_agent_relays_events_and_commands() -> None:
    try:
        import websockets  # type: ignore[import-not-found]
    except Exception:  # noqa: BLE001
        pytest.skip("websockets not installed")

    from browser_tools.connector.agent import ConnectorAgent

    port = _free_port()
    relay = _Relay()
    host = FakeHost(responses={"Runtime.evaluate": {"result": {"type": "number", "value": 2}}})
    validator = _DummyValidator()

    async def _main() -> None:
        async with websockets.serve(relay.handler, "127.0.0.1", port):
            agent = ConnectorAgent(_config(port), host, validator=validator)  # type: ignore[arg-type]
            await agent.start()
            assert host.started is True
            assert host.attached == {"T1"}
            assert await _wait_for(lambda: bool(relay.of_type("page-navigated")))

            host.emit("T1", "Runtime.consoleAPICalled", {"type": "warn", "args": [{"type": "string", "value": "w"}]})
            assert await _wait_for(lambda: bool(relay.of_type("console-log")))
            assert agent.store.counts()["consoleLogs"] == 1

            host.emit("T1", "Page.frameNavigated", {"frame": {"id": "F1", "url": "https://example.test/next"}})
            assert await _wait_for(lambda: len(relay.of_type("page-navigated")) == 2)
            assert agent.store.counts()["consoleLogs"] == 0

            await relay.ws.send(json.dumps({"type": "run-script", "requestId": "q1", "script": "1 + 1"}))
            assert await _wait_for(lambda: bool(relay.of_type("script-result")))

            status = agent.status()
            assert status["transport"]["connected"] is True
            assert status["capture"]["state"] == "attached"
            assert status["tabContext"]["tabId"] == "T1"

            await agent.stop()
            assert host.attached == set()
            assert host.started is False
            assert not agent.transport.is_open

    asyncio.run(_main())

    initial, navigated = relay.of_type("page-navigated")
    assert initial["source"] == "initial_connection"
    assert initial["url"] == "https://example.test/"
    assert navigated["url"] == "https://example.test/next"
    assert navigated["tabId"] == "T1"
    assert relay.of_type("console-log")[0]["message"] == "w"
    assert relay.of_type("script-result")[0] == {"type": "script-result", "result": 2, "requestId": "q1"}


def test_update_settings_reconnects_only_on_endpoint_change() -> None:
    from browser_tools.connector.agent import ConnectorAgent

    port = _free_port()
    validator = _DummyValidator(ok=False)

    async def _main() -> None:
        agent = ConnectorAgent(_config(port), FakeHost(), validator=validator)  # type: ignore[arg-type]
        await agent.start()
        assert validator.calls == 1

        updated = await agent.update_settings({"logLimit": 5})
        assert updated.log_limit == 5
        assert agent.settings().log_limit == 5
        assert validator.calls == 1
        assert validator.invalidations == 0

        await agent.update_settings({"serverPort": port + 1})
        assert agent.settings().server_port == port + 1
        assert validator.invalidations == 1
        assert validator.calls == 2
        await agent.stop()

    asyncio.run(_main())


def test_page_refresh_reconnects_when_socket_closed() -> None:
    from browser_tools.connector.agent import ConnectorAgent

    validator = _DummyValidator(ok=False)

    async def _main() -> None:
        agent = ConnectorAgent(_config(_free_port()), FakeHost(), validator=validator)  # type: ignore[arg-type]
        await agent.start()
        await agent.handle_page_refresh()
        assert validator.calls == 2
        await agent.stop()

    asyncio.run(_main())


def test_panel_shown_and_tab_activation_hooks() -> None:
    from browser_tools.connector.agent import ConnectorAgent

    host = FakeHost()
    validator = _DummyValidator(ok=False)

    async def _main() -> None:
        agent = ConnectorAgent(_config(_free_port()), host, validator=validator)  # type: ignore[arg-type]
        await agent.start()
        await agent.capture.detach()
        assert host.attached == set()

        await agent.on_panel_shown()
        assert host.attached == {"T1"}
        attaches = host.attach_calls
        await agent.on_panel_shown()
        assert host.attach_calls == attaches

        agent.context.consecutive_failures = 2
        await agent.on_tab_activated("OTHER")
        assert agent.context.consecutive_failures == 2
        await agent.on_tab_activated("T1")
        assert agent.context.consecutive_failures == 0
        await agent.stop()

    asyncio.run(_main())


def test_tab_change_during_recovery_reinstruments_new_tab() -> None:
    from browser_tools.connector.agent import ConnectorAgent

    host = FakeHost()
    validator = _DummyValidator(ok=False)

    async def _main() -> None:
        agent = ConnectorAgent(_config(_free_port()), host, validator=validator)  # type: ignore[arg-type]
        await agent.start()
        host.tabs = {"T2": {"targetId": "T2", "type": "page", "url": "https://example.test/two"}}
        host.attached.discard("T1")

        await agent.handle_page_refresh()
        assert agent.context.tab_id == "T2"
        assert await _wait_for(lambda: agent.capture.attached_tab == "T2")
        assert host.attached == {"T2"}
        await agent.stop()

    asyncio.run(_main())
