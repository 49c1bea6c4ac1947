from __future__ import annotations


def test_notifier_fans_out_and_isolates_listener_failures() -> None:
    from browser_tools.connector.notifications import WEBSOCKET_CONNECTED, Notifier

    notifier = Notifier(history=2)
    seen: list[dict] = []

    def _broken(_event: dict) -> None:
        raise RuntimeError("listener bug")

    notifier.subscribe(_broken)
    unsubscribe = notifier.subscribe(seen.append)

    event = notifier.emit(WEBSOCKET_CONNECTED, url="ws://localhost:3025/extension-ws")
    assert seen == [event]
    assert event["type"] == WEBSOCKET_CONNECTED
    assert isinstance(event["ts"], int)

    unsubscribe()
    unsubscribe()
    notifier.emit("a")
    notifier.emit("b")
    assert len(seen) == 1
    assert [e["type"] for e in notifier.recent(10)] == ["a", "b"]
    assert notifier.recent(0) == []
