"""Unit tests for one-shot discovery events."""

import asyncio
import logging

import pytest

from rsa_http.events import DiscoveryEvent, EventBus


class TestEventBus:
    def test_callback_receives_scope(self) -> None:
        scope = object()
        bus = EventBus(scope=scope)
        seen: list[object] = []
        bus.on(DiscoveryEvent.CONNECTED, seen.append)

        bus.emit(DiscoveryEvent.CONNECTED)

        assert seen == [scope]

    def test_subscriptions_are_one_shot(self) -> None:
        bus = EventBus()
        calls: list[str] = []
        bus.on("connecting", lambda _: calls.append("connecting"))

        assert bus.emit("connecting") == 1
        assert bus.emit("connecting") == 0
        assert calls == ["connecting"]

    def test_events_are_independent(self) -> None:
        bus = EventBus()
        calls: list[str] = []
        bus.on("connecting", lambda _: calls.append("connecting"))
        bus.on("connected", lambda _: calls.append("connected"))

        bus.emit("connected")

        assert calls == ["connected"]
        assert bus.emit("connecting") == 1

    def test_subscribe_during_emit_waits_for_next(self) -> None:
        """A callback re-subscribing itself is not fired twice by one emit."""
        bus = EventBus()
        calls: list[int] = []

        def again(_: object) -> None:
            calls.append(len(calls))
            bus.on("connecting", again)

        bus.on("connecting", again)
        bus.emit("connecting")
        bus.emit("connecting")

        assert calls == [0, 1]

    def test_raising_callback_does_not_drop_others(self, caplog: pytest.LogCaptureFixture) -> None:
        """Later one-shot subscribers still fire when an earlier one raises."""
        bus = EventBus(scope="client")
        seen: list[object] = []

        def broken(_: object) -> None:
            raise RuntimeError("callback bug")

        bus.on("connected", broken)
        bus.on("connected", seen.append)

        with caplog.at_level(logging.ERROR, logger="rsa_http"):
            assert bus.emit("connected") == 2

        assert seen == ["client"]
        assert bus.emit("connected") == 0
        assert "Event callback failed: event=connected" in caplog.text

    def test_off_removes_pending(self) -> None:
        bus = EventBus()
        calls: list[str] = []
        subscription = bus.on("connected", lambda _: calls.append("x"))

        bus.off(subscription)
        bus.off(subscription)  # already gone: no-op

        assert bus.emit("connected") == 0
        assert calls == []

    def test_unknown_event_rejected(self) -> None:
        with pytest.raises(ValueError):
            EventBus().on("disconnected", lambda _: None)

    async def test_once_future(self) -> None:
        bus = EventBus(scope="client")
        future = bus.once(DiscoveryEvent.CONNECTED)
        assert not future.done()

        asyncio.get_running_loop().call_soon(bus.emit, DiscoveryEvent.CONNECTED)

        assert await asyncio.wait_for(future, timeout=1.0) == "client"
