"""Tests for the hybrid push/poll transport manager."""

from collections.abc import Awaitable, Callable
from typing import Any

import pytest

from fakes import FakePush, make_session
from fitlobby.lobby.models import ConnectionMode, LobbySession
from fitlobby.transport.events import LobbyEvent, LobbyStateChanged, MemberJoined
from fitlobby.transport.manager import TransportConfig, TransportManager, lobby_channel
from fitlobby.transport.polling import PollingConfig
from fitlobby.transport.push import PushState

SID = "lobby-1"


class FakePolling:
    """Records poll loops instead of running them."""

    def __init__(self) -> None:
        self.active: dict[
            str, tuple[Callable[[LobbySession], Awaitable[None]], Callable[[Exception], None]]
        ] = {}
        self.started: list[str] = []
        self.stopped: list[str] = []

    def start(
        self,
        session_id: str,
        on_update: Callable[[LobbySession], Awaitable[None]],
        on_error: Callable[[Exception], None],
        config: PollingConfig | None = None,
    ) -> None:
        self.active[session_id] = (on_update, on_error)
        self.started.append(session_id)

    def stop(self, session_id: str) -> None:
        self.active.pop(session_id, None)
        self.stopped.append(session_id)

    def stop_all(self) -> None:
        for session_id in list(self.active):
            self.stop(session_id)

    def is_active(self, session_id: str) -> bool:
        return session_id in self.active

    def stats(self) -> dict[str, Any]:
        return {"active_polls": len(self.active)}


class Recorder:
    """Collects delivered events, mode changes and errors."""

    def __init__(self) -> None:
        self.events: list[LobbyEvent] = []
        self.modes: list[ConnectionMode] = []
        self.errors: list[Exception] = []

    async def on_event(self, event: LobbyEvent) -> None:
        self.events.append(event)


@pytest.fixture
def push() -> FakePush:
    return FakePush()


@pytest.fixture
def polling() -> FakePolling:
    return FakePolling()


@pytest.fixture
def manager(push: FakePush, polling: FakePolling) -> TransportManager:
    return TransportManager(push, polling)


@pytest.fixture
def recorder() -> Recorder:
    return Recorder()


def subscribe(manager: TransportManager, recorder: Recorder) -> Callable[[], None]:
    return manager.subscribe(
        SID,
        recorder.on_event,
        on_mode_change=recorder.modes.append,
        on_error=recorder.errors.append,
    )


class TestInitialMode:
    """Tests for choosing the first transport."""

    def test_push_when_connected(
        self, manager: TransportManager, push: FakePush, recorder: Recorder
    ) -> None:
        """Test that a connected push channel serves new sessions."""
        subscribe(manager, recorder)

        assert manager.get_mode(SID) == ConnectionMode.PUSH
        assert push.is_subscribed(lobby_channel(SID))
        assert recorder.modes == [ConnectionMode.PUSH]

    def test_disconnected_until_push_connects(
        self, polling: FakePolling, recorder: Recorder
    ) -> None:
        """Test that a connecting push channel neither pushes nor polls."""
        push = FakePush(state=PushState.CONNECTING)
        manager = TransportManager(push, polling)

        subscribe(manager, recorder)
        assert manager.get_mode(SID) == ConnectionMode.DISCONNECTED
        assert polling.started == []

        push.set_state(PushState.CONNECTED)
        assert manager.get_mode(SID) == ConnectionMode.PUSH

    def test_poll_when_push_gave_up(self, polling: FakePolling, recorder: Recorder) -> None:
        """Test that a push channel out of retries starts in polling mode."""
        manager = TransportManager(FakePush(state=PushState.MAX_RETRIES_REACHED), polling)

        subscribe(manager, recorder)

        assert manager.get_mode(SID) == ConnectionMode.POLL
        assert polling.started == [SID]

    def test_no_fallback_when_disabled(self, polling: FakePolling, recorder: Recorder) -> None:
        """Test that auto-fallback can be turned off."""
        manager = TransportManager(
            FakePush(state=PushState.MAX_RETRIES_REACHED),
            polling,
            TransportConfig(enable_auto_fallback=False),
        )

        subscribe(manager, recorder)

        assert manager.get_mode(SID) == ConnectionMode.DISCONNECTED
        assert polling.started == []


class TestSwitching:
    """Tests for transport switches."""

    def test_push_failure_falls_back_to_polling(
        self, manager: TransportManager, push: FakePush, polling: FakePolling, recorder: Recorder
    ) -> None:
        """Test that exhausting push retries switches to polling."""
        subscribe(manager, recorder)

        push.set_state(PushState.MAX_RETRIES_REACHED)

        assert manager.get_mode(SID) == ConnectionMode.POLL
        assert not push.is_subscribed(lobby_channel(SID))
        assert polling.is_active(SID)
        assert recorder.modes == [ConnectionMode.PUSH, ConnectionMode.POLL]

    def test_push_recovery_stops_polling(
        self, manager: TransportManager, push: FakePush, polling: FakePolling, recorder: Recorder
    ) -> None:
        """Test that a reconnected push channel takes over from polling."""
        subscribe(manager, recorder)
        push.set_state(PushState.MAX_RETRIES_REACHED)

        push.set_state(PushState.CONNECTED)

        assert manager.get_mode(SID) == ConnectionMode.PUSH
        assert not polling.is_active(SID)
        assert polling.stopped == [SID]
        assert push.is_subscribed(lobby_channel(SID))
        assert recorder.modes[-1] == ConnectionMode.PUSH

    def test_force_polling(
        self, manager: TransportManager, push: FakePush, polling: FakePolling, recorder: Recorder
    ) -> None:
        """Test switching to polling on request."""
        subscribe(manager, recorder)

        manager.force_polling(SID)

        assert manager.get_mode(SID) == ConnectionMode.POLL
        assert not push.is_subscribed(lobby_channel(SID))

    @pytest.mark.asyncio
    async def test_reconnect_push(self, manager: TransportManager, push: FakePush) -> None:
        """Test that a manual reconnect goes to the push channel."""
        assert await manager.reconnect_push(SID)

        assert push.reconnect_calls == 1


class TestDelivery:
    """Tests for event delivery."""

    @pytest.mark.asyncio
    async def test_push_events_are_typed(
        self, manager: TransportManager, push: FakePush, recorder: Recorder
    ) -> None:
        """Test that push payloads arrive as typed events and unknown ones are dropped."""
        subscribe(manager, recorder)

        await push.emit(lobby_channel(SID), "MemberJoined", {"user_id": 2, "user_name": "Bob"})
        await push.emit(lobby_channel(SID), "Unknown", {})

        assert recorder.events == [MemberJoined(user_id=2, user_name="Bob")]

    @pytest.mark.asyncio
    async def test_polled_state_is_delivered(
        self, manager: TransportManager, push: FakePush, polling: FakePolling, recorder: Recorder
    ) -> None:
        """Test that a polled snapshot arrives as LobbyStateChanged."""
        subscribe(manager, recorder)
        push.set_state(PushState.MAX_RETRIES_REACHED)
        on_update, _ = polling.active[SID]

        await on_update(make_session(version=3))

        assert len(recorder.events) == 1
        assert isinstance(recorder.events[0], LobbyStateChanged)
        assert recorder.events[0].session.version == 3

    @pytest.mark.asyncio
    async def test_torn_down_transport_is_silenced(
        self, manager: TransportManager, push: FakePush, polling: FakePolling, recorder: Recorder
    ) -> None:
        """Test that a late update from the previous transport is dropped."""
        subscribe(manager, recorder)
        push.set_state(PushState.MAX_RETRIES_REACHED)
        stale_update, _ = polling.active[SID]
        push.set_state(PushState.CONNECTED)

        await stale_update(make_session(version=7))

        assert recorder.events == []

    @pytest.mark.asyncio
    async def test_handler_error_is_contained(
        self, manager: TransportManager, push: FakePush
    ) -> None:
        """Test that a failing consumer does not break the subscription."""

        async def broken(event: LobbyEvent) -> None:
            raise RuntimeError("consumer bug")

        manager.subscribe(SID, broken)

        await push.emit(lobby_channel(SID), "MemberJoined", {"user_id": 2})

        assert manager.get_mode(SID) == ConnectionMode.PUSH

    def test_polling_exhaustion_disconnects(
        self, manager: TransportManager, push: FakePush, polling: FakePolling, recorder: Recorder
    ) -> None:
        """Test that a failed poll loop leaves the session disconnected and reports it."""
        subscribe(manager, recorder)
        push.set_state(PushState.MAX_RETRIES_REACHED)
        _, on_error = polling.active.pop(SID)

        on_error(RuntimeError("Polling failed after 10 attempts"))

        assert manager.get_mode(SID) == ConnectionMode.DISCONNECTED
        assert len(recorder.errors) == 1
        assert recorder.modes[-1] == ConnectionMode.DISCONNECTED


class TestLifecycle:
    """Tests for unsubscribing and closing."""

    def test_unsubscribe(
        self, manager: TransportManager, push: FakePush, recorder: Recorder
    ) -> None:
        """Test that unsubscribing stops the transport and reports disconnected."""
        unsubscribe = subscribe(manager, recorder)

        unsubscribe()
        unsubscribe()

        assert not manager.is_subscribed(SID)
        assert not push.is_subscribed(lobby_channel(SID))
        assert recorder.modes == [ConnectionMode.PUSH, ConnectionMode.DISCONNECTED]

    def test_stats(self, manager: TransportManager, recorder: Recorder) -> None:
        """Test the diagnostics snapshot."""
        subscribe(manager, recorder)

        stats = manager.stats()

        assert stats["push_state"] == "connected"
        assert stats["active_subscriptions"] == 1
        assert stats["modes"]["push"] == 1

    def test_configure(
        self, manager: TransportManager, push: FakePush, polling: FakePolling, recorder: Recorder
    ) -> None:
        """Test that a partial config update takes effect on the next switch."""
        subscribe(manager, recorder)

        manager.configure(enable_auto_fallback=False)
        push.set_state(PushState.MAX_RETRIES_REACHED)

        assert manager.config.enable_auto_fallback is False
        assert polling.started == []

    def test_close(self, manager: TransportManager, push: FakePush, recorder: Recorder) -> None:
        """Test that closing unsubscribes everything and ignores later push changes."""
        subscribe(manager, recorder)

        manager.close()
        push.set_state(PushState.MAX_RETRIES_REACHED)

        assert manager.get_mode(SID) == ConnectionMode.DISCONNECTED
        assert not manager.is_subscribed(SID)
