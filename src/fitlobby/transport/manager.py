"""Hybrid lobby transport: push channel with automatic polling fallback.

Each subscribed lobby session is served by exactly one transport at a time:

    disconnected -> push           push channel connected
    push         -> poll           push gave up reconnecting (auto-fallback on)
    poll         -> push           push channel connected again
    poll         -> disconnected   polling exhausted its retries
    any          -> disconnected   unsubscribe

Switching always tears the old transport down before starting the new one.
Every started transport gets a generation number and the delivery wrapper
drops events from any generation that is no longer current, so a late event
from a torn-down transport can never be delivered twice.
"""

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field, replace
from typing import Any

from fitlobby.lobby.models import ConnectionMode, LobbySession
from fitlobby.settings import Settings
from fitlobby.transport.events import LobbyEvent, LobbyStateChanged, parse_lobby_event
from fitlobby.transport.polling import PollingConfig, PollingTransport
from fitlobby.transport.push import PushState, PushTransport

logger = logging.getLogger(__name__)

EventHandler = Callable[[LobbyEvent], Awaitable[None]]
ModeHandler = Callable[[ConnectionMode], None]
ErrorHandler = Callable[[Exception], None]


def lobby_channel(session_id: str) -> str:
    return f"private-lobby.{session_id}"


@dataclass
class TransportConfig:
    """Hybrid transport tunables."""

    enable_auto_fallback: bool = True
    polling: PollingConfig = field(default_factory=PollingConfig)

    @classmethod
    def from_settings(cls, settings: Settings) -> "TransportConfig":
        return cls(
            enable_auto_fallback=settings.enable_auto_fallback,
            polling=PollingConfig(
                interval=settings.polling_interval,
                max_retries=settings.polling_max_retries,
                backoff_multiplier=settings.polling_backoff_multiplier,
                backoff_max=settings.polling_backoff_max,
            ),
        )


@dataclass
class _Subscription:
    session_id: str
    on_event: EventHandler
    on_mode_change: ModeHandler | None
    on_error: ErrorHandler | None
    mode: ConnectionMode = ConnectionMode.DISCONNECTED
    generation: int = 0


class TransportManager:
    """Owns the push or poll transport of every subscribed lobby session."""

    def __init__(
        self,
        push: PushTransport,
        polling: PollingTransport,
        config: TransportConfig | None = None,
    ) -> None:
        """Initialize the manager and start listening to push state changes.

        Args:
            push: Shared push channel
            polling: Polling fallback
            config: Transport configuration
        """
        self._push = push
        self._polling = polling
        self.config = config or TransportConfig()
        self._subscriptions: dict[str, _Subscription] = {}
        self._remove_state_listener: Callable[[], None] | None = (
            push.on_connection_state_change(self._handle_push_state)
        )

    def configure(self, **changes: Any) -> None:
        """Update configuration fields (``enable_auto_fallback``, ``polling``)."""
        self.config = replace(self.config, **changes)
        logger.info(f"Transport manager configured: {self.config}")

    def subscribe(
        self,
        session_id: str,
        on_event: EventHandler,
        on_mode_change: ModeHandler | None = None,
        on_error: ErrorHandler | None = None,
    ) -> Callable[[], None]:
        """Start receiving events for a lobby session.

        Args:
            session_id: Lobby session id
            on_event: Receives every normalized lobby event
            on_mode_change: Called whenever the active transport changes
            on_error: Called when the fallback transport gives up

        Returns:
            Function that unsubscribes
        """
        if session_id in self._subscriptions:
            self.unsubscribe(session_id)

        logger.info(f"Subscribing to lobby {session_id}")
        subscription = _Subscription(
            session_id=session_id,
            on_event=on_event,
            on_mode_change=on_mode_change,
            on_error=on_error,
        )
        self._subscriptions[session_id] = subscription

        initial = self._determine_mode()
        if initial == ConnectionMode.PUSH:
            self._switch_to_push(subscription)
        elif initial == ConnectionMode.POLL:
            self._switch_to_poll(subscription)
        else:
            self._notify_mode(subscription)

        return lambda: self.unsubscribe(session_id)

    def unsubscribe(self, session_id: str) -> None:
        """Stop every transport for a session. Unknown sessions are ignored."""
        subscription = self._subscriptions.pop(session_id, None)
        if subscription is None:
            return
        logger.info(f"Unsubscribing from lobby {session_id}")
        self._teardown(subscription)
        subscription.mode = ConnectionMode.DISCONNECTED
        self._notify_mode(subscription)

    def get_mode(self, session_id: str) -> ConnectionMode:
        subscription = self._subscriptions.get(session_id)
        return subscription.mode if subscription else ConnectionMode.DISCONNECTED

    def is_subscribed(self, session_id: str) -> bool:
        return session_id in self._subscriptions

    def force_polling(self, session_id: str) -> None:
        """Switch a session to polling regardless of the push state."""
        subscription = self._subscriptions.get(session_id)
        if subscription is not None:
            logger.info(f"Forcing polling for lobby {session_id}")
            self._switch_to_poll(subscription)

    async def reconnect_push(self, session_id: str) -> bool:
        """Manually reconnect the push channel after it gave up.

        The session switches back to push once the channel reports connected.
        """
        logger.info(f"Manual push reconnect requested for lobby {session_id}")
        return await self._push.manual_reconnect()

    def stats(self) -> dict[str, Any]:
        modes = {mode.value: 0 for mode in ConnectionMode}
        for subscription in self._subscriptions.values():
            modes[subscription.mode.value] += 1
        return {
            "push_state": self._push.state.value,
            "active_subscriptions": len(self._subscriptions),
            "modes": modes,
            "polling": self._polling.stats(),
        }

    def close(self) -> None:
        """Unsubscribe every session and stop listening to the push channel."""
        for session_id in list(self._subscriptions):
            self.unsubscribe(session_id)
        self._polling.stop_all()
        if self._remove_state_listener is not None:
            self._remove_state_listener()
            self._remove_state_listener = None

    def _determine_mode(self) -> ConnectionMode:
        if self._push.state == PushState.CONNECTED:
            return ConnectionMode.PUSH
        if self._push.max_retries_reached and self.config.enable_auto_fallback:
            return ConnectionMode.POLL
        return ConnectionMode.DISCONNECTED

    def _handle_push_state(self, state: PushState) -> None:
        if state == PushState.CONNECTED:
            for subscription in list(self._subscriptions.values()):
                self._switch_to_push(subscription)
        elif state == PushState.MAX_RETRIES_REACHED or self._push.max_retries_reached:
            if not self.config.enable_auto_fallback:
                logger.warning("Push channel gave up and auto-fallback is disabled")
                return
            for subscription in list(self._subscriptions.values()):
                self._switch_to_poll(subscription)

    def _switch_to_push(self, subscription: _Subscription) -> None:
        if subscription.mode == ConnectionMode.PUSH:
            return
        logger.info(f"Switching lobby {subscription.session_id} to push")
        self._teardown(subscription)
        subscription.generation += 1
        subscription.mode = ConnectionMode.PUSH
        self._push.subscribe(
            lobby_channel(subscription.session_id),
            self._push_handler(subscription, subscription.generation),
        )
        self._notify_mode(subscription)

    def _switch_to_poll(self, subscription: _Subscription) -> None:
        if subscription.mode == ConnectionMode.POLL:
            return
        logger.info(f"Switching lobby {subscription.session_id} to polling")
        self._teardown(subscription)
        subscription.generation += 1
        subscription.mode = ConnectionMode.POLL
        self._polling.start(
            subscription.session_id,
            self._poll_handler(subscription, subscription.generation),
            self._poll_error_handler(subscription, subscription.generation),
            self.config.polling,
        )
        self._notify_mode(subscription)

    def _teardown(self, subscription: _Subscription) -> None:
        """Stop whichever transport currently serves ``subscription``."""
        channel = lobby_channel(subscription.session_id)
        if self._push.is_subscribed(channel):
            self._push.unsubscribe(channel)
        if self._polling.is_active(subscription.session_id):
            self._polling.stop(subscription.session_id)
        # Invalidate handlers of the transport being torn down
        subscription.generation += 1

    def _is_current(self, subscription: _Subscription, generation: int) -> bool:
        return (
            self._subscriptions.get(subscription.session_id) is subscription
            and subscription.generation == generation
        )

    def _notify_mode(self, subscription: _Subscription) -> None:
        if subscription.on_mode_change is None:
            return
        try:
            subscription.on_mode_change(subscription.mode)
        except Exception:
            logger.exception(f"Error in mode change handler for lobby {subscription.session_id}")

    def _push_handler(
        self, subscription: _Subscription, generation: int
    ) -> Callable[[str, Any], Awaitable[None]]:
        async def handle(event_name: str, data: Any) -> None:
            if not self._is_current(subscription, generation):
                return
            event = parse_lobby_event(event_name, data)
            if event is None:
                return
            try:
                await subscription.on_event(event)
            except Exception:
                # Push delivery errors never reach the caller; re-check the mode instead
                logger.exception(
                    f"Error handling {event_name} for lobby {subscription.session_id}"
                )
                self._handle_push_state(self._push.state)

        return handle

    def _poll_handler(
        self, subscription: _Subscription, generation: int
    ) -> Callable[[LobbySession], Awaitable[None]]:
        async def handle(session: LobbySession) -> None:
            if not self._is_current(subscription, generation):
                return
            try:
                await subscription.on_event(LobbyStateChanged(session=session))
            except Exception:
                logger.exception(
                    f"Error handling polled state for lobby {subscription.session_id}"
                )

        return handle

    def _poll_error_handler(
        self, subscription: _Subscription, generation: int
    ) -> ErrorHandler:
        def handle(error: Exception) -> None:
            if not self._is_current(subscription, generation):
                return
            logger.error(f"Polling gave up for lobby {subscription.session_id}: {error}")
            subscription.generation += 1
            subscription.mode = ConnectionMode.DISCONNECTED
            self._notify_mode(subscription)
            if subscription.on_error is not None:
                subscription.on_error(error)

        return handle
