"""Push channel client speaking the Pusher protocol over WebSockets.

The lobby service broadcasts through a Pusher-compatible server. This module
keeps one WebSocket open per process, authorizes private and presence
channels through the lobby service, replays channel subscriptions after a
reconnect and reports its connection state to listeners.

Reconnects use exponential backoff (2^attempt seconds, capped) and stop after
a bounded number of attempts; the state then becomes ``max_retries_reached``
so the transport manager can fall back to polling.
"""

import asyncio
import inspect
import json
import logging
from collections.abc import Awaitable, Callable
from enum import Enum
from typing import Any, Protocol

import websockets
from websockets.exceptions import WebSocketException

from fitlobby.transport.events import PresenceHere, PresenceJoining, PresenceLeaving

logger = logging.getLogger(__name__)

ChannelHandler = Callable[[str, Any], Awaitable[None] | None]
PresenceHandler = Callable[[PresenceHere | PresenceJoining | PresenceLeaving], None]
ChannelAuthorizer = Callable[[str, str], Awaitable[dict[str, Any]]]
StateListener = Callable[["PushState"], None]


class PushState(Enum):
    """Connection state of the push channel."""

    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"
    DISCONNECTED = "disconnected"
    MAX_RETRIES_REACHED = "max_retries_reached"


class PushTransport(Protocol):
    """What the transport manager needs from a push channel."""

    @property
    def state(self) -> PushState: ...

    @property
    def max_retries_reached(self) -> bool: ...

    def on_connection_state_change(self, listener: StateListener) -> Callable[[], None]: ...

    def subscribe(self, channel: str, handler: ChannelHandler) -> None: ...

    def unsubscribe(self, channel: str) -> None: ...

    def is_subscribed(self, channel: str) -> bool: ...

    async def manual_reconnect(self) -> bool: ...


def _decode_data(raw: Any) -> Any:
    """Pusher sends event data as a JSON string inside the JSON frame."""
    if isinstance(raw, str):
        try:
            return json.loads(raw)
        except ValueError:
            return raw
    return raw


class PushClient:
    """Pusher-protocol WebSocket client.

    Attributes:
        url: WebSocket endpoint (``ws://host:port/app/<key>``)
        reconnect_attempts: Consecutive failed (re)connect attempts
        socket_id: Socket id assigned by the server for the live connection
    """

    def __init__(
        self,
        url: str,
        authorizer: ChannelAuthorizer | None = None,
        max_reconnect_attempts: int = 10,
        backoff_max: float = 60.0,
        connect: Callable[[str], Any] = websockets.connect,
    ) -> None:
        """Initialize the client.

        Args:
            url: WebSocket endpoint
            authorizer: Coroutine ``(socket_id, channel) -> auth payload`` used
                for ``private-`` and ``presence-`` channels
            max_reconnect_attempts: Attempts before giving up
            backoff_max: Upper bound of the reconnect delay in seconds
            connect: WebSocket connect factory (injectable for tests)
        """
        self.url = url
        self._authorizer = authorizer
        self.max_reconnect_attempts = max_reconnect_attempts
        self.backoff_max = backoff_max
        self._connect = connect

        self._state = PushState.DISCONNECTED
        self._max_retries_reached = False
        self.reconnect_attempts = 0
        self.socket_id: str | None = None
        self.user_id: int | None = None

        self._ws: Any = None
        self._run_task: asyncio.Task[None] | None = None
        self._intentional_disconnect = False
        self._channels: dict[str, ChannelHandler] = {}
        self._presence: dict[str, PresenceHandler] = {}
        self._listeners: list[StateListener] = []
        self._pending: set[asyncio.Task[None]] = set()

    @property
    def state(self) -> PushState:
        return self._state

    @property
    def is_connected(self) -> bool:
        return self._state == PushState.CONNECTED

    @property
    def max_retries_reached(self) -> bool:
        return self._max_retries_reached

    def on_connection_state_change(self, listener: StateListener) -> Callable[[], None]:
        """Register a connection-state listener.

        Returns:
            Function that removes the listener
        """
        self._listeners.append(listener)

        def remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return remove

    def _set_state(self, state: PushState) -> None:
        if state == self._state:
            return
        logger.info(f"Push channel state {self._state.value} -> {state.value}")
        self._state = state
        for listener in list(self._listeners):
            try:
                listener(state)
            except Exception:
                logger.exception("Error in push connection state listener")

    async def connect(self, user_id: int | None = None) -> None:
        """Open the push connection in the background.

        Any existing connection is closed first.
        """
        if self._run_task is not None:
            await self.disconnect()

        self.user_id = user_id
        self._intentional_disconnect = False
        self._set_state(PushState.CONNECTING)
        self._run_task = asyncio.create_task(self._run())

    async def disconnect(self) -> None:
        """Close the connection without scheduling a reconnect."""
        self._intentional_disconnect = True
        task = self._run_task
        self._run_task = None

        ws = self._ws
        self._ws = None
        if ws is not None:
            try:
                await ws.close()
            except (OSError, WebSocketException) as e:
                logger.debug(f"Error closing push socket: {e}")

        if task is not None and task is not asyncio.current_task():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

        for pending in list(self._pending):
            pending.cancel()
        self._pending.clear()

        self.socket_id = None
        self._set_state(PushState.DISCONNECTED)
        logger.info("Push channel disconnected intentionally")

    async def manual_reconnect(self) -> bool:
        """Reset the retry budget and reconnect.

        Returns:
            True if a new connection attempt was started
        """
        self.reconnect_attempts = 0
        self._max_retries_reached = False
        try:
            await self.connect(self.user_id)
        except (OSError, WebSocketException) as e:
            logger.warning(f"Manual push reconnect failed: {e}")
            return False
        return True

    async def _run(self) -> None:
        while not self._intentional_disconnect:
            try:
                async with self._connect(self.url) as ws:
                    self._ws = ws
                    await self._receive_loop(ws)
            except asyncio.CancelledError:
                raise
            except (OSError, WebSocketException, asyncio.TimeoutError) as e:
                logger.warning(f"Push connection error: {e}")
            finally:
                self._ws = None
                self.socket_id = None

            if self._intentional_disconnect:
                return

            self._set_state(PushState.DISCONNECTED)

            if self.reconnect_attempts >= self.max_reconnect_attempts:
                logger.error(
                    f"Push reconnect gave up after {self.reconnect_attempts} attempts"
                )
                self._max_retries_reached = True
                self._set_state(PushState.MAX_RETRIES_REACHED)
                return

            self.reconnect_attempts += 1
            delay = min(2**self.reconnect_attempts, self.backoff_max)
            logger.info(
                f"Push reconnect attempt {self.reconnect_attempts}/"
                f"{self.max_reconnect_attempts} in {delay}s"
            )
            self._set_state(PushState.RECONNECTING)
            await asyncio.sleep(delay)

    async def _receive_loop(self, ws: Any) -> None:
        async for raw in ws:
            try:
                frame = json.loads(raw)
            except ValueError:
                logger.warning(f"Dropping non-JSON push frame: {raw!r}")
                continue
            if not isinstance(frame, dict):
                continue
            await self._handle_frame(frame)

    async def _handle_frame(self, frame: dict[str, Any]) -> None:
        event = frame.get("event", "")
        channel = frame.get("channel")
        data = _decode_data(frame.get("data"))

        if event == "pusher:connection_established":
            self.socket_id = data.get("socket_id") if isinstance(data, dict) else None
            self.reconnect_attempts = 0
            self._max_retries_reached = False
            self._set_state(PushState.CONNECTED)
            for name in list(self._channels) + list(self._presence):
                self._spawn(self._send_subscribe(name))
            return

        if event == "pusher:ping":
            await self._send({"event": "pusher:pong", "data": {}})
            return

        if event == "pusher:error":
            logger.warning(f"Push server error: {data}")
            return

        if channel is None:
            return

        if channel in self._presence:
            try:
                self._handle_presence_frame(channel, event, data)
            except (KeyError, TypeError, ValueError) as e:
                logger.warning(f"Malformed presence frame {event} on {channel}: {e}")
            return

        if event.startswith("pusher_internal:") or event.startswith("pusher:"):
            logger.debug(f"Push channel {channel}: {event}")
            return

        handler = self._channels.get(channel)
        if handler is None:
            return

        logger.debug(f"Push event {event} on {channel}")
        try:
            result = handler(event, data)
            if inspect.isawaitable(result):
                await result
        except Exception:
            # A failing consumer must not tear down the shared connection
            logger.exception(f"Error handling push event {event} on {channel}")

    def _handle_presence_frame(self, channel: str, event: str, data: Any) -> None:
        handler = self._presence[channel]
        if not isinstance(data, dict):
            data = {}

        if event == "pusher_internal:subscription_succeeded":
            presence = data.get("presence", {})
            ids = presence.get("ids") or list(presence.get("hash", {}).keys())
            handler(PresenceHere(user_ids=frozenset(int(i) for i in ids)))
        elif event == "pusher_internal:member_added":
            handler(PresenceJoining(user_id=int(data["user_id"])))
        elif event == "pusher_internal:member_removed":
            handler(PresenceLeaving(user_id=int(data["user_id"])))

    def subscribe(self, channel: str, handler: ChannelHandler) -> None:
        """Subscribe to a public or private channel.

        The subscription is remembered and replayed after reconnects.
        """
        self._channels[channel] = handler
        if self.is_connected:
            self._spawn(self._send_subscribe(channel))
        logger.info(f"Subscribed to push channel {channel}")

    def subscribe_presence(self, channel: str, handler: PresenceHandler) -> None:
        """Subscribe to a ``presence-`` channel.

        Args:
            channel: Channel name including the ``presence-`` prefix
            handler: Receives ``PresenceHere`` / ``PresenceJoining`` /
                ``PresenceLeaving`` events
        """
        self._presence[channel] = handler
        if self.is_connected:
            self._spawn(self._send_subscribe(channel))
        logger.info(f"Subscribed to presence channel {channel}")

    def unsubscribe(self, channel: str) -> None:
        """Stop receiving events for ``channel``. Unknown channels are ignored."""
        known = self._channels.pop(channel, None) is not None
        known = self._presence.pop(channel, None) is not None or known
        if not known:
            return
        if self.is_connected:
            self._spawn(self._send({"event": "pusher:unsubscribe", "data": {"channel": channel}}))
        logger.info(f"Unsubscribed from push channel {channel}")

    def is_subscribed(self, channel: str) -> bool:
        return channel in self._channels or channel in self._presence

    @property
    def channels(self) -> list[str]:
        return list(self._channels) + list(self._presence)

    async def _send_subscribe(self, channel: str) -> None:
        data: dict[str, Any] = {"channel": channel}
        needs_auth = channel.startswith("private-") or channel.startswith("presence-")
        if needs_auth:
            if self._authorizer is None or self.socket_id is None:
                logger.warning(f"Cannot authorize {channel}: no authorizer or socket id")
                return
            try:
                auth = await self._authorizer(self.socket_id, channel)
            except Exception as e:
                logger.warning(f"Channel authorization failed for {channel}: {e}")
                return
            data["auth"] = auth.get("auth")
            if "channel_data" in auth:
                data["channel_data"] = auth["channel_data"]

        if self.is_subscribed(channel):
            await self._send({"event": "pusher:subscribe", "data": data})

    async def _send(self, frame: dict[str, Any]) -> None:
        ws = self._ws
        if ws is None:
            return
        try:
            await ws.send(json.dumps(frame))
        except (OSError, WebSocketException) as e:
            logger.warning(f"Failed to send push frame {frame.get('event')}: {e}")

    def _spawn(self, coro: Awaitable[None]) -> None:
        task = asyncio.ensure_future(coro)
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
