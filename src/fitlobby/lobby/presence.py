"""Presence views: who is online, per scope.

Three feeds exist and they are not interchangeable:

- GLOBAL: online anywhere in the app (lobby member badges)
- LOBBY: currently viewing this lobby
- GROUP: online members of the group (invite eligibility)

Each scope keeps its own set. A ``here`` snapshot replaces a scope wholesale;
``joining`` / ``leaving`` deltas are applied on top of it.
"""

import logging
from collections.abc import Callable
from enum import Enum
from typing import Protocol

from fitlobby.transport.events import PresenceHere, PresenceJoining, PresenceLeaving

logger = logging.getLogger(__name__)

GLOBAL_PRESENCE_CHANNEL = "presence-online-users"


def lobby_presence_channel(session_id: str) -> str:
    return f"presence-lobby.{session_id}"


def group_presence_channel(group_id: int) -> str:
    return f"presence-group.{group_id}"


class PresenceScope(Enum):
    GLOBAL = "global"
    LOBBY = "lobby"
    GROUP = "group"


class PresenceChannels(Protocol):
    """The part of the push client presence binding needs."""

    def subscribe_presence(
        self,
        channel: str,
        handler: Callable[[PresenceHere | PresenceJoining | PresenceLeaving], None],
    ) -> None: ...

    def unsubscribe(self, channel: str) -> None: ...


class PresenceTracker:
    """Online user sets, one per scope."""

    def __init__(self) -> None:
        self._online: dict[PresenceScope, set[int]] = {scope: set() for scope in PresenceScope}
        self._listeners: list[Callable[[PresenceScope, frozenset[int]], None]] = []

    def apply_here(self, scope: PresenceScope, user_ids: set[int] | frozenset[int]) -> None:
        """Replace a scope with a full snapshot."""
        self._online[scope] = set(user_ids)
        logger.debug(f"Presence {scope.value}: {len(user_ids)} online")
        self._notify(scope)

    def apply_joining(self, scope: PresenceScope, user_id: int) -> None:
        if user_id in self._online[scope]:
            return
        self._online[scope].add(user_id)
        self._notify(scope)

    def apply_leaving(self, scope: PresenceScope, user_id: int) -> None:
        if user_id not in self._online[scope]:
            return
        self._online[scope].discard(user_id)
        self._notify(scope)

    def apply(
        self,
        scope: PresenceScope,
        event: PresenceHere | PresenceJoining | PresenceLeaving,
    ) -> None:
        """Apply a presence channel event to ``scope``."""
        match event:
            case PresenceHere(user_ids=user_ids):
                self.apply_here(scope, user_ids)
            case PresenceJoining(user_id=user_id):
                self.apply_joining(scope, user_id)
            case PresenceLeaving(user_id=user_id):
                self.apply_leaving(scope, user_id)

    def online(self, scope: PresenceScope) -> frozenset[int]:
        return frozenset(self._online[scope])

    def is_online(self, scope: PresenceScope, user_id: int) -> bool:
        return user_id in self._online[scope]

    def reset(self, scope: PresenceScope) -> None:
        """Forget everything known about ``scope``."""
        if self._online[scope]:
            self._online[scope] = set()
            self._notify(scope)

    def on_change(
        self, listener: Callable[[PresenceScope, frozenset[int]], None]
    ) -> Callable[[], None]:
        """Register a listener called with the scope and its new online set.

        Returns:
            Function that removes the listener
        """
        self._listeners.append(listener)

        def remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return remove

    def bind(
        self, push: PresenceChannels, scope: PresenceScope, channel: str
    ) -> Callable[[], None]:
        """Feed ``scope`` from a presence channel.

        Returns:
            Function that unsubscribes the channel and resets the scope
        """
        push.subscribe_presence(channel, lambda event: self.apply(scope, event))

        def unbind() -> None:
            push.unsubscribe(channel)
            self.reset(scope)

        return unbind

    def _notify(self, scope: PresenceScope) -> None:
        snapshot = self.online(scope)
        for listener in list(self._listeners):
            try:
                listener(scope, snapshot)
            except Exception:
                logger.exception("Error in presence listener")
