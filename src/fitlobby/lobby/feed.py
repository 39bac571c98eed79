"""Group workout invitation feed.

Invitations to a group's lobbies arrive on the group's private channel. The
feed is suspended while the user sits in a lobby of that group and resumed by
lobby cleanup, so new invitations show up right after leaving.
"""

import logging
from collections.abc import Callable
from typing import Any, Protocol

from pydantic import ValidationError

from fitlobby.transport.events import GroupWorkoutInvitation
from fitlobby.transport.push import ChannelHandler

logger = logging.getLogger(__name__)

INVITATION_EVENT = "GroupWorkoutInvitation"

InvitationHandler = Callable[[GroupWorkoutInvitation], None]


def group_channel(group_id: int) -> str:
    return f"private-group.{group_id}"


class InvitationChannels(Protocol):
    """The push client calls the feed uses."""

    def subscribe(self, channel: str, handler: ChannelHandler) -> None: ...

    def unsubscribe(self, channel: str) -> None: ...


class GroupInvitationFeed:
    """Delivers ``GroupWorkoutInvitation`` events for the watched groups."""

    def __init__(
        self,
        push: InvitationChannels,
        user_id: int,
        on_invitation: InvitationHandler | None = None,
    ) -> None:
        self._push = push
        self.user_id = user_id
        self.on_invitation = on_invitation
        self._watched: set[int] = set()
        self._suspended: set[int] = set()

    @property
    def watched_groups(self) -> frozenset[int]:
        return frozenset(self._watched)

    def is_active(self, group_id: int) -> bool:
        return group_id in self._watched and group_id not in self._suspended

    def watch(self, group_id: int) -> None:
        """Start receiving invitations for ``group_id``."""
        self._watched.add(group_id)
        self._suspended.discard(group_id)
        self._push.subscribe(group_channel(group_id), self._handler(group_id))
        logger.debug(f"Watching invitations for group {group_id}")

    def unwatch(self, group_id: int) -> None:
        self._watched.discard(group_id)
        self._suspended.discard(group_id)
        self._push.unsubscribe(group_channel(group_id))

    def suspend(self, group_id: int) -> None:
        """Stop invitations for ``group_id`` while the user is in one of its lobbies."""
        if group_id in self._watched and group_id not in self._suspended:
            self._suspended.add(group_id)
            self._push.unsubscribe(group_channel(group_id))
            logger.debug(f"Suspended invitations for group {group_id}")

    def resume(self, group_id: int) -> None:
        """Re-establish the invitation subscription for ``group_id``."""
        self.watch(group_id)

    def close(self) -> None:
        for group_id in list(self._watched):
            self.unwatch(group_id)

    def _handler(self, group_id: int) -> Callable[[str, Any], None]:
        def handle(event_name: str, data: Any) -> None:
            if event_name != INVITATION_EVENT or self.on_invitation is None:
                return
            if not isinstance(data, dict):
                return
            try:
                invitation = GroupWorkoutInvitation.model_validate({"group_id": group_id, **data})
            except ValidationError as e:
                logger.warning(f"Malformed invitation on group {group_id}: {e}")
                return
            if invitation.initiator_id == self.user_id:
                return
            logger.info(
                f"Invitation to lobby {invitation.session_id} from {invitation.initiator_name}"
            )
            self.on_invitation(invitation)

        return handle
