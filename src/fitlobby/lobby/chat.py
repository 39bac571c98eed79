"""Lobby chat log with optimistic echo and history pagination.

Sending inserts a temporary message (``temp_`` id, sender label "You") before
the remote call is issued. Success needs no follow-up: the authoritative
broadcast of the same line supersedes the echo. Failure removes the echo and
puts the text back into the draft.

Supersession matches the oldest temporary message of the same sender that
was created no more than ``reconcile_window`` seconds before the
authoritative message arrived. This is a heuristic; under slow delivery an
echo can outlive its window and a burst of sends can match out of order.
"""

import logging
import time
import uuid
from collections.abc import Callable
from typing import Protocol

from fitlobby.api.client import ChatPage
from fitlobby.errors import ChatSendError, LobbyClientError
from fitlobby.lobby.models import (
    SYSTEM_MESSAGE_PREFIX,
    TEMP_MESSAGE_PREFIX,
    ChatMessage,
    CurrentUser,
)

logger = logging.getLogger(__name__)

LOCAL_SENDER_LABEL = "You"
SYSTEM_SENDER_LABEL = "System"

ChatListener = Callable[[tuple[ChatMessage, ...]], None]


class ChatApi(Protocol):
    """Remote chat calls used by ``ChatSubsystem``."""

    async def send_chat_message(self, session_id: str, text: str) -> None: ...

    async def get_chat_messages(
        self,
        session_id: str,
        limit: int | None = None,
        before: float | None = None,
    ) -> ChatPage: ...


class ChatSubsystem:
    """Ordered chat log for one lobby session.

    Attributes:
        draft: Text currently in the input box
        has_more: Whether older history can still be loaded
        unread_count: Messages from others received while the chat was hidden
    """

    def __init__(
        self,
        api: ChatApi,
        user: CurrentUser,
        reconcile_window: float = 5.0,
        page_size: int = 50,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """Initialize an empty chat log.

        Args:
            api: Lobby service chat calls
            user: The local participant
            reconcile_window: Seconds within which an authoritative message
                supersedes a temporary echo from the same sender
            page_size: History page size
            clock: Returns the current time in seconds since the epoch
        """
        self._api = api
        self._user = user
        self.reconcile_window = reconcile_window
        self.page_size = page_size
        self._clock = clock

        self.session_id: str | None = None
        self.draft = ""
        self.has_more = True
        self.unread_count = 0
        self.visible = False
        self._messages: list[ChatMessage] = []
        self._loading = False
        self._listeners: list[ChatListener] = []
        # Bumped by clear(); results fetched for an older log are dropped
        self._epoch = 0

    @property
    def messages(self) -> tuple[ChatMessage, ...]:
        return tuple(self._messages)

    def attach(self, session_id: str) -> None:
        """Start a fresh log for ``session_id``."""
        self.clear()
        self.session_id = session_id

    def clear(self) -> None:
        """Drop the log, the draft and the pagination state."""
        self._epoch += 1
        self.session_id = None
        self.draft = ""
        self.has_more = True
        self.unread_count = 0
        self._messages = []
        self._loading = False
        self._notify()

    async def send(self, text: str | None = None) -> ChatMessage | None:
        """Send ``text`` (or the current draft) with an optimistic echo.

        Returns:
            The temporary message, or None when there was nothing to send

        Raises:
            ChatSendError: The remote send failed; the echo was removed and the
                text restored into ``draft``
        """
        body = (self.draft if text is None else text).strip()
        if not body:
            return None
        if self.session_id is None:
            self.draft = body
            raise ChatSendError("Not in a lobby")

        temp = ChatMessage(
            message_id=f"{TEMP_MESSAGE_PREFIX}{uuid.uuid4().hex}",
            user_id=self._user.user_id,
            user_name=LOCAL_SENDER_LABEL,
            text=body,
            timestamp=self._clock(),
        )
        self._messages.append(temp)
        self.draft = ""
        self._notify()

        session_id = self.session_id
        epoch = self._epoch
        try:
            await self._api.send_chat_message(session_id, body)
        except LobbyClientError as e:
            logger.warning(f"Chat send failed in lobby {session_id}: {e}")
            if epoch == self._epoch:
                self._remove(temp.message_id)
                self.draft = body
                self._notify()
            raise ChatSendError(f"Message not sent: {e.message}") from e

        return temp

    def receive(self, message: ChatMessage) -> bool:
        """Append an authoritative message.

        Returns:
            False if a message with the same id is already in the log
        """
        if self._has(message.message_id):
            return False

        if message.user_id is not None:
            self._supersede_echo(message.user_id)

        self._messages.append(message)
        self._sort()
        if not self.visible and message.user_id != self._user.user_id:
            self.unread_count += 1
        self._notify()
        return True

    def add_system_message(self, text: str) -> ChatMessage:
        """Insert a locally synthesized system line."""
        message = ChatMessage(
            message_id=f"{SYSTEM_MESSAGE_PREFIX}{uuid.uuid4().hex}",
            user_id=None,
            user_name=SYSTEM_SENDER_LABEL,
            text=text,
            timestamp=self._clock(),
            is_system=True,
        )
        self._messages.append(message)
        self._notify()
        return message

    def _supersede_echo(self, sender_id: int) -> None:
        now = self._clock()
        for existing in self._messages:
            if (
                existing.is_temporary
                and existing.user_id == sender_id
                and 0 <= now - existing.timestamp <= self.reconcile_window
            ):
                self._remove(existing.message_id)
                return

    async def load_initial(self) -> None:
        """Load the newest page of history. Failures are logged and absorbed."""
        if self.session_id is None:
            return
        session_id = self.session_id
        epoch = self._epoch
        try:
            page = await self._api.get_chat_messages(session_id, limit=self.page_size)
        except LobbyClientError as e:
            logger.warning(f"Failed to load chat history for lobby {session_id}: {e}")
            return
        if epoch != self._epoch:
            logger.debug(f"Dropping chat history of lobby {session_id}: log was reset")
            return
        self._apply_page(page)

    async def load_more(self) -> int:
        """Load messages older than the oldest one held.

        Returns:
            Number of messages added to the log
        """
        if self.session_id is None or not self.has_more or self._loading:
            return 0

        held = [m for m in self._messages if not m.is_temporary]
        before = min(m.timestamp for m in held) if held else None
        session_id = self.session_id
        epoch = self._epoch
        self._loading = True
        try:
            page = await self._api.get_chat_messages(
                session_id, limit=self.page_size, before=before
            )
        finally:
            if epoch == self._epoch:
                self._loading = False
        if epoch != self._epoch:
            logger.debug(f"Dropping chat page of lobby {session_id}: log was reset")
            return 0
        return self._apply_page(page)

    def _apply_page(self, page: ChatPage) -> int:
        added = 0
        for message in page.messages:
            if not self._has(message.message_id):
                self._messages.append(message)
                added += 1
        if not page.has_more or not page.messages:
            self.has_more = False
        self._sort()
        self._notify()
        logger.debug(f"Chat page for lobby {self.session_id}: +{added}, has_more={self.has_more}")
        return added

    def set_visible(self, visible: bool) -> None:
        self.visible = visible
        if visible:
            self.mark_read()

    def mark_read(self) -> None:
        self.unread_count = 0

    def subscribe(self, listener: ChatListener) -> Callable[[], None]:
        """Register a listener receiving the log after every change.

        Returns:
            Function that removes the listener
        """
        self._listeners.append(listener)

        def remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return remove

    def _notify(self) -> None:
        snapshot = self.messages
        for listener in list(self._listeners):
            try:
                listener(snapshot)
            except Exception:
                logger.exception("Error in chat listener")

    def _has(self, message_id: str) -> bool:
        return any(m.message_id == message_id for m in self._messages)

    def _remove(self, message_id: str) -> None:
        self._messages = [m for m in self._messages if m.message_id != message_id]

    def _sort(self) -> None:
        self._messages.sort(key=lambda m: m.timestamp)
