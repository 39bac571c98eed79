"""HTTP client for the lobby service.

Wraps the lobby service's v2 REST surface. Responses use a
``{"status": "success", "data": {...}}`` envelope which is unwrapped here.

Retries happen inside this client so callers never see them:
- network failures are retried with fixed delays (1s, then 3s)
- 429 responses are retried honouring ``Retry-After`` when present,
  otherwise with exponential backoff
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import Enum
from typing import Any

import httpx

from fitlobby.errors import (
    AlreadyInLobbyError,
    ApiError,
    InvitePendingError,
    NetworkError,
    NotFoundError,
    RateLimitedError,
)
from fitlobby.lobby.models import ChatMessage, LobbySession, MemberStatus, WorkoutData
from fitlobby.settings import Settings

logger = logging.getLogger(__name__)

LOBBY_PREFIX = "/api/v2/lobby"


class InviteResult(Enum):
    """Outcome of an invite request that left an invitation in place."""

    SENT = "sent"
    ALREADY_PENDING = "already_pending"


@dataclass
class ChatPage:
    """One page of chat history."""

    messages: list[ChatMessage]
    has_more: bool


def _parse_retry_after(value: str | None) -> float | None:
    if not value:
        return None
    try:
        return max(float(value), 0.0)
    except ValueError:
        return None


def _error_message(response: httpx.Response) -> tuple[str, str | None]:
    try:
        body = response.json()
    except ValueError:
        return response.text or response.reason_phrase, None
    if not isinstance(body, dict):
        return str(body), None
    message = body.get("message") or body.get("detail") or response.reason_phrase
    return str(message), body.get("error_code")


def _raise_for_response(response: httpx.Response) -> None:
    """Translate an error response into the client's exception taxonomy."""
    status = response.status_code
    message, error_code = _error_message(response)
    lowered = message.lower()
    retry_after = _parse_retry_after(response.headers.get("retry-after"))

    if status == 404:
        raise NotFoundError(message, status)
    if status == 429:
        raise RateLimitedError(message, status, retry_after)
    if status == 409:
        if error_code == "invitation_pending" or "pending invitation" in lowered:
            raise InvitePendingError(message, status)
        if error_code == "already_in_lobby" or "already in" in lowered:
            raise AlreadyInLobbyError(message, status)
    raise ApiError(message, status, retry_after)


class LobbyApiClient:
    """Async client for the lobby service.

    Attributes:
        base_url: Lobby service root URL
    """

    def __init__(
        self,
        base_url: str,
        token: str | Callable[[], str | None] | None = None,
        timeout: float = 15.0,
        network_retry_delays: list[float] | None = None,
        rate_limit_max_retries: int = 3,
        rate_limit_initial_delay: float = 1.0,
        broadcasting_auth_path: str = "/api/broadcasting/auth",
        transport: httpx.AsyncBaseTransport | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        """Initialize the client.

        Args:
            base_url: Lobby service root URL
            token: Bearer token, or a callable returning the current token
            timeout: Per-request timeout in seconds
            network_retry_delays: Delays between retries of network failures
            rate_limit_max_retries: Retries of 429 responses before giving up
            rate_limit_initial_delay: First backoff delay without Retry-After
            broadcasting_auth_path: Push channel authorization endpoint
            transport: Optional httpx transport (used by tests)
            sleep: Sleep coroutine (injectable for tests)
        """
        self.base_url = base_url
        self._token = token
        self.network_retry_delays = (
            [1.0, 3.0] if network_retry_delays is None else network_retry_delays
        )
        self.rate_limit_max_retries = rate_limit_max_retries
        self.rate_limit_initial_delay = rate_limit_initial_delay
        self.broadcasting_auth_path = broadcasting_auth_path
        self._sleep = sleep
        self._client = httpx.AsyncClient(
            base_url=base_url,
            timeout=timeout,
            transport=transport,
            headers={"Accept": "application/json"},
        )

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> "LobbyApiClient":
        return cls(
            settings.api_base_url,
            token=settings.access_token or None,
            timeout=settings.request_timeout,
            network_retry_delays=settings.network_retry_delays,
            rate_limit_max_retries=settings.rate_limit_max_retries,
            rate_limit_initial_delay=settings.rate_limit_initial_delay,
            broadcasting_auth_path=settings.broadcasting_auth_path,
            transport=transport,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> "LobbyApiClient":
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    def _auth_headers(self) -> dict[str, str]:
        token = self._token() if callable(self._token) else self._token
        if not token:
            return {}
        return {"Authorization": f"Bearer {token}"}

    async def _request(
        self,
        method: str,
        path: str,
        *,
        json: dict[str, Any] | None = None,
        params: dict[str, Any] | None = None,
        data: dict[str, Any] | None = None,
    ) -> Any:
        """Send a request with network and rate-limit retries.

        Returns:
            The ``data`` member of the success envelope (or the raw body when
            the response has no envelope)
        """
        network_failures = 0
        rate_limited = 0

        while True:
            try:
                response = await self._client.request(
                    method,
                    path,
                    json=json,
                    params=params,
                    data=data,
                    headers=self._auth_headers(),
                )
            except httpx.TransportError as e:
                if network_failures < len(self.network_retry_delays):
                    delay = self.network_retry_delays[network_failures]
                    network_failures += 1
                    logger.info(
                        f"Network error on {method} {path} ({e!r}), retrying in {delay}s "
                        f"(attempt {network_failures}/{len(self.network_retry_delays)})"
                    )
                    await self._sleep(delay)
                    continue
                raise NetworkError(f"{method} {path} failed: {e}") from e

            if response.status_code == 429 and rate_limited < self.rate_limit_max_retries:
                retry_after = _parse_retry_after(response.headers.get("retry-after"))
                delay = (
                    retry_after
                    if retry_after is not None
                    else self.rate_limit_initial_delay * 2**rate_limited
                )
                rate_limited += 1
                logger.info(
                    f"Rate limited on {method} {path}, retrying in {delay}s "
                    f"(attempt {rate_limited}/{self.rate_limit_max_retries})"
                )
                await self._sleep(delay)
                continue

            if response.is_error:
                _raise_for_response(response)

            if not response.content:
                return {}
            body = response.json()
            if isinstance(body, dict) and "data" in body:
                return body["data"]
            return body

    async def create_lobby(self, group_id: int, workout_data: WorkoutData | None) -> LobbySession:
        """Create a lobby for ``group_id`` with the current user as initiator."""
        payload = workout_data.model_dump(mode="json") if workout_data else None
        data = await self._request(
            "POST",
            f"{LOBBY_PREFIX}/create",
            json={"group_id": group_id, "workout_data": payload},
        )
        session = LobbySession.model_validate(data["lobby_state"])
        logger.info(f"Created lobby {session.session_id} for group {group_id}")
        return session

    async def join_lobby(self, session_id: str) -> LobbySession:
        data = await self._request("POST", f"{LOBBY_PREFIX}/{session_id}/join", json={})
        return LobbySession.model_validate(data["lobby_state"])

    async def leave_lobby(self, session_id: str) -> None:
        """Leave a lobby. Leaving a lobby the user already left succeeds."""
        try:
            await self._request("POST", f"{LOBBY_PREFIX}/{session_id}/leave", json={})
        except ApiError as e:
            lowered = e.message.lower()
            if isinstance(e, NotFoundError) or "already left" in lowered or "not in" in lowered:
                logger.info(f"Already out of lobby {session_id}; treating leave as success")
                return
            raise

    async def get_lobby_state(self, session_id: str) -> LobbySession:
        data = await self._request("GET", f"{LOBBY_PREFIX}/{session_id}")
        return LobbySession.model_validate(data["lobby_state"])

    async def force_leave_all(self) -> int:
        """Leave every lobby the user is registered in.

        Returns:
            Number of lobbies left
        """
        data = await self._request("POST", f"{LOBBY_PREFIX}/force-leave-all", json={})
        left = int(data.get("lobbies_left", 0)) if isinstance(data, dict) else 0
        logger.info(f"Force-left {left} lobby(ies)")
        return left

    async def update_member_status(self, session_id: str, status: MemberStatus) -> None:
        await self._request(
            "POST", f"{LOBBY_PREFIX}/{session_id}/status", json={"status": status.value}
        )

    async def update_workout_data(
        self, session_id: str, workout_data: WorkoutData | None
    ) -> None:
        """Replace the lobby's workout plan (``None`` clears it)."""
        payload = workout_data.model_dump(mode="json") if workout_data else None
        await self._request(
            "POST",
            f"{LOBBY_PREFIX}/{session_id}/workout-data",
            json={"workout_data": payload},
        )

    async def start_workout(self, session_id: str) -> None:
        """Ask the lobby service to start the workout.

        The acknowledgement carries no state; every member (including the
        caller) transitions on the ``WorkoutStarted`` broadcast.
        """
        await self._request("POST", f"{LOBBY_PREFIX}/{session_id}/start", json={})

    async def kick_member(self, session_id: str, user_id: int) -> None:
        await self._request(
            "POST", f"{LOBBY_PREFIX}/{session_id}/kick", json={"kicked_user_id": user_id}
        )

    async def transfer_initiator(self, session_id: str, user_id: int) -> None:
        await self._request(
            "POST",
            f"{LOBBY_PREFIX}/{session_id}/transfer-initiator",
            json={"new_initiator_id": user_id},
        )

    async def invite_member(
        self,
        session_id: str,
        user_id: int,
        group_id: int,
        workout_data: WorkoutData | None,
    ) -> InviteResult:
        """Invite a group member to the lobby.

        Returns:
            ``SENT`` on success, ``ALREADY_PENDING`` if the user already holds a
            pending invitation; both mean an invitation exists
        """
        payload = workout_data.model_dump(mode="json") if workout_data else None
        try:
            await self._request(
                "POST",
                f"{LOBBY_PREFIX}/{session_id}/invite",
                json={
                    "invited_user_id": user_id,
                    "group_id": group_id,
                    "workout_data": payload,
                },
            )
        except InvitePendingError:
            logger.info(f"User {user_id} already has a pending invite to {session_id}")
            return InviteResult.ALREADY_PENDING
        return InviteResult.SENT

    async def send_chat_message(self, session_id: str, text: str) -> None:
        await self._request(
            "POST", f"{LOBBY_PREFIX}/{session_id}/message", json={"message": text}
        )

    async def get_chat_messages(
        self,
        session_id: str,
        limit: int | None = None,
        before: float | None = None,
    ) -> ChatPage:
        """Fetch a page of chat history, newest page first.

        Args:
            session_id: Lobby id
            limit: Page size
            before: Only return messages older than this timestamp (seconds)
        """
        params: dict[str, Any] = {}
        if limit is not None:
            params["limit"] = limit
        if before is not None:
            params["before"] = before
        data = await self._request(
            "GET", f"{LOBBY_PREFIX}/{session_id}/messages", params=params or None
        )
        messages = [ChatMessage.model_validate(m) for m in data.get("messages", [])]
        return ChatPage(messages=messages, has_more=bool(data.get("has_more", False)))

    async def authorize_channel(self, socket_id: str, channel_name: str) -> dict[str, Any]:
        """Obtain a push-channel signature for a private or presence channel."""
        return await self._request(
            "POST",
            self.broadcasting_auth_path,
            data={"socket_id": socket_id, "channel_name": channel_name},
        )
