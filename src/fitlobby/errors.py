"""Exception types raised by the lobby client."""


class LobbyClientError(Exception):
    """Base class for all lobby client errors."""

    code = "error"

    def __init__(self, message: str = "") -> None:
        super().__init__(message)
        self.message = message


class NetworkError(LobbyClientError):
    """The lobby service could not be reached (after retries)."""

    code = "network_error"


class ApiError(LobbyClientError):
    """The lobby service answered with an error status."""

    code = "api_error"

    def __init__(
        self,
        message: str,
        status_code: int,
        retry_after: float | None = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.retry_after = retry_after


class RateLimitedError(ApiError):
    """Rate limit still exceeded after honouring the retry hints."""

    code = "rate_limited"


class NotFoundError(ApiError):
    """The lobby (or message, member) does not exist."""

    code = "not_found"


class AlreadyInLobbyError(ApiError):
    """The user is still registered in another lobby (stale invitation)."""

    code = "already_in_lobby"


class InvitePendingError(ApiError):
    """The invited user already has a pending invitation."""

    code = "invite_pending"


class AuthorizationError(LobbyClientError):
    """The action is reserved for the lobby initiator."""

    code = "not_initiator"


class CorruptSessionError(LobbyClientError):
    """A session whose initiator is not one of its members."""

    code = "corrupt_session"


class WorkoutStartError(LobbyClientError):
    """A workout start could not resolve the workout plan."""

    code = "workout_start_failed"


class ChatSendError(LobbyClientError):
    """A chat message could not be delivered; the draft was restored."""

    code = "chat_send_failed"


class LobbyActionError(LobbyClientError):
    """A lobby action failed even after the automatic recovery attempt."""

    code = "lobby_action_failed"
