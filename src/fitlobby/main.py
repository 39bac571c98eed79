"""Process-level composition of the lobby client."""

import logging
import sys
from collections.abc import Callable

import httpx
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from fitlobby.api.client import LobbyApiClient
from fitlobby.api.recommendations import RecommendationClient, WorkoutRecommender
from fitlobby.db.repositories.resume import recover_from_crash
from fitlobby.db.session import create_engine, create_session_factory, init_models
from fitlobby.lobby.controller import LobbyController, LobbyNotice, WorkoutLaunch
from fitlobby.lobby.feed import GroupInvitationFeed, InvitationHandler
from fitlobby.lobby.invites import InviteTracker
from fitlobby.lobby.models import CurrentUser
from fitlobby.lobby.presence import GLOBAL_PRESENCE_CHANNEL, PresenceScope, PresenceTracker
from fitlobby.settings import Settings, get_settings
from fitlobby.transport.manager import TransportConfig, TransportManager
from fitlobby.transport.polling import PollingTransport
from fitlobby.transport.push import PushClient

logger = logging.getLogger(__name__)


def setup_logging(level: int = logging.INFO) -> None:
    """Configure logging for the client."""
    formatter = logging.Formatter(
        "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    root_logger = logging.getLogger()
    root_logger.setLevel(level)

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(level)
    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    logging.getLogger("fitlobby").setLevel(level)
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("websockets").setLevel(logging.WARNING)


class LobbyApp:
    """Owns the process-wide lobby services.

    The invite tracker, presence tracker, push connection and transport
    manager are shared by every ``LobbyController`` built from the app.
    """

    def __init__(
        self,
        settings: Settings | None = None,
        recommender: WorkoutRecommender | None = None,
        http_transport: httpx.AsyncBaseTransport | None = None,
        push: PushClient | None = None,
    ) -> None:
        """Build the services from settings.

        Args:
            settings: Client settings (defaults to ``get_settings()``)
            recommender: Workout plan generator (defaults to the ML service client)
            http_transport: Optional httpx transport for both HTTP clients
            push: Push client (defaults to one built from settings)
        """
        self.settings = settings or get_settings()
        self.api = LobbyApiClient.from_settings(self.settings, transport=http_transport)
        self._owns_recommender = recommender is None
        self.recommender: WorkoutRecommender = recommender or RecommendationClient.from_settings(
            self.settings, transport=http_transport
        )
        self.push = push or PushClient(
            self.settings.ws_url,
            authorizer=self.api.authorize_channel,
            max_reconnect_attempts=self.settings.push_max_reconnect_attempts,
            backoff_max=self.settings.push_backoff_max_seconds,
        )
        transport_config = TransportConfig.from_settings(self.settings)
        self.polling = PollingTransport(self.api, transport_config.polling)
        self.transport = TransportManager(self.push, self.polling, transport_config)
        self.invites = InviteTracker(ttl_seconds=self.settings.invite_ttl_seconds)
        self.presence = PresenceTracker()

        self.user: CurrentUser | None = None
        self.feed: GroupInvitationFeed | None = None
        self.engine: AsyncEngine | None = None
        self.session_factory: async_sessionmaker[AsyncSession] | None = None
        self._unbind_global_presence: Callable[[], None] | None = None
        self.started = False

    async def start(
        self,
        user: CurrentUser,
        on_invitation: InvitationHandler | None = None,
        recover: bool = True,
    ) -> None:
        """Start the shared services for ``user``.

        Connects the push channel, subscribes global presence, starts the
        invite sweeper and resolves lobbies left behind by a previous crash.
        """
        if self.started:
            return
        self.user = user
        logger.info(
            f"Starting lobby client for user {user.user_id} "
            f"(dev_mode={self.settings.dev_mode})"
        )

        self.engine = create_engine(self.settings.database_url)
        await init_models(self.engine)
        self.session_factory = create_session_factory(self.engine)

        await self.push.connect(user.user_id)
        self._unbind_global_presence = self.presence.bind(
            self.push, PresenceScope.GLOBAL, GLOBAL_PRESENCE_CHANNEL
        )
        self.feed = GroupInvitationFeed(self.push, user.user_id, on_invitation)
        self.invites.start_sweeper(self.settings.invite_sweep_interval)
        self.started = True

        if recover:
            cleared = await recover_from_crash(self.session_factory, self.api, user.user_id)
            if cleared:
                logger.info(f"Recovered {cleared} stale lobby record(s)")

    def controller(
        self,
        on_workout_started: Callable[[WorkoutLaunch], None] | None = None,
        on_notice: Callable[[LobbyNotice], None] | None = None,
    ) -> LobbyController:
        """Build a controller for one lobby screen."""
        if not self.started or self.user is None:
            raise RuntimeError("LobbyApp.start() must be called first")
        return LobbyController(
            self.user,
            self.api,
            self.recommender,
            self.transport,
            self.push,
            self.presence,
            self.invites,
            feed=self.feed,
            session_factory=self.session_factory,
            chat_reconcile_window=self.settings.chat_reconcile_window,
            chat_page_size=self.settings.chat_page_size,
            on_workout_started=on_workout_started,
            on_notice=on_notice,
        )

    async def stop(self) -> None:
        """Tear down every shared service."""
        logger.info("Stopping lobby client")
        await self.invites.stop_sweeper()
        if self.feed is not None:
            self.feed.close()
        if self._unbind_global_presence is not None:
            self._unbind_global_presence()
            self._unbind_global_presence = None
        self.transport.close()
        await self.push.disconnect()
        await self.api.aclose()
        if self._owns_recommender and isinstance(self.recommender, RecommendationClient):
            await self.recommender.aclose()
        if self.engine is not None:
            await self.engine.dispose()
            self.engine = None
        self.started = False


# Global app instance
_lobby_app: LobbyApp | None = None


def get_lobby_app() -> LobbyApp:
    """Get the global lobby app instance."""
    global _lobby_app
    if _lobby_app is None:
        _lobby_app = LobbyApp()
    return _lobby_app


def init_lobby_app(settings: Settings | None = None) -> LobbyApp:
    """Initialize the global lobby app with explicit settings.

    Args:
        settings: Client settings (defaults to ``get_settings()``)

    Returns:
        The initialized app
    """
    global _lobby_app
    _lobby_app = LobbyApp(settings)
    return _lobby_app


def reset_lobby_app() -> None:
    """Reset the global lobby app (for testing)."""
    global _lobby_app
    _lobby_app = None
