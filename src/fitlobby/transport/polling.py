"""HTTP polling fallback for lobby state.

Used when the push channel is unavailable. Every tick fetches the full lobby
state rather than a delta: after a transport switch there is no ordering
guarantee, so only a complete snapshot is safe to apply.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Protocol

from fitlobby.errors import LobbyClientError
from fitlobby.lobby.models import LobbySession

logger = logging.getLogger(__name__)

UpdateHandler = Callable[[LobbySession], Awaitable[None]]
ErrorHandler = Callable[[Exception], None]


class LobbyStateSource(Protocol):
    """Anything that can fetch the authoritative lobby state."""

    async def get_lobby_state(self, session_id: str) -> LobbySession: ...


@dataclass
class PollingConfig:
    """Polling cadence and retry budget."""

    interval: float = 3.0
    max_retries: int = 10
    backoff_multiplier: float = 1.5
    backoff_max: float = 30.0

    def backoff(self, failed_attempts: int) -> float:
        """Delay before the next poll after ``failed_attempts`` consecutive failures."""
        if failed_attempts <= 0:
            return self.interval
        return min(
            self.interval * self.backoff_multiplier ** (failed_attempts - 1),
            self.backoff_max,
        )


@dataclass
class _Poller:
    session_id: str
    on_update: UpdateHandler
    on_error: ErrorHandler
    config: PollingConfig
    task: asyncio.Task[None] | None = None
    last_version: int = -1
    failed_attempts: int = 0
    active: bool = True


class PollingTransport:
    """Runs one poll loop per subscribed lobby session."""

    def __init__(
        self,
        source: LobbyStateSource,
        config: PollingConfig | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        """Initialize the transport.

        Args:
            source: Fetches the authoritative lobby state
            config: Default polling configuration
            sleep: Sleep coroutine (injectable for tests)
        """
        self._source = source
        self.config = config or PollingConfig()
        self._sleep = sleep
        self._pollers: dict[str, _Poller] = {}

    def start(
        self,
        session_id: str,
        on_update: UpdateHandler,
        on_error: ErrorHandler,
        config: PollingConfig | None = None,
    ) -> None:
        """Start polling ``session_id``. A second start for the same session is ignored."""
        if self.is_active(session_id):
            logger.debug(f"Already polling lobby {session_id}")
            return

        poller = _Poller(
            session_id=session_id,
            on_update=on_update,
            on_error=on_error,
            config=config or self.config,
        )
        self._pollers[session_id] = poller
        poller.task = asyncio.create_task(self._run(poller))
        logger.info(
            f"Started polling lobby {session_id} every {poller.config.interval}s "
            f"(max {poller.config.max_retries} retries)"
        )

    def stop(self, session_id: str) -> None:
        """Stop polling ``session_id``; a tick in flight is discarded."""
        poller = self._pollers.pop(session_id, None)
        if poller is None:
            return
        poller.active = False
        if poller.task is not None and poller.task is not asyncio.current_task():
            poller.task.cancel()
        logger.info(f"Stopped polling lobby {session_id}")

    def stop_all(self) -> None:
        for session_id in list(self._pollers):
            self.stop(session_id)

    def is_active(self, session_id: str) -> bool:
        poller = self._pollers.get(session_id)
        return poller is not None and poller.active

    def stats(self) -> dict[str, object]:
        return {
            "active_polls": len(self._pollers),
            "sessions": [
                {
                    "session_id": p.session_id,
                    "failed_attempts": p.failed_attempts,
                    "version": p.last_version,
                }
                for p in self._pollers.values()
            ],
        }

    async def _run(self, poller: _Poller) -> None:
        while poller.active:
            delay = await self._poll_once(poller)
            if not poller.active:
                return
            await self._sleep(delay)

    async def _poll_once(self, poller: _Poller) -> float:
        """Run one tick.

        Returns:
            Delay before the next tick
        """
        config = poller.config
        try:
            session = await self._source.get_lobby_state(poller.session_id)
        except (LobbyClientError, ValueError) as e:
            poller.failed_attempts += 1
            logger.warning(
                f"Polling lobby {poller.session_id} failed "
                f"({poller.failed_attempts}/{config.max_retries}): {e}"
            )
            if poller.failed_attempts >= config.max_retries:
                logger.error(f"Max polling retries reached for lobby {poller.session_id}")
                self.stop(poller.session_id)
                poller.on_error(
                    LobbyClientError(f"Polling failed after {config.max_retries} attempts")
                )
            return config.backoff(poller.failed_attempts)

        poller.failed_attempts = 0
        if not poller.active:
            return config.interval

        if session.version > poller.last_version:
            logger.debug(
                f"Lobby {poller.session_id} updated via polling "
                f"(v{poller.last_version} -> v{session.version})"
            )
            poller.last_version = session.version
            await poller.on_update(session)

        return config.interval
