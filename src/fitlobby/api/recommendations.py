"""Client for the workout recommendation (ML) service.

The lobby client treats plan generation as an opaque remote call: it sends
the ids of every lobby member and receives a workout plan sized for them.
"""

import logging
from typing import Protocol

import httpx

from fitlobby.errors import ApiError, NetworkError
from fitlobby.lobby.models import WorkoutData
from fitlobby.settings import Settings

logger = logging.getLogger(__name__)


class WorkoutRecommender(Protocol):
    """Generates a group workout plan for a set of users."""

    async def generate_group_workout(self, user_ids: list[int]) -> WorkoutData: ...


class RecommendationClient:
    """HTTP implementation of ``WorkoutRecommender``."""

    def __init__(
        self,
        base_url: str,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._client = httpx.AsyncClient(base_url=base_url, timeout=timeout, transport=transport)

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> "RecommendationClient":
        return cls(settings.ml_base_url, timeout=settings.request_timeout, transport=transport)

    async def aclose(self) -> None:
        await self._client.aclose()

    async def generate_group_workout(self, user_ids: list[int]) -> WorkoutData:
        """Request a plan balanced for every user in ``user_ids``.

        Raises:
            NetworkError: The service could not be reached
            ApiError: The service rejected the request or returned no exercises
        """
        try:
            response = await self._client.post(
                "/api/v1/recommendations/group",
                json={"user_ids": user_ids},
            )
        except httpx.TransportError as e:
            raise NetworkError(f"Recommendation service unreachable: {e}") from e

        if response.is_error:
            raise ApiError(
                f"Recommendation service returned {response.status_code}",
                response.status_code,
            )

        body = response.json()
        plan = WorkoutData.model_validate(body.get("workout_data", body))
        if not plan.has_exercises:
            raise ApiError("Recommendation service returned no exercises", response.status_code)

        logger.info(f"Generated group workout with {len(plan.exercises)} exercises for {user_ids}")
        return plan
