"""Remote collaborators: the lobby service and the recommendation service."""

from fitlobby.api.client import ChatPage, InviteResult, LobbyApiClient
from fitlobby.api.recommendations import RecommendationClient, WorkoutRecommender

__all__ = [
    "ChatPage",
    "InviteResult",
    "LobbyApiClient",
    "RecommendationClient",
    "WorkoutRecommender",
]
