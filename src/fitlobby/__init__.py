"""Client-side coordinator for group workout lobbies."""

__version__ = "0.1.0"
