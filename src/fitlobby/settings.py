"""Client configuration."""

from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Client settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="FITLOBBY_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Lobby service
    api_base_url: str = "http://localhost:8002"
    access_token: str = ""
    request_timeout: float = 15.0
    network_retry_delays: list[float] = [1.0, 3.0]
    rate_limit_max_retries: int = 3
    rate_limit_initial_delay: float = 1.0

    # Recommendation (ML) service
    ml_base_url: str = "http://localhost:5000"

    # Push channel (Pusher protocol)
    ws_url: str = "ws://localhost:8080/app/local-key"
    broadcasting_auth_path: str = "/api/broadcasting/auth"
    push_max_reconnect_attempts: int = 10
    push_backoff_max_seconds: float = 60.0

    # Hybrid transport
    enable_auto_fallback: bool = True
    polling_interval: float = 3.0
    polling_max_retries: int = 10
    polling_backoff_multiplier: float = 1.5
    polling_backoff_max: float = 30.0

    # Invitations (matches the lobby service's invitation expiry)
    invite_ttl_seconds: float = 300.0
    invite_sweep_interval: float = 60.0

    # Chat
    chat_reconcile_window: float = 5.0
    chat_page_size: int = 50

    # Local storage for the "resume this lobby" record
    database_url: str = "sqlite+aiosqlite:///./fitlobby.db"

    # Development mode
    dev_mode: bool = False

    @property
    def authenticated(self) -> bool:
        """Check if an access token is configured."""
        return bool(self.access_token)


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
