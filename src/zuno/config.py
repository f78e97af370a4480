"""Client settings via pydantic-settings."""

from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Client configuration loaded from environment variables with ZUNO_ prefix."""

    model_config = SettingsConfigDict(
        env_prefix="ZUNO_",
        env_file=".env",
        case_sensitive=False,
    )

    # --- Core ---
    app_version: str = "0.1.0"
    environment: str = "development"
    log_level: str = "INFO"
    log_format: str = "json"

    # --- Backend API ---
    api_base_url: str = "http://localhost:8080"
    api_timeout_seconds: float = 30.0

    # --- WebAuthn ---
    webauthn_relying_party_id: str = "localhost"
    webauthn_timeout_seconds: float = 60.0

    # --- Secure storage ---
    keychain_service: str = "com.zuno.app"

    # --- Local database ---
    database_url: str = "sqlite+aiosqlite:///zuno.db"

    # --- App defaults ---
    default_currency: str = "USDC"
    default_network: str = "ARC-TESTNET"
    supported_networks: list[str] = ["ARC-TESTNET", "MATIC-AMOY", "ARB-SEPOLIA"]

    # --- WebSocket ---
    ws_heartbeat_interval_seconds: float = 30.0
    ws_max_reconnect_attempts: int = 5
    ws_max_backoff_seconds: float = 30.0

    # --- Refresh / cache ---
    poll_interval_seconds: float = 5.0
    cache_ttl_seconds: int = 300

    @property
    def ws_url(self) -> str:
        """WebSocket endpoint derived from the API base URL."""
        base = self.api_base_url.rstrip("/")
        if base.startswith("https://"):
            base = "wss://" + base.removeprefix("https://")
        elif base.startswith("http://"):
            base = "ws://" + base.removeprefix("http://")
        return f"{base}/ws"


@lru_cache
def get_settings() -> Settings:
    """Get cached client settings."""
    return Settings()
