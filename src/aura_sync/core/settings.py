"""Client settings and configuration.

This module defines all configuration options for the Aura sync core.
Settings are loaded from environment variables with sensible defaults.
"""

from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Client settings loaded from environment variables.

    Settings can be overridden via environment variables or a ``.env`` file.
    """

    # Client metadata
    app_name: str = Field(default="Aura Social", alias="AURA_APP_NAME")
    debug: bool = Field(default=False, alias="AURA_DEBUG")

    # REST backend
    api_url: str = Field(default="", alias="AURA_API_URL")
    http_timeout_seconds: float = Field(default=10.0, alias="AURA_HTTP_TIMEOUT_SECONDS")

    # Push channel
    ws_url: str | None = Field(default=None, alias="AURA_WS_URL")
    ws_heartbeat_seconds: float = Field(default=20.0, alias="AURA_WS_HEARTBEAT_SECONDS")
    reconnect_base_seconds: float = Field(default=0.7, alias="AURA_RECONNECT_BASE_SECONDS")
    reconnect_factor: float = Field(default=2.0, alias="AURA_RECONNECT_FACTOR")
    reconnect_max_seconds: float = Field(default=10.0, alias="AURA_RECONNECT_MAX_SECONDS")
    reconnect_jitter: float = Field(default=0.2, alias="AURA_RECONNECT_JITTER")

    # Background refresh
    chat_poll_interval_seconds: float = Field(
        default=20.0,
        alias="AURA_CHAT_POLL_INTERVAL_SECONDS",
    )
    presence_interval_seconds: float = Field(
        default=30.0,
        alias="AURA_PRESENCE_INTERVAL_SECONDS",
    )

    # Content rules
    story_ttl_hours: int = Field(default=24, alias="AURA_STORY_TTL_HOURS")
    max_inline_media_bytes: int = Field(
        default=2_500_000,
        alias="AURA_MAX_INLINE_MEDIA_BYTES",
    )
    provisional_id_prefix: str = Field(default="temp", alias="AURA_PROVISIONAL_ID_PREFIX")

    # Persisted session (auth token + theme)
    session_file: Path = Field(
        default=Path("~/.aura/session.json"),
        alias="AURA_SESSION_FILE",
    )

    model_config = SettingsConfigDict(
        env_file=".env",
        validate_assignment=True,
        extra="ignore",
    )

    @property
    def api_enabled(self) -> bool:
        """Return True when a backend URL is configured."""
        return bool(self.api_url.strip())

    @property
    def effective_ws_url(self) -> str:
        """Return the push channel URL, deriving it from the API URL when unset.

        ``https://host`` becomes ``wss://host/ws`` and ``http://host`` becomes
        ``ws://host/ws``.
        """
        if self.ws_url:
            return self.ws_url
        base = self.api_url.strip().rstrip("/")
        if base.startswith("https://"):
            return "wss://" + base[len("https://"):] + "/ws"
        if base.startswith("http://"):
            return "ws://" + base[len("http://"):] + "/ws"
        return f"{base}/ws"


settings = Settings()
