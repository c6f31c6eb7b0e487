"""Application Settings - Environment-based configuration.

Uses Pydantic Settings for validation and type coercion.

Required variables fail startup if missing.
Conditional variables are required only when their parent feature is enabled.
"""

from functools import lru_cache
from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from talkai.config.constants import RT


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # API Configuration
    api_host: str = Field(default="0.0.0.0", description="API bind host")
    api_port: int = Field(default=8081, ge=1024, le=65535, description="API port")
    log_level: Literal["DEBUG", "INFO", "WARN", "ERROR"] = Field(
        default="INFO", description="Logging level"
    )
    environment: Literal["development", "staging", "production"] = Field(
        default="development", description="Environment name"
    )

    # Session Configuration
    max_concurrent_sessions: int = Field(
        default=10, ge=1, le=RT.MAX_CONCURRENT_SESSIONS, description="Maximum concurrent sessions"
    )

    # Avatar rendering service (HeyGen streaming avatar)
    heygen_api_key: str | None = Field(
        default=None, description="Avatar service API key (X-Api-Key header)"
    )
    heygen_api_url: str = Field(
        default="https://api.heygen.com/v1", description="Avatar service REST base URL"
    )
    heygen_avatar_id: str = Field(default="", description="Avatar identity")
    heygen_voice_id: str | None = Field(default=None, description="Optional avatar voice")
    heygen_quality: Literal["low", "medium", "high"] = Field(
        default="high", description="Avatar stream quality tier"
    )
    heygen_request_timeout_s: float = Field(
        default=10.0, gt=0, le=60, description="REST request timeout"
    )
    heygen_connect_timeout_s: float = Field(
        default=RT.AVATAR_CONNECT_TIMEOUT_S,
        gt=0,
        le=120,
        description="Max wait for the WebRTC transport to report connected",
    )

    # Outbound lip-sync audio queue
    audio_queue_max_frames: int = Field(
        default=RT.AUDIO_QUEUE_MAX_FRAMES,
        ge=1,
        le=10_000,
        description="Frames held while the avatar is not connected",
    )
    audio_queue_overflow: Literal["drop_oldest", "drop_newest"] = Field(
        default="drop_oldest", description="Policy when the audio queue is full"
    )
    audio_drain_delay_ms: int = Field(
        default=RT.AUDIO_DRAIN_DELAY_MS,
        ge=0,
        le=1000,
        description="Delay between queued frame sends",
    )

    # Voice/emotion stream (Hume EVI)
    hume_api_key: str | None = Field(default=None, description="Voice service API key")
    hume_secret_key: str | None = Field(default=None, description="Voice service secret key")
    hume_config_id: str = Field(default="", description="Voice service configuration ID")
    hume_api_url: str = Field(
        default="https://api.hume.ai", description="Voice service REST base URL"
    )
    hume_ws_url: str = Field(
        default="wss://api.hume.ai/v0/evi/chat", description="Voice service WebSocket URL"
    )

    # WebRTC Configuration
    webrtc_turn_server: str | None = Field(
        default=None, description="TURN server URI"
    )
    webrtc_turn_username: str | None = Field(
        default=None, description="TURN username"
    )
    webrtc_turn_password: str | None = Field(
        default=None, description="TURN password"
    )

    # History store (Supabase PostgREST)
    supabase_url: str | None = Field(default=None, description="Supabase project URL")
    supabase_key: str | None = Field(default=None, description="Supabase service key")

    # Observability
    metrics_enabled: bool = Field(default=True, description="Enable Prometheus metrics")

    @field_validator("heygen_api_url", "hume_api_url", "supabase_url", mode="before")
    @classmethod
    def strip_trailing_slash(cls, v: str | None) -> str | None:
        """Base URLs are joined with '/path' so a trailing slash is removed."""
        if isinstance(v, str):
            return v.rstrip("/")
        return v

    def model_post_init(self, __context) -> None:
        """Validate conditional requirements after model creation."""
        # Validate TURN credentials
        if self.webrtc_turn_server:
            if not self.webrtc_turn_username or not self.webrtc_turn_password:
                raise ValueError(
                    "webrtc_turn_username and webrtc_turn_password are required "
                    "when webrtc_turn_server is set"
                )

        # Both halves of the Supabase credentials travel together
        if bool(self.supabase_url) != bool(self.supabase_key):
            raise ValueError(
                "supabase_url and supabase_key must be set together"
            )

        if self.environment == "production":
            missing = [
                name for name in ("heygen_api_key", "hume_api_key", "hume_secret_key")
                if not getattr(self, name)
            ]
            if missing:
                raise ValueError(
                    f"{', '.join(missing)} required in production environment"
                )

    @property
    def history_store_configured(self) -> bool:
        """Whether a remote history store is configured."""
        return bool(self.supabase_url and self.supabase_key)


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
