from pathlib import Path
from typing import List, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    # Read from OS env and optional .env file in project root.
    _project_root = Path(__file__).parent.parent

    model_config = SettingsConfigDict(
        env_file=str(_project_root / ".env"),
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )

    # Environment / mode
    environment: str = Field(
        "development",
        alias="APP_ENV",
        description="Current environment, e.g. development / production",
    )

    # Upstream completion API (OpenRouter-compatible).
    openrouter_api_key: Optional[str] = Field(
        default=None,
        alias="OPENROUTER_API_KEY",
        description="Bearer token for the upstream completion API",
    )
    openrouter_base_url: str = Field(
        "https://openrouter.ai/api/v1",
        alias="OPENROUTER_BASE_URL",
    )
    openrouter_model: str = Field(
        "mistralai/mistral-nemo:free",
        alias="OPENROUTER_MODEL",
    )
    server_url: str = Field(
        "http://localhost:8000",
        alias="SERVER_URL",
        description="Public URL of this service, sent upstream as HTTP-Referer",
    )
    app_title: str = Field("AI Voice Assistant", alias="APP_TITLE")

    # HTTP timeouts
    upstream_timeout: float = Field(30.0, alias="UPSTREAM_TIMEOUT", gt=0)

    # Completion parameters
    max_tokens: int = Field(1000, alias="MAX_TOKENS", ge=1)
    temperature: float = Field(0.7, alias="TEMPERATURE", ge=0.0, le=2.0)

    # Conversation limits
    max_message_length: int = Field(4000, alias="MAX_MESSAGE_LENGTH", ge=1)
    max_conversation_messages: int = Field(
        50,
        alias="MAX_CONVERSATION_MESSAGES",
        ge=1,
        description="Maximum messages kept per conversation (oldest dropped first)",
    )
    history_window: int = Field(
        10,
        alias="HISTORY_WINDOW",
        ge=0,
        description="Most recent history messages forwarded upstream per request",
    )
    conversation_ttl_seconds: float = Field(
        30 * 60,
        alias="CONVERSATION_TTL_SECONDS",
        gt=0,
        description="Idle time after which a conversation is swept",
    )
    sweep_interval_seconds: float = Field(
        5 * 60,
        alias="SWEEP_INTERVAL_SECONDS",
        gt=0,
    )

    # Audio processing
    max_audio_bytes: int = Field(10 * 1024 * 1024, alias="MAX_AUDIO_BYTES", ge=1)
    supported_audio_formats_raw: str = Field(
        "mp3,wav,m4a,ogg",
        alias="SUPPORTED_AUDIO_FORMATS",
    )
    transcription_delay_seconds: float = Field(
        1.0,
        alias="TRANSCRIPTION_DELAY_SECONDS",
        ge=0.0,
        description="Artificial latency of the simulated speech-to-text step",
    )

    # Access control
    valid_api_keys_raw: Optional[str] = Field(
        default=None,
        alias="VALID_API_KEYS",
        description="Comma-separated API keys; when empty every request is accepted",
    )

    # Rate limiting
    rate_limit_window_seconds: int = Field(15 * 60, alias="RATE_LIMIT_WINDOW_SECONDS", ge=1)
    rate_limit_max_requests: int = Field(200, alias="RATE_LIMIT_MAX_REQUESTS", ge=1)

    # CORS
    allowed_origins: str = Field("*", alias="ALLOWED_ORIGINS")

    # Application log level for our chatrelay logger.
    log_level: str = Field(
        "INFO",
        alias="LOG_LEVEL",
        description="Application log level: DEBUG, INFO, WARNING, ERROR, CRITICAL",
    )
    log_timezone: Optional[str] = Field(
        default=None,
        alias="LOG_TIMEZONE",
        description="Timezone name for log timestamps, e.g. 'Europe/Paris'. Defaults to system local time.",
    )

    @property
    def is_development(self) -> bool:
        return self.environment.strip().lower() == "development"

    @property
    def effective_history_window(self) -> int:
        """History window clamped to the per-conversation message cap."""
        return min(self.history_window, self.max_conversation_messages)

    def get_valid_api_keys(self) -> List[str]:
        """
        Return configured API keys from VALID_API_KEYS.
        Whitespace is stripped and empty entries are ignored.
        """
        if not self.valid_api_keys_raw:
            return []
        return [
            item.strip() for item in self.valid_api_keys_raw.split(",") if item.strip()
        ]

    def get_supported_audio_formats(self) -> List[str]:
        return [
            item.strip().lower()
            for item in self.supported_audio_formats_raw.split(",")
            if item.strip()
        ]

    def get_allowed_origins(self) -> List[str]:
        if self.allowed_origins.strip() == "*":
            return ["*"]
        return [o.strip() for o in self.allowed_origins.split(",") if o.strip()]


settings = Settings()  # Reads from environment if available
