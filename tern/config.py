"""Settings via pydantic-settings with TERN_ env prefix.

Credentials use validation_alias to read the unprefixed env vars the
provider SDKs already use (GEMINI_API_KEY, OPENAI_API_KEY, ...), so one
.env file serves both.
"""

from enum import StrEnum

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_MODEL = "gemini-2.5-pro"
DEFAULT_FLASH_MODEL = "gemini-2.5-flash"
DEFAULT_EMBEDDING_MODEL = "gemini-embedding-001"


class AuthType(StrEnum):
    OAUTH_LOGIN = "oauth-personal"
    API_KEY = "api-key"
    ENTERPRISE = "vertex-ai"
    OPENAI = "openai"


class UserTier(StrEnum):
    FREE = "free"
    LEGACY = "legacy"
    STANDARD = "standard"


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="TERN_", env_file=".env")

    # Backend selection
    backend: str = "native"  # registered backend id
    auth_type: AuthType = AuthType.API_KEY
    user_tier: UserTier | None = None

    # Credentials and endpoints
    gemini_api_key: str = Field("", validation_alias="GEMINI_API_KEY")
    native_base_url: str = "https://generativelanguage.googleapis.com"
    openai_api_key: str = Field("", validation_alias="OPENAI_API_KEY")
    openai_base_url: str = Field(
        "https://api.openai.com/v1", validation_alias="OPENAI_BASE_URL"
    )

    # Models
    model: str = DEFAULT_MODEL
    fallback_model: str = DEFAULT_FLASH_MODEL
    embedding_model: str = DEFAULT_EMBEDDING_MODEL
    openai_embedding_model: str = "text-embedding-ada-002"

    # Timeouts (seconds unless noted)
    api_timeout_connect: float = 10.0
    api_timeout_read: float = 300.0
    openai_timeout_ms: int = 120000

    # Context window
    context_limits: dict[str, int] = Field(default_factory=dict)
    default_context_limit: int = 1_048_576

    # Compression: trigger at threshold x limit, keep the newest preserve fraction
    compression_threshold: float = 0.7
    compression_preserve_fraction: float = 0.3

    # Turn limits (0 = unlimited)
    max_session_turns: int = 0

    # Sampling
    temperature: float | None = None
    top_p: float | None = None
    top_k: int | None = None
    max_tokens: int | None = None
    presence_penalty: float | None = None
    frequency_penalty: float | None = None
    repetition_penalty: float | None = None

    # Continuation behaviour
    next_speaker_check_enabled: bool = True
    loop_detection_enabled: bool = True

    # Retry with backoff for transient failures
    retry_max_attempts: int = 5
    retry_initial_delay_ms: int = 5000
    retry_max_delay_ms: int = 30000

    # Storage
    checkpoint_dir: str = ".tern/checkpoints"

    log_level: str = "info"

    @model_validator(mode="after")
    def _check_fractions(self) -> "Settings":
        if not 0.0 < self.compression_preserve_fraction < 1.0:
            raise ValueError("compression_preserve_fraction must be between 0 and 1")
        if not 0.0 < self.compression_threshold <= 1.0:
            raise ValueError("compression_threshold must be in (0, 1]")
        return self
