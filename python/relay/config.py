"""Application settings loaded from environment variables.

Environment Configuration:
    RELAY_ENV: Deployment environment (local | test | staging | prod)
    DATABASE_URL: SQLAlchemy connection string (required)
    RELAY_INTERNAL_SECRET: Internal API secret (required in staging/prod)

Redis / Celery Configuration:
    REDIS_URL: Redis connection string (coordination state, quotas, pub/sub)
    CELERY_BROKER_URL: Celery broker URL (defaults to REDIS_URL)
    CELERY_RESULT_BACKEND: Celery result backend URL (defaults to REDIS_URL)

Provider Configuration:
    PRIMARY_PROVIDER / FALLBACK_PROVIDER: provider names ("deepseek", "together", "openai")
    DEEPSEEK_API_KEY, TOGETHER_API_KEY, OPENAI_API_KEY: platform keys
    DEEPSEEK_MODEL, TOGETHER_MODEL, OPENAI_MODEL: model per provider
"""

from enum import Enum
from functools import lru_cache
from typing import Annotated

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings


class Environment(str, Enum):
    """Valid deployment environments."""

    LOCAL = "local"
    TEST = "test"
    STAGING = "staging"
    PROD = "prod"


class Settings(BaseSettings):
    """Application configuration.

    Validation rules:
    - DATABASE_URL is always required
    - RELAY_INTERNAL_SECRET is required in staging and prod only
    - FALLBACK_PROVIDER must differ from PRIMARY_PROVIDER when set
    - PROCESSING_TIMEOUT_S must outlast the slowest possible generation episode
    - RESPONSE_MARKER_TTL_S must not expire before PROCESSING_TIMEOUT_S
    """

    relay_env: Environment = Field(default=Environment.LOCAL, alias="RELAY_ENV")
    database_url: Annotated[str, Field(alias="DATABASE_URL")]
    relay_internal_secret: str | None = Field(default=None, alias="RELAY_INTERNAL_SECRET")

    # Redis / Celery settings
    redis_url: str | None = Field(default=None, alias="REDIS_URL")
    celery_broker_url: str | None = Field(default=None, alias="CELERY_BROKER_URL")
    celery_result_backend: str | None = Field(default=None, alias="CELERY_RESULT_BACKEND")

    # Provider selection
    primary_provider: str = Field(default="deepseek", alias="PRIMARY_PROVIDER")
    fallback_provider: str | None = Field(default="together", alias="FALLBACK_PROVIDER")

    # Platform API keys per provider (a provider without a key is unavailable)
    deepseek_api_key: str | None = Field(default=None, alias="DEEPSEEK_API_KEY")
    together_api_key: str | None = Field(default=None, alias="TOGETHER_API_KEY")
    openai_api_key: str | None = Field(default=None, alias="OPENAI_API_KEY")

    deepseek_base_url: str = Field(default="https://api.deepseek.com/v1", alias="DEEPSEEK_BASE_URL")
    together_base_url: str = Field(default="https://api.together.xyz/v1", alias="TOGETHER_BASE_URL")
    openai_base_url: str = Field(default="https://api.openai.com/v1", alias="OPENAI_BASE_URL")

    deepseek_model: str = Field(default="deepseek-reasoner", alias="DEEPSEEK_MODEL")
    together_model: str = Field(
        default="meta-llama/Llama-3.3-70B-Instruct-Turbo", alias="TOGETHER_MODEL"
    )
    openai_model: str = Field(default="gpt-4o-mini", alias="OPENAI_MODEL")

    # Generation parameters
    llm_timeout_s: int = Field(default=45, alias="LLM_TIMEOUT_S")
    llm_temperature: float = Field(default=1.3, alias="LLM_TEMPERATURE")
    llm_max_tokens: int = Field(default=500, alias="LLM_MAX_TOKENS")
    max_quality_attempts: int = Field(default=2, alias="MAX_QUALITY_ATTEMPTS")
    max_reply_chars: int = Field(default=200, alias="MAX_REPLY_CHARS")
    context_message_limit: int = Field(default=20, alias="CONTEXT_MESSAGE_LIMIT")

    # Conversation coordination
    max_queue_size: int = Field(default=10, alias="MAX_QUEUE_SIZE")
    message_ttl_s: int = Field(default=300, alias="MESSAGE_TTL_S")
    processing_timeout_s: int = Field(default=240, alias="PROCESSING_TIMEOUT_S")
    state_ttl_s: int = Field(default=3600, alias="STATE_TTL_S")
    response_marker_ttl_s: int = Field(default=300, alias="RESPONSE_MARKER_TTL_S")

    # Acknowledgement side-effect (character "likes" the user message)
    ack_probability: float = Field(default=0.35, alias="ACK_PROBABILITY")
    ack_min_delay_s: float = Field(default=1.0, alias="ACK_MIN_DELAY_S")
    ack_max_delay_s: float = Field(default=3.0, alias="ACK_MAX_DELAY_S")

    # Free tier daily quotas per character
    free_text_limit: int = Field(default=30, alias="FREE_TEXT_LIMIT")
    free_audio_limit: int = Field(default=5, alias="FREE_AUDIO_LIMIT")
    free_media_limit: int = Field(default=5, alias="FREE_MEDIA_LIMIT")

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "extra": "ignore",
    }

    @model_validator(mode="after")
    def validate_required_settings(self) -> "Settings":
        """Ensure required settings are set for the environment."""
        if self.relay_env in (Environment.STAGING, Environment.PROD):
            if not self.relay_internal_secret:
                raise ValueError(
                    f"RELAY_INTERNAL_SECRET is required for RELAY_ENV={self.relay_env.value}"
                )

        if self.fallback_provider and self.fallback_provider == self.primary_provider:
            raise ValueError("FALLBACK_PROVIDER must differ from PRIMARY_PROVIDER")

        if not 0.0 <= self.ack_probability <= 1.0:
            raise ValueError("ACK_PROBABILITY must be between 0 and 1")

        if self.ack_min_delay_s > self.ack_max_delay_s:
            raise ValueError("ACK_MIN_DELAY_S must not exceed ACK_MAX_DELAY_S")

        if self.processing_timeout_s <= self.worst_case_generation_s:
            raise ValueError(
                f"PROCESSING_TIMEOUT_S must exceed {self.worst_case_generation_s}s "
                "(MAX_QUALITY_ATTEMPTS x 2 providers x LLM_TIMEOUT_S)"
            )

        if self.response_marker_ttl_s < self.processing_timeout_s:
            raise ValueError("RESPONSE_MARKER_TTL_S must be at least PROCESSING_TIMEOUT_S")

        return self

    @property
    def requires_internal_header(self) -> bool:
        """Whether requests must include the internal secret header."""
        return self.relay_env in (Environment.STAGING, Environment.PROD)

    @property
    def worst_case_generation_s(self) -> int:
        """Longest a healthy episode can run: every attempt times out on both providers."""
        return max(1, self.max_quality_attempts) * 2 * self.llm_timeout_s

    @property
    def effective_celery_broker_url(self) -> str | None:
        """Return Celery broker URL, falling back to REDIS_URL if not set."""
        return self.celery_broker_url or self.redis_url

    @property
    def effective_celery_result_backend(self) -> str | None:
        """Return Celery result backend URL, falling back to REDIS_URL if not set."""
        return self.celery_result_backend or self.redis_url

    def provider_api_key(self, provider: str) -> str | None:
        """Return the platform API key configured for a provider."""
        return {
            "deepseek": self.deepseek_api_key,
            "together": self.together_api_key,
            "openai": self.openai_api_key,
        }.get(provider)

    def provider_model(self, provider: str) -> str | None:
        """Return the default model name configured for a provider."""
        return {
            "deepseek": self.deepseek_model,
            "together": self.together_model,
            "openai": self.openai_model,
        }.get(provider)

    @property
    def provider_base_urls(self) -> dict[str, str]:
        """Chat-completions base URL per provider."""
        return {
            "deepseek": self.deepseek_base_url,
            "together": self.together_base_url,
            "openai": self.openai_base_url,
        }


@lru_cache
def get_settings() -> Settings:
    """Get cached application settings.

    Returns:
        Settings instance loaded from environment.

    Raises:
        ValidationError: If required settings are missing or invalid.
    """
    return Settings()


def clear_settings_cache() -> None:
    """Clear the settings cache. Useful for testing."""
    get_settings.cache_clear()
