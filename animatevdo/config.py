"""Configuration management for the pipeline core.

Configuration is read from the environment exactly once, at process start,
into an immutable ``Settings`` object. Every component receives the
``Settings`` instance through its constructor; nothing below this module
reads ``os.environ`` directly.

Environment Variables:
    DATABASE_URL: PostgreSQL connection URL (required outside tests)
    ANTHROPIC_API_KEY / OPENAI_API_KEY: LLM providers (research, script)
    TAVILY_API_KEY / SERPER_API_KEY: web search providers (research)
    ELEVENLABS_API_KEY: text-to-speech provider (audio)
    SUPABASE_URL / SUPABASE_SERVICE_ROLE_KEY / STORAGE_BUCKET: object storage
    RENDER_SERVICE_URL: external media-assembly process (video)
    USE_MOCK_DATA: "true" to run every stage against deterministic mocks
    AUTO_ADVANCE_STAGES: "true" to chain the next stage after a success
    DISCORD_WEBHOOK_URL: optional alert sink for exhausted recovery entries

Usage:
    from animatevdo.config import load_settings

    settings = load_settings()
    orchestrator = PipelineOrchestrator.from_settings(settings, session_factory)
"""

import os
from dataclasses import dataclass
from functools import lru_cache

import structlog
from dotenv import load_dotenv

from animatevdo.exceptions import ConfigurationError

log = structlog.get_logger(__name__)

_TRUE_VALUES = {"1", "true", "yes", "on"}


@dataclass(frozen=True)
class Settings:
    """Immutable runtime configuration shared by all components."""

    database_url: str = "sqlite+aiosqlite:///:memory:"

    anthropic_api_key: str | None = None
    openai_api_key: str | None = None
    tavily_api_key: str | None = None
    serper_api_key: str | None = None
    elevenlabs_api_key: str | None = None

    supabase_url: str | None = None
    supabase_service_key: str | None = None
    storage_bucket: str = "project-assets"
    render_service_url: str | None = None

    use_mock_data: bool = False
    auto_advance: bool = False

    # In-process retry (per external call)
    retry_max_attempts: int = 3
    retry_initial_delay: float = 1.0
    retry_max_delay: float = 30.0
    retry_backoff_factor: float = 2.0

    # Recovery queue (per failed stage invocation)
    recovery_delay_seconds: int = 300
    recovery_max_retries: int = 3
    recovery_poll_interval_seconds: int = 30
    recovery_batch_size: int = 10
    # Processing entries claimed longer ago than this are claimed again
    recovery_claim_timeout_seconds: int = 900

    # Fan-out bounds
    max_concurrent_images: int = 5
    max_concurrent_tts: int = 3

    http_timeout_seconds: float = 60.0
    discord_webhook_url: str | None = None


def normalize_database_url(url: str) -> str:
    """Ensure a PostgreSQL URL uses the asyncpg driver.

    Hosting platforms hand out ``postgresql://`` URLs but async SQLAlchemy
    needs ``postgresql+asyncpg://``.
    """
    if url.startswith("postgresql://"):
        return url.replace("postgresql://", "postgresql+asyncpg://", 1)
    if url.startswith("postgres://"):
        return url.replace("postgres://", "postgresql+asyncpg://", 1)
    return url


def _get_bool(name: str, default: bool = False) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in _TRUE_VALUES


def _get_number(name: str, default: float, cast: type = int) -> float:
    value = os.getenv(name)
    if value is None or value == "":
        return default
    try:
        number = cast(value)
    except ValueError as e:
        raise ConfigurationError(f"{name} must be a {cast.__name__}, got {value!r}") from e
    if number < 0:
        raise ConfigurationError(f"{name} must be non-negative, got {value!r}")
    return number


@lru_cache
def load_settings() -> Settings:
    """Build Settings from the environment (and a ``.env`` file if present).

    Returns:
        Cached Settings instance for the life of the process.

    Raises:
        ConfigurationError: If DATABASE_URL is missing or a numeric
            variable cannot be parsed.
    """
    load_dotenv()

    database_url = os.getenv("DATABASE_URL")
    if not database_url:
        raise ConfigurationError("DATABASE_URL environment variable is required")

    retry_max_attempts = int(_get_number("RETRY_MAX_ATTEMPTS", 3))
    if retry_max_attempts < 1:
        raise ConfigurationError("RETRY_MAX_ATTEMPTS must be at least 1")

    settings = Settings(
        database_url=normalize_database_url(database_url),
        anthropic_api_key=os.getenv("ANTHROPIC_API_KEY"),
        openai_api_key=os.getenv("OPENAI_API_KEY"),
        tavily_api_key=os.getenv("TAVILY_API_KEY"),
        serper_api_key=os.getenv("SERPER_API_KEY"),
        elevenlabs_api_key=os.getenv("ELEVENLABS_API_KEY"),
        supabase_url=os.getenv("SUPABASE_URL"),
        supabase_service_key=os.getenv("SUPABASE_SERVICE_ROLE_KEY"),
        storage_bucket=os.getenv("STORAGE_BUCKET", "project-assets"),
        render_service_url=os.getenv("RENDER_SERVICE_URL"),
        use_mock_data=_get_bool("USE_MOCK_DATA"),
        auto_advance=_get_bool("AUTO_ADVANCE_STAGES"),
        retry_max_attempts=retry_max_attempts,
        retry_initial_delay=_get_number("RETRY_INITIAL_DELAY_SECONDS", 1.0, float),
        retry_max_delay=_get_number("RETRY_MAX_DELAY_SECONDS", 30.0, float),
        retry_backoff_factor=_get_number("RETRY_BACKOFF_FACTOR", 2.0, float),
        recovery_delay_seconds=int(_get_number("RECOVERY_DELAY_SECONDS", 300)),
        recovery_max_retries=int(_get_number("RECOVERY_MAX_RETRIES", 3)),
        recovery_poll_interval_seconds=int(_get_number("RECOVERY_POLL_INTERVAL_SECONDS", 30)),
        recovery_batch_size=int(_get_number("RECOVERY_BATCH_SIZE", 10)),
        recovery_claim_timeout_seconds=int(_get_number("RECOVERY_CLAIM_TIMEOUT_SECONDS", 900)),
        max_concurrent_images=int(_get_number("MAX_CONCURRENT_IMAGES", 5)) or 1,
        max_concurrent_tts=int(_get_number("MAX_CONCURRENT_TTS", 3)) or 1,
        http_timeout_seconds=_get_number("HTTP_TIMEOUT_SECONDS", 60.0, float),
        discord_webhook_url=os.getenv("DISCORD_WEBHOOK_URL"),
    )

    log.info(
        "settings_loaded",
        use_mock_data=settings.use_mock_data,
        auto_advance=settings.auto_advance,
        storage_configured=bool(settings.supabase_url and settings.supabase_service_key),
    )
    return settings
