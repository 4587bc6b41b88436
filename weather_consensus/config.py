"""Service configuration pulled from environment variables via pydantic."""
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from utils.logging_utils import get_tagged_logger
logger = get_tagged_logger(__name__, tag="config")

CACHE_BACKENDS = ("memory", "file", "redis")


class Settings(BaseSettings):
    """Environment-driven configuration for the weather consensus service."""
    model_config = SettingsConfigDict(env_prefix="CONSENSUS_", extra="ignore")

    # Fetch gating
    consistency_delay_minutes: float = 10
    metadata_memory_ttl_minutes: float = 10
    metadata_fallback_ttl_hours: float = 6
    max_cached_locations: int = 6
    metadata_min_interval_seconds: float = 60
    pending_jitter_seconds: float = 60

    # Freshness metadata (never affects agreement)
    freshness_stale_hours: float = 12
    freshness_spread_threshold_hours: float = 6
    freshness_max_penalty: float = 20

    # Upstream calls
    forecast_days: int = 7
    forecast_timeout_seconds: float = 10
    metadata_timeout_seconds: float = 4
    observations_timeout_seconds: float = 5
    max_fetch_workers: int = 4

    # Persistence
    cache_backend: str = "memory"  # options: memory, file, redis
    cache_dir: str = ".consensus-cache"
    cache_redis_url: str | None = None

    meteostat_api_key: str | None = None
    ollama_base_url: str = "http://localhost:11434"
    ollama_model: str = "phi4-mini"
    ollama_options: dict = Field(
        default_factory=lambda: {"temperature": 0.2, "top_p": 0.9, "repeat_penalty": 1.1}
    )
    debug_gating: bool = False

    @field_validator("ollama_base_url", mode="after")
    @classmethod
    def strip_trailing_slash(cls, v: str) -> str:
        """Normalize base URLs to avoid double slashes."""
        return str(v).rstrip("/")

    @field_validator("cache_backend", mode="after")
    @classmethod
    def normalize_backend(cls, v: str) -> str:
        """Lower-case and validate the cache backend name."""
        backend = str(v).strip().lower()
        if backend not in CACHE_BACKENDS:
            raise ValueError(f"cache_backend must be one of {', '.join(CACHE_BACKENDS)}")
        return backend


settings = Settings()


if __name__ == "__main__":
    logger.logger.setLevel("DEBUG")
    logger.debug(f"Loaded settings: {settings.model_dump_json(indent=4)}")
