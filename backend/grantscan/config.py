from pydantic_settings import BaseSettings
from functools import lru_cache
from typing import Any, List


class Settings(BaseSettings):
    # Shared-secret header (x-api-token); empty disables the check
    api_access_token: str = ""

    # Reasoning backend
    gemini_api_key: str = ""
    gemini_model: str = "gemini-2.0-flash"

    # Source connectors
    odcloud_api_key: str = ""
    odcloud_endpoint_path: str = "/15049270/v1/uddi:6b5d729e-28f8-4404-afae-c3f46842ff11"
    data_go_kr_api_key: str = ""
    dart_api_key: str = ""

    # Redis listing cache (empty url disables it)
    redis_url: str = ""
    listing_cache_ttl_seconds: int = 3600

    # Per-call timeouts
    connector_timeout_seconds: float = 15.0
    reasoning_timeout_seconds: float = 60.0

    # Retry policy shared by connectors and the scoring engine
    retry_max_attempts: int = 3
    retry_backoff_seconds: float = 1.0
    retry_backoff_max_seconds: float = 16.0

    # Scoring
    scoring_concurrency: int = 3
    region_mismatch_penalty: int = 30

    # Detail-page enrichment between aggregation and scoring
    detail_enrichment_enabled: bool = True
    detail_concurrency: int = 3
    detail_cache_ttl_seconds: int = 86400

    # Registry lookups are sequential per year
    dart_request_delay_seconds: float = 0.2

    # App
    cors_origins: str = "http://localhost:5173,http://localhost:3000"
    log_level: str = "INFO"
    debug: bool = False

    def cors_origin_list(self) -> List[str]:
        return [token.strip() for token in str(self.cors_origins or "").split(",") if token.strip()]

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"


class SettingsProvider:
    """Holds the active Settings; callers read ``current()`` at call time.

    Updates replace the snapshot atomically, so a call already in flight keeps
    the values it started with while the next call sees the new ones.
    """

    def __init__(self, settings: Settings | None = None) -> None:
        self._settings = settings if settings is not None else Settings()

    def current(self) -> Settings:
        return self._settings

    def update(self, **changes: Any) -> Settings:
        self._settings = self._settings.model_copy(update=changes)
        return self._settings

    def reload(self) -> Settings:
        self._settings = Settings()
        return self._settings


@lru_cache
def get_settings_provider() -> SettingsProvider:
    return SettingsProvider()


def get_settings() -> Settings:
    return get_settings_provider().current()
