from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    app_name: str = "filerelay"
    app_env: str = "dev"
    public_base_url: str = "http://localhost:3000"
    host: str = "0.0.0.0"
    port: int = 3000
    route_prefix: str = ""
    max_file_size_bytes: int = 4 * 1024 * 1024 * 1024
    telegram_bot_token: str = ""
    telegram_api_base: str = "https://api.telegram.org"
    chunk_size_bytes: int = 64 * 1024
    resolve_timeout_seconds: float = 20.0
    # None keeps the upstream read unbounded
    stream_idle_timeout_seconds: float | None = None
    record_ttl_seconds: int | None = None
    log_level: str = "INFO"

    model_config = SettingsConfigDict(env_file=".env", env_prefix="RELAY_")


@lru_cache
def get_settings() -> Settings:
    return Settings()
