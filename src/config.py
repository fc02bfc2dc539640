import logging
from functools import cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Runtime settings, read from BITSYNC_* environment variables or a .env file.
    """
    database_url: str = "sqlite://"

    primary_api_url: str = "https://api.blockchair.com/bitcoin"
    fallback_api_url: str = "https://blockchain.info"
    price_api_url: str = "https://blockchain.info/ticker"
    fiat_currency: str = "USD"
    user_agent: str = "BitSync/1.0"

    primary_timeout: float = 10.0
    fallback_timeout: float = 30.0
    page_size: int = 100

    # Primary provider throttling
    min_request_interval: float = 5.0
    max_attempts: int = 3
    backoff_base_delay: float = 10.0

    price_ttl: float = 60.0

    log_level: str = "INFO"

    model_config = SettingsConfigDict(
        env_prefix="BITSYNC_", env_file=".env", env_file_encoding="utf-8", extra="ignore"
    )


@cache
def get_settings() -> Settings:
    return Settings()


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=level.upper(),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )
