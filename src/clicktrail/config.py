"""Runtime configuration via Pydantic Settings.

Values are read from ``CLICKTRAIL_*`` environment variables or a local
``.env`` file. Protocol constants (parameter names, cookie name, custom
field count) are not configurable and live next to the code that uses them.
"""

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables / .env file."""

    # Affiliate network endpoint
    postback_domain: str = ""
    postback_ssl: bool = True
    postback_timeout: float | None = None  # None: wait for the caller to cancel

    # Capture
    error_queue_size: int = 100

    log_level: str = "INFO"

    model_config = SettingsConfigDict(
        env_prefix="CLICKTRAIL_", env_file=".env", env_file_encoding="utf-8"
    )


settings = Settings()
