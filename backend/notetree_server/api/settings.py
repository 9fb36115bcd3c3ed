"""
HTTP settings for the Notetree API.

Uses pydantic-settings for environment variable loading.
"""

from pydantic import Field
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """HTTP configuration loaded from environment."""

    host: str = Field(default="0.0.0.0", description="API bind host")
    port: int = Field(default=8080, description="API bind port")

    # CORS settings
    cors_origins: list[str] = Field(
        default=["http://localhost:3000", "http://localhost:5173"],
        description="Allowed CORS origins",
    )

    # Seconds suggested to clients after CONCURRENCY_EXHAUSTED
    retry_after_seconds: int = Field(default=1, description="Retry-After for retryable errors")

    model_config = {"env_prefix": "NOTETREE_HTTP_"}
