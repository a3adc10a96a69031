"""Application settings."""

from functools import lru_cache
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

PROJECT_ROOT = Path(__file__).resolve().parents[3]


class Settings(BaseSettings):
    """Runtime settings loaded from environment variables."""

    app_name: str = "fusion-api"
    host: str = "127.0.0.1"
    port: int = 8787
    gemini_api_key: str = ""
    gemini_model: str = "gemini-3-pro-image-preview"
    gemini_api_base_url: str = "https://generativelanguage.googleapis.com/v1beta"
    # None keeps the provider call unbounded.
    provider_timeout_s: float | None = Field(default=None, gt=0)
    output_dir: Path = Path("outputs")
    task_retention_s: float = Field(default=60 * 60, gt=0)
    sse_keepalive_s: float = Field(default=15.0, gt=0)
    sse_retry_ms: int = Field(default=2500, ge=0)
    max_body_bytes: int = Field(default=40 * 1024 * 1024, gt=0)

    model_config = SettingsConfigDict(
        extra="ignore",
        env_file=(PROJECT_ROOT / ".env", PROJECT_ROOT / ".env.local"),
        env_file_encoding="utf-8",
    )

    def resolved_output_dir(self) -> Path:
        return self.output_dir.expanduser().resolve()


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
