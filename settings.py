# settings.py
from pathlib import Path
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field


def _default_credentials_path() -> Path:
    return Path.home() / ".tidio-mcp" / "credentials.json"


class Settings(BaseSettings):
    # Tidio API
    TIDIO_API_URL: str = Field("https://api-v2.tidio.co")
    TIDIO_OAUTH_CLIENT_ID: str = Field("8ea883be-28c3-4bfd-9fe2-4091eb38fe08", description="Public OAuth client id of the Tidio platform plugin")
    TIDIO_PANEL_URL: str = Field("https://www.tidio.com/panel", description="Hosted Tidio panel; the login page lives under /register-platforms")
    TIDIO_WIDGET_URL: str = Field("//code.tidio.co", description="Origin the widget script is loaded from")
    TIDIO_HTTP_TIMEOUT: float = Field(30.0)

    # Local callback listener
    TIDIO_CALLBACK_HOST: str = Field("127.0.0.1")
    TIDIO_CALLBACK_PORT: int = Field(38470, description="First port tried; the next free one is used if taken")
    TIDIO_CALLBACK_TIMEOUT: float = Field(120.0, description="Seconds to wait for the browser redirect")
    TIDIO_PUBLIC_CALLBACK_URL: Optional[str] = Field(None, description="Publicly reachable base URL (e.g. a tunnel) used instead of localhost")

    # Storage
    TIDIO_CREDENTIALS_PATH: Path = Field(default_factory=_default_credentials_path)

    TIDIO_LOG_LEVEL: str = Field("INFO")

    # pydantic-settings v2 style config
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

settings = Settings()
