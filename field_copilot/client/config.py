"""
Configuration settings for the copilot client
"""
from typing import Optional
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field


class ClientSettings(BaseSettings):
    """Client settings read from COPILOT_* environment variables"""

    model_config = SettingsConfigDict(
        env_prefix="COPILOT_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    # Without an API URL the client answers from the offline mock
    API_URL: Optional[str] = Field(default=None)

    # Development identity, sent only when no bearer token is available
    TENANT_ID: Optional[str] = Field(default=None)
    USER_ID: Optional[str] = Field(default=None)

    # Seconds; applies to connect, read and write
    TIMEOUT: float = Field(default=60.0)
