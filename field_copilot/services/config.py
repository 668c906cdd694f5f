"""
Configuration settings for the Field Copilot API
"""
from typing import List, Optional
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field, field_validator
import json

from field_copilot.models.chat import (
    CopilotConfig,
    ModelSettings,
    PromptSettings,
    RetrievalSettings,
)


class Settings(BaseSettings):
    """Application settings with environment variable support"""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    # API Configuration
    API_VERSION: str = "0.1.0"
    ENVIRONMENT: str = Field(default="development")
    DEBUG: bool = Field(default=False)
    LOG_LEVEL: str = Field(default="INFO")
    LOG_FORMAT: str = Field(default="json")  # "json" or "console"

    # CORS Settings
    CORS_ORIGINS: List[str] = Field(
        default=[
            "http://localhost:3000",
            "http://localhost:8081",
            "http://localhost:19006",
        ]
    )

    @field_validator("CORS_ORIGINS", mode="before")
    @classmethod
    def parse_cors_origins(cls, v):
        """Parse CORS_ORIGINS from JSON string if needed"""
        if isinstance(v, str):
            try:
                return json.loads(v)
            except json.JSONDecodeError:
                # If not JSON, treat as comma-separated list
                return [origin.strip() for origin in v.split(",") if origin.strip()]
        return v

    # Model backend (OpenAI-compatible chat completions)
    OPENAI_API_KEY: Optional[str] = Field(default=None)
    LLM_BASE_URL: str = Field(default="https://api.openai.com")
    MODEL_NAME: str = Field(default="gpt-4o")
    TEMPERATURE: float = Field(default=0.2)
    TOP_P: Optional[float] = Field(default=None)
    MAX_TOKENS: Optional[int] = Field(default=None)
    PROMPT_VERSION: str = Field(default="copilot.v1")

    # Retrieval Configuration (consumed by the job context source)
    RETRIEVAL_MODE: str = Field(default="vector")
    RETRIEVAL_TOP_K: int = Field(default=6)
    FALLBACK_TOP_K: int = Field(default=10)
    HISTORY_LIMIT: int = Field(default=25)
    EVIDENCE_LIMIT: Optional[int] = Field(default=None)

    # Timeouts (seconds)
    REQUEST_TIMEOUT: float = Field(default=30.0)
    STREAM_TIMEOUT: float = Field(default=60.0)

    # Redis Configuration; conversations are kept in memory when REDIS_HOST is empty
    REDIS_HOST: str = Field(default="")
    REDIS_PORT: int = Field(default=6379)
    REDIS_PASSWORD: Optional[str] = Field(default=None)
    REDIS_DB: int = Field(default=0)

    # Job context source
    JOB_CONTEXT_PATH: Optional[str] = Field(default=None)

    # Identity used when a request carries no tenant/user headers
    DEFAULT_TENANT_ID: str = Field(default="tenant_demo")
    DEFAULT_USER_ID: str = Field(default="user_demo")

    # OpenTelemetry Configuration
    OTEL_ENABLED: bool = Field(default=False)
    OTEL_ENDPOINT: str = Field(default="http://localhost:4317")
    OTEL_SERVICE_NAME: str = Field(default="field-copilot-api")

    # Feature Flags
    ENABLE_METRICS: bool = Field(default=True)

    def get_redis_url(self) -> str:
        """Get Redis connection URL"""
        if self.REDIS_PASSWORD:
            return f"redis://:{self.REDIS_PASSWORD}@{self.REDIS_HOST}:{self.REDIS_PORT}/{self.REDIS_DB}"
        return f"redis://{self.REDIS_HOST}:{self.REDIS_PORT}/{self.REDIS_DB}"

    def copilot_config(self) -> CopilotConfig:
        """Build the per-request copilot configuration"""
        mode = self.RETRIEVAL_MODE if self.RETRIEVAL_MODE in ("vector", "keyword", "hybrid") else "vector"
        return CopilotConfig(
            model=ModelSettings(
                name=self.MODEL_NAME,
                temperature=self.TEMPERATURE,
                top_p=self.TOP_P,
                max_tokens=self.MAX_TOKENS,
            ),
            retrieval=RetrievalSettings(
                mode=mode,
                top_k=self.RETRIEVAL_TOP_K,
                fallback_top_k=self.FALLBACK_TOP_K,
                history_limit=self.HISTORY_LIMIT,
            ),
            prompt=PromptSettings(version=self.PROMPT_VERSION),
        )
