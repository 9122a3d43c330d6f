"""
Settings for the triage service, read from the environment and `.env`.

Every tunable the pipeline uses lives here so deployments only differ by
environment variables (e.g. `MODEL_PROVIDER=groq`, `CACHE_BACKEND=redis`).
"""
from typing import Literal, Optional

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

Environment = Literal["development", "staging", "production"]
Provider = Literal["gemini", "groq"]


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    environment: Environment = "development"

    # --- HTTP ---
    api_host: str = "0.0.0.0"
    api_port: int = 8000
    api_key_header: str = "X-API-Key"
    api_keys: list[str] = Field(default_factory=list, description="Accepted API keys; empty disables auth in development")
    rate_limit_enabled: bool = True
    rate_limit_requests: int = Field(default=10, ge=1, description="Requests per minute per client on LLM endpoints")
    max_email_length: int = Field(default=20000, ge=100, description="Longest accepted email body, in characters")

    # --- Models ---
    model_provider: Provider = "gemini"
    google_api_key: Optional[str] = None
    groq_api_key: Optional[str] = None
    gemini_model: str = "gemini-2.5-flash"
    groq_model: str = "llama-3.3-70b-versatile"
    embedding_model: str = "models/text-embedding-004"
    model_max_retries: int = Field(default=0, ge=0, description="0 fails fast into the stage fallback")
    model_timeout: Optional[float] = Field(default=None, gt=0, description="Seconds; None keeps the client default")

    # --- Pipeline ---
    prefilter_enabled: bool = True
    recursion_limit: int = Field(default=25, ge=10, le=100)
    max_summary_length: int = Field(default=200, ge=50, description="Character budget for the free-text summary")
    rag_summary_enabled: bool = True
    vector_index_name: str = "inbox-triage"
    context_max_documents: int = Field(default=15, ge=1)
    context_min_score: float = Field(default=0.6, ge=0.0, le=1.0)

    # --- Tone learning ---
    tone_learning_enabled: bool = True
    tone_adaptation_strength: float = Field(default=0.7, ge=0.0, le=1.0)
    tone_min_samples: int = Field(default=3, ge=1)
    tone_max_samples: int = Field(default=50, ge=1)

    # --- Dedup cache ---
    cache_backend: Literal["memory", "redis"] = "memory"
    dedup_ttl_seconds: int = Field(default=3600, ge=1)
    cache_cleanup_interval: int = Field(default=300, ge=1, description="Seconds between in-memory expiry sweeps")
    cache_key_prefix: str = "triage:processed:"

    # --- Redis ---
    redis_url: str = "redis://localhost:6379/0"
    redis_max_connections: int = Field(default=10, ge=1)
    event_relay_enabled: bool = False
    event_channel: str = "triage-events"

    # --- Storage ---
    database_path: str = "triage_sessions.db"
    snooze_retention_days: int = Field(default=30, ge=1)

    # --- Observability ---
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "INFO"
    log_format: Literal["json", "text"] = "json"
    metrics_enabled: bool = True

    @model_validator(mode="after")
    def check_tone_sample_bounds(self) -> "Settings":
        if self.tone_min_samples > self.tone_max_samples:
            raise ValueError("tone_min_samples must not exceed tone_max_samples")
        return self

    @property
    def is_production(self) -> bool:
        return self.environment == "production"

    @property
    def is_development(self) -> bool:
        return self.environment == "development"

    @property
    def provider_api_key(self) -> Optional[str]:
        """Key for the configured chat model provider."""
        return self.groq_api_key if self.model_provider == "groq" else self.google_api_key


settings = Settings()
