"""Backend configuration settings."""

from pydantic_settings import BaseSettings
from pydantic import Field
from typing import List, Optional


class BackendSettings(BaseSettings):
    """Mail sync service configuration."""

    # API Settings
    api_port: int = Field(default=8000, description="API server port")
    debug: bool = Field(default=False, description="Debug mode")

    # CORS Settings
    cors_origins: List[str] = Field(
        default=["http://localhost:3000", "http://localhost:5173", "http://127.0.0.1:3000"],
        description="Allowed CORS origins"
    )

    # MongoDB Settings
    mongodb_uri: str = Field(
        default="mongodb://localhost:27017/?directConnection=true",
        description="MongoDB connection string"
    )
    mongodb_database: str = Field(default="mail_cache", description="Database name")

    # LLM Settings (label classifier)
    llm_provider: str = Field(default="openai")
    llm_api_key: str = Field(default="")
    llm_model: str = Field(default="gpt-4o-mini")
    llm_base_url: str = Field(default="")
    classifier_temperature: float = Field(default=0.7, description="Sampling temperature for label generation")
    classifier_max_attempts: int = Field(default=5, description="Attempts before a malformed label response is fatal")

    # Sync windows
    initial_sync_lookback_days: int = Field(default=30, description="Lookback for a cold-start sync")
    incremental_window_hours: int = Field(default=24, description="Window fetched by an incremental sync without a cursor")
    first_page_size: int = Field(default=50, description="Max threads fetched by a cursorless incremental sync")

    # Provider batching
    provider_batch_size: int = Field(default=5, description="Concurrent provider calls per batch")
    provider_batch_delay_seconds: float = Field(default=0.2, description="Pause between provider batches")
    http_timeout_seconds: float = Field(default=30.0, description="Per-request timeout for provider APIs")

    # Provider endpoints
    gmail_api_base_url: str = Field(default="https://gmail.googleapis.com/gmail/v1/users/me")
    graph_api_base_url: str = Field(default="https://graph.microsoft.com/v1.0")

    # Label write-back
    provider_label_prefix: str = Field(default="ZEROHANDS_", description="Prefix for labels written to providers")
    label_write_back: bool = Field(default=False, description="Write AI labels back to the provider after a sync")

    # Push notifications
    gmail_pubsub_topic: Optional[str] = Field(
        default=None,
        description="Pub/Sub topic for Gmail watch, e.g. projects/<id>/topics/gmail-notifications"
    )
    outlook_notification_url: Optional[str] = Field(default=None, description="Public URL for Graph subscriptions")
    outlook_subscription_minutes: int = Field(default=4230, description="Graph subscription lifetime")
    webhook_secret: Optional[str] = Field(default=None, description="HMAC secret for incoming webhooks")

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = False
        extra = "ignore"


def get_settings() -> BackendSettings:
    """Get backend settings from the environment and .env file."""
    return BackendSettings()


settings = get_settings()
