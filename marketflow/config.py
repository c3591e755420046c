"""Configuration settings for the marketflow workflow core."""

from functools import lru_cache
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class WorkflowSettings(BaseSettings):
    """Workflow settings loaded from the environment (``MARKETFLOW_*``)."""

    # Authorization windows
    message_delete_window_hours: int = Field(24, gt=0)
    review_edit_window_hours: int = Field(24, gt=0)
    refund_window_days: int = Field(7, ge=0)  # Dispute window after release

    # Reviews
    min_rating: int = 1
    max_rating: int = 5
    review_comment_min_length: int = 10
    review_comment_max_length: int = 1000

    # Messages
    message_max_length: int = 2000

    # Payments
    platform_fee_percent: float = Field(5.0, ge=0, le=100)

    # Notifications
    notification_workers: int = Field(4, gt=0)

    # Storage
    db_path: Optional[str] = None  # SQLite file; in-memory store when unset

    log_level: str = "INFO"

    model_config = SettingsConfigDict(
        env_prefix="MARKETFLOW_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )


@lru_cache
def get_settings() -> WorkflowSettings:
    """Get cached settings instance."""
    return WorkflowSettings()
