"""Configuration management using Pydantic Settings."""

from __future__ import annotations

from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from ``ATLAS_*`` environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="ATLAS_",
        env_file=".env",
        extra="ignore",
    )

    # Logging
    log_level: str = "INFO"
    log_format: str = "plain"  # "plain" | "json"

    # Event bus
    bus_max_workers: int = 8
    bus_max_pending: int = 1000

    # Delivery channels
    delivery_max_workers: int = 4

    # Lifecycle
    schedule_min_lead_minutes: int = 1

    # Load a small sample community into the store on startup
    seed_demo_data: bool = False

    # Web push (VAPID)
    web_push_public_key: str = ""
    web_push_private_key: str = ""


@lru_cache
def get_settings() -> Settings:
    return Settings()
