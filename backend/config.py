"""
Configuration management for the Order Lifecycle service.

Loads settings from .env via pydantic-settings.

Notes:
    - validate_production_settings() enforces strict CORS in production
    - Readiness timings default to the one-hour lead used by dispatch
"""
import logging

from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import List

logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # ── Database ────────────────────────────────────────────────────
    database_url: str = "sqlite:///./data/order_lifecycle.db"

    # ── Money ───────────────────────────────────────────────────────
    default_currency: str = "SAR"

    # ── Readiness protocol ──────────────────────────────────────────
    readiness_lead_minutes: int = 60          # prompt this long before booking
    readiness_due_soon_minutes: int = 60      # urgency threshold for display
    readiness_reminder_limit: int = 3         # reminders before no_response
    readiness_reminder_interval_minutes: int = 5
    movement_reminder_limit: int = 3          # "start moving" nudges after ready
    movement_reminder_interval_minutes: int = 5
    readiness_poll_seconds: int = 60
    readiness_scheduler_enabled: bool = True

    # ── Notifications (WhatsApp gateway) ────────────────────────────
    whatsapp_webhook_url: str = ""
    whatsapp_api_token: str = ""
    notification_timeout_seconds: float = 10.0
    admin_alert_number: str = ""

    # ── Application ─────────────────────────────────────────────────
    environment: str = "development"

    # ── CORS ────────────────────────────────────────────────────────
    cors_origins: str = "http://localhost:3000,http://127.0.0.1:3000,http://localhost:5173,http://127.0.0.1:5173"

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",  # allow unknown .env keys without crashing
    )

    @property
    def cors_origins_list(self) -> List[str]:
        """Parse CORS origins from comma-separated string."""
        return [origin.strip() for origin in self.cors_origins.split(",")]

    def validate_production_settings(self):
        """
        Validate settings for production safety.

        Called during app startup.
        """
        if self.environment == "production":
            if "*" in self.cors_origins:
                raise ValueError(
                    "CORS_ORIGINS must not contain '*' in production. "
                    "Set explicit allowed origins."
                )
            if not self.whatsapp_webhook_url:
                raise ValueError(
                    "WHATSAPP_WEBHOOK_URL must be set in production. "
                    "Customer payment receipts are delivered through it."
                )
            logger.info("✅ Production settings validated")
        else:
            warnings = []
            if not self.whatsapp_webhook_url:
                warnings.append("WHATSAPP_WEBHOOK_URL not set (notifications are logged only)")
            if "*" in self.cors_origins:
                warnings.append("CORS_ORIGINS contains '*' (open access)")
            for w in warnings:
                logger.warning(f"⚠️  {w}")


# Global settings instance
settings = Settings()
