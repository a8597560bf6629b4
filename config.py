"""
Configuration module for the slot reservation service.
Loads environment variables and provides typed configuration.
"""

from pathlib import Path
from typing import Optional

from dotenv import load_dotenv
from pydantic_settings import BaseSettings, SettingsConfigDict

# Load .env file
env_path = Path(__file__).parent / ".env"
load_dotenv(dotenv_path=env_path)


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Supabase
    supabase_url: str = ""
    supabase_key: str = ""  # service_role key, bypasses RLS

    # Stripe
    stripe_secret_key: str = ""
    stripe_webhook_secret: Optional[str] = (
        None  # Required in production for webhook verification
    )
    checkout_success_url: str = "http://localhost:5173/payment-success"
    checkout_cancel_url: str = "http://localhost:5173/checkout"

    # Holds
    default_hold_minutes: int = 15
    max_hold_minutes: int = 30

    # Expiry sweeper
    sweep_interval_seconds: int = 30
    sweep_batch_size: int = 100

    # Storage backend: "supabase" or "memory" (local development only)
    store_backend: str = "supabase"

    # Server
    host: str = "0.0.0.0"
    port: int = 8000
    environment: str = "development"  # development, staging, production
    log_level: str = "INFO"

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    def effective_hold_minutes(self, requested: Optional[int]) -> int:
        """
        Resolve the hold duration for a reservation request.

        Args:
            requested: Minutes asked for by the caller, or None for the default

        Returns:
            Requested minutes capped at max_hold_minutes

        Raises:
            ValueError: If requested is not positive
        """
        if requested is None:
            return min(self.default_hold_minutes, self.max_hold_minutes)
        if requested <= 0:
            raise ValueError(f"Hold duration must be positive, got {requested}")
        return min(requested, self.max_hold_minutes)

    def validate_all_required(self) -> None:
        """
        Validate that all required settings are present.

        Raises:
            ValueError: If required fields are missing or invalid
        """
        required_fields = ["stripe_secret_key"]
        if self.store_backend == "supabase":
            required_fields += ["supabase_url", "supabase_key"]
        if self.environment == "production":
            required_fields.append("stripe_webhook_secret")

        missing = []
        for field in required_fields:
            value = getattr(self, field, None)

            if not value:
                missing.append(field)
                continue

            # Placeholder values copied from .env.example
            if str(value).lower().startswith("your_"):
                missing.append(field)

        if self.store_backend not in ("supabase", "memory"):
            missing.append("store_backend")

        if self.max_hold_minutes <= 0 or self.default_hold_minutes <= 0:
            missing.append("default_hold_minutes/max_hold_minutes")

        if missing:
            raise ValueError(
                f"Missing or invalid required configuration: "
                f"{', '.join(missing)}. "
                f"Please check your .env file and ensure all required "
                f"values are set."
            )


# Global settings instance
settings = Settings()
