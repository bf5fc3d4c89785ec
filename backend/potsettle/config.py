"""Application configuration using Pydantic BaseSettings."""

import logging
import os
from decimal import Decimal
from typing import Optional

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("potsettle.config")

# Development-only default for PROOF_SIGNING_SECRET
_DEV_PROOF_SECRET = "dev-proof-signing-key-change-in-production-32-chars"


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore"
    )

    # MongoDB Configuration
    MONGO_URL: str = "mongodb://localhost:27017"
    DATABASE_NAME: str = "potsettle"

    # Comma-separated list of allowed origins, or "*" for all origins
    CORS_ORIGINS: str = ""

    # Application Metadata
    APP_VERSION: str = "1.0.0"
    LOG_LEVEL: str = "INFO"

    # Transaction limits (major currency units)
    MIN_BUY_IN: Decimal = Decimal("5.00")
    MAX_BUY_IN: Decimal = Decimal("500.00")
    MIN_CASH_OUT: Decimal = Decimal("0.01")
    MAX_CASH_OUT: Decimal = Decimal("1000.00")

    # Seconds after recording during which a transaction can be undone
    UNDO_WINDOW_SECONDS: int = 30

    # Session roster limits
    MIN_PLAYERS_PER_SESSION: int = 2
    MAX_PLAYERS_PER_SESSION: int = 8

    # Settlement
    SETTLEMENT_TOLERANCE: Decimal = Decimal("0.01")
    DECIMAL_PRECISION: int = 2

    # Proof signing (HS256)
    PROOF_SIGNING_SECRET: Optional[str] = None

    @field_validator("PROOF_SIGNING_SECRET", mode="before")
    @classmethod
    def validate_proof_secret(cls, v):
        """Validate PROOF_SIGNING_SECRET and provide development default with warning."""
        if v is None or v == "":
            is_production = os.getenv("RAILWAY_ENVIRONMENT") == "production"
            if is_production:
                raise ValueError(
                    "PROOF_SIGNING_SECRET must be set in production. "
                    "Settlement proofs cannot be signed without it."
                )
            logger.warning(
                "PROOF_SIGNING_SECRET not set! Using development default. "
                "Proof signatures are NOT trustworthy in this mode."
            )
            return _DEV_PROOF_SECRET
        return v

    @field_validator("MAX_BUY_IN")
    @classmethod
    def validate_buy_in_range(cls, v, info):
        minimum = info.data.get("MIN_BUY_IN")
        if minimum is not None and v < minimum:
            raise ValueError("MAX_BUY_IN must be >= MIN_BUY_IN")
        return v

    @field_validator("MAX_CASH_OUT")
    @classmethod
    def validate_cash_out_range(cls, v, info):
        minimum = info.data.get("MIN_CASH_OUT")
        if minimum is not None and v < minimum:
            raise ValueError("MAX_CASH_OUT must be >= MIN_CASH_OUT")
        return v

    @property
    def cors_origins(self) -> list[str]:
        """Return list of allowed CORS origins.

        Empty CORS_ORIGINS means the local development origins outside
        production and no origins in production.
        """
        if self.CORS_ORIGINS:
            if self.CORS_ORIGINS == "*":
                return ["*"]
            return [origin.strip() for origin in self.CORS_ORIGINS.split(",")]

        is_production = os.getenv("RAILWAY_ENVIRONMENT") == "production"
        if is_production:
            logger.warning(
                "CORS_ORIGINS not configured in production. "
                "Set CORS_ORIGINS environment variable."
            )
            return []

        return [
            "http://localhost:3000",
            "http://localhost:5173",
            "http://127.0.0.1:3000",
            "http://127.0.0.1:5173",
        ]


# Global settings instance
settings = Settings()
