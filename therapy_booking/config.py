# therapy_booking/config.py - Configuration management
from dotenv import load_dotenv

load_dotenv()
import hashlib
from functools import lru_cache
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field, field_validator


class Settings(BaseSettings):
    """Booking core settings with validation and environment variable support (Pydantic V2 Syntax)"""

    model_config = SettingsConfigDict(
        env_file=".env",
        extra="allow",
        case_sensitive=False,
        populate_by_name=True,
    )

    # Application
    app_name: str = "Therapy Session Booking Core"
    app_version: str = "2.0.0"
    environment: str = Field(default="development", alias="ENVIRONMENT")
    debug: bool = Field(default=False, alias="DEBUG")

    # Logging
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")
    json_logs: bool = Field(default=False, alias="JSON_LOGS")

    # Database
    database_url: str = Field(default="sqlite:///./therapy_booking.db", alias="DATABASE_URL")
    database_echo: bool = Field(default=False, alias="DATABASE_ECHO")

    # Scheduling
    session_duration_minutes: int = Field(default=60, alias="SESSION_DURATION_MINUTES")
    default_slot_minutes: int = Field(default=60, alias="DEFAULT_SLOT_MINUTES")
    default_timezone: str = Field(default="Africa/Nairobi", alias="DEFAULT_TIMEZONE")

    # Payments
    default_session_rate: int = Field(default=2500, alias="DEFAULT_SESSION_RATE")
    payment_instructions_template: str = Field(
        default="Send KSh {amount} to M-Pesa: {number} ({name}). Use your name as reference.",
        alias="PAYMENT_INSTRUCTIONS_TEMPLATE",
    )
    mpesa_number: str = Field(default="", alias="MPESA_NUMBER")
    mpesa_name: str = Field(default="Therapist", alias="MPESA_NAME")

    # Booking references
    booking_reference_prefix: str = Field(default="SS", alias="BOOKING_REFERENCE_PREFIX")

    # Audit chain
    audit_hash_algorithm: str = Field(default="sha256", alias="AUDIT_HASH_ALGORITHM")

    # --- Pydantic V2 Validators ---
    @field_validator("database_url")
    @classmethod
    def validate_database_url(cls, v):
        if not v:
            raise ValueError("DATABASE_URL is required")
        if not v.startswith(("postgresql://", "postgresql+psycopg2://", "sqlite://")):
            raise ValueError("DATABASE_URL must be a valid PostgreSQL or SQLite URL")
        return v

    @field_validator("session_duration_minutes", "default_slot_minutes")
    @classmethod
    def validate_positive_minutes(cls, v):
        if v <= 0:
            raise ValueError("Durations must be a positive number of minutes")
        return v

    @field_validator("default_timezone")
    @classmethod
    def validate_timezone(cls, v):
        try:
            ZoneInfo(v)
        except (ZoneInfoNotFoundError, ValueError):
            raise ValueError(f"Unknown timezone: {v}")
        return v

    @field_validator("audit_hash_algorithm")
    @classmethod
    def validate_hash_algorithm(cls, v):
        if v not in hashlib.algorithms_available:
            raise ValueError(f"Unsupported hash algorithm: {v}")
        return v

    @property
    def is_production(self) -> bool:
        return self.environment.lower() == "production"

    @property
    def is_development(self) -> bool:
        return self.environment.lower() == "development"


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance"""
    return Settings()


# Environment-specific configurations
class DevelopmentConfig(Settings):
    """Development environment configuration"""
    debug: bool = True
    environment: str = "development"


class ProductionConfig(Settings):
    """Production environment configuration"""
    debug: bool = False
    environment: str = "production"
    json_logs: bool = True


class TestingConfig(Settings):
    """Testing environment configuration"""
    debug: bool = True
    environment: str = "testing"
    database_url: str = "sqlite://"


def get_config_by_env(env: str) -> Settings:
    """Get configuration by environment name"""
    configs = {
        "development": DevelopmentConfig,
        "production": ProductionConfig,
        "testing": TestingConfig
    }

    config_class = configs.get(env.lower(), Settings)
    return config_class()
