"""
Centralized configuration management.
All environment variables and settings are defined here.
"""
from typing import Optional

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Application
    app_name: str = Field(default="SMS Expense Ingestion Service", alias="APP_NAME")
    host: str = Field(default="0.0.0.0", alias="HOST")
    port: int = Field(default=8000, alias="PORT")
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")
    auth_identity_header: str = Field(default="X-Authenticated-Uid", alias="AUTH_IDENTITY_HEADER")

    # Classifier (OpenAI-compatible chat completions)
    llm_api_key: str = Field(..., alias="OPENROUTER_API_KEY")
    llm_api_url: str = Field(
        default="https://openrouter.ai/api/v1/chat/completions", alias="LLM_API_URL"
    )
    llm_model: str = Field(default="deepseek/deepseek-v3.2-exp", alias="LLM_MODEL")
    llm_timeout: int = Field(default=30, alias="LLM_TIMEOUT")
    llm_max_attempts: int = Field(default=3, alias="LLM_MAX_ATTEMPTS")
    llm_max_parse_attempts: int = Field(default=2, alias="LLM_MAX_PARSE_ATTEMPTS")
    llm_verify_ssl: bool = Field(default=True, alias="LLM_VERIFY_SSL")
    llm_app_referer: str = Field(default="https://sms-expense-tracker.local", alias="LLM_APP_REFERER")
    llm_app_title: str = Field(default="SMS Expense Tracker", alias="LLM_APP_TITLE")

    # Storage
    database_path: str = Field(default="expenses.db", alias="DATABASE_PATH")
    database_timeout: float = Field(default=10.0, alias="DATABASE_TIMEOUT")

    # Validation
    amount_min: float = Field(default=0.01, alias="AMOUNT_MIN")
    amount_max: float = Field(default=10_000_000.0, alias="AMOUNT_MAX")
    category_max_length: int = Field(default=64, alias="CATEGORY_MAX_LENGTH")
    note_max_length: int = Field(default=200, alias="NOTE_MAX_LENGTH")
    sender_max_length: int = Field(default=64, alias="SENDER_MAX_LENGTH")
    message_max_length: int = Field(default=2000, alias="MESSAGE_MAX_LENGTH")
    source_match_threshold: float = Field(default=0.92, alias="SOURCE_MATCH_THRESHOLD")

    # Delivery and recovery
    trigger_max_deliveries: int = Field(default=3, alias="TRIGGER_MAX_DELIVERIES")
    reconcile_stale_after_seconds: int = Field(default=300, alias="RECONCILE_STALE_AFTER_SECONDS")
    reconcile_on_startup: bool = Field(default=True, alias="RECONCILE_ON_STARTUP")

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v):
        """Validate log level is one of the standard levels."""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        v_upper = v.upper()
        if v_upper not in valid_levels:
            raise ValueError(f"Log level must be one of: {valid_levels}")
        return v_upper

    @field_validator("port")
    @classmethod
    def validate_port(cls, v):
        """Validate port is in valid range."""
        if not (1 <= v <= 65535):
            raise ValueError("Port must be between 1 and 65535")
        return v

    @field_validator("llm_max_attempts", "llm_max_parse_attempts", "trigger_max_deliveries")
    @classmethod
    def validate_attempts(cls, v):
        """Attempt counts must allow at least one try and stay bounded."""
        if v < 1:
            raise ValueError("Attempt count must be at least 1")
        if v > 10:
            raise ValueError("Attempt count should not exceed 10")
        return v

    @field_validator("source_match_threshold")
    @classmethod
    def validate_threshold(cls, v):
        """Similarity threshold is a ratio."""
        if not (0.0 < v <= 1.0):
            raise ValueError("Source match threshold must be in (0, 1]")
        return v

    @model_validator(mode="after")
    def validate_amount_bounds(self):
        """Amount bounds must describe a non-empty positive range."""
        if self.amount_min <= 0:
            raise ValueError("AMOUNT_MIN must be positive")
        if self.amount_max < self.amount_min:
            raise ValueError("AMOUNT_MAX must not be below AMOUNT_MIN")
        return self

    class Config:
        """Pydantic configuration."""
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = False
        extra = "ignore"
        populate_by_name = True


# Global settings instance
_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """
    Get application settings singleton.

    Returns:
        Settings instance
    """
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings


def reset_settings() -> None:
    """Reset settings singleton (useful for testing)."""
    global _settings
    _settings = None
