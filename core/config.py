"""
Centralized configuration management.
All environment variables and settings are defined here.
"""
from pathlib import Path
from typing import Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        populate_by_name=True,
    )

    # Application
    app_name: str = Field(default="Cheque Intake Service", alias="APP_NAME")
    host: str = Field(default="0.0.0.0", alias="HOST")
    port: int = Field(default=8000)
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")

    # Recognition gateway
    openai_api_key: str = Field(..., alias="OPENAI_API_KEY")
    openai_gateway_url: str = Field(
        default="https://api.openai.com/v1/chat/completions", alias="OPENAI_GATEWAY_URL"
    )
    openai_model: str = Field(default="gpt-4o", alias="OPENAI_MODEL")
    verify_ssl: bool = Field(default=True, alias="VERIFY_SSL")
    extraction_timeout: int = Field(default=60, alias="EXTRACTION_TIMEOUT")
    extraction_call_timeout: float = Field(default=240.0, alias="EXTRACTION_CALL_TIMEOUT")
    extraction_max_attempts: int = Field(default=3, alias="EXTRACTION_MAX_ATTEMPTS")
    extraction_backoff_min: float = Field(default=2.0, alias="EXTRACTION_BACKOFF_MIN")
    extraction_backoff_max: float = Field(default=10.0, alias="EXTRACTION_BACKOFF_MAX")
    extraction_default_confidence: float = Field(default=0.5, alias="EXTRACTION_DEFAULT_CONFIDENCE")

    # Document processing
    max_concurrent_extractions: int = Field(default=5, alias="MAX_CONCURRENT_EXTRACTIONS")
    max_upload_bytes: int = Field(default=10 * 1024 * 1024, alias="MAX_UPLOAD_BYTES")
    pdf_render_dpi: int = Field(default=300, alias="PDF_RENDER_DPI")
    normalize_timeout: float = Field(default=30.0, alias="NORMALIZE_TIMEOUT")

    # Reconciliation
    confidence_acceptance_threshold: float = Field(default=0.8, alias="CONFIDENCE_ACCEPTANCE_THRESHOLD")
    match_threshold: float = Field(default=0.85, alias="MATCH_THRESHOLD")
    match_tie_margin: float = Field(default=0.05, alias="MATCH_TIE_MARGIN")

    # Sessions
    session_ttl_seconds: int = Field(default=1800, alias="SESSION_TTL_SECONDS")
    session_sweep_interval: int = Field(default=60, alias="SESSION_SWEEP_INTERVAL")

    # Storage
    database_path: str = Field(default="ledger.db", alias="DATABASE_PATH")

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

    @field_validator("max_concurrent_extractions")
    @classmethod
    def validate_concurrency(cls, v):
        """Validate concurrency setting."""
        if v < 1:
            raise ValueError("Max concurrent extractions must be at least 1")
        if v > 50:
            raise ValueError("Max concurrent extractions should not exceed 50")
        return v

    @field_validator("extraction_max_attempts")
    @classmethod
    def validate_attempts(cls, v):
        if v < 1:
            raise ValueError("Extraction attempts must be at least 1")
        return v

    @field_validator(
        "confidence_acceptance_threshold",
        "match_threshold",
        "match_tie_margin",
        "extraction_default_confidence",
    )
    @classmethod
    def validate_unit_interval(cls, v):
        """Thresholds and margins are scores in [0, 1]."""
        if not (0.0 <= v <= 1.0):
            raise ValueError("Value must be between 0.0 and 1.0")
        return v

    def ensure_directories(self) -> None:
        """Ensure the database directory exists."""
        Path(self.database_path).expanduser().resolve().parent.mkdir(parents=True, exist_ok=True)


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
        _settings.ensure_directories()
    return _settings


def reset_settings() -> None:
    """Reset settings singleton (useful for testing)."""
    global _settings
    _settings = None
