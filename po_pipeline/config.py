"""
Configuration for the purchase-order intake pipeline.
"""

# Load environment variables FIRST
from dotenv import load_dotenv
load_dotenv()

import os
from typing import Optional


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() == "true"


class Config:
    """Base configuration."""

    # Mailbox polling
    POLL_INTERVAL_SECONDS: int = int(os.getenv("POLL_INTERVAL_SECONDS", "300"))  # 5 minutes
    POLL_INITIAL_DELAY_SECONDS: int = int(os.getenv("POLL_INITIAL_DELAY_SECONDS", "5"))
    POLL_LOOKBACK_HOURS: int = int(os.getenv("POLL_LOOKBACK_HOURS", "24"))
    POLL_MAX_MESSAGES: int = int(os.getenv("POLL_MAX_MESSAGES", "20"))
    START_POLLER: bool = _env_bool("START_POLLER", "true")
    MAIL_TIMEOUT_SECONDS: float = float(os.getenv("MAIL_TIMEOUT_SECONDS", "30"))

    # OAuth refresh (consent flows live outside this service)
    GOOGLE_CLIENT_ID: str = os.getenv("GOOGLE_CLIENT_ID", "")
    GOOGLE_CLIENT_SECRET: str = os.getenv("GOOGLE_CLIENT_SECRET", "")
    MICROSOFT_CLIENT_ID: str = os.getenv("MICROSOFT_CLIENT_ID", "")
    MICROSOFT_CLIENT_SECRET: str = os.getenv("MICROSOFT_CLIENT_SECRET", "")
    OAUTH_TIMEOUT_SECONDS: float = float(os.getenv("OAUTH_TIMEOUT_SECONDS", "15"))
    OAUTH_REFRESH_BUFFER_SECONDS: int = 300  # refresh tokens this close to expiry before polling

    # LLM Configuration (provider/model/credentials come from the tenant's AI configuration)
    LLM_TEMPERATURE: float = 0.1  # Lower temperature for more deterministic extraction
    LLM_MAX_TOKENS: int = 1000
    LLM_CLASSIFIER_MAX_TOKENS: int = 10
    LLM_TIMEOUT_SECONDS: float = float(os.getenv("LLM_TIMEOUT_SECONDS", "60"))
    LLM_RESPONSE_PREVIEW_CHARS: int = 300

    # OCR Configuration
    ENABLE_OCR: bool = _env_bool("ENABLE_OCR", "true")
    OCR_LANGUAGE: str = os.getenv("OCR_LANGUAGE", "eng")
    OCR_RENDER_RESOLUTION: int = int(os.getenv("OCR_RENDER_RESOLUTION", "300"))
    PDF_MIN_PAGE_TEXT: int = 50  # shorter page text is treated as a scanned page

    # Image Preprocessing
    PREPROCESS_GRAYSCALE: bool = True
    PREPROCESS_AUTOCONTRAST: bool = True
    PREPROCESS_MIN_WIDTH: int = 1000

    # Text quality heuristics
    TEXT_MIN_LENGTH: int = 20
    TEXT_MIN_ALPHA_RATIO: float = 0.5
    TEXT_VALID_CONFIDENCE: float = 0.5

    # Vendor validation
    VENDOR_SUGGESTION_LIMIT: int = 3
    VENDOR_EXACT_CONFIDENCE: float = 1.0
    VENDOR_PARTIAL_CONFIDENCE: float = 0.7

    # ERP
    ERP_TIMEOUT_SECONDS: float = float(os.getenv("ERP_TIMEOUT_SECONDS", "30"))
    DEFAULT_CURRENCY: str = os.getenv("DEFAULT_CURRENCY", "USD")

    # Logging
    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")
    LOG_FORMAT: str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    LOG_FILE: str = os.getenv("LOG_FILE", "po_pipeline.log")

    # Seed data for the in-memory store
    MASTER_DATA_PATH: Optional[str] = os.getenv("MASTER_DATA_PATH", None)

    # API Configuration
    API_HOST: str = os.getenv("API_HOST", "0.0.0.0")
    API_PORT: int = int(os.getenv("API_PORT", "8000"))
    API_DEBUG: bool = _env_bool("API_DEBUG", "false")

    @classmethod
    def validate(cls) -> None:
        """Validate configuration."""
        if cls.POLL_INTERVAL_SECONDS <= 0:
            raise ValueError(f"POLL_INTERVAL_SECONDS must be positive, got {cls.POLL_INTERVAL_SECONDS}")

        if cls.POLL_INITIAL_DELAY_SECONDS < 0:
            raise ValueError("POLL_INITIAL_DELAY_SECONDS must not be negative")

        for name in ("LLM_TIMEOUT_SECONDS", "ERP_TIMEOUT_SECONDS", "MAIL_TIMEOUT_SECONDS", "OAUTH_TIMEOUT_SECONDS"):
            if getattr(cls, name) <= 0:
                raise ValueError(f"{name} must be positive")

        if cls.LOG_LEVEL.upper() not in ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]:
            raise ValueError(f"Invalid LOG_LEVEL: {cls.LOG_LEVEL}")


class DevelopmentConfig(Config):
    """Development configuration."""
    LOG_LEVEL = "DEBUG"
    API_DEBUG = True


class ProductionConfig(Config):
    """Production configuration."""
    LOG_LEVEL = "INFO"
    API_DEBUG = False


class TestConfig(Config):
    """Test configuration."""
    LLM_TEMPERATURE = 0.0
    LOG_LEVEL = "DEBUG"
    START_POLLER = False
    POLL_INITIAL_DELAY_SECONDS = 0
    ENABLE_OCR = False


def get_config(env: str = None) -> Config:
    """Get configuration based on environment."""
    if env is None:
        env = os.getenv("ENV", "development").lower()

    if env == "production":
        config = ProductionConfig()
    elif env == "test":
        config = TestConfig()
    else:
        config = DevelopmentConfig()

    # Validate configuration on creation
    config.validate()
    return config
