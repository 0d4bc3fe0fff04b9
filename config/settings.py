"""
Gym Fusion Engine - Configuration

Loads settings from environment variables with sensible defaults.
"""

from pathlib import Path

from dotenv import load_dotenv
from pydantic import Field
from pydantic_settings import BaseSettings

# Load .env file
load_dotenv()

# Project root directory
PROJECT_ROOT = Path(__file__).parent.parent


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Database (persistence collaborator)
    DATABASE_URL: str = Field(
        default=f"sqlite:///{PROJECT_ROOT}/data/gyms.db"
    )

    @property
    def project_root(self) -> Path:
        """Return project root directory."""
        return PROJECT_ROOT

    # Application
    DEBUG: bool = Field(default=False)
    LOG_LEVEL: str = Field(default="INFO")

    # Crawl-phase batching
    BATCH_SIZE: int = Field(default=5, ge=1)
    MAX_CONCURRENT_REQUESTS: int = Field(default=3, ge=1)
    DELAY_BETWEEN_BATCHES_MS: int = Field(default=5000, ge=0)
    CACHE_SIZE: int = Field(default=1000, ge=1)

    # Merge settings
    MERGE_BATCH_SIZE: int = Field(default=10, ge=1)
    MIN_SEARCH_CONFIDENCE: float = Field(default=0.3, ge=0.0, le=1.0)
    QUALITY_THRESHOLD: float = Field(default=0.7, ge=0.0, le=1.0)
    DUPLICATE_THRESHOLD: float = Field(default=0.8, ge=0.0, le=1.0)

    # Safety ceilings
    MAX_AUTHORITATIVE_RECORDS: int = Field(default=30000, ge=1)
    MAX_CRAWLED_RECORDS: int = Field(default=20000, ge=1)
    MAX_RESULT_RECORDS: int = Field(default=50000, ge=1)

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"


settings = Settings()
