"""
Application Configuration
Loads settings from environment variables with sensible defaults.
"""

from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import List
from pathlib import Path


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Only load .env if it exists to avoid permission errors
    model_config = SettingsConfigDict(
        env_file=".env" if Path(".env").exists() else None,
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",  # Ignore extra environment variables
    )

    # Database Configuration (jobs are not meant to outlive the process)
    database_url: str = "sqlite:///:memory:"

    # API Configuration
    api_host: str = "0.0.0.0"
    api_port: int = 8000
    api_debug: bool = False

    # CORS Configuration
    cors_origins: List[str] = ["*"]  # Allow all origins for development

    # Browser Configuration
    browser_headless: bool = True
    listing_timeout: float = 45.0      # seconds, network-idle wait
    detail_timeout: float = 60.0       # seconds, DOM-parsed wait
    selector_timeout: float = 15.0
    navigation_attempts: int = 3
    navigation_backoff: float = 2.0    # seconds, multiplied by attempt number

    # Crawl pacing
    item_delay_min: float = 1.0
    item_delay_max: float = 3.0
    final_settle: float = 3.0
    discovery_max_iterations: int = 1000

    # Rate limiting for job creation
    rate_limit_window: int = 60        # seconds
    rate_limit_max_requests: int = 5

    # Logging Configuration
    log_level: str = "INFO"
    log_format: str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

    # Paths
    @property
    def log_dir(self) -> Path:
        """Get the log directory path."""
        return Path(__file__).parent.parent.parent / "logs"

    @property
    def log_file(self) -> Path:
        """Get the log file path."""
        return self.log_dir / "backend.log"

    @property
    def item_delay_range(self) -> tuple:
        return (self.item_delay_min, max(self.item_delay_min, self.item_delay_max))


# Global settings instance
settings = Settings()
