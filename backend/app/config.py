"""Application configuration."""

from pydantic_settings import BaseSettings
from functools import lru_cache


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # API Settings
    APP_NAME: str = "Automflows Execution Engine"
    APP_VERSION: str = "1.0.0"
    API_V1_PREFIX: str = "/api/v1"
    ENVIRONMENT: str = "development"  # development, staging, production

    # CORS Settings
    ALLOWED_ORIGINS: str = "http://localhost:3000,http://localhost:5173"

    # Engine defaults (milliseconds unless noted)
    DEFAULT_TIMEOUT_MS: int = 30000
    DEFAULT_RETRY_COUNT: int = 3
    DEFAULT_RETRY_DELAY_MS: int = 1000
    CONDITION_POLL_INTERVAL_MS: int = 250
    LOOP_MAX_ITERATIONS: int = 1000
    MAX_CONCURRENT_EXECUTIONS: int = 10
    EXECUTION_HISTORY_LIMIT: int = 100  # finished runs kept in memory

    # Plugins
    PLUGINS_DIR: str = "plugins"
    PLUGIN_ENTRY_POINT_GROUP: str = "automflows.handlers"

    # Config files loaded by loadConfigFile steps
    CONFIG_FILES_DIR: str = "."

    # Browser
    BROWSER_HEADLESS: bool = True
    BROWSER_DEFAULT: str = "chromium"  # chromium, firefox, webkit

    # Database client
    SQLALCHEMY_ECHO: bool = False

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_FORMAT: str = "json"  # json or text

    @property
    def is_development(self) -> bool:
        """Check if running in development mode."""
        return self.ENVIRONMENT == "development"

    @property
    def is_production(self) -> bool:
        """Check if running in production mode."""
        return self.ENVIRONMENT == "production"

    @property
    def cors_origins_list(self) -> list[str]:
        """Parse ALLOWED_ORIGINS string into a list."""
        return [origin.strip() for origin in self.ALLOWED_ORIGINS.split(",") if origin.strip()]

    class Config:
        """Pydantic config."""

        env_file = ".env"
        case_sensitive = True
        extra = "ignore"


@lru_cache()
def get_settings() -> Settings:
    """
    Get application settings.

    Uses caching to ensure settings are loaded only once.

    Returns:
        Settings object with all configuration values
    """
    return Settings()
