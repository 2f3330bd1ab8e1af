from pydantic_settings import BaseSettings
from typing import List
from functools import lru_cache
import os


class Settings(BaseSettings):
    # Application settings
    app_name: str = "Payments Ledger API"
    app_version: str = "1.0.0"
    debug: bool = False

    # Server settings
    host: str = "0.0.0.0"
    port: int = 8000

    # Logging settings
    log_level: str = "INFO"
    log_format: str = "json"  # json or text

    # Security settings
    rate_limit_enabled: bool = True
    rate_limit_per_minute: int = 30

    # CORS settings
    allowed_origins: List[str] = ["*"]
    allowed_methods: List[str] = ["GET", "POST", "OPTIONS"]
    allowed_headers: List[str] = ["*"]

    # Ledger store
    storage_backend: str = "sqlite"  # sqlite or memory
    database_path: str = "ledger.db"
    reset_database: bool = False

    # Rejected events are only reported when this is on
    enable_diagnostics: bool = False

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = False
        extra = "ignore"


class DevelopmentSettings(Settings):
    debug: bool = True
    log_level: str = "DEBUG"
    log_format: str = "text"
    enable_diagnostics: bool = True
    rate_limit_per_minute: int = 100


class ProductionSettings(Settings):
    debug: bool = False
    log_level: str = "INFO"
    allowed_origins: List[str] = []  # Must be specified in production
    enable_diagnostics: bool = False
    rate_limit_per_minute: int = 30


class TestingSettings(Settings):
    debug: bool = True
    log_level: str = "WARNING"
    rate_limit_enabled: bool = False
    database_path: str = ":memory:"


def get_settings_for_environment(env: str = "development") -> Settings:
    """Get settings for specific environment."""
    settings_map = {
        "development": DevelopmentSettings,
        "production": ProductionSettings,
        "testing": TestingSettings,
    }

    settings_class = settings_map.get(env.lower(), Settings)
    return settings_class()


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings for the environment named by APP_ENV."""
    return get_settings_for_environment(os.getenv("APP_ENV", ""))
