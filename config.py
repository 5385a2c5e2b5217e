"""
config.py — Cadastre Registry Global Configuration
"""

from pydantic_settings import BaseSettings, SettingsConfigDict
from functools import lru_cache
from typing import List


class Settings(BaseSettings):

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # App
    APP_NAME: str = "Cadastre Registry"
    APP_VERSION: str = "0.1.0"
    DEBUG: bool = False
    ENVIRONMENT: str = "development"

    # API Server
    HOST: str = "0.0.0.0"
    PORT: int = 8000
    ALLOWED_ORIGINS: List[str] = [
        "http://localhost:3000",
        "http://localhost:5173",
    ]
    ALLOWED_HOSTS: List[str] = ["*.cadastre.local"]

    # Database
    DATABASE_URL: str = "sqlite+aiosqlite:///./cadastre.db"
    DB_POOL_SIZE: int = 10
    DB_MAX_OVERFLOW: int = 20

    # Actor tokens
    JWT_SECRET_KEY: str = "change-me-in-production"
    JWT_ALGORITHM: str = "HS256"
    JWT_EXPIRY_MINUTES: int = 480

    # Registration sessions
    SESSION_TTL_HOURS: int = 24
    EXPIRY_SWEEP_INTERVAL_SECONDS: int = 300
    EXPIRY_SWEEP_ENABLED: bool = True

    # Document uploads
    UPLOAD_DIR: str = "./uploads"
    UPLOAD_URL_PREFIX: str = "/files"
    MAX_UPLOAD_MB: int = 10

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_FILE: str = "cadastre.log"


@lru_cache()
def get_settings() -> Settings:
    return Settings()


settings = get_settings()
