from functools import lru_cache
from pathlib import Path
from typing import List, Union

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    # Application
    ENVIRONMENT: str = "development"  # development | production
    APP_NAME: str = "Tourbook"
    PUBLIC_BASE_URL: str = ""  # falls back to the request base url when empty

    # Database
    DB_URL: str = "sqlite:///./tourbook.db"
    DB_PASSWORD: str = ""  # substituted for <PASSWORD> in DB_URL
    DB_ECHO: bool = False
    DB_CREATE_ALL: bool = True

    # Connection Pool Settings
    DB_POOL_SIZE: int = 10
    DB_MAX_OVERFLOW: int = 20
    DB_POOL_TIMEOUT: int = 30
    DB_POOL_RECYCLE: int = 3600

    # Tokens
    JWT_SECRET: str = "change_me"
    JWT_ALGORITHM: str = "HS256"
    JWT_EXPIRES_IN_DAYS: int = 90
    JWT_COOKIE_NAME: str = "jwt"
    JWT_COOKIE_EXPIRES_IN_DAYS: int = 90

    # Password Security
    BCRYPT_ROUNDS: int = 12
    PASSWORD_RESET_EXPIRES_MINUTES: int = 10

    # Mail
    MAIL_SERVER: str = "localhost"
    MAIL_PORT: int = 587
    MAIL_USERNAME: str = ""
    MAIL_PASSWORD: str = ""
    MAIL_FROM: str = "hello@tourbook.io"
    MAIL_FROM_NAME: str = "Tourbook"
    MAIL_STARTTLS: bool = True
    MAIL_SSL_TLS: bool = False
    MAIL_SUPPRESS_SEND: bool = False

    # Payments
    STRIPE_SECRET_KEY: str = ""
    STRIPE_WEBHOOK_SECRET: str = ""
    STRIPE_CURRENCY: str = "usd"
    PUBLIC_IMAGE_BASE_URL: str = ""
    # Creates bookings from success-redirect query params without payment verification
    ALLOW_UNVERIFIED_CHECKOUT_BOOKINGS: bool = False

    # Rate Limiting
    RATE_LIMIT_ENABLED: bool = True
    RATE_LIMIT: str = "100/hour"
    RATE_LIMIT_STRATEGY: str = "moving-window"

    # Request bodies and uploads
    BODY_LIMIT_BYTES: int = 10 * 1024
    MEDIA_ROOT: str = "public"

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_FILE: str = ""

    # CORS
    ALLOWED_ORIGINS: Union[List[str], str] = ["http://localhost:3000", "http://localhost:8000"]

    @field_validator('ALLOWED_ORIGINS', mode='before')
    @classmethod
    def parse_allowed_origins(cls, v):
        """Parse ALLOWED_ORIGINS from comma-separated string or list"""
        if isinstance(v, str):
            return [origin.strip() for origin in v.split(',') if origin.strip()]
        return v

    @field_validator('ENVIRONMENT')
    @classmethod
    def normalize_environment(cls, v: str) -> str:
        v = v.strip().lower()
        if v not in ("development", "production"):
            raise ValueError("ENVIRONMENT must be 'development' or 'production'")
        return v

    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT == "production"

    @property
    def database_url(self) -> str:
        """DB_URL with the password placeholder filled in"""
        return self.DB_URL.replace("<PASSWORD>", self.DB_PASSWORD)

    model_config = SettingsConfigDict(
        env_file=str(Path(__file__).parents[3] / ".env"),
        env_file_encoding="utf-8",
        extra="ignore",
    )


@lru_cache
def get_settings() -> Settings:
    return Settings()
