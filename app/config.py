"""
Application configuration using Pydantic Settings
"""
from typing import List
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables"""

    # Application
    APP_NAME: str = "Clinic Access API"
    APP_VERSION: str = "1.0.0"
    DEBUG: bool = False
    ENVIRONMENT: str = "development"

    # Server
    HOST: str = "0.0.0.0"
    PORT: int = 8000

    # Public site, used to build redirect links embedded in emails
    SITE_URL: str = "http://localhost:3000"

    # Database
    DATABASE_URL: str = Field(default="sqlite+aiosqlite:///./clinic_access_dev.db", description="Database connection string")
    DATABASE_POOL_SIZE: int = 20
    DATABASE_MAX_OVERFLOW: int = 10

    # Redis
    REDIS_URL: str = Field(default="redis://localhost:6379/0")
    REDIS_TOKEN_DB: int = 1

    # JWT Configuration
    JWT_SECRET_KEY: str = Field(default="development-secret-key-please-change-in-production-min-32-characters", min_length=32, description="Secret key for JWT signing")
    JWT_ALGORITHM: str = "HS256"
    JWT_ACCESS_TOKEN_EXPIRE_MINUTES: int = 60

    # Security
    PASSWORD_MIN_LENGTH: int = 8
    BCRYPT_ROUNDS: int = 12

    # One-time link tokens
    INVITE_TOKEN_EXPIRE_HOURS: int = 24
    RECOVERY_TOKEN_EXPIRE_MINUTES: int = 60
    RECOVERY_RESEND_COOLDOWN_SECONDS: int = 60

    # Identity provider: "local" keeps identities in our own database,
    # "supabase" delegates to a hosted GoTrue-compatible auth service
    IDENTITY_PROVIDER: str = Field(default="local", pattern=r"^(local|supabase)$")
    SUPABASE_URL: str = ""
    SUPABASE_ANON_KEY: str = ""
    SUPABASE_SERVICE_ROLE_KEY: str = ""
    SUPABASE_TIMEOUT_SECONDS: float = 10.0

    # CORS Settings
    CORS_ORIGINS: str = "http://localhost:3000"

    # Logging
    LOG_LEVEL: str = "INFO"

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore"
    )

    @property
    def cors_origins_list(self) -> List[str]:
        """Get CORS origins as list"""
        origins = [origin.strip() for origin in self.CORS_ORIGINS.split(",")]
        # Handle wildcard for development
        if "*" in origins:
            return ["*"]
        return origins

    @property
    def redis_token_url(self) -> str:
        """Get Redis URL for the one-time token database"""
        return self.REDIS_URL.rsplit("/", 1)[0] + f"/{self.REDIS_TOKEN_DB}"

    @property
    def activation_url(self) -> str:
        return self.SITE_URL.rstrip("/") + "/activate"

    @property
    def reset_password_url(self) -> str:
        return self.SITE_URL.rstrip("/") + "/reset-password"


# Global settings instance
settings = Settings()
