"""Configuration settings for the AgroTrust escrow backend."""

from functools import lru_cache
from typing import Literal

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment."""

    # Supabase
    supabase_url: str
    # New key system (preferred)
    supabase_secret_key: str | None = None  # Backend/admin access
    # Legacy key (deprecated)
    supabase_service_role_key: str | None = None
    # Signs user access tokens issued by Supabase Auth
    supabase_jwt_secret: str
    jwt_algorithm: str = "HS256"

    # Stripe
    stripe_secret_key: str
    stripe_webhook_secret: str
    stripe_api_base: str = "https://api.stripe.com"
    payment_flow: Literal["payment_intent", "checkout"] = "payment_intent"
    gateway_timeout_seconds: float = 15.0
    webhook_tolerance_seconds: int = 300

    # Escrow
    site_url: str = "http://localhost:5173"  # Base for checkout redirect links
    default_currency: str = "usd"
    release_roles: list[str] = ["admin", "inspector"]

    # App
    debug: bool = False
    log_level: str = "INFO"
    # CORS: Allowed origins for cross-origin requests
    cors_origins: list[str] = [
        "http://localhost:5173",
        "http://127.0.0.1:5173",
    ]
    # Comma-separated CIDRs allowed to set X-Forwarded-For
    trusted_proxy_cidrs: str = "127.0.0.0/8,::1/128"  # local reverse proxy only

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        extra = "ignore"  # Ignore extra env vars not in model


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
