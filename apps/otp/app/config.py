import os

from storefront_shared import env_bool, env_int, env_list
from storefront_shared.env_loader import ensure_loaded

ensure_loaded()


class Settings:
    ENV: str = os.getenv("ENV", "dev")
    DEV_MODE: bool = ENV.lower() == "dev"
    APP_HOST: str = os.getenv("APP_HOST", "0.0.0.0")
    APP_PORT: int = int(os.getenv("APP_PORT", "8090"))
    DB_URL: str = os.getenv("DB_URL", "sqlite:///./otp.db")
    ALLOWED_ORIGINS: list[str] = env_list(
        "ALLOWED_ORIGINS",
        default=["*"] if DEV_MODE else [],
    )
    ALLOWED_HOSTS: list[str] = env_list("ALLOWED_HOSTS", default=["*"])
    AUTO_CREATE_SCHEMA: bool = env_bool("AUTO_CREATE_SCHEMA", default=DEV_MODE)
    # Rate limiting
    RATE_LIMIT_PER_MINUTE: int = env_int("RATE_LIMIT_PER_MINUTE", default=60, minimum=1)
    RATE_LIMIT_OTP_PER_MINUTE: int = env_int("RATE_LIMIT_OTP_PER_MINUTE", default=20, minimum=1)
    REDIS_URL: str = os.getenv("REDIS_URL", "redis://redis:6379/0")
    # OTP
    OTP_STORE: str = os.getenv("OTP_STORE", "memory").lower()  # memory|redis|sql
    OTP_STORAGE_SECRET: str = os.getenv("OTP_STORAGE_SECRET", "")
    OTP_PURGE_INTERVAL_SECS: int = env_int("OTP_PURGE_INTERVAL_SECS", default=300, minimum=0)
    OTP_SMS_PROVIDER: str = os.getenv("OTP_SMS_PROVIDER", "log")  # log|http
    OTP_SMS_HTTP_URL: str = os.getenv("OTP_SMS_HTTP_URL", "")
    OTP_EMAIL_PROVIDER: str = os.getenv("OTP_EMAIL_PROVIDER", "log")  # log|smtp
    SMTP_HOST: str = os.getenv("SMTP_HOST", "")
    # Debug: echo issued codes back in the response
    OTP_ECHO_CODE: bool = env_bool("OTP_ECHO_CODE", default=DEV_MODE)


settings = Settings()

# Harden secrets for non-dev environments
if not settings.DEV_MODE:
    if not settings.ALLOWED_ORIGINS or "*" in settings.ALLOWED_ORIGINS:
        raise RuntimeError("ALLOWED_ORIGINS must list explicit origins when ENV!=dev")
    if settings.AUTO_CREATE_SCHEMA:
        raise RuntimeError("AUTO_CREATE_SCHEMA cannot be enabled when ENV!=dev")
    if settings.OTP_ECHO_CODE:
        raise RuntimeError("OTP_ECHO_CODE cannot be enabled when ENV!=dev")
    if settings.OTP_STORE not in ("redis", "sql"):
        raise RuntimeError("OTP_STORE must be 'redis' or 'sql' when ENV!=dev")
    if len(settings.OTP_STORAGE_SECRET) < 32:
        raise RuntimeError("OTP_STORAGE_SECRET must be at least 32 characters long when ENV!=dev")
    if settings.OTP_STORE == "redis" and not settings.REDIS_URL.startswith(("redis://", "rediss://")):
        raise RuntimeError("REDIS_URL must be set to a redis:// URL when OTP_STORE=redis")
    if settings.OTP_SMS_PROVIDER.lower() == "http" and not settings.OTP_SMS_HTTP_URL:
        raise RuntimeError("OTP_SMS_HTTP_URL must be set when OTP_SMS_PROVIDER=http")
    if settings.OTP_EMAIL_PROVIDER.lower() == "smtp" and not settings.SMTP_HOST:
        raise RuntimeError("SMTP_HOST must be set when OTP_EMAIL_PROVIDER=smtp")
