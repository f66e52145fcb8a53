"""
Configuration loader for Concilify.
Loads environment variables from .env file.
"""
import os
from pathlib import Path
from dotenv import load_dotenv


# Load .env from the project root
PROJECT_ROOT = Path(__file__).parent.parent
ENV_PATH = PROJECT_ROOT / ".env"
load_dotenv(ENV_PATH)


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    return int(value) if value not in (None, "") else default


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    return float(value) if value not in (None, "") else default


class Config:
    """Application configuration."""
    MONGO_URI: str = os.getenv("MONGO_URI", "mongodb://localhost:27017/concilify")
    DATABASE_NAME: str = os.getenv("DATABASE_NAME", "concilify")

    # Marketplace hosts
    SHOPEE_BASE_URL: str = os.getenv("SHOPEE_BASE_URL", "https://partner.shopeemobile.com")
    MERCADO_LIVRE_BASE_URL: str = os.getenv("MERCADO_LIVRE_BASE_URL", "https://api.mercadolibre.com")
    HTTP_TIMEOUT_SECONDS: float = _env_float("HTTP_TIMEOUT_SECONDS", 30.0)

    # Sync pacing
    SYNC_WINDOW_HOURS: int = _env_int("SYNC_WINDOW_HOURS", 24)
    SYNC_MAX_PAGES: int = _env_int("SYNC_MAX_PAGES", 100)
    SYNC_PAGE_PAUSE_SECONDS: float = _env_float("SYNC_PAGE_PAUSE_SECONDS", 1.0)
    SYNC_BATCH_PAUSE_SECONDS: float = _env_float("SYNC_BATCH_PAUSE_SECONDS", 2.0)
    SYNC_MAX_FAN_OUT: int = _env_int("SYNC_MAX_FAN_OUT", 20)
    SYNC_MAX_CONCURRENT_STORES: int = _env_int("SYNC_MAX_CONCURRENT_STORES", 3)
    SYNC_FINANCIAL_BACKFILL_LIMIT: int = _env_int("SYNC_FINANCIAL_BACKFILL_LIMIT", 500)

    # Retry / backoff
    RETRY_MAX_ATTEMPTS: int = _env_int("RETRY_MAX_ATTEMPTS", 3)
    RETRY_BASE_DELAY_SECONDS: float = _env_float("RETRY_BASE_DELAY_SECONDS", 30.0)
    RATE_LIMIT_COOLDOWN_SECONDS: float = _env_float("RATE_LIMIT_COOLDOWN_SECONDS", 60.0)

    # Tokens
    TOKEN_REFRESH_MARGIN_MINUTES: int = _env_int("TOKEN_REFRESH_MARGIN_MINUTES", 5)


# Singleton instance
config = Config()
