import logging

from pydantic_settings import BaseSettings
from pydantic import ConfigDict
from typing import Optional


class Settings(BaseSettings):
    # Environment
    ENV: str = "development"
    CONFIG_STRICT: bool = False

    # Database
    DATABASE_URL: Optional[str] = None
    TEST_DATABASE_URL: Optional[str] = None

    # Free tier (signup and demotion target)
    FREE_TOKENS_PER_PERIOD: int = 1000
    FREE_PERIOD_DAYS: int = 30

    # Paid plans: token grant per billing period
    MONTHLY_TOKENS_PER_PERIOD: int = 5000
    SIX_MONTH_TOKENS_PER_PERIOD: int = 30000
    ANNUAL_TOKENS_PER_PERIOD: int = 60000

    # Paid plans: list price (USD, display only; payment is handled upstream)
    MONTHLY_PRICE: float = 9.99
    SIX_MONTH_PRICE: float = 49.99
    ANNUAL_PRICE: float = 89.99

    # Brand profile slots
    BRAND_PROFILE_BASE_SLOTS: int = 2
    BRAND_PROFILE_ADD_ON_PRICE: float = 9.00
    SUSPEND_ADD_ONS_WHEN_CANCELLED: bool = False

    # Per-user critical section
    LOCK_TIMEOUT_SECONDS: float = 10.0

    # Proactive rollover sweep
    ROLLOVER_SWEEP_LIMIT: int = 500

    # Admin routes (X-Admin-Key); unset disables them
    ADMIN_KEY: Optional[str] = None

    model_config = ConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )


settings = Settings()


def validate_config(strict: Optional[bool] = None, settings_obj: Optional[Settings] = None, logger: Optional[logging.Logger] = None) -> bool:
    """Validate required configuration.

    In strict mode raise RuntimeError; otherwise emit warnings only.
    Secrets are not logged, only missing keys.
    """
    cfg = settings_obj or settings
    log = logger or logging.getLogger("atelier")
    strict_mode = strict if strict is not None else getattr(cfg, "CONFIG_STRICT", False)

    required_keys = ["DATABASE_URL"]

    missing = [key for key in required_keys if not getattr(cfg, key, None)]
    if missing:
        message = f"Missing required configuration: {', '.join(missing)}"
        if strict_mode:
            raise RuntimeError(message)
        log.warning(message)

    if cfg.FREE_TOKENS_PER_PERIOD < 0 or cfg.FREE_PERIOD_DAYS <= 0:
        message = "Free tier grant must be non-negative and its period positive"
        if strict_mode:
            raise RuntimeError(message)
        log.warning(message)

    return True
