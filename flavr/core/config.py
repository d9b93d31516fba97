import logging

from pydantic_settings import BaseSettings
from pydantic import ConfigDict
from typing import Optional

class Settings(BaseSettings):
    # Environment
    ENV: str = "development"
    CONFIG_STRICT: bool = False

    # Database & Cache
    DATABASE_URL: Optional[str] = None
    TEST_DATABASE_URL: Optional[str] = None
    REDIS_URL: str = "redis://localhost:6379"

    # Admin access (x-admin-key header)
    ADMIN_KEY: Optional[str] = None

    # Stripe
    STRIPE_SECRET_KEY: Optional[str] = None
    STRIPE_WEBHOOK_SECRET: Optional[str] = None

    # Apple App Store
    APPLE_SHARED_SECRET: Optional[str] = None
    APPLE_BUNDLE_ID: Optional[str] = None
    APPLE_VERIFY_URL_PRODUCTION: str = "https://buy.itunes.apple.com/verifyReceipt"
    APPLE_VERIFY_URL_SANDBOX: str = "https://sandbox.itunes.apple.com/verifyReceipt"

    # Google Play
    GOOGLE_SERVICE_ACCOUNT_KEY: Optional[str] = None  # raw service-account JSON
    GOOGLE_PLAY_PACKAGE_NAME: str = "com.flavr.app"
    GOOGLE_PLAY_API_BASE: str = "https://androidpublisher.googleapis.com/androidpublisher/v3"
    GOOGLE_WEBHOOK_TOKEN: Optional[str] = None  # shared token on the Pub/Sub push URL

    # Provider calls
    PROVIDER_TIMEOUT_SECONDS: float = 10.0

    # Tier table (monthly units)
    FREE_RECIPE_LIMIT: int = 3
    FREE_IMAGE_LIMIT: int = 3
    PSEUDO_RECIPE_LIMIT: int = 3

    # Periodic subscription sync
    SYNC_INTERVAL_SECONDS: int = 86400
    SYNC_MAX_WORKERS: int = 8
    SYNC_LOCK_TTL_SECONDS: int = 3600

    model_config = ConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )
settings = Settings()


# Feature -> settings it cannot run without
FEATURE_REQUIREMENTS = {
    "database": ("DATABASE_URL",),
    "stripe verification": ("STRIPE_SECRET_KEY",),
    "stripe webhooks": ("STRIPE_WEBHOOK_SECRET",),
    "apple verification and webhooks": ("APPLE_SHARED_SECRET",),
    "google verification": ("GOOGLE_SERVICE_ACCOUNT_KEY",),
    "google webhooks": ("GOOGLE_WEBHOOK_TOKEN",),
}


def validate_config(strict: Optional[bool] = None, settings_obj: Optional[Settings] = None, logger: Optional[logging.Logger] = None) -> bool:
    """Report features left disabled by missing settings.

    Strict mode raises RuntimeError; otherwise one warning names every
    missing key. Values are never logged.
    """
    cfg = settings_obj or settings
    log = logger or logging.getLogger("flavr")
    strict_mode = strict if strict is not None else getattr(cfg, "CONFIG_STRICT", False)

    missing = []
    disabled = []
    for feature, keys in FEATURE_REQUIREMENTS.items():
        absent = [key for key in keys if not getattr(cfg, key, None)]
        if absent:
            missing.extend(absent)
            disabled.append(feature)

    if missing:
        message = f"Missing required configuration: {', '.join(missing)} (disabled: {', '.join(disabled)})"
        if strict_mode:
            raise RuntimeError(message)
        log.warning(message)

    return True
