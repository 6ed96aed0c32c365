import logging

from pydantic_settings import BaseSettings
from pydantic import ConfigDict
from typing import List, Optional


class Settings(BaseSettings):
    # Environment
    ENV: str = "development"
    CONFIG_STRICT: bool = False

    # Database
    DATABASE_URL: Optional[str] = None
    TEST_DATABASE_URL: Optional[str] = None
    STORE_BACKEND: str = "auto"  # memory | sql | auto

    # Optimistic concurrency
    CAS_MAX_RETRIES: int = 8

    # Verification badge
    VERIFICATION_VALIDITY_DAYS: int = 365
    VERIFICATION_REQUIRE_PHONE: bool = True
    VERIFICATION_ELIGIBLE_TIERS: str = "basic,pro"  # comma-separated

    # Boosts / temporal grants
    GRANT_EXPIRING_SOON_DAYS: int = 3
    MAX_BOOST_WEEKS: int = 12

    # Admin review routes
    ADMIN_KEY: Optional[str] = None

    model_config = ConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    def verification_eligible_tiers(self) -> List[str]:
        return [t.strip().lower() for t in self.VERIFICATION_ELIGIBLE_TIERS.split(",") if t.strip()]

    def resolved_store_backend(self) -> str:
        backend = (self.STORE_BACKEND or "auto").strip().lower()
        if backend != "auto":
            return backend
        return "sql" if (self.DATABASE_URL or self.TEST_DATABASE_URL) else "memory"


settings = Settings()


def validate_config(strict: Optional[bool] = None, settings_obj: Optional[Settings] = None, logger: Optional[logging.Logger] = None) -> bool:
    """Validate required configuration.

    In strict mode raise RuntimeError; otherwise emit warnings only.
    Secrets are not logged, only missing keys.
    """
    cfg = settings_obj or settings
    log = logger or logging.getLogger("creatorhub")
    strict_mode = strict if strict is not None else getattr(cfg, "CONFIG_STRICT", False)

    missing = []
    if cfg.resolved_store_backend() == "sql" and not (cfg.DATABASE_URL or cfg.TEST_DATABASE_URL):
        missing.append("DATABASE_URL")
    if cfg.ENV.lower() == "production" and not cfg.ADMIN_KEY:
        missing.append("ADMIN_KEY")

    if missing:
        message = f"Missing required configuration: {', '.join(missing)}"
        if strict_mode:
            raise RuntimeError(message)
        log.warning(message)

    if cfg.resolved_store_backend() not in ("memory", "sql"):
        message = f"Unknown STORE_BACKEND: {cfg.STORE_BACKEND}"
        if strict_mode:
            raise RuntimeError(message)
        log.warning(message)

    return True
