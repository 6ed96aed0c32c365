"""Periodic grant sweep: one-shot GrantExpired / GrantExpiringSoon notices."""
from datetime import datetime
import logging

from backend.core.clock import ensure_utc, get_clock
from backend.core.config import settings
from backend.features.grants.service import sweep_expired, sweep_expiring_soon

logger = logging.getLogger("creatorhub.sweep.grants")


def run_grant_sweep(
    *,
    now: datetime | None = None,
    window_days: int | None = None,
) -> dict:
    at = ensure_utc(now) if now is not None else get_clock().now()
    days = window_days if window_days is not None else settings.GRANT_EXPIRING_SOON_DAYS

    expired = sweep_expired(at)
    expiring = sweep_expiring_soon(at, days)

    logger.info(
        "[sweep] grants",
        extra={"at": at.isoformat(), "window_days": days, "expired": expired, "expiring_soon": expiring},
    )
    return {"at": at.isoformat(), "window_days": days, "expired": expired, "expiring_soon": expiring}


if __name__ == "__main__":
    from backend.core.logging import configure_logging

    configure_logging(settings.ENV)
    result = run_grant_sweep()
    print(result)
