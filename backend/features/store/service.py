"""
backend/features/store/service.py

Process-wide Entitlement Store accessor.

STORE_BACKEND=auto picks the SQL store when a database URL is configured and
falls back to the in-memory store otherwise.
"""

import logging
import threading
from typing import Callable, Optional, TypeVar

from backend.core.config import settings
from backend.core.errors import ConflictError
from backend.features.store.base import EntitlementStore, StaleWriteError
from backend.features.store.memory import InMemoryEntitlementStore


logger = logging.getLogger(__name__)

T = TypeVar("T")

_store: Optional[EntitlementStore] = None
_store_lock = threading.Lock()


def _build_store() -> EntitlementStore:
    backend = settings.resolved_store_backend()
    if backend == "sql":
        from backend.core.database import create_all_tables, get_session_factory
        from backend.features.store.sql import SqlEntitlementStore

        create_all_tables()
        logger.info("[store] using sql store")
        return SqlEntitlementStore(get_session_factory())
    logger.info("[store] using in-memory store")
    return InMemoryEntitlementStore()


def get_store() -> EntitlementStore:
    global _store
    if _store is None:
        with _store_lock:
            if _store is None:
                _store = _build_store()
    return _store


def set_store(store: EntitlementStore) -> None:
    global _store
    _store = store


def reset_store() -> EntitlementStore:
    """Replace the process store with a fresh in-memory one (tests)."""
    store = InMemoryEntitlementStore()
    set_store(store)
    return store


def with_cas_retry(attempt: Callable[[], T], *, operation: str, entity_id: Optional[str] = None) -> T:
    """
    Run a read-compare-write `attempt` until it stops hitting StaleWriteError.

    `attempt` must re-read current state on every call.

    Raises:
        ConflictError: retry budget (CAS_MAX_RETRIES) exhausted
    """
    retries = max(1, settings.CAS_MAX_RETRIES)
    for attempt_no in range(1, retries + 1):
        try:
            return attempt()
        except StaleWriteError:
            logger.debug(
                "[store] stale write, retrying",
                extra={"operation": operation, "entity_id": entity_id, "attempt": attempt_no},
            )
    logger.error(
        "[store] compare-and-swap retries exhausted",
        extra={"operation": operation, "entity_id": entity_id, "retries": retries},
    )
    raise ConflictError(
        "Concurrent update conflict; retry the request",
        details={"operation": operation, "entity_id": entity_id},
    )
