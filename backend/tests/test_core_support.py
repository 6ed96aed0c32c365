"""
backend/tests/test_core_support.py
Clock math, config validation, structured logging, idempotency receipts.
"""

import json
import logging
import sys
import warnings
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from backend.core.clock import FixedClock, ensure_utc, month_start, next_month_start
from backend.core.config import Settings, validate_config
from backend.core.errors import ValidationError
from backend.core.idempotency import check_and_set, normalize_key
from backend.core.logging import (
    JsonFormatter,
    PrettyFormatter,
    configure_logging,
    latency_bucket_ms,
    request_id_ctx_var,
)
from backend.features.events.service import RECENT_EVENTS_MAX, emit_event, recorded_events, set_event_sink
from backend.models.events import EventType


class TestClock:
    def test_month_boundaries(self):
        assert month_start(datetime(2025, 1, 31, 23, 59, 59, tzinfo=timezone.utc)) == datetime(2025, 1, 1, tzinfo=timezone.utc)
        assert next_month_start(datetime(2025, 1, 31, 23, 59, 59, tzinfo=timezone.utc)) == datetime(2025, 2, 1, tzinfo=timezone.utc)

    def test_december_rolls_year(self):
        assert next_month_start(datetime(2025, 12, 10, tzinfo=timezone.utc)) == datetime(2026, 1, 1, tzinfo=timezone.utc)

    def test_non_utc_input_normalized(self):
        plus_two = timezone(timedelta(hours=2))
        # 01:00 on Feb 1 at +02:00 is still January in UTC
        assert month_start(datetime(2025, 2, 1, 1, 0, tzinfo=plus_two)) == datetime(2025, 1, 1, tzinfo=timezone.utc)

    def test_naive_read_as_utc(self):
        assert ensure_utc(datetime(2025, 1, 1)).tzinfo == timezone.utc

    def test_fixed_clock_moves_only_when_told(self):
        clock = FixedClock(datetime(2025, 1, 1, tzinfo=timezone.utc))
        assert clock.now() == clock.now()
        assert clock.advance(days=2) == datetime(2025, 1, 3, tzinfo=timezone.utc)


class TestConfig:
    def test_auto_backend_follows_database_url(self):
        assert Settings(DATABASE_URL=None, TEST_DATABASE_URL=None, STORE_BACKEND="auto").resolved_store_backend() == "memory"
        assert Settings(DATABASE_URL="sqlite://", STORE_BACKEND="auto").resolved_store_backend() == "sql"

    def test_eligible_tiers_parsed(self):
        assert Settings(VERIFICATION_ELIGIBLE_TIERS=" Basic, pro ,").verification_eligible_tiers() == ["basic", "pro"]

    def test_strict_mode_raises(self):
        cfg = Settings(STORE_BACKEND="sql", DATABASE_URL=None, TEST_DATABASE_URL=None)
        with pytest.raises(RuntimeError):
            validate_config(strict=True, settings_obj=cfg)

    def test_lenient_mode_warns(self, caplog):
        cfg = Settings(ENV="production", ADMIN_KEY=None, STORE_BACKEND="memory")
        with caplog.at_level(logging.WARNING, logger="creatorhub"):
            assert validate_config(strict=False, settings_obj=cfg) is True
        assert "ADMIN_KEY" in caplog.text

    def test_unknown_backend_rejected_in_strict(self):
        with pytest.raises(RuntimeError):
            validate_config(strict=True, settings_obj=Settings(STORE_BACKEND="redis"))


class TestLogging:
    def _record(self, **extra):
        record = logging.makeLogRecord({"name": "creatorhub", "levelname": "INFO", "msg": "grant.activated"})
        for key, value in extra.items():
            setattr(record, key, value)
        return record

    def test_json_formatter_includes_extras(self):
        payload = json.loads(JsonFormatter().format(self._record(request_id="rid-1", entity_id="g1")))
        assert payload["message"] == "grant.activated"
        assert payload["request_id"] == "rid-1"
        assert payload["entity_id"] == "g1"

    def test_pretty_formatter_shows_request_id(self):
        line = PrettyFormatter().format(self._record(request_id="rid-2"))
        assert "[rid=rid-2]" in line
        assert "grant.activated" in line

    def test_pretty_formatter_appends_extras(self):
        line = PrettyFormatter().format(self._record(entity_id="g1", event_type="grant_expired"))
        assert "[creatorhub]" in line
        assert "entity_id=g1" in line
        assert "event_type=grant_expired" in line

    def test_formatters_render_exceptions(self):
        try:
            raise RuntimeError("store unavailable")
        except RuntimeError:
            record = self._record()
            record.exc_info = sys.exc_info()
        payload = json.loads(JsonFormatter().format(record))
        assert "RuntimeError: store unavailable" in payload["exc_info"]
        assert "RuntimeError: store unavailable" in PrettyFormatter().format(record)

    def test_configure_logging_shares_one_handler(self):
        configure_logging("production")
        service = logging.getLogger("creatorhub").handlers
        engines = logging.getLogger("backend").handlers
        assert len(service) == 1
        assert service == engines
        assert isinstance(service[0].formatter, JsonFormatter)
        configure_logging("development")

    @pytest.mark.parametrize(
        "latency,bucket",
        [(None, "unknown"), (5, "<10ms"), (50, "10-100ms"), (250, "100-500ms"), (750, "500-1000ms"), (5000, ">=1000ms")],
    )
    def test_latency_buckets(self, latency, bucket):
        assert latency_bucket_ms(latency) == bucket

    def test_request_id_context_default(self):
        assert request_id_ctx_var.get() is None


class TestIdempotency:
    NOW = datetime(2025, 1, 1, tzinfo=timezone.utc)

    def test_first_sighting_then_duplicate(self):
        assert check_and_set("pay_1", "boost", "creator-1", self.NOW) is False
        assert check_and_set("pay_1", "boost", "creator-1", self.NOW) is True

    def test_key_trimmed(self):
        assert normalize_key("  pay_1 ") == "pay_1"

    def test_blank_key_rejected(self):
        with pytest.raises(ValidationError):
            normalize_key("   ")


class TestEventBuffer:
    NOW = datetime(2025, 1, 1, tzinfo=timezone.utc)

    def test_default_sink_keeps_most_recent_events(self):
        for n in range(RECENT_EVENTS_MAX + 5):
            emit_event(EventType.GRANT_EXPIRED, account_ids=["creator-1"], occurred_at=self.NOW, entity_id=f"g{n}")
        kept = recorded_events()
        assert len(kept) == RECENT_EVENTS_MAX
        assert kept[0].entity_id == "g5"
        assert kept[-1].entity_id == f"g{RECENT_EVENTS_MAX + 4}"

    def test_custom_sink_bypasses_buffer(self):
        seen = []
        set_event_sink(seen.append)
        emit_event(EventType.GRANT_EXPIRED, account_ids=["creator-1"], occurred_at=self.NOW)
        assert len(seen) == 1
        assert recorded_events() == []


def test_sources_compile_without_warnings():
    """Docstrings and literals carry no invalid escape sequences"""
    root = Path(__file__).resolve().parents[1]
    with warnings.catch_warnings():
        warnings.simplefilter("error")
        for path in sorted(root.rglob("*.py")):
            compile(path.read_text(encoding="utf-8"), str(path), "exec")
