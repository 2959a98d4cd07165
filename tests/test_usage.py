"""Tests for usage.py — cost conversion, ledger accumulation, day key, dynamic limit."""

from datetime import datetime
from zoneinfo import ZoneInfo

import pytest

from usage import (
    TokenUsage,
    Usage,
    add_usage,
    convert_usage,
    dump_usage_record,
    dynamic_limit,
    load_usage_record,
    usage_day_key,
)

JST = ZoneInfo("Asia/Tokyo")


def _jst(hour, minute=0, day=2):
    return datetime(2024, 1, day, hour, minute, tzinfo=JST)


# ─── Dynamic limit ───────────────────────────────────────────────

class TestDynamicLimit:
    @pytest.mark.parametrize("hour,expected", [
        (7, 0),
        (13, 300_000),
        (17, 500_000),
        (1, 900_000),
        (3, 1_000_000),
        (5, 0),
    ])
    def test_window_progress(self, hour, expected):
        assert dynamic_limit(1_000_000, 1.0, _jst(hour)) == expected

    def test_buffer_scales_allowance(self):
        assert dynamic_limit(1_000_000, 1.5, _jst(13)) == 450_000

    def test_buffer_never_exceeds_daily_limit(self):
        assert dynamic_limit(1_000_000, 1.5, _jst(1)) == 1_000_000

    def test_dead_zone_is_zero_even_with_buffer(self):
        assert dynamic_limit(1_000_000, 1.5, _jst(6, 59)) == 0

    def test_truncated_not_rounded(self):
        # 1000 * 2/1200 = 1.67
        assert dynamic_limit(1000, 1.0, _jst(7, 2)) == 1

    def test_utc_input_converted_to_local(self):
        utc_now = datetime(2024, 1, 2, 4, 0, tzinfo=ZoneInfo("UTC"))  # 13:00 JST
        assert dynamic_limit(1_000_000, 1.0, utc_now) == 300_000

    def test_custom_window(self):
        now = _jst(12)
        assert dynamic_limit(1200, 1.0, now, window_start_hour=0, window_hours=24) == 600


# ─── Day key ─────────────────────────────────────────────────────

class TestUsageDayKey:
    def test_before_window_start_is_previous_day(self):
        assert usage_day_key(_jst(6, 59)) == "2024-01-01"

    def test_window_start_begins_new_day(self):
        assert usage_day_key(_jst(7, 0)) == "2024-01-02"

    def test_after_midnight_still_previous_day(self):
        assert usage_day_key(_jst(2, 0, day=3)) == "2024-01-02"

    def test_custom_offset(self):
        assert usage_day_key(_jst(2, 0), offset_hours=0) == "2024-01-02"


# ─── Conversion ──────────────────────────────────────────────────

class TestConvertUsage:
    def test_splits_cached_and_prices(self):
        raw = TokenUsage(input_tokens=1000, cached_tokens=200, output_tokens=500,
                         reasoning_tokens=100, total_tokens=1500)
        u = convert_usage(raw, [1.25, 10.0, 0.125])
        assert u.cached_input_tokens == 200
        assert u.uncached_input_tokens == 800
        assert u.total_input_tokens == 1000
        assert u.output_tokens == 500
        assert u.reasoning_tokens == 100
        assert u.total_tokens == 1500
        assert u.total_cost == pytest.approx((200 * 0.125 + 800 * 1.25 + 500 * 10.0) / 1e6)

    def test_default_rates(self):
        u = convert_usage(TokenUsage(input_tokens=1_000_000, total_tokens=1_000_000))
        assert u.total_cost == pytest.approx(1.25)

    def test_token_usage_addition(self):
        a = TokenUsage(input_tokens=1, cached_tokens=2, output_tokens=3, reasoning_tokens=4, total_tokens=5)
        b = TokenUsage(input_tokens=10, cached_tokens=20, output_tokens=30, reasoning_tokens=40, total_tokens=50)
        assert a + b == TokenUsage(11, 22, 33, 44, 55)


# ─── Ledger ──────────────────────────────────────────────────────

class TestAddUsage:
    def test_new_key_is_copied(self):
        u = Usage(total_tokens=10, total_cost=0.5)
        record = add_usage({}, "2024-01-01", u)
        u.total_tokens = 999
        assert record["2024-01-01"].total_tokens == 10

    def test_accumulates_componentwise(self):
        record = add_usage({}, "d", Usage(cached_input_tokens=1, output_tokens=2, total_tokens=3, total_cost=0.25))
        add_usage(record, "d", Usage(cached_input_tokens=4, output_tokens=5, total_tokens=9, total_cost=0.5))
        assert record["d"].cached_input_tokens == 5
        assert record["d"].output_tokens == 7
        assert record["d"].total_tokens == 12
        assert record["d"].total_cost == pytest.approx(0.75)

    def test_other_days_untouched(self):
        record = add_usage({}, "a", Usage(total_tokens=1))
        add_usage(record, "b", Usage(total_tokens=2))
        assert record["a"].total_tokens == 1
        assert record["b"].total_tokens == 2

    def test_persisted_form(self):
        record = add_usage({}, "d", Usage(total_tokens=7))
        raw = dump_usage_record(record)
        assert raw["d"]["total_tokens"] == 7
        assert load_usage_record(raw) == record

    def test_load_ignores_unknown_fields(self):
        record = load_usage_record({"d": {"total_tokens": 3, "legacy_field": 1}})
        assert record["d"].total_tokens == 3

    def test_load_empty(self):
        assert load_usage_record(None) == {}


class TestAccumulationOrder:
    def test_grouping_does_not_matter(self):
        a = Usage(uncached_input_tokens=1, total_input_tokens=1, output_tokens=2, total_tokens=3, total_cost=0.25)
        b = Usage(cached_input_tokens=4, uncached_input_tokens=6, total_input_tokens=10, total_tokens=10, total_cost=0.5)
        c = Usage(output_tokens=7, reasoning_tokens=3, total_tokens=7, total_cost=1.0)

        left: dict = {}
        add_usage(left, "d", a)
        add_usage(left, "d", b)
        add_usage(left, "d", c)

        bc: dict = {}
        add_usage(bc, "d", b)
        add_usage(bc, "d", c)
        right: dict = {}
        add_usage(right, "d", a)
        add_usage(right, "d", bc["d"])

        assert left["d"] == right["d"]
        assert left["d"].total_tokens == 20
