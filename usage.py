"""Token usage ledger and time-proportional budget.

Usage is accumulated per "day", where a day starts at the beginning of the
active window (07:00 local by default) rather than at midnight. The budget
allowance grows linearly across the active window and is zero in the dead
zone between window end and the next window start.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, fields, replace
from datetime import datetime, timedelta
from zoneinfo import ZoneInfo

DEFAULT_TIMEZONE = "Asia/Tokyo"
WINDOW_START_HOUR = 7
WINDOW_HOURS = 20

# USD per million tokens: [uncached input, output, cached input]
DEFAULT_COST_RATES = [1.25, 10.0, 0.125]


@dataclass
class TokenUsage:
    """Raw usage as reported by the completion service for one or more turns."""

    input_tokens: int = 0
    cached_tokens: int = 0
    output_tokens: int = 0
    reasoning_tokens: int = 0
    total_tokens: int = 0

    def __add__(self, other: TokenUsage) -> TokenUsage:
        return TokenUsage(
            input_tokens=self.input_tokens + other.input_tokens,
            cached_tokens=self.cached_tokens + other.cached_tokens,
            output_tokens=self.output_tokens + other.output_tokens,
            reasoning_tokens=self.reasoning_tokens + other.reasoning_tokens,
            total_tokens=self.total_tokens + other.total_tokens,
        )


@dataclass
class Usage:
    cached_input_tokens: int = 0
    uncached_input_tokens: int = 0
    total_input_tokens: int = 0
    output_tokens: int = 0
    reasoning_tokens: int = 0
    total_tokens: int = 0
    total_cost: float = 0.0

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> Usage:
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in known})


UsageRecord = dict[str, Usage]


def load_usage_record(raw: dict | None) -> UsageRecord:
    """Decode the persisted JSON form of a usage record."""
    if not raw:
        return {}
    return {key: Usage.from_dict(value) for key, value in raw.items()}


def dump_usage_record(record: UsageRecord) -> dict:
    return {key: usage.to_dict() for key, usage in record.items()}


def add_usage(record: UsageRecord, key: str, usage: Usage) -> UsageRecord:
    """Accumulate usage into record[key] component-wise. Mutates and returns record."""
    existing = record.get(key)
    if existing is None:
        record[key] = replace(usage)
        return record
    for f in fields(Usage):
        setattr(existing, f.name, getattr(existing, f.name) + getattr(usage, f.name))
    return record


def convert_usage(raw: TokenUsage, cost_rates: list[float] | None = None) -> Usage:
    """Split input into cached/uncached and price the usage.

    cost_rates: [uncached_input_per_mtok, output_per_mtok, cached_input_per_mtok]
    """
    rates = cost_rates if cost_rates is not None else DEFAULT_COST_RATES
    input_rate = rates[0] if len(rates) > 0 else 0.0
    output_rate = rates[1] if len(rates) > 1 else 0.0
    cache_rate = rates[2] if len(rates) > 2 else 0.0

    cached = raw.cached_tokens
    uncached = raw.input_tokens - cached
    total_cost = (
        cached * cache_rate
        + uncached * input_rate
        + raw.output_tokens * output_rate
    ) / 1_000_000

    return Usage(
        cached_input_tokens=cached,
        uncached_input_tokens=uncached,
        total_input_tokens=raw.input_tokens,
        output_tokens=raw.output_tokens,
        reasoning_tokens=raw.reasoning_tokens,
        total_tokens=raw.total_tokens,
        total_cost=total_cost,
    )


def _local(now: datetime | None, tz: str) -> datetime:
    zone = ZoneInfo(tz)
    if now is None:
        return datetime.now(zone)
    return now.astimezone(zone)


def usage_day_key(
    now: datetime | None = None,
    *,
    tz: str = DEFAULT_TIMEZONE,
    offset_hours: int = WINDOW_START_HOUR,
) -> str:
    """Ledger key for the day containing now; days begin at offset_hours local."""
    shifted = _local(now, tz) - timedelta(hours=offset_hours)
    return shifted.date().isoformat()


def dynamic_limit(
    daily_limit: int,
    buffer_factor: float = 1.0,
    now: datetime | None = None,
    *,
    tz: str = DEFAULT_TIMEZONE,
    window_start_hour: int = WINDOW_START_HOUR,
    window_hours: int = WINDOW_HOURS,
) -> int:
    """Token allowance for now, proportional to time elapsed in the active window.

    Returns 0 in the dead zone between window end and the next window start.
    The result is truncated, never rounded, and never exceeds daily_limit.
    """
    local = _local(now, tz)
    minute_of_day = local.hour * 60 + local.minute
    elapsed = (minute_of_day - window_start_hour * 60) % (24 * 60)
    window = window_hours * 60
    if elapsed > window:
        return 0
    raw = daily_limit * elapsed / window
    return min(int(raw * buffer_factor), daily_limit)
