"""Run preconditions — should this wake cycle act?

Ordered decision, first match wins:

1. identity set and state Idling, else no;
2. unread chat messages: yes, whatever the budget;
3. a task due before the next alarm: yes unless today's usage is over the
   hard limit (daily hard limit scaled with a buffer factor > 1);
4. otherwise: yes only while today's usage is below the soft limit.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from zoneinfo import ZoneInfo

from tools.tasks import find_due_task, load_tasks
from usage import DEFAULT_TIMEZONE, WINDOW_HOURS, WINDOW_START_HOUR, dynamic_limit

log = logging.getLogger(__name__)


@dataclass
class BudgetPolicy:
    daily_hard_limit: int = 1_000_000
    daily_soft_limit: int = 500_000
    buffer_factor: float = 1.5
    timezone: str = DEFAULT_TIMEZONE
    window_start_hour: int = WINDOW_START_HOUR
    window_hours: int = WINDOW_HOURS

    def limit(self, daily_limit: int, buffer_factor: float, now: datetime) -> int:
        return dynamic_limit(
            daily_limit, buffer_factor, now,
            tz=self.timezone,
            window_start_hour=self.window_start_hour,
            window_hours=self.window_hours,
        )

    def hard_limit(self, now: datetime) -> int:
        return self.limit(self.daily_hard_limit, self.buffer_factor, now)

    def soft_limit(self, now: datetime) -> int:
        return self.limit(self.daily_soft_limit, 1.0, now)


class RunPreconditions:
    """Evaluates the run decision for one identity.

    echo supplies identity, state, today's usage and storage; transport and
    instance supply the chat side.
    """

    def __init__(self, echo, transport, instance, policy: BudgetPolicy,
                 alarm_interval_minutes: int = 1, logger: logging.Logger | None = None):
        self.echo = echo
        self.transport = transport
        self.instance = instance
        self.policy = policy
        self.alarm_interval = timedelta(minutes=alarm_interval_minutes)
        self.log = logger or log

    async def check(self, now: datetime | None = None) -> bool:
        now = now or datetime.now(UTC)

        if not await self._state_ok():
            return False

        unread = await self._unread_count()
        if unread is None:
            return False
        if unread > 0:
            self.log.info("%s has %d unread message(s)", self.instance.name, unread)
            return True
        self.log.debug("%s has no unread messages", self.instance.name)

        today = await self.echo.today_usage(now)
        total = today.total_tokens if today else 0
        over_hard = self._hard_limit_message(total, now) if today else ""

        if await self._task_due(now):
            if over_hard:
                self.log.warning("%s", over_hard)
                return False
            return True

        soft = self.policy.soft_limit(now)
        if total < soft:
            self.log.info("Usage: %d (soft limit: %d)", total, soft)
            return True
        self.log.debug("Usage %d at or over soft limit %d; not running", total, soft)
        return False

    async def _state_ok(self) -> bool:
        identity = await self.echo.get_id()
        if not identity:
            self.log.error("Echo id is not set; cannot run")
            return False
        name = await self.echo.get_name()
        state = await self.echo.get_state()
        if state == "Sleeping":
            self.log.warning("%s is sleeping; cannot run while sleeping", name)
            return False
        if state == "Running":
            self.log.warning("%s is already running", name)
            return False
        return True

    async def _unread_count(self) -> int | None:
        channel = self.instance.chat_channel_id
        if not channel:
            self.log.error("Chat channel id is not configured for %s", self.instance.name)
            return None
        try:
            return await self.transport.get_unread_count(channel)
        except Exception as e:
            self.log.error("Failed to fetch unread count for %s: %s", self.instance.name, e)
            return None

    def _hard_limit_message(self, total: int, now: datetime) -> str:
        hard = self.policy.hard_limit(now)
        if total < hard:
            return ""
        return (
            f"{self.instance.name} is over the token limit for "
            f"{now.astimezone(ZoneInfo(self.policy.timezone)).strftime('%H:%M')} ({hard}). "
            f"Current usage: {total} tokens (daily limit: {self.policy.daily_hard_limit})"
        )

    async def _task_due(self, now: datetime) -> bool:
        tasks = await load_tasks(self.echo.storage)
        if not tasks:
            self.log.debug("No tasks")
            return False
        due = find_due_task(tasks, now + self.alarm_interval)
        if due:
            self.log.info("Scheduled task due: %s", due["name"])
            return True
        self.log.debug("No task due")
        return False
