"""Lifecycle controller — the state machine of one identity.

States: Idling (initial), Running, Sleeping. All persisted state of the
identity (state, identity, usage ledger, tasks, context) lives in its
InstanceStorage. Methods here are not reentrant; callers go through the
identity's EchoActor, which runs one operation at a time.

The alarm is re-armed before anything else happens in alarm(), so a crash
mid-cycle still leaves a future wake-up scheduled.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from enum import Enum
from zoneinfo import ZoneInfo

from agentic import LoopAborted
from knowledge import KnowledgeStore
from preconditions import BudgetPolicy, RunPreconditions
from tools.clock import format_datetime
from tools.context import STORAGE_KEY as CONTEXT_KEY
from tools.tasks import load_tasks, save_tasks, sort_tasks
from usage import (
    Usage,
    UsageRecord,
    add_usage,
    convert_usage,
    dump_usage_record,
    load_usage_record,
    usage_day_key,
)

log = logging.getLogger(__name__)

STATE_KEY = "state"
ID_KEY = "id"
NAME_KEY = "name"
USAGE_KEY = "usage"
DEFAULT_NAME = "NO_NAME"


class EchoState(str, Enum):
    IDLING = "Idling"
    RUNNING = "Running"
    SLEEPING = "Sleeping"


@dataclass
class Schedule:
    alarm_interval_minutes: int = 1
    sleep_hour: int | None = 18
    wake_hour: int | None = 22
    timezone: str = "Asia/Tokyo"

    @property
    def quiet_enabled(self) -> bool:
        return self.sleep_hour is not None and self.wake_hour is not None


class Echo:
    def __init__(
        self,
        instance,
        storage,
        engine,
        transport,
        knowledge: KnowledgeStore,
        policy: BudgetPolicy | None = None,
        schedule: Schedule | None = None,
        cost_rates: list[float] | None = None,
        logger: logging.Logger | None = None,
    ):
        self.instance = instance
        self.storage = storage
        self.engine = engine
        self.knowledge = knowledge
        self.policy = policy or BudgetPolicy()
        self.schedule = schedule or Schedule()
        self.cost_rates = cost_rates
        self.log = logger or logging.getLogger(f"chamber.{instance.id}")
        self.preconditions = RunPreconditions(
            self, transport, instance, self.policy,
            alarm_interval_minutes=self.schedule.alarm_interval_minutes,
            logger=self.log,
        )

    # ─── Persisted fields ────────────────────────────────────────

    async def get_id(self) -> str | None:
        return await self.storage.get(ID_KEY)

    async def get_name(self) -> str:
        return await self.storage.get(NAME_KEY) or DEFAULT_NAME

    async def get_state(self) -> EchoState:
        raw = await self.storage.get(STATE_KEY)
        try:
            return EchoState(raw) if raw else EchoState.IDLING
        except ValueError:
            self.log.warning("Unknown persisted state %r; treating as Idling", raw)
            return EchoState.IDLING

    async def set_state(self, state: EchoState) -> None:
        await self.storage.put(STATE_KEY, state.value)

    async def ensure_identity(self) -> None:
        """Persist id and display name so alarm cycles can find them."""
        await self.storage.put(ID_KEY, self.instance.id)
        await self.storage.put(NAME_KEY, self.instance.name)

    async def get_context(self) -> str:
        return await self.storage.get(CONTEXT_KEY, "") or ""

    # ─── Alarm ───────────────────────────────────────────────────

    def _local(self, now: datetime) -> datetime:
        return now.astimezone(ZoneInfo(self.schedule.timezone))

    def default_next_alarm(self, now: datetime) -> datetime:
        nxt = now + timedelta(minutes=self.schedule.alarm_interval_minutes)
        return nxt.replace(second=0, microsecond=0)

    async def set_next_alarm(self, when: datetime | None = None,
                             now: datetime | None = None) -> datetime:
        when = when or self.default_next_alarm(now or datetime.now(UTC))
        await self.storage.set_alarm(when)
        self.log.debug("Next alarm set for %s", when.isoformat())
        return when

    async def next_alarm(self) -> datetime | None:
        return await self.storage.get_alarm()

    async def fire_due_alarm(self, now: datetime | None = None) -> bool:
        """Scheduler entry: fire the stored alarm if it is due."""
        now = now or datetime.now(UTC)
        when = await self.storage.get_alarm()
        if when is None or when > now:
            return False
        await self.storage.delete_alarm()
        await self.alarm(now)
        return True

    # ─── Transitions ─────────────────────────────────────────────

    async def wake(self, force: bool = False, now: datetime | None = None) -> bool:
        await self.ensure_identity()
        state = await self.get_state()
        if state == EchoState.SLEEPING and not force:
            self.log.warning("%s is sleeping; cannot wake without force", self.instance.name)
            return False
        await self.set_next_alarm(now=now)
        await self.set_state(EchoState.IDLING)
        return True

    async def sleep(self, force: bool = False) -> bool:
        state = await self.get_state()
        if state == EchoState.SLEEPING:
            self.log.info("%s is already sleeping", self.instance.name)
            return False
        if state == EchoState.RUNNING and not force:
            self.log.warning("%s is running; cannot sleep without force", self.instance.name)
            return False
        await self.set_state(EchoState.SLEEPING)
        await self.storage.delete_alarm()
        return True

    async def alarm(self, now: datetime | None = None) -> None:
        now = now or datetime.now(UTC)
        await self.set_next_alarm(now=now)

        if not await self.get_id():
            self.log.error("No instance id in storage; cannot run alarm. Going to sleep.")
            await self.sleep(force=True)
            return

        if self.schedule.quiet_enabled:
            local = self._local(now)
            state = await self.get_state()
            if local.hour == self.schedule.sleep_hour and state == EchoState.IDLING:
                await self.sleep()
                wake_at = await self._arm_for_wake_hour(local)
                self.log.info("%s is going to sleep and will wake at %s",
                              self.instance.name, format_datetime(wake_at, self.schedule.timezone))
                return
            if state == EchoState.SLEEPING:
                if local.hour != self.schedule.wake_hour:
                    # Late alarm while asleep: don't poll every interval until morning.
                    await self._arm_for_wake_hour(local)
                    return
                await self.wake(force=True, now=now)

        await self.run(now)

    async def _arm_for_wake_hour(self, local: datetime) -> datetime:
        wake_at = local.replace(hour=self.schedule.wake_hour, minute=0, second=0, microsecond=0)
        if wake_at <= local:
            wake_at += timedelta(days=1)
        return await self.set_next_alarm(wake_at)

    async def run(self, now: datetime | None = None) -> bool:
        """One wake cycle. Never raises; always ends Idling once started."""
        now = now or datetime.now(UTC)
        try:
            if not await self.preconditions.check(now):
                return False
        except Exception as e:
            self.log.error("Run precondition check failed: %s", e, exc_info=True)
            return False

        name = self.instance.name
        spent = None
        try:
            await self.set_state(EchoState.RUNNING)
            name = await self.get_name()
            self.log.info("%s started thinking", name)
            try:
                spent = await self.engine.think()
                self.log.info("%s finished thinking (%d tokens)", name, spent.total_tokens)
            except LoopAborted as e:
                spent = e.usage
                self.log.error("%s stopped thinking early: %s", name, e)
            except Exception as e:
                self.log.error("Error while %s was thinking: %s", name, e, exc_info=True)
            if spent is not None and spent.total_tokens:
                await self.record_usage(convert_usage(spent, self.cost_rates), now)
        except Exception as e:
            self.log.error("Run of %s failed: %s", name, e, exc_info=True)
        finally:
            try:
                await self.set_state(EchoState.IDLING)
            except Exception as e:
                self.log.error("Failed to return %s to Idling: %s", name, e)
        return True

    # ─── Usage ledger ────────────────────────────────────────────

    def day_key(self, now: datetime | None = None) -> str:
        return usage_day_key(now, tz=self.policy.timezone,
                             offset_hours=self.policy.window_start_hour)

    async def usage(self) -> UsageRecord:
        return load_usage_record(await self.storage.get(USAGE_KEY))

    async def today_usage(self, now: datetime | None = None) -> Usage | None:
        record = await self.usage()
        return record.get(self.day_key(now))

    async def record_usage(self, usage: Usage, now: datetime | None = None) -> None:
        key = self.day_key(now)
        record = add_usage(await self.usage(), key, usage)
        await self.storage.put(USAGE_KEY, dump_usage_record(record))
        self.log.debug("Usage accumulated for %s: %s", key, record[key])

    # ─── Admin ───────────────────────────────────────────────────

    async def tasks(self) -> list[dict]:
        return sort_tasks(await load_tasks(self.storage))

    async def delete_task(self, name: str) -> bool:
        tasks = await load_tasks(self.storage)
        if not any(t["name"] == name for t in tasks):
            return False
        await save_tasks(self.storage, [t for t in tasks if t["name"] != name])
        return True

    async def reset(self) -> None:
        """Clear the context note and all tasks."""
        await self.storage.put(CONTEXT_KEY, "")
        await save_tasks(self.storage, [])

    async def status(self) -> dict:
        nxt = await self.next_alarm()
        return {
            "id": await self.get_id() or "",
            "name": await self.get_name(),
            "state": (await self.get_state()).value,
            "next_alarm": format_datetime(nxt, self.schedule.timezone) if nxt else None,
            "context": await self.get_context(),
            "tasks": await self.tasks(),
            "knowledge": [e.to_dict() for e in await self.knowledge.entries()],
            "usage": dump_usage_record(await self.usage()),
        }
