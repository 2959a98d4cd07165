"""Per-identity actor — one worker task, one ordered inbox.

Every operation against an identity (scheduler ticks and admin requests)
is a job on the identity's queue. The worker runs jobs one at a time in
arrival order, so the Echo methods never overlap for one identity.
Different identities have different actors and run in parallel.

Ticks are coalesced: at most one tick waits in the queue per identity.
A failing job fails only its own future; the worker keeps going and is
restarted if it ever exits unexpectedly.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime
from typing import Any

log = logging.getLogger(__name__)

Job = Callable[[Any], Awaitable[Any]]


class EchoActor:
    def __init__(self, echo, name: str = ""):
        self.echo = echo
        self.name = name or getattr(getattr(echo, "instance", None), "id", "echo")
        self._queue: asyncio.Queue = asyncio.Queue()
        self._worker: asyncio.Task | None = None
        self._tick_pending = False
        self._stopping = False
        self.restarts = 0

    @property
    def running(self) -> bool:
        return self._worker is not None and not self._worker.done()

    @property
    def queue_depth(self) -> int:
        return self._queue.qsize()

    def start(self) -> None:
        if self.running:
            return
        self._stopping = False
        self._worker = asyncio.create_task(self._run(), name=f"echo-actor-{self.name}")
        self._worker.add_done_callback(self._on_worker_done)

    def submit(self, job: Job) -> asyncio.Future:
        """Queue a job; the returned future resolves with its result."""
        fut = asyncio.get_running_loop().create_future()
        self._queue.put_nowait((job, fut))
        return fut

    async def call(self, job: Job) -> Any:
        """Queue a job and wait for its result (exceptions propagate)."""
        return await self.submit(job)

    def post_tick(self, now: datetime | None = None) -> bool:
        """Queue an alarm check unless one is already waiting."""
        if self._tick_pending:
            return False
        self._tick_pending = True
        self._queue.put_nowait((self._tick(now), None))
        return True

    def _tick(self, now: datetime | None) -> Job:
        async def job(echo):
            self._tick_pending = False
            return await echo.fire_due_alarm(now or datetime.now(UTC))
        return job

    async def _run(self) -> None:
        while True:
            item = await self._queue.get()
            if item is None:
                return
            job, fut = item
            if fut is not None and fut.cancelled():
                continue
            try:
                result = await job(self.echo)
            except asyncio.CancelledError:
                if fut is not None and not fut.done():
                    fut.cancel()
                raise
            except Exception as e:
                if fut is None:
                    log.error("[%s] background job failed: %s", self.name, e, exc_info=True)
                elif not fut.done():
                    fut.set_exception(e)
            else:
                if fut is not None and not fut.done():
                    fut.set_result(result)

    def _on_worker_done(self, task: asyncio.Task) -> None:
        if self._stopping or task.cancelled():
            return
        exc = task.exception()
        log.error("[%s] actor worker exited unexpectedly (%s); restarting", self.name, exc)
        self.restarts += 1
        self._tick_pending = False
        self.start()

    async def stop(self, timeout: float | None = None) -> None:
        """Finish queued jobs, then stop. Cancels the worker after timeout."""
        if self._worker is None:
            return
        self._stopping = True
        self._queue.put_nowait(None)
        try:
            await asyncio.wait_for(asyncio.shield(self._worker), timeout=timeout)
        except TimeoutError:
            log.warning("[%s] actor did not stop within %.0fs; cancelling", self.name, timeout)
            self._worker.cancel()
            try:
                await self._worker
            except asyncio.CancelledError:
                pass
        self._fail_pending()

    def _fail_pending(self) -> None:
        while not self._queue.empty():
            item = self._queue.get_nowait()
            if item is None:
                continue
            _, fut = item
            if fut is not None and not fut.done():
                fut.set_exception(RuntimeError(f"actor {self.name} stopped"))
