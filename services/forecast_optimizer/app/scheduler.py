"""Priority scheduler for pending optimization jobs."""

from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Callable, Dict, Optional

import structlog

from .config import get_concurrency_budget, get_poll_interval_seconds
from .observability import emit_metric
from .runner import run_job
from .store import RUNNING, JobStore, get_store

logger = structlog.get_logger()

INTERRUPTED_ERROR = "INTERNAL_ERROR: job interrupted before completion"

JobRunner = Callable[..., Awaitable[Dict[str, Any]]]


class Scheduler:
    """Selects pending jobs in priority order and runs them under a budget.

    One selection pass runs at a time. A pass claims up to the free capacity,
    launches a task per job and waits for all of them to settle. The loop then
    selects again straight away; when a pass launched nothing it sleeps until
    ``wake()`` is called or the poll interval elapses.
    """

    def __init__(
        self,
        *,
        budget: Optional[int] = None,
        poll_interval: Optional[float] = None,
        store: Optional[JobStore] = None,
        runner: JobRunner = run_job,
    ) -> None:
        self.budget = max(1, budget or get_concurrency_budget())
        self.poll_interval = poll_interval or get_poll_interval_seconds()
        self._store = store
        self._runner = runner
        self._running = 0
        self._peak_running = 0
        self._pass_lock = asyncio.Lock()
        self._wake = asyncio.Event()
        self._task: Optional[asyncio.Task] = None
        self._stopping = False
        self.passes = 0

    @property
    def store(self) -> JobStore:
        return self._store or get_store()

    @property
    def running(self) -> int:
        return self._running

    @property
    def peak_running(self) -> int:
        return self._peak_running

    @property
    def is_active(self) -> bool:
        return self._task is not None and not self._task.done()

    def wake(self) -> None:
        self._wake.set()

    async def run_pass(self) -> int:
        """Run one selection pass; returns the number of jobs launched."""

        if self._pass_lock.locked() or self._running >= self.budget:
            return 0
        async with self._pass_lock:
            self.passes += 1
            store = self.store
            capacity = self.budget - self._running
            tasks = []
            claimed = []
            for job in store.fetch_pending(capacity):
                if not store.claim(job["id"]):
                    continue
                claimed.append(job["id"])
                self._running += 1
                self._peak_running = max(self._peak_running, self._running)
                task = asyncio.create_task(self._runner({**job, "status": RUNNING}, store=store))
                task.add_done_callback(self._job_done)
                tasks.append(task)
            if not tasks:
                return 0
            emit_metric("active_jobs", float(self._running), tags={"component": "scheduler"})
            try:
                outcomes = await asyncio.gather(*tasks, return_exceptions=True)
            except asyncio.CancelledError:
                # tasks cancelled before their first step never reach the runner's terminal write
                for job_id in claimed:
                    store.fail(job_id, INTERRUPTED_ERROR)
                raise
            for outcome in outcomes:
                if isinstance(outcome, BaseException):
                    logger.error("job_task_crashed", error=repr(outcome))
            return len(tasks)

    async def drain(self) -> int:
        """Run passes until nothing is pending; returns total jobs launched."""

        total = 0
        while True:
            launched = await self.run_pass()
            if not launched:
                return total
            total += launched

    def _job_done(self, _task: asyncio.Task) -> None:
        self._running -= 1

    async def run_forever(self) -> None:
        logger.info("scheduler_started", budget=self.budget, poll_interval=self.poll_interval)
        while not self._stopping:
            self._wake.clear()
            try:
                launched = await self.run_pass()
            except Exception as exc:
                logger.exception("scheduler_pass_failed", exc_info=exc)
                launched = 0
            if launched or self._stopping:
                continue
            try:
                await asyncio.wait_for(self._wake.wait(), timeout=self.poll_interval)
            except asyncio.TimeoutError:
                pass
        logger.info("scheduler_stopped", passes=self.passes)

    def recover(self) -> int:
        """Fail rows left running by a previous process."""

        recovered = self.store.fail_running(INTERRUPTED_ERROR)
        if recovered:
            logger.warning("stale_running_jobs_failed", count=recovered)
        return recovered

    def start(self) -> asyncio.Task:
        if not self.is_active:
            self._stopping = False
            self._task = asyncio.create_task(self.run_forever())
        return self._task

    async def stop(self) -> None:
        self._stopping = True
        self._wake.set()
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
