from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Awaitable, Callable

from checkpoints.store import insert_audit_log_sync
from config.defaults import MIN_JOB_INTERVAL_SECONDS


JobFunc = Callable[[], Awaitable[object]]


@dataclass(slots=True)
class ScheduledJob:
    name: str
    func: JobFunc
    interval_seconds: int
    run_immediately: bool = True


class JobScheduler:
    """Runs named jobs on fixed intervals.

    Every job gets its own task and lock, so a slow tick delays only the next
    tick of the same job. Errors are printed and written to ``audit_log`` as
    ``<name>_error``; the loop keeps going.
    """

    def __init__(self, *, db_lock=None, db_conn=None, min_interval_seconds: int = MIN_JOB_INTERVAL_SECONDS) -> None:
        self.db_lock = db_lock
        self.db_conn = db_conn
        self.min_interval_seconds = max(1, int(min_interval_seconds))
        self._jobs: dict[str, ScheduledJob] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._tasks: dict[str, asyncio.Task] = {}

    @property
    def job_names(self) -> list[str]:
        return list(self._jobs.keys())

    @property
    def running(self) -> bool:
        return any(not t.done() for t in self._tasks.values())

    def add_job(self, name: str, func: JobFunc, interval_seconds: int, *, run_immediately: bool = True) -> ScheduledJob:
        key = (name or "").strip()
        if not key:
            raise ValueError("job name is required")
        if key in self._jobs:
            raise ValueError(f"job already registered: {key}")
        job = ScheduledJob(
            name=key,
            func=func,
            interval_seconds=max(self.min_interval_seconds, int(interval_seconds)),
            run_immediately=run_immediately,
        )
        self._jobs[key] = job
        self._locks[key] = asyncio.Lock()
        return job

    async def _audit(self, event_type: str, message: str) -> None:
        if self.db_lock is None or self.db_conn is None:
            return
        try:
            async with self.db_lock:
                await asyncio.to_thread(insert_audit_log_sync, self.db_conn, event_type, message)
        except Exception as e:
            print(f"[Scheduler] audit write failed type={event_type}: {e}")

    async def run_once(self, name: str) -> bool:
        """Run one tick of ``name``; returns False when the tick raised."""
        job = self._jobs.get(name)
        if job is None:
            raise KeyError(name)
        async with self._locks[name]:
            try:
                await job.func()
                return True
            except asyncio.CancelledError:
                raise
            except Exception as e:
                print(f"[Scheduler] job={name} error: {e}")
                await self._audit(f"{name}_error", f"{type(e).__name__}: {e}")
                return False

    async def _loop(self, job: ScheduledJob) -> None:
        if not job.run_immediately:
            await asyncio.sleep(job.interval_seconds)
        while True:
            await self.run_once(job.name)
            await asyncio.sleep(job.interval_seconds)

    def start(self) -> None:
        for name, job in self._jobs.items():
            task = self._tasks.get(name)
            if task is not None and not task.done():
                continue
            self._tasks[name] = asyncio.create_task(self._loop(job), name=f"job:{name}")
            print(f"[Scheduler] started job={name} interval={job.interval_seconds}s")

    async def stop(self) -> None:
        tasks = [t for t in self._tasks.values() if not t.done()]
        for t in tasks:
            t.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()
