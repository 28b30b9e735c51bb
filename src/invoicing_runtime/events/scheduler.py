"""Time-based jobs: events that are sent once their run time has passed.

``JobScheduler.schedule()`` stores a job; a periodic ``cron`` event runs
``dispatch_due()``, which sends each due job's event and deletes the job
after the send succeeded.  A job whose send fails is logged and left in
place for the next run, and the remaining jobs are still processed.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Protocol

from pydantic import BaseModel, Field, field_validator

from invoicing_runtime.core.clock import IClock, WallClock
from invoicing_runtime.core.ids import new_id

from .bus import EventBusService
from .envelope import EventEnvelope
from .handler import HandlerContext, make_event_handler

logger = logging.getLogger(__name__)


class ScheduledJob(BaseModel):
    """An event to send at or after ``run_after``."""

    id: str = Field(default_factory=new_id)
    run_after: datetime
    event_type: str
    event_payload: dict[str, Any] = Field(default_factory=dict)

    @field_validator("run_after")
    @classmethod
    def _utc_run_after(cls, v: datetime) -> datetime:
        return _as_utc(v)


def _as_utc(value: datetime) -> datetime:
    """Naive datetimes are taken to be UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class JobRepository(Protocol):
    async def save(self, job: ScheduledJob) -> None:
        ...

    async def get(self, job_id: str) -> ScheduledJob | None:
        ...

    async def list_due(self, now: datetime) -> list[ScheduledJob]:
        """Jobs with ``run_after <= now``, oldest first."""
        ...

    async def delete(self, job_id: str) -> bool:
        ...


class InMemoryJobRepository:
    """Dict-backed ``JobRepository`` for tests and single-process runs."""

    def __init__(self) -> None:
        self._jobs: dict[str, ScheduledJob] = {}
        self._lock = asyncio.Lock()

    async def save(self, job: ScheduledJob) -> None:
        async with self._lock:
            self._jobs[job.id] = job

    async def get(self, job_id: str) -> ScheduledJob | None:
        return self._jobs.get(job_id)

    async def list_due(self, now: datetime) -> list[ScheduledJob]:
        now = _as_utc(now)
        async with self._lock:
            due = [j for j in self._jobs.values() if j.run_after <= now]
        return sorted(due, key=lambda j: j.run_after)

    async def delete(self, job_id: str) -> bool:
        async with self._lock:
            return self._jobs.pop(job_id, None) is not None

    def __len__(self) -> int:
        return len(self._jobs)


class JobScheduler:
    """Stores jobs and sends the due ones through the event bus."""

    def __init__(
        self,
        repository: JobRepository,
        bus: EventBusService,
        clock: IClock | None = None,
    ) -> None:
        self._repository = repository
        self._bus = bus
        self._clock = clock or WallClock()

    async def schedule(
        self,
        event_type: str,
        event_payload: dict[str, Any],
        run_after: datetime,
        *,
        job_id: str | None = None,
    ) -> ScheduledJob:
        job = ScheduledJob(
            id=job_id or new_id(),
            run_after=run_after,
            event_type=event_type,
            event_payload=event_payload,
        )
        await self._repository.save(job)
        logger.info(
            "Scheduled job %s (%s) for %s", job.id, event_type, run_after.isoformat(),
        )
        return job

    async def cancel(self, job_id: str) -> bool:
        return await self._repository.delete(job_id)

    async def dispatch_due(self, now: datetime | None = None) -> list[str]:
        """Send every job due at *now*; returns the ids of dispatched jobs."""
        now = _as_utc(now or self._clock.now())
        jobs = await self._repository.list_due(now)
        logger.info("Found %d due jobs", len(jobs))

        dispatched: list[str] = []
        for job in jobs:
            try:
                await self._bus.send(job.event_type, job.event_payload)
                logger.info("Dispatched job %s event=%s", job.id, job.event_type)
                await self._repository.delete(job.id)
                dispatched.append(job.id)
            except Exception:
                logger.exception("Failed to dispatch or delete job %s", job.id)
        return dispatched


# ---------------------------------------------------------------------------
# Built-in ``cron`` event handler
# ---------------------------------------------------------------------------


class CronEvent(BaseModel):
    id: str
    triggered_at: datetime | None = Field(default=None, alias="triggeredAt")

    model_config = {"populate_by_name": True}


async def _run_cron(event: CronEvent, envelope: EventEnvelope, ctx: HandlerContext) -> None:
    scheduler: JobScheduler = await ctx.container.aget(JobScheduler)
    dispatched = await scheduler.dispatch_due()
    ctx.logger.info("Cron run complete", cron_id=event.id, dispatched=len(dispatched))


cron_handler = make_event_handler(CronEvent, _run_cron)
