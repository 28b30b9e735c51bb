"""Tests for scheduled jobs and the cron handler."""

from __future__ import annotations

from datetime import timedelta, timezone

import pytest

from invoicing_runtime.di.container import Container
from invoicing_runtime.events.bus import EventBusService
from invoicing_runtime.events.envelope import EventEnvelope
from invoicing_runtime.events.handler import HandlerContext
from invoicing_runtime.events.scheduler import (
    InMemoryJobRepository,
    JobScheduler,
    ScheduledJob,
    cron_handler,
)
from invoicing_runtime.events.transport import MemoryTransport

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


class FlakyBus:
    """Bus double failing for one event type."""

    def __init__(self, failing: str) -> None:
        self.failing = failing
        self.sent: list[tuple[str, dict]] = []

    async def send(self, name, payload, **kwargs):
        if name == self.failing:
            raise ConnectionError("bus unavailable")
        self.sent.append((name, payload))
        return f"evt-{len(self.sent)}"


@pytest.fixture
def repository() -> InMemoryJobRepository:
    return InMemoryJobRepository()


@pytest.fixture
def transport() -> MemoryTransport:
    return MemoryTransport()


@pytest.fixture
def scheduler(repository, transport, sim_clock) -> JobScheduler:
    return JobScheduler(repository, EventBusService(transport), sim_clock)


# ===========================================================================
# Repository
# ===========================================================================


class TestInMemoryJobRepository:
    async def test_list_due_sorted_and_filtered(self, repository, sim_clock):
        now = sim_clock.now()
        late = ScheduledJob(run_after=now - timedelta(minutes=1), event_type="b")
        early = ScheduledJob(run_after=now - timedelta(hours=1), event_type="a")
        future = ScheduledJob(run_after=now + timedelta(hours=1), event_type="c")
        for job in (late, early, future):
            await repository.save(job)

        due = await repository.list_due(now)
        assert [j.event_type for j in due] == ["a", "b"]

    async def test_delete(self, repository, sim_clock):
        job = ScheduledJob(run_after=sim_clock.now(), event_type="a")
        await repository.save(job)
        assert await repository.get(job.id) == job
        assert await repository.delete(job.id)
        assert not await repository.delete(job.id)
        assert await repository.get(job.id) is None


# ===========================================================================
# Scheduler
# ===========================================================================


class TestJobScheduler:
    async def test_schedule_stores_job(self, scheduler, repository, sim_clock):
        job = await scheduler.schedule(
            "invoice.later", {"invoiceId": "inv-1"}, sim_clock.now() + timedelta(days=1),
        )
        assert len(repository) == 1
        assert job.event_type == "invoice.later"

    async def test_schedule_with_explicit_id(self, scheduler, repository, sim_clock):
        await scheduler.schedule("x", {}, sim_clock.now(), job_id="job-1")
        assert await repository.get("job-1") is not None

    async def test_dispatch_due_sends_and_deletes(self, scheduler, repository, transport, sim_clock):
        due = await scheduler.schedule("invoice.later", {"invoiceId": "1"}, sim_clock.now())
        await scheduler.schedule("invoice.later", {"invoiceId": "2"}, sim_clock.now() + timedelta(hours=2))

        dispatched = await scheduler.dispatch_due()

        assert dispatched == [due.id]
        assert [e.payload for e in transport.get_history("invoice.later")] == [{"invoiceId": "1"}]
        assert len(repository) == 1

    async def test_dispatch_uses_clock_when_now_omitted(self, scheduler, sim_clock):
        await scheduler.schedule("x", {}, sim_clock.now() + timedelta(minutes=5))
        assert await scheduler.dispatch_due() == []
        sim_clock.advance(300)
        assert len(await scheduler.dispatch_due()) == 1

    async def test_failed_send_keeps_job_and_continues(self, repository, sim_clock):
        bus = FlakyBus(failing="broken")
        scheduler = JobScheduler(repository, bus, sim_clock)  # type: ignore[arg-type]
        now = sim_clock.now()
        bad = await scheduler.schedule("broken", {}, now - timedelta(minutes=2))
        good = await scheduler.schedule("ok", {"n": 1}, now - timedelta(minutes=1))

        dispatched = await scheduler.dispatch_due()

        assert dispatched == [good.id]
        assert bus.sent == [("ok", {"n": 1})]
        assert await repository.get(bad.id) is not None

    async def test_naive_and_aware_jobs_dispatched_together(self, scheduler, transport, sim_clock):
        now = sim_clock.now()
        aware = await scheduler.schedule("receipt", {"id": "aware"}, now - timedelta(minutes=1))
        naive = await scheduler.schedule(
            "receipt", {"id": "naive"}, (now - timedelta(minutes=2)).replace(tzinfo=None),
        )

        dispatched = await scheduler.dispatch_due()

        assert dispatched == [naive.id, aware.id]
        assert naive.run_after.tzinfo is timezone.utc
        assert [e.payload["id"] for e in transport.get_history("receipt")] == ["naive", "aware"]

    async def test_naive_now_accepted(self, scheduler, sim_clock):
        await scheduler.schedule("x", {}, sim_clock.now())
        assert len(await scheduler.dispatch_due(sim_clock.now().replace(tzinfo=None))) == 1

    async def test_cancel(self, scheduler, repository, sim_clock):
        job = await scheduler.schedule("x", {}, sim_clock.now())
        assert await scheduler.cancel(job.id)
        assert len(repository) == 0


# ===========================================================================
# Cron handler
# ===========================================================================


class TestCronHandler:
    async def test_cron_dispatches_due_jobs(self, scheduler, transport, sim_clock):
        container = Container()
        container.bind_value(JobScheduler, scheduler)
        await scheduler.schedule("receipt", {"id": "abc"}, sim_clock.now())

        envelope = EventEnvelope(
            name="cron", payload={"id": "cron-1", "triggeredAt": "2024-06-01T00:00:00.000Z"},
        )
        await cron_handler(envelope, HandlerContext(container=container, logger=None))  # type: ignore[arg-type]

        assert [e.payload for e in transport.get_history("receipt")] == [{"id": "abc"}]
