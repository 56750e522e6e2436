"""
Tests for the worker pool (app/workers/pool.py).

These tests verify:
  - Successful handlers complete their job in the handler's transaction
  - A failing handler's database writes are rolled back
  - Jobs of unknown kind are dead-lettered and the pool keeps going
  - JobDiscardError and PermanentProviderError dead-letter immediately
  - Other exceptions are retried until max_attempts, then dead-lettered
  - run() stops cleanly when asked
  - Jobs abandoned by a dead worker are rescued by housekeeping and rerun
"""

import asyncio
from datetime import timedelta

from sqlalchemy import select, update

from app.clock import utcnow
from app.exceptions import JobDiscardError, JobRetryableError
from app.models.invoice import Invoice
from app.models.job import Job, JobState
from app.providers.base import PermanentProviderError
from app.services import job_store
from app.services.job_store import RetryPolicy
from app.workers.handlers import build_housekeeping
from app.workers.pool import WorkerPool


def make_pool(session_factory, test_settings, catalog, handlers):
    return WorkerPool(
        session_factory,
        handlers,
        settings=test_settings,
        catalog=catalog,
        providers={},
        retry_policy=RetryPolicy(base_seconds=0, max_seconds=0, jitter=0),
        worker_id="pool-test",
    )


async def enqueue(session_factory, kind, args=None, **kwargs):
    async with session_factory() as db:
        job_id = await job_store.enqueue(db, kind, args or {}, **kwargs)
        await db.commit()
    return job_id


async def load_job(session_factory, job_id):
    async with session_factory() as db:
        return await job_store.get_job(db, job_id)


class TestExecution:

    async def test_successful_handler_completes_job(self, session_factory, test_settings, catalog):
        seen = []

        async def handler(ctx, db):
            seen.append((ctx.kind, ctx.args, ctx.attempt))

        pool = make_pool(session_factory, test_settings, catalog, {"greet": handler})
        job_id = await enqueue(session_factory, "greet", {"name": "ada"})

        assert await pool.drain() == 1

        job = await load_job(session_factory, job_id)
        assert job.state == JobState.COMPLETED
        assert seen == [("greet", {"name": "ada"}, 1)]

    async def test_failed_handler_writes_are_rolled_back(self, session_factory, test_settings, catalog):
        async def handler(ctx, db):
            db.add(Invoice(number="INV-ROLLBACK", customer_name="Nobody"))
            await db.flush()
            raise RuntimeError("after write")

        pool = make_pool(session_factory, test_settings, catalog, {"write": handler})
        await enqueue(session_factory, "write", max_attempts=1)

        await pool.drain()

        async with session_factory() as db:
            result = await db.execute(select(Invoice).where(Invoice.number == "INV-ROLLBACK"))
            assert result.scalar_one_or_none() is None

    async def test_unknown_kind_is_discarded_and_pool_continues(self, session_factory, test_settings, catalog):
        ran = []

        async def handler(ctx, db):
            ran.append(ctx.job_id)

        pool = make_pool(session_factory, test_settings, catalog, {"known": handler})
        unknown_id = await enqueue(session_factory, "mystery")
        known_id = await enqueue(session_factory, "known")

        assert await pool.drain() == 2

        unknown = await load_job(session_factory, unknown_id)
        assert unknown.state == JobState.DISCARDED
        assert unknown.errors[-1]["error"] == "no handler registered for kind 'mystery'"
        assert ran == [known_id]


class TestFailures:

    async def test_discard_error_dead_letters_immediately(self, session_factory, test_settings, catalog):
        async def handler(ctx, db):
            raise JobDiscardError("record vanished")

        pool = make_pool(session_factory, test_settings, catalog, {"k": handler})
        job_id = await enqueue(session_factory, "k", max_attempts=5)

        await pool.drain()

        job = await load_job(session_factory, job_id)
        assert job.state == JobState.DISCARDED
        assert job.attempt == 1
        assert job.errors[-1]["error"] == "record vanished"

    async def test_permanent_provider_error_is_not_retried(self, session_factory, test_settings, catalog):
        async def handler(ctx, db):
            raise PermanentProviderError("card declined", status_code=402)

        pool = make_pool(session_factory, test_settings, catalog, {"k": handler})
        job_id = await enqueue(session_factory, "k", max_attempts=5)

        await pool.drain()

        job = await load_job(session_factory, job_id)
        assert job.state == JobState.DISCARDED
        assert job.attempt == 1

    async def test_retries_until_max_attempts(self, session_factory, test_settings, catalog):
        attempts = []

        async def handler(ctx, db):
            attempts.append((ctx.attempt, ctx.is_final_attempt))
            raise JobRetryableError("not yet")

        pool = make_pool(session_factory, test_settings, catalog, {"k": handler})
        job_id = await enqueue(session_factory, "k", max_attempts=3)

        assert await pool.drain() == 3

        job = await load_job(session_factory, job_id)
        assert job.state == JobState.DISCARDED
        assert job.attempt == 3
        assert len(job.errors) == 3
        assert attempts == [(1, False), (2, False), (3, True)]

    async def test_recovers_after_transient_failures(self, session_factory, test_settings, catalog):
        calls = []

        async def handler(ctx, db):
            calls.append(ctx.attempt)
            if ctx.attempt < 3:
                raise ConnectionError("flaky")

        pool = make_pool(session_factory, test_settings, catalog, {"k": handler})
        job_id = await enqueue(session_factory, "k", max_attempts=5)

        await pool.drain()

        job = await load_job(session_factory, job_id)
        assert job.state == JobState.COMPLETED
        assert job.attempt == 3
        assert len(job.errors) == 2
        assert calls == [1, 2, 3]


class TestRun:

    async def test_run_processes_jobs_until_stopped(self, session_factory, test_settings, catalog):
        done = asyncio.Event()

        async def handler(ctx, db):
            done.set()

        pool = make_pool(session_factory, test_settings, catalog, {"k": handler})
        pool.poll_interval = 0.01
        job_id = await enqueue(session_factory, "k")

        stop = asyncio.Event()
        task = asyncio.create_task(pool.run(stop))
        await asyncio.wait_for(done.wait(), timeout=5)
        stop.set()
        await asyncio.wait_for(task, timeout=5)

        job = await load_job(session_factory, job_id)
        assert job.state == JobState.COMPLETED


class TestCrashRecovery:

    async def test_job_of_a_dead_worker_is_rescued_and_rerun(self, session_factory, test_settings, catalog):
        """A claim committed by a worker that then died is picked up again by housekeeping."""
        calls = []

        async def handler(ctx, db):
            calls.append(ctx.attempt)

        pool = make_pool(session_factory, test_settings, catalog, {"k": handler})
        job_id = await enqueue(session_factory, "k", max_attempts=5)

        async with session_factory() as db:
            await job_store.claim(db, "default", "dead-worker")
            await db.execute(
                update(Job).where(Job.id == job_id).values(attempted_at=utcnow() - timedelta(days=1))
            )
            await db.commit()
        assert await pool.drain() == 0

        housekeeping = build_housekeeping(test_settings)
        async with session_factory() as db:
            assert await housekeeping(db) == 1
            await db.commit()

        assert await pool.drain() == 1
        job = await load_job(session_factory, job_id)
        assert job.state == JobState.COMPLETED
        assert calls == [2]
        assert [e["error"] for e in job.errors] == [job_store.WORKER_LOST_ERROR]
