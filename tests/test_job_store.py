"""
Tests for the job store (app/services/job_store.py).

These tests verify:
  - Unique keys collapse duplicate enqueues into one job
  - Claiming marks a job running, counts the attempt and respects
    scheduled_at, queue and priority
  - Concurrent claimers never get the same job
  - Failed attempts are retried with backoff, then dead-lettered
  - Dead-lettered jobs stay queryable and can be retried by an operator
  - Jobs left running by a dead worker are rescued into the retry path
  - Backoff delays stay within their bounds
"""

import asyncio
import random
from datetime import timedelta

import pytest
from sqlalchemy import update

from app.clock import utcnow
from app.exceptions import InvalidTransitionError, JobNotFoundError
from app.models.job import Job, JobState
from app.services import job_store
from app.services.job_store import RetryPolicy, backoff_delay

NO_DELAY = RetryPolicy(base_seconds=0, max_seconds=0, jitter=0)


class TestEnqueue:

    async def test_enqueue_returns_id_and_stores_available_job(self, db_session):
        job_id = await job_store.enqueue(db_session, "sync_entity_payment", {"transaction_id": "t1"})
        await db_session.commit()

        job = await job_store.get_job(db_session, job_id)
        assert job.state == JobState.AVAILABLE
        assert job.attempt == 0
        assert job.queue == "default"
        assert job.args == {"transaction_id": "t1"}
        assert job.errors == []

    async def test_unique_key_deduplicates(self, db_session):
        """Enqueuing the same side effect twice yields a single job."""
        first = await job_store.enqueue(db_session, "notify", {"n": 1}, unique_key="notify:abc")
        second = await job_store.enqueue(db_session, "notify", {"n": 2}, unique_key="notify:abc")
        await db_session.commit()

        assert first is not None
        assert second is None
        assert await job_store.count_jobs(db_session, kind="notify") == 1

    async def test_priority_out_of_range_is_rejected(self, db_session):
        with pytest.raises(ValueError):
            await job_store.enqueue(db_session, "notify", {}, priority=5)


class TestClaim:

    async def test_claim_marks_running_and_counts_attempt(self, db_session):
        job_id = await job_store.enqueue(db_session, "k", {})
        await db_session.commit()

        job = await job_store.claim(db_session, "default", "worker-a")
        await db_session.commit()

        assert job.id == job_id
        assert job.state == JobState.RUNNING
        assert job.attempt == 1
        assert job.attempted_by == "worker-a"
        assert await job_store.claim(db_session, "default", "worker-a") is None

    async def test_claim_skips_future_jobs_and_other_queues(self, db_session):
        await job_store.enqueue(db_session, "k", {}, scheduled_at=utcnow() + timedelta(hours=1))
        await job_store.enqueue(db_session, "k", {}, queue="notifications")
        await db_session.commit()

        assert await job_store.claim(db_session, "default", "w") is None

    async def test_claim_orders_by_priority(self, db_session):
        low = await job_store.enqueue(db_session, "k", {}, priority=3)
        high = await job_store.enqueue(db_session, "k", {}, priority=1)
        await db_session.commit()

        first = await job_store.claim(db_session, "default", "w")
        second = await job_store.claim(db_session, "default", "w")
        assert (first.id, second.id) == (high, low)

    async def test_concurrent_claimers_get_distinct_jobs(self, session_factory):
        """No job is handed to two workers."""
        async with session_factory() as db:
            for _ in range(3):
                await job_store.enqueue(db, "k", {})
            await db.commit()

        async def claimer(name):
            async with session_factory() as db:
                job = await job_store.claim(db, "default", name)
                await db.commit()
                return job.id if job else None

        claimed = await asyncio.gather(*(claimer(f"w{i}") for i in range(3)))
        claimed = [job_id for job_id in claimed if job_id is not None]
        assert len(claimed) == len(set(claimed))

        async with session_factory() as db:
            running = await job_store.count_jobs(db, state=JobState.RUNNING)
        assert running == len(claimed)


class TestFailAndRetry:

    async def test_complete(self, db_session):
        job_id = await job_store.enqueue(db_session, "k", {})
        await job_store.claim(db_session, "default", "w")
        assert await job_store.complete(db_session, job_id) is True
        assert await job_store.complete(db_session, job_id) is False

        job = await job_store.get_job(db_session, job_id)
        assert job.state == JobState.COMPLETED
        assert job.finalized_at is not None

    async def test_retryable_failure_reschedules_with_backoff(self, db_session):
        job_id = await job_store.enqueue(db_session, "k", {}, max_attempts=3)
        await job_store.claim(db_session, "default", "w")
        now = utcnow()

        policy = RetryPolicy(base_seconds=10, max_seconds=100, jitter=0)
        state = await job_store.fail(db_session, job_id, "boom", policy=policy, now=now)

        job = await job_store.get_job(db_session, job_id)
        assert state == JobState.AVAILABLE
        assert job.errors[0]["error"] == "boom"
        assert job.errors[0]["attempt"] == 1
        # Not due yet
        assert await job_store.claim(db_session, "default", "w", now=now) is None
        assert await job_store.claim(db_session, "default", "w", now=now + timedelta(seconds=10)) is not None

    async def test_job_is_discarded_after_max_attempts_and_stays_queryable(self, db_session):
        job_id = await job_store.enqueue(db_session, "k", {}, max_attempts=3)

        states = []
        for attempt in range(3):
            job = await job_store.claim(db_session, "default", "w")
            assert job.attempt == attempt + 1
            states.append(await job_store.fail(db_session, job_id, f"error {attempt + 1}", policy=NO_DELAY))
        await db_session.commit()

        assert states == [JobState.AVAILABLE, JobState.AVAILABLE, JobState.DISCARDED]
        job = await job_store.get_job(db_session, job_id)
        assert job.state == JobState.DISCARDED
        assert [e["error"] for e in job.errors] == ["error 1", "error 2", "error 3"]
        assert await job_store.claim(db_session, "default", "w") is None

        dead = await job_store.list_jobs(db_session, state=JobState.DISCARDED)
        assert [j.id for j in dead] == [job_id]

    async def test_non_retryable_failure_discards_immediately(self, db_session):
        job_id = await job_store.enqueue(db_session, "k", {}, max_attempts=5)
        await job_store.claim(db_session, "default", "w")

        state = await job_store.fail(db_session, job_id, "bad args", retryable=False, policy=NO_DELAY)

        assert state == JobState.DISCARDED

    async def test_error_messages_are_truncated(self, db_session):
        job_id = await job_store.enqueue(db_session, "k", {})
        await job_store.claim(db_session, "default", "w")
        await job_store.fail(db_session, job_id, "x" * 5000, policy=NO_DELAY)

        job = await job_store.get_job(db_session, job_id)
        assert len(job.errors[0]["error"]) == job_store.MAX_ERROR_LENGTH

    async def test_retry_discarded_gives_fresh_attempts(self, db_session):
        job_id = await job_store.enqueue(db_session, "k", {}, max_attempts=1)
        await job_store.claim(db_session, "default", "w")
        await job_store.fail(db_session, job_id, "boom", policy=NO_DELAY)

        job = await job_store.retry_discarded(db_session, job_id)

        assert job.state == JobState.AVAILABLE
        assert job.max_attempts == 2
        assert job.finalized_at is None
        assert len(job.errors) == 1
        claimed = await job_store.claim(db_session, "default", "w")
        assert claimed.id == job_id

    async def test_retry_requires_discarded_job(self, db_session):
        job_id = await job_store.enqueue(db_session, "k", {})
        with pytest.raises(InvalidTransitionError):
            await job_store.retry_discarded(db_session, job_id)

    async def test_unknown_job(self, db_session):
        with pytest.raises(JobNotFoundError):
            await job_store.get_job(db_session, 424242)


class TestRescueStuck:
    """A worker that dies mid-attempt must not take its job with it."""

    @staticmethod
    async def abandon(db, job_id, *, age):
        """Claim the job as a worker that never reports back, `age` ago."""
        await job_store.claim(db, "default", "dead-worker")
        await db.execute(
            update(Job).where(Job.id == job_id).values(attempted_at=utcnow() - age)
        )
        await db.commit()

    async def test_stuck_job_is_made_available_again(self, db_session):
        job_id = await job_store.enqueue(db_session, "k", {}, max_attempts=3)
        await self.abandon(db_session, job_id, age=timedelta(hours=1))

        rescued = await job_store.rescue_stuck(db_session, 600, policy=NO_DELAY)
        await db_session.commit()

        assert rescued == 1
        job = await job_store.get_job(db_session, job_id)
        assert job.state == JobState.AVAILABLE
        assert job.errors[-1]["error"] == job_store.WORKER_LOST_ERROR
        assert job.errors[-1]["attempt"] == 1

        reclaimed = await job_store.claim(db_session, "default", "w2")
        assert reclaimed.id == job_id
        assert reclaimed.attempt == 2

    async def test_recent_running_job_is_left_alone(self, db_session):
        job_id = await job_store.enqueue(db_session, "k", {})
        await self.abandon(db_session, job_id, age=timedelta(seconds=5))

        assert await job_store.rescue_stuck(db_session, 600, policy=NO_DELAY) == 0
        assert (await job_store.get_job(db_session, job_id)).state == JobState.RUNNING

    async def test_stuck_job_on_its_last_attempt_is_dead_lettered(self, db_session):
        job_id = await job_store.enqueue(db_session, "k", {}, max_attempts=1)
        await self.abandon(db_session, job_id, age=timedelta(hours=1))

        await job_store.rescue_stuck(db_session, 600, policy=NO_DELAY)
        await db_session.commit()

        job = await job_store.get_job(db_session, job_id)
        assert job.state == JobState.DISCARDED
        assert job.finalized_at is not None

    async def test_finished_jobs_are_not_touched(self, db_session):
        done = await job_store.enqueue(db_session, "k", {})
        await self.abandon(db_session, done, age=timedelta(hours=1))
        await job_store.complete(db_session, done)
        await db_session.commit()

        assert await job_store.rescue_stuck(db_session, 600, policy=NO_DELAY) == 0
        assert (await job_store.get_job(db_session, done)).state == JobState.COMPLETED


class TestBackoff:

    @pytest.mark.parametrize("attempt,expected", [(1, 1), (2, 2), (3, 4), (5, 16)])
    def test_exponential_without_jitter(self, attempt, expected):
        delay = backoff_delay(attempt, base_seconds=1, max_seconds=3600, jitter=0)
        assert delay == timedelta(seconds=expected)

    def test_capped_and_jitter_bounded(self):
        rng = random.Random(7)
        for attempt in range(1, 30):
            delay = backoff_delay(attempt, base_seconds=1, max_seconds=60, jitter=0.1, rng=rng)
            capped = min(60, 2 ** (attempt - 1))
            assert capped <= delay.total_seconds() < capped * 1.1 + 1e-9
