"""
Job store: durable, at-least-once job queue on top of the jobs table.

Producers call enqueue() inside their own database transaction, so a job
exists if and only if the state change that needs it committed. Workers call
claim() / complete() / fail() in short transactions of their own.

Claiming:
  On PostgreSQL the candidate row is selected with FOR UPDATE SKIP LOCKED,
  so concurrent workers never wait on each other. The state change itself is
  a compare-and-swap UPDATE ... WHERE state = 'available', which is what
  keeps a job from being claimed twice on SQLite (where row locks are no-ops).

Retries:
  fail() appends the error to the job's history. While attempts remain the
  job goes back to `available` with an exponential backoff delay:

      delay = min(base * 2 ** (attempt - 1), max) * (1 + jitter * U[0, 1))

  Once attempts are exhausted, or when the failure is not retryable, the job
  is `discarded`: it stays in the table as a dead letter with its errors.

Crash recovery:
  A worker that dies mid-attempt leaves its job `running`. rescue_stuck(),
  run from the worker housekeeping loop, treats attempts older than
  JOB_RESCUE_AFTER_SECONDS as failed with "worker lost" and sends them
  through the same retry / dead-letter path.

Uniqueness:
  enqueue(..., unique_key=...) is an INSERT that the database ignores when a
  job with the same key already exists, so enqueuing the same side effect
  twice (e.g. from a duplicated webhook) yields one job.
"""

import logging
import random
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.clock import utcnow
from app.config import Settings
from app.database import insert_ignore, insert_returning_id
from app.exceptions import InvalidTransitionError, JobNotFoundError
from app.models.job import DEFAULT_QUEUE, Job, JobState

logger = logging.getLogger(__name__)

# Stored error messages are truncated to keep rows small
MAX_ERROR_LENGTH = 2000

# Attempt budget for jobs whose producer does not set one
DEFAULT_MAX_ATTEMPTS = 5

# Error recorded on jobs taken back from a worker that stopped reporting
WORKER_LOST_ERROR = "worker lost"

# Claim attempts before giving up for this poll when other workers keep winning
CLAIM_RACE_RETRIES = 5


# ---------------------------------------------------------------------------
# Retry policy
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class RetryPolicy:
    base_seconds: float = 1.0
    max_seconds: float = 3600.0
    jitter: float = 0.1

    @classmethod
    def from_settings(cls, settings: Settings) -> "RetryPolicy":
        return cls(
            base_seconds=settings.JOB_BACKOFF_BASE_SECONDS,
            max_seconds=settings.JOB_BACKOFF_MAX_SECONDS,
            jitter=settings.JOB_BACKOFF_JITTER,
        )

    def delay(self, attempt: int, *, rng: random.Random | None = None) -> timedelta:
        return backoff_delay(
            attempt,
            base_seconds=self.base_seconds,
            max_seconds=self.max_seconds,
            jitter=self.jitter,
            rng=rng,
        )


def backoff_delay(
    attempt: int,
    *,
    base_seconds: float = 1.0,
    max_seconds: float = 3600.0,
    jitter: float = 0.1,
    rng: random.Random | None = None,
) -> timedelta:
    """
    Delay before the next attempt after `attempt` attempts have failed.

    The exponential part is capped at max_seconds before jitter is added,
    so the result lies in [capped, capped * (1 + jitter)).
    """
    exponent = max(attempt - 1, 0)
    capped = min(max_seconds, base_seconds * (2 ** exponent))
    spread = (rng or random).random() * jitter * capped
    return timedelta(seconds=capped + spread)


# ---------------------------------------------------------------------------
# Producer side
# ---------------------------------------------------------------------------

async def enqueue(
    db: AsyncSession,
    kind: str,
    args: dict[str, Any],
    *,
    queue: str = DEFAULT_QUEUE,
    priority: int = 1,
    scheduled_at: datetime | None = None,
    max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    unique_key: str | None = None,
) -> int | None:
    """
    Insert an available job in the caller's transaction.

    Returns:
        The new job id, or None when unique_key matched an existing job.
    """
    if not 1 <= priority <= 4:
        raise ValueError(f"priority must be between 1 and 4, got {priority}")

    values = {
        "kind": kind,
        "args": args,
        "queue": queue,
        "priority": priority,
        "state": JobState.AVAILABLE,
        "attempt": 0,
        "max_attempts": max_attempts,
        "scheduled_at": scheduled_at or utcnow(),
        "errors": [],
        "unique_key": unique_key,
    }

    if unique_key is None:
        job_id = await insert_returning_id(db, Job, values)
    else:
        job_id = await insert_ignore(db, Job, values, conflict_columns=["unique_key"])
        if job_id is None:
            logger.debug("Job %s already enqueued, skipping", unique_key)
            return None

    logger.debug(
        "Enqueued %s job %s", kind, job_id,
        extra={"job_id": job_id, "job_kind": kind, "queue": queue},
    )
    return job_id


# ---------------------------------------------------------------------------
# Worker side
# ---------------------------------------------------------------------------

async def claim(
    db: AsyncSession,
    queue: str,
    worker_id: str,
    *,
    now: datetime | None = None,
) -> Job | None:
    """
    Claim the next due job in `queue` for `worker_id`.

    Marks it running and increments its attempt counter. The caller must
    commit to make the claim visible to other workers.
    """
    now = now or utcnow()

    for _ in range(CLAIM_RACE_RETRIES):
        candidate_id = await db.scalar(
            select(Job.id)
            .where(
                Job.state == JobState.AVAILABLE,
                Job.queue == queue,
                Job.scheduled_at <= now,
            )
            .order_by(Job.priority, Job.scheduled_at, Job.id)
            .limit(1)
            .with_for_update(skip_locked=True)
        )
        if candidate_id is None:
            return None

        result = await db.execute(
            update(Job)
            .where(Job.id == candidate_id, Job.state == JobState.AVAILABLE)
            .values(
                state=JobState.RUNNING,
                attempt=Job.attempt + 1,
                attempted_at=now,
                attempted_by=worker_id,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 1:
            return await db.get(Job, candidate_id, populate_existing=True)
        # Another worker claimed it between our SELECT and UPDATE

    return None


async def complete(db: AsyncSession, job_id: int, *, now: datetime | None = None) -> bool:
    """running -> completed. False if the job was not running (e.g. already finalized)."""
    result = await db.execute(
        update(Job)
        .where(Job.id == job_id, Job.state == JobState.RUNNING)
        .values(state=JobState.COMPLETED, finalized_at=now or utcnow())
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


async def fail(
    db: AsyncSession,
    job_id: int,
    error: str,
    *,
    retryable: bool = True,
    policy: RetryPolicy,
    now: datetime | None = None,
) -> str:
    """
    Record a failed attempt and either reschedule or dead-letter the job.

    Returns:
        The job's new state (available or discarded).
    """
    result = await db.execute(
        select(Job).where(Job.id == job_id).with_for_update().execution_options(populate_existing=True)
    )
    job = result.scalar_one_or_none()
    if job is None:
        raise JobNotFoundError(job_id)

    _record_failure(job, error, retryable=retryable, policy=policy, now=now or utcnow())
    await db.flush()
    return job.state


async def rescue_stuck(
    db: AsyncSession,
    older_than_seconds: float,
    *,
    policy: RetryPolicy,
    now: datetime | None = None,
) -> int:
    """
    Take back jobs left `running` by a worker that died mid-attempt.

    A job counts as stuck once its attempt started more than
    older_than_seconds ago. The lost attempt is recorded as a retryable
    failure, so the job is rescheduled or dead-lettered exactly as fail()
    would do it.

    Returns:
        The number of jobs rescued.
    """
    now = now or utcnow()
    cutoff = now - timedelta(seconds=older_than_seconds)

    result = await db.execute(
        select(Job)
        .where(Job.state == JobState.RUNNING, Job.attempted_at < cutoff)
        .order_by(Job.id)
        .with_for_update(skip_locked=True)
        .execution_options(populate_existing=True)
    )
    stuck = list(result.scalars().all())
    for job in stuck:
        logger.warning(
            "Job %s (%s) running since %s on %s, rescuing",
            job.id, job.kind, job.attempted_at.isoformat(), job.attempted_by,
            extra={"job_id": job.id, "job_kind": job.kind, "attempt": job.attempt},
        )
        _record_failure(job, WORKER_LOST_ERROR, retryable=True, policy=policy, now=now)

    await db.flush()
    return len(stuck)


def _record_failure(job: Job, error: str, *, retryable: bool, policy: RetryPolicy, now: datetime) -> None:
    job.errors = [
        *(job.errors or []),
        {"attempt": job.attempt, "at": now.isoformat(), "error": error[:MAX_ERROR_LENGTH]},
    ]

    if retryable and job.attempt < job.max_attempts:
        job.state = JobState.AVAILABLE
        job.scheduled_at = now + policy.delay(job.attempt)
        logger.warning(
            "Job %s (%s) failed on attempt %s/%s, retrying at %s: %s",
            job.id, job.kind, job.attempt, job.max_attempts, job.scheduled_at.isoformat(), error,
            extra={"job_id": job.id, "job_kind": job.kind, "attempt": job.attempt},
        )
    else:
        job.state = JobState.DISCARDED
        job.finalized_at = now
        logger.error(
            "Job %s (%s) discarded after attempt %s/%s: %s",
            job.id, job.kind, job.attempt, job.max_attempts, error,
            extra={"job_id": job.id, "job_kind": job.kind, "attempt": job.attempt},
        )


# ---------------------------------------------------------------------------
# Operator access
# ---------------------------------------------------------------------------

async def get_job(db: AsyncSession, job_id: int) -> Job:
    job = await db.get(Job, job_id)
    if job is None:
        raise JobNotFoundError(job_id)
    return job


async def list_jobs(
    db: AsyncSession,
    *,
    state: str | None = None,
    kind: str | None = None,
    queue: str | None = None,
    limit: int = 50,
    offset: int = 0,
) -> list[Job]:
    """Newest first."""
    stmt = select(Job)
    if state is not None:
        stmt = stmt.where(Job.state == state)
    if kind is not None:
        stmt = stmt.where(Job.kind == kind)
    if queue is not None:
        stmt = stmt.where(Job.queue == queue)
    stmt = stmt.order_by(Job.id.desc()).limit(limit).offset(offset)
    result = await db.execute(stmt)
    return list(result.scalars().all())


async def count_jobs(db: AsyncSession, *, state: str | None = None, kind: str | None = None) -> int:
    stmt = select(func.count()).select_from(Job)
    if state is not None:
        stmt = stmt.where(Job.state == state)
    if kind is not None:
        stmt = stmt.where(Job.kind == kind)
    return await db.scalar(stmt)


async def retry_discarded(db: AsyncSession, job_id: int, *, now: datetime | None = None) -> Job:
    """
    Put a dead-lettered job back in the queue with a fresh attempt budget.

    The error history is kept so the next failure still shows what happened
    before.
    """
    job = await get_job(db, job_id)
    result = await db.execute(
        update(Job)
        .where(Job.id == job_id, Job.state == JobState.DISCARDED)
        .values(
            state=JobState.AVAILABLE,
            max_attempts=Job.attempt + job.max_attempts,
            scheduled_at=now or utcnow(),
            finalized_at=None,
        )
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise InvalidTransitionError(f"Job {job_id} is {job.state}, only discarded jobs can be retried")

    logger.info("Job %s (%s) re-queued by operator", job_id, job.kind, extra={"job_id": job_id})
    return await db.get(Job, job_id, populate_existing=True)
