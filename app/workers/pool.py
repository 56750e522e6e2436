"""
Worker pool: runs job handlers against the job store.

Each pool runs `concurrency` asyncio tasks per queue. A task loops:

    claim (own transaction, committed)
      -> run handler (own transaction)
      -> complete the job in that same transaction and commit
    on failure: roll back the handler's work, then record the failure
    (retry with backoff or dead-letter) in a fresh transaction

Handlers receive a JobContext and a session. They signal how a failed
attempt should end by what they raise:

  JobDiscardError, PermanentProviderError  -> dead-letter now
  anything else (incl. JobRetryableError)  -> retry while attempts remain

Jobs whose kind has no handler are dead-lettered with
"no handler registered for kind '<kind>'"; the loop keeps running.

Several pools (processes) may run against the same database: they only
coordinate through the jobs table.
"""

import asyncio
import logging
import os
import socket
import uuid
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass, field
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.catalog import TargetCatalog
from app.config import Settings
from app.exceptions import JobDiscardError
from app.models.job import Job
from app.providers.base import PaymentProvider, PermanentProviderError
from app.services import job_store
from app.services.job_store import RetryPolicy

logger = logging.getLogger(__name__)


@dataclass
class JobContext:
    """What a handler knows about the job it is running and the process around it."""

    job_id: int
    kind: str
    args: dict[str, Any]
    attempt: int
    max_attempts: int
    settings: Settings
    session_factory: async_sessionmaker
    catalog: TargetCatalog
    providers: dict[str, PaymentProvider] = field(default_factory=dict)
    worker_id: str = ""

    @property
    def is_final_attempt(self) -> bool:
        return self.attempt >= self.max_attempts

    def provider(self, name: str) -> PaymentProvider:
        try:
            return self.providers[name]
        except KeyError:
            raise JobDiscardError(f"provider '{name}' is not configured") from None

    def arg_uuid(self, key: str) -> uuid.UUID:
        try:
            return uuid.UUID(str(self.args[key]))
        except (KeyError, ValueError):
            raise JobDiscardError(f"job {self.job_id} has no valid '{key}' argument") from None

    @property
    def log_extra(self) -> dict:
        return {"job_id": self.job_id, "job_kind": self.kind, "attempt": self.attempt,
                "worker_id": self.worker_id}


JobHandler = Callable[[JobContext, AsyncSession], Awaitable[None]]
Housekeeping = Callable[[AsyncSession], Awaitable[Any]]


def default_worker_id() -> str:
    return f"{socket.gethostname()}:{os.getpid()}"


class WorkerPool:
    def __init__(
        self,
        session_factory: async_sessionmaker,
        handlers: dict[str, JobHandler],
        *,
        settings: Settings,
        catalog: TargetCatalog,
        providers: dict[str, PaymentProvider],
        queues: Iterable[str] | None = None,
        concurrency: int | None = None,
        poll_interval: float | None = None,
        retry_policy: RetryPolicy | None = None,
        housekeeping: Housekeeping | None = None,
        housekeeping_interval: float | None = None,
        worker_id: str | None = None,
    ):
        self.session_factory = session_factory
        self.handlers = dict(handlers)
        self.settings = settings
        self.catalog = catalog
        self.providers = providers
        self.queues = list(queues or settings.WORKER_QUEUES)
        self.concurrency = concurrency or settings.WORKER_CONCURRENCY
        self.poll_interval = poll_interval if poll_interval is not None else settings.WORKER_POLL_INTERVAL_SECONDS
        self.retry_policy = retry_policy or RetryPolicy.from_settings(settings)
        self.housekeeping = housekeeping
        self.housekeeping_interval = (
            housekeeping_interval if housekeeping_interval is not None
            else settings.HOUSEKEEPING_INTERVAL_SECONDS
        )
        self.worker_id = worker_id or default_worker_id()

    def register(self, kind: str, handler: JobHandler) -> None:
        self.handlers[kind] = handler

    # ------------------------------------------------------------------
    # One job
    # ------------------------------------------------------------------

    async def run_once(self, queue: str, *, slot: int = 0) -> bool:
        """Claim and run at most one job from `queue`. False if none was due."""
        worker_id = f"{self.worker_id}/{queue}#{slot}"
        async with self.session_factory() as db:
            job = await job_store.claim(db, queue, worker_id)
            await db.commit()
        if job is None:
            return False
        await self._execute(job, worker_id)
        return True

    async def _execute(self, job: Job, worker_id: str) -> None:
        ctx = JobContext(
            job_id=job.id,
            kind=job.kind,
            args=dict(job.args or {}),
            attempt=job.attempt,
            max_attempts=job.max_attempts,
            settings=self.settings,
            session_factory=self.session_factory,
            catalog=self.catalog,
            providers=self.providers,
            worker_id=worker_id,
        )

        handler = self.handlers.get(job.kind)
        if handler is None:
            await self._fail(ctx, f"no handler registered for kind '{job.kind}'", retryable=False)
            return

        logger.debug("Running job %s (%s), attempt %s/%s", job.id, job.kind, job.attempt,
                     job.max_attempts, extra=ctx.log_extra)
        async with self.session_factory() as db:
            try:
                await handler(ctx, db)
                await job_store.complete(db, job.id)
                await db.commit()
                return
            except JobDiscardError as exc:
                error, retryable = str(exc) or type(exc).__name__, False
            except PermanentProviderError as exc:
                error, retryable = f"{type(exc).__name__}: {exc}", False
            except Exception as exc:
                logger.exception("Job %s (%s) raised", job.id, job.kind, extra=ctx.log_extra)
                error, retryable = f"{type(exc).__name__}: {exc}", True
            await db.rollback()

        await self._fail(ctx, error, retryable=retryable)

    async def _fail(self, ctx: JobContext, error: str, *, retryable: bool) -> None:
        async with self.session_factory() as db:
            await job_store.fail(db, ctx.job_id, error, retryable=retryable, policy=self.retry_policy)
            await db.commit()

    # ------------------------------------------------------------------
    # Loops
    # ------------------------------------------------------------------

    async def drain(self, queues: Iterable[str] | None = None, *, max_jobs: int = 1000) -> int:
        """
        Run due jobs until every queue is empty (or max_jobs ran).

        Jobs rescheduled into the future by a retry are not waited for.
        Returns the number of jobs run.
        """
        queues = list(queues or self.queues)
        ran = 0
        while ran < max_jobs:
            progressed = False
            for queue in queues:
                if ran >= max_jobs:
                    break
                if await self.run_once(queue):
                    ran += 1
                    progressed = True
            if not progressed:
                break
        return ran

    async def _worker_loop(self, queue: str, slot: int, stop: asyncio.Event) -> None:
        while not stop.is_set():
            try:
                processed = await self.run_once(queue, slot=slot)
            except Exception:
                # Database hiccup while claiming or recording a failure: back off and keep going
                logger.exception("Worker %s/%s#%s loop error", self.worker_id, queue, slot)
                processed = False
            if not processed:
                await _sleep_until(stop, self.poll_interval)

    async def _housekeeping_loop(self, stop: asyncio.Event) -> None:
        while not stop.is_set():
            try:
                async with self.session_factory() as db:
                    await self.housekeeping(db)
                    await db.commit()
            except Exception:
                logger.exception("Housekeeping failed")
            await _sleep_until(stop, self.housekeeping_interval)

    async def run(self, stop: asyncio.Event) -> None:
        """Run until `stop` is set; in-flight handlers finish before this returns."""
        logger.info(
            "Worker pool %s starting: queues=%s concurrency=%s",
            self.worker_id, ",".join(self.queues), self.concurrency,
            extra={"worker_id": self.worker_id},
        )
        tasks = [
            asyncio.create_task(self._worker_loop(queue, slot, stop), name=f"worker-{queue}-{slot}")
            for queue in self.queues
            for slot in range(self.concurrency)
        ]
        if self.housekeeping is not None:
            tasks.append(asyncio.create_task(self._housekeeping_loop(stop), name="housekeeping"))
        await asyncio.gather(*tasks)
        logger.info("Worker pool %s stopped", self.worker_id, extra={"worker_id": self.worker_id})


async def _sleep_until(stop: asyncio.Event, timeout: float) -> None:
    try:
        await asyncio.wait_for(stop.wait(), timeout=timeout)
    except asyncio.TimeoutError:
        pass
