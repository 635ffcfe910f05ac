# rsvp_dispatch/infra/job_runner.py
"""
In-process runner for bulk jobs.

Each submitted job runs as its own asyncio task; a semaphore bounds how many
jobs dispatch at once in this process. A trigger loop periodically picks up
scheduled jobs that became due and requeues jobs that crashed in this
process (they are still PROCESSING and no other worker will touch them).
On start, interrupted and overdue jobs are resubmitted.
"""
from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Callable, Optional

from rsvp_dispatch.infra.logging_config import get_logger
from rsvp_dispatch.infra.metrics import inc_counter

logger = get_logger(__name__)


class JobRunner:
    """
    Usage:
        runner = JobRunner(orchestrator.run_job, trigger=orchestrator.trigger_due_jobs,
                           resume=orchestrator.resume_jobs)
        orchestrator.attach_submitter(runner.submit)
        await runner.start()
        ...
        await runner.stop()
    """

    def __init__(
        self,
        handler: Callable[[str], Awaitable[Any]],
        *,
        trigger: Optional[Callable[[], Awaitable[Any]]] = None,
        resume: Optional[Callable[[], Awaitable[Any]]] = None,
        max_concurrent_jobs: int = 4,
        trigger_interval: float = 30.0,
    ):
        self._handler = handler
        self._trigger = trigger
        self._resume = resume
        self._semaphore = asyncio.Semaphore(max(max_concurrent_jobs, 1))
        self._max_concurrent_jobs = max(max_concurrent_jobs, 1)
        self._trigger_interval = trigger_interval
        self._in_flight: dict[str, asyncio.Task] = {}
        self._crashed: set[str] = set()
        self._trigger_task: asyncio.Task | None = None
        self._running = False

    @property
    def in_flight(self) -> list[str]:
        return list(self._in_flight)

    def submit(self, job_id: str) -> bool:
        """
        Schedule ``job_id`` for execution. Never blocks.

        Returns False when the runner is stopped or the job is already
        running in this process.
        """
        if not self._running:
            logger.warning(f"Job runner not running, job {job_id} not submitted")
            return False
        if job_id in self._in_flight:
            logger.debug(f"Job {job_id} already in flight")
            return False

        task = asyncio.create_task(self._run(job_id), name=f"bulk_job:{job_id}")
        self._in_flight[job_id] = task
        task.add_done_callback(lambda t, jid=job_id: self._on_job_done(jid, t))
        inc_counter("job_runner_submitted")
        return True

    async def start(self) -> None:
        self._running = True
        if self._resume is not None:
            try:
                await self._resume()
            except Exception as exc:
                logger.error(f"Resuming jobs failed: {exc}", exc_info=True)
                inc_counter("job_runner_loop_errors")

        self._trigger_task = asyncio.create_task(self._trigger_loop(), name="job_runner_trigger")
        self._trigger_task.add_done_callback(self._on_trigger_done)

        logger.info(
            f"Job runner started: max_concurrent_jobs={self._max_concurrent_jobs}, "
            f"trigger_interval={self._trigger_interval}s"
        )

    async def stop(self) -> None:
        """Stop triggering and cancel running jobs; they are resumed on next start."""
        self._running = False
        tasks = list(self._in_flight.values())
        if self._trigger_task is not None:
            tasks.append(self._trigger_task)
        for task in tasks:
            if not task.done():
                task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._in_flight.clear()
        self._crashed.clear()
        logger.info("Job runner stopped")

    async def _run(self, job_id: str) -> None:
        async with self._semaphore:
            await self._handler(job_id)

    async def _trigger_loop(self) -> None:
        while self._running:
            await asyncio.sleep(self._trigger_interval)
            self._requeue_crashed()
            if self._trigger is None:
                continue
            try:
                await self._trigger()
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.error(f"Due job trigger failed: {exc}", exc_info=True)
                inc_counter("job_runner_loop_errors")

    def _on_job_done(self, job_id: str, task: asyncio.Task) -> None:
        self._in_flight.pop(job_id, None)
        if task.cancelled():
            return
        exc = task.exception()
        if exc:
            inc_counter("job_runner_job_errors")
            if self._running:
                self._crashed.add(job_id)
            logger.error(
                f"Bulk job {job_id} crashed: {exc}",
                exc_info=(type(exc), exc, exc.__traceback__),
                extra={"job_id": job_id},
            )

    def _requeue_crashed(self) -> None:
        for job_id in sorted(self._crashed):
            self._crashed.discard(job_id)
            if self.submit(job_id):
                logger.info(f"Requeued crashed job {job_id}", extra={"job_id": job_id})

    @staticmethod
    def _on_trigger_done(task: asyncio.Task) -> None:
        """Log unexpected trigger loop death."""
        if task.cancelled():
            return
        exc = task.exception()
        if exc:
            logger.error(
                f"Job runner trigger loop died unexpectedly: {exc}",
                exc_info=(type(exc), exc, exc.__traceback__),
            )
