"""Supervised background queue for memory side effects.

Entity linking and compression checks must never fail or delay a chat
turn. They are queued here and executed by a small asyncio worker pool
with per-job retries and exponential backoff. A job that exhausts its
retries is logged and dropped.

When the queue has not been started, jobs run inline (awaited by the
caller) with the same retry policy.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable

from loguru import logger

from .config import BackgroundConfig

JobFactory = Callable[[], Awaitable[Any]]


@dataclass
class BackgroundJob:
    """A named unit of work; ``factory`` creates a fresh awaitable per attempt."""

    name: str
    factory: JobFactory
    attempts: int = field(default=0)


class BackgroundTaskQueue:
    """Bounded asyncio worker pool with retry and backoff."""

    def __init__(self, config: BackgroundConfig | None = None):
        self._config = config or BackgroundConfig()
        self._queue: asyncio.Queue[BackgroundJob] | None = None
        self._workers: list[asyncio.Task] = []
        self._stats = {
            "submitted": 0,
            "succeeded": 0,
            "failed": 0,
            "dropped": 0,
            "retries": 0,
        }

    @property
    def running(self) -> bool:
        return bool(self._workers)

    def start(self) -> None:
        """Start the worker tasks. Must be called from a running event loop."""
        if self._workers:
            return
        self._queue = asyncio.Queue(maxsize=self._config.max_queue_size)
        self._workers = [
            asyncio.create_task(self._worker(i), name=f"memory-worker-{i}")
            for i in range(self._config.workers)
        ]
        logger.info(f"Background queue started with {self._config.workers} workers")

    async def submit(self, name: str, factory: JobFactory) -> bool:
        """Queue a job, or run it inline if the queue is not running.

        Returns:
            False if the job was dropped because the queue is full
        """
        job = BackgroundJob(name=name, factory=factory)
        self._stats["submitted"] += 1

        if not self.running:
            await self._run_with_retry(job)
            return True

        try:
            self._queue.put_nowait(job)
        except asyncio.QueueFull:
            self._stats["dropped"] += 1
            logger.warning(f"Background queue full, dropping job '{name}'")
            return False
        return True

    async def drain(self) -> None:
        """Wait until every queued job has finished."""
        if self._queue is not None and self.running:
            await self._queue.join()

    async def stop(self, drain: bool = True) -> None:
        """Stop the workers, optionally finishing queued jobs first."""
        if not self._workers:
            return
        if drain:
            await self.drain()
        for worker in self._workers:
            worker.cancel()
        await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers = []
        self._queue = None
        logger.info("Background queue stopped")

    def get_stats(self) -> dict[str, Any]:
        return {
            **self._stats,
            "pending": self._queue.qsize() if self._queue is not None else 0,
            "running": self.running,
        }

    async def _worker(self, index: int) -> None:
        logger.debug(f"Memory worker {index} started")
        while True:
            job = await self._queue.get()
            try:
                await self._run_with_retry(job)
            finally:
                self._queue.task_done()

    async def _run_with_retry(self, job: BackgroundJob) -> bool:
        max_attempts = self._config.max_retries + 1
        while job.attempts < max_attempts:
            job.attempts += 1
            try:
                await job.factory()
                self._stats["succeeded"] += 1
                return True
            except asyncio.CancelledError:
                raise
            except Exception as e:
                if job.attempts >= max_attempts:
                    self._stats["failed"] += 1
                    logger.error(
                        f"Background job '{job.name}' failed after {job.attempts} attempts: {e}"
                    )
                    return False
                delay = min(
                    self._config.max_delay_seconds,
                    self._config.base_delay_seconds * (2 ** (job.attempts - 1)),
                )
                self._stats["retries"] += 1
                logger.warning(
                    f"Background job '{job.name}' failed (attempt {job.attempts}), "
                    f"retrying in {delay:.1f}s: {e}"
                )
                await asyncio.sleep(delay)
        return False
