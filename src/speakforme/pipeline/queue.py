"""In-process generation queue.

Architecture:
    classified request → usage gate → GenerationQueue → worker pool → pipeline.process()

Design decisions:
    - asyncio.Queue, not Redis/Celery. The service runs on a single event
      loop and generation jobs are short-lived; the queue lives in memory.
    - Backpressure per workspace and in total. A rejected job raises
      QueueFullError so the caller can record the failure for that one
      recipient; other recipients of the same event are unaffected.
    - Every job runs inside its own error boundary: one failing job never
      takes a worker down.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Coroutine

import structlog

from speakforme.config import settings
from speakforme.core.errors import QueueFullError

logger = structlog.get_logger()


@dataclass
class QueuedJob:
    """A generation job waiting for a worker."""

    workspace_id: str
    handler: Callable[..., Coroutine[Any, Any, Any]]
    args: tuple[Any, ...] = field(default_factory=tuple)
    job_id: str = ""
    enqueue_time: float = field(default_factory=time.monotonic)


class GenerationQueue:
    """FIFO job queue with a fixed worker pool."""

    def __init__(
        self,
        num_workers: int | None = None,
        max_depth_per_workspace: int | None = None,
        max_total_depth: int | None = None,
    ) -> None:
        self._queue: asyncio.Queue[QueuedJob] = asyncio.Queue()
        self._workers: list[asyncio.Task[None]] = []
        self._num_workers = num_workers or settings.generation_workers
        self._max_per_workspace = max_depth_per_workspace or settings.max_queue_depth_per_workspace
        self._max_total = max_total_depth or settings.max_total_queue_depth
        self._running = False

        self._workspace_depth: dict[str, int] = {}
        self._total_enqueued = 0
        self._total_processed = 0
        self._failed = 0
        self._rejected = 0

    async def start(self) -> None:
        """Start the worker pool."""
        if self._running:
            return
        self._running = True
        for i in range(self._num_workers):
            self._workers.append(
                asyncio.create_task(self._worker(f"worker-{i}"), name=f"generation-worker-{i}")
            )
        logger.info("generation_queue_started", num_workers=self._num_workers)

    async def stop(self) -> None:
        """Stop the worker pool; queued jobs are abandoned."""
        if not self._running:
            return
        self._running = False
        for task in self._workers:
            task.cancel()
        await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers.clear()
        logger.info(
            "generation_queue_stopped",
            total_processed=self._total_processed,
            failed=self._failed,
            rejected=self._rejected,
            abandoned=self._queue.qsize(),
        )

    def enqueue(
        self,
        workspace_id: str,
        handler: Callable[..., Coroutine[Any, Any, Any]],
        *args: Any,
        job_id: str = "",
    ) -> None:
        """Add a job, or raise QueueFullError under backpressure."""
        ws_depth = self._workspace_depth.get(workspace_id, 0)
        if ws_depth >= self._max_per_workspace:
            self._rejected += 1
            logger.warning(
                "generation_rejected_workspace_limit",
                workspace_id=workspace_id,
                depth=ws_depth,
                job_id=job_id,
            )
            raise QueueFullError(workspace_id, ws_depth)

        if self._queue.qsize() >= self._max_total:
            self._rejected += 1
            logger.warning(
                "generation_rejected_total_limit",
                queue_size=self._queue.qsize(),
                job_id=job_id,
            )
            raise QueueFullError(workspace_id, self._queue.qsize())

        self._queue.put_nowait(
            QueuedJob(workspace_id=workspace_id, handler=handler, args=args, job_id=job_id)
        )
        self._workspace_depth[workspace_id] = ws_depth + 1
        self._total_enqueued += 1
        logger.debug(
            "generation_enqueued",
            workspace_id=workspace_id,
            queue_size=self._queue.qsize(),
            job_id=job_id,
        )

    async def join(self) -> None:
        """Wait until every enqueued job has been processed."""
        await self._queue.join()

    async def _worker(self, name: str) -> None:
        while self._running:
            try:
                job = await asyncio.wait_for(self._queue.get(), timeout=5.0)
            except asyncio.TimeoutError:
                continue
            except asyncio.CancelledError:
                break

            wait_ms = round((time.monotonic() - job.enqueue_time) * 1000)
            try:
                logger.debug(
                    "generation_processing",
                    worker=name,
                    workspace_id=job.workspace_id,
                    wait_ms=wait_ms,
                    job_id=job.job_id,
                )
                await job.handler(*job.args)
                self._total_processed += 1
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self._failed += 1
                logger.error(
                    "generation_job_failed",
                    worker=name,
                    workspace_id=job.workspace_id,
                    job_id=job.job_id,
                    error=str(e),
                    exc_info=True,
                )
            finally:
                ws_depth = self._workspace_depth.get(job.workspace_id, 1)
                self._workspace_depth[job.workspace_id] = max(0, ws_depth - 1)
                self._queue.task_done()

    @property
    def metrics(self) -> dict[str, Any]:
        return {
            "queue_size": self._queue.qsize(),
            "total_enqueued": self._total_enqueued,
            "total_processed": self._total_processed,
            "failed": self._failed,
            "rejected": self._rejected,
            "workspace_depths": {k: v for k, v in self._workspace_depth.items() if v},
        }

    @property
    def is_running(self) -> bool:
        return self._running
