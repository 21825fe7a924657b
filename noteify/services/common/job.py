"""
Common job and job queue implementation for event-based processing.

This module provides:
- Job: Base class for defining asynchronous jobs
- JobQueue: FIFO queue drained by a single worker task, one job at a time
- JobStatus: Enum for tracking job states
"""

import asyncio
import contextlib
import enum
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Generic, TypeVar

from noteify.utils import get_current_timestamp_est

logger = logging.getLogger(__name__)


class JobStatus(enum.Enum):
    """Status of a job in the queue."""

    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass
class Job(ABC):
    """
    Base class for a job that can be processed by a JobQueue.

    Attributes:
        job_id: Unique identifier for the job
        created_at: Timestamp when the job was created
        started_at: Timestamp when the job started processing (None if not started)
        finished_at: Timestamp when the job finished (None if not finished)
        status: Current status of the job
        error_message: Error message if the job failed (None if no error)
        metadata: Additional metadata for the job
    """

    job_id: str
    created_at: datetime = field(default_factory=get_current_timestamp_est)
    started_at: datetime | None = None
    finished_at: datetime | None = None
    status: JobStatus = JobStatus.PENDING
    error_message: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    @abstractmethod
    async def execute(self) -> None:
        """
        Execute the job's main logic.

        Raises:
            Exception: Any exception raised during execution is caught
                      by the JobQueue and the job is marked as failed.
        """
        pass

    async def release(self) -> None:
        """Free resources held by the job. Called once after execution, success or not."""
        pass

    def mark_started(self) -> None:
        """Mark the job as started."""
        self.started_at = get_current_timestamp_est()
        self.status = JobStatus.IN_PROGRESS

    def mark_completed(self) -> None:
        """Mark the job as completed."""
        self.finished_at = get_current_timestamp_est()
        self.status = JobStatus.COMPLETED

    def mark_failed(self, error_message: str) -> None:
        """Mark the job as failed with an error message."""
        self.finished_at = get_current_timestamp_est()
        self.status = JobStatus.FAILED
        self.error_message = error_message

    def mark_cancelled(self) -> None:
        """Mark the job as cancelled."""
        self.finished_at = get_current_timestamp_est()
        self.status = JobStatus.CANCELLED


TJob = TypeVar("TJob", bound=Job)


class JobQueue(Generic[TJob]):
    """
    Event-based job queue that processes one job at a time.

    A dedicated worker task blocks on the next job, runs it to completion
    (success or failure), and loops. Jobs are never retried. The queue supports:
    - Adding jobs from any coroutine without extra locking
    - Callback notifications on job start/completion/failure
    - Waiting until nothing is queued and nothing is in flight
    - Graceful shutdown

    Attributes:
        on_job_complete: Optional callback when a job completes successfully
        on_job_failed: Optional callback when a job fails
        on_job_started: Optional callback when a job starts
    """

    def __init__(
        self,
        on_job_complete: Callable[[TJob], Any] | None = None,
        on_job_failed: Callable[[TJob], Any] | None = None,
        on_job_started: Callable[[TJob], Any] | None = None,
    ):
        self._queue: asyncio.Queue[TJob] = asyncio.Queue()
        self._worker_task: asyncio.Task | None = None
        self._is_running: bool = False

        # Callbacks
        self._on_job_complete = on_job_complete
        self._on_job_failed = on_job_failed
        self._on_job_started = on_job_started

        # Statistics
        self._total_jobs_processed: int = 0
        self._total_jobs_failed: int = 0
        self._current_job: TJob | None = None

    async def add_job(self, job: TJob) -> None:
        """
        Add a job to the queue.

        If the worker is not running, it will be started automatically.

        Args:
            job: The job to add to the queue
        """
        self._queue.put_nowait(job)

        if not self._is_running:
            await self.start()

    async def start(self) -> None:
        """Start the job queue worker."""
        if self._is_running:
            return

        self._is_running = True
        self._worker_task = asyncio.create_task(self._worker())

    async def stop(self, wait_for_completion: bool = True) -> None:
        """
        Stop the job queue worker.

        Args:
            wait_for_completion: If True, drain every queued job before stopping.
                                 If False, the current job is cancelled and queued jobs dropped.
        """
        if not self._is_running:
            return

        if wait_for_completion:
            await self.wait_until_empty()

        self._is_running = False
        if self._worker_task:
            self._worker_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._worker_task
        self._worker_task = None

        # Anything left behind is dropped; release it so join() cannot hang
        while not self._queue.empty():
            job = self._queue.get_nowait()
            job.mark_cancelled()
            await job.release()
            self._queue.task_done()

    async def _worker(self) -> None:
        """
        Main worker loop that processes jobs from the queue.

        This runs until the queue is stopped.
        """
        while self._is_running:
            job = await self._queue.get()
            self._current_job = job
            try:
                await self._process_job(job)
            except asyncio.CancelledError:
                job.mark_cancelled()
                raise
            except Exception as e:
                logger.error(f"Unexpected error in job queue worker: {e}")
            finally:
                self._current_job = None
                with contextlib.suppress(Exception):
                    await job.release()
                self._queue.task_done()

    async def _process_job(self, job: TJob) -> None:
        """
        Process a single job with error handling.

        Args:
            job: The job to process
        """
        try:
            job.mark_started()
            await self._notify(self._on_job_started, job, "on_job_started")

            await job.execute()

            job.mark_completed()
            self._total_jobs_processed += 1
            await self._notify(self._on_job_complete, job, "on_job_complete")

        except asyncio.CancelledError:
            raise
        except Exception as e:
            job.mark_failed(f"{type(e).__name__}: {str(e)}")
            self._total_jobs_failed += 1
            await self._notify(self._on_job_failed, job, "on_job_failed")

    async def _notify(self, callback: Callable[[TJob], Any] | None, job: TJob, name: str) -> None:
        """Invoke a sync or async callback, logging instead of raising."""
        if not callback:
            return
        try:
            result = callback(job)
            if asyncio.iscoroutine(result):
                await result
        except Exception as e:
            logger.error(f"Error in {name} callback: {e}")

    # -------------------------------------------------------------- #
    # Status
    # -------------------------------------------------------------- #

    def get_queue_size(self) -> int:
        """Get the current number of jobs waiting in the queue."""
        return self._queue.qsize()

    def get_current_job(self) -> TJob | None:
        """Get the currently processing job, if any."""
        return self._current_job

    def get_statistics(self) -> dict[str, Any]:
        """
        Get queue statistics.

        Returns:
            Dictionary with statistics including:
            - is_running: Whether the worker is active
            - queue_size: Number of pending jobs
            - total_processed: Total jobs completed
            - total_failed: Total jobs failed
            - current_job_id: ID of current job (if any)
        """
        return {
            "is_running": self._is_running,
            "queue_size": self.get_queue_size(),
            "total_processed": self._total_jobs_processed,
            "total_failed": self._total_jobs_failed,
            "current_job_id": self._current_job.job_id if self._current_job else None,
            "current_job_status": (self._current_job.status.value if self._current_job else None),
        }

    async def wait_until_empty(self) -> None:
        """Wait until every queued job has been processed and the worker is idle."""
        await self._queue.join()

    def is_idle(self) -> bool:
        """True when nothing is queued and no job is in flight."""
        return self._queue.empty() and self._current_job is None

    def is_running(self) -> bool:
        """Check if the worker is running."""
        return self._is_running
