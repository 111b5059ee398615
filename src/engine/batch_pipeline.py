# src/engine/batch_pipeline.py
"""
BatchExecutionPipeline: resolves a batch's targets, creates one job per target
and runs them in the background with partial-failure accounting.
"""
import asyncio
import functools
import logging
from typing import List, Optional

from api.schemas import ExecutionStarted, ImageInfo, Job
from engine.events import ProgressBroker
from engine.exceptions import BatchDisabled, NoTargetsResolved, NotFound
from engine.job_manager import CancellationToken, JobManager
from engine.models import BatchStatus, JobStatus
from engine.persistence import Persistence
from engine.scan_engine import ScanExecutor
from engine.targets import resolve_targets
from utils.redaction import redact_text

logger = logging.getLogger(__name__)


def final_batch_status(total_targets: int, completed_count: int, failed_count: int) -> BatchStatus:
    """
    Terminal status of a batch as a function of its counters.
    """
    if failed_count >= total_targets:
        return BatchStatus.FAILED
    if failed_count > 0:
        return BatchStatus.PARTIAL
    return BatchStatus.COMPLETED


class BatchExecutionPipeline:
    def __init__(self, persistence: Persistence, executor: ScanExecutor,
                 job_manager: JobManager = None, broker: ProgressBroker = None,
                 max_concurrency: int = 1):
        self.persistence = persistence
        self.executor = executor
        self.job_manager = job_manager or JobManager()
        self.broker = broker or ProgressBroker()
        self.max_concurrency = max_concurrency
        # serializes the terminal job + counter write of concurrently finishing targets
        self._counter_lock = asyncio.Lock()

    async def _db(self, func, *args, **kwargs):
        return await asyncio.to_thread(functools.partial(func, *args, **kwargs))

    # Triggering

    async def trigger(self, scheduled_scan_id: str, trigger_source: str = "MANUAL") -> ExecutionStarted:
        """
        Start a scheduled scan. Configuration problems raise before any batch is created.
        """
        schedule = await self._db(self.persistence.get_scheduled_scan, scheduled_scan_id)
        if not schedule.enabled:
            raise BatchDisabled(scheduled_scan_id)
        selected = []
        if schedule.image_ids:
            selected = await self._db(self.persistence.list_images, schedule.image_ids)
        targets = await self._db(resolve_targets, schedule, selected, self.persistence.list_images)
        return await self._start(targets, scheduled_scan_id, trigger_source)

    async def trigger_targets(self, image_ids: List[str], trigger_source: str = "API") -> ExecutionStarted:
        """
        Start an ad-hoc batch over explicit inventory images.
        """
        targets = await self._db(self.persistence.list_images, image_ids)
        missing = set(image_ids) - {image.id for image in targets}
        if missing:
            raise NotFound("Image", ", ".join(sorted(missing)))
        return await self._start(targets, None, trigger_source)

    async def _start(self, targets: List[ImageInfo], scheduled_scan_id: Optional[str],
                     trigger_source: str) -> ExecutionStarted:
        if not targets:
            raise NoTargetsResolved()
        batch = await self._db(self.persistence.create_batch, scheduled_scan_id, len(targets), trigger_source)
        if scheduled_scan_id:
            await self._db(self.persistence.mark_scheduled_run, scheduled_scan_id)
        self.job_manager.submit_job(
            batch.batch_id, functools.partial(self.run_batch, batch.batch_id, targets)
        )
        return ExecutionStarted(
            execution_id=batch.execution_id,
            batch_id=batch.batch_id,
            total_targets=batch.total_targets,
            message=f"Scan execution started for {batch.total_targets} images",
        )

    def cancel(self, batch_id: str, reason: str = "Cancelled by user") -> bool:
        return self.job_manager.cancel(batch_id, reason)

    # Background execution

    async def run_batch(self, batch_id: str, targets: List[ImageInfo], token: CancellationToken) -> None:
        """
        Run every target of a batch. Never leaves the batch in a non-terminal state.
        """
        try:
            jobs = []
            for position, target in enumerate(targets, start=1):
                job = await self._db(self.persistence.create_job, batch_id, target, position)
                self.broker.publish_job(job)
                jobs.append(job)

            started = asyncio.Event()
            semaphore = asyncio.Semaphore(self.max_concurrency)

            async def run_one(job, target):
                async with semaphore:
                    if token.cancelled:
                        await self._record(batch_id, job.job_id, JobStatus.CANCELLED, error=token.reason)
                        return
                    if not started.is_set():
                        started.set()
                        await self._db(self.persistence.update_batch, batch_id,
                                       status=BatchStatus.RUNNING, started=True)
                        logger.info(f"[batch_id={batch_id}] Batch running")
                    await self._run_target(batch_id, job, target)

            tasks = [asyncio.create_task(run_one(job, target)) for job, target in zip(jobs, targets)]
            try:
                await asyncio.gather(*tasks)
            except BaseException:
                for task in tasks:
                    task.cancel()
                await asyncio.gather(*tasks, return_exceptions=True)
                raise
            await self._finalize(batch_id, token)
        except asyncio.CancelledError:
            await self._force_failed(batch_id, "Execution was interrupted")
            raise
        except Exception as exc:
            logger.exception(f"[batch_id={batch_id}] Batch execution failed: {exc}")
            await self._force_failed(batch_id, redact_text(str(exc)) or type(exc).__name__)

    async def _run_target(self, batch_id: str, job: Job, target: ImageInfo) -> None:
        job_id = job.job_id
        job = await self._db(self.persistence.update_job, job_id,
                             status=JobStatus.RUNNING, progress=0, step="Starting scan")
        self.broker.publish_job(job)

        async def report(progress: int, step: Optional[str] = None) -> None:
            updated = await self._db(self.persistence.update_job, job_id, progress=progress, step=step)
            self.broker.publish_job(updated)

        try:
            metrics = await self.executor.scan(job_id, target, report)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.error(f"[job_id={job_id}] Scan of {target.reference} failed: {exc}")
            await self._record(batch_id, job_id, JobStatus.FAILED, error=redact_text(str(exc)) or type(exc).__name__)
        else:
            logger.info(f"[job_id={job_id}] Scan of {target.reference} completed. stats={metrics}")
            await self._record(batch_id, job_id, JobStatus.SUCCESS, metrics=metrics)

    async def _record(self, batch_id, job_id, status, error=None, metrics=None):
        async with self._counter_lock:
            job, batch = await self._db(
                self.persistence.record_target_outcome, batch_id, job_id,
                status=status, error=error, metrics=metrics,
            )
        self.broker.publish_job(job)
        logger.info(
            f"[batch_id={batch_id}] Progress {batch.completed_count + batch.failed_count}/{batch.total_targets} "
            f"(completed={batch.completed_count} failed={batch.failed_count})"
        )

    async def _finalize(self, batch_id: str, token: CancellationToken) -> None:
        batch = await self._db(self.persistence.get_batch, batch_id)
        status = final_batch_status(batch.total_targets, batch.completed_count, batch.failed_count)
        error_message = token.reason if token.cancelled else None
        await self._db(self.persistence.update_batch, batch_id,
                       status=status, error_message=error_message, completed=True)
        logger.info(
            f"[batch_id={batch_id}] Batch finished with {status.value}: "
            f"completed={batch.completed_count} failed={batch.failed_count} total={batch.total_targets}"
        )

    async def _force_failed(self, batch_id: str, message: str) -> None:
        try:
            jobs = await self._db(self.persistence.fail_open_jobs, batch_id, message)
            for job in jobs:
                self.broker.publish_job(job)
            await self._db(self.persistence.update_batch, batch_id,
                           status=BatchStatus.FAILED, error_message=message, completed=True)
        except Exception:
            logger.exception(f"[batch_id={batch_id}] Could not mark batch as failed")

    async def recover_interrupted(self) -> List[str]:
        """
        Fail batches a previous process left PENDING or RUNNING.
        """
        recovered = []
        for batch in await self._db(self.persistence.list_open_batches):
            if batch.batch_id in self.job_manager.jobs:
                continue
            logger.warning(f"[batch_id={batch.batch_id}] Found interrupted batch ({batch.status.value})")
            await self._force_failed(batch.batch_id, "Interrupted by server restart")
            recovered.append(batch.batch_id)
        return recovered
