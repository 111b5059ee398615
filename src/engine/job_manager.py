# src/engine/job_manager.py
"""
JobManager: supervises the background task of every running batch.
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, Optional


class CancellationToken:
    """
    Cooperative cancellation flag checked by a task between units of work.
    """
    def __init__(self):
        self._event = asyncio.Event()
        self.reason: Optional[str] = None

    def cancel(self, reason: str = "Cancelled") -> None:
        self.reason = reason
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()


# one supervised asyncio task per batch, with its cancellation token
class JobManager:
    def __init__(self):
        self.jobs: Dict[str, dict] = {}

    def submit_job(self, key: str, func: Callable[[CancellationToken], Awaitable[Any]]) -> asyncio.Task:
        if key in self.jobs and not self.jobs[key]["task"].done():
            raise ValueError(f"Task already running for {key}")
        token = CancellationToken()
        task = asyncio.create_task(self._run_job(key, func, token), name=f"batch-{key}")
        self.jobs[key] = {"task": task, "token": token}
        logging.info(f"[batch_id={key}] Submitted background task.")
        return task

    async def _run_job(self, key, func, token):
        try:
            await func(token)
            outcome = "cancelled" if token.cancelled else "completed"
            logging.info(f"[batch_id={key}] Background task finished ({outcome}).")
        except asyncio.CancelledError:
            logging.info(f"[batch_id={key}] Background task cancelled.")
            raise
        except Exception as e:
            logging.exception(f"[batch_id={key}] Background task failed: {e}")

    def cancel(self, key: str, reason: str = "Cancelled by user") -> bool:
        job = self.jobs.get(key)
        if job is None or job["task"].done():
            return False
        job["token"].cancel(reason)
        logging.info(f"[batch_id={key}] Cancellation requested: {reason}")
        return True

    async def wait(self, key: str) -> None:
        job = self.jobs.get(key)
        if job is not None:
            await asyncio.shield(job["task"])

    async def shutdown(self, timeout: float = 5.0) -> None:
        """
        Ask every running task to stop, then cancel whatever is still running after ``timeout``.
        """
        tasks = [job["task"] for job in self.jobs.values() if not job["task"].done()]
        for job in self.jobs.values():
            job["token"].cancel("Server shutting down")
        if not tasks:
            return
        done, pending = await asyncio.wait(tasks, timeout=timeout)
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)
