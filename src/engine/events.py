# src/engine/events.py
"""
ProgressBroker: fans per-job progress messages out to event-stream subscribers.
"""
import asyncio
import logging
from typing import Dict, List, Optional

from api.schemas import Job, ProgressMessage

logger = logging.getLogger(__name__)


class ProgressBroker:
    """
    Keeps one asyncio.Queue per subscriber per job.

    Several observers can follow the same job at once (one queue each). The
    last message published for a job is retained so a subscriber that connects
    late, or reconnects after a gap, immediately receives the current state.
    """

    def __init__(self, max_retained: int = 1000):
        self._queues: Dict[str, List[asyncio.Queue]] = {}
        self._latest: Dict[str, ProgressMessage] = {}
        self._max_retained = max_retained

    def subscribe(self, job_id: str) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue()
        self._queues.setdefault(job_id, []).append(queue)
        latest = self._latest.get(job_id)
        if latest is not None:
            queue.put_nowait(latest)
        logger.debug(f"[job_id={job_id}] Subscribed to progress ({len(self._queues[job_id])} subscribers)")
        return queue

    def unsubscribe(self, job_id: str, queue: asyncio.Queue) -> None:
        queues = self._queues.get(job_id)
        if not queues:
            return
        if queue in queues:
            queues.remove(queue)
        if not queues:
            del self._queues[job_id]
        logger.debug(f"[job_id={job_id}] Unsubscribed from progress")

    def has_subscribers(self, job_id: str) -> bool:
        return bool(self._queues.get(job_id))

    def latest(self, job_id: str) -> Optional[ProgressMessage]:
        return self._latest.get(job_id)

    def publish(self, message: ProgressMessage) -> None:
        job_id = message.request_id
        self._latest.pop(job_id, None)
        self._latest[job_id] = message
        if len(self._latest) > self._max_retained:
            # dicts keep insertion order, so this drops the oldest job
            self._latest.pop(next(iter(self._latest)))
        for queue in self._queues.get(job_id, []):
            queue.put_nowait(message)

    def publish_job(self, job: Job) -> None:
        self.publish(ProgressMessage(
            request_id=job.job_id,
            scan_id=job.scan_id,
            status=job.status,
            progress=job.progress,
            step=job.step,
            error=job.error,
            timestamp=job.last_updated_at,
        ))
