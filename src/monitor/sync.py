# src/monitor/sync.py
"""
SyncCoordinator: reconciles the job state store with periodic snapshots,
manages push channels for running jobs and detects completions.
"""
import asyncio
import logging
from typing import Callable, Dict, List, Optional

import httpx

from api.schemas import Job, ProgressMessage, utcnow
from config import Settings
from engine.models import JobStatus
from monitor.connection_manager import ConnectionManager
from monitor.router import ERROR, PROGRESS, STATUS_CHANGE, ProgressEventRouter
from monitor.snapshot import HttpSnapshotClient, SnapshotSource
from monitor.store import (
    AddJob,
    ClearCompleted,
    JobStateStore,
    PruneTerminal,
    RemoveJob,
    ReplaceAll,
    ReplaceQueued,
    ScanningState,
    SetPolling,
    UpsertFromEvent,
)
from monitor.transport import HttpxEventStream

logger = logging.getLogger(__name__)

CompletionCallback = Callable[[Job], None]


class SyncCoordinator:
    def __init__(self, store: JobStateStore, connections: ConnectionManager,
                 router: ProgressEventRouter, snapshots: SnapshotSource, *,
                 active_poll_interval: float = 3.0, idle_poll_interval: float = 30.0,
                 prune_interval: float = 5.0, success_retention: float = 5.0,
                 failure_retention: float = 30.0, completion_grace: float = 2.0,
                 clock=utcnow):
        self.store = store
        self.connections = connections
        self.router = router
        self.snapshots = snapshots
        self.active_poll_interval = active_poll_interval
        self.idle_poll_interval = idle_poll_interval
        self.prune_interval = prune_interval
        self.success_retention = success_retention
        self.failure_retention = failure_retention
        self.completion_grace = completion_grace
        self.clock = clock

        self._on_scan_complete: Optional[CompletionCallback] = None
        self._notified = set()
        self._grace_handles: Dict[str, asyncio.TimerHandle] = {}
        self._poll_task: Optional[asyncio.Task] = None
        self._poll_interval: Optional[float] = None
        self._prune_task: Optional[asyncio.Task] = None
        self._unsubscribers: List[Callable[[], None]] = []
        self._started = False

    # Lifecycle

    async def start(self) -> None:
        """
        Fetch a snapshot right away, then keep polling and pruning in the background.
        """
        if self._started:
            return
        self._unsubscribers = [
            self.router.subscribe(PROGRESS, self._on_progress),
            self.router.subscribe(STATUS_CHANGE, self._on_connection_status),
            self.router.subscribe(ERROR, self._on_connection_error),
            self.store.subscribe(self._on_state_change),
        ]
        self._started = True
        await self.refresh()
        self._rearm_polling()
        self._prune_task = asyncio.get_running_loop().create_task(self._prune_loop())

    async def close(self) -> None:
        self._started = False
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers = []
        for handle in self._grace_handles.values():
            handle.cancel()
        self._grace_handles.clear()
        tasks = [task for task in (self._poll_task, self._prune_task) if task is not None]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._poll_task = self._prune_task = None
        self._poll_interval = None

    # Provider operations

    def set_on_scan_complete(self, callback: Optional[CompletionCallback]) -> None:
        self._on_scan_complete = callback

    def add_job(self, job: Job) -> None:
        self.store.dispatch(AddJob(job))
        if job.status is JobStatus.RUNNING:
            self.connections.connect(job.job_id)

    def remove_job(self, job_id: str) -> None:
        self.connections.disconnect(job_id)
        self.store.dispatch(RemoveJob(job_id))

    def clear_completed(self) -> None:
        self.store.dispatch(ClearCompleted())

    def subscribe_to(self, job_id: str) -> bool:
        return self.connections.connect(job_id)

    def unsubscribe_from(self, job_id: str) -> None:
        self.connections.disconnect(job_id)

    @property
    def state(self) -> ScanningState:
        return self.store.state

    async def refresh(self) -> bool:
        """
        Reconcile with one snapshot. Returns False when the fetch failed.
        """
        try:
            snapshot = await self.snapshots.fetch()
        except Exception as exc:
            logger.warning(f"Snapshot fetch failed, retrying on next tick: {exc}")
            return False

        self.store.dispatch(ReplaceAll(tuple(snapshot.jobs), fetched_at=self.clock()))
        self.store.dispatch(ReplaceQueued(tuple(snapshot.queued_scans)))

        running = {job.job_id for job in self.store.state.running}
        active = set(self.connections.list_active())
        for job_id in running - active:
            self.connections.connect(job_id)
        # jobs inside their completion grace period are disconnected by their timer
        for job_id in active - running - set(self._grace_handles):
            logger.info(f"[job_id={job_id}] No longer running, closing its channel")
            self.connections.disconnect(job_id)
        return True

    # Store and router listeners

    def _on_progress(self, job_id: str, message: ProgressMessage) -> None:
        self.store.dispatch(UpsertFromEvent(message))

    def _on_connection_status(self, job_id, status) -> None:
        logger.debug(f"[job_id={job_id}] Connection {status.value}")

    def _on_connection_error(self, job_id: str, error: str) -> None:
        logger.error(f"[job_id={job_id}] Push channel gave up: {error}")

    def _on_state_change(self, previous: ScanningState, current: ScanningState) -> None:
        for job_id, job in current.jobs.items():
            before = previous.jobs.get(job_id)
            if before is None or before.status is job.status:
                continue
            if job.status is JobStatus.SUCCESS:
                self._handle_success(job)
            elif job.status in (JobStatus.FAILED, JobStatus.CANCELLED) and before.status is JobStatus.RUNNING:
                logger.info(f"[job_id={job_id}] Scan {job.status.value.lower()}, closing its channel")
                self.connections.disconnect(job_id)
        self._notified.intersection_update(current.jobs)
        if self._started:
            self._rearm_polling()

    def _handle_success(self, job: Job) -> None:
        if job.job_id in self._notified:
            return
        self._notified.add(job.job_id)
        logger.info(f"[job_id={job.job_id}] Scan completed")
        if self._on_scan_complete is not None:
            try:
                self._on_scan_complete(job)
            except Exception:
                logger.exception(f"[job_id={job.job_id}] Completion callback failed")
        previous = self._grace_handles.pop(job.job_id, None)
        if previous is not None:
            previous.cancel()
        self._grace_handles[job.job_id] = asyncio.get_running_loop().call_later(
            self.completion_grace, self._disconnect_after_grace, job.job_id
        )

    def _disconnect_after_grace(self, job_id: str) -> None:
        self._grace_handles.pop(job_id, None)
        self.connections.disconnect(job_id)

    # Timers

    def _desired_interval(self) -> float:
        state = self.store.state
        if state.running or state.queued:
            return self.active_poll_interval
        return self.idle_poll_interval

    def _rearm_polling(self) -> None:
        interval = self._desired_interval()
        task = self._poll_task
        if task is not None and not task.done() and interval == self._poll_interval:
            return
        self._poll_interval = interval
        # from inside the poll task the loop picks the new interval up on its next sleep
        if task is None or task.done() or task is not asyncio.current_task():
            if task is not None:
                task.cancel()
            self._poll_task = asyncio.get_running_loop().create_task(self._poll_loop())
        logger.debug(f"Snapshot polling every {interval}s")
        polling = interval == self.active_poll_interval
        if self.store.state.is_polling != polling:
            self.store.dispatch(SetPolling(polling))

    async def _poll_loop(self) -> None:
        while True:
            await asyncio.sleep(self._poll_interval)
            await self.refresh()

    async def _prune_loop(self) -> None:
        while True:
            await asyncio.sleep(self.prune_interval)
            self.store.dispatch(PruneTerminal(
                now=self.clock(),
                success_retention=self.success_retention,
                failure_retention=self.failure_retention,
            ))


class ScanMonitor:
    """
    Observer-side delivery layer wired from settings: one router, one
    connection manager, one store and one sync coordinator sharing an
    httpx client pointed at the Scanflow API.
    """

    def __init__(self, settings: Settings, client: httpx.AsyncClient = None, snapshots: SnapshotSource = None):
        self._owns_client = client is None
        self.client = client or httpx.AsyncClient(
            base_url=settings.monitor_base_url, timeout=httpx.Timeout(10.0, read=None)
        )
        self.router = ProgressEventRouter()
        self.connections = ConnectionManager.from_settings(HttpxEventStream(self.client), self.router, settings)
        self.store = JobStateStore()
        self.sync = SyncCoordinator(
            self.store, self.connections, self.router,
            snapshots or HttpSnapshotClient(self.client),
            active_poll_interval=settings.active_poll_interval,
            idle_poll_interval=settings.idle_poll_interval,
            prune_interval=settings.prune_interval,
            success_retention=settings.success_retention,
            failure_retention=settings.failure_retention,
            completion_grace=settings.completion_grace,
        )

    async def start(self) -> None:
        self.connections.start()
        await self.sync.start()

    async def close(self) -> None:
        await self.sync.close()
        await self.connections.close()
        if self._owns_client:
            await self.client.aclose()

    async def __aenter__(self) -> "ScanMonitor":
        await self.start()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()
