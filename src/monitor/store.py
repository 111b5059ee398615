# src/monitor/store.py
"""
Observer-side job state.

State changes only through actions applied by the pure ``apply`` reducer, so
a recorded action log can be replayed to reproduce any state.
"""
import functools
import logging
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Callable, Iterable, List, Mapping, Optional, Tuple

from api.schemas import Job, ProgressMessage
from engine.models import JobStatus

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ScanningState:
    jobs: Mapping[str, Job] = field(default_factory=dict)
    queued: Tuple[Job, ...] = ()
    last_fetch_time: Optional[datetime] = None
    is_polling: bool = False

    @property
    def running(self) -> List[Job]:
        return [job for job in self.jobs.values() if job.status is JobStatus.RUNNING]

    @property
    def completed(self) -> List[Job]:
        return [job for job in self.jobs.values() if job.status is not JobStatus.RUNNING]

    def get(self, job_id: str) -> Optional[Job]:
        return self.jobs.get(job_id)


# Actions

@dataclass(frozen=True)
class UpsertFromEvent:
    event: ProgressMessage


@dataclass(frozen=True)
class AddJob:
    job: Job


@dataclass(frozen=True)
class RemoveJob:
    job_id: str


@dataclass(frozen=True)
class ReplaceAll:
    jobs: Tuple[Job, ...]
    fetched_at: datetime


@dataclass(frozen=True)
class ReplaceQueued:
    jobs: Tuple[Job, ...]


@dataclass(frozen=True)
class PruneTerminal:
    now: datetime
    success_retention: float = 5.0
    failure_retention: float = 30.0


@dataclass(frozen=True)
class SetPolling:
    polling: bool


@dataclass(frozen=True)
class ClearCompleted:
    pass


def _clamp(progress) -> int:
    return int(round(min(max(progress, 0), 100)))


def _merge(current: Optional[Job], incoming: Job) -> Job:
    """
    Pick the state to keep when two versions of a job meet.

    Older versions never overwrite newer ones, terminal states are final and
    progress never goes backwards while a job keeps running.
    """
    if current is None:
        return incoming
    if incoming.last_updated_at < current.last_updated_at:
        return current
    if current.status is not incoming.status and not current.status.can_become(incoming.status):
        return current
    if current.status.is_terminal:
        return current
    update = {}
    if current.status is JobStatus.RUNNING and incoming.status is JobStatus.RUNNING:
        update["progress"] = max(current.progress, incoming.progress)
    if not incoming.target_name and current.target_name:
        update["target_name"] = current.target_name
        update["target_id"] = incoming.target_id or current.target_id
    return incoming.model_copy(update=update) if update else incoming


@functools.singledispatch
def _reduce(action, state: ScanningState) -> ScanningState:
    logger.warning(f"Ignoring unknown action {type(action).__name__}")
    return state


@_reduce.register
def _(action: UpsertFromEvent, state: ScanningState) -> ScanningState:
    event = action.event
    existing = state.jobs.get(event.request_id)
    if existing is None:
        job = Job(
            job_id=event.request_id,
            scan_id=event.scan_id,
            target_name="",
            status=event.status,
            progress=_clamp(event.progress),
            step=event.step,
            error=event.error,
            started_at=event.timestamp,
            last_updated_at=event.timestamp,
        )
    else:
        job = _merge(existing, existing.model_copy(update={
            "scan_id": event.scan_id,
            "status": event.status,
            "progress": _clamp(event.progress),
            "step": event.step,
            "error": event.error,
            "last_updated_at": event.timestamp,
            "queue_position": None if event.status is not JobStatus.QUEUED else existing.queue_position,
        }))
        if job is existing:
            return state
    return replace(state, jobs={**state.jobs, job.job_id: job})


@_reduce.register
def _(action: AddJob, state: ScanningState) -> ScanningState:
    return replace(state, jobs={**state.jobs, action.job.job_id: action.job})


@_reduce.register
def _(action: RemoveJob, state: ScanningState) -> ScanningState:
    if action.job_id not in state.jobs:
        return state
    return replace(state, jobs={k: v for k, v in state.jobs.items() if k != action.job_id})


@_reduce.register
def _(action: ReplaceAll, state: ScanningState) -> ScanningState:
    jobs = {job.job_id: _merge(state.jobs.get(job.job_id), job) for job in action.jobs}
    # terminal jobs the snapshot no longer lists stay until pruned
    for job_id, job in state.jobs.items():
        if job_id not in jobs and job.status.is_terminal:
            jobs[job_id] = job
    return replace(state, jobs=jobs, last_fetch_time=action.fetched_at)


@_reduce.register
def _(action: ReplaceQueued, state: ScanningState) -> ScanningState:
    return replace(state, queued=tuple(action.jobs))


@_reduce.register
def _(action: PruneTerminal, state: ScanningState) -> ScanningState:
    def keep(job: Job) -> bool:
        if not job.status.is_terminal:
            return True
        age = (action.now - job.last_updated_at).total_seconds()
        if job.status is JobStatus.SUCCESS:
            return age < action.success_retention
        return age < action.failure_retention

    jobs = {job_id: job for job_id, job in state.jobs.items() if keep(job)}
    if len(jobs) == len(state.jobs):
        return state
    return replace(state, jobs=jobs)


@_reduce.register
def _(action: SetPolling, state: ScanningState) -> ScanningState:
    if state.is_polling == action.polling:
        return state
    return replace(state, is_polling=action.polling)


@_reduce.register
def _(action: ClearCompleted, state: ScanningState) -> ScanningState:
    jobs = {job_id: job for job_id, job in state.jobs.items() if job.status is JobStatus.RUNNING}
    if len(jobs) == len(state.jobs):
        return state
    return replace(state, jobs=jobs)


def apply(state: ScanningState, action) -> ScanningState:
    """
    Return the state after ``action``. Never mutates ``state``; returns it unchanged for no-ops.
    """
    return _reduce(action, state)


def replay(actions: Iterable, initial: Optional[ScanningState] = None) -> ScanningState:
    return functools.reduce(apply, actions, initial or ScanningState())


Listener = Callable[[ScanningState, ScanningState], None]


class JobStateStore:
    """
    Holds the current ScanningState, records the actions that changed it and
    notifies listeners with ``(previous, current)`` after each change.

    Once the log holds ``max_log`` actions the current state becomes the new
    replay starting point and the log is cleared.
    """

    def __init__(self, initial: Optional[ScanningState] = None, max_log: int = 1000):
        self._state = initial or ScanningState()
        self._initial = self._state
        self._log: List = []
        self._max_log = max_log
        self._listeners: List[Listener] = []

    @property
    def state(self) -> ScanningState:
        return self._state

    @property
    def initial(self) -> ScanningState:
        return self._initial

    @property
    def actions(self) -> Tuple:
        return tuple(self._log)

    def dispatch(self, action) -> ScanningState:
        previous = self._state
        current = apply(previous, action)
        if current is previous:
            return current
        if len(self._log) >= self._max_log:
            self._initial = previous
            self._log.clear()
        self._log.append(action)
        self._state = current
        for listener in list(self._listeners):
            try:
                listener(previous, current)
            except Exception:
                logger.exception(f"Store listener failed on {type(action).__name__}")
        return current

    def replay(self) -> ScanningState:
        """
        Rebuild the state from the initial state and the recorded actions.
        """
        return replay(self._log, self._initial)

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        self._listeners.append(listener)
        return lambda: self._listeners.remove(listener) if listener in self._listeners else None

    # Views

    def get(self, job_id: str) -> Optional[Job]:
        return self._state.get(job_id)

    def running(self) -> List[Job]:
        return self._state.running

    def completed(self) -> List[Job]:
        return self._state.completed

    def all(self) -> List[Job]:
        return list(self._state.jobs.values())

    def queued(self) -> List[Job]:
        return list(self._state.queued)
