import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from api.schemas import Job, ProgressMessage, Snapshot
from engine.models import JobStatus
from monitor.router import ProgressEventRouter
from monitor.store import JobStateStore
from monitor.sync import SyncCoordinator

T0 = datetime(2026, 1, 1, 10, 0, 0, tzinfo=timezone.utc)


def running(job_id, seconds=0):
    return Job(job_id=job_id, scan_id=f"scan-{job_id}", target_name=f"{job_id}:latest",
               status=JobStatus.RUNNING, progress=10, started_at=T0, last_updated_at=T0 + timedelta(seconds=seconds))


def progress_event(job_id, status, seconds, progress=100):
    return ProgressMessage(request_id=job_id, scan_id=f"scan-{job_id}", status=status, progress=progress,
                           timestamp=T0 + timedelta(seconds=seconds))


class FakeSnapshots:
    def __init__(self, snapshot=None):
        self.snapshot = snapshot or Snapshot()
        self.fetches = 0
        self.fail = False

    async def fetch(self):
        self.fetches += 1
        if self.fail:
            raise ConnectionError("api unavailable")
        return self.snapshot


class FakeConnections:
    def __init__(self, active=()):
        self.active = set(active)
        self.calls = []

    def connect(self, job_id):
        self.calls.append(("connect", job_id))
        self.active.add(job_id)
        return True

    def disconnect(self, job_id):
        self.calls.append(("disconnect", job_id))
        self.active.discard(job_id)

    def list_active(self):
        return sorted(self.active)


def make_coordinator(snapshots, connections, router=None, **options):
    settings = dict(active_poll_interval=0.02, idle_poll_interval=10, prune_interval=10, completion_grace=0.05)
    settings.update(options)
    return SyncCoordinator(JobStateStore(), connections, router or ProgressEventRouter(), snapshots, **settings)


@pytest.mark.asyncio
async def test_start_fetches_immediately_and_connects_running_jobs():
    snapshots = FakeSnapshots(Snapshot(jobs=[running("a"), running("b")]))
    connections = FakeConnections(active={"b"})
    coordinator = make_coordinator(snapshots, connections, active_poll_interval=10)

    await coordinator.start()
    assert snapshots.fetches == 1
    assert connections.calls == [("connect", "a")]
    assert {job.job_id for job in coordinator.state.running} == {"a", "b"}
    assert coordinator.state.is_polling
    await coordinator.close()


@pytest.mark.asyncio
async def test_stale_connections_are_closed():
    snapshots = FakeSnapshots(Snapshot(jobs=[running("a")]))
    connections = FakeConnections(active={"a", "ghost"})
    coordinator = make_coordinator(snapshots, connections)

    await coordinator.start()
    assert ("disconnect", "ghost") in connections.calls
    assert ("disconnect", "a") not in connections.calls
    await coordinator.close()


@pytest.mark.asyncio
async def test_success_calls_back_once_then_disconnects_after_grace(eventually):
    snapshots = FakeSnapshots(Snapshot(jobs=[running("a")]))
    connections = FakeConnections()
    router = ProgressEventRouter()
    coordinator = make_coordinator(snapshots, connections, router, active_poll_interval=10, completion_grace=0.1)
    completed = []
    coordinator.set_on_scan_complete(lambda job: completed.append(job.job_id))
    await coordinator.start()

    router.emit("progress", "a", progress_event("a", JobStatus.SUCCESS, seconds=5))
    router.emit("progress", "a", progress_event("a", JobStatus.SUCCESS, seconds=6))
    assert completed == ["a"]
    assert ("disconnect", "a") not in connections.calls

    await asyncio.sleep(0.05)
    assert ("disconnect", "a") not in connections.calls
    await eventually(lambda: ("disconnect", "a") in connections.calls)
    assert completed == ["a"]
    await coordinator.close()


@pytest.mark.asyncio
async def test_stale_snapshot_does_not_reopen_finished_job(eventually):
    snapshots = FakeSnapshots(Snapshot(jobs=[running("a")]))
    connections = FakeConnections()
    router = ProgressEventRouter()
    coordinator = make_coordinator(snapshots, connections, router, active_poll_interval=10, completion_grace=0.01)
    await coordinator.start()
    assert connections.calls == [("connect", "a")]

    router.emit("progress", "a", progress_event("a", JobStatus.SUCCESS, seconds=5))
    await eventually(lambda: ("disconnect", "a") in connections.calls)

    # the snapshot still lists the job as running
    assert await coordinator.refresh()
    assert coordinator.state.get("a").status is JobStatus.SUCCESS
    assert connections.calls.count(("connect", "a")) == 1
    await coordinator.close()


@pytest.mark.asyncio
async def test_failure_disconnects_immediately_without_callback():
    snapshots = FakeSnapshots(Snapshot(jobs=[running("a")]))
    connections = FakeConnections()
    router = ProgressEventRouter()
    coordinator = make_coordinator(snapshots, connections, router, active_poll_interval=10)
    completed = []
    coordinator.set_on_scan_complete(completed.append)
    await coordinator.start()

    router.emit("progress", "a", progress_event("a", JobStatus.FAILED, seconds=5, progress=40))
    assert connections.calls[-1] == ("disconnect", "a")
    assert completed == []
    assert coordinator.state.get("a").status is JobStatus.FAILED
    await coordinator.close()


@pytest.mark.asyncio
async def test_polls_fast_while_jobs_run_and_slow_when_idle(eventually):
    snapshots = FakeSnapshots(Snapshot(jobs=[running("a")]))
    connections = FakeConnections()
    coordinator = make_coordinator(snapshots, connections, active_poll_interval=0.02, idle_poll_interval=10)
    await coordinator.start()
    await eventually(lambda: snapshots.fetches >= 4)
    assert coordinator.state.is_polling

    snapshots.snapshot = Snapshot()
    await eventually(lambda: not coordinator.state.is_polling)
    fetches = snapshots.fetches
    await asyncio.sleep(0.1)
    assert snapshots.fetches == fetches
    await coordinator.close()


@pytest.mark.asyncio
async def test_queued_entries_keep_fast_polling():
    queued = Job(job_id="q", status=JobStatus.QUEUED, queue_position=1)
    snapshots = FakeSnapshots(Snapshot(queued_scans=[queued]))
    coordinator = make_coordinator(snapshots, FakeConnections(), active_poll_interval=10)
    await coordinator.start()
    assert coordinator.state.is_polling
    assert coordinator.state.queued == (queued,)
    await coordinator.close()


@pytest.mark.asyncio
async def test_failed_fetch_is_retried_on_next_tick(eventually):
    snapshots = FakeSnapshots(Snapshot(jobs=[running("a")]))
    snapshots.fail = True
    coordinator = make_coordinator(snapshots, FakeConnections(), idle_poll_interval=0.02)
    await coordinator.start()
    assert coordinator.state.jobs == {}

    snapshots.fail = False
    await eventually(lambda: "a" in coordinator.state.jobs)
    await coordinator.close()


@pytest.mark.asyncio
async def test_prune_loop_drops_finished_jobs(eventually):
    snapshots = FakeSnapshots(Snapshot(jobs=[running("a")]))
    router = ProgressEventRouter()
    coordinator = make_coordinator(
        snapshots, FakeConnections(), router, active_poll_interval=10, prune_interval=0.02,
        clock=lambda: T0 + timedelta(seconds=60),
    )
    await coordinator.start()
    snapshots.snapshot = Snapshot()
    router.emit("progress", "a", progress_event("a", JobStatus.FAILED, seconds=5, progress=40))
    await eventually(lambda: "a" not in coordinator.state.jobs)
    await coordinator.close()


@pytest.mark.asyncio
async def test_provider_operations():
    connections = FakeConnections()
    coordinator = make_coordinator(FakeSnapshots(), connections, active_poll_interval=10)
    await coordinator.start()

    coordinator.add_job(running("a"))
    assert ("connect", "a") in connections.calls
    coordinator.add_job(Job(job_id="b", status=JobStatus.FAILED))
    assert ("connect", "b") not in connections.calls

    coordinator.clear_completed()
    assert set(coordinator.state.jobs) == {"a"}

    coordinator.remove_job("a")
    assert connections.calls[-1] == ("disconnect", "a")
    assert coordinator.state.jobs == {}

    assert coordinator.subscribe_to("c")
    coordinator.unsubscribe_from("c")
    assert connections.calls[-2:] == [("connect", "c"), ("disconnect", "c")]
    await coordinator.close()
