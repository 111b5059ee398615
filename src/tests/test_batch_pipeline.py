import asyncio

import pytest

from api.schemas import ScheduledScanCreate
from engine.batch_pipeline import BatchExecutionPipeline, final_batch_status
from engine.events import ProgressBroker
from engine.exceptions import BatchDisabled, InvalidPattern, NoTargetsResolved, NotFound, SelectionModeNotImplemented
from engine.job_manager import JobManager
from engine.models import BatchStatus, JobStatus, ScanBatch, ScanJob, SelectionMode


def make_pipeline(persistence, executor, max_concurrency=1):
    return BatchExecutionPipeline(persistence, executor, job_manager=JobManager(), broker=ProgressBroker(),
                                  max_concurrency=max_concurrency)


def count_rows(persistence, model):
    with persistence.session() as db:
        return db.query(model).count()


def jobs_of(persistence, batch_id):
    with persistence.session() as db:
        return {row.image_name: row.status for row in db.query(ScanJob).filter(ScanJob.batch_id == batch_id)}


async def run_to_end(pipeline, started):
    await pipeline.job_manager.wait(started.batch_id)
    return pipeline.persistence.get_batch(started.batch_id)


@pytest.mark.parametrize("total, completed, failed, expected", [
    (5, 5, 0, BatchStatus.COMPLETED),
    (5, 3, 2, BatchStatus.PARTIAL),
    (3, 0, 3, BatchStatus.FAILED),
    (1, 0, 1, BatchStatus.FAILED),
])
def test_final_batch_status(total, completed, failed, expected):
    assert final_batch_status(total, completed, failed) is expected


@pytest.mark.asyncio
async def test_partial_failure(persistence, images, make_executor):
    pipeline = make_pipeline(persistence, make_executor(failures={"redis", "node"}))
    started = await pipeline.trigger_targets([image.id for image in images])
    assert started.status == "STARTED"
    assert started.total_targets == 5

    batch = await run_to_end(pipeline, started)
    assert batch.status is BatchStatus.PARTIAL
    assert (batch.completed_count, batch.failed_count) == (3, 2)
    assert batch.completed_at is not None
    statuses = jobs_of(persistence, started.batch_id)
    assert statuses["redis:7"] == JobStatus.FAILED.value
    assert statuses["alpine:3.19"] == JobStatus.SUCCESS.value


@pytest.mark.asyncio
async def test_all_targets_fail(persistence, images, make_executor):
    pipeline = make_pipeline(persistence, make_executor(failures={"alpine", "nginx", "redis"}))
    started = await pipeline.trigger_targets([image.id for image in images[:3]])
    batch = await run_to_end(pipeline, started)
    assert batch.status is BatchStatus.FAILED
    assert (batch.completed_count, batch.failed_count) == (0, 3)


@pytest.mark.asyncio
async def test_concurrent_targets_keep_counters_consistent(persistence, images, make_executor):
    pipeline = make_pipeline(persistence, make_executor(failures={"nginx"}), max_concurrency=5)
    started = await pipeline.trigger_targets([image.id for image in images])
    batch = await run_to_end(pipeline, started)
    assert batch.completed_count + batch.failed_count == batch.total_targets
    assert batch.status is BatchStatus.PARTIAL


@pytest.mark.asyncio
async def test_progress_is_published(persistence, images, make_executor):
    pipeline = make_pipeline(persistence, make_executor())
    started = await pipeline.trigger_targets([images[0].id])
    await run_to_end(pipeline, started)
    with persistence.session() as db:
        job_id = db.query(ScanJob.job_id).filter(ScanJob.batch_id == started.batch_id).scalar()
    latest = pipeline.broker.latest(job_id)
    assert latest.status is JobStatus.SUCCESS
    assert latest.progress == 100
    assert latest.step == "Completed"


@pytest.mark.asyncio
async def test_scheduled_scan_updates_last_run(persistence, images, make_executor):
    scan = persistence.create_scheduled_scan(ScheduledScanCreate(name="nightly", image_ids=[images[1].id]))
    pipeline = make_pipeline(persistence, make_executor())
    started = await pipeline.trigger(scan.id)
    batch = await run_to_end(pipeline, started)
    assert batch.status is BatchStatus.COMPLETED
    assert batch.scheduled_scan_id == scan.id
    assert persistence.get_scheduled_scan(scan.id).last_run_at is not None


@pytest.mark.asyncio
async def test_disabled_schedule_creates_no_batch(persistence, images, make_executor):
    scan = persistence.create_scheduled_scan(ScheduledScanCreate(
        name="off", enabled=False, image_ids=[images[0].id],
    ))
    pipeline = make_pipeline(persistence, make_executor())
    with pytest.raises(BatchDisabled):
        await pipeline.trigger(scan.id)
    assert count_rows(persistence, ScanBatch) == 0


@pytest.mark.asyncio
async def test_unknown_schedule(persistence, make_executor):
    pipeline = make_pipeline(persistence, make_executor())
    with pytest.raises(NotFound):
        await pipeline.trigger("missing")


@pytest.mark.asyncio
async def test_pattern_without_matches_creates_no_batch(persistence, images, make_executor):
    scan = persistence.create_scheduled_scan(ScheduledScanCreate(
        name="none", selection_mode=SelectionMode.PATTERN, image_pattern="^doesnotexist",
    ))
    pipeline = make_pipeline(persistence, make_executor())
    with pytest.raises(NoTargetsResolved) as excinfo:
        await pipeline.trigger(scan.id)
    assert excinfo.value.status_code == 400
    assert count_rows(persistence, ScanBatch) == 0
    assert count_rows(persistence, ScanJob) == 0


@pytest.mark.asyncio
async def test_invalid_pattern_creates_no_batch(persistence, images, make_executor):
    scan = persistence.create_scheduled_scan(ScheduledScanCreate(
        name="broken", selection_mode=SelectionMode.PATTERN, image_pattern="[",
    ))
    pipeline = make_pipeline(persistence, make_executor())
    with pytest.raises(InvalidPattern):
        await pipeline.trigger(scan.id)
    assert count_rows(persistence, ScanBatch) == 0


@pytest.mark.asyncio
async def test_repository_mode_is_rejected(persistence, make_executor):
    scan = persistence.create_scheduled_scan(ScheduledScanCreate(name="repo", selection_mode=SelectionMode.REPOSITORY))
    pipeline = make_pipeline(persistence, make_executor())
    with pytest.raises(SelectionModeNotImplemented):
        await pipeline.trigger(scan.id)


@pytest.mark.asyncio
async def test_ad_hoc_batch_with_unknown_image(persistence, images, make_executor):
    pipeline = make_pipeline(persistence, make_executor())
    with pytest.raises(NotFound):
        await pipeline.trigger_targets([images[0].id, "missing"])
    assert count_rows(persistence, ScanBatch) == 0


@pytest.mark.asyncio
async def test_cancel_stops_remaining_targets(persistence, images, make_executor, eventually):
    gate = asyncio.Event()
    executor = make_executor(gate=gate)
    pipeline = make_pipeline(persistence, executor)
    started = await pipeline.trigger_targets([image.id for image in images[:3]])

    await eventually(lambda: executor.started == ["alpine"])
    assert pipeline.cancel(started.batch_id)
    gate.set()
    batch = await run_to_end(pipeline, started)

    assert executor.started == ["alpine"]
    assert batch.status is BatchStatus.PARTIAL
    assert (batch.completed_count, batch.failed_count) == (1, 2)
    assert batch.error_message == "Cancelled by user"
    statuses = jobs_of(persistence, started.batch_id)
    assert statuses["nginx:1.25"] == JobStatus.CANCELLED.value
    assert not pipeline.cancel(started.batch_id)


class BrokenPersistence:
    """Delegates to real persistence but cannot create jobs."""
    def __init__(self, inner):
        self.inner = inner

    def __getattr__(self, name):
        return getattr(self.inner, name)

    def create_job(self, *args, **kwargs):
        raise RuntimeError("database is gone")


@pytest.mark.asyncio
async def test_pipeline_fault_fails_the_batch(persistence, images, make_executor):
    pipeline = make_pipeline(BrokenPersistence(persistence), make_executor())
    started = await pipeline.trigger_targets([images[0].id])
    await pipeline.job_manager.wait(started.batch_id)

    batch = persistence.get_batch(started.batch_id)
    assert batch.status is BatchStatus.FAILED
    assert batch.error_message == "database is gone"
    assert batch.completed_at is not None


@pytest.mark.asyncio
async def test_recover_interrupted_batches(persistence, images, make_executor):
    batch = persistence.create_batch(None, 1, "API")
    job = persistence.create_job(batch.batch_id, images[0])
    persistence.update_batch(batch.batch_id, status=BatchStatus.RUNNING, started=True)
    persistence.update_job(job.job_id, status=JobStatus.RUNNING)

    pipeline = make_pipeline(persistence, make_executor())
    assert await pipeline.recover_interrupted() == [batch.batch_id]

    batch = persistence.get_batch(batch.batch_id)
    assert batch.status is BatchStatus.FAILED
    assert batch.error_message == "Interrupted by server restart"
    assert persistence.get_job(job.job_id).status is JobStatus.FAILED
