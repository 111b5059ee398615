# src/engine/persistence.py
"""
Persistence: data-access interface for batches, jobs and the image inventory,
plus the SQLAlchemy implementation backed by engine.db.
"""
import abc
import json
import logging
import uuid
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Tuple

from sqlalchemy import update

from api.schemas import BatchInfo, ImageInfo, Job, ScheduledScanCreate, ScheduledScanInfo
from engine.exceptions import NotFound
from engine.models import (
    BatchStatus,
    Image,
    JobStatus,
    ScanBatch,
    ScanJob,
    ScheduledScan,
)

logger = logging.getLogger(__name__)

# Seconds a queued scan is expected to wait per job ahead of it
ESTIMATED_SECONDS_PER_JOB = 60


class Persistence(abc.ABC):
    """
    Store of record for scan batches and jobs.
    """
    @abc.abstractmethod
    def create_batch(self, scheduled_scan_id: Optional[str], total_targets: int,
                     trigger_source: str = "MANUAL") -> BatchInfo:
        """Create a PENDING batch."""

    @abc.abstractmethod
    def update_batch(self, batch_id: str, *, status: Optional[BatchStatus] = None,
                     error_message: Optional[str] = None, started: bool = False,
                     completed: bool = False) -> BatchInfo:
        """Change a batch's status. Terminal batches are never changed again."""

    @abc.abstractmethod
    def get_batch(self, batch_id: str) -> BatchInfo:
        """Return a batch or raise NotFound."""

    @abc.abstractmethod
    def create_job(self, batch_id: Optional[str], image: ImageInfo,
                   queue_position: Optional[int] = None) -> Job:
        """Create a QUEUED job for one target."""

    @abc.abstractmethod
    def update_job(self, job_id: str, *, status: Optional[JobStatus] = None,
                   progress: Optional[int] = None, step: Optional[str] = None,
                   error: Optional[str] = None, metrics: Optional[Dict[str, Any]] = None) -> Job:
        """Update a non-terminal job."""

    @abc.abstractmethod
    def record_target_outcome(self, batch_id: str, job_id: str, *, status: JobStatus,
                              error: Optional[str] = None,
                              metrics: Optional[Dict[str, Any]] = None) -> Tuple[Job, BatchInfo]:
        """
        Persist a job's terminal state and the matching batch counter in one transaction.

        SUCCESS increments completed_count; FAILED and CANCELLED increment failed_count.
        """

    @abc.abstractmethod
    def fail_open_jobs(self, batch_id: str, error: str) -> List[Job]:
        """Mark every non-terminal job of a batch FAILED, leaving the counters alone."""

    @abc.abstractmethod
    def list_open_batches(self) -> List[BatchInfo]:
        """Batches that are PENDING or RUNNING."""

    @abc.abstractmethod
    def list_running_jobs(self) -> List[Job]:
        """Jobs currently RUNNING."""

    @abc.abstractmethod
    def list_queued_batch_entries(self) -> List[Job]:
        """Jobs waiting to start, in queue order."""

    @abc.abstractmethod
    def get_scheduled_scan(self, scheduled_scan_id: str) -> ScheduledScanInfo:
        """Return a scheduled scan or raise NotFound."""

    @abc.abstractmethod
    def mark_scheduled_run(self, scheduled_scan_id: str) -> None:
        """Record that a scheduled scan was just executed."""

    @abc.abstractmethod
    def list_images(self, image_ids: Optional[Iterable[str]] = None) -> List[ImageInfo]:
        """The image inventory, optionally restricted to the given ids."""


def _job_from_row(row: ScanJob) -> Job:
    return Job(
        job_id=row.job_id,
        scan_id=row.scan_id,
        target_id=row.image_id,
        target_name=row.image_name,
        status=JobStatus(row.status),
        progress=row.progress or 0,
        step=row.step,
        error=row.error,
        started_at=row.started_at or row.created_at,
        last_updated_at=row.last_updated_at or row.created_at,
        queue_position=row.queue_position,
        estimated_wait_seconds=(
            row.queue_position * ESTIMATED_SECONDS_PER_JOB if row.queue_position is not None else None
        ),
    )


def _batch_from_row(row: ScanBatch) -> BatchInfo:
    return BatchInfo(
        batch_id=row.id,
        execution_id=row.execution_id,
        scheduled_scan_id=row.scheduled_scan_id,
        status=BatchStatus(row.status),
        trigger_source=row.trigger_source,
        total_targets=row.total_targets,
        completed_count=row.completed_count,
        failed_count=row.failed_count,
        error_message=row.error_message,
        started_at=row.started_at,
        completed_at=row.completed_at,
    )


def _image_from_row(row: Image) -> ImageInfo:
    return ImageInfo(id=row.id, name=row.name, tag=row.tag, registry=row.registry_url, source=row.source)


def _scheduled_scan_from_row(row: ScheduledScan) -> ScheduledScanInfo:
    return ScheduledScanInfo(
        id=row.id,
        name=row.name,
        enabled=row.enabled,
        selection_mode=row.selection_mode,
        image_pattern=row.image_pattern,
        image_ids=[image.id for image in row.selected_images],
        last_run_at=row.last_run_at,
    )


class SqlPersistence(Persistence):
    """
    Persistence implemented with SQLAlchemy sessions.
    """
    def __init__(self, session_factory):
        self.session_factory = session_factory

    @contextmanager
    def session(self):
        db = self.session_factory()
        try:
            yield db
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    # Batches

    def create_batch(self, scheduled_scan_id, total_targets, trigger_source="MANUAL"):
        with self.session() as db:
            batch = ScanBatch(
                id=str(uuid.uuid4()),
                execution_id=str(uuid.uuid4()),
                scheduled_scan_id=scheduled_scan_id,
                status=BatchStatus.PENDING.value,
                trigger_source=trigger_source,
                total_targets=total_targets,
                completed_count=0,
                failed_count=0,
            )
            db.add(batch)
            db.flush()
            logger.info(f"[batch_id={batch.id}] Created batch. targets={total_targets} schedule={scheduled_scan_id}")
            return _batch_from_row(batch)

    def _load_batch(self, db, batch_id) -> ScanBatch:
        batch = db.query(ScanBatch).filter(ScanBatch.id == batch_id).first()
        if batch is None:
            raise NotFound("Batch", batch_id)
        return batch

    def update_batch(self, batch_id, *, status=None, error_message=None, started=False, completed=False):
        with self.session() as db:
            batch = self._load_batch(db, batch_id)
            if BatchStatus(batch.status).is_terminal:
                logger.warning(f"[batch_id={batch_id}] Ignoring update of terminal batch ({batch.status})")
                return _batch_from_row(batch)
            if status is not None:
                batch.status = status.value
            if error_message is not None:
                batch.error_message = error_message
            if started:
                batch.started_at = datetime.utcnow()
            if completed:
                batch.completed_at = datetime.utcnow()
            db.flush()
            return _batch_from_row(batch)

    def get_batch(self, batch_id):
        with self.session() as db:
            return _batch_from_row(self._load_batch(db, batch_id))

    # Jobs

    def create_job(self, batch_id, image, queue_position=None):
        with self.session() as db:
            job = ScanJob(
                job_id=str(uuid.uuid4()),
                scan_id=str(uuid.uuid4()),
                batch_id=batch_id,
                image_id=image.id,
                image_name=image.reference,
                status=JobStatus.QUEUED.value,
                progress=0,
                queue_position=queue_position,
                last_updated_at=datetime.utcnow(),
            )
            db.add(job)
            db.flush()
            return _job_from_row(job)

    def _load_job(self, db, job_id) -> ScanJob:
        job = db.query(ScanJob).filter(ScanJob.job_id == job_id).first()
        if job is None:
            raise NotFound("Job", job_id)
        return job

    def _apply_job_update(self, job, status=None, progress=None, step=None, error=None, metrics=None):
        now = datetime.utcnow()
        if status is not None:
            if not JobStatus(job.status).can_become(status):
                raise ValueError(f"Job {job.job_id} cannot go from {job.status} to {status.value}")
            if status is JobStatus.RUNNING and job.started_at is None:
                job.started_at = now
                job.queue_position = None
            if status.is_terminal:
                job.finished_at = now
            job.status = status.value
        if progress is not None:
            job.progress = max(job.progress or 0, min(100, int(progress)))
        if step is not None:
            job.step = step
        if error is not None:
            job.error = error
        if metrics is not None:
            job.scan_stats = json.dumps(metrics)
        job.last_updated_at = now

    def update_job(self, job_id, *, status=None, progress=None, step=None, error=None, metrics=None):
        with self.session() as db:
            job = self._load_job(db, job_id)
            if JobStatus(job.status).is_terminal:
                logger.warning(f"[job_id={job_id}] Ignoring update of terminal job ({job.status})")
                return _job_from_row(job)
            self._apply_job_update(job, status, progress, step, error, metrics)
            db.flush()
            return _job_from_row(job)

    def record_target_outcome(self, batch_id, job_id, *, status, error=None, metrics=None):
        if not status.is_terminal:
            raise ValueError(f"{status.value} is not a terminal job status")
        with self.session() as db:
            job = self._load_job(db, job_id)
            if JobStatus(job.status).is_terminal:
                raise ValueError(f"Job {job_id} is already {job.status}")
            if status is JobStatus.SUCCESS:
                self._apply_job_update(job, status, progress=100, step="Completed", metrics=metrics)
                counter = {"completed_count": ScanBatch.completed_count + 1}
            else:
                self._apply_job_update(job, status, error=error or "Scan failed", metrics=metrics)
                counter = {"failed_count": ScanBatch.failed_count + 1}
            # The guard keeps completed + failed <= total even under concurrent writers
            result = db.execute(
                update(ScanBatch)
                .where(ScanBatch.id == batch_id)
                .where(ScanBatch.completed_count + ScanBatch.failed_count < ScanBatch.total_targets)
                .values(**counter)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                raise ValueError(f"Batch {batch_id} has no outstanding targets")
            db.flush()
            batch = self._load_batch(db, batch_id)
            db.refresh(batch)
            return _job_from_row(job), _batch_from_row(batch)

    def fail_open_jobs(self, batch_id, error):
        with self.session() as db:
            rows = (
                db.query(ScanJob)
                .filter(ScanJob.batch_id == batch_id)
                .filter(ScanJob.status.in_([JobStatus.QUEUED.value, JobStatus.RUNNING.value]))
                .all()
            )
            for row in rows:
                self._apply_job_update(row, JobStatus.FAILED, error=error)
            db.flush()
            return [_job_from_row(row) for row in rows]

    def list_open_batches(self):
        with self.session() as db:
            rows = (
                db.query(ScanBatch)
                .filter(ScanBatch.status.in_([BatchStatus.PENDING.value, BatchStatus.RUNNING.value]))
                .all()
            )
            return [_batch_from_row(row) for row in rows]

    def list_running_jobs(self):
        with self.session() as db:
            rows = (
                db.query(ScanJob)
                .filter(ScanJob.status == JobStatus.RUNNING.value)
                .order_by(ScanJob.started_at)
                .all()
            )
            return [_job_from_row(row) for row in rows]

    def list_queued_batch_entries(self):
        with self.session() as db:
            rows = (
                db.query(ScanJob)
                .filter(ScanJob.status == JobStatus.QUEUED.value)
                .order_by(ScanJob.created_at, ScanJob.id)
                .all()
            )
            return [
                _job_from_row(row).model_copy(update={
                    "queue_position": position,
                    "estimated_wait_seconds": position * ESTIMATED_SECONDS_PER_JOB,
                })
                for position, row in enumerate(rows, start=1)
            ]

    def get_job(self, job_id) -> Job:
        with self.session() as db:
            return _job_from_row(self._load_job(db, job_id))

    # Scheduled scans and inventory

    def get_scheduled_scan(self, scheduled_scan_id):
        with self.session() as db:
            scan = db.query(ScheduledScan).filter(ScheduledScan.id == scheduled_scan_id).first()
            if scan is None:
                raise NotFound("Scheduled scan", scheduled_scan_id)
            return _scheduled_scan_from_row(scan)

    def create_scheduled_scan(self, request: ScheduledScanCreate) -> ScheduledScanInfo:
        with self.session() as db:
            images = []
            if request.image_ids:
                images = db.query(Image).filter(Image.id.in_(request.image_ids)).all()
                missing = set(request.image_ids) - {image.id for image in images}
                if missing:
                    raise NotFound("Image", ", ".join(sorted(missing)))
            scan = ScheduledScan(
                id=str(uuid.uuid4()),
                name=request.name,
                enabled=request.enabled,
                selection_mode=request.selection_mode.value,
                image_pattern=request.image_pattern,
                selected_images=images,
            )
            db.add(scan)
            db.flush()
            return _scheduled_scan_from_row(scan)

    def list_scheduled_scans(self) -> List[ScheduledScanInfo]:
        with self.session() as db:
            rows = db.query(ScheduledScan).order_by(ScheduledScan.created_at.desc()).all()
            return [_scheduled_scan_from_row(row) for row in rows]

    def mark_scheduled_run(self, scheduled_scan_id):
        with self.session() as db:
            db.execute(
                update(ScheduledScan)
                .where(ScheduledScan.id == scheduled_scan_id)
                .values(last_run_at=datetime.utcnow())
            )

    def list_images(self, image_ids=None):
        with self.session() as db:
            query = db.query(Image)
            if image_ids is not None:
                query = query.filter(Image.id.in_(list(image_ids)))
            return [_image_from_row(row) for row in query.order_by(Image.name, Image.tag).all()]

    def upsert_images(self, images: Iterable[ImageInfo]) -> List[ImageInfo]:
        """
        Add images to the inventory, matching existing entries on name:tag.
        """
        saved = []
        with self.session() as db:
            for info in images:
                row = db.query(Image).filter(Image.name == info.name, Image.tag == info.tag).first()
                if row is None:
                    row = Image(id=info.id, name=info.name, tag=info.tag, registry_url=info.registry, source=info.source)
                    db.add(row)
                saved.append(row)
            db.flush()
            return [_image_from_row(row) for row in saved]
