# src/engine/models.py
from datetime import datetime
from enum import Enum

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Integer, String, Table, Text
from sqlalchemy.orm import declarative_base, relationship

Base = declarative_base()


class JobStatus(str, Enum):
    QUEUED = "QUEUED"
    RUNNING = "RUNNING"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_JOB_STATUSES

    def can_become(self, other: "JobStatus") -> bool:
        """Forward-only: QUEUED -> RUNNING -> SUCCESS|FAILED|CANCELLED, and QUEUED may fail or be cancelled directly."""
        if self.is_terminal:
            return False
        if self is JobStatus.RUNNING:
            return other is not JobStatus.QUEUED
        return other is not JobStatus.SUCCESS


TERMINAL_JOB_STATUSES = frozenset({JobStatus.SUCCESS, JobStatus.FAILED, JobStatus.CANCELLED})


class BatchStatus(str, Enum):
    PENDING = "PENDING"
    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"
    PARTIAL = "PARTIAL"
    FAILED = "FAILED"

    @property
    def is_terminal(self) -> bool:
        return self in (BatchStatus.COMPLETED, BatchStatus.PARTIAL, BatchStatus.FAILED)


class SelectionMode(str, Enum):
    SPECIFIC = "SPECIFIC"
    PATTERN = "PATTERN"
    ALL = "ALL"
    REPOSITORY = "REPOSITORY"


class ImageSource(str, Enum):
    LOCAL_DOCKER = "LOCAL_DOCKER"
    REGISTRY = "REGISTRY"
    FILE_UPLOAD = "FILE_UPLOAD"


scheduled_scan_images = Table(
    'scheduled_scan_images',
    Base.metadata,
    Column('scheduled_scan_id', String, ForeignKey('scheduled_scans.id'), primary_key=True),
    Column('image_id', String, ForeignKey('images.id'), primary_key=True),
)


class Image(Base):
    __tablename__ = 'images'
    id = Column(String, primary_key=True)
    name = Column(String, nullable=False)
    tag = Column(String, nullable=False, default='latest')
    registry_url = Column('registry', String, nullable=True)
    source = Column(String, default=ImageSource.LOCAL_DOCKER.value)
    created_at = Column(DateTime, default=datetime.utcnow)

    @property
    def reference(self) -> str:
        return f"{self.name}:{self.tag}"


class ScheduledScan(Base):
    __tablename__ = 'scheduled_scans'
    id = Column(String, primary_key=True)
    name = Column(String, nullable=False)
    enabled = Column(Boolean, default=True, nullable=False)
    selection_mode = Column(String, default=SelectionMode.SPECIFIC.value, nullable=False)
    image_pattern = Column(String, nullable=True)
    last_run_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    selected_images = relationship(Image, secondary=scheduled_scan_images, lazy='selectin')


class ScanBatch(Base):
    __tablename__ = 'scan_batches'
    id = Column(String, primary_key=True)
    execution_id = Column(String, unique=True, nullable=False)
    scheduled_scan_id = Column(String, ForeignKey('scheduled_scans.id'), nullable=True)
    status = Column(String, default=BatchStatus.PENDING.value, nullable=False)
    trigger_source = Column(String, default='MANUAL')
    total_targets = Column(Integer, default=0, nullable=False)
    completed_count = Column(Integer, default=0, nullable=False)
    failed_count = Column(Integer, default=0, nullable=False)
    error_message = Column(Text, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    started_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)


class ScanJob(Base):
    __tablename__ = 'scan_jobs'
    id = Column(Integer, primary_key=True, autoincrement=True)
    job_id = Column(String, unique=True, nullable=False)
    scan_id = Column(String, unique=True, nullable=False)
    batch_id = Column(String, ForeignKey('scan_batches.id'), nullable=True)
    image_id = Column(String, nullable=False)
    image_name = Column(String, nullable=True)
    status = Column(String, default=JobStatus.QUEUED.value)
    progress = Column(Integer, default=0, nullable=False)
    step = Column(String, nullable=True)
    queue_position = Column(Integer, nullable=True)
    scan_stats = Column(Text, nullable=True)  # JSON string of stats
    created_at = Column(DateTime, default=datetime.utcnow)
    started_at = Column(DateTime, nullable=True)
    last_updated_at = Column(DateTime, default=datetime.utcnow)
    finished_at = Column(DateTime, nullable=True)
    error = Column(Text, nullable=True)
