# src/api/schemas.py
# Pydantic models for the wire formats shared by the API and the monitor
from datetime import datetime, timezone
from typing import Annotated, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, StrictFloat, StrictInt, TypeAdapter, field_validator
from pydantic.alias_generators import to_camel

from engine.models import BatchStatus, JobStatus, SelectionMode


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Database timestamps are naive UTC; everything on the wire is aware."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class WireModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class Job(WireModel):
    """
    One scan job as observers see it. Instances are immutable; use model_copy to change them.
    """
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    job_id: str = Field(..., min_length=1, alias="requestId")
    scan_id: str = ""
    target_id: str = Field("", alias="imageId")
    target_name: Optional[str] = Field(None, alias="imageName")
    status: JobStatus
    progress: int = Field(0, ge=0, le=100)
    step: Optional[str] = None
    error: Optional[str] = None
    started_at: datetime = Field(default_factory=utcnow, alias="startTime")
    last_updated_at: datetime = Field(default_factory=utcnow, alias="lastUpdate")
    queue_position: Optional[int] = None
    estimated_wait_seconds: Optional[int] = Field(None, alias="estimatedWaitTime")

    @field_validator("started_at", "last_updated_at")
    @classmethod
    def normalize_times(cls, value):
        return as_utc(value)


class Snapshot(WireModel):
    jobs: List[Job] = Field(default_factory=list)
    queued_scans: List[Job] = Field(default_factory=list)


class ConnectedMessage(WireModel):
    type: Literal["connected"] = "connected"
    request_id: Optional[str] = None


class HeartbeatMessage(WireModel):
    type: Literal["heartbeat"] = "heartbeat"
    timestamp: Optional[datetime] = None


class ProgressMessage(WireModel):
    type: Literal["progress"] = "progress"
    request_id: str = Field(..., min_length=1)
    scan_id: str = Field(..., min_length=1)
    status: JobStatus
    progress: Union[StrictInt, Annotated[StrictFloat, Field(allow_inf_nan=False)]]
    step: Optional[str] = None
    error: Optional[str] = None
    timestamp: datetime = Field(default_factory=utcnow)

    @field_validator("timestamp")
    @classmethod
    def normalize_timestamp(cls, value):
        return as_utc(value)


PushMessage = Annotated[
    Union[ConnectedMessage, HeartbeatMessage, ProgressMessage],
    Field(discriminator="type"),
]
push_message_adapter = TypeAdapter(PushMessage)
MESSAGE_TYPES = frozenset({"connected", "heartbeat", "progress"})


class ExecutionStarted(WireModel):
    execution_id: str
    batch_id: str
    total_targets: int
    status: Literal["STARTED"] = "STARTED"
    message: str = ""


class BatchInfo(WireModel):
    batch_id: str
    execution_id: str
    scheduled_scan_id: Optional[str] = None
    status: BatchStatus
    trigger_source: Optional[str] = None
    total_targets: int
    completed_count: int
    failed_count: int
    error_message: Optional[str] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @field_validator("started_at", "completed_at")
    @classmethod
    def normalize_times(cls, value):
        return as_utc(value)


class ImageInfo(WireModel):
    id: str
    name: str
    tag: str
    registry: Optional[str] = None
    source: Optional[str] = None

    @property
    def reference(self) -> str:
        return f"{self.name}:{self.tag}"


class ScheduledScanCreate(WireModel):
    name: str = Field(..., min_length=1, description="Display name of the scheduled scan")
    enabled: bool = Field(True, description="Disabled scans reject execution")
    selection_mode: SelectionMode = Field(SelectionMode.SPECIFIC, description="How target images are selected")
    image_pattern: Optional[str] = Field(None, description="Regular expression matched against name:tag (PATTERN mode)")
    image_ids: List[str] = Field(default_factory=list, description="Images to scan (SPECIFIC mode)")


class ScheduledScanInfo(WireModel):
    id: str
    name: str
    enabled: bool
    selection_mode: SelectionMode
    image_pattern: Optional[str] = None
    image_ids: List[str] = Field(default_factory=list)
    last_run_at: Optional[datetime] = None


class AdHocBatchRequest(WireModel):
    image_ids: List[str] = Field(..., min_length=1, description="Images to scan")
