# src/api/routes.py
import asyncio
import json
import logging

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from sse_starlette.sse import EventSourceResponse

from api.schemas import AdHocBatchRequest, HeartbeatMessage, ScheduledScanCreate, utcnow
from engine.exceptions import ScanflowError
from engine.services import ScanflowServices

logger = logging.getLogger(__name__)

router = APIRouter()


def get_services(request: Request) -> ScanflowServices:
    return request.app.state.services


def _error(exc: ScanflowError) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content={"success": False, "error": exc.message})


@router.get("/health")
def health_check():
    return {"status": "ok"}


@router.post(
    "/scheduled-scans",
    summary="Create a scheduled scan",
    tags=["Scheduled Scans"],
    status_code=201,
    response_model=dict,
    responses={
        201: {"description": "Scheduled scan created"},
        404: {"description": "Selected image not found"},
    },
)
async def create_scheduled_scan(request: ScheduledScanCreate, services: ScanflowServices = Depends(get_services)):
    try:
        scan = await asyncio.to_thread(services.persistence.create_scheduled_scan, request)
    except ScanflowError as exc:
        return _error(exc)
    return scan.model_dump(by_alias=True, mode="json")


@router.get("/scheduled-scans", tags=["Scheduled Scans"], response_model=list)
async def list_scheduled_scans(services: ScanflowServices = Depends(get_services)):
    scans = await asyncio.to_thread(services.persistence.list_scheduled_scans)
    return [scan.model_dump(by_alias=True, mode="json") for scan in scans]


@router.post(
    "/scheduled-scans/{scheduled_scan_id}/execute",
    summary="Execute a scheduled scan now",
    response_description="Execution and batch identifiers",
    tags=["Scheduled Scans"],
    status_code=202,
    response_model=dict,
    responses={
        202: {"description": "Batch created, scans running in the background"},
        400: {"description": "Scheduled scan disabled, invalid pattern or no images to scan"},
        404: {"description": "Scheduled scan not found"},
        501: {"description": "Selection mode not implemented"},
    },
)
async def execute_scheduled_scan(scheduled_scan_id: str, services: ScanflowServices = Depends(get_services)):
    """
    Start a batch for the scheduled scan and return before any image is scanned.
    """
    try:
        started = await services.pipeline.trigger(scheduled_scan_id, trigger_source="MANUAL")
    except ScanflowError as exc:
        logger.info(f"Execution of scheduled scan {scheduled_scan_id} rejected: {exc.message}")
        return _error(exc)
    return started.model_dump(by_alias=True)


@router.post(
    "/scans/batches",
    summary="Scan specific inventory images",
    tags=["Scan Batches"],
    status_code=202,
    response_model=dict,
    responses={
        202: {"description": "Batch created, scans running in the background"},
        404: {"description": "Image not found"},
    },
)
async def create_batch(request: AdHocBatchRequest, services: ScanflowServices = Depends(get_services)):
    try:
        started = await services.pipeline.trigger_targets(request.image_ids)
    except ScanflowError as exc:
        return _error(exc)
    return started.model_dump(by_alias=True)


@router.get("/scans/batches/{batch_id}", tags=["Scan Batches"], response_model=dict)
async def get_batch(batch_id: str, services: ScanflowServices = Depends(get_services)):
    try:
        batch = await asyncio.to_thread(services.persistence.get_batch, batch_id)
    except ScanflowError as exc:
        return _error(exc)
    return batch.model_dump(by_alias=True, mode="json")


@router.post("/scans/batches/{batch_id}/cancel", tags=["Scan Batches"], status_code=202, response_model=dict)
async def cancel_batch(batch_id: str, services: ScanflowServices = Depends(get_services)):
    try:
        batch = await asyncio.to_thread(services.persistence.get_batch, batch_id)
    except ScanflowError as exc:
        return _error(exc)
    if not services.pipeline.cancel(batch_id):
        return JSONResponse(
            status_code=409,
            content={"success": False, "error": f"Batch is not running (status {batch.status.value})"},
        )
    return {"success": True, "batchId": batch_id, "status": "CANCELLING"}


@router.get(
    "/scans/jobs",
    summary="Running jobs and queued entries",
    tags=["Scan Jobs"],
    response_model=dict,
)
async def list_jobs(services: ScanflowServices = Depends(get_services)):
    snapshot = await services.snapshots.fetch()
    return snapshot.model_dump(by_alias=True, mode="json")


@router.get("/scans/events/{request_id}", tags=["Scan Jobs"])
async def stream_job_events(request: Request, request_id: str, services: ScanflowServices = Depends(get_services)):
    """
    Server-Sent Events for one job: a connected message, the latest known
    state, then every progress update, with heartbeats while idle.
    """
    broker = services.broker
    interval = services.settings.heartbeat_interval
    queue = broker.subscribe(request_id)

    async def event_generator():
        try:
            yield {"data": json.dumps({"type": "connected", "requestId": request_id})}
            while True:
                if await request.is_disconnected():
                    break
                try:
                    message = await asyncio.wait_for(queue.get(), timeout=interval)
                except asyncio.TimeoutError:
                    yield {"data": HeartbeatMessage(timestamp=utcnow()).model_dump_json(by_alias=True)}
                    continue
                yield {"data": message.model_dump_json(by_alias=True, exclude_none=True)}
        finally:
            broker.unsubscribe(request_id, queue)

    return EventSourceResponse(event_generator(), media_type="text/event-stream")


@router.get("/target/list", tags=["Targets"], response_model=list)
async def list_targets(services: ScanflowServices = Depends(get_services)):
    images = await asyncio.to_thread(services.persistence.list_images)
    return [image.model_dump(by_alias=True) for image in images]


@router.post(
    "/target/sync",
    summary="Import local Docker images into the inventory",
    tags=["Targets"],
    response_model=dict,
)
async def sync_targets(services: ScanflowServices = Depends(get_services)):
    """
    Add the newest tag of every local image repository to the inventory.
    """
    try:
        found = await asyncio.to_thread(services.scan_service.local_inventory)
        saved = await asyncio.to_thread(services.persistence.upsert_images, found)
    except Exception as e:
        logger.error(f"Target sync failed: {e}")
        return {"success": False, "error": str(e)}
    return {"success": True, "count": len(saved), "images": [image.model_dump(by_alias=True) for image in saved]}
