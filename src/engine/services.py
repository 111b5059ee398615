# src/engine/services.py
"""
Service instances shared by the API for the lifetime of the application.
"""
import logging

from config import Settings
from engine.batch_pipeline import BatchExecutionPipeline
from engine.events import ProgressBroker
from engine.job_manager import JobManager
from engine.persistence import Persistence, SqlPersistence
from engine.scan_engine import ScanExecutor, TrivyScanExecutor
from engine.scan_service import ScanService
from monitor.snapshot import PersistenceSnapshotSource

logger = logging.getLogger(__name__)


class ScanflowServices:
    def __init__(self, settings: Settings, persistence: Persistence = None,
                 executor: ScanExecutor = None, scan_service: ScanService = None):
        if persistence is None:
            from engine.db import SessionLocal
            persistence = SqlPersistence(SessionLocal)
        self.settings = settings
        self.persistence = persistence
        self.broker = ProgressBroker()
        self.job_manager = JobManager()
        self.pipeline = BatchExecutionPipeline(
            persistence,
            executor or TrivyScanExecutor(),
            job_manager=self.job_manager,
            broker=self.broker,
            max_concurrency=settings.max_concurrency,
        )
        self.scan_service = scan_service or ScanService()
        self.snapshots = PersistenceSnapshotSource(persistence)

    async def startup(self) -> None:
        recovered = await self.pipeline.recover_interrupted()
        if recovered:
            logger.warning(f"Marked {len(recovered)} interrupted batch(es) as FAILED")

    async def shutdown(self) -> None:
        await self.job_manager.shutdown()
