# src/monitor/snapshot.py
"""
Snapshot sources: the authoritative view of running jobs and queued entries.
"""
import asyncio
from typing import Protocol

import httpx

from api.schemas import Snapshot
from engine.persistence import Persistence

JOBS_PATH = "/scans/jobs"


class SnapshotSource(Protocol):
    async def fetch(self) -> Snapshot:
        ...


class PersistenceSnapshotSource:
    """
    Reads the snapshot straight from the database. Used by the /scans/jobs
    route and by monitors running inside the service process.
    """
    def __init__(self, persistence: Persistence):
        self.persistence = persistence

    async def fetch(self) -> Snapshot:
        jobs = await asyncio.to_thread(self.persistence.list_running_jobs)
        queued = await asyncio.to_thread(self.persistence.list_queued_batch_entries)
        return Snapshot(jobs=jobs, queued_scans=queued)


class HttpSnapshotClient:
    def __init__(self, client: httpx.AsyncClient, path: str = JOBS_PATH):
        self.client = client
        self.path = path

    async def fetch(self) -> Snapshot:
        response = await self.client.get(self.path)
        response.raise_for_status()
        return Snapshot.model_validate(response.json())
