# src/engine/scan_engine.py
"""
ScanExecutor: runs the scan for one target and reports progress while it does.
"""
import abc
import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, Optional

from api.schemas import ImageInfo
from engine.exceptions import ScanExecutionError
from tools.trivy_adapter import TrivyAdapter
from utils.scripts_utils import calculate_vulnerability_stats

logger = logging.getLogger(__name__)

#: Called by an executor as report(progress, step)
ProgressReporter = Callable[[int, Optional[str]], Awaitable[None]]


class ScanExecutor(abc.ABC):
    """
    Base class for scan executors.
    """
    @abc.abstractmethod
    async def scan(self, job_id: str, target: ImageInfo, report: ProgressReporter) -> Dict[str, Any]:
        """
        Scan the target and return the job's metrics.

        Raises ScanExecutionError (or anything else) when the target cannot be scanned.
        Timeouts are the executor's own concern.
        """


class TrivyScanExecutor(ScanExecutor):
    """
    Scans container images with the Trivy CLI.

    Trivy runs in a worker thread so the event loop keeps serving other jobs.
    """
    def __init__(self, adapter: TrivyAdapter = None, timeout: float = 900):
        self.adapter = adapter or TrivyAdapter()
        self.timeout = timeout

    async def scan(self, job_id, target, report):
        reference = target.reference
        await report(10, f"Scanning {reference}")
        logger.info(f"[job_id={job_id}] Running trivy for {reference}")
        result = await asyncio.to_thread(
            self.adapter.run_scan, self.adapter.image_args(reference), self.timeout
        )
        if not result.get("success"):
            raise ScanExecutionError(result.get("error") or "Unknown scan error")
        await report(90, "Analyzing results")
        return calculate_vulnerability_stats(result.get("result"), reference)
