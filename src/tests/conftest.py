import asyncio
import json
import os
import tempfile
from contextlib import asynccontextmanager

import pytest

# engine.db builds its default session factory at import time
os.environ.setdefault("SCANFLOW_DATABASE_URL", f"sqlite:///{tempfile.mkdtemp(prefix='scanflow-tests-')}/default.db")

from api.schemas import ImageInfo  # noqa: E402
from engine.db import make_session_factory  # noqa: E402
from engine.exceptions import ScanExecutionError, TransportError  # noqa: E402
from engine.persistence import SqlPersistence  # noqa: E402
from engine.scan_engine import ScanExecutor  # noqa: E402

IMAGES = [
    ("alpine", "3.19"),
    ("nginx", "1.25"),
    ("redis", "7"),
    ("postgres", "16"),
    ("node", "20"),
]


@pytest.fixture
def persistence(tmp_path):
    return SqlPersistence(make_session_factory(f"sqlite:///{tmp_path}/scanflow.db"))


@pytest.fixture
def images(persistence):
    return persistence.upsert_images(
        ImageInfo(id=f"img-{name}", name=name, tag=tag, source="LOCAL_DOCKER") for name, tag in IMAGES
    )


class FakeExecutor(ScanExecutor):
    """
    Scans nothing. Targets named in ``failures`` raise; when ``gate`` is set
    every scan waits for it after reporting progress.
    """
    def __init__(self, failures=(), gate: asyncio.Event = None):
        self.failures = set(failures)
        self.gate = gate
        self.started = []

    async def scan(self, job_id, target, report):
        self.started.append(target.name)
        await report(50, f"Scanning {target.reference}")
        if self.gate is not None:
            await self.gate.wait()
        if target.name in self.failures:
            raise ScanExecutionError(f"{target.name} could not be scanned")
        return {"total_vulnerabilities": 0, "image": target.reference}


@pytest.fixture
def make_executor():
    return FakeExecutor


class FakeChannel:
    def __init__(self):
        self._queue = asyncio.Queue()

    def send(self, message: dict) -> None:
        self._queue.put_nowait(json.dumps(message))

    def send_raw(self, raw: str) -> None:
        self._queue.put_nowait(raw)

    def end(self) -> None:
        self._queue.put_nowait(None)

    async def messages(self):
        while True:
            raw = await self._queue.get()
            if raw is None:
                return
            yield raw


class FakeTransport:
    """
    In-memory push transport. ``refuse`` makes every open fail.
    """
    def __init__(self, refuse=False):
        self.refuse = refuse
        self.opens = []
        self.channels = {}

    @asynccontextmanager
    async def open(self, job_id):
        self.opens.append(job_id)
        if self.refuse:
            raise TransportError(f"refused {job_id}")
        channel = FakeChannel()
        self.channels[job_id] = channel
        yield channel.messages()


@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
def refusing_transport():
    return FakeTransport(refuse=True)


@pytest.fixture
def eventually():
    async def wait_until(predicate, timeout=2.0, interval=0.005):
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while not predicate():
            if loop.time() > deadline:
                raise AssertionError("condition not met in time")
            await asyncio.sleep(interval)
    return wait_until
