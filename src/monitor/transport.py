# src/monitor/transport.py
"""
Push transports: open one event stream per job and yield its raw messages.
"""
from contextlib import asynccontextmanager
from typing import AsyncContextManager, AsyncIterator, Protocol

import httpx
from httpx_sse import EventSource, aconnect_sse

from engine.exceptions import TransportError

EVENTS_PATH = "/scans/events/{job_id}"


class PushTransport(Protocol):
    def open(self, job_id: str) -> AsyncContextManager[AsyncIterator[str]]:
        """
        Open the job's stream. Entering the context means the channel is open;
        iterating yields the data of each message until the stream ends.
        """
        ...


class HttpxEventStream:
    """
    Server-Sent Events over an httpx.AsyncClient, decoded by httpx-sse.

    The client should have no read timeout; silent channels are detected by
    the connection manager's heartbeat timer instead.
    """
    def __init__(self, client: httpx.AsyncClient, path_template: str = EVENTS_PATH):
        self.client = client
        self.path_template = path_template

    @asynccontextmanager
    async def open(self, job_id: str):
        path = self.path_template.format(job_id=job_id)
        try:
            async with aconnect_sse(self.client, "GET", path) as event_source:
                status_code = event_source.response.status_code
                if status_code != 200:
                    raise TransportError(f"Event stream for {job_id} returned HTTP {status_code}")
                yield self._iter_data(event_source)
        except httpx.HTTPError as exc:
            # httpx_sse.SSEError (wrong content type) is an httpx.TransportError
            raise TransportError(f"Event stream for {job_id} failed: {exc}") from exc

    @staticmethod
    async def _iter_data(event_source: EventSource) -> AsyncIterator[str]:
        async for event in event_source.aiter_sse():
            if event.data:
                yield event.data
