# src/monitor/connection_manager.py
"""
ConnectionManager: one push channel per running job, with heartbeat
liveness, bounded exponential reconnects and a periodic stale sweep.
"""
import asyncio
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, List, Optional

from api.schemas import HeartbeatMessage
from engine.exceptions import TransportError
from monitor.router import ProgressEventRouter
from monitor.transport import PushTransport

logger = logging.getLogger(__name__)


class ConnectionStatus(str, Enum):
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"
    DISCONNECTED = "disconnected"
    ERROR = "error"


@dataclass(eq=False)
class ManagedConnection:
    job_id: str
    status: ConnectionStatus
    last_activity: float
    retry_count: int = 0
    stream_task: Optional[asyncio.Task] = None
    heartbeat_handle: Optional[asyncio.TimerHandle] = None
    reconnect_handle: Optional[asyncio.TimerHandle] = None


class ConnectionManager:
    def __init__(self, transport: PushTransport, router: ProgressEventRouter, *,
                 max_retries: int = 3, retry_interval: float = 1.0, max_retry_delay: float = 30.0,
                 heartbeat_timeout: float = 30.0, sweep_interval: float = 60.0,
                 stale_timeout: float = 300.0, clock: Callable[[], float] = time.monotonic):
        self.transport = transport
        self.router = router
        self.max_retries = max_retries
        self.retry_interval = retry_interval
        self.max_retry_delay = max_retry_delay
        self.heartbeat_timeout = heartbeat_timeout
        self.sweep_interval = sweep_interval
        self.stale_timeout = stale_timeout
        self.clock = clock
        self._connections: Dict[str, ManagedConnection] = {}
        self._sweep_task: Optional[asyncio.Task] = None

    @classmethod
    def from_settings(cls, transport, router, settings) -> "ConnectionManager":
        return cls(
            transport, router,
            max_retries=settings.max_retries,
            retry_interval=settings.retry_interval,
            max_retry_delay=settings.max_retry_delay,
            heartbeat_timeout=settings.heartbeat_timeout,
            sweep_interval=settings.sweep_interval,
            stale_timeout=settings.stale_timeout,
        )

    # Lifecycle

    def start(self) -> None:
        if self._sweep_task is None or self._sweep_task.done():
            self._sweep_task = asyncio.get_running_loop().create_task(self._sweep_loop())

    async def close(self) -> None:
        """
        Stop the sweep and tear down every channel.
        """
        if self._sweep_task is not None:
            self._sweep_task.cancel()
            await asyncio.gather(self._sweep_task, return_exceptions=True)
            self._sweep_task = None
        tasks = [conn.stream_task for conn in self._connections.values() if conn.stream_task]
        self.disconnect_all()
        await asyncio.gather(*tasks, return_exceptions=True)

    # Public operations

    def connect(self, job_id: str) -> bool:
        """
        Ensure a channel for ``job_id`` is open or opening.

        Returns True immediately when a channel is already connected or
        being (re)established; a channel in error is replaced.
        """
        existing = self._connections.get(job_id)
        if existing is not None:
            if existing.status in (ConnectionStatus.CONNECTED, ConnectionStatus.CONNECTING,
                                   ConnectionStatus.RECONNECTING):
                return True
            self._teardown(existing)

        conn = ManagedConnection(job_id=job_id, status=ConnectionStatus.CONNECTING, last_activity=self.clock())
        self._connections[job_id] = conn
        self._establish(conn)
        return True

    def disconnect(self, job_id: str) -> None:
        conn = self._connections.pop(job_id, None)
        if conn is None:
            return
        self._teardown(conn)
        conn.status = ConnectionStatus.DISCONNECTED
        logger.info(f"[job_id={job_id}] Disconnected")
        self.router.emit_status(job_id, ConnectionStatus.DISCONNECTED)

    def disconnect_all(self) -> None:
        for job_id in list(self._connections):
            self.disconnect(job_id)

    def get_status(self, job_id: str) -> Optional[ConnectionStatus]:
        conn = self._connections.get(job_id)
        return conn.status if conn else None

    def list_active(self) -> List[str]:
        return [job_id for job_id, conn in self._connections.items() if conn.status is ConnectionStatus.CONNECTED]

    def sweep(self) -> List[str]:
        """
        Drop connections in error and disconnected ones idle past the stale timeout.
        """
        now = self.clock()
        removed = []
        for job_id, conn in list(self._connections.items()):
            idle = now - conn.last_activity
            if conn.status is ConnectionStatus.ERROR or (
                conn.status is ConnectionStatus.DISCONNECTED and idle > self.stale_timeout
            ):
                self._teardown(conn)
                del self._connections[job_id]
                removed.append(job_id)
        if removed:
            logger.info(f"Swept {len(removed)} stale connection(s): {', '.join(removed)}")
        return removed

    # Internals

    def _is_current(self, conn: ManagedConnection) -> bool:
        return self._connections.get(conn.job_id) is conn

    def _set_status(self, conn: ManagedConnection, status: ConnectionStatus) -> None:
        conn.status = status
        self.router.emit_status(conn.job_id, status)

    def _establish(self, conn: ManagedConnection) -> None:
        conn.reconnect_handle = None
        if conn.status is not ConnectionStatus.CONNECTING and conn.status is not ConnectionStatus.RECONNECTING:
            conn.status = ConnectionStatus.CONNECTING
        self.router.emit_status(conn.job_id, conn.status)
        conn.stream_task = asyncio.get_running_loop().create_task(self._run_stream(conn))

    async def _run_stream(self, conn: ManagedConnection) -> None:
        try:
            async with self.transport.open(conn.job_id) as stream:
                if not self._is_current(conn):
                    return
                self._on_open(conn)
                async for raw in stream:
                    if not self._is_current(conn):
                        return
                    conn.last_activity = self.clock()
                    message = self.router.handle_message(conn.job_id, raw)
                    if isinstance(message, HeartbeatMessage):
                        self._arm_heartbeat(conn)
            raise TransportError("Stream closed by server")
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            if self._is_current(conn):
                self._handle_failure(conn, exc)

    def _on_open(self, conn: ManagedConnection) -> None:
        conn.retry_count = 0
        conn.last_activity = self.clock()
        self._set_status(conn, ConnectionStatus.CONNECTED)
        self._arm_heartbeat(conn)
        logger.info(f"[job_id={conn.job_id}] Connected")

    def _arm_heartbeat(self, conn: ManagedConnection) -> None:
        if conn.heartbeat_handle is not None:
            conn.heartbeat_handle.cancel()
        conn.heartbeat_handle = asyncio.get_running_loop().call_later(
            self.heartbeat_timeout, self._on_heartbeat_timeout, conn
        )

    def _on_heartbeat_timeout(self, conn: ManagedConnection) -> None:
        conn.heartbeat_handle = None
        if self._is_current(conn) and conn.status is ConnectionStatus.CONNECTED:
            self._handle_failure(conn, TransportError(f"No heartbeat for {self.heartbeat_timeout}s"))

    def _handle_failure(self, conn: ManagedConnection, exc: Exception) -> None:
        logger.warning(f"[job_id={conn.job_id}] Channel failed: {exc}")
        self._teardown(conn)
        if conn.retry_count < self.max_retries:
            conn.retry_count += 1
            delay = min(self.retry_interval * 2 ** (conn.retry_count - 1), self.max_retry_delay)
            self._set_status(conn, ConnectionStatus.RECONNECTING)
            logger.info(
                f"[job_id={conn.job_id}] Reconnecting in {delay}s "
                f"(attempt {conn.retry_count}/{self.max_retries})"
            )
            conn.reconnect_handle = asyncio.get_running_loop().call_later(delay, self._reconnect, conn)
        else:
            self._set_status(conn, ConnectionStatus.ERROR)
            logger.error(f"[job_id={conn.job_id}] Max reconnection attempts reached")
            self.router.emit_error(conn.job_id, "Max reconnection attempts reached")

    def _reconnect(self, conn: ManagedConnection) -> None:
        conn.reconnect_handle = None
        if self._is_current(conn) and conn.status is ConnectionStatus.RECONNECTING:
            self._establish(conn)

    def _teardown(self, conn: ManagedConnection) -> None:
        for handle in (conn.heartbeat_handle, conn.reconnect_handle):
            if handle is not None:
                handle.cancel()
        conn.heartbeat_handle = None
        conn.reconnect_handle = None
        task, conn.stream_task = conn.stream_task, None
        if task is not None and task is not asyncio.current_task() and not task.done():
            task.cancel()

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self.sweep_interval)
            try:
                self.sweep()
            except Exception:
                logger.exception("Connection sweep failed")
