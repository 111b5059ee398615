# src/monitor/router.py
"""
ProgressEventRouter: validates inbound push messages and dispatches typed events to listeners.
"""
import json
import logging
from typing import Callable, Dict, List

from pydantic import ValidationError

from api.schemas import MESSAGE_TYPES, ProgressMessage, push_message_adapter

logger = logging.getLogger(__name__)

PROGRESS = "progress"
STATUS_CHANGE = "statusChange"
ERROR = "error"
EVENTS = (PROGRESS, STATUS_CHANGE, ERROR)


class ProgressEventRouter:
    """
    Observer registry for the delivery layer.

    Listeners are plain callables, invoked in registration order:

    - ``progress``: ``listener(job_id, ProgressMessage)``
    - ``statusChange``: ``listener(job_id, ConnectionStatus)``
    - ``error``: ``listener(job_id, message)``

    A listener that raises is logged and skipped; the others still run.
    """

    def __init__(self):
        self._listeners: Dict[str, List[Callable]] = {event: [] for event in EVENTS}

    def subscribe(self, event: str, listener: Callable) -> Callable[[], None]:
        """
        Register a listener and return a function that removes it again.
        """
        if event not in self._listeners:
            raise ValueError(f"Unknown event {event!r} (expected one of {', '.join(EVENTS)})")
        self._listeners[event].append(listener)
        return lambda: self.unsubscribe(event, listener)

    def unsubscribe(self, event: str, listener: Callable) -> None:
        listeners = self._listeners.get(event, [])
        if listener in listeners:
            listeners.remove(listener)

    def clear(self) -> None:
        for listeners in self._listeners.values():
            listeners.clear()

    def emit(self, event: str, *args) -> None:
        for listener in list(self._listeners.get(event, [])):
            try:
                listener(*args)
            except Exception:
                logger.exception(f"Listener {getattr(listener, '__name__', listener)!r} failed on {event}")

    def parse(self, job_id: str, raw: str):
        """
        Turn one raw message into a typed message, or None when it must be dropped.
        """
        try:
            data = json.loads(raw)
        except (TypeError, ValueError) as exc:
            logger.warning(f"[job_id={job_id}] Dropping unparseable message: {exc}")
            return None
        if not isinstance(data, dict):
            logger.warning(f"[job_id={job_id}] Dropping message that is not an object")
            return None
        if data.get("type") not in MESSAGE_TYPES:
            logger.debug(f"[job_id={job_id}] Ignoring unknown message type {data.get('type')!r}")
            return None
        try:
            return push_message_adapter.validate_python(data)
        except ValidationError as exc:
            logger.warning(
                f"[job_id={job_id}] Dropping invalid {data['type']} message: "
                f"{exc.error_count()} error(s), first: {exc.errors()[0]['msg']}"
            )
            return None

    def handle_message(self, job_id: str, raw: str):
        """
        Parse a message from a job's channel and forward progress to listeners.

        Returns the typed message so the caller can react to heartbeats.
        """
        message = self.parse(job_id, raw)
        if isinstance(message, ProgressMessage):
            self.emit(PROGRESS, job_id, message)
        elif message is not None and message.type == "connected":
            logger.debug(f"[job_id={job_id}] Connection confirmed")
        return message

    def emit_status(self, job_id: str, status) -> None:
        self.emit(STATUS_CHANGE, job_id, status)

    def emit_error(self, job_id: str, error: str) -> None:
        self.emit(ERROR, job_id, error)
