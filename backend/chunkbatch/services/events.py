"""Typed pipeline events for UI layers and other subscribers."""

import logging
import threading
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class JobSubmitted:
    job_id: uuid.UUID
    project_id: uuid.UUID
    chunk_ids: tuple[uuid.UUID, ...]
    provider_handle: str


@dataclass(frozen=True)
class JobProgressed:
    job_id: uuid.UUID
    processed_chunks: int
    total_chunks: int
    progress_percent: int


@dataclass(frozen=True)
class JobCompleted:
    job_id: uuid.UUID
    succeeded: tuple[uuid.UUID, ...]
    failed: tuple[uuid.UUID, ...] = field(default_factory=tuple)


@dataclass(frozen=True)
class JobFailed:
    job_id: uuid.UUID
    reason: str
    affected: tuple[uuid.UUID, ...]
    unaffected: tuple[uuid.UUID, ...] = field(default_factory=tuple)


@dataclass(frozen=True)
class JobCancelled:
    job_id: uuid.UUID
    released: tuple[uuid.UUID, ...]


@dataclass(frozen=True)
class ProjectFinalized:
    project_id: uuid.UUID
    document_id: uuid.UUID
    version: int


Event = JobSubmitted | JobProgressed | JobCompleted | JobFailed | JobCancelled | ProjectFinalized
Handler = Callable[[Event], None]


class EventBus:
    """Synchronous fan-out of events to subscribed handlers."""

    def __init__(self) -> None:
        self._handlers: list[Handler] = []
        self._lock = threading.Lock()

    def subscribe(self, handler: Handler) -> Callable[[], None]:
        """Register *handler*; returns a callable that unsubscribes it."""
        with self._lock:
            self._handlers.append(handler)

        def _unsubscribe() -> None:
            with self._lock:
                if handler in self._handlers:
                    self._handlers.remove(handler)

        return _unsubscribe

    def publish(self, event: Event) -> None:
        with self._lock:
            handlers = list(self._handlers)
        logger.debug("event %s", event)
        for handler in handlers:
            try:
                handler(event)
            except Exception:
                logger.exception("event handler %r failed for %s", handler, type(event).__name__)


bus = EventBus()
