"""
Change notification events.

The service tells an external listener that project data changed by handing
an Event to an EventPublisher after its transaction has committed. Delivery
is best-effort: publish_with_retry makes a bounded number of attempts with
exponential backoff and reports, rather than raises, the final failure.
"""

import itertools
import logging
import threading
import time
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional

import httpx
from pydantic import BaseModel, Field

from .errors import NotifierError

logger = logging.getLogger(__name__)

DEFAULT_MAX_RETRIES = 3
DEFAULT_BASE_DELAY = 0.05

_sequence = itertools.count(1)
_sequence_lock = threading.Lock()


def _next_sequence_id() -> int:
    with _sequence_lock:
        return next(_sequence)


class EventType(str, Enum):
    DATABASE_CHANGED = "db_changed"


class Event(BaseModel):
    """A change notification scoped to one project."""

    type: EventType = EventType.DATABASE_CHANGED
    project_id: int
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    sequence_id: int = Field(default_factory=_next_sequence_id)


class EventPublisher(ABC):
    """Transport-agnostic sink for change events."""

    @abstractmethod
    def send_event(self, event: Event) -> None:
        """
        Deliver one event.

        Raises:
            NotifierError: If the event could not be delivered
        """

    def close(self) -> None:
        pass


class NullPublisher(EventPublisher):
    """Discards every event."""

    def send_event(self, event: Event) -> None:
        pass


class RecordingPublisher(EventPublisher):
    """Keeps published events in memory, for embedding and tests."""

    def __init__(self):
        self.events: List[Event] = []
        self._lock = threading.Lock()

    def send_event(self, event: Event) -> None:
        with self._lock:
            self.events.append(event)

    def project_ids(self) -> List[int]:
        with self._lock:
            return [event.project_id for event in self.events]

    def clear(self) -> None:
        with self._lock:
            self.events.clear()


class HttpEventPublisher(EventPublisher):
    """
    Posts events as JSON to a listener's event endpoint (see taskboard.api).

    Used by writer processes that do not host the websocket broadcaster
    themselves.
    """

    def __init__(self, url: str, timeout: float = 1.0):
        self.url = url
        self.timeout = timeout

    def send_event(self, event: Event) -> None:
        try:
            response = httpx.post(self.url, json=event.model_dump(mode="json"), timeout=self.timeout)
            response.raise_for_status()
        except httpx.HTTPError as e:
            raise NotifierError(f"failed to deliver event to {self.url}: {e}") from e


def publish_with_retry(publisher: Optional[EventPublisher], event: Event,
                       max_retries: int = DEFAULT_MAX_RETRIES,
                       base_delay: float = DEFAULT_BASE_DELAY) -> Optional[Exception]:
    """
    Publish an event, retrying with exponential backoff.

    Args:
        publisher: Target publisher; None skips publishing entirely
        event: Event to deliver
        max_retries: Total number of attempts
        base_delay: Delay before the second attempt in seconds, doubled each retry

    Returns:
        None on success, otherwise the exception from the final attempt
    """
    if publisher is None:
        return None

    last_error: Optional[Exception] = None
    attempts = max(1, max_retries)

    for attempt in range(attempts):
        try:
            publisher.send_event(event)
            if attempt > 0:
                logger.debug(f"Event published after retry: attempt={attempt + 1} "
                             f"type={event.type.value} project_id={event.project_id}")
            return None
        except Exception as e:
            last_error = e

        # No sleep after the last attempt
        if attempt < attempts - 1:
            delay = base_delay * (2 ** attempt)
            logger.debug(f"Event publish failed, retrying in {delay:.3f}s: "
                         f"attempt={attempt + 1}/{attempts} error={last_error}")
            time.sleep(delay)

    logger.warning(f"Event publish failed after {attempts} attempts: "
                   f"type={event.type.value} project_id={event.project_id} error={last_error}")
    return last_error
