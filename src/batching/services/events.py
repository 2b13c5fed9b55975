"""Batch lifecycle events handed to notification and analytics consumers."""

from __future__ import annotations

import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import List

logger = logging.getLogger(__name__)

BATCH_CREATED = "batch_created"
BATCH_STARTED = "batch_started"
BATCH_COMPLETED = "batch_completed"
BATCH_CANCELLED = "batch_cancelled"
ORDER_ADDED = "order_added"
ORDER_REMOVED = "order_removed"
WORKLOAD_REBALANCED = "workload_rebalanced"


@dataclass(slots=True)
class BatchEvent:
    name: str
    batch_id: str
    order_ids: List[str]
    timestamp: datetime
    payload: dict = field(default_factory=dict)


class EventPublisher(ABC):
    @abstractmethod
    def publish(self, event: BatchEvent) -> None:
        raise NotImplementedError


class LoggingEventPublisher(EventPublisher):
    """Default publisher: writes each event to the service log."""

    def publish(self, event: BatchEvent) -> None:
        logger.info(
            f"event={event.name} batch={event.batch_id} orders={','.join(event.order_ids)} "
            f"at={event.timestamp.isoformat()} payload={event.payload}"
        )


class InMemoryEventPublisher(EventPublisher):
    """Keeps published events in memory, for tests and local inspection."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.events: list[BatchEvent] = []

    def publish(self, event: BatchEvent) -> None:
        with self._lock:
            self.events.append(event)

    def names(self) -> list[str]:
        with self._lock:
            return [event.name for event in self.events]
