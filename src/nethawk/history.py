"""
Bounded in-memory histories and the system event log.

The ingestion loop is the writer of every history; reporting code reads
snapshots concurrently. When a history is full the oldest record is
dropped, so a slow reader can never stall ingestion.
"""

import threading
import uuid
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Deque, Dict, Generic, List, Optional, TypeVar

T = TypeVar('T')


class BoundedHistory(Generic[T]):
    """FIFO buffer of fixed capacity with oldest-entry eviction."""

    def __init__(self, capacity: int):
        if capacity <= 0:
            raise ValueError(f"capacity must be positive, got {capacity}")
        self.capacity = capacity
        self._items: Deque[T] = deque(maxlen=capacity)
        self._lock = threading.Lock()
        self._total = 0

    def append(self, item: T) -> None:
        with self._lock:
            self._items.append(item)
            self._total += 1

    def snapshot(self) -> List[T]:
        """Retained items, oldest first."""
        with self._lock:
            return list(self._items)

    def recent(self, n: Optional[int] = None) -> List[T]:
        """Up to ``n`` most recent items, newest first."""
        with self._lock:
            items = list(self._items)
        items.reverse()
        return items if n is None else items[:n]

    def clear(self) -> None:
        with self._lock:
            self._items.clear()

    @property
    def total_appended(self) -> int:
        """Number of items ever appended, including evicted ones."""
        return self._total

    @property
    def evicted(self) -> int:
        with self._lock:
            return self._total - len(self._items)

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)


# ==============================================================================
# SYSTEM EVENTS
# ==============================================================================

class EventSeverity(str, Enum):
    INFO = 'info'
    WARNING = 'warning'
    ERROR = 'error'


# Event types
IP_BLOCKED = 'IP_BLOCKED'
IP_UNBLOCKED = 'IP_UNBLOCKED'
BLOCK_EXTENDED = 'BLOCK_EXTENDED'
BLOCK_SUPPRESSED = 'BLOCK_SUPPRESSED'
FIREWALL_ERROR = 'FIREWALL_ERROR'
MODEL_UNAVAILABLE = 'MODEL_UNAVAILABLE'
MODEL_LOADED = 'MODEL_LOADED'
MONITORING_STARTED = 'MONITORING_STARTED'
MONITORING_STOPPED = 'MONITORING_STOPPED'


@dataclass(frozen=True)
class SystemEvent:
    type: str
    message: str
    severity: EventSeverity = EventSeverity.INFO
    address: Optional[str] = None
    timestamp: datetime = field(default_factory=datetime.now)
    id: str = field(default_factory=lambda: uuid.uuid4().hex)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'timestamp': self.timestamp.isoformat(),
            'type': self.type,
            'message': self.message,
            'severity': self.severity.value,
            'address': self.address,
        }


EventSink = Callable[[SystemEvent], None]
