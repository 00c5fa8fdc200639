"""Bounded, append-only record of every OCPP exchange (sent and received)."""
import json
import uuid
from collections import deque
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any

DEFAULT_CAPACITY = 100


class MessageDirection(str, Enum):
    """Direction of a logged message relative to the station."""
    sent = "sent"
    received = "received"


@dataclass(frozen=True)
class LoggedMessage:
    """Single log entry. Payload is stored as a JSON string so entries never change."""

    id: str
    timestamp: str
    direction: MessageDirection
    message_type: str
    payload: str


class MessageLog:
    """Ring buffer of LoggedMessage, oldest first; appending past capacity evicts the oldest."""

    __slots__ = ("_entries",)

    def __init__(self, capacity: int = DEFAULT_CAPACITY) -> None:
        if capacity < 1:
            raise ValueError("capacity must be at least 1")
        self._entries: deque[LoggedMessage] = deque(maxlen=capacity)

    @property
    def capacity(self) -> int:
        return self._entries.maxlen or 0

    def append(self, direction: MessageDirection, message_type: str, payload: Any) -> LoggedMessage:
        """Record one exchange. Non-string payloads are serialized to JSON."""
        if not isinstance(payload, str):
            payload = json.dumps(payload, separators=(",", ":"), default=str)
        entry = LoggedMessage(
            id=str(uuid.uuid4()),
            timestamp=datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
            direction=MessageDirection(direction),
            message_type=message_type,
            payload=payload,
        )
        self._entries.append(entry)
        return entry

    def snapshot(self) -> tuple[LoggedMessage, ...]:
        """Immutable view of the current entries, oldest first."""
        return tuple(self._entries)

    def __len__(self) -> int:
        return len(self._entries)
