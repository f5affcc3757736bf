"""Messages carried over the realtime stream."""

import json
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


class EventType(str, Enum):
    CONNECTED = "connected"
    UPDATE = "update"
    HEARTBEAT = "heartbeat"


class ChangeTable(str, Enum):
    SUBSCRIPTION = "subscription"
    USAGE = "usage"


def _utcnow_iso() -> str:
    return datetime.now(UTC).isoformat()


class ChangeEvent(BaseModel):
    """One row-level change to a user's subscription or usage state.

    Never persisted: lives only between the NOTIFY and the client.
    """

    table: ChangeTable
    operation: str  # "insert" | "update"
    user_id: str
    data: dict[str, Any] = Field(default_factory=dict)
    timestamp: str = Field(default_factory=_utcnow_iso)

    @classmethod
    def from_notify_payload(cls, payload: str) -> "ChangeEvent":
        """Parse the JSON published by the ``notify_user_table_change`` trigger.

        Raises:
            ValueError: If the payload is not valid JSON or misses required keys
        """
        return cls.model_validate_json(payload)


class StreamMessage(BaseModel):
    """Frame written to the SSE stream."""

    type: EventType
    timestamp: str = Field(default_factory=_utcnow_iso)
    user_id: str | None = None
    table: ChangeTable | None = None
    operation: str | None = None
    data: dict[str, Any] | None = None

    @classmethod
    def connected(cls, user_id: str) -> "StreamMessage":
        return cls(type=EventType.CONNECTED, user_id=user_id)

    @classmethod
    def heartbeat(cls) -> "StreamMessage":
        return cls(type=EventType.HEARTBEAT)

    @classmethod
    def update(cls, event: ChangeEvent) -> "StreamMessage":
        return cls(
            type=EventType.UPDATE,
            table=event.table,
            operation=event.operation,
            data=event.data,
            timestamp=event.timestamp,
        )

    def to_sse(self) -> str:
        return format_sse(self.model_dump(mode="json", exclude_none=True))


def format_sse(payload: dict) -> str:
    """Serialize one payload as a single ``data:`` frame."""
    return f"data: {json.dumps(payload, default=str)}\n\n"


def parse_sse_data(line: str) -> dict | None:
    """Inverse of ``format_sse`` for one line; None for anything but a data line."""
    if not line.startswith("data:"):
        return None
    body = line[len("data:"):].strip()
    if not body:
        return None
    return json.loads(body)
