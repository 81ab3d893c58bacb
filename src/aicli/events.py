"""
Event log for the orchestration loop.

Every model round trip and every tool call leaves a trail of events here:
receipt, schema validation, risk classification, confirmation, execution,
truncation. The log is append-only and can be saved as JSON lines for
debugging a run after the fact. It keeps at most max_events entries,
dropping the oldest first.
"""

import json
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path
from typing import Any

DEFAULT_MAX_EVENTS = 10_000


class EventType(Enum):
    """Types of events in the agent event log."""
    TOOL_CALL_RECEIVED = "tool_call_received"
    SCHEMA_VALIDATION = "schema_validation"
    RISK_CLASSIFIED = "risk_classified"
    CONFIRMATION_REQUESTED = "confirmation_requested"
    CONFIRMATION_RESULT = "confirmation_result"
    TOOL_EXECUTION_START = "tool_execution_start"
    TOOL_EXECUTION_END = "tool_execution_end"
    OUTPUT_TRUNCATION = "output_truncation"
    TOOL_RESULT_RETURNED = "tool_result_returned"
    ERROR = "error"
    MODEL_REQUEST = "model_request"
    MODEL_RESPONSE = "model_response"
    MODEL_RETRY = "model_retry"
    CANCELLED = "cancelled"
    TURN_LIMIT = "turn_limit"


@dataclass
class AgentEvent:
    """A single event in the log."""
    timestamp: datetime
    event_type: EventType
    call_id: str
    data: dict[str, Any]

    def to_dict(self) -> dict[str, Any]:
        return {
            "timestamp": self.timestamp.isoformat(),
            "event_type": self.event_type.value,
            "call_id": self.call_id,
            "data": self.data,
        }


@dataclass
class EventLog:
    """Append-only event log, bounded to the newest max_events entries."""
    events: list[AgentEvent] = field(default_factory=list)
    max_events: int | None = DEFAULT_MAX_EVENTS

    def append(self, event: AgentEvent) -> None:
        self.events.append(event)
        if self.max_events is not None and len(self.events) > self.max_events:
            del self.events[: len(self.events) - self.max_events]

    def log_event(
        self,
        event_type: EventType,
        call_id: str = "",
        **data: Any,
    ) -> AgentEvent:
        event = AgentEvent(
            timestamp=datetime.now(UTC),
            event_type=event_type,
            call_id=call_id,
            data=data,
        )
        self.append(event)
        return event

    def get_events_for_call(self, call_id: str) -> list[AgentEvent]:
        return [e for e in self.events if e.call_id == call_id]

    def of_type(self, event_type: EventType) -> list[AgentEvent]:
        return [e for e in self.events if e.event_type == event_type]

    def clear(self) -> None:
        self.events.clear()

    def save(self, path: Path) -> None:
        lines = [json.dumps(e.to_dict(), default=str) for e in self.events]
        path.write_text("\n".join(lines))

    @classmethod
    def load(cls, path: Path) -> "EventLog":
        log = cls()
        for line in path.read_text().strip().split("\n"):
            if line:
                data = json.loads(line)
                log.append(AgentEvent(
                    timestamp=datetime.fromisoformat(data["timestamp"]),
                    event_type=EventType(data["event_type"]),
                    call_id=data["call_id"],
                    data=data["data"],
                ))
        return log

    def __len__(self) -> int:
        return len(self.events)
