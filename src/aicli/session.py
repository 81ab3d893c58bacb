"""
Session - The conversation history for one run.

A session owns the ordered list of messages sent to the model. History is
append-only: messages are frozen, and the only way to drop them is
clear(), which resets the session to its initial system message.

The session also guards the tool-result invariant. A tool message may only
answer a call from the most recent assistant turn, and only once, so a
saved transcript can always be replayed to an OpenAI-compatible API.
"""

import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from aicli.types import Message, Role, ToolCall, ToolResult


class SessionStateError(RuntimeError):
    """Raised when an append would break the history invariants."""


@dataclass
class Session:
    """
    A single conversation.

    The orchestrator is the only writer. There are no locks because there
    are no concurrent writers.
    """

    system_prompt: str = ""
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    messages: list[Message] = field(default_factory=list)
    metadata: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        """Initialize the session with a system message if provided."""
        if self.system_prompt and not self.messages:
            self.messages.append(Message(role=Role.SYSTEM, content=self.system_prompt))

    def add_user_message(self, content: str) -> Message:
        """Add a user message to the conversation."""
        self._check_no_pending_calls()
        return self._append(Message(role=Role.USER, content=content))

    def add_assistant_message(
        self,
        content: str,
        tool_calls: list[ToolCall] | tuple[ToolCall, ...] = (),
    ) -> Message:
        """Add an assistant message, optionally carrying tool calls."""
        self._check_no_pending_calls()
        ids = [tc.id for tc in tool_calls]
        if len(set(ids)) != len(ids):
            raise SessionStateError(f"Duplicate tool call ids in one turn: {ids}")
        return self._append(Message(
            role=Role.ASSISTANT,
            content=content,
            tool_calls=tuple(tool_calls),
        ))

    def add_tool_result(self, result: ToolResult, name: str | None = None) -> Message:
        """Add a tool result answering one pending call of the latest turn."""
        pending = self.pending_call_ids()
        if result.call_id not in pending:
            raise SessionStateError(
                f"Tool result {result.call_id!r} does not answer a pending call "
                f"(pending: {pending})"
            )
        if result.call_id != pending[0]:
            raise SessionStateError(
                f"Tool result {result.call_id!r} is out of order; expected {pending[0]!r}"
            )
        return self._append(Message(
            role=Role.TOOL,
            content=result.render(),
            tool_call_id=result.call_id,
            name=name,
            status=result.status,
        ))

    def pending_call_ids(self) -> list[str]:
        """Ids of tool calls in the latest assistant turn still lacking a result."""
        for index in range(len(self.messages) - 1, -1, -1):
            message = self.messages[index]
            if message.role is Role.ASSISTANT:
                answered = {
                    m.tool_call_id for m in self.messages[index + 1:]
                    if m.role is Role.TOOL
                }
                return [tc.id for tc in message.tool_calls if tc.id not in answered]
            if message.role is not Role.TOOL:
                return []
        return []

    def clear(self) -> None:
        """Reset the history to the initial system message."""
        self.messages.clear()
        if self.system_prompt:
            self.messages.append(Message(role=Role.SYSTEM, content=self.system_prompt))

    def get_messages(self) -> list[Message]:
        """Get all messages in the conversation."""
        return list(self.messages)

    def get_message_dicts(self) -> list[dict[str, Any]]:
        """Get all messages as dicts (for API calls)."""
        return [m.to_dict() for m in self.messages]

    @property
    def message_count(self) -> int:
        return len(self.messages)

    @property
    def content_length(self) -> int:
        """Total characters of non-system content, shown in the CLI prompt."""
        return sum(len(m.content) for m in self.messages if m.role is not Role.SYSTEM)

    @property
    def last_message(self) -> Message | None:
        return self.messages[-1] if self.messages else None

    def _append(self, message: Message) -> Message:
        self.messages.append(message)
        return message

    def _check_no_pending_calls(self) -> None:
        pending = self.pending_call_ids()
        if pending:
            raise SessionStateError(f"Tool calls still awaiting results: {pending}")

    # =========================================================================
    # Transcript persistence
    # =========================================================================

    def to_dict(self) -> dict[str, Any]:
        """Serialize the session so a transcript can be saved to disk."""
        messages = []
        for m in self.messages:
            data = m.to_dict()
            if m.status is not None:
                data["status"] = m.status.value
            messages.append(data)
        return {
            "id": self.id,
            "created_at": self.created_at.isoformat(),
            "system_prompt": self.system_prompt,
            "messages": messages,
            "metadata": self.metadata,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Session":
        """Restore a session saved with to_dict()."""
        return cls(
            system_prompt=data.get("system_prompt", ""),
            id=data["id"],
            created_at=datetime.fromisoformat(data["created_at"]),
            messages=[Message.from_dict(m) for m in data.get("messages", [])],
            metadata=data.get("metadata", {}),
        )
