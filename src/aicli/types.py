"""
Core types for the agent system.

These types are the data that flows through the orchestration loop:
messages in the conversation history, tool calls requested by the model,
and the normalized results the dispatcher hands back. Messages are frozen
once created so history can only grow by appending.
"""

import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class Role(str, Enum):
    """Message roles in the conversation."""
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"
    TOOL = "tool"


class ToolStatus(str, Enum):
    """Outcome of a single tool call."""
    OK = "ok"
    ERROR = "error"
    DENIED = "denied"


class RiskTier(str, Enum):
    """
    How much damage a tool invocation can do.

    SAFE runs immediately. AMBIGUOUS and DESTRUCTIVE go through the
    confirmation channel before the handler is invoked.
    """
    SAFE = "safe"
    AMBIGUOUS = "ambiguous"
    DESTRUCTIVE = "destructive"

    @property
    def rank(self) -> int:
        return _TIER_RANK[self]

    def escalate(self, other: "RiskTier") -> "RiskTier":
        """Return whichever of the two tiers is riskier."""
        return self if self.rank >= other.rank else other

    @property
    def requires_confirmation(self) -> bool:
        return self is not RiskTier.SAFE


_TIER_RANK = {
    RiskTier.SAFE: 0,
    RiskTier.AMBIGUOUS: 1,
    RiskTier.DESTRUCTIVE: 2,
}


@dataclass(frozen=True)
class ToolCall:
    """
    A request from the model to execute a tool.

    Produced only by the model collaborator. The id is unique within one
    assistant turn and is echoed back by the matching ToolResult.
    """
    id: str
    name: str
    arguments: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Convert to OpenAI tool_call format (arguments JSON-encoded)."""
        return {
            "id": self.id,
            "type": "function",
            "function": {
                "name": self.name,
                "arguments": json.dumps(self.arguments),
            },
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ToolCall":
        """Parse an OpenAI tool_call entry.

        Arguments that are not valid JSON are kept under a ``raw`` key so
        schema validation can reject them with a readable message.
        """
        function = data.get("function") or {}
        raw_arguments = function.get("arguments") or "{}"
        if isinstance(raw_arguments, dict):
            arguments = raw_arguments
        else:
            try:
                arguments = json.loads(raw_arguments)
            except json.JSONDecodeError:
                arguments = {"raw": raw_arguments}
            if not isinstance(arguments, dict):
                arguments = {"raw": raw_arguments}
        return cls(
            id=data.get("id") or "",
            name=function.get("name") or "",
            arguments=arguments,
        )


@dataclass(frozen=True)
class ToolResult:
    """
    The normalized result of one tool call.

    error_detail is a short machine-readable reason (``unknown_tool``,
    ``invalid_arguments``, ``timeout``, ...) and is present exactly when
    the status is not OK.
    """
    call_id: str
    status: ToolStatus
    output: str = ""
    error_detail: str | None = None

    def __post_init__(self) -> None:
        if self.status is ToolStatus.OK and self.error_detail is not None:
            raise ValueError("error_detail must be empty for a successful result")
        if self.status is not ToolStatus.OK and not self.error_detail:
            raise ValueError(f"error_detail is required for status={self.status.value}")

    @property
    def success(self) -> bool:
        return self.status is ToolStatus.OK

    def render(self) -> str:
        """Text the model sees for this result."""
        if self.status is ToolStatus.OK:
            return self.output
        header = f"[{self.status.value}: {self.error_detail}]"
        return f"{header}\n{self.output}" if self.output else header


@dataclass(frozen=True)
class Message:
    """
    A single message in the conversation history.

    Assistant messages may carry tool calls and empty content. Tool
    messages carry the id of the call they answer and the status of the
    result so a saved transcript keeps the outcome.
    """
    role: Role
    content: str = ""
    tool_calls: tuple[ToolCall, ...] = ()
    tool_call_id: str | None = None
    name: str | None = None
    status: ToolStatus | None = None

    @property
    def has_tool_calls(self) -> bool:
        return len(self.tool_calls) > 0

    def to_dict(self) -> dict[str, Any]:
        """Convert to OpenAI API format."""
        result: dict[str, Any] = {
            "role": self.role.value,
            "content": self.content,
        }
        if self.tool_calls:
            result["tool_calls"] = [tc.to_dict() for tc in self.tool_calls]
        if self.tool_call_id is not None:
            result["tool_call_id"] = self.tool_call_id
        if self.name is not None:
            result["name"] = self.name
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Message":
        """Create from OpenAI API format."""
        status = data.get("status")
        return cls(
            role=Role(data["role"]),
            content=data.get("content") or "",
            tool_calls=tuple(ToolCall.from_dict(tc) for tc in data.get("tool_calls") or ()),
            tool_call_id=data.get("tool_call_id"),
            name=data.get("name"),
            status=ToolStatus(status) if status else None,
        )


class EditMode(str, Enum):
    """File editor operations."""
    READ = "read"
    SEARCH = "search"
    REPLACE_EXACT = "replace_exact"
    APPLY_PATCH = "apply_patch"
    OVERWRITE = "overwrite"
    SEARCH_AND_REPLACE = "search_and_replace"

    @property
    def is_mutation(self) -> bool:
        return self not in (EditMode.READ, EditMode.SEARCH)


@dataclass(frozen=True)
class EditOperation:
    """
    One request to the file editor.

    payload is the exact substring (replace_exact), the unified diff
    (apply_patch), the new content (overwrite) or the regex (search,
    search_and_replace). replacement is only used by search_and_replace,
    and by replace_exact as the new text.
    """
    path: str
    mode: EditMode
    payload: str = ""
    replacement: str | None = None
    expected_prior_content_hash: str | None = None


@dataclass(frozen=True)
class EditResult:
    """What the editor reports back after an operation."""
    path: str
    new_content_hash: str
    message: str = ""
    content: str | None = None
    matches: tuple[tuple[int, str], ...] = ()
