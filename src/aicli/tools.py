"""
Tool System - The only way the model affects the world.

The model cannot touch files, run commands or reach the network except by
emitting a tool call that the dispatcher routes to a handler registered
here. The registry is built once at startup and frozen, so the set of
capabilities is fixed for the whole run.

Argument schemas are a JSON Schema subset: an object with typed
properties, ``required``, ``enum``, ``minLength``, array ``items`` and
``additionalProperties: false``. That is all the built-in tools need, and
every schema is sent to the model verbatim.
"""

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from aicli.types import RiskTier

logger = logging.getLogger(__name__)

ToolHandler = Callable[[dict[str, Any]], str]
RiskFunction = Callable[[dict[str, Any]], RiskTier]


class SchemaError(ValueError):
    """Tool arguments do not match the tool's argument schema."""


class HandlerError(Exception):
    """A tool handler failed in an expected way (bad input, remote error, missing config)."""


@dataclass(frozen=True)
class ToolSpec:
    """
    Definition of a tool the model can call.

    - name: Unique identifier
    - description: What the tool does (shown to the model)
    - risk_tier: Default tier when no classifier applies
    - argument_schema: JSON Schema for the arguments
    - handler: Receives the validated arguments, returns text for the model
    - classifier: Optional per-call tier based on the arguments
    - bounded: The handler enforces its own time limit; the dispatcher
      runs it to completion instead of abandoning it after handler_timeout
    - preview: Optional dry run shown with the confirmation prompt
    """
    name: str
    description: str
    risk_tier: RiskTier
    argument_schema: dict[str, Any]
    handler: ToolHandler
    classifier: RiskFunction | None = None
    bounded: bool = False
    preview: ToolHandler | None = None

    def to_openai_schema(self) -> dict[str, Any]:
        """Convert to OpenAI tool format."""
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.argument_schema,
            },
        }

    def validate(self, arguments: dict[str, Any]) -> None:
        validate_arguments(self.argument_schema, arguments)


@dataclass
class ToolRegistry:
    """
    Registry of available tools.

    Only tools registered here can be called. After freeze() the registry
    rejects further registrations.
    """

    _tools: dict[str, ToolSpec] = field(default_factory=dict)
    _frozen: bool = False

    def register(self, tool: ToolSpec) -> None:
        """Register a tool."""
        if self._frozen:
            raise RuntimeError(f"Cannot register {tool.name!r}: registry is frozen")
        if tool.name in self._tools:
            logger.warning(f"Overwriting existing tool: {tool.name}")
        self._tools[tool.name] = tool
        logger.debug(f"Registered tool: {tool.name}")

    def register_function(
        self,
        name: str,
        description: str,
        parameters: dict[str, Any],
        handler: ToolHandler,
        risk_tier: RiskTier = RiskTier.SAFE,
        classifier: RiskFunction | None = None,
        bounded: bool = False,
        preview: ToolHandler | None = None,
    ) -> ToolSpec:
        """Convenience method to register a function as a tool."""
        tool = ToolSpec(
            name=name,
            description=description,
            risk_tier=risk_tier,
            argument_schema=parameters,
            handler=handler,
            classifier=classifier,
            bounded=bounded,
            preview=preview,
        )
        self.register(tool)
        return tool

    def freeze(self) -> "ToolRegistry":
        self._frozen = True
        return self

    @property
    def frozen(self) -> bool:
        return self._frozen

    def get(self, name: str) -> ToolSpec | None:
        """Get a tool by name."""
        return self._tools.get(name)

    def get_schemas(self) -> list[dict[str, Any]]:
        """Get OpenAI-format schemas for all registered tools."""
        return [tool.to_openai_schema() for tool in self._tools.values()]

    @property
    def tool_names(self) -> list[str]:
        """List of registered tool names."""
        return list(self._tools.keys())

    def __len__(self) -> int:
        return len(self._tools)

    def __contains__(self, name: str) -> bool:
        return name in self._tools


_TYPE_CHECKS: dict[str, Callable[[Any], bool]] = {
    "string": lambda v: isinstance(v, str),
    "integer": lambda v: isinstance(v, int) and not isinstance(v, bool),
    "number": lambda v: isinstance(v, (int, float)) and not isinstance(v, bool),
    "boolean": lambda v: isinstance(v, bool),
    "array": lambda v: isinstance(v, list),
    "object": lambda v: isinstance(v, dict),
    "null": lambda v: v is None,
}


def validate_arguments(schema: dict[str, Any], arguments: Any) -> None:
    """Validate tool arguments against an object schema. Raises SchemaError."""
    if not isinstance(arguments, dict):
        raise SchemaError(f"Arguments must be a JSON object, got {type(arguments).__name__}")

    properties = schema.get("properties", {})
    for name in schema.get("required", []):
        if name not in arguments:
            raise SchemaError(f"Missing required parameter: {name}")

    if schema.get("additionalProperties") is False:
        unknown = sorted(set(arguments) - set(properties))
        if unknown:
            raise SchemaError(
                f"Unexpected parameter(s): {', '.join(unknown)}. "
                f"Allowed: {', '.join(properties) or 'none'}"
            )

    for name, value in arguments.items():
        if name in properties:
            _validate_value(name, properties[name], value)


def _validate_value(name: str, schema: dict[str, Any], value: Any) -> None:
    expected = schema.get("type")
    if expected is not None:
        types = expected if isinstance(expected, list) else [expected]
        if not any(_TYPE_CHECKS.get(t, lambda v: True)(value) for t in types):
            raise SchemaError(
                f"Parameter {name!r} must be of type {' or '.join(types)}, "
                f"got {type(value).__name__}"
            )

    if "enum" in schema and value not in schema["enum"]:
        allowed = ", ".join(repr(v) for v in schema["enum"])
        raise SchemaError(f"Parameter {name!r} must be one of {allowed}, got {value!r}")

    if isinstance(value, str) and "minLength" in schema and len(value) < schema["minLength"]:
        raise SchemaError(
            f"Parameter {name!r} must be at least {schema['minLength']} character(s) long"
        )

    if isinstance(value, list) and "items" in schema:
        for index, item in enumerate(value):
            _validate_value(f"{name}[{index}]", schema["items"], item)
