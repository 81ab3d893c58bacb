"""
Tool Dispatcher - routes one ToolCall to its handler and normalizes the result.

dispatch() is total: whatever the model asks for and whatever the handler
does, the caller gets exactly one ToolResult back. The pipeline is:

1. Look up the tool (unknown name -> unknown_tool, nothing runs)
2. Validate arguments against the tool's schema (-> invalid_arguments)
3. Classify risk; non-safe calls go through the confirmation channel
   (denied or no channel -> status=denied, nothing runs)
4. Run the handler; tools without their own time limit run in a worker
   thread bounded by handler_timeout
5. Normalize, redact and truncate the output

Every step is written to the event log under the call's id.
"""

import json
import logging
import re
import threading
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from aicli.events import EventLog, EventType
from aicli.file_edit import EditError
from aicli.safety import RiskClassifier, SecretsRedactor
from aicli.sandbox import ExecutionError
from aicli.tools import HandlerError, SchemaError, ToolRegistry, ToolSpec
from aicli.types import RiskTier, ToolCall, ToolResult, ToolStatus

logger = logging.getLogger(__name__)

DEFAULT_MAX_OUTPUT_BYTES = 16 * 1024
DEFAULT_HANDLER_TIMEOUT = 120.0

UNKNOWN_TOOL = "unknown_tool"
INVALID_ARGUMENTS = "invalid_arguments"
DENIED_BY_OPERATOR = "denied_by_operator"
HANDLER_ERROR = "handler_error"
HANDLER_TIMEOUT = "handler_timeout"

_BLANK_LINE_RUNS = re.compile(r"\n{3,}")
_SUMMARY_ARGUMENT_CHARS = 500
_PREVIEW_LINES = 80


class PolicyDenied(Exception):
    """The operator (or the absence of one) refused a non-safe tool call."""


@dataclass(frozen=True)
class ConfirmationRequest:
    """What the confirmation channel is asked about."""
    tool_name: str
    tier: RiskTier
    summary: str

    def __str__(self) -> str:
        return self.summary


ConfirmationChannel = Callable[[ConfirmationRequest], bool]


def normalize_output(text: str) -> str:
    """CRLF to LF, at most one blank line in a row, trimmed."""
    text = text.replace("\r\n", "\n").replace("\r", "\n")
    text = _BLANK_LINE_RUNS.sub("\n\n", text)
    return text.strip()


def truncate_output(text: str, max_bytes: int) -> tuple[str, int]:
    """
    Cut text to at most max_bytes UTF-8 bytes, marker included.

    Returns (text, omitted_bytes). The cut never splits a character.
    """
    encoded = text.encode("utf-8")
    if len(encoded) <= max_bytes:
        return text, 0

    marker_budget = len(_marker(len(encoded)).encode("utf-8"))
    keep = max(max_bytes - marker_budget, 0)
    kept = encoded[:keep].decode("utf-8", errors="ignore")
    omitted = len(encoded) - len(kept.encode("utf-8"))
    result = kept + _marker(omitted)
    if len(result.encode("utf-8")) > max_bytes:
        # Budget smaller than the marker itself
        return encoded[:max_bytes].decode("utf-8", errors="ignore"), omitted
    return result, omitted


def _marker(omitted: int) -> str:
    return f"\n[output truncated: {omitted} bytes omitted]"


class _HandlerTimedOut(Exception):
    pass


class ToolDispatcher:
    """
    Routes tool calls from the model to registered handlers.

    The dispatcher holds no per-conversation state apart from the event
    log, and never raises out of dispatch().
    """

    def __init__(
        self,
        registry: ToolRegistry,
        classifier: RiskClassifier,
        confirm: ConfirmationChannel | None = None,
        max_output_bytes: int = DEFAULT_MAX_OUTPUT_BYTES,
        handler_timeout: float = DEFAULT_HANDLER_TIMEOUT,
        event_log: EventLog | None = None,
        redactor: SecretsRedactor | None = None,
    ) -> None:
        self.registry = registry
        self.classifier = classifier
        self.confirm = confirm
        self.max_output_bytes = max_output_bytes
        self.handler_timeout = handler_timeout
        self.event_log = event_log if event_log is not None else EventLog()
        self.redactor = redactor

    def dispatch(self, call: ToolCall) -> ToolResult:
        """Execute one tool call and return its normalized result."""
        self.event_log.log_event(
            EventType.TOOL_CALL_RECEIVED,
            call.id,
            tool_name=call.name,
            arguments=self._loggable_arguments(call.arguments),
        )

        spec = self.registry.get(call.name)
        if spec is None:
            logger.warning(f"Model requested unknown tool: {call.name}")
            available = ", ".join(self.registry.tool_names) or "none"
            return self._finish(
                call,
                ToolStatus.ERROR,
                f"Unknown tool '{call.name}'. Available tools: {available}",
                UNKNOWN_TOOL,
            )

        try:
            spec.validate(call.arguments)
        except SchemaError as e:
            self.event_log.log_event(EventType.SCHEMA_VALIDATION, call.id, valid=False, error=str(e))
            return self._finish(call, ToolStatus.ERROR, f"Invalid arguments for {call.name}: {e}", INVALID_ARGUMENTS)
        self.event_log.log_event(EventType.SCHEMA_VALIDATION, call.id, valid=True)

        try:
            self._authorize(call, spec)
        except PolicyDenied as e:
            return self._finish(call, ToolStatus.DENIED, str(e), DENIED_BY_OPERATOR)

        status, output, detail = self._run(call, spec)
        return self._finish(call, status, output, detail)

    # =========================================================================
    # Pipeline steps
    # =========================================================================

    def _authorize(self, call: ToolCall, spec: ToolSpec) -> None:
        """Classify the call and ask for confirmation if needed. Raises PolicyDenied."""
        try:
            tier = self.classifier.classify(spec, call.arguments)
        except Exception as e:
            logger.error(f"Risk classification failed for {call.name}: {e}")
            tier = RiskTier.DESTRUCTIVE
        self.event_log.log_event(EventType.RISK_CLASSIFIED, call.id, tier=tier.value)
        if not tier.requires_confirmation:
            return

        request = ConfirmationRequest(
            tool_name=spec.name,
            tier=tier,
            summary=describe_call(call, tier, self._preview(call, spec)),
        )
        self.event_log.log_event(EventType.CONFIRMATION_REQUESTED, call.id, tier=tier.value)
        if self.confirm is None:
            approved = False
            reason = "no confirmation channel is available"
        else:
            try:
                approved = bool(self.confirm(request))
            except (EOFError, KeyboardInterrupt):
                approved = False
            reason = "the operator declined"
        self.event_log.log_event(EventType.CONFIRMATION_RESULT, call.id, approved=approved)
        if not approved:
            logger.info(f"Tool call {call.id} ({call.name}) denied: {reason}")
            raise PolicyDenied(f"{call.name} was not run: {reason}")

    def _loggable_arguments(self, arguments: dict[str, Any]) -> str:
        """Arguments as clipped JSON, redacted when a redactor is set."""
        text = _clip(json.dumps(arguments, ensure_ascii=False, default=str))
        if self.redactor is not None:
            text, _ = self.redactor.redact(text)
        return text

    def _preview(self, call: ToolCall, spec: ToolSpec) -> str | None:
        if spec.preview is None:
            return None
        try:
            return spec.preview(call.arguments) or None
        except Exception as e:
            logger.warning(f"Preview of {call.name} failed: {e}")
            return f"(preview unavailable: {e})"

    def _run(self, call: ToolCall, spec: ToolSpec) -> tuple[ToolStatus, str, str | None]:
        self.event_log.log_event(EventType.TOOL_EXECUTION_START, call.id, tool_name=spec.name)
        try:
            output = self._invoke(spec, call.arguments)
            status, detail = ToolStatus.OK, None
        except _HandlerTimedOut:
            logger.warning(f"Tool {spec.name} exceeded {self.handler_timeout}s")
            status, detail = ToolStatus.ERROR, HANDLER_TIMEOUT
            output = f"{spec.name} did not finish within {self.handler_timeout:g} seconds"
        except SchemaError as e:
            status, detail, output = ToolStatus.ERROR, INVALID_ARGUMENTS, str(e)
        except ExecutionError as e:
            status, detail = ToolStatus.ERROR, e.kind.value
            output = _with_partial(e.message, e.partial_output)
        except EditError as e:
            status, detail, output = ToolStatus.ERROR, e.kind.value, e.message
        except HandlerError as e:
            logger.warning(f"Tool {spec.name} failed: {e}")
            status, detail, output = ToolStatus.ERROR, HANDLER_ERROR, str(e)
        except Exception as e:
            logger.exception(f"Tool {spec.name} raised unexpectedly")
            status, detail, output = ToolStatus.ERROR, HANDLER_ERROR, f"{type(e).__name__}: {e}"
        self.event_log.log_event(
            EventType.TOOL_EXECUTION_END,
            call.id,
            status=status.value,
            error_detail=detail,
        )
        return status, output, detail

    def _invoke(self, spec: ToolSpec, arguments: dict[str, Any]) -> str:
        if spec.bounded:
            output = spec.handler(arguments)
            return "" if output is None else str(output)

        outcome: dict[str, Any] = {}

        def target() -> None:
            try:
                outcome["output"] = spec.handler(arguments)
            except Exception as e:
                outcome["error"] = e

        worker = threading.Thread(target=target, name=f"tool-{spec.name}", daemon=True)
        worker.start()
        worker.join(self.handler_timeout)
        if worker.is_alive():
            raise _HandlerTimedOut()
        if "error" in outcome:
            raise outcome["error"]
        output = outcome.get("output")
        return "" if output is None else str(output)

    def _finish(
        self,
        call: ToolCall,
        status: ToolStatus,
        output: str,
        detail: str | None,
    ) -> ToolResult:
        if detail is not None and status is not ToolStatus.DENIED:
            self.event_log.log_event(EventType.ERROR, call.id, error_detail=detail)

        text = normalize_output(output)
        if self.redactor is not None:
            text, found = self.redactor.redact(text)
            if found:
                logger.info(f"Redacted secrets from {call.name} output: {found}")
        text, omitted = truncate_output(text, self.max_output_bytes)
        if omitted:
            self.event_log.log_event(EventType.OUTPUT_TRUNCATION, call.id, omitted_bytes=omitted)

        result = ToolResult(call_id=call.id, status=status, output=text, error_detail=detail)
        self.event_log.log_event(
            EventType.TOOL_RESULT_RETURNED,
            call.id,
            status=status.value,
            error_detail=detail,
            output_bytes=len(text.encode("utf-8")),
        )
        return result


def describe_call(call: ToolCall, tier: RiskTier, preview: str | None = None) -> str:
    """
    Human-readable summary of a tool call for the confirmation prompt.

    A preview (the diff a file edit would make) is appended below the
    summary; for file edits it replaces the raw edit arguments.
    """
    header = f"[{tier.value.upper()}] {call.name}"
    arguments = call.arguments
    if call.name == "execute_command" and "command" in arguments:
        lines = [f"{header}: {arguments['command']}"]
    elif call.name == "file_editor":
        mode = arguments.get("mode", "?")
        path = arguments.get("path", "?")
        lines = [f"{header}: {mode} {path}"]
        if preview is None:
            for key in ("old_text", "new_text", "diff", "content", "pattern", "replacement"):
                if key in arguments:
                    lines.append(f"  {key}: {_clip(str(arguments[key]))}")
    else:
        lines = [f"{header}: {_clip(json.dumps(arguments, ensure_ascii=False))}"]
    if preview is not None:
        lines.append(_clip_lines(preview))
    return "\n".join(lines)


def _clip_lines(text: str) -> str:
    lines = text.split("\n")
    if len(lines) <= _PREVIEW_LINES:
        return text
    return "\n".join(lines[:_PREVIEW_LINES]) + f"\n... ({len(lines) - _PREVIEW_LINES} more lines)"


def _clip(text: str) -> str:
    if len(text) <= _SUMMARY_ARGUMENT_CHARS:
        return text
    return text[:_SUMMARY_ARGUMENT_CHARS] + f"... ({len(text) - _SUMMARY_ARGUMENT_CHARS} more chars)"


def _with_partial(message: str, partial: str) -> str:
    if not partial.strip():
        return message
    return f"{message}\nPartial output:\n{partial}"
