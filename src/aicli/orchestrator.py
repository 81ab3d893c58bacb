"""
Conversation Orchestrator - The turn-based runtime.

One round trip (run_turn) is:

1. Send the full history to the model (retrying transport errors)
2. If the reply has no tool calls: append it, return FinalAnswer
3. Otherwise append it, then dispatch each tool call in order and append
   its result before the next call
4. Return Continuing

run() repeats run_turn until the outcome is final, bounded by max_turns.

The orchestrator is the only writer of the session and runs on a single
thread. Cancellation is cooperative: the token is checked before each
model request and before each tool call, never in the middle of one.
"""

import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass
from typing import Protocol

from aicli.config import LoopConfig
from aicli.dispatcher import ToolDispatcher
from aicli.events import EventLog, EventType
from aicli.llm import TransportError
from aicli.session import Session, SessionStateError
from aicli.types import Message, ToolResult, ToolStatus

logger = logging.getLogger(__name__)

CANCELLED = "cancelled"
TRANSPORT_ERROR = "transport_error"
TURN_LIMIT_EXCEEDED = "turn_limit_exceeded"
INVALID_MODEL_REPLY = "invalid_model_reply"


class ModelClient(Protocol):
    """Anything that turns a history into the next assistant message."""
    def send(self, history: list[Message]) -> Message: ...


class Progress(Protocol):
    """A progress indicator shown while waiting on the model."""
    def start(self, label: str) -> None: ...
    def stop(self) -> None: ...


class NullProgress:
    def start(self, label: str) -> None:
        pass

    def stop(self) -> None:
        pass


class CancellationToken:
    """Process-wide cancel flag. Set from a signal handler, polled by the loop."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    def reset(self) -> None:
        self._event.clear()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def wait(self, timeout: float) -> bool:
        """Sleep up to timeout seconds; returns early (True) if cancelled."""
        return self._event.wait(timeout)


@dataclass(frozen=True)
class FinalAnswer:
    text: str


@dataclass(frozen=True)
class Continuing:
    tool_calls: int


@dataclass(frozen=True)
class Failed:
    reason: str
    detail: str = ""


TurnOutcome = FinalAnswer | Continuing | Failed


class _Cancelled(Exception):
    pass


class Orchestrator:
    """
    Interleaves model turns with tool execution.

    listener, if given, is called with every message the orchestrator
    appends to the session; the CLI uses it to show progress to the user.
    """

    def __init__(
        self,
        model: ModelClient,
        dispatcher: ToolDispatcher,
        config: LoopConfig | None = None,
        cancel_token: CancellationToken | None = None,
        progress: Progress | None = None,
        sleep: Callable[[float], object] | None = None,
        listener: Callable[[Message], None] | None = None,
        event_log: EventLog | None = None,
    ) -> None:
        self.model = model
        self.dispatcher = dispatcher
        self.config = config or LoopConfig.from_env()
        self.cancel_token = cancel_token or CancellationToken()
        self.progress = progress or NullProgress()
        self._sleep = sleep or self.cancel_token.wait
        self.listener = listener
        self.event_log = event_log if event_log is not None else dispatcher.event_log

    def run(self, session: Session, user_input: str | None = None) -> TurnOutcome:
        """
        Run round trips until a final answer or a failure.

        Args:
            session: The conversation; appended to in place
            user_input: Optional user message appended before the first turn
        """
        if user_input is not None:
            session.add_user_message(user_input)

        for turn in range(1, self.config.max_turns + 1):
            logger.info(f"Orchestrator turn {turn}/{self.config.max_turns}")
            outcome = self.run_turn(session)
            if not isinstance(outcome, Continuing):
                return outcome

        logger.warning(f"Turn limit reached ({self.config.max_turns})")
        self.event_log.log_event(EventType.TURN_LIMIT, max_turns=self.config.max_turns)
        return Failed(
            TURN_LIMIT_EXCEEDED,
            f"Stopped after {self.config.max_turns} model round trips without a final answer",
        )

    def run_turn(self, session: Session) -> TurnOutcome:
        """One model round trip plus the tool calls it requests."""
        try:
            reply = self._request(session)
        except _Cancelled:
            return self._cancelled()
        except TransportError as e:
            logger.error(f"Model request failed: {e}")
            return Failed(TRANSPORT_ERROR, str(e))

        try:
            message = session.add_assistant_message(reply.content, reply.tool_calls)
        except SessionStateError as e:
            logger.error(f"Rejected model reply: {e}")
            return Failed(INVALID_MODEL_REPLY, str(e))
        self._notify(message)

        if not reply.has_tool_calls:
            return FinalAnswer(reply.content)

        cancelled = False
        for call in reply.tool_calls:
            if not cancelled and self.cancel_token.cancelled:
                cancelled = True
                self.event_log.log_event(EventType.CANCELLED, call.id)
                logger.info("Cancellation observed; skipping remaining tool calls")
            if cancelled:
                result = ToolResult(
                    call_id=call.id,
                    status=ToolStatus.ERROR,
                    output="Cancelled by the operator before this call ran",
                    error_detail=CANCELLED,
                )
            else:
                result = self.dispatcher.dispatch(call)
            self._notify(session.add_tool_result(result, name=call.name))

        if cancelled:
            return Failed(CANCELLED, "Cancelled by the operator")
        return Continuing(len(reply.tool_calls))

    def _request(self, session: Session) -> Message:
        """Send the history, retrying retryable transport errors with backoff."""
        retries = self.config.max_transport_retries
        for attempt in range(retries + 1):
            if self.cancel_token.cancelled:
                raise _Cancelled()
            self.event_log.log_event(
                EventType.MODEL_REQUEST,
                attempt=attempt + 1,
                messages=session.message_count,
            )
            self.progress.start("Thinking")
            try:
                reply = self.model.send(session.get_messages())
            except TransportError as e:
                if not e.retryable or attempt == retries:
                    raise
                delay = self._backoff(attempt, e.retry_after)
                logger.warning(f"Transient model error (attempt {attempt + 1}/{retries + 1}), retrying in {delay:g}s: {e}")
                self.event_log.log_event(EventType.MODEL_RETRY, attempt=attempt + 1, delay=delay, error=str(e))
            else:
                self.event_log.log_event(
                    EventType.MODEL_RESPONSE,
                    tool_calls=[tc.name for tc in reply.tool_calls],
                    content_chars=len(reply.content),
                )
                return reply
            finally:
                self.progress.stop()
            self._sleep(delay)
        raise AssertionError("unreachable")

    def _backoff(self, attempt: int, retry_after: float | None) -> float:
        if retry_after is not None:
            return min(retry_after, self.config.retry_backoff_max)
        return min(self.config.retry_backoff * 2 ** attempt, self.config.retry_backoff_max)

    def _cancelled(self) -> Failed:
        logger.info("Cancelled before model request")
        self.event_log.log_event(EventType.CANCELLED)
        return Failed(CANCELLED, "Cancelled by the operator")

    def _notify(self, message: Message) -> None:
        if self.listener is not None:
            self.listener(message)
