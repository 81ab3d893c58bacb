"""
LLM Client - The model collaborator.

Works with any OpenAI-compatible chat completions API (OpenAI, vLLM,
Ollama, LM Studio, ...). The client makes exactly one attempt per send()
and classifies failures into TransportError with a retryable flag; the
orchestrator decides whether and when to try again.
"""

import logging
import uuid
from typing import Any

import httpx

from aicli.config import LLMConfig
from aicli.types import Message, Role, ToolCall

logger = logging.getLogger(__name__)

# Default timeout configuration (in seconds)
DEFAULT_CONNECT_TIMEOUT = 10.0
DEFAULT_WRITE_TIMEOUT = 10.0
DEFAULT_POOL_TIMEOUT = 10.0

RETRYABLE_STATUS_CODES = frozenset({429, 500, 502, 503, 504})


class TransportError(Exception):
    """
    A model request failed.

    retryable is True for timeouts, network errors, rate limits and
    5xx responses. retry_after carries the server's Retry-After in seconds
    when it sent one.
    """

    def __init__(
        self,
        message: str,
        retryable: bool,
        retry_after: float | None = None,
        status_code: int | None = None,
    ) -> None:
        super().__init__(message)
        self.retryable = retryable
        self.retry_after = retry_after
        self.status_code = status_code


class LLMClient:
    """
    Client for OpenAI-compatible LLM APIs.

    Synchronous: the orchestrator waits for each model turn anyway.
    """

    def __init__(
        self,
        config: LLMConfig | None = None,
        tools: list[dict[str, Any]] | None = None,
        client: httpx.Client | None = None,
    ) -> None:
        """Initialize the client.

        Args:
            config: LLM configuration (endpoint, model, API key)
            tools: OpenAI-format tool definitions offered on every request
            client: Preconfigured httpx client, mainly for tests
        """
        self.config = config or LLMConfig.from_env()
        self.tools = tools or []

        headers = {"Content-Type": "application/json"}
        if self.config.api_key:
            headers["Authorization"] = f"Bearer {self.config.api_key}"

        # Use layered timeouts: connecting should be quick, generating may not be
        timeout = httpx.Timeout(
            connect=DEFAULT_CONNECT_TIMEOUT,
            read=self.config.timeout,
            write=DEFAULT_WRITE_TIMEOUT,
            pool=DEFAULT_POOL_TIMEOUT,
        )
        self._client = client or httpx.Client(headers=headers, timeout=timeout)
        if client is not None:
            self._client.headers.update(headers)

    def send(self, history: list[Message]) -> Message:
        """
        Send the full conversation and return the assistant's reply.

        Raises:
            TransportError: on any failure, flagged retryable or not
        """
        payload: dict[str, Any] = {
            "model": self.config.model,
            "messages": [m.to_dict() for m in history],
        }
        if self.config.temperature is not None:
            payload["temperature"] = self.config.temperature
        if self.config.max_tokens is not None:
            payload["max_tokens"] = self.config.max_tokens
        if self.tools:
            payload["tools"] = self.tools
            payload["tool_choice"] = "auto"

        logger.debug(f"Sending chat request with {len(history)} messages to {self.config.endpoint}")
        try:
            response = self._client.post(self.config.endpoint, json=payload)
            response.raise_for_status()
            data = response.json()
        except httpx.TimeoutException as e:
            logger.warning(f"Request timed out: {e}")
            raise TransportError(f"Request timed out: {e}", retryable=True) from e
        except httpx.HTTPStatusError as e:
            raise _classify_status_error(e) from e
        except httpx.RequestError as e:
            logger.warning(f"Request error: {e}")
            raise TransportError(f"Request error: {e}", retryable=True) from e
        except ValueError as e:
            raise TransportError(f"Response is not valid JSON: {e}", retryable=False) from e

        try:
            chat_response = ChatResponse.from_api_response(data)
        except (KeyError, IndexError, TypeError, AttributeError) as e:
            logger.error(f"Malformed chat response: {data!r}")
            raise TransportError(f"Malformed chat response: missing {e}", retryable=False) from e
        logger.debug(
            f"Received response: finish_reason={chat_response.finish_reason}, "
            f"tool_calls={len(chat_response.message.tool_calls)}"
        )
        return chat_response.message

    def close(self) -> None:
        """Close the HTTP client."""
        self._client.close()

    def __enter__(self) -> "LLMClient":
        return self

    def __exit__(self, *args: Any) -> None:
        self.close()


class ChatResponse:
    """
    Response from a chat completion request.

    Wraps the API response and converts the first choice into a Message.
    Tool calls without an id, or with an id already used in the same
    response, get a fresh one so results can always be matched.
    """

    def __init__(
        self,
        message: Message,
        finish_reason: str,
        raw_response: dict[str, Any],
    ) -> None:
        self.message = message
        self.finish_reason = finish_reason
        self.raw_response = raw_response

    @classmethod
    def from_api_response(cls, data: dict[str, Any]) -> "ChatResponse":
        """Parse an API response into a ChatResponse."""
        if "error" in data and "choices" not in data:
            raise KeyError(f"choices (server error: {data['error']})")
        choice = data["choices"][0]
        message = choice["message"]

        tool_calls: list[ToolCall] = []
        seen: set[str] = set()
        for tc in message.get("tool_calls") or []:
            call = ToolCall.from_dict(tc)
            if not call.id or call.id in seen:
                call = ToolCall(id=f"call_{uuid.uuid4().hex[:12]}", name=call.name, arguments=call.arguments)
            seen.add(call.id)
            tool_calls.append(call)

        return cls(
            message=Message(
                role=Role.ASSISTANT,
                content=message.get("content") or "",
                tool_calls=tuple(tool_calls),
            ),
            finish_reason=choice.get("finish_reason") or "stop",
            raw_response=data,
        )

    @property
    def has_tool_calls(self) -> bool:
        return self.message.has_tool_calls


def _classify_status_error(error: httpx.HTTPStatusError) -> TransportError:
    status = error.response.status_code
    body = error.response.text[:500]
    if status in RETRYABLE_STATUS_CODES:
        retry_after = _parse_retry_after(error.response.headers.get("Retry-After"))
        logger.warning(f"HTTP {status} from model endpoint (retryable, Retry-After={retry_after})")
        return TransportError(
            f"HTTP {status}: {body}",
            retryable=True,
            retry_after=retry_after,
            status_code=status,
        )
    logger.error(f"HTTP error: {status} - {body}")
    return TransportError(f"HTTP {status}: {body}", retryable=False, status_code=status)


def _parse_retry_after(value: str | None) -> float | None:
    if not value:
        return None
    try:
        return max(float(value), 0.0)
    except ValueError:
        return None
