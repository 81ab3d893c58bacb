"""
Tests for the LLM client, using httpx.MockTransport in place of a server.
"""

import json

import httpx
import pytest

from aicli.config import LLMConfig
from aicli.llm import ChatResponse, LLMClient, TransportError
from aicli.types import Message, Role


def _completion(message, finish_reason="stop"):
    return {"choices": [{"message": message, "finish_reason": finish_reason}]}


def _client(handler, **config):
    settings = {"base_url": "http://llm.test", "model": "test-model", "api_key": "sk-test", **config}
    transport = httpx.MockTransport(handler)
    return LLMClient(LLMConfig(**settings), tools=[{"type": "function", "function": {"name": "t"}}],
                     client=httpx.Client(transport=transport))


HISTORY = [Message(role=Role.SYSTEM, content="sys"), Message(role=Role.USER, content="hi")]


class TestLLMConfig:
    """Tests for endpoint construction."""

    def test_appends_version(self):
        assert LLMConfig(base_url="http://host:8000").endpoint == "http://host:8000/v1/chat/completions"

    def test_version_already_present(self):
        assert LLMConfig(base_url="http://host/v1/").endpoint == "http://host/v1/chat/completions"


class TestSend:
    """Tests for LLMClient.send."""

    def test_posts_history_and_tools(self):
        captured = {}

        def handler(request):
            captured["url"] = str(request.url)
            captured["auth"] = request.headers.get("Authorization")
            captured["body"] = json.loads(request.content)
            return httpx.Response(200, json=_completion({"role": "assistant", "content": "Hello"}))

        with _client(handler, temperature=0.2) as client:
            reply = client.send(HISTORY)

        assert reply == Message(role=Role.ASSISTANT, content="Hello")
        assert captured["url"] == "http://llm.test/v1/chat/completions"
        assert captured["auth"] == "Bearer sk-test"
        assert captured["body"]["model"] == "test-model"
        assert captured["body"]["messages"][1] == {"role": "user", "content": "hi"}
        assert captured["body"]["tool_choice"] == "auto"
        assert captured["body"]["temperature"] == 0.2
        assert "max_tokens" not in captured["body"]

    def test_no_auth_header_without_key(self):
        captured = {}

        def handler(request):
            captured["auth"] = request.headers.get("Authorization")
            return httpx.Response(200, json=_completion({"role": "assistant", "content": "x"}))

        _client(handler, api_key="").send(HISTORY)
        assert captured["auth"] is None

    def test_parses_tool_calls(self):
        message = {
            "role": "assistant",
            "content": None,
            "tool_calls": [{
                "id": "call_abc",
                "type": "function",
                "function": {"name": "execute_command", "arguments": '{"command": "ls"}'},
            }],
        }
        client = _client(lambda r: httpx.Response(200, json=_completion(message, "tool_calls")))

        reply = client.send(HISTORY)

        assert reply.content == ""
        assert reply.tool_calls[0].id == "call_abc"
        assert reply.tool_calls[0].arguments == {"command": "ls"}

    @pytest.mark.parametrize("status", [429, 500, 502, 503, 504])
    def test_retryable_status(self, status):
        client = _client(lambda r: httpx.Response(status, text="busy", headers={"Retry-After": "3"}))
        with pytest.raises(TransportError) as exc_info:
            client.send(HISTORY)
        assert exc_info.value.retryable
        assert exc_info.value.status_code == status
        assert exc_info.value.retry_after == 3.0

    @pytest.mark.parametrize("status", [400, 401, 404])
    def test_non_retryable_status(self, status):
        client = _client(lambda r: httpx.Response(status, text="nope"))
        with pytest.raises(TransportError) as exc_info:
            client.send(HISTORY)
        assert not exc_info.value.retryable

    def test_timeout_is_retryable(self):
        def handler(request):
            raise httpx.ReadTimeout("slow", request=request)

        with pytest.raises(TransportError) as exc_info:
            _client(handler).send(HISTORY)
        assert exc_info.value.retryable

    def test_connection_error_is_retryable(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        with pytest.raises(TransportError) as exc_info:
            _client(handler).send(HISTORY)
        assert exc_info.value.retryable

    def test_invalid_json_is_not_retryable(self):
        client = _client(lambda r: httpx.Response(200, text="<html>oops</html>"))
        with pytest.raises(TransportError) as exc_info:
            client.send(HISTORY)
        assert not exc_info.value.retryable

    def test_missing_choices_is_not_retryable(self):
        client = _client(lambda r: httpx.Response(200, json={"error": "model overloaded"}))
        with pytest.raises(TransportError) as exc_info:
            client.send(HISTORY)
        assert not exc_info.value.retryable


class TestChatResponse:
    """Tests for ChatResponse parsing."""

    def test_missing_and_duplicate_ids_are_replaced(self):
        data = _completion({
            "role": "assistant",
            "content": "",
            "tool_calls": [
                {"function": {"name": "a", "arguments": "{}"}},
                {"id": "dup", "function": {"name": "b", "arguments": "{}"}},
                {"id": "dup", "function": {"name": "c", "arguments": "{}"}},
            ],
        })
        response = ChatResponse.from_api_response(data)
        ids = [tc.id for tc in response.message.tool_calls]
        assert ids[1] == "dup"
        assert ids[0].startswith("call_")
        assert len(set(ids)) == 3
        assert response.has_tool_calls

    def test_finish_reason_defaults_to_stop(self):
        response = ChatResponse.from_api_response(
            {"choices": [{"message": {"role": "assistant", "content": "x"}}]}
        )
        assert response.finish_reason == "stop"

    def test_null_function_is_parsed(self):
        response = ChatResponse.from_api_response(_completion({
            "role": "assistant",
            "content": None,
            "tool_calls": [{"id": "c1", "type": "function", "function": None}],
        }, "tool_calls"))
        call = response.message.tool_calls[0]
        assert call.id == "c1"
        assert call.name == ""
        assert call.arguments == {}

    def test_malformed_choice_is_transport_error(self):
        client = _client(lambda r: httpx.Response(200, json={"choices": ["not an object"]}))
        with pytest.raises(TransportError) as exc_info:
            client.send(HISTORY)
        assert not exc_info.value.retryable
