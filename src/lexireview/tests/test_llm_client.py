"""Tests for the OpenAI-compatible generator transport."""
import json
from dataclasses import replace

import httpx
import pytest

from lexireview.exceptions import ResponseFormatError, TransportError
from lexireview.services.llm_client import (
    CallOptions,
    LLMConfig,
    OpenAICompatibleTransport,
    validate_llm_config,
)


@pytest.fixture
def config() -> LLMConfig:
    """A valid endpoint configuration."""
    return LLMConfig(api_url="https://llm.example.com/v1/", api_key="secret", model="test-model", timeout=5)


def completion(content: str, usage: dict = None) -> dict:
    """Build a chat completions payload."""
    payload = {"choices": [{"message": {"role": "assistant", "content": content}}]}
    if usage is not None:
        payload["usage"] = usage
    return payload


def make_transport(config: LLMConfig, handler) -> OpenAICompatibleTransport:
    return OpenAICompatibleTransport(config, client=httpx.AsyncClient(transport=httpx.MockTransport(handler)))


def test_validate_llm_config(config: LLMConfig) -> None:
    """Test that a complete configuration is valid."""
    assert validate_llm_config(config) == []


@pytest.mark.parametrize(
    "changes, field",
    [
        ({"api_url": ""}, "api_url"),
        ({"api_url": "ftp://llm.example.com"}, "api_url"),
        ({"api_url": "llm.example.com"}, "api_url"),
        ({"api_key": ""}, "api_key"),
        ({"model": ""}, "model"),
        ({"timeout": 0}, "timeout"),
        ({"max_retries": -1}, "max_retries"),
        ({"max_retries": 11}, "max_retries"),
    ],
)
def test_validate_llm_config_rejects(config: LLMConfig, changes: dict, field: str) -> None:
    """Test that every malformed field is reported."""
    errors = validate_llm_config(replace(config, **changes))

    assert len(errors) == 1
    assert field in errors[0]


@pytest.mark.asyncio
async def test_call_success(config: LLMConfig) -> None:
    """Test a successful completion request."""
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["auth"] = request.headers["Authorization"]
        seen["body"] = json.loads(request.content)
        usage = {"prompt_tokens": 100, "completion_tokens": 50, "total_tokens": 150}
        return httpx.Response(200, json=completion('{"items": []}', usage))

    async with make_transport(config, handler) as transport:
        response = await transport.call("PROMPT", CallOptions(max_tokens=256, temperature=0.1, stop_sequences=["END"]))

    assert response.text == '{"items": []}'
    assert response.usage.total_tokens == 150
    assert seen["url"] == "https://llm.example.com/v1/chat/completions"
    assert seen["auth"] == "Bearer secret"
    assert seen["body"] == {
        "model": "test-model",
        "messages": [{"role": "user", "content": "PROMPT"}],
        "max_tokens": 256,
        "temperature": 0.1,
        "stop": ["END"],
    }


@pytest.mark.asyncio
async def test_call_without_usage(config: LLMConfig) -> None:
    """Test that missing usage is not an error."""
    transport = make_transport(config, lambda request: httpx.Response(200, json=completion("hello")))
    response = await transport.call("PROMPT", CallOptions())

    assert response.text == "hello"
    assert response.usage is None


@pytest.mark.asyncio
@pytest.mark.parametrize("status", [400, 429, 500, 503])
async def test_call_error_status(config: LLMConfig, status: int) -> None:
    """Test that error statuses raise with the status code attached."""
    transport = make_transport(config, lambda request: httpx.Response(status, text="nope"))

    with pytest.raises(TransportError) as exc_info:
        await transport.call("PROMPT", CallOptions())

    assert exc_info.value.status_code == status
    assert exc_info.value.body == "nope"


@pytest.mark.asyncio
async def test_call_network_error(config: LLMConfig) -> None:
    """Test that connection failures become transport errors without a status."""
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    transport = make_transport(config, handler)
    with pytest.raises(TransportError) as exc_info:
        await transport.call("PROMPT", CallOptions())

    assert exc_info.value.status_code is None


@pytest.mark.asyncio
async def test_call_timeout_is_reraised(config: LLMConfig) -> None:
    """Test that timeouts surface as httpx timeouts."""
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("too slow", request=request)

    transport = make_transport(config, handler)
    with pytest.raises(httpx.TimeoutException):
        await transport.call("PROMPT", CallOptions())


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "payload",
    [
        {"choices": []},
        {"error": "nothing"},
        {"choices": [{"message": {"content": None}}]},
    ],
)
async def test_call_unusable_payload(config: LLMConfig, payload: dict) -> None:
    """Test that a 200 without content raises a format error."""
    transport = make_transport(config, lambda request: httpx.Response(200, json=payload))

    with pytest.raises(ResponseFormatError):
        await transport.call("PROMPT", CallOptions())


@pytest.mark.asyncio
async def test_call_non_json_body(config: LLMConfig) -> None:
    """Test that a non-JSON 200 body raises a format error."""
    transport = make_transport(config, lambda request: httpx.Response(200, text="<html>"))

    with pytest.raises(ResponseFormatError):
        await transport.call("PROMPT", CallOptions())
