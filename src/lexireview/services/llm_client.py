"""Transport to the external text generator."""
import logging
import time
from dataclasses import dataclass
from typing import List, Optional, Protocol

import httpx
from pydantic import AnyHttpUrl, TypeAdapter, ValidationError

from lexireview.exceptions import ResponseFormatError, TransportError

logger = logging.getLogger(__name__)

MAX_RETRIES_LIMIT = 10

_url_adapter = TypeAdapter(AnyHttpUrl)


@dataclass(frozen=True)
class LLMConfig:
    """Connection settings of an OpenAI-compatible chat completions endpoint."""
    api_url: str
    api_key: str
    model: str
    timeout: float = 30.0  # seconds, per call
    max_retries: int = 3


@dataclass(frozen=True)
class CallOptions:
    max_tokens: int = 1000
    temperature: float = 0.7
    stop_sequences: Optional[List[str]] = None


@dataclass(frozen=True)
class TokenUsage:
    prompt_tokens: int
    completion_tokens: int
    total_tokens: int


@dataclass(frozen=True)
class TransportResponse:
    text: str
    usage: Optional[TokenUsage] = None


class GeneratorTransport(Protocol):
    """Anything that can turn a prompt into generated text."""

    async def call(self, prompt: str, options: CallOptions) -> TransportResponse:
        ...


def validate_llm_config(config: LLMConfig) -> List[str]:
    """Return every problem with ``config``. An empty list means valid."""
    errors = []
    if not config.api_url:
        errors.append("api_url is required")
    else:
        try:
            _url_adapter.validate_python(config.api_url)
        except ValidationError:
            errors.append(f"api_url is not a valid http(s) URL: {config.api_url!r}")
    if not config.api_key:
        errors.append("api_key is required")
    if not config.model:
        errors.append("model is required")
    if not isinstance(config.timeout, (int, float)) or config.timeout <= 0:
        errors.append(f"timeout must be positive, got {config.timeout!r}")
    if not isinstance(config.max_retries, int) or not 0 <= config.max_retries <= MAX_RETRIES_LIMIT:
        errors.append(f"max_retries must be between 0 and {MAX_RETRIES_LIMIT}, got {config.max_retries!r}")
    return errors


def _parse_usage(payload: Optional[dict]) -> Optional[TokenUsage]:
    if not payload:
        return None
    try:
        return TokenUsage(
            prompt_tokens=int(payload.get("prompt_tokens", 0)),
            completion_tokens=int(payload.get("completion_tokens", 0)),
            total_tokens=int(payload.get("total_tokens", 0)),
        )
    except (TypeError, ValueError):
        return None


class OpenAICompatibleTransport:
    """Calls ``{api_url}/chat/completions`` with a single user message."""

    def __init__(self, config: LLMConfig, client: Optional[httpx.AsyncClient] = None):
        self.config = config
        self._client = client or httpx.AsyncClient()
        self._owns_client = client is None

    async def __aenter__(self) -> "OpenAICompatibleTransport":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def call(self, prompt: str, options: CallOptions) -> TransportResponse:
        body = {
            "model": self.config.model,
            "messages": [{"role": "user", "content": prompt}],
            "max_tokens": options.max_tokens,
            "temperature": options.temperature,
        }
        if options.stop_sequences:
            body["stop"] = options.stop_sequences

        url = f"{self.config.api_url.rstrip('/')}/chat/completions"
        started = time.monotonic()
        logger.debug(f"Calling {self.config.model} (max_tokens={options.max_tokens})")
        try:
            response = await self._client.post(
                url,
                json=body,
                headers={"Authorization": f"Bearer {self.config.api_key}"},
                timeout=self.config.timeout,
            )
        except httpx.TimeoutException:
            raise
        except httpx.TransportError as exc:
            raise TransportError(f"Network error: {exc}") from exc

        if response.status_code >= 400:
            raise TransportError(
                f"HTTP {response.status_code}",
                status_code=response.status_code,
                body=response.text[:500],
            )

        try:
            data = response.json()
            text = data["choices"][0]["message"]["content"]
        except (ValueError, KeyError, IndexError, TypeError) as exc:
            raise ResponseFormatError(f"Unexpected completion payload: {exc}") from exc
        if not isinstance(text, str):
            raise ResponseFormatError("Completion content is not text")

        usage = _parse_usage(data.get("usage"))
        logger.info(
            f"Generator answered in {time.monotonic() - started:.2f}s "
            f"({len(text)} chars, {usage.total_tokens if usage else 'unknown'} tokens)"
        )
        return TransportResponse(text=text, usage=usage)
