"""Generation of validated review sentences with bounded retries.

One call to ``GenerationService.generate_items`` runs

    Building -> Calling -> Parsing -> Validating

and either succeeds or, on a retryable failure, waits with exponential
backoff and runs the whole cycle again with a freshly built request. A
validation failure is usually best fixed by a new generation rather than by
resending the same request, so the transport call is never retried on its
own. ``retry_count`` in the result is therefore the number of full cycles
that were redone.

The service never raises to its caller (except for cancellation of the
caller's own task): every path ends in a ``GenerationResult``.
"""
import asyncio
import json
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, List, Mapping, Optional, Union

import httpx
from pydantic import ValidationError

from lexireview.exceptions import (
    ConfigError,
    GenerationCancelled,
    ResponseFormatError,
    TransportError,
)
from lexireview.models.generation_models import GeneratedItem, PromptParams
from lexireview.monitoring import (
    generation_attempts,
    generation_duration,
    generation_errors,
    generation_results,
    generation_tokens,
)
from lexireview.services.llm_client import (
    CallOptions,
    GeneratorTransport,
    LLMConfig,
    TransportResponse,
    validate_llm_config,
)
from lexireview.services.prompt_builder import PROMPT_VERSION, build_prompt, validate_prompt_params
from lexireview.services.response_validator import (
    BudgetCheck,
    check_budget,
    format_parse_errors,
    parse_generate_items,
    validate_generated_items,
)

logger = logging.getLogger(__name__)

DEFAULT_MAX_RETRIES = 3


class GenerationErrorType(str, Enum):
    API_ERROR = "api_error"
    PARSE_ERROR = "parse_error"
    VALIDATION_ERROR = "validation_error"
    TIMEOUT_ERROR = "timeout_error"
    RATE_LIMIT_ERROR = "rate_limit_error"
    CONFIG_ERROR = "config_error"
    INVALID_REQUEST = "invalid_request"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class GenerationError:
    type: GenerationErrorType
    message: str
    retryable: bool
    details: Optional[Any] = None


@dataclass(frozen=True)
class RetryPolicy:
    """Exponential backoff: ``min(base_delay * 2 ** (retry - 1), max_delay)`` seconds."""
    max_retries: int = DEFAULT_MAX_RETRIES
    base_delay: float = 1.0
    max_delay: float = 10.0

    def delay_for(self, retry: int) -> float:
        return min(self.base_delay * 2 ** (retry - 1), self.max_delay)


def backoff_delay_ms(retry: int) -> int:
    """Delay before the ``retry``-th retry under the default policy, in milliseconds."""
    return min(1000 * 2 ** (retry - 1), 10000)


class CancellationToken:
    """Lets a caller abort an in-flight generation and any pending retries."""

    def __init__(self):
        self._event = asyncio.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    async def wait(self) -> None:
        await self._event.wait()


@dataclass
class GenerationMetadata:
    total_items: int
    target_word_coverage: float
    prompt_version: str = PROMPT_VERSION
    attempts: int = 1
    warnings: List[str] = field(default_factory=list)
    budget: Optional[BudgetCheck] = None


@dataclass
class GenerationResult:
    success: bool
    items: List[GeneratedItem] = field(default_factory=list)
    retry_count: int = 0
    total_tokens: Optional[int] = None
    metadata: Optional[GenerationMetadata] = None
    error: Optional[str] = None
    error_type: Optional[GenerationErrorType] = None


def _classify_status(status: int, message: str) -> GenerationError:
    if status == 429:
        return GenerationError(GenerationErrorType.RATE_LIMIT_ERROR, "Rate limited by generator", True,
                               {"status": status})
    if status >= 500:
        return GenerationError(GenerationErrorType.API_ERROR, f"Server error ({status})", True,
                               {"status": status, "message": message})
    return GenerationError(GenerationErrorType.API_ERROR, f"Client error ({status})", False,
                           {"status": status, "message": message})


def classify_error(exc: BaseException) -> GenerationError:
    """Map an exception raised while generating to a typed, retry-tagged error."""
    if isinstance(exc, GenerationCancelled):
        return GenerationError(GenerationErrorType.CANCELLED, "Generation cancelled", False)
    if isinstance(exc, (TimeoutError, httpx.TimeoutException)):
        return GenerationError(GenerationErrorType.TIMEOUT_ERROR, "Generator request timed out", True,
                               str(exc) or None)
    if isinstance(exc, httpx.HTTPStatusError):
        return _classify_status(exc.response.status_code, str(exc))
    if isinstance(exc, TransportError):
        if exc.status_code is None:
            return GenerationError(GenerationErrorType.API_ERROR, str(exc), True)
        return _classify_status(exc.status_code, exc.body or str(exc))
    if isinstance(exc, httpx.TransportError):
        return GenerationError(GenerationErrorType.API_ERROR, f"Network error: {exc}", True)
    if isinstance(exc, (ResponseFormatError, json.JSONDecodeError)):
        return GenerationError(GenerationErrorType.PARSE_ERROR, f"Unreadable generator response: {exc}", True)
    if isinstance(exc, ConfigError):
        return GenerationError(GenerationErrorType.CONFIG_ERROR, str(exc), False)
    return GenerationError(GenerationErrorType.API_ERROR, str(exc) or type(exc).__name__, False,
                           type(exc).__name__)


@dataclass
class _Attempt:
    error: Optional[GenerationError] = None
    items: List[GeneratedItem] = field(default_factory=list)
    coverage: float = 0.0
    warnings: List[str] = field(default_factory=list)
    tokens: Optional[int] = None


class GenerationService:
    """Produces validated review sentences from an injected generator transport."""

    def __init__(
        self,
        transport: GeneratorTransport,
        config: Optional[LLMConfig] = None,
        retry_policy: Optional[RetryPolicy] = None,
        call_options: Optional[CallOptions] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.transport = transport
        self.config = config
        self.retry_policy = retry_policy or RetryPolicy(
            max_retries=config.max_retries if config else DEFAULT_MAX_RETRIES
        )
        self.call_options = call_options or CallOptions()
        self._sleep = sleep

    async def generate_items(
        self,
        params: Union[PromptParams, Mapping[str, Any]],
        max_retries: Optional[int] = None,
        cancel_token: Optional[CancellationToken] = None,
        timeout: Optional[float] = None,
    ) -> GenerationResult:
        """Generate items covering ``params.targets``, retrying at most ``max_retries`` times."""
        started = time.monotonic()
        try:
            result = await self._run(params, max_retries, cancel_token, timeout)
        finally:
            generation_duration.observe(time.monotonic() - started)
        generation_results.labels("success" if result.success else "failure").inc()
        if result.total_tokens:
            generation_tokens.inc(result.total_tokens)
        return result

    async def _run(
        self,
        params: Union[PromptParams, Mapping[str, Any]],
        max_retries: Optional[int],
        cancel_token: Optional[CancellationToken],
        timeout: Optional[float],
    ) -> GenerationResult:
        if self.config is not None:
            config_errors = validate_llm_config(self.config)
            if config_errors:
                return self._failure(
                    GenerationError(GenerationErrorType.CONFIG_ERROR,
                                    f"Invalid generator configuration: {'; '.join(config_errors)}", False),
                    retry_count=0,
                )

        try:
            params = validate_prompt_params(params)
        except ValidationError as exc:
            return self._failure(
                GenerationError(GenerationErrorType.INVALID_REQUEST,
                                f"Invalid generation parameters: {exc.error_count()} error(s)", False,
                                exc.errors()),
                retry_count=0,
            )

        limit = self.retry_policy.max_retries if max_retries is None else max(0, max_retries)
        if timeout is None and self.config is not None:
            timeout = self.config.timeout

        logger.info(f"Generating items for targets {params.targets} (max retries {limit})")
        retry_count = 0
        total_tokens: Optional[int] = None
        while True:
            if cancel_token is not None and cancel_token.cancelled:
                return self._failure(classify_error(GenerationCancelled()), retry_count, total_tokens)

            generation_attempts.inc()
            attempt = await self._attempt(params, cancel_token, timeout)
            if attempt.tokens is not None:
                total_tokens = (total_tokens or 0) + attempt.tokens

            if attempt.error is None:
                logger.info(
                    f"Generated {len(attempt.items)} items after {retry_count} retries "
                    f"(coverage {attempt.coverage:.2f}, tokens {total_tokens})"
                )
                return GenerationResult(
                    success=True,
                    items=attempt.items,
                    retry_count=retry_count,
                    total_tokens=total_tokens,
                    metadata=GenerationMetadata(
                        total_items=len(attempt.items),
                        target_word_coverage=attempt.coverage,
                        attempts=retry_count + 1,
                        warnings=attempt.warnings,
                        budget=check_budget(attempt.items, params.profile.unknown_budget),
                    ),
                )

            error = attempt.error
            generation_errors.labels(error.type.value).inc()
            if not error.retryable or retry_count >= limit:
                logger.error(
                    f"Generation failed with {error.type.value} after {retry_count} retries: {error.message}"
                )
                return self._failure(error, retry_count, total_tokens)

            retry_count += 1
            delay = self.retry_policy.delay_for(retry_count)
            logger.warning(
                f"{error.type.value}: {error.message}. Retrying ({retry_count}/{limit}) in {delay:.1f}s"
            )
            if await self._backoff(delay, cancel_token):
                return self._failure(classify_error(GenerationCancelled()), retry_count, total_tokens)

    async def _attempt(
        self,
        params: PromptParams,
        cancel_token: Optional[CancellationToken],
        timeout: Optional[float],
    ) -> _Attempt:
        """Run one Building -> Calling -> Parsing -> Validating cycle."""
        try:
            prompt = build_prompt(params)
            response = await self._call(prompt, cancel_token, timeout)
            tokens = response.usage.total_tokens if response.usage else None
        except Exception as exc:
            return _Attempt(error=classify_error(exc))

        try:
            return self._check(response.text, params, tokens)
        except Exception as exc:
            logger.exception("Unexpected failure while checking generator output")
            return _Attempt(error=classify_error(exc), tokens=tokens)

    @staticmethod
    def _check(text: str, params: PromptParams, tokens: Optional[int]) -> _Attempt:
        """Parsing and Validating stages of one cycle."""
        parsed = parse_generate_items(text)
        if not parsed.success:
            return _Attempt(
                error=GenerationError(
                    GenerationErrorType.PARSE_ERROR,
                    format_parse_errors(parsed),
                    True,
                    [error.field for error in parsed.validation_errors],
                ),
                tokens=tokens,
            )

        report = validate_generated_items(
            parsed.data.items,
            params.targets,
            params.constraints.sentence_length_range,
        )
        if not report.is_valid:
            return _Attempt(
                error=GenerationError(
                    GenerationErrorType.VALIDATION_ERROR,
                    "; ".join(report.errors),
                    True,
                    {"coverage": report.coverage, "missing_targets": report.missing_targets},
                ),
                tokens=tokens,
            )

        return _Attempt(
            items=parsed.data.items,
            coverage=report.coverage,
            warnings=report.warnings,
            tokens=tokens,
        )

    async def _call(
        self,
        prompt: str,
        cancel_token: Optional[CancellationToken],
        timeout: Optional[float],
    ) -> TransportResponse:
        call = self.transport.call(prompt, self.call_options)
        if timeout is not None:
            call = asyncio.wait_for(call, timeout)
        if cancel_token is None:
            return await call

        task = asyncio.ensure_future(call)
        if await self._race(task, cancel_token):
            return task.result()
        raise GenerationCancelled()

    async def _backoff(self, delay: float, cancel_token: Optional[CancellationToken]) -> bool:
        """Sleep before a retry. Returns True when cancelled while waiting."""
        if cancel_token is None:
            await self._sleep(delay)
            return False
        return not await self._race(asyncio.ensure_future(self._sleep(delay)), cancel_token)

    @staticmethod
    async def _race(task: "asyncio.Future", cancel_token: CancellationToken) -> bool:
        """Wait for ``task`` unless cancelled first. Returns True when ``task`` finished."""
        waiter = asyncio.ensure_future(cancel_token.wait())
        try:
            done, _ = await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
            raise
        finally:
            waiter.cancel()
        if task in done:
            return True
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)
        return False

    @staticmethod
    def _failure(
        error: GenerationError,
        retry_count: int,
        total_tokens: Optional[int] = None,
    ) -> GenerationResult:
        return GenerationResult(
            success=False,
            retry_count=retry_count,
            total_tokens=total_tokens,
            error=error.message,
            error_type=error.type,
        )
