"""LLM client utilities and helpers shared by both execution engines.

This module provides:
- LLMClient: Wrapper around LiteLLM exposing the ``complete(system, user)``
  capability with rate limiting, retry, fallback model and metrics
- LLMError and subclasses: provider failures classified as rate limited,
  quota exceeded, auth or upstream, each carrying a status code
- MockLLMClient: scripted client for tests and offline runs
- extract_json_object / extract_json_array: best-effort JSON recovery from
  free-form model output
- truncate: excerpt helper used when building prompts
"""

import asyncio
import json
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Optional

import structlog
from litellm import ModelResponse, acompletion
from litellm.exceptions import (
    APIConnectionError,
    AuthenticationError,
    BadRequestError,
    PermissionDeniedError,
    RateLimitError,
    ServiceUnavailableError,
    Timeout,
)

from config import settings
from events.bus import EventBus
from events.types import EventType, LLMMetrics, RunEvent
from rate_limiter import RateLimiter, RateLimitExceededError, get_rate_limiter

if TYPE_CHECKING:
    from metrics import MetricsCollector

logger = structlog.get_logger()


# ---------------------------------------------------------------------------
# Error taxonomy
# ---------------------------------------------------------------------------


class LLMError(Exception):
    """A completion call failed. Carries the provider status code if known."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class RateLimitedError(LLMError):
    """Provider (or the local limiter) refused the call for throughput reasons."""


class QuotaExceededError(LLMError):
    """Account quota or credits exhausted; retrying will not help."""


class LLMAuthError(LLMError):
    """Credentials missing, invalid or lacking permission."""


class UpstreamError(LLMError):
    """Any other provider-side or transport failure."""


_QUOTA_MARKERS = ("quota", "insufficient_quota", "credit", "billing")


def classify_llm_error(exc: Exception) -> LLMError:
    """Map a LiteLLM (or limiter) exception onto the LLMError taxonomy."""
    if isinstance(exc, LLMError):
        return exc

    status = getattr(exc, "status_code", None)
    message = str(exc)

    if isinstance(exc, RateLimitExceededError):
        return RateLimitedError(message, status_code=429)
    if status == 402 or (
        isinstance(exc, RateLimitError)
        and any(marker in message.lower() for marker in _QUOTA_MARKERS)
    ):
        return QuotaExceededError(message, status_code=status or 402)
    if isinstance(exc, RateLimitError) or status == 429:
        return RateLimitedError(message, status_code=429)
    if isinstance(exc, AuthenticationError | PermissionDeniedError) or status in (401, 403):
        return LLMAuthError(message, status_code=status or 401)
    return UpstreamError(message, status_code=status)


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------


@dataclass
class LLMResponse:
    """Structured response from an LLM call."""

    content: str
    finish_reason: str
    metrics: LLMMetrics
    raw_response: ModelResponse | None = field(default=None, repr=False)


class LLMClient:
    """Wrapper around LiteLLM with retry logic, rate limiting, fallback, and metrics.

    Retries on: RateLimitError (unless it signals an exhausted quota),
    ServiceUnavailableError, Timeout, APIConnectionError.
    Never retries: AuthenticationError, PermissionDeniedError, BadRequestError,
    or any other exception (classified as UpstreamError unless its status says otherwise).
    After retries are exhausted a configured fallback model is tried once.
    Every failure leaving ``call()`` is an ``LLMError`` subclass.

    Attributes:
        event_bus: Optional EventBus for LLM_CALL_COMPLETE events
        default_model: Model used when a call does not name one
        fallback_model: Model tried once after the primary gives up
        retry_attempts: Retries on transient failures
        retry_delay: Base backoff in seconds (doubled per attempt, capped at 4s)
        rate_limiter: Shared RPM/TPM limiter
    """

    def __init__(
        self,
        event_bus: EventBus | None = None,
        default_model: str | None = None,
        fallback_model: str | None = None,
        retry_attempts: int | None = None,
        retry_delay: float = 1.0,
        rate_limiter: RateLimiter | None = None,
        metrics_collector: Optional["MetricsCollector"] = None,
    ) -> None:
        self.event_bus = event_bus
        self.default_model = default_model or settings.default_model
        self.fallback_model = fallback_model or settings.llm_fallback_model
        self.retry_attempts = (
            retry_attempts if retry_attempts is not None
            else settings.llm_max_retries
        )
        self.retry_delay = retry_delay
        self.rate_limiter = rate_limiter or get_rate_limiter()
        self.metrics_collector = metrics_collector

    async def complete(
        self,
        system_prompt: str,
        user_prompt: str,
        model: str | None = None,
        max_tokens: int | None = None,
        run_id: str | None = None,
        agent_id: str | None = None,
    ) -> str:
        """Text-in, text-out completion used by node handlers and role rounds."""
        messages = [
            {"role": "system", "content": system_prompt},
            {"role": "user", "content": user_prompt},
        ]
        response = await self.call(
            messages,
            model=model,
            max_tokens=max_tokens,
            run_id=run_id,
            agent_id=agent_id,
        )
        return response.content

    async def call(
        self,
        messages: list[dict[str, Any]],
        model: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
        run_id: str | None = None,
        agent_id: str | None = None,
    ) -> LLMResponse:
        """Make an LLM call with rate limiting, retry, fallback and metrics.

        Raises:
            LLMError: A classified failure once retries and fallback are exhausted.
        """
        model = model or self.default_model
        temperature = settings.llm_temperature if temperature is None else temperature
        start_time = time.time()

        # rough estimate: 4 chars per token
        estimated_tokens = max(sum(len(str(m.get("content", ""))) for m in messages) // 4, 500)

        try:
            await self.rate_limiter.acquire(estimated_tokens=estimated_tokens)
        except RateLimitExceededError as e:
            logger.error("llm_call_rate_limit_exceeded", model=model, error=str(e))
            raise classify_llm_error(e) from e

        last_exception: Exception | None = None

        for attempt in range(self.retry_attempts + 1):
            try:
                response = await self._make_request(messages, model, temperature, max_tokens)
                return await self._finish(response, model, start_time, run_id, agent_id)

            except (RateLimitError, ServiceUnavailableError, Timeout, APIConnectionError) as e:
                classified = classify_llm_error(e)
                if isinstance(classified, QuotaExceededError):
                    logger.error("llm_call_quota_exceeded", model=model, error=str(e))
                    raise classified from e

                last_exception = e
                if attempt < self.retry_attempts:
                    delay = min(self.retry_delay * (2 ** attempt), 4.0)
                    logger.warning(
                        "llm_call_retry",
                        model=model,
                        attempt=attempt + 1,
                        max_retries=self.retry_attempts,
                        error_type=type(e).__name__,
                        retry_delay=delay,
                    )
                    await self._async_sleep(delay)
                else:
                    logger.error(
                        "llm_call_failed_all_retries",
                        model=model,
                        attempts=self.retry_attempts + 1,
                        error_type=type(e).__name__,
                        error=str(e),
                    )

            except (AuthenticationError, PermissionDeniedError, BadRequestError) as e:
                logger.error(
                    "llm_call_failed_no_retry",
                    model=model,
                    error_type=type(e).__name__,
                    error=str(e),
                )
                raise classify_llm_error(e) from e

            except Exception as e:
                # NotFoundError, InternalServerError, APIError and anything unexpected
                logger.error(
                    "llm_call_failed_unclassified",
                    model=model,
                    error_type=type(e).__name__,
                    error=str(e),
                )
                raise classify_llm_error(e) from e

        if self.fallback_model and self.fallback_model != model:
            logger.warning(
                "llm_fallback_attempt",
                primary_model=model,
                fallback_model=self.fallback_model,
                primary_error=str(last_exception),
            )
            try:
                await self.rate_limiter.acquire(estimated_tokens=estimated_tokens)
                response = await self._make_request(
                    messages, self.fallback_model, temperature, max_tokens
                )
                return await self._finish(
                    response, self.fallback_model, start_time, run_id, agent_id
                )
            except Exception as fallback_error:
                logger.error(
                    "llm_fallback_failed",
                    fallback_model=self.fallback_model,
                    error_type=type(fallback_error).__name__,
                    error=str(fallback_error),
                )
                last_exception = last_exception or fallback_error

        if last_exception is None:
            raise UpstreamError("LLM call failed after all retries")
        raise classify_llm_error(last_exception) from last_exception

    async def _make_request(
        self,
        messages: list[dict[str, Any]],
        model: str,
        temperature: float,
        max_tokens: int | None,
    ) -> ModelResponse:
        kwargs: dict[str, Any] = {
            "model": model,
            "messages": messages,
            "temperature": temperature,
            "timeout": settings.llm_request_timeout_seconds,
        }
        if max_tokens:
            kwargs["max_tokens"] = max_tokens
        return await acompletion(**kwargs)

    async def _finish(
        self,
        response: ModelResponse,
        model: str,
        start_time: float,
        run_id: str | None,
        agent_id: str | None,
    ) -> LLMResponse:
        """Parse the response, record usage and emit metrics."""
        choice = response.choices[0]
        usage = getattr(response, "usage", None)
        metrics = LLMMetrics(
            model=model,
            input_tokens=usage.prompt_tokens if usage else 0,
            output_tokens=usage.completion_tokens if usage else 0,
            latency_ms=int((time.time() - start_time) * 1000),
        )
        self.rate_limiter.record_usage(metrics.total_tokens)

        if self.metrics_collector and run_id:
            self.metrics_collector.record_llm_call(
                run_id,
                prompt_tokens=metrics.input_tokens,
                completion_tokens=metrics.output_tokens,
            )
        if self.event_bus and run_id:
            await self.event_bus.publish(
                RunEvent(
                    type=EventType.LLM_CALL_COMPLETE,
                    run_id=run_id,
                    role_id=agent_id,
                    data=metrics.model_dump(),
                )
            )

        logger.info(
            "llm_call_complete",
            model=model,
            input_tokens=metrics.input_tokens,
            output_tokens=metrics.output_tokens,
            latency_ms=metrics.latency_ms,
        )
        return LLMResponse(
            content=choice.message.content or "",
            finish_reason=choice.finish_reason or "unknown",
            metrics=metrics,
            raw_response=response,
        )

    async def _async_sleep(self, seconds: float) -> None:
        """Backoff sleep, separate so tests can patch it."""
        await asyncio.sleep(seconds)


MockReply = str | Exception
MockResponder = Callable[[str, str], MockReply]


class MockLLMClient(LLMClient):
    """Scripted LLM client for tests and ``use_mock_llm`` runs.

    Replies come from ``responder(system, user)`` when given, otherwise
    from the ``responses`` queue in order. A reply that is an exception
    instance is raised instead of returned.

    Usage:
        >>> client = MockLLMClient(responses=["Hello", UpstreamError("boom", 502)])
        >>> await client.complete("sys", "hi")
        'Hello'
    """

    def __init__(
        self,
        responses: list[MockReply] | None = None,
        responder: MockResponder | None = None,
        default_response: str | None = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(**kwargs)
        self.responses = list(responses) if responses else []
        self.responder = responder
        self.default_response = default_response
        self.call_history: list[dict[str, Any]] = []
        self._response_index = 0

    async def call(
        self,
        messages: list[dict[str, Any]],
        model: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
        run_id: str | None = None,
        agent_id: str | None = None,
    ) -> LLMResponse:
        system = next((m["content"] for m in messages if m["role"] == "system"), "")
        user = next((m["content"] for m in messages if m["role"] == "user"), "")
        self.call_history.append({
            "system": system,
            "user": user,
            "model": model or self.default_model,
            "max_tokens": max_tokens,
            "agent_id": agent_id,
        })

        if self.responder is not None:
            reply = self.responder(system, user)
        elif self._response_index < len(self.responses):
            reply = self.responses[self._response_index]
            self._response_index += 1
        elif self.default_response is not None:
            reply = self.default_response
        else:
            raise UpstreamError("No more mock responses available")

        if isinstance(reply, Exception):
            raise reply

        logger.debug("mock_llm_call", call_index=len(self.call_history) - 1, preview=reply[:50])
        return LLMResponse(
            content=reply,
            finish_reason="stop",
            metrics=LLMMetrics(
                model=model or self.default_model,
                input_tokens=len(system + user) // 4,
                output_tokens=len(reply) // 4,
                latency_ms=0,
            ),
        )

    def reset(self) -> None:
        self._response_index = 0
        self.call_history.clear()


# ---------------------------------------------------------------------------
# Text helpers
# ---------------------------------------------------------------------------


def truncate(text: str, limit: int) -> str:
    """First ``limit`` characters of ``text``."""
    return text if len(text) <= limit else text[:limit]


def _extract_balanced_spans(text: str, opener: str, closer: str) -> list[str]:
    """Extract balanced ``opener``...``closer`` candidates from arbitrary text.

    Brackets inside JSON strings are ignored.
    """
    candidates: list[str] = []
    n = len(text)

    for start in range(n):
        if text[start] != opener:
            continue

        depth = 0
        in_string = False
        escaped = False

        for end in range(start, n):
            ch = text[end]

            if in_string:
                if escaped:
                    escaped = False
                elif ch == "\\":
                    escaped = True
                elif ch == '"':
                    in_string = False
                continue

            if ch == '"':
                in_string = True
            elif ch == opener:
                depth += 1
            elif ch == closer:
                depth -= 1
                if depth == 0:
                    candidates.append(text[start : end + 1])
                    break

    return candidates


def _try_parse(candidate: str, expected: type) -> Any | None:
    try:
        parsed = json.loads(candidate)
    except json.JSONDecodeError:
        return None
    return parsed if isinstance(parsed, expected) else None


def extract_json_object(response: str) -> dict[str, Any] | None:
    """First parseable balanced ``{...}`` span, then the whole trimmed text.

    Returns None when neither stage yields a JSON object.
    """
    for candidate in _extract_balanced_spans(response, "{", "}"):
        parsed = _try_parse(candidate, dict)
        if parsed is not None:
            return parsed
    return _try_parse(response.strip(), dict)


def extract_json_array(response: str) -> list[Any] | None:
    """First parseable balanced ``[...]`` span, then the whole trimmed text.

    Returns None when neither stage yields a JSON array.
    """
    for candidate in _extract_balanced_spans(response, "[", "]"):
        parsed = _try_parse(candidate, list)
        if parsed is not None:
            return parsed
    return _try_parse(response.strip(), list)
