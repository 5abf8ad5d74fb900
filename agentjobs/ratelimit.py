"""Quota-aware retry shim for outbound calls to the Anthropic Messages API.

The provider reports its remaining budget in ``anthropic-ratelimit-*`` headers on
every response. :class:`RateLimiter` keeps the latest snapshot as advisory state,
sleeps before a call when the budget is nearly spent, retries overloaded
responses on a fixed schedule and applies a one-off penalty delay when a hard
rate-limit error still slips through.
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Iterable, Mapping
from urllib.parse import urlparse

import httpx

from agentjobs import metrics
from agentjobs.settings import AnthropicSettings

LOGGER = logging.getLogger(__name__)

OVERLOADED_STATUS = 529
RATE_LIMITED_STATUS = 429
_HEADER_PREFIX = "anthropic-ratelimit-"
_DEFAULT_INPUT_TOKENS_LIMIT = 20000
_DEFAULT_REQUESTS_LIMIT = 50
_ADAPTIVE_FLOOR_SECONDS = 5.0
_ADAPTIVE_SECONDS_PER_TOKEN = 0.002
_LOW_TOKEN_WARNING_PERCENT = 25

Clock = Callable[[], datetime]
Sleeper = Callable[[float], Awaitable[None]]
Sender = Callable[[], Awaitable[httpx.Response]]


class UpstreamAPIError(RuntimeError):
    """Non-retryable error returned by the upstream provider."""

    def __init__(self, message: str, *, status_code: int | None = None, body: str | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.body = body


class UpstreamOverloadedError(UpstreamAPIError):
    """Provider stayed overloaded for every attempt the backoff policy allows."""


class UpstreamRateLimitError(UpstreamAPIError):
    """Hard rate-limit rejection despite the pre-emptive quota guard."""


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _parse_timestamp(raw: str | None) -> datetime | None:
    if not raw:
        return None
    try:
        parsed = datetime.fromisoformat(raw.strip())
    except ValueError:
        LOGGER.warning("Ignoring malformed rate limit reset header: %s", raw)
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _parse_int(raw: str | None, default: int) -> int:
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


@dataclass(slots=True)
class RateLimitState:
    """Most recent quota snapshot reported by the provider."""

    input_tokens_remaining: int
    input_tokens_limit: int
    input_tokens_reset_at: datetime
    requests_remaining: int
    requests_limit: int
    requests_reset_at: datetime
    last_updated_at: datetime

    @classmethod
    def from_headers(cls, headers: Mapping[str, str], *, now: datetime) -> RateLimitState | None:
        """Build a snapshot from response headers; ``None`` when reset times are missing."""

        tokens_reset = _parse_timestamp(headers.get(f"{_HEADER_PREFIX}input-tokens-reset"))
        requests_reset = _parse_timestamp(headers.get(f"{_HEADER_PREFIX}requests-reset"))
        if tokens_reset is None or requests_reset is None:
            return None
        return cls(
            input_tokens_remaining=_parse_int(headers.get(f"{_HEADER_PREFIX}input-tokens-remaining"), 0),
            input_tokens_limit=_parse_int(
                headers.get(f"{_HEADER_PREFIX}input-tokens-limit"), _DEFAULT_INPUT_TOKENS_LIMIT
            ),
            input_tokens_reset_at=tokens_reset,
            requests_remaining=_parse_int(headers.get(f"{_HEADER_PREFIX}requests-remaining"), 0),
            requests_limit=_parse_int(headers.get(f"{_HEADER_PREFIX}requests-limit"), _DEFAULT_REQUESTS_LIMIT),
            requests_reset_at=requests_reset,
            last_updated_at=now,
        )

    def is_expired(self, now: datetime) -> bool:
        return now >= self.input_tokens_reset_at

    def token_percent(self) -> int:
        if self.input_tokens_limit <= 0:
            return 0
        return round(self.input_tokens_remaining / self.input_tokens_limit * 100)

    def request_percent(self) -> int:
        if self.requests_limit <= 0:
            return 0
        return round(self.requests_remaining / self.requests_limit * 100)


def _error_payload(body: bytes) -> Mapping[str, Any]:
    try:
        data = json.loads(body or b"{}")
    except ValueError:
        return {}
    if not isinstance(data, Mapping):
        return {}
    error = data.get("error")
    return error if isinstance(error, Mapping) else {}


def is_overloaded(status_code: int, body: bytes) -> bool:
    """True for the provider's "overloaded" signal: 529 plus ``overloaded_error``."""

    return status_code == OVERLOADED_STATUS and _error_payload(body).get("type") == "overloaded_error"


def is_rate_limited(status_code: int, body: bytes) -> bool:
    return status_code == RATE_LIMITED_STATUS or _error_payload(body).get("type") == "rate_limit_error"


@dataclass(frozen=True, slots=True)
class BackoffPolicy:
    """Fixed-delay retry schedule for overloaded responses.

    ``delays[i]`` is slept after the ``i + 1``-th failed attempt; the last delay
    repeats if ``max_attempts`` outruns the sequence.
    """

    delays: tuple[float, ...] = (30.0, 60.0)
    max_attempts: int = 3
    is_retryable: Callable[[int, bytes], bool] = is_overloaded

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.max_attempts > 1 and not self.delays:
            raise ValueError("delays must not be empty when retries are allowed")

    def should_retry(self, attempt: int) -> bool:
        return attempt < self.max_attempts

    def delay_for(self, attempt: int) -> float:
        index = min(max(attempt, 1) - 1, len(self.delays) - 1)
        return self.delays[index]


class RateLimiter:
    """Owns the :class:`RateLimitState` for one process and gates every call."""

    def __init__(
        self,
        *,
        min_input_tokens: int = 6000,
        low_input_tokens: int = 8000,
        min_requests: int = 1,
        reset_buffer_seconds: float = 1.0,
        penalty_seconds: float = 60.0,
        backoff: BackoffPolicy | None = None,
        clock: Clock | None = None,
        sleep: Sleeper | None = None,
    ) -> None:
        self.min_input_tokens = min_input_tokens
        self.low_input_tokens = low_input_tokens
        self.min_requests = min_requests
        self.reset_buffer_seconds = reset_buffer_seconds
        self.penalty_seconds = penalty_seconds
        self.backoff = backoff or BackoffPolicy()
        self._clock = clock or _utc_now
        self._sleep = sleep or asyncio.sleep
        self._state: RateLimitState | None = None

    @classmethod
    def from_settings(cls, settings: AnthropicSettings, **overrides: Any) -> RateLimiter:
        delays = settings.overload_retry_delays
        options: dict[str, Any] = {
            "min_input_tokens": settings.min_input_tokens,
            "low_input_tokens": settings.low_input_tokens,
            "min_requests": settings.min_requests,
            "reset_buffer_seconds": settings.reset_buffer_seconds,
            "penalty_seconds": settings.rate_limit_penalty_seconds,
            "backoff": BackoffPolicy(delays=delays, max_attempts=len(delays) + 1),
        }
        options.update(overrides)
        return cls(**options)

    @property
    def state(self) -> RateLimitState | None:
        return self._state

    def reset(self) -> None:
        self._state = None

    async def wait_for_capacity(self) -> float:
        """Sleep if the last known budget is too thin; return the seconds slept."""

        state = self._state
        if state is None:
            return 0.0
        now = self._clock()
        if state.is_expired(now):
            LOGGER.debug("Rate limit window has reset; discarding cached quota")
            self._state = None
            return 0.0

        if state.input_tokens_remaining < self.min_input_tokens:
            wait = (state.input_tokens_reset_at - now).total_seconds()
            LOGGER.warning(
                "Input tokens low: %s/%s remaining; waiting %.0fs until %s",
                state.input_tokens_remaining,
                state.input_tokens_limit,
                max(wait, 0.0),
                state.input_tokens_reset_at.isoformat(),
            )
            return await self._pause(wait + self.reset_buffer_seconds, reason="input_tokens") if wait > 0 else 0.0

        if state.requests_remaining < self.min_requests:
            wait = (state.requests_reset_at - now).total_seconds()
            LOGGER.warning(
                "Requests low: %s/%s remaining; waiting %.0fs until %s",
                state.requests_remaining,
                state.requests_limit,
                max(wait, 0.0),
                state.requests_reset_at.isoformat(),
            )
            return await self._pause(wait + self.reset_buffer_seconds, reason="requests") if wait > 0 else 0.0

        if state.input_tokens_remaining < self.low_input_tokens:
            deficit = self.low_input_tokens - state.input_tokens_remaining
            delay = max(_ADAPTIVE_FLOOR_SECONDS, deficit * _ADAPTIVE_SECONDS_PER_TOKEN)
            LOGGER.info(
                "Adaptive delay: %s input tokens remaining, waiting %.1fs",
                state.input_tokens_remaining,
                delay,
            )
            return await self._pause(delay, reason="adaptive")
        return 0.0

    def update_from_headers(self, headers: Mapping[str, str]) -> RateLimitState | None:
        try:
            snapshot = RateLimitState.from_headers(headers, now=self._clock())
        except Exception as exc:  # pragma: no cover - header parsing must never break a call
            LOGGER.warning("Failed to parse rate limit headers: %s", exc)
            return self._state
        if snapshot is not None:
            self._state = snapshot
        return self._state

    async def call(self, send: Sender) -> httpx.Response:
        """Run ``send`` under the quota guard and the overload retry policy."""

        attempt = 0
        while True:
            await self.wait_for_capacity()
            attempt += 1
            if attempt > 1:
                LOGGER.info("Retrying upstream call (attempt %s/%s)", attempt, self.backoff.max_attempts)
            response = await send()
            body = await response.aread()

            if self.backoff.is_retryable(response.status_code, body):
                message = _error_payload(body).get("message") or response.text
                if not self.backoff.should_retry(attempt):
                    metrics.UPSTREAM_ERRORS.labels(kind="overloaded").inc()
                    LOGGER.error("Upstream overloaded after %s attempts; giving up", attempt)
                    raise UpstreamOverloadedError(
                        f"Anthropic API overloaded after {attempt} attempts: {message}",
                        status_code=response.status_code,
                        body=response.text,
                    )
                delay = self.backoff.delay_for(attempt)
                metrics.UPSTREAM_RETRIES.inc()
                LOGGER.warning(
                    "Upstream overloaded (status=%s, attempt=%s/%s); retrying in %.0fs",
                    response.status_code,
                    attempt,
                    self.backoff.max_attempts,
                    delay,
                )
                await self._pause(delay, reason="overloaded")
                continue

            self.update_from_headers(response.headers)
            if response.is_success:
                self._log_status()
                return response

            if is_rate_limited(response.status_code, body):
                metrics.UPSTREAM_ERRORS.labels(kind="rate_limited").inc()
                LOGGER.warning(
                    "Rate limit hit despite quota guard; applying %.0fs penalty delay",
                    self.penalty_seconds,
                )
                await self._pause(self.penalty_seconds, reason="penalty")
                raise UpstreamRateLimitError(
                    f"Anthropic API rate limit error ({response.status_code}): {response.text}",
                    status_code=response.status_code,
                    body=response.text,
                )

            metrics.UPSTREAM_ERRORS.labels(kind="api").inc()
            raise UpstreamAPIError(
                f"Anthropic API error ({response.status_code}): {response.text}",
                status_code=response.status_code,
                body=response.text,
            )

    async def _pause(self, seconds: float, *, reason: str) -> float:
        seconds = max(0.0, seconds)
        metrics.record_rate_limit_wait(reason, seconds)
        await self._sleep(seconds)
        return seconds

    def _log_status(self) -> None:
        state = self._state
        if state is None:
            LOGGER.debug("Rate limit status: no data available")
            return
        token_percent = state.token_percent()
        LOGGER.info(
            "Rate limit status: input tokens %s/%s (%s%%), requests %s/%s (%s%%), resets in %.0fs",
            state.input_tokens_remaining,
            state.input_tokens_limit,
            token_percent,
            state.requests_remaining,
            state.requests_limit,
            state.request_percent(),
            (state.input_tokens_reset_at - self._clock()).total_seconds(),
        )
        if token_percent < _LOW_TOKEN_WARNING_PERCENT:
            LOGGER.warning("Low input token availability (%s%%)", token_percent)


class RateLimitedTransport(httpx.AsyncBaseTransport):
    """httpx transport that routes provider-bound requests through a :class:`RateLimiter`."""

    def __init__(
        self,
        limiter: RateLimiter,
        *,
        hosts: Iterable[str],
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.limiter = limiter
        self.hosts = {host.lower() for host in hosts if host}
        self._transport = transport or httpx.AsyncHTTPTransport()

    async def handle_async_request(self, request: httpx.Request) -> httpx.Response:
        if request.url.host.lower() not in self.hosts:
            return await self._transport.handle_async_request(request)
        return await self.limiter.call(lambda: self._transport.handle_async_request(request))

    async def aclose(self) -> None:
        await self._transport.aclose()


class AnthropicClient:
    """Minimal async client for ``POST /v1/messages`` behind the rate limiter."""

    def __init__(
        self,
        settings: AnthropicSettings,
        *,
        limiter: RateLimiter | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.settings = settings
        self.limiter = limiter or RateLimiter.from_settings(settings)
        host = urlparse(settings.base_url).hostname or "api.anthropic.com"
        self._http = httpx.AsyncClient(
            base_url=settings.base_url,
            transport=RateLimitedTransport(self.limiter, hosts=[host], transport=transport),
            timeout=httpx.Timeout(settings.request_timeout_seconds, connect=10.0),
        )

    def _headers(self) -> dict[str, str]:
        headers = {
            "anthropic-version": self.settings.api_version,
            "content-type": "application/json",
        }
        if self.settings.api_key:
            headers["x-api-key"] = self.settings.api_key
        if self.settings.beta:
            headers["anthropic-beta"] = self.settings.beta
        return headers

    async def create_message(
        self,
        *,
        messages: list[dict[str, Any]],
        max_tokens: int,
        system: str | None = None,
        tools: list[dict[str, Any]] | None = None,
        model: str | None = None,
    ) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "model": model or self.settings.model,
            "max_tokens": max_tokens,
            "messages": messages,
        }
        if system:
            payload["system"] = system
        if tools:
            payload["tools"] = tools
        LOGGER.debug("Calling Anthropic messages API (%s messages)", len(messages))
        response = await self._http.post("/v1/messages", json=payload, headers=self._headers())
        return response.json()

    async def aclose(self) -> None:
        await self._http.aclose()
