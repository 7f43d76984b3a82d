"""Retrying gateway for outbound content API calls.

Every request to the platform goes through `RetryGateway.call`. Failures are
classified into `ApiError`s: server errors and transport failures are
retryable, everything in the 4xx range is terminal and surfaces immediately
with a semantic code (auth expired, rate limited, malformed request) that the
credential pool interprets.
"""

import asyncio
import json
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional

import httpx
from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from feed_sync.logging_config import get_logger

logger = get_logger(__name__)


class ApiErrorCode(str, Enum):
    AUTH_EXPIRED = "auth_expired"
    RATE_LIMITED = "rate_limited"
    MALFORMED_REQUEST = "malformed_request"
    CLIENT_ERROR = "client_error"
    SERVER_ERROR = "server_error"
    NETWORK_ERROR = "network_error"


RETRYABLE_CODES = frozenset({ApiErrorCode.SERVER_ERROR, ApiErrorCode.NETWORK_ERROR})

# Error markers the platform embeds in response bodies
SERVICE_ERROR_MARKERS = {
    "WeReadError401": ApiErrorCode.AUTH_EXPIRED,
    "WeReadError429": ApiErrorCode.RATE_LIMITED,
    "WeReadError400": ApiErrorCode.MALFORMED_REQUEST,
}


class ApiError(Exception):
    """A classified failure of a call to the content API."""

    def __init__(self, code: ApiErrorCode, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.code = code
        self.message = message
        self.status_code = status_code

    @property
    def retryable(self) -> bool:
        return self.code in RETRYABLE_CODES

    def __repr__(self) -> str:
        return f"ApiError(code={self.code.value!r}, status_code={self.status_code!r}, message={self.message!r})"


@dataclass
class ApiRequest:
    """Description of a single outbound HTTP call."""

    method: str
    url: str
    headers: Dict[str, str] = field(default_factory=dict)
    params: Dict[str, str] = field(default_factory=dict)
    json: Optional[Any] = None
    timeout: Optional[float] = None


@dataclass
class RawResponse:
    status_code: int
    text: str

    def json(self) -> Any:
        return json.loads(self.text) if self.text else None


@dataclass
class RetryPolicy:
    """Bounded exponential backoff.

    Attempt k (1-indexed) waits base_delay_ms * 2**(k-1) before attempt k+1,
    never more than max_delay_factor * base_delay_ms.
    """

    max_attempts: int = 3
    base_delay_ms: int = 1000
    max_delay_factor: int = 10


def classify_response(status_code: int, body: str = "") -> ApiError:
    """Classify a non-2xx response into an ApiError.

    Service error markers in the body take precedence over the HTTP status,
    because the platform reports some account errors behind other codes.
    """
    snippet = (body or "")[:200]

    for marker, code in SERVICE_ERROR_MARKERS.items():
        if marker in (body or ""):
            return ApiError(code, f"{marker}: {snippet}", status_code)

    if status_code in (401, 403):
        return ApiError(ApiErrorCode.AUTH_EXPIRED, f"HTTP {status_code}: authentication expired", status_code)
    if status_code == 429:
        return ApiError(ApiErrorCode.RATE_LIMITED, f"HTTP {status_code}: rate limited", status_code)
    if status_code in (400, 404, 422):
        return ApiError(ApiErrorCode.MALFORMED_REQUEST, f"HTTP {status_code}: {snippet}", status_code)
    if 400 <= status_code < 500:
        return ApiError(ApiErrorCode.CLIENT_ERROR, f"HTTP {status_code}: {snippet}", status_code)
    return ApiError(ApiErrorCode.SERVER_ERROR, f"HTTP {status_code}: {snippet}", status_code)


def classify_exception(exc: BaseException) -> Optional[ApiError]:
    """Classify a raised exception, or return None if it is not an API failure."""
    if isinstance(exc, ApiError):
        return exc
    if isinstance(exc, httpx.TransportError):
        return ApiError(ApiErrorCode.NETWORK_ERROR, f"{type(exc).__name__}: {exc}")
    return None


class HttpTransport:
    """httpx-backed transport; the only component that touches the network."""

    def __init__(
        self,
        timeout: float = 15.0,
        client: Optional[httpx.AsyncClient] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._client = client or httpx.AsyncClient(
            follow_redirects=True,
            timeout=timeout,
            transport=transport,
            headers={"User-Agent": "FeedSync/1.0"},
        )

    async def request(self, config: ApiRequest) -> RawResponse:
        kwargs: Dict[str, Any] = {
            "headers": config.headers,
            "params": config.params or None,
        }
        if config.json is not None:
            kwargs["json"] = config.json
        if config.timeout is not None:
            kwargs["timeout"] = config.timeout

        response = await self._client.request(config.method, config.url, **kwargs)
        return RawResponse(status_code=response.status_code, text=response.text)

    async def aclose(self) -> None:
        await self._client.aclose()


class RetryGateway:
    """Wraps each outbound call with classification and bounded retry.

    The gateway never touches credential state; callers decide what a
    classified error means for the credential that made the call.
    """

    def __init__(
        self,
        transport: HttpTransport,
        policy: Optional[RetryPolicy] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.transport = transport
        self.policy = policy or RetryPolicy()
        self._sleep = sleep

    async def _attempt(self, request: ApiRequest) -> Any:
        try:
            response = await self.transport.request(request)
        except Exception as e:
            classified = classify_exception(e)
            if classified is None:
                raise
            raise classified from e

        if 200 <= response.status_code < 300:
            try:
                return response.json()
            except ValueError as e:
                raise ApiError(
                    ApiErrorCode.SERVER_ERROR,
                    f"Invalid JSON in response from {request.url}",
                    response.status_code,
                ) from e

        raise classify_response(response.status_code, response.text)

    async def call(self, request: ApiRequest, retry: Optional[RetryPolicy] = None) -> Any:
        """Perform a request, retrying retryable failures.

        Args:
            request: The request to send
            retry: Optional per-call override of the gateway's policy

        Returns:
            Decoded JSON body of the successful response

        Raises:
            ApiError: The classified error of the last failed attempt
        """
        policy = retry or self.policy
        base_seconds = policy.base_delay_ms / 1000.0

        retrying = AsyncRetrying(
            stop=stop_after_attempt(max(1, policy.max_attempts)),
            wait=wait_exponential(
                multiplier=base_seconds,
                exp_base=2,
                max=base_seconds * policy.max_delay_factor,
            ),
            retry=retry_if_exception(lambda e: isinstance(e, ApiError) and e.retryable),
            sleep=self._sleep,
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        )

        async for attempt in retrying:
            with attempt:
                logger.debug(
                    f"API request {request.method} {request.url} "
                    f"(attempt {attempt.retry_state.attempt_number}/{policy.max_attempts})"
                )
                return await self._attempt(request)
