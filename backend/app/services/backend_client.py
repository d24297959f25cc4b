"""
Backend Client - HTTP transport layer for member and chairman services.

This module handles communication with the council backends.
It is a TRANSPORT LAYER only - no business logic.

RESPONSIBILITIES:
1. Send JSON requests to member/chairman endpoints
2. Enforce a deadline on every call
3. Translate transport failures into a small exception taxonomy
4. Validate responses into typed models at the boundary

This module does NOT:
- Retry (a single attempt per call per stage)
- Anonymize, rank or persist anything
- Decide what a failure means for a stage
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Generic, Optional, Type, TypeVar, Union

import httpx
from pydantic import BaseModel, ValidationError

from app.models.council import (
    AnswerRequest,
    AnswerResponse,
    HealthResponse,
    ReviewRequest,
    ReviewResponse,
    SynthesizeRequest,
    SynthesizeResponse,
    dump_payload,
)


logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_MS = 60000

T = TypeVar("T", bound=BaseModel)


# =============================================================================
# EXCEPTIONS (Transport-level only)
# =============================================================================

class BackendClientError(Exception):
    """Base exception for backend client errors."""
    pass


class BackendConnectionError(BackendClientError):
    """Failed to reach the backend (DNS, refused connection, reset...)."""
    pass


class BackendTimeoutError(BackendClientError):
    """Backend did not answer before the deadline."""

    def __init__(self, timeout_ms: int):
        super().__init__(f"Request timed out after {timeout_ms}ms")
        self.timeout_ms = timeout_ms


class BackendHTTPError(BackendClientError):
    """Backend answered with a non-2xx status."""

    def __init__(self, message: str, status_code: int, response_body: Optional[str] = None):
        super().__init__(message)
        self.status_code = status_code
        self.response_body = response_body


class BackendContractError(BackendClientError):
    """Backend answered 2xx but the body does not match the contract."""
    pass


# =============================================================================
# RESULT TYPES
# =============================================================================

@dataclass(frozen=True)
class CallSuccess(Generic[T]):
    """A validated backend response."""
    data: T
    latency_ms: int
    ok: bool = True


@dataclass(frozen=True)
class CallFailure:
    """
    A failed backend call.

    error_type is the exception class name so callers can tell a timeout
    from a rejection without catching anything.
    """
    error_type: str
    message: str
    latency_ms: int
    ok: bool = False


CallResult = Union[CallSuccess[T], CallFailure]


def normalize_base_url(url: str) -> str:
    """Strip trailing slashes so endpoint paths join cleanly."""
    return url.rstrip("/")


def _elapsed_ms(start: float) -> int:
    return int((time.monotonic() - start) * 1000)


# =============================================================================
# CLIENT CLASS
# =============================================================================

class BackendClient:
    """
    Async HTTP client for council members and the chairman.

    Handles transport-level concerns:
    - HTTP connection/errors
    - Deadlines
    - Response validation

    Usage:
        client = BackendClient(timeout_ms=60000)
        result = await client.answer(member_url, AnswerRequest(...))
        if result.ok:
            print(result.data.answer_text)
        await client.aclose()
    """

    def __init__(
        self,
        timeout_ms: int = DEFAULT_TIMEOUT_MS,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Initialize backend client.

        Args:
            timeout_ms: Default deadline applied when a call does not pass one
            transport: Optional httpx transport (tests inject a MockTransport)
        """
        self.timeout_ms = timeout_ms
        self._http = httpx.AsyncClient(
            transport=transport,
            headers={"Content-Type": "application/json"},
        )

    async def aclose(self) -> None:
        await self._http.aclose()

    async def call(
        self,
        url: str,
        payload: Optional[dict[str, Any]] = None,
        timeout_ms: Optional[int] = None,
    ) -> dict[str, Any]:
        """
        Execute one JSON request against a backend.

        GET when payload is None, POST otherwise.

        Returns:
            Decoded JSON object

        Raises:
            BackendConnectionError: Cannot reach the backend
            BackendTimeoutError: Deadline exceeded
            BackendHTTPError: Non-2xx status
            BackendContractError: Body is not a JSON object
        """
        timeout_ms = timeout_ms or self.timeout_ms
        timeout_s = timeout_ms / 1000

        try:
            response = await asyncio.wait_for(
                self._send(url, payload, timeout_s),
                timeout=timeout_s,
            )
        except asyncio.TimeoutError as e:
            raise BackendTimeoutError(timeout_ms) from e
        except httpx.TimeoutException as e:
            raise BackendTimeoutError(timeout_ms) from e
        except httpx.HTTPError as e:
            raise BackendConnectionError(f"Cannot reach {url}: {e}") from e

        if response.status_code >= 400 or response.status_code < 200:
            body = response.text
            detail = f": {body}" if body else ""
            raise BackendHTTPError(
                f"Request failed with {response.status_code} {response.reason_phrase}{detail}",
                status_code=response.status_code,
                response_body=body or None,
            )

        try:
            data = response.json()
        except ValueError as e:
            raise BackendContractError(f"Invalid JSON response from {url}: {e}") from e

        if not isinstance(data, dict):
            raise BackendContractError(
                f"Expected a JSON object from {url}, got {type(data).__name__}"
            )
        return data

    async def _send(
        self,
        url: str,
        payload: Optional[dict[str, Any]],
        timeout_s: float,
    ) -> httpx.Response:
        if payload is None:
            return await self._http.get(url, timeout=timeout_s)
        return await self._http.post(url, json=payload, timeout=timeout_s)

    async def request_model(
        self,
        url: str,
        payload: Optional[dict[str, Any]],
        response_model: Type[T],
        timeout_ms: Optional[int] = None,
    ) -> CallResult:
        """
        Call a backend and validate the body into response_model.

        Never raises for backend problems: every failure, including a body
        that violates the contract, becomes a CallFailure.
        """
        start = time.monotonic()
        try:
            raw = await self.call(url, payload, timeout_ms)
            data = response_model.model_validate(raw)
        except ValidationError as e:
            message = f"Contract violation from {url}: {e.error_count()} invalid field(s)"
            logger.debug(f"{message}: {e}")
            return CallFailure(
                error_type=BackendContractError.__name__,
                message=message,
                latency_ms=_elapsed_ms(start),
            )
        except BackendClientError as e:
            return CallFailure(
                error_type=e.__class__.__name__,
                message=str(e),
                latency_ms=_elapsed_ms(start),
            )
        return CallSuccess(data=data, latency_ms=_elapsed_ms(start))

    # -------------------------------------------------------------------------
    # Endpoint helpers
    # -------------------------------------------------------------------------

    async def health(self, base_url: str, timeout_ms: Optional[int] = None) -> CallResult:
        url = f"{normalize_base_url(base_url)}/health"
        return await self.request_model(url, None, HealthResponse, timeout_ms)

    async def answer(
        self,
        member_url: str,
        request: AnswerRequest,
        timeout_ms: Optional[int] = None,
    ) -> CallResult:
        url = f"{normalize_base_url(member_url)}/answer"
        return await self.request_model(url, dump_payload(request), AnswerResponse, timeout_ms)

    async def review(
        self,
        member_url: str,
        request: ReviewRequest,
        timeout_ms: Optional[int] = None,
    ) -> CallResult:
        url = f"{normalize_base_url(member_url)}/review"
        return await self.request_model(url, dump_payload(request), ReviewResponse, timeout_ms)

    async def synthesize(
        self,
        chairman_url: str,
        request: SynthesizeRequest,
        timeout_ms: Optional[int] = None,
    ) -> CallResult:
        url = f"{normalize_base_url(chairman_url)}/synthesize"
        return await self.request_model(url, dump_payload(request), SynthesizeResponse, timeout_ms)
