"""Resilience primitives: QuickBooks error taxonomy, response classification, retry."""

import logging
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime
from email.utils import parsedate_to_datetime
from typing import Any

import httpx
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

logger = logging.getLogger(__name__)


# ── Exception Hierarchy ──────────────────────────────────────────────────────


class QuickBooksError(Exception):
    """Base class for all errors surfaced by the QuickBooks client.

    Attributes:
        message: Human-readable description (upstream message when known).
        code: Stable machine-readable kind, or the upstream QBO error code.
        status_code: HTTP status that produced the error, if any.
    """

    code = "QBO_ERROR"
    transient = False

    def __init__(
        self,
        message: str,
        *,
        code: str | None = None,
        status_code: int | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code
        self.status_code = status_code


class AuthenticationError(QuickBooksError):
    """Credential or token refresh failure. Re-authorisation is required."""

    code = "AUTH_ERROR"


class ValidationError(QuickBooksError):
    """Malformed request, detected locally or rejected upstream (HTTP 400)."""

    code = "VALIDATION_ERROR"

    def __init__(
        self,
        message: str,
        details: list[dict[str, Any]] | None = None,
        *,
        code: str | None = None,
        status_code: int | None = None,
    ) -> None:
        super().__init__(message, code=code, status_code=status_code)
        self.details = details or []


class RateLimitError(QuickBooksError):
    """Upstream throttling (HTTP 429). Not retried inside the client."""

    code = "RATE_LIMIT"

    def __init__(self, message: str, retry_after: float | None = None) -> None:
        super().__init__(message, status_code=429)
        self.retry_after = retry_after


class NetworkError(QuickBooksError):
    """Connection-level failure or timeout. Retried with backoff."""

    code = "NETWORK_ERROR"
    transient = True


class ApiError(QuickBooksError):
    """Any other upstream error, carrying the QBO fault details."""

    code = "API_ERROR"

    def __init__(
        self,
        message: str,
        details: list[dict[str, Any]] | None = None,
        *,
        code: str | None = None,
        status_code: int | None = None,
    ) -> None:
        super().__init__(message, code=code, status_code=status_code)
        self.details = details or []


class ServerError(ApiError):
    """Upstream 5xx. Retried with backoff."""

    code = "SERVER_ERROR"
    transient = True


TRANSIENT_ERRORS: tuple[type[QuickBooksError], ...] = (NetworkError, ServerError)


# ── Response Classification ──────────────────────────────────────────────────


def parse_fault(response: httpx.Response) -> list[dict[str, Any]]:
    """Extract the ``Fault.Error`` list from a QBO error body.

    QBO answers most errors with ``{"Fault": {"Error": [...]}}`` but some
    auth failures arrive lower-cased (``fault.error``). Each entry is
    normalised to ``{code, message, detail, element}``.
    """
    try:
        body = response.json()
    except ValueError:
        return []
    if not isinstance(body, dict):
        return []

    fault = body.get("Fault") or body.get("fault") or {}
    if not isinstance(fault, dict):
        return []
    errors = fault.get("Error") or fault.get("error") or []

    details: list[dict[str, Any]] = []
    for err in errors:
        if not isinstance(err, dict):
            continue
        details.append({
            "code": str(err.get("code", "")),
            "message": err.get("Message") or err.get("message") or "",
            "detail": err.get("Detail") or err.get("detail") or "",
            "element": err.get("element"),
        })
    return details


def parse_retry_after(value: str | None) -> float | None:
    """Parse a ``Retry-After`` header (seconds or HTTP date) into seconds."""
    if not value:
        return None
    try:
        return max(float(value), 0.0)
    except ValueError:
        pass
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=UTC)
    return max((when - datetime.now(tz=UTC)).total_seconds(), 0.0)


def classify_response(response: httpx.Response) -> None:
    """Raise the matching QuickBooksError for a non-success response.

    Raises:
        AuthenticationError: On 401 and 403.
        RateLimitError: On 429.
        ValidationError: On 400.
        ServerError: On 5xx.
        ApiError: On any other 4xx.
    """
    status = response.status_code
    if status < 400:
        return

    if status == 429:
        retry_after = parse_retry_after(response.headers.get("Retry-After"))
        hint = f"{retry_after:.0f}" if retry_after is not None else "unknown"
        raise RateLimitError(
            f"Rate limit exceeded. Retry after {hint} seconds.", retry_after=retry_after
        )

    details = parse_fault(response)
    first = details[0] if details else {}
    upstream_message = first.get("message") or response.reason_phrase or f"HTTP {status}"
    upstream_code = first.get("code") or None

    if status == 401:
        raise AuthenticationError(
            "Authentication failed. Please check your credentials.", status_code=status
        )
    if status == 403:
        raise AuthenticationError(
            "Access forbidden. Check your app permissions and company ID.",
            status_code=status,
        )
    if status >= 500:
        raise ServerError(
            f"QuickBooks server error (HTTP {status}). Please try again later.",
            details,
            status_code=status,
        )
    if status == 400:
        raise ValidationError(upstream_message, details, code=upstream_code, status_code=status)
    raise ApiError(upstream_message, details, code=upstream_code, status_code=status)


# ── Retry ─────────────────────────────────────────────────────────────────


def log_retry_attempt(retry_state: RetryCallState) -> None:
    """Tenacity ``before_sleep`` callback that logs each retry."""
    attempt = retry_state.attempt_number
    exc = retry_state.outcome.exception() if retry_state.outcome else None
    delay = retry_state.next_action.sleep if retry_state.next_action else 0.0
    logger.warning("Retry attempt %d in %.2fs after error: %s", attempt, delay, exc)


def api_retry_policy(
    retry_attempts: int,
    retry_delay: float,
    sleep: Callable[[float], Awaitable[None]] | None = None,
) -> AsyncRetrying:
    """Build the retry policy for outbound requests.

    Only transient errors (network, 5xx) are retried: up to *retry_attempts*
    extra attempts, waiting ``retry_delay * 2 ** (n - 1)`` seconds after the
    n-th failure.
    """
    kwargs: dict[str, Any] = {}
    if sleep is not None:
        kwargs["sleep"] = sleep
    return AsyncRetrying(
        retry=retry_if_exception_type(TRANSIENT_ERRORS),
        stop=stop_after_attempt(retry_attempts + 1),
        wait=wait_exponential(multiplier=retry_delay, min=0),
        before_sleep=log_retry_attempt,
        reraise=True,
        **kwargs,
    )
