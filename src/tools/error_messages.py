"""User-friendly error messages and safe tool wrapper."""

import logging

import pydantic

from src.clients.queue import QueueClearedError
from src.clients.resilience import (
    ApiError,
    AuthenticationError,
    NetworkError,
    RateLimitError,
    ServerError,
    ValidationError,
)

logger = logging.getLogger(__name__)


def _describe_details(details: list[dict]) -> str:
    parts = [d.get("detail") or d.get("message") for d in details]
    return "; ".join(p for p in parts if p)


def get_user_message(error: Exception, context: dict | None = None) -> str:
    """Map an exception to a user-friendly message.

    Args:
        error: The exception to translate.
        context: Optional dict with extra info (e.g. {"invoice": "1042"}).

    Returns:
        A human-readable error message.
    """
    invoice = (context or {}).get("invoice")
    subject = f"invoice {invoice}" if invoice else "the request"

    if isinstance(error, AuthenticationError):
        return (
            "QuickBooks rejected the stored credentials. "
            "Re-authorize the app and update QBO_REFRESH_TOKEN, then restart the server."
        )
    if isinstance(error, RateLimitError):
        wait = (
            f"about {error.retry_after:.0f} seconds"
            if error.retry_after is not None
            else "a minute"
        )
        return f"QuickBooks is throttling requests. Please wait {wait} and try again."
    if isinstance(error, (NetworkError, ServerError)):
        return (
            "QuickBooks is temporarily unreachable. "
            f"Please try {subject} again in a few minutes."
        )
    if isinstance(error, ValidationError):
        detail = _describe_details(error.details)
        return f"Invalid request: {error.message}" + (f" ({detail})" if detail else "")
    if isinstance(error, ApiError):
        detail = _describe_details(error.details)
        return f"QuickBooks could not complete {subject}: {error.message}" + (
            f" ({detail})" if detail else ""
        )
    if isinstance(error, pydantic.ValidationError):
        fields = ", ".join(
            ".".join(str(p) for p in err["loc"]) or "input" for err in error.errors()
        )
        return f"Invalid input for: {fields}."
    if isinstance(error, ValueError):
        return f"Invalid input: {error}"
    if isinstance(error, QueueClearedError):
        return "The request was cancelled because the server is shutting down."
    return "Something went wrong. Please try again or check the server log."


async def safe_tool_wrapper(
    func,  # type: ignore[no-untyped-def]
    *args: object,
    context: dict | None = None,
    **kwargs: object,
) -> str:
    """Call an async function, catching errors and returning friendly messages.

    Args:
        func: Async callable to invoke.
        *args: Positional arguments for *func*.
        context: Optional context dict for error messages.
        **kwargs: Keyword arguments for *func*.

    Returns:
        The function's return value on success, or a user-friendly error string.
    """
    try:
        return await func(*args, **kwargs)
    except Exception as exc:  # noqa: BLE001
        logger.exception("Tool error in %s", func.__name__)
        return get_user_message(exc, context)
