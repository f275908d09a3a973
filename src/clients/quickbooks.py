"""Async QuickBooks Online API client with OAuth2 refresh and retry."""

import asyncio
import logging
import time
from collections import deque
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime
from typing import Any
from uuid import uuid4

import httpx

from src.clients.resilience import (
    AuthenticationError,
    NetworkError,
    api_retry_policy,
    classify_response,
)
from src.config import Settings
from src.models.status import ApiLimits, OAuthTokens
from src.storage.token_store import TokenStore

logger = logging.getLogger(__name__)

# Refresh this many seconds before the access token actually expires
TOKEN_EXPIRY_MARGIN_SECONDS = 60
DEFAULT_TOKEN_LIFETIME_SECONDS = 3600
MINOR_VERSION = "65"
USAGE_WINDOW_SECONDS = 60.0


class QuickBooksClient:
    """Authenticated client for the QuickBooks Online v3 REST API.

    Every request carries a valid bearer token: the access token is refreshed
    shortly before expiry, concurrent refreshes share one in-flight call, and
    a 401 triggers exactly one refresh-and-resend. Network errors and 5xx
    responses are retried with exponential backoff.

    Args:
        settings: Application settings (credentials, URLs, retry/timeout).
        token_store: Optional encrypted store for rotated refresh tokens.
        transport: Optional httpx transport (tests pass ``httpx.MockTransport``).
        clock: Wall-clock source in epoch seconds.
        sleep: Override for the retry backoff sleep.
    """

    def __init__(
        self,
        settings: Settings,
        token_store: TokenStore | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable[None]] | None = None,
    ) -> None:
        self.settings = settings
        self.base_url = settings.base_url
        self.token_url = settings.token_url
        self._token_store = token_store
        self._transport = transport
        self._clock = clock
        self._sleep = sleep
        self._timeout = settings.api_timeout / 1000

        stored = token_store.load() if token_store is not None else None
        refresh_token = stored.refresh_token if stored else settings.qbo_refresh_token
        # Empty access token with expires_at=0 forces a refresh on first use
        self.tokens = OAuthTokens(refresh_token=refresh_token)

        self._refresh_task: asyncio.Future[OAuthTokens] | None = None
        self._request_times: deque[float] = deque()

    # ── Token lifecycle ─────────────────────────────────────────────────

    async def initialize(self) -> None:
        """Obtain a fresh access token up front."""
        await self.refresh_access_token()
        logger.info("QuickBooks client initialized (%s)", self.settings.qbo_environment)

    async def ensure_valid_token(self) -> str:
        """Return a usable access token, refreshing it if close to expiry."""
        if (
            not self.tokens.access_token
            or self._clock() >= self.tokens.expires_at - TOKEN_EXPIRY_MARGIN_SECONDS
        ):
            await self.refresh_access_token()
        return self.tokens.access_token

    async def refresh_access_token(self) -> OAuthTokens:
        """Exchange the refresh token for a new access token.

        Concurrent callers share the same in-flight refresh, so the token
        endpoint sees at most one request at a time.

        Raises:
            AuthenticationError: If the refresh fails for any reason.
        """
        if self._refresh_task is None:
            self._refresh_task = asyncio.ensure_future(self._do_refresh())
            self._refresh_task.add_done_callback(self._clear_refresh_task)
        else:
            logger.debug("Joining in-flight token refresh")
        return await asyncio.shield(self._refresh_task)

    def _clear_refresh_task(self, task: "asyncio.Future[OAuthTokens]") -> None:
        self._refresh_task = None
        if not task.cancelled():
            # Mark the exception retrieved; every waiter already received it
            task.exception()

    async def _do_refresh(self) -> OAuthTokens:
        if not self.tokens.refresh_token:
            raise AuthenticationError(
                "No refresh token available. Set QBO_REFRESH_TOKEN and restart the server."
            )

        logger.info("Refreshing QuickBooks access token")
        try:
            async with httpx.AsyncClient(
                timeout=self._timeout, transport=self._transport
            ) as client:
                response = await client.post(
                    self.token_url,
                    data={
                        "grant_type": "refresh_token",
                        "refresh_token": self.tokens.refresh_token,
                    },
                    auth=(self.settings.qbo_client_id, self.settings.qbo_client_secret),
                    headers={"Accept": "application/json"},
                )
        except httpx.HTTPError as exc:
            logger.error("Token refresh request failed: %s", exc)
            raise AuthenticationError(
                f"Failed to refresh access token: {exc}. Please re-authenticate."
            ) from exc

        if response.status_code != 200:
            logger.error(
                "Token refresh rejected | status=%s | intuit_tid=%s",
                response.status_code, response.headers.get("intuit_tid", "n/a"),
            )
            raise AuthenticationError(
                "Failed to refresh access token. Please re-authenticate.",
                status_code=response.status_code,
            )

        try:
            body = response.json()
            access_token = body["access_token"]
            expires_in = float(body.get("expires_in", DEFAULT_TOKEN_LIFETIME_SECONDS))
        except (ValueError, KeyError, TypeError) as exc:
            logger.error("Token endpoint returned an unexpected body")
            raise AuthenticationError(
                "Token endpoint returned an invalid response. Please re-authenticate."
            ) from exc

        # Intuit rotates refresh tokens; keep the old one if it did not
        tokens = OAuthTokens(
            access_token=access_token,
            refresh_token=body.get("refresh_token") or self.tokens.refresh_token,
            expires_at=self._clock() + expires_in,
        )
        self.tokens = tokens
        logger.info("Access token refreshed, expires in %.0fs", expires_in)

        if self._token_store is not None:
            try:
                self._token_store.save(tokens)
            except OSError as exc:
                logger.error("Could not persist refreshed tokens: %s", exc)
        return tokens

    # ── Request plumbing ────────────────────────────────────────────────

    def _record_request(self) -> None:
        now = self._clock()
        self._request_times.append(now)
        self._prune_usage(now)

    def _prune_usage(self, now: float) -> None:
        cutoff = now - USAGE_WINDOW_SECONDS
        while self._request_times and self._request_times[0] <= cutoff:
            self._request_times.popleft()

    async def _dispatch(
        self,
        method: str,
        endpoint: str,
        *,
        params: dict[str, Any] | None = None,
        json: Any = None,
        accept: str = "application/json",
    ) -> httpx.Response:
        """Send one HTTP request with the current access token."""
        headers = {
            "Authorization": f"Bearer {self.tokens.access_token}",
            "Accept": accept,
        }
        query = {"minorversion": MINOR_VERSION, **(params or {})}

        self._record_request()
        logger.debug("QBO request %s %s", method, endpoint)
        try:
            async with httpx.AsyncClient(
                base_url=self.base_url,
                timeout=self._timeout,
                transport=self._transport,
            ) as client:
                response = await client.request(
                    method, endpoint, params=query, json=json, headers=headers
                )
        except httpx.TimeoutException as exc:
            raise NetworkError(f"Request to QuickBooks timed out: {method} {endpoint}") from exc
        except httpx.TransportError as exc:
            raise NetworkError(f"Could not reach QuickBooks: {exc}") from exc

        # intuit_tid identifies the call for Intuit support
        intuit_tid = response.headers.get("intuit_tid", "n/a")
        if response.is_error:
            logger.error(
                "QBO API error | status=%s | intuit_tid=%s | %s %s",
                response.status_code, intuit_tid, method, endpoint,
            )
        else:
            logger.debug(
                "QBO response | status=%s | intuit_tid=%s | %s %s",
                response.status_code, intuit_tid, method, endpoint,
            )
        return response

    async def _send(self, method: str, endpoint: str, **kwargs: Any) -> httpx.Response:
        """One attempt: valid token, send, refresh-and-resend once on 401."""
        sent_with = await self.ensure_valid_token()
        response = await self._dispatch(method, endpoint, **kwargs)

        if response.status_code == 401:
            # Another request may already have refreshed the token
            if self.tokens.access_token == sent_with:
                logger.info("Access token rejected, refreshing")
                await self.refresh_access_token()
            response = await self._dispatch(method, endpoint, **kwargs)
            if response.status_code == 401:
                raise AuthenticationError(
                    "Authentication failed after refreshing the access token. "
                    "Please re-authenticate.",
                    status_code=401,
                )

        classify_response(response)
        return response

    async def _request(self, method: str, endpoint: str, **kwargs: Any) -> httpx.Response:
        if method != "GET":
            # One requestid per logical write; Intuit drops replays that reuse it
            kwargs["params"] = {"requestid": uuid4().hex, **(kwargs.get("params") or {})}
        extra_attempts = self.settings.api_retry_attempts if self.settings.enable_retry else 0
        retrying = api_retry_policy(
            extra_attempts, self.settings.api_retry_delay / 1000, sleep=self._sleep
        )
        return await retrying(self._send, method, endpoint, **kwargs)

    @staticmethod
    def _json(response: httpx.Response) -> dict[str, Any]:
        return response.json() if response.content else {}

    # ── Public API ──────────────────────────────────────────────────────

    async def get(self, endpoint: str, params: dict[str, Any] | None = None) -> dict[str, Any]:
        return self._json(await self._request("GET", endpoint, params=params))

    async def post(
        self, endpoint: str, data: Any, params: dict[str, Any] | None = None
    ) -> dict[str, Any]:
        return self._json(await self._request("POST", endpoint, params=params, json=data))

    async def put(self, endpoint: str, data: Any) -> dict[str, Any]:
        return self._json(await self._request("PUT", endpoint, json=data))

    async def delete(self, endpoint: str, params: dict[str, Any] | None = None) -> dict[str, Any]:
        return self._json(await self._request("DELETE", endpoint, params=params))

    async def query(self, query_string: str) -> dict[str, Any]:
        """Run a QBO SQL-like query, e.g. ``SELECT * FROM Invoice``."""
        logger.debug("QBO query: %s", query_string)
        return await self.get("/query", {"query": query_string})

    async def download_pdf(self, entity_type: str, entity_id: str) -> bytes:
        response = await self._request(
            "GET", f"/{entity_type.lower()}/{entity_id}/pdf", accept="application/pdf"
        )
        return response.content

    async def send_email(
        self, entity_type: str, entity_id: str, email: str | None = None
    ) -> dict[str, Any]:
        """Email a transaction. Without *email* QBO uses the address on file."""
        params = {"sendTo": email} if email else None
        return self._json(
            await self._request(
                "POST", f"/{entity_type.lower()}/{entity_id}/send", params=params
            )
        )

    async def get_company_info(self) -> dict[str, Any]:
        return await self.get(f"/companyinfo/{self.settings.qbo_company_id}")

    def get_api_limits(self) -> ApiLimits:
        """Report this client's own call volume against the per-minute limit.

        QBO exposes no quota endpoint, so usage is counted locally over the
        trailing minute.
        """
        now = self._clock()
        self._prune_usage(now)
        limit = self.settings.api_rate_limit_per_minute
        oldest = self._request_times[0] if self._request_times else now
        reset = datetime.fromtimestamp(oldest + USAGE_WINDOW_SECONDS, tz=UTC)
        return ApiLimits(
            calls_limit=limit,
            calls_remaining=max(limit - len(self._request_times), 0),
            reset_time=reset.isoformat(),
        )
