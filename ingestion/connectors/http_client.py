"""
Resilient HTTP client shared by source connectors and enrichers.

This module provides:
- Exponential backoff retry logic for transient failures
- Circuit breaker pattern to prevent cascading failures
- Rate limiting protection (HTTP 429 with Retry-After)
- Timeout handling with configurable limits
"""

import httpx
import asyncio
from typing import Dict, Any, Optional
from datetime import datetime, timedelta
from core.config import settings
from core.exceptions import (
    SourceUnavailableError,
    RateLimitError,
    AuthenticationError,
)
import logging

logger = logging.getLogger(__name__)


class ResilientHTTPClient:
    """
    GET requests with retries, backoff and a circuit breaker.

    Every failure surfaces as SourceUnavailableError (or a subclass) carrying
    the source name and URL in its context.

    Attributes:
        max_retries: Maximum number of attempts (default: settings.MAX_RETRIES)
        retry_delay: Initial retry delay in seconds (default: 1.0)
        timeout: Request timeout in seconds (default: settings.REQUEST_TIMEOUT)
        circuit_breaker_threshold: Failures before circuit opens (default: 5)
        circuit_breaker_timeout: Seconds before circuit reset (default: 60)
    """

    def __init__(
        self,
        source_name: str,
        headers: Optional[Dict[str, str]] = None,
        max_retries: Optional[int] = None,
        retry_delay: float = 1.0,
        timeout: Optional[float] = None,
        circuit_breaker_threshold: int = 5,
        circuit_breaker_timeout: int = 60,
        client: Optional[httpx.AsyncClient] = None
    ):
        self.source_name = source_name
        self.headers = headers or {}
        self.max_retries = max_retries or settings.MAX_RETRIES
        self.retry_delay = retry_delay
        self.timeout = timeout or settings.REQUEST_TIMEOUT
        self._client = client

        # Circuit breaker state
        self._circuit_breaker_failures = 0
        self._circuit_breaker_threshold = circuit_breaker_threshold
        self._circuit_breaker_open_until: Optional[datetime] = None
        self._circuit_breaker_timeout = circuit_breaker_timeout

    async def __aenter__(self) -> "ResilientHTTPClient":
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout, headers=self.headers)
            self._owns_client = True
        else:
            self._owns_client = False
        return self

    async def __aexit__(self, *exc_info) -> None:
        if self._client is not None and getattr(self, "_owns_client", False):
            await self._client.aclose()
            self._client = None

    def _is_circuit_open(self) -> bool:
        """Check if circuit breaker is open."""
        if self._circuit_breaker_open_until is None:
            return False

        if datetime.utcnow() >= self._circuit_breaker_open_until:
            logger.info(f"Circuit breaker reset for {self.source_name}")
            self._circuit_breaker_failures = 0
            self._circuit_breaker_open_until = None
            return False

        return True

    def _record_failure(self):
        """Record a failure and potentially open circuit breaker."""
        self._circuit_breaker_failures += 1

        if self._circuit_breaker_failures >= self._circuit_breaker_threshold:
            self._circuit_breaker_open_until = datetime.utcnow() + timedelta(
                seconds=self._circuit_breaker_timeout
            )
            logger.warning(
                f"Circuit breaker opened for {self.source_name}. "
                f"Will retry after {self._circuit_breaker_timeout} seconds."
            )

    def _record_success(self):
        """Record a successful request."""
        self._circuit_breaker_failures = 0
        self._circuit_breaker_open_until = None

    async def get_json(
        self,
        url: str,
        params: Optional[Dict[str, Any]] = None,
        context: Optional[Dict[str, Any]] = None
    ) -> Any:
        """
        GET a URL and decode its JSON body.

        Args:
            url: Request URL
            params: Query parameters
            context: Extra error context (city, entity type...)

        Raises:
            SourceUnavailableError: After retries are exhausted or on a
                non-retryable response
        """
        response = await self.get(url, params=params, context=context)
        try:
            return response.json()
        except ValueError as e:
            raise SourceUnavailableError(
                "Failed to parse JSON response",
                context={
                    **(context or {}),
                    "url": url,
                    "source": self.source_name,
                    "response_body": response.text[:500]
                },
                original_exception=e
            )

    async def get(
        self,
        url: str,
        params: Optional[Dict[str, Any]] = None,
        context: Optional[Dict[str, Any]] = None
    ) -> httpx.Response:
        """Make a GET request with retry logic and exponential backoff."""
        base_context = {**(context or {}), "url": url, "source": self.source_name}

        if self._is_circuit_open():
            raise SourceUnavailableError(
                f"Circuit breaker is open for {self.source_name}",
                context={
                    **base_context,
                    "open_until": self._circuit_breaker_open_until.isoformat()
                }
            )

        if self._client is None:
            async with self:
                return await self.get(url, params=params, context=context)

        for attempt in range(self.max_retries):
            is_last = attempt == self.max_retries - 1
            delay = self.retry_delay * (2 ** attempt)
            try:
                logger.debug(f"Request attempt {attempt + 1}/{self.max_retries} to {url}")
                response = await self._client.get(url, params=params, timeout=self.timeout)

            except httpx.TimeoutException as e:
                if not is_last:
                    logger.warning(f"Request timeout. Retrying in {delay} seconds")
                    await asyncio.sleep(delay)
                    continue
                self._record_failure()
                raise SourceUnavailableError(
                    f"Request timeout after {self.max_retries} retries",
                    context={**base_context, "timeout": self.timeout, "retry_count": attempt + 1},
                    original_exception=e
                )

            except httpx.TransportError as e:
                if not is_last:
                    logger.warning(f"Network error. Retrying in {delay} seconds")
                    await asyncio.sleep(delay)
                    continue
                self._record_failure()
                raise SourceUnavailableError(
                    f"Network error after {self.max_retries} retries",
                    context={**base_context, "retry_count": attempt + 1},
                    original_exception=e
                )

            if response.status_code in (401, 403):
                self._record_failure()
                raise AuthenticationError(
                    f"Authentication failed for {url}",
                    context={**base_context, "status_code": response.status_code}
                )

            if response.status_code == 429:
                retry_after = _retry_after(response, delay)
                logger.warning(f"Rate limited. Retrying after {retry_after} seconds")
                if not is_last:
                    await asyncio.sleep(retry_after)
                    continue
                self._record_failure()
                raise RateLimitError(
                    f"Rate limit exceeded for {url}",
                    context={**base_context, "status_code": 429, "retry_count": attempt + 1},
                    retry_after=int(retry_after)
                )

            if response.status_code >= 500:
                if not is_last:
                    logger.warning(
                        f"Server error {response.status_code}. "
                        f"Retrying in {delay} seconds (attempt {attempt + 1}/{self.max_retries})"
                    )
                    await asyncio.sleep(delay)
                    continue
                self._record_failure()
                raise SourceUnavailableError(
                    f"Server error after {self.max_retries} retries",
                    context={
                        **base_context,
                        "status_code": response.status_code,
                        "retry_count": attempt + 1,
                        "response_body": response.text[:500]
                    }
                )

            if response.status_code >= 400:
                self._record_failure()
                raise SourceUnavailableError(
                    f"Request rejected with {response.status_code}",
                    context={**base_context, "status_code": response.status_code}
                )

            self._record_success()
            return response

        raise SourceUnavailableError("Max retries exceeded", context=base_context)


def _retry_after(response: httpx.Response, default: float) -> float:
    try:
        return float(response.headers.get("Retry-After", default))
    except (TypeError, ValueError):
        return default
