"""
HTTP Utilities

Instrumented httpx client and the translation of httpx transport
exceptions into the pipeline's error taxonomy.
"""

import logging
import time
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Optional

import httpx

from cred_tool.core.errors import TransportFailure
from cred_tool.core.metrics import (
    external_api_duration_seconds,
    external_api_errors_total,
    external_api_requests_total,
)

logger = logging.getLogger(__name__)


class InstrumentedAsyncClient:
    """
    A wrapper around httpx.AsyncClient that records metrics and raises
    TransportFailure for timeouts and network errors.

    Usage:
        async with InstrumentedAsyncClient("GitHub App API", timeout=15.0) as client:
            response = await client.post(url, stage="exchange", json=body)
    """

    def __init__(
        self,
        service_name: str,
        timeout: float = 30.0,
        **kwargs,
    ):
        self.service_name = service_name
        self._client: Optional[httpx.AsyncClient] = None
        self._timeout = timeout
        self._kwargs = kwargs
        self._NOT_STARTED_MSG = "Client not started. Use 'async with' or call start()."

    async def start(self) -> None:
        """Start the underlying client."""
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self._timeout, **self._kwargs)

    async def close(self) -> None:
        """Close the underlying client."""
        if self._client:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> "InstrumentedAsyncClient":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    async def get(self, url: str, stage: str, **kwargs) -> httpx.Response:
        return await self.request("GET", url, stage, **kwargs)

    async def post(self, url: str, stage: str, **kwargs) -> httpx.Response:
        return await self.request("POST", url, stage, **kwargs)

    async def request(self, method: str, url: str, stage: str, **kwargs) -> httpx.Response:
        """Make an HTTP request with metrics; network-level failures become TransportFailure."""
        if self._client is None:
            raise RuntimeError(self._NOT_STARTED_MSG)

        start_time = time.time()
        external_api_requests_total.labels(service=self.service_name).inc()
        try:
            response = await self._client.request(method, url, **kwargs)
        except httpx.TimeoutException:
            external_api_errors_total.labels(service=self.service_name).inc()
            msg = f"Timeout during {method} {url} on {self.service_name}"
            logger.warning(msg)
            raise TransportFailure(msg, stage=stage) from None
        except httpx.TransportError as e:
            external_api_errors_total.labels(service=self.service_name).inc()
            msg = f"Connection error during {method} {url} on {self.service_name}: {e}"
            logger.warning(msg)
            raise TransportFailure(msg, stage=stage) from None

        external_api_duration_seconds.labels(service=self.service_name).observe(
            time.time() - start_time
        )
        if response.status_code >= 400:
            external_api_errors_total.labels(service=self.service_name).inc()
        return response


def parse_retry_after(value: Optional[str], now: datetime) -> Optional[float]:
    """
    Parse a Retry-After header: either delta-seconds or an HTTP-date.

    Returns:
        Seconds to wait (never negative), or None if absent or unparseable
    """
    if not value:
        return None
    value = value.strip()
    if value.isdigit():
        return float(value)
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        logger.debug(f"Ignoring unparseable Retry-After header: {value!r}")
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    return max(0.0, (when - now).total_seconds())


def response_message(response: httpx.Response) -> str:
    """Extract GitHub's error message from a response body, if any."""
    try:
        data = response.json()
    except ValueError:
        return response.reason_phrase or ""
    if isinstance(data, dict):
        return str(data.get("message") or response.reason_phrase or "")
    return response.reason_phrase or ""
