import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, AsyncIterator, Dict, Optional

import httpx
from pydantic import SecretStr

from cred_tool.core.constants import (
    GITHUB_ACCEPT,
    GITHUB_API_VERSION,
    GITHUB_HEADER_RATELIMIT_REMAINING,
    GITHUB_HEADER_RATELIMIT_RESET,
    GITHUB_HEADER_RETRY_AFTER,
    USER_AGENT,
)
from cred_tool.core.errors import RateLimited, TransportFailure
from cred_tool.core.http_utils import InstrumentedAsyncClient, parse_retry_after, response_message
from cred_tool.core.retry import Clock, RetryPolicy

logger = logging.getLogger(__name__)


class GitHubAPI:
    """
    Shared plumbing for the two GitHub endpoints the pipeline talks to.

    Supports both github.com and GitHub Enterprise Server (api_url
    https://{host}/api/v3). Extra keyword arguments go to httpx.AsyncClient,
    which is how tests inject a MockTransport.
    """

    service_name = "GitHub API"

    def __init__(
        self,
        api_url: str,
        retry: RetryPolicy,
        timeout: float = 15.0,
        clock: Optional[Clock] = None,
        **client_kwargs: Any,
    ):
        self.api_url = api_url.rstrip("/")
        self.retry = retry
        self.timeout = timeout
        self.clock = clock or retry.clock
        self._client_kwargs = client_kwargs

    @asynccontextmanager
    async def _api_client(self) -> AsyncIterator[InstrumentedAsyncClient]:
        async with InstrumentedAsyncClient(
            self.service_name, timeout=self.timeout, **self._client_kwargs
        ) as client:
            yield client

    def _get_auth_headers(self, bearer: SecretStr) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {bearer.get_secret_value()}",
            "Accept": GITHUB_ACCEPT,
            "X-GitHub-Api-Version": GITHUB_API_VERSION,
            "User-Agent": USER_AGENT,
        }

    def _retry_after(self, response: httpx.Response) -> Optional[float]:
        now = self.clock.now()
        retry_after = parse_retry_after(response.headers.get(GITHUB_HEADER_RETRY_AFTER), now)
        if retry_after is not None:
            return retry_after
        reset = response.headers.get(GITHUB_HEADER_RATELIMIT_RESET)
        if reset and reset.isdigit():
            return max(0.0, int(reset) - now.timestamp())
        return None

    def _is_rate_limited(self, response: httpx.Response) -> bool:
        if response.status_code == 429:
            return True
        if response.status_code != 403:
            return False
        # GitHub signals primary and secondary rate limits with 403 as well.
        if response.headers.get(GITHUB_HEADER_RATELIMIT_REMAINING) == "0":
            return True
        if GITHUB_HEADER_RETRY_AFTER in response.headers:
            return True
        return "rate limit" in response_message(response).lower()

    def _raise_for_transient(self, response: httpx.Response, stage: str, operation: str) -> None:
        """Raise the retryable error kinds: RateLimited and TransportFailure (5xx)."""
        if self._is_rate_limited(response):
            retry_after = self._retry_after(response)
            hint = f", retry after {retry_after:.0f}s" if retry_after is not None else ""
            raise RateLimited(
                f"GitHub rate limit hit during {operation}{hint}",
                stage=stage,
                status_code=response.status_code,
                retry_after=retry_after,
            )
        if response.status_code >= 500:
            raise TransportFailure(
                f"GitHub server error during {operation}: {response_message(response)}",
                stage=stage,
                status_code=response.status_code,
            )

    def _parse_json(self, response: httpx.Response) -> Any:
        try:
            return response.json()
        except ValueError:
            return None

    @staticmethod
    def _timestamp(dt: datetime) -> str:
        return dt.strftime("%Y-%m-%dT%H:%M:%SZ")
