import logging
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Any, Dict, Optional

from pydantic import SecretStr, ValidationError

from cred_tool.core import ensure_utc
from cred_tool.core.constants import INSTALLATION_PERMISSIONS, SERVICE_GITHUB_APP
from cred_tool.core.errors import (
    AuthenticationRejected,
    ScopeInsufficient,
    UnexpectedResponse,
)
from cred_tool.core.http_utils import InstrumentedAsyncClient, response_message
from cred_tool.core.retry import Clock, RetryPolicy
from cred_tool.models.credentials import ScopedAccessCredential, SignedAssertion, clamp_expiry
from cred_tool.models.github_api import InstallationResponse, InstallationTokenResponse
from cred_tool.models.pipeline import PipelineState
from cred_tool.models.runner import RunnerScope, ScopeKind
from cred_tool.services.github import GitHubAPI

if TYPE_CHECKING:
    from cred_tool.core.config import Settings

logger = logging.getLogger(__name__)

_STAGE = PipelineState.EXCHANGING.value


class TokenExchanger(ABC):
    @abstractmethod
    async def exchange(self, assertion: SignedAssertion, scope: RunnerScope) -> ScopedAccessCredential:
        """
        Trade a signed App assertion for an installation access credential.
        :param assertion: Fresh assertion from the signer, consumed once
        :param scope: Organization or repository the credential must cover
        :return: ScopedAccessCredential with an expiry in the future
        """
        pass


class GitHubTokenExchanger(GitHubAPI, TokenExchanger):
    """
    Exchanges the App JWT for an installation access token.

    When no installation id is configured it is looked up from the scope
    (GET /orgs/{org}/installation or /repos/{owner}/{repo}/installation).
    The token is requested with only the permissions runner registration
    needs for that scope.
    """

    service_name = SERVICE_GITHUB_APP

    def __init__(
        self,
        api_url: str,
        retry: RetryPolicy,
        installation_id: Optional[int] = None,
        timeout: float = 15.0,
        clock: Optional[Clock] = None,
        **client_kwargs: Any,
    ):
        super().__init__(api_url, retry, timeout=timeout, clock=clock, **client_kwargs)
        self.installation_id = installation_id

    @classmethod
    def from_settings(
        cls, settings: "Settings", retry: RetryPolicy, **client_kwargs: Any
    ) -> "GitHubTokenExchanger":
        return cls(
            settings.api_url,
            retry,
            installation_id=settings.GITHUB_INSTALLATION_ID,
            timeout=settings.HTTP_TIMEOUT_SECONDS,
            **client_kwargs,
        )

    def _check_assertion(self, assertion: SignedAssertion) -> None:
        if assertion.is_expired(self.clock.now()):
            raise AuthenticationRejected(
                f"App assertion for issuer {assertion.issuer} expired at "
                f"{self._timestamp(assertion.expires_at)}",
                stage=_STAGE,
            )

    async def exchange(self, assertion: SignedAssertion, scope: RunnerScope) -> ScopedAccessCredential:
        self._check_assertion(assertion)

        async with self._api_client() as client:
            installation_id = self.installation_id
            if installation_id is None:
                installation_id = await self.retry.run(
                    lambda: self._discover_installation(client, assertion, scope), _STAGE
                )
            return await self.retry.run(
                lambda: self._create_access_token(client, assertion, scope, installation_id), _STAGE
            )

    async def _discover_installation(
        self, client: InstrumentedAsyncClient, assertion: SignedAssertion, scope: RunnerScope
    ) -> int:
        self._check_assertion(assertion)
        operation = f"installation lookup for {scope}"

        response = await client.get(
            f"{self.api_url}{scope.api_path}/installation",
            _STAGE,
            headers=self._get_auth_headers(assertion.token),
        )
        self._raise_for_transient(response, _STAGE, operation)

        if response.status_code == 401:
            raise AuthenticationRejected(
                f"GitHub rejected the App assertion: {response_message(response)}",
                stage=_STAGE,
                status_code=401,
            )
        if response.status_code == 404:
            raise ScopeInsufficient(
                f"App {assertion.issuer} is not installed on {scope}",
                stage=_STAGE,
                status_code=404,
            )
        if response.status_code != 200:
            raise UnexpectedResponse(
                f"Unexpected response to {operation}: {response_message(response)}",
                stage=_STAGE,
                status_code=response.status_code,
            )

        try:
            installation = InstallationResponse.model_validate(self._parse_json(response))
        except ValidationError:
            raise UnexpectedResponse(f"Malformed response to {operation}", stage=_STAGE) from None

        logger.info(f"Discovered installation {installation.id} for {scope}")
        return installation.id

    def _token_request_body(self, scope: RunnerScope) -> Dict[str, Any]:
        body: Dict[str, Any] = {"permissions": dict(INSTALLATION_PERMISSIONS[scope.kind.value])}
        if scope.kind == ScopeKind.REPOSITORY:
            body["repositories"] = [scope.repository]
        return body

    async def _create_access_token(
        self,
        client: InstrumentedAsyncClient,
        assertion: SignedAssertion,
        scope: RunnerScope,
        installation_id: int,
    ) -> ScopedAccessCredential:
        self._check_assertion(assertion)
        operation = f"access token request for installation {installation_id}"

        response = await client.post(
            f"{self.api_url}/app/installations/{installation_id}/access_tokens",
            _STAGE,
            headers=self._get_auth_headers(assertion.token),
            json=self._token_request_body(scope),
        )
        self._raise_for_transient(response, _STAGE, operation)

        if response.status_code == 401:
            raise AuthenticationRejected(
                f"GitHub rejected the App assertion: {response_message(response)}",
                stage=_STAGE,
                status_code=401,
            )
        if response.status_code in (403, 404, 422):
            raise ScopeInsufficient(
                f"Installation {installation_id} cannot grant runner administration on "
                f"{scope}: {response_message(response)}",
                stage=_STAGE,
                status_code=response.status_code,
            )
        if response.status_code not in (200, 201):
            raise UnexpectedResponse(
                f"Unexpected response to {operation}: {response_message(response)}",
                stage=_STAGE,
                status_code=response.status_code,
            )

        try:
            data = InstallationTokenResponse.model_validate(self._parse_json(response))
        except ValidationError:
            raise UnexpectedResponse(
                f"Response to {operation} is missing a token or expiry", stage=_STAGE
            ) from None

        now = self.clock.now()
        expires_at = ensure_utc(data.expires_at)
        if expires_at <= now:
            raise UnexpectedResponse(
                f"Installation token from {operation} is already expired "
                f"({self._timestamp(expires_at)})",
                stage=_STAGE,
            )

        logger.info(
            f"Obtained installation token for {scope} "
            f"(installation {installation_id}, expires {self._timestamp(expires_at)})"
        )
        return ScopedAccessCredential(
            token=SecretStr(data.token),
            expires_at=clamp_expiry(expires_at, assertion.expires_at),
            installation_id=installation_id,
            scope=scope,
            permissions=data.permissions,
        )
