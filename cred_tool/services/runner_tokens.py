import logging
from abc import ABC, abstractmethod
from datetime import timedelta
from typing import TYPE_CHECKING, Any, Dict, Optional

from pydantic import SecretStr, ValidationError

from cred_tool.core.constants import JIT_TOKEN_DEFAULT_TTL_SECONDS, SERVICE_GITHUB_RUNNERS
from cred_tool.core.errors import (
    AuthenticationRejected,
    RunnerNameConflict,
    ScopeInsufficient,
    UnexpectedResponse,
)
from cred_tool.core.http_utils import InstrumentedAsyncClient, response_message
from cred_tool.core.retry import Clock, RetryPolicy
from cred_tool.models.credentials import RunnerRegistrationToken, ScopedAccessCredential, clamp_expiry
from cred_tool.models.github_api import JitConfigResponse
from cred_tool.models.pipeline import PipelineState
from cred_tool.models.runner import RunnerSpec
from cred_tool.services.github import GitHubAPI

if TYPE_CHECKING:
    from cred_tool.core.config import Settings

logger = logging.getLogger(__name__)

_STAGE = PipelineState.REQUESTING_TOKEN.value


class RunnerTokenRequester(ABC):
    @abstractmethod
    async def request_jit_token(
        self, credential: ScopedAccessCredential, spec: RunnerSpec
    ) -> RunnerRegistrationToken:
        """
        Ask the platform to allocate a runner and return its one-time JIT token.
        :param credential: Installation credential covering spec.scope
        :param spec: Runner name, labels and scope
        :return: A new RunnerRegistrationToken; never a cached one
        """
        pass


class GitHubRunnerTokenRequester(GitHubAPI, RunnerTokenRequester):
    """Calls generate-jitconfig for an organization or repository runner."""

    service_name = SERVICE_GITHUB_RUNNERS

    def __init__(
        self,
        api_url: str,
        retry: RetryPolicy,
        token_ttl: int = JIT_TOKEN_DEFAULT_TTL_SECONDS,
        timeout: float = 15.0,
        clock: Optional[Clock] = None,
        **client_kwargs: Any,
    ):
        super().__init__(api_url, retry, timeout=timeout, clock=clock, **client_kwargs)
        self.token_ttl = token_ttl

    @classmethod
    def from_settings(
        cls, settings: "Settings", retry: RetryPolicy, **client_kwargs: Any
    ) -> "GitHubRunnerTokenRequester":
        return cls(
            settings.api_url,
            retry,
            token_ttl=settings.JIT_TOKEN_TTL_SECONDS,
            timeout=settings.HTTP_TIMEOUT_SECONDS,
            **client_kwargs,
        )

    async def request_jit_token(
        self, credential: ScopedAccessCredential, spec: RunnerSpec
    ) -> RunnerRegistrationToken:
        if credential.scope != spec.scope:
            raise ScopeInsufficient(
                f"Access credential covers {credential.scope}, runner wants {spec.scope}",
                stage=_STAGE,
            )

        async with self._api_client() as client:
            return await self.retry.run(lambda: self._generate_jitconfig(client, credential, spec), _STAGE)

    def _request_body(self, spec: RunnerSpec) -> Dict[str, Any]:
        return {
            "name": spec.name,
            "runner_group_id": spec.runner_group_id,
            "labels": list(spec.labels),
            "work_folder": spec.work_folder,
        }

    async def _generate_jitconfig(
        self,
        client: InstrumentedAsyncClient,
        credential: ScopedAccessCredential,
        spec: RunnerSpec,
    ) -> RunnerRegistrationToken:
        if credential.is_expired(self.clock.now()):
            raise AuthenticationRejected(
                f"Access credential for {credential.scope} expired at "
                f"{self._timestamp(credential.expires_at)}",
                stage=_STAGE,
            )
        operation = f"JIT config request for runner '{spec.name}'"

        response = await client.post(
            f"{self.api_url}{spec.scope.api_path}/actions/runners/generate-jitconfig",
            _STAGE,
            headers=self._get_auth_headers(credential.token),
            json=self._request_body(spec),
        )
        self._raise_for_transient(response, _STAGE, operation)

        message = response_message(response)
        if response.status_code == 409 or (
            response.status_code == 422 and "already exists" in message.lower()
        ):
            raise RunnerNameConflict(
                f"A runner named '{spec.name}' is already registered in {spec.scope}; "
                f"remove it or choose another name",
                stage=_STAGE,
                status_code=response.status_code,
            )
        if response.status_code == 401:
            raise AuthenticationRejected(
                f"GitHub rejected the installation token: {message}",
                stage=_STAGE,
                status_code=401,
            )
        if response.status_code in (403, 404):
            raise ScopeInsufficient(
                f"Installation {credential.installation_id} may not register runners in "
                f"{spec.scope}: {message}",
                stage=_STAGE,
                status_code=response.status_code,
            )
        if response.status_code not in (200, 201):
            raise UnexpectedResponse(
                f"Unexpected response to {operation}: {message}",
                stage=_STAGE,
                status_code=response.status_code,
            )

        try:
            data = JitConfigResponse.model_validate(self._parse_json(response))
        except ValidationError:
            raise UnexpectedResponse(
                f"Response to {operation} has no encoded_jit_config", stage=_STAGE
            ) from None

        now = self.clock.now()
        expires_at = clamp_expiry(now + timedelta(seconds=self.token_ttl), credential.expires_at)
        logger.info(
            f"Registered JIT runner '{data.runner.name}' (id {data.runner.id}) in {spec.scope}, "
            f"token valid until {self._timestamp(expires_at)}"
        )
        return RunnerRegistrationToken(
            value=SecretStr(data.encoded_jit_config),
            expires_at=expires_at,
            runner_name=data.runner.name,
            labels=list(spec.labels),
            runner_id=data.runner.id,
        )
