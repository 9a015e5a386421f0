"""
Credential pipeline orchestration.

Runs Signer -> TokenExchanger -> RunnerTokenRequester -> CredentialDelivery
exactly once, tracks the state machine, and maps the outcome to an exit code.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import List, Optional

from cred_tool.core.errors import EXIT_OK, Cancelled, CredentialError
from cred_tool.core.metrics import pipeline_runs_total
from cred_tool.models.credentials import AppIdentity, RunnerRegistrationToken
from cred_tool.models.pipeline import PipelineState
from cred_tool.models.runner import RunnerSpec
from cred_tool.services.delivery import CredentialDelivery
from cred_tool.services.runner_tokens import RunnerTokenRequester
from cred_tool.services.signer import AssertionSigner
from cred_tool.services.token_exchange import TokenExchanger

logger = logging.getLogger(__name__)


@dataclass
class PipelineResult:
    state: PipelineState
    exit_code: int
    error: Optional[CredentialError] = None
    token: Optional[RunnerRegistrationToken] = None
    history: List[PipelineState] = field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return self.state == PipelineState.DONE


class Orchestrator:
    """
    Owns one run of the credential pipeline.

    States advance strictly IDLE -> SIGNING -> EXCHANGING -> REQUESTING_TOKEN
    -> DELIVERING -> DONE. Any CredentialError, or cancellation of the
    task running run(), moves to FAILED. Retries happen inside the stages
    and never change the state.
    """

    def __init__(
        self,
        identity: AppIdentity,
        runner_spec: RunnerSpec,
        signer: AssertionSigner,
        exchanger: TokenExchanger,
        requester: RunnerTokenRequester,
        delivery: CredentialDelivery,
        assertion_ttl: int,
    ):
        self.identity = identity
        self.runner_spec = runner_spec
        self.signer = signer
        self.exchanger = exchanger
        self.requester = requester
        self.delivery = delivery
        self.assertion_ttl = assertion_ttl

        self.state = PipelineState.IDLE
        self.history: List[PipelineState] = [PipelineState.IDLE]
        self.error: Optional[CredentialError] = None
        self._token: Optional[RunnerRegistrationToken] = None

    def _transition(self, state: PipelineState) -> None:
        if self.state.is_terminal:
            raise RuntimeError(f"No transition out of terminal state {self.state.value}")
        logger.info(f"Pipeline: {self.state.value} -> {state.value}")
        self.state = state
        self.history.append(state)

    def _fail(self, error: CredentialError) -> None:
        if error.stage is None:
            error.stage = self.state.value
        logger.error(f"Pipeline failed in {self.state.value}: {error.describe()}")
        self.error = error
        self._transition(PipelineState.FAILED)
        pipeline_runs_total.labels(outcome=error.kind).inc()

    @property
    def result(self) -> PipelineResult:
        if self.state == PipelineState.DONE:
            exit_code = EXIT_OK
        elif self.error is not None:
            exit_code = self.error.exit_code
        else:
            exit_code = Cancelled.exit_code
        return PipelineResult(
            state=self.state,
            exit_code=exit_code,
            error=self.error,
            token=self._token,
            history=list(self.history),
        )

    async def run(self) -> PipelineResult:
        if self.state != PipelineState.IDLE:
            raise RuntimeError(f"Pipeline already ran (state {self.state.value})")

        spec = self.runner_spec
        logger.info(
            f"Requesting JIT token for runner '{spec.name}' in {spec.scope} "
            f"(labels: {', '.join(spec.labels)})"
        )
        try:
            self._transition(PipelineState.SIGNING)
            assertion = await self.signer.sign(self.identity, self.assertion_ttl)

            self._transition(PipelineState.EXCHANGING)
            credential = await self.exchanger.exchange(assertion, spec.scope)

            self._transition(PipelineState.REQUESTING_TOKEN)
            token = await self.requester.request_jit_token(credential, spec)

            self._transition(PipelineState.DELIVERING)
            await self.delivery.deliver(token)
            self._token = token

            self._transition(PipelineState.DONE)
            pipeline_runs_total.labels(outcome="success").inc()
        except CredentialError as e:
            self._fail(e)
        except asyncio.CancelledError:
            self._fail(Cancelled(f"Run cancelled while {self.state.value}"))
            raise

        return self.result
