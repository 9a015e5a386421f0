"""Tests for the Orchestrator state machine and end-to-end pipeline runs."""

import asyncio
import io
import logging
from datetime import timedelta
from unittest.mock import AsyncMock

import pytest

from cred_tool.core.errors import KeyUnavailable, RunnerNameConflict, SigningFailure
from cred_tool.main import build_orchestrator, run_pipeline
from cred_tool.models.credentials import AppIdentity
from cred_tool.models.pipeline import PipelineState
from cred_tool.services.delivery import StdoutDelivery
from cred_tool.services.orchestrator import Orchestrator
from cred_tool.services.signer import JoseSigner
from tests.mocks.platform import InMemoryDelivery, StubPlatform, TokenAlreadyConsumed

HAPPY_PATH = [
    PipelineState.IDLE,
    PipelineState.SIGNING,
    PipelineState.EXCHANGING,
    PipelineState.REQUESTING_TOKEN,
    PipelineState.DELIVERING,
    PipelineState.DONE,
]


def make_orchestrator(identity, runner_spec, clock, platform, delivery=None, signer=None):
    return Orchestrator(
        identity=identity,
        runner_spec=runner_spec,
        signer=signer or JoseSigner(clock=clock),
        exchanger=platform.exchanger,
        requester=platform.requester,
        delivery=delivery or InMemoryDelivery(),
        assertion_ttl=600,
    )


class TestOrchestratorHappyPath:
    def test_runs_every_stage_in_order(self, identity, runner_spec, clock):
        platform = StubPlatform(clock)
        delivery = InMemoryDelivery()
        result = asyncio.run(make_orchestrator(identity, runner_spec, clock, platform, delivery).run())

        assert result.state == PipelineState.DONE
        assert result.exit_code == 0
        assert result.succeeded
        assert result.history == HAPPY_PATH
        assert delivery.delivered == [result.token.value.get_secret_value()]

    def test_delivered_token_redeems_once(self, identity, runner_spec, clock):
        platform = StubPlatform(clock)
        delivery = InMemoryDelivery()
        asyncio.run(make_orchestrator(identity, runner_spec, clock, platform, delivery).run())

        (value,) = delivery.delivered
        assert platform.redeem(value) == "fpga-runner-07"
        with pytest.raises(TokenAlreadyConsumed):
            platform.redeem(value)

    def test_two_runs_mint_distinct_tokens(self, identity, runner_spec, clock):
        platform = StubPlatform(clock)
        first = asyncio.run(make_orchestrator(identity, runner_spec, clock, platform).run())
        second = asyncio.run(make_orchestrator(identity, runner_spec, clock, platform).run())

        assert first.succeeded and second.succeeded
        assert first.token.value.get_secret_value() != second.token.value.get_secret_value()
        assert len(set(platform.assertions_seen)) == 2

    def test_expiry_chain_is_monotonic(self, identity, runner_spec, clock):
        platform = StubPlatform(clock)
        result = asyncio.run(make_orchestrator(identity, runner_spec, clock, platform).run())
        # Assertion expiry (iat back-dated 60s, ttl 600) bounds every later credential.
        assert result.token.expires_at == clock.now() + timedelta(seconds=540)

    def test_cannot_run_twice(self, identity, runner_spec, clock):
        orchestrator = make_orchestrator(identity, runner_spec, clock, StubPlatform(clock))
        asyncio.run(orchestrator.run())
        with pytest.raises(RuntimeError, match="already ran"):
            asyncio.run(orchestrator.run())


class TestOrchestratorFailures:
    def test_name_conflict(self, identity, runner_spec, clock, private_key_pem, caplog):
        caplog.set_level(logging.DEBUG)
        platform = StubPlatform(clock, active_runners=["fpga-runner-07"])
        delivery = InMemoryDelivery()
        result = asyncio.run(make_orchestrator(identity, runner_spec, clock, platform, delivery).run())

        assert result.state == PipelineState.FAILED
        assert result.exit_code == 7
        assert result.state.is_terminal
        assert isinstance(result.error, RunnerNameConflict)
        assert result.error.stage == "requesting_token"
        assert result.history[-2:] == [PipelineState.REQUESTING_TOKEN, PipelineState.FAILED]
        assert delivery.delivered == []
        assert result.token is None

        message = result.error.describe()
        for token in platform.access_tokens:
            assert token not in message
            assert token not in caplog.text
        assert private_key_pem.splitlines()[1] not in caplog.text

    def test_missing_key_stops_before_network(self, runner_spec, clock, tmp_path):
        identity = AppIdentity(key_path=str(tmp_path / "absent.pem"), issuer="app-123")
        platform = StubPlatform(clock)
        result = asyncio.run(make_orchestrator(identity, runner_spec, clock, platform).run())

        assert result.exit_code == KeyUnavailable.exit_code
        assert result.history == [PipelineState.IDLE, PipelineState.SIGNING, PipelineState.FAILED]
        assert platform.access_tokens == set()

    def test_scope_not_installed(self, identity, runner_spec, clock):
        platform = StubPlatform(clock, installed_scopes=["org/other"])
        result = asyncio.run(make_orchestrator(identity, runner_spec, clock, platform).run())
        assert result.exit_code == 6
        assert result.error.stage == "exchanging"

    def test_signer_error_keeps_stage(self, identity, runner_spec, clock):
        signer = AsyncMock()
        signer.sign.side_effect = SigningFailure("hsm offline")
        result = asyncio.run(make_orchestrator(identity, runner_spec, clock, StubPlatform(clock), signer=signer).run())
        assert result.exit_code == 4
        assert result.error.stage == "signing"

    def test_delivery_failure(self, identity, runner_spec, clock):
        stream = io.StringIO()
        stream.close()
        result = asyncio.run(
            make_orchestrator(identity, runner_spec, clock, StubPlatform(clock), StdoutDelivery(stream)).run()
        )
        assert result.exit_code == 10
        assert result.token is None


class TestCancellation:
    def test_deadline_cancels_in_flight_stage(self, identity, runner_spec, clock):
        async def hang(*args, **kwargs):
            await asyncio.sleep(60)

        platform = StubPlatform(clock)
        orchestrator = make_orchestrator(identity, runner_spec, clock, platform)
        orchestrator.exchanger = AsyncMock()
        orchestrator.exchanger.exchange.side_effect = hang

        result = asyncio.run(run_pipeline(orchestrator, timeout=0.05))

        assert result.state == PipelineState.FAILED
        assert result.exit_code == 130
        assert result.error.kind == "Cancelled"
        assert result.error.stage == "exchanging"

    def test_task_cancel(self, identity, runner_spec, clock):
        delivery = InMemoryDelivery()
        orchestrator = make_orchestrator(identity, runner_spec, clock, StubPlatform(clock), delivery)

        async def hang(*args, **kwargs):
            await asyncio.sleep(60)

        orchestrator.requester = AsyncMock()
        orchestrator.requester.request_jit_token.side_effect = hang

        async def go():
            task = asyncio.ensure_future(orchestrator.run())
            await asyncio.sleep(0.05)
            task.cancel()
            with pytest.raises(asyncio.CancelledError):
                await task

        asyncio.run(go())
        assert orchestrator.result.exit_code == 130
        assert orchestrator.state == PipelineState.FAILED
        assert delivery.delivered == []


class TestEndToEndWithGitHub:
    def test_full_pipeline_over_http(self, settings, identity, runner_spec, clock, github_stub):
        stream = io.StringIO()
        orchestrator = build_orchestrator(
            settings, identity, runner_spec, StdoutDelivery(stream), clock=clock, transport=github_stub.transport
        )
        result = asyncio.run(run_pipeline(orchestrator, timeout=30))

        assert result.exit_code == 0
        value = stream.getvalue().strip()
        assert github_stub.redeem(value) == "fpga-runner-07"
        assert [r.url.path for r in github_stub.requests] == [
            "/orgs/caliptra-sw/installation",
            "/app/installations/4242/access_tokens",
            "/orgs/caliptra-sw/actions/runners/generate-jitconfig",
        ]

    def test_conflict_over_http(self, settings, identity, runner_spec, clock, github_stub, caplog):
        caplog.set_level(logging.DEBUG)
        github_stub.active_runners.add("fpga-runner-07")
        stream = io.StringIO()
        orchestrator = build_orchestrator(
            settings, identity, runner_spec, StdoutDelivery(stream), clock=clock, transport=github_stub.transport
        )
        result = asyncio.run(run_pipeline(orchestrator, timeout=30))

        assert result.exit_code == 7
        assert stream.getvalue() == ""
        for token in github_stub.access_tokens:
            assert token not in caplog.text
            assert token not in result.error.describe()
        assert "eyJ" not in caplog.text
