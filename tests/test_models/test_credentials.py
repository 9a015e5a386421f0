"""Tests for credential records: secrecy, expiry and clamping."""

from datetime import datetime, timedelta, timezone

import pytest
from pydantic import SecretStr, ValidationError

from cred_tool.models.credentials import (
    AppIdentity,
    RunnerRegistrationToken,
    ScopedAccessCredential,
    SignedAssertion,
    clamp_expiry,
)
from cred_tool.models.github_api import InstallationTokenResponse, JitConfigResponse

NOW = datetime(2024, 5, 1, 12, 0, 0, tzinfo=timezone.utc)


class TestClampExpiry:
    def test_keeps_earlier_child(self):
        child = NOW + timedelta(minutes=5)
        assert clamp_expiry(child, NOW + timedelta(minutes=10)) == child

    def test_clamps_to_parent(self):
        parent = NOW + timedelta(minutes=10)
        assert clamp_expiry(NOW + timedelta(hours=1), parent) == parent


class TestAppIdentity:
    def test_strips_values(self):
        identity = AppIdentity(key_path=" /etc/app.pem ", issuer=" 379559 ")
        assert identity.key_path == "/etc/app.pem"
        assert identity.issuer == "379559"
        assert identity.audience is None

    @pytest.mark.parametrize("field", ["key_path", "issuer"])
    def test_rejects_blank(self, field):
        values = {"key_path": "/etc/app.pem", "issuer": "379559"}
        values[field] = "  "
        with pytest.raises(ValidationError):
            AppIdentity(**values)


class TestSecrecy:
    def test_assertion_repr_hides_token(self):
        assertion = SignedAssertion(
            token=SecretStr("eyJhbGciOi.eyJpc3Mi.c2ln"),
            issuer="379559",
            issued_at=NOW,
            expires_at=NOW + timedelta(minutes=10),
            nonce="abc",
        )
        assert "eyJhbGciOi" not in repr(assertion)
        assert "eyJhbGciOi" not in str(assertion)

    def test_runner_token_repr_hides_value(self):
        token = RunnerRegistrationToken(
            value=SecretStr("jit-secret-value"),
            expires_at=NOW,
            runner_name="fpga-runner-07",
        )
        assert "jit-secret-value" not in repr(token)
        assert token.value.get_secret_value() == "jit-secret-value"


class TestExpiry:
    def test_credential_expires_at_boundary(self, org_scope):
        credential = ScopedAccessCredential(
            token=SecretStr("ghs_x"),
            expires_at=NOW,
            installation_id=1,
            scope=org_scope,
        )
        assert not credential.is_expired(NOW - timedelta(seconds=1))
        assert credential.is_expired(NOW)


class TestGitHubResponses:
    def test_installation_token_parses_z_suffix(self):
        data = InstallationTokenResponse.model_validate(
            {"token": "ghs_abc", "expires_at": "2024-05-01T13:00:00Z", "unused": True}
        )
        assert data.expires_at == NOW + timedelta(hours=1)

    def test_installation_token_requires_token(self):
        with pytest.raises(ValidationError):
            InstallationTokenResponse.model_validate({"token": "", "expires_at": "2024-05-01T13:00:00Z"})

    def test_jit_config_rejects_blank(self):
        with pytest.raises(ValidationError):
            JitConfigResponse.model_validate(
                {"runner": {"id": 1, "name": "r1"}, "encoded_jit_config": "   "}
            )
