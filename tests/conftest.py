"""
Shared test fixtures and configuration.

CRED_TOOL_* variables from the developer's shell are removed BEFORE any
cred_tool imports so Settings only sees what a test sets.
"""

import os
import sys

# Ensure the cred_tool package is importable
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

for _name in [n for n in os.environ if n.startswith("CRED_TOOL_")]:
    del os.environ[_name]

import pytest  # noqa: E402
from cryptography.hazmat.primitives import serialization  # noqa: E402
from cryptography.hazmat.primitives.asymmetric import rsa  # noqa: E402

from cred_tool.core.config import load_settings  # noqa: E402
from cred_tool.models.credentials import AppIdentity  # noqa: E402
from cred_tool.models.runner import RunnerScope, RunnerSpec  # noqa: E402
from tests.mocks.clock import FakeClock  # noqa: E402
from tests.mocks.github import API_URL, GitHubStub  # noqa: E402


@pytest.fixture(scope="session")
def rsa_key_pair():
    """(private PEM, public PEM) for a throwaway 2048-bit App key."""
    key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    private_pem = key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.TraditionalOpenSSL,
        encryption_algorithm=serialization.NoEncryption(),
    ).decode()
    public_pem = (
        key.public_key()
        .public_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PublicFormat.SubjectPublicKeyInfo,
        )
        .decode()
    )
    return private_pem, public_pem


@pytest.fixture
def private_key_pem(rsa_key_pair):
    return rsa_key_pair[0]


@pytest.fixture
def public_key_pem(rsa_key_pair):
    return rsa_key_pair[1]


@pytest.fixture
def key_file(tmp_path, private_key_pem):
    path = tmp_path / "app-key.pem"
    path.write_text(private_key_pem)
    path.chmod(0o600)
    return str(path)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def identity(key_file):
    return AppIdentity(key_path=key_file, issuer="app-123")


@pytest.fixture
def org_scope():
    return RunnerScope.parse("org/caliptra-sw")


@pytest.fixture
def runner_spec(org_scope):
    return RunnerSpec(name="fpga-runner-07", labels=["fpga", "caliptra"], scope=org_scope)


@pytest.fixture
def github_stub(clock):
    return GitHubStub(clock)


@pytest.fixture
def settings(key_file):
    """Settings pointing at the stubbed API, with fast retries."""
    return load_settings(
        GITHUB_API_URL=API_URL,
        GITHUB_APP_ID="app-123",
        KEY_PATH=key_file,
        RUNNER_SCOPE="org/caliptra-sw",
        RETRY_BASE_DELAY=1.0,
        RETRY_MAX_DELAY=8.0,
        RETRY_JITTER=0.0,
    )
