"""
Credential pipeline services.

Capability interfaces for each stage, their GitHub-backed implementations,
and the orchestrator that sequences them.
"""

from cred_tool.services.delivery import (
    CredentialDelivery,
    ExecDelivery,
    FileDelivery,
    StdoutDelivery,
    delivery_from_settings,
    write_atomic,
)
from cred_tool.services.orchestrator import Orchestrator, PipelineResult
from cred_tool.services.runner_tokens import GitHubRunnerTokenRequester, RunnerTokenRequester
from cred_tool.services.signer import AssertionSigner, JoseSigner
from cred_tool.services.token_exchange import GitHubTokenExchanger, TokenExchanger

__all__ = [
    # Interfaces
    "AssertionSigner",
    "TokenExchanger",
    "RunnerTokenRequester",
    "CredentialDelivery",
    # Implementations
    "JoseSigner",
    "GitHubTokenExchanger",
    "GitHubRunnerTokenRequester",
    "StdoutDelivery",
    "FileDelivery",
    "ExecDelivery",
    "delivery_from_settings",
    "write_atomic",
    # Orchestration
    "Orchestrator",
    "PipelineResult",
]
