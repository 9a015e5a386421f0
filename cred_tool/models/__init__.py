from cred_tool.models.credentials import (
    AppIdentity,
    RunnerRegistrationToken,
    ScopedAccessCredential,
    SignedAssertion,
    clamp_expiry,
)
from cred_tool.models.pipeline import PipelineState
from cred_tool.models.runner import (
    FpgaTarget,
    RunnerScope,
    RunnerSpec,
    ScopeKind,
    runner_labels,
    runner_name,
)

__all__ = [
    "AppIdentity",
    "PipelineState",
    "SignedAssertion",
    "ScopedAccessCredential",
    "RunnerRegistrationToken",
    "clamp_expiry",
    "FpgaTarget",
    "RunnerScope",
    "RunnerSpec",
    "ScopeKind",
    "runner_labels",
    "runner_name",
]
