"""
Credential records passed between pipeline stages.

Secret values are SecretStr so they never show up in repr(), str() or
log output; call get_secret_value() only where the value leaves the process.
"""

from datetime import datetime
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, SecretStr, field_validator

from cred_tool.models.runner import RunnerScope


def clamp_expiry(expires_at: datetime, parent_expires_at: datetime) -> datetime:
    """A derived credential never outlives the credential that produced it."""
    return min(expires_at, parent_expires_at)


class AppIdentity(BaseModel):
    """GitHub App identity used to sign assertions."""

    model_config = ConfigDict(frozen=True)

    key_path: str = Field(..., description="Path to the App's PEM private key")
    issuer: str = Field(..., description="GitHub App id, used as the 'iss' claim")
    audience: Optional[str] = Field(None, description="Optional 'aud' claim")

    @field_validator("key_path", "issuer")
    @classmethod
    def not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("must not be empty")
        return v.strip()


class SignedAssertion(BaseModel):
    """RS256 JWT authenticating the App itself."""

    model_config = ConfigDict(frozen=True)

    token: SecretStr
    issuer: str
    audience: Optional[str] = None
    issued_at: datetime
    expires_at: datetime
    nonce: str

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at


class ScopedAccessCredential(BaseModel):
    """Installation access token limited to one organization or repository."""

    model_config = ConfigDict(frozen=True)

    token: SecretStr
    expires_at: datetime
    installation_id: int
    scope: RunnerScope
    permissions: Dict[str, str] = Field(default_factory=dict)

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at


class RunnerRegistrationToken(BaseModel):
    """One-time encoded JIT runner configuration."""

    model_config = ConfigDict(frozen=True)

    value: SecretStr
    expires_at: datetime
    runner_name: str
    labels: List[str] = Field(default_factory=list)
    runner_id: Optional[int] = None
