"""
Pydantic models for the GitHub REST API responses cred-tool consumes.

These isolate the platform's schema from the rest of the pipeline.
Uses extra="ignore" to silently discard fields we don't use.
"""

from datetime import datetime
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class InstallationResponse(BaseModel):
    """GET /orgs/{org}/installation, GET /repos/{owner}/{repo}/installation"""

    model_config = ConfigDict(extra="ignore")

    id: int
    app_id: Optional[int] = None
    account: Optional[Dict[str, object]] = None


class InstallationTokenResponse(BaseModel):
    """POST /app/installations/{installation_id}/access_tokens"""

    model_config = ConfigDict(extra="ignore")

    token: str = Field(..., min_length=1)
    expires_at: datetime
    permissions: Dict[str, str] = Field(default_factory=dict)
    repository_selection: Optional[str] = None


class RunnerLabel(BaseModel):
    model_config = ConfigDict(extra="ignore")

    name: str
    type: Optional[str] = None


class Runner(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: int
    name: str
    os: Optional[str] = None
    status: Optional[str] = None
    busy: Optional[bool] = None
    labels: List[RunnerLabel] = Field(default_factory=list)


class JitConfigResponse(BaseModel):
    """POST /orgs/{org}/actions/runners/generate-jitconfig (and the repository variant)"""

    model_config = ConfigDict(extra="ignore")

    runner: Runner
    encoded_jit_config: str = Field(..., min_length=1)

    @field_validator("encoded_jit_config")
    @classmethod
    def not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("encoded_jit_config must not be blank")
        return v
