import re
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from cred_tool.core.constants import (
    DEFAULT_RUNNER_GROUP_ID,
    DEFAULT_RUNNER_WORK_FOLDER,
    RUNNER_NAME_MAX_LENGTH,
)

_NAME_RE = re.compile(r"^[A-Za-z0-9._-]+$")


class ScopeKind(str, Enum):
    ORGANIZATION = "organization"
    REPOSITORY = "repository"


class FpgaTarget(str, Enum):
    ZCU104 = "zcu104"
    ZCU104_NIGHTLY = "zcu104-nightly"
    VCK190 = "vck190"

    @property
    def board_type(self) -> str:
        if self is FpgaTarget.VCK190:
            return "vck190"
        return "caliptra-fpga"


class RunnerScope(BaseModel):
    """Organization or repository the runner registers with."""

    model_config = ConfigDict(frozen=True)

    kind: ScopeKind
    owner: str
    repository: Optional[str] = None

    @field_validator("owner", "repository")
    @classmethod
    def validate_name(cls, v: Optional[str]) -> Optional[str]:
        if v is not None and not _NAME_RE.match(v):
            raise ValueError(f"Invalid GitHub account or repository name: {v!r}")
        return v

    @model_validator(mode="after")
    def check_repository(self) -> "RunnerScope":
        if self.kind == ScopeKind.REPOSITORY and not self.repository:
            raise ValueError("Repository scope needs a repository name")
        if self.kind == ScopeKind.ORGANIZATION and self.repository:
            raise ValueError("Organization scope cannot name a repository")
        return self

    @classmethod
    def parse(cls, value: str) -> "RunnerScope":
        """
        Parse a scope string.

        Accepted forms:
            org/<org>               organization
            repo/<owner>/<name>     repository
            <owner>/<name>          repository
            <org>                   organization
        """
        parts = value.strip().split("/")
        expected = {"org": 2, "repo": 3}.get(parts[0])
        if expected and len(parts) > 1 and len(parts) != expected:
            raise ValueError(f"Cannot parse runner scope: {value!r}")
        if len(parts) == 2 and parts[0] == "org":
            return cls(kind=ScopeKind.ORGANIZATION, owner=parts[1])
        if len(parts) == 3 and parts[0] == "repo":
            return cls(kind=ScopeKind.REPOSITORY, owner=parts[1], repository=parts[2])
        if len(parts) == 2:
            return cls(kind=ScopeKind.REPOSITORY, owner=parts[0], repository=parts[1])
        if len(parts) == 1:
            return cls(kind=ScopeKind.ORGANIZATION, owner=parts[0])
        raise ValueError(f"Cannot parse runner scope: {value!r}")

    @property
    def api_path(self) -> str:
        """REST path prefix for this scope, e.g. /orgs/chipsalliance."""
        if self.kind == ScopeKind.ORGANIZATION:
            return f"/orgs/{self.owner}"
        return f"/repos/{self.owner}/{self.repository}"

    def __str__(self) -> str:
        if self.kind == ScopeKind.ORGANIZATION:
            return f"org/{self.owner}"
        return f"repo/{self.owner}/{self.repository}"


class RunnerSpec(BaseModel):
    """The runner we are asking a JIT token for."""

    model_config = ConfigDict(frozen=True)

    name: str = Field(..., description="Runner name, unique within the fleet")
    labels: List[str] = Field(..., description="Capability labels in order")
    scope: RunnerScope
    runner_group_id: int = Field(DEFAULT_RUNNER_GROUP_ID, ge=1)
    work_folder: str = DEFAULT_RUNNER_WORK_FOLDER

    @field_validator("name")
    @classmethod
    def validate_runner_name(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("Runner name must not be empty")
        if len(v) > RUNNER_NAME_MAX_LENGTH:
            raise ValueError(f"Runner name is longer than {RUNNER_NAME_MAX_LENGTH} characters")
        if not _NAME_RE.match(v):
            raise ValueError("Runner name may only contain letters, digits, '.', '_' and '-'")
        return v

    @field_validator("labels")
    @classmethod
    def normalize_labels(cls, v: List[str]) -> List[str]:
        seen: List[str] = []
        for label in v:
            label = label.strip()
            if not label:
                raise ValueError("Runner labels must not be empty")
            if label not in seen:
                seen.append(label)
        if not seen:
            raise ValueError("At least one runner label is required")
        return seen


def runner_labels(target: FpgaTarget, dry_run: bool = False) -> List[str]:
    """Labels CI workflows use to route jobs to this kind of board."""
    if target is FpgaTarget.ZCU104:
        return ["caliptra-fpga"]
    if target is FpgaTarget.ZCU104_NIGHTLY:
        return ["caliptra-fpga", "caliptra-fpga-nightly"]
    postfix = "-staging" if dry_run else ""
    return [f"vck190{postfix}"]


def runner_name(target: FpgaTarget, identifier: str, location: str) -> str:
    """
    Deterministic runner name: <board>-<location>-<identifier>.

    Stable per physical board; a registration left over from a crash
    surfaces as RunnerNameConflict.
    """
    return f"{target.board_type}-{location}-{identifier}"
