"""
Error Taxonomy

Every failure the pipeline can surface is a CredentialError subclass.
Each kind carries its own process exit code so calling automation can
tell retryable failures from ones that need an operator.
"""

import re
from typing import Optional

# Anything that looks like a bearer value, JWT or PEM block.
_SECRET_PATTERNS = [
    re.compile(r"-----BEGIN [A-Z ]+-----.*?-----END [A-Z ]+-----", re.DOTALL),
    re.compile(r"\beyJ[A-Za-z0-9_-]+\.[A-Za-z0-9_-]+\.[A-Za-z0-9_-]*"),
    re.compile(r"\b(?:ghs|ghp|gho|ghu|ghr|github_pat)_[A-Za-z0-9_]+"),
    re.compile(r"(?i)\bbearer\s+[A-Za-z0-9._~+/=-]{8,}"),
]

EXIT_OK = 0
EXIT_CONFIGURATION = 2


def redact(text: str) -> str:
    """Strip anything resembling key material or a bearer value from text."""
    for pattern in _SECRET_PATTERNS:
        text = pattern.sub("[REDACTED]", text)
    return text


class CredentialError(Exception):
    """Base exception for credential pipeline failures."""

    exit_code: int = 1
    retryable: bool = False

    def __init__(
        self,
        message: str,
        stage: Optional[str] = None,
        status_code: Optional[int] = None,
    ):
        self.message = redact(message)
        self.stage = stage
        self.status_code = status_code
        super().__init__(self.message)

    @property
    def kind(self) -> str:
        return type(self).__name__

    def describe(self) -> str:
        """Human-readable one-line summary for operators."""
        prefix = f"[{self.stage}] " if self.stage else ""
        suffix = f" (HTTP {self.status_code})" if self.status_code else ""
        return f"{prefix}{self.kind}: {self.message}{suffix}"


class ConfigurationError(CredentialError):
    """Settings, CLI arguments or runner spec are invalid."""

    exit_code = EXIT_CONFIGURATION


class KeyUnavailable(CredentialError):
    """The App private key cannot be read or decoded."""

    exit_code = 3


class SigningFailure(CredentialError):
    """The cryptographic signing operation failed."""

    exit_code = 4


class AuthenticationRejected(CredentialError):
    """The platform rejected the App assertion (invalid, expired, wrong audience)."""

    exit_code = 5


class ScopeInsufficient(CredentialError):
    """The credential lacks rights for the requested organization or repository."""

    exit_code = 6


class RunnerNameConflict(CredentialError):
    """A runner with the requested name is already registered."""

    exit_code = 7


class RateLimited(CredentialError):
    """The platform asked us to slow down."""

    exit_code = 8
    retryable = True

    def __init__(
        self,
        message: str,
        stage: Optional[str] = None,
        status_code: Optional[int] = None,
        retry_after: Optional[float] = None,
    ):
        super().__init__(message, stage=stage, status_code=status_code)
        self.retry_after = retry_after


class TransportFailure(CredentialError):
    """Network error, timeout or server-side failure."""

    exit_code = 9
    retryable = True


class DeliveryFailure(CredentialError):
    """The token could not be written to its destination."""

    exit_code = 10


class UnexpectedResponse(CredentialError):
    """The platform answered with something we cannot interpret."""

    exit_code = 11


class Cancelled(CredentialError):
    """The run was interrupted by a signal or the overall deadline."""

    exit_code = 130
