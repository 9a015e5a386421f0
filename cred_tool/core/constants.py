"""
Shared Constants

Centralized constants for the GitHub API contract and pipeline defaults.
"""

from typing import Dict

# GitHub REST API
GITHUB_API_URL: str = "https://api.github.com"
GITHUB_API_VERSION: str = "2022-11-28"
GITHUB_ACCEPT: str = "application/vnd.github+json"
USER_AGENT: str = "cred-tool"

GITHUB_HEADER_RETRY_AFTER: str = "retry-after"
GITHUB_HEADER_RATELIMIT_REMAINING: str = "x-ratelimit-remaining"
GITHUB_HEADER_RATELIMIT_RESET: str = "x-ratelimit-reset"

# Service names used for metrics and log messages
SERVICE_GITHUB_APP: str = "GitHub App API"
SERVICE_GITHUB_RUNNERS: str = "GitHub Runners API"

# GitHub rejects App JWTs whose exp is more than 10 minutes out.
JWT_ALGORITHM: str = "RS256"
JWT_MAX_TTL_SECONDS: int = 600
JWT_DEFAULT_TTL_SECONDS: int = 600
JWT_DEFAULT_CLOCK_SKEW_SECONDS: int = 60

# Encoded JIT configs carry no expiry of their own; GitHub drops unused
# JIT runners after an hour.
JIT_TOKEN_DEFAULT_TTL_SECONDS: int = 3600

DEFAULT_RUNNER_GROUP_ID: int = 1
DEFAULT_RUNNER_WORK_FOLDER: str = "_work"
RUNNER_NAME_MAX_LENGTH: int = 64

# Permissions requested for the installation token, per scope kind
INSTALLATION_PERMISSIONS: Dict[str, Dict[str, str]] = {
    "organization": {"organization_self_hosted_runners": "write"},
    "repository": {"administration": "write"},
}

# Retry defaults
DEFAULT_MAX_RETRIES: int = 3
DEFAULT_RETRY_BASE_DELAY: float = 1.0
DEFAULT_RETRY_MAX_DELAY: float = 30.0
DEFAULT_RETRY_JITTER: float = 0.5
DEFAULT_MAX_RETRY_AFTER_SECONDS: float = 120.0

# Timeouts (seconds)
DEFAULT_HTTP_TIMEOUT: float = 15.0
DEFAULT_KEY_READ_TIMEOUT: float = 5.0
DEFAULT_PIPELINE_TIMEOUT: float = 300.0

# Delivery
OUTPUT_STDOUT: str = "stdout"
OUTPUT_FILE_PREFIX: str = "file:"
OUTPUT_EXEC_PREFIX: str = "exec:"
DEFAULT_OUTPUT_FILE_MODE: int = 0o600
RUNNER_JITCONFIG_FLAG: str = "--jitconfig"
