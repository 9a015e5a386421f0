from typing import Any, Dict, Optional

from pydantic import Field, ValidationError, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from cred_tool.core import constants
from cred_tool.core.errors import ConfigurationError

# App registrations known for each deployment stage of the Caliptra CI.
STAGE_PRESETS: Dict[str, Dict[str, Any]] = {
    "carl": {
        "GITHUB_APP_ID": "1160975",
        "GITHUB_INSTALLATION_ID": 61798278,
        "RUNNER_SCOPE": "org/clundin25-testorg",
    },
    # Staging has no App registration yet; everything must be passed explicitly.
    "staging": {},
    "prod": {
        "GITHUB_APP_ID": "379559",
        "GITHUB_INSTALLATION_ID": 40993215,
        "RUNNER_SCOPE": "org/chipsalliance",
    },
}


class Settings(BaseSettings):
    # GitHub App identity
    GITHUB_API_URL: str = constants.GITHUB_API_URL
    GITHUB_APP_ID: Optional[str] = None
    GITHUB_INSTALLATION_ID: Optional[int] = None
    KEY_PATH: Optional[str] = None
    JWT_AUDIENCE: Optional[str] = None
    JWT_TTL_SECONDS: int = constants.JWT_DEFAULT_TTL_SECONDS
    JWT_CLOCK_SKEW_SECONDS: int = constants.JWT_DEFAULT_CLOCK_SKEW_SECONDS

    # Runner registration
    RUNNER_SCOPE: Optional[str] = None
    RUNNER_GROUP_ID: int = constants.DEFAULT_RUNNER_GROUP_ID
    RUNNER_WORK_FOLDER: str = constants.DEFAULT_RUNNER_WORK_FOLDER
    JIT_TOKEN_TTL_SECONDS: int = constants.JIT_TOKEN_DEFAULT_TTL_SECONDS

    # Timeouts
    HTTP_TIMEOUT_SECONDS: float = constants.DEFAULT_HTTP_TIMEOUT
    KEY_READ_TIMEOUT_SECONDS: float = constants.DEFAULT_KEY_READ_TIMEOUT
    PIPELINE_TIMEOUT_SECONDS: float = constants.DEFAULT_PIPELINE_TIMEOUT

    # Retry Settings
    MAX_RETRIES: int = Field(constants.DEFAULT_MAX_RETRIES, ge=0, le=10)
    RETRY_BASE_DELAY: float = Field(constants.DEFAULT_RETRY_BASE_DELAY, gt=0)
    RETRY_MAX_DELAY: float = Field(constants.DEFAULT_RETRY_MAX_DELAY, gt=0)
    RETRY_JITTER: float = Field(constants.DEFAULT_RETRY_JITTER, ge=0, le=1)
    MAX_RETRY_AFTER_SECONDS: float = constants.DEFAULT_MAX_RETRY_AFTER_SECONDS

    # Delivery
    OUTPUT: str = constants.OUTPUT_STDOUT
    OUTPUT_FILE_MODE: int = constants.DEFAULT_OUTPUT_FILE_MODE

    # Observability
    LOG_LEVEL: str = "INFO"
    METRICS_TEXTFILE: Optional[str] = None

    model_config = SettingsConfigDict(
        case_sensitive=True,
        env_prefix="CRED_TOOL_",
        env_file=".env",
        extra="ignore",
    )

    @field_validator("JWT_TTL_SECONDS")
    @classmethod
    def validate_jwt_ttl(cls, v: int) -> int:
        if not 0 < v <= constants.JWT_MAX_TTL_SECONDS:
            raise ValueError(
                f"JWT TTL must be between 1 and {constants.JWT_MAX_TTL_SECONDS} seconds"
            )
        return v

    @field_validator("OUTPUT_FILE_MODE", mode="before")
    @classmethod
    def parse_file_mode(cls, v: Any) -> Any:
        # Modes are written the way chmod takes them: "600", "0600", "0o600"
        if isinstance(v, str):
            return int(v.removeprefix("0o"), 8)
        return v

    @field_validator("OUTPUT")
    @classmethod
    def validate_output(cls, v: str) -> str:
        if v == constants.OUTPUT_STDOUT:
            return v
        for prefix in (constants.OUTPUT_FILE_PREFIX, constants.OUTPUT_EXEC_PREFIX):
            if v.startswith(prefix) and v[len(prefix):].strip():
                return v
        raise ValueError("OUTPUT must be 'stdout', 'file:<path>' or 'exec:<runner command>'")

    @field_validator("LOG_LEVEL")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        level = v.upper()
        if level not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError(f"Unknown log level: {v}")
        return level

    @property
    def api_url(self) -> str:
        return self.GITHUB_API_URL.rstrip("/")

    def require(self, *names: str) -> None:
        """Raise ConfigurationError naming every listed setting that is unset."""
        missing = [name for name in names if getattr(self, name) in (None, "")]
        if missing:
            raise ConfigurationError(f"Missing required settings: {', '.join(missing)}")


def load_settings(stage: Optional[str] = None, **overrides: Any) -> Settings:
    """
    Build the Settings object for one run.

    Precedence, highest first: explicit overrides (CLI flags), the stage
    preset, CRED_TOOL_* environment variables / .env, defaults.
    Overrides that are None are ignored.
    """
    values: Dict[str, Any] = {}
    if stage is not None:
        try:
            values.update(STAGE_PRESETS[stage.lower()])
        except KeyError:
            raise ConfigurationError(
                f"Invalid stage: '{stage}'. Must be one of {', '.join(STAGE_PRESETS)}."
            ) from None
    values.update({k: v for k, v in overrides.items() if v is not None})

    try:
        return Settings(**values)
    except ValidationError as e:
        details = "; ".join(
            f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()
        )
        raise ConfigurationError(f"Invalid settings: {details}") from None
