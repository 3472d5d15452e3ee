# src/gantry/core/config.py
"""
Configuration schema and loading for Gantry pipelines.

Uses Pydantic for validation and Dynaconf for multi-source loading.
Settings are frozen (immutable) after construction.

Example settings.yaml:

    pipeline:
      name: build
      timeout_seconds: 1800
      stage_timeout_seconds: 600
      environment:
        CI: "true"

    stages:
      - name: revision
        steps:
          - name: short-sha
            run: git rev-parse --short HEAD
            capture_as: GIT_REV
      - name: scan
        policy: tolerant
        credentials:
          - id: scanner-token
            variable: SCANNER_TOKEN
        steps:
          - run: scanner --token "$SCANNER_TOKEN" .

    post:
      always:
        - type: echo
          message: "{pipeline} finished: {result}"
      unstable:
        - type: archive
          pattern: "reports/**/*.xml"
          allow_empty: true
"""

import re
from pathlib import Path
from typing import Annotated, Any, Literal

import yaml
from pydantic import BaseModel, Field, field_validator, model_validator

# Valid POSIX environment variable names
_ENV_NAME_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


def _stringify_env(value: Any) -> Any:
    """YAML turns `CI: true` into a bool; env values are always strings."""
    if not isinstance(value, dict):
        return value
    result: dict[str, Any] = {}
    for key, item in value.items():
        if isinstance(item, bool):
            result[key] = "true" if item else "false"
        elif isinstance(item, int | float):
            result[key] = str(item)
        else:
            result[key] = item
    return result


def _check_env_keys(value: dict[str, str]) -> dict[str, str]:
    invalid = sorted(key for key in value if not _ENV_NAME_PATTERN.match(key))
    if invalid:
        raise ValueError(f"Invalid environment variable name(s): {invalid}")
    return value


class RetrySettings(BaseModel):
    """Stage retry behavior configuration."""

    model_config = {"frozen": True}

    max_attempts: int = Field(default=3, gt=0, description="Total attempts including the first")
    initial_delay_seconds: float = Field(default=1.0, gt=0, description="Initial backoff delay")
    max_delay_seconds: float = Field(default=60.0, gt=0, description="Maximum backoff delay")
    exponential_base: float = Field(default=2.0, gt=1.0, description="Exponential backoff base")
    jitter_seconds: float = Field(default=1.0, ge=0, description="Random jitter added to each delay")


class CredentialSettings(BaseModel):
    """Credential binding: secret store id -> stage env variable."""

    model_config = {"frozen": True}

    id: str = Field(min_length=1, description="Credential identifier in the secret store")
    variable: str = Field(description="Env variable the value is exposed as, for this stage only")

    @field_validator("variable")
    @classmethod
    def validate_variable(cls, v: str) -> str:
        if not _ENV_NAME_PATTERN.match(v):
            raise ValueError(f"'{v}' is not a valid environment variable name")
        return v


class StepSettings(BaseModel):
    """One external command."""

    model_config = {"frozen": True}

    name: str | None = Field(default=None, description="Step name (defaults to the command's first line)")
    run: str | list[str] = Field(description="Shell command string, or argv list run without a shell")
    success_exit_codes: list[int] = Field(
        default_factory=lambda: [0],
        min_length=1,
        description="Exit codes that count as a pass (e.g. [0, 1] for a scanner whose 1 means low severity)",
    )
    capture_as: str | None = Field(
        default=None,
        description="Env variable receiving the stripped stdout, visible to later steps and stages",
    )
    timeout_seconds: float | None = Field(default=None, gt=0, description="Per-step timeout")

    @field_validator("run")
    @classmethod
    def validate_run_not_empty(cls, v: str | list[str]) -> str | list[str]:
        if isinstance(v, str) and not v.strip():
            raise ValueError("run must not be empty")
        if isinstance(v, list) and not v:
            raise ValueError("run argv must not be empty")
        return v

    @field_validator("capture_as")
    @classmethod
    def validate_capture_as(cls, v: str | None) -> str | None:
        if v is not None and not _ENV_NAME_PATTERN.match(v):
            raise ValueError(f"capture_as '{v}' is not a valid environment variable name")
        return v


class StageSettings(BaseModel):
    """A named group of steps with one failure policy."""

    model_config = {"frozen": True}

    name: str = Field(min_length=1, description="Stage name (unique within the pipeline)")
    steps: list[StepSettings] = Field(min_length=1, description="Steps run in order")
    policy: Literal["strict", "tolerant"] = Field(
        default="strict",
        description="strict: failure aborts the run; tolerant: failure degrades and the run continues",
    )
    downgrade_to: Literal["degraded", "failed"] = Field(
        default="degraded",
        description="Outcome recorded for a tolerated failure",
    )
    timeout_seconds: float | None = Field(default=None, gt=0, description="Stage timeout")
    environment: dict[str, str] = Field(default_factory=dict, description="Stage-local env entries")
    credentials: list[CredentialSettings] = Field(default_factory=list, description="Stage-scoped credentials")
    retry: RetrySettings | None = Field(default=None, description="Optional stage retry policy")

    @field_validator("environment", mode="before")
    @classmethod
    def normalize_environment(cls, v: Any) -> Any:
        return _stringify_env(v)

    @field_validator("environment")
    @classmethod
    def validate_environment_keys(cls, v: dict[str, str]) -> dict[str, str]:
        return _check_env_keys(v)

    @model_validator(mode="after")
    def validate_unique_credential_variables(self) -> "StageSettings":
        variables = [binding.variable for binding in self.credentials]
        duplicates = sorted({name for name in variables if variables.count(name) > 1})
        if duplicates:
            raise ValueError(f"Stage '{self.name}' binds credential variable(s) more than once: {duplicates}")
        return self


class PipelineSettings(BaseModel):
    """Run-level pipeline settings."""

    model_config = {"frozen": True}

    name: str = Field(min_length=1, description="Pipeline name")
    timeout_seconds: float | None = Field(default=None, gt=0, description="Run timeout (whole pipeline)")
    stage_timeout_seconds: float | None = Field(
        default=None,
        gt=0,
        description="Default timeout for stages without their own",
    )
    environment: dict[str, str] = Field(default_factory=dict, description="Run-scoped env entries")

    @field_validator("environment", mode="before")
    @classmethod
    def normalize_environment(cls, v: Any) -> Any:
        return _stringify_env(v)

    @field_validator("environment")
    @classmethod
    def validate_environment_keys(cls, v: dict[str, str]) -> dict[str, str]:
        return _check_env_keys(v)


class AgentSettings(BaseModel):
    """Local agent configuration."""

    model_config = {"frozen": True}

    label: str = Field(default="local", min_length=1, description="Agent label")
    workdir: Path | None = Field(default=None, description="Fixed workspace (a temporary one if unset)")
    base_dir: Path | None = Field(default=None, description="Parent directory for temporary workspaces")
    inherit_env: bool = Field(default=True, description="Seed the run env from the host env")
    clean_workspace: bool = Field(default=True, description="Remove a temporary workspace on teardown")
    environment: dict[str, str] = Field(default_factory=dict, description="Agent-level env entries")

    @field_validator("environment", mode="before")
    @classmethod
    def normalize_environment(cls, v: Any) -> Any:
        return _stringify_env(v)


class SecretsSettings(BaseModel):
    """Where credential ids are resolved."""

    model_config = {"frozen": True}

    env_prefix: str = Field(
        default="GANTRY_SECRET_",
        description="Env var prefix: id 'scanner-token' -> GANTRY_SECRET_SCANNER_TOKEN",
    )
    cache: bool = Field(default=True, description="Cache resolved values for the run")


class EchoAction(BaseModel):
    """Log a message. Placeholders: {pipeline}, {result}, {run_id}, {status}."""

    model_config = {"frozen": True}

    type: Literal["echo"]
    message: str


class ShellAction(BaseModel):
    """Run a command on the agent (fails if provisioning failed)."""

    model_config = {"frozen": True}

    type: Literal["shell"]
    run: str | list[str]
    timeout_seconds: float | None = Field(default=60.0, gt=0)


class ArchiveAction(BaseModel):
    """Archive workspace files matching a glob pattern."""

    model_config = {"frozen": True}

    type: Literal["archive"]
    pattern: str = Field(min_length=1)
    allow_empty: bool = False
    fingerprint: bool = False


class PublishReportAction(BaseModel):
    """Publish an HTML report directory from the workspace."""

    model_config = {"frozen": True}

    type: Literal["publish_report"]
    name: str = Field(min_length=1)
    report_dir: str = Field(min_length=1, description="Report directory, relative to the workspace")
    index_file: str = "index.html"
    allow_missing: bool = False
    keep_all: bool = False


PostActionSettings = Annotated[
    EchoAction | ShellAction | ArchiveAction | PublishReportAction,
    Field(discriminator="type"),
]


class PostSettings(BaseModel):
    """Post actions keyed on the final build result."""

    model_config = {"frozen": True}

    always: list[PostActionSettings] = Field(default_factory=list)
    success: list[PostActionSettings] = Field(default_factory=list)
    unstable: list[PostActionSettings] = Field(default_factory=list, description="Runs when the result is degraded")
    failure: list[PostActionSettings] = Field(default_factory=list)


class ArtifactStoreSettings(BaseModel):
    """Where archive and publish_report post actions write."""

    model_config = {"frozen": True}

    artifacts_dir: Path = Field(default=Path(".gantry/artifacts"), description="Archived artifacts root")
    reports_dir: Path = Field(default=Path(".gantry/reports"), description="Published reports root")


class GantrySettings(BaseModel):
    """Top-level Gantry configuration.

    This is the single source of truth for a pipeline definition.
    All settings are validated and frozen after construction.
    """

    model_config = {"frozen": True}

    pipeline: PipelineSettings = Field(description="Run-level settings")
    stages: list[StageSettings] = Field(min_length=1, description="Stages in execution order")
    agent: AgentSettings = Field(default_factory=AgentSettings, description="Agent to provision")
    secrets: SecretsSettings = Field(default_factory=SecretsSettings, description="Credential resolution")
    post: PostSettings = Field(default_factory=PostSettings, description="Post actions")
    artifact_store: ArtifactStoreSettings = Field(
        default_factory=ArtifactStoreSettings,
        description="Artifact and report storage",
    )

    @model_validator(mode="after")
    def validate_unique_stage_names(self) -> "GantrySettings":
        """Ensure stage names are unique."""
        names = [stage.name for stage in self.stages]
        duplicates = [name for name in names if names.count(name) > 1]
        if duplicates:
            raise ValueError(f"Duplicate stage name(s): {set(duplicates)}")
        return self


# Regex pattern for ${VAR} or ${VAR:-default} syntax
_ENV_VAR_PATTERN = re.compile(r"\$\{([A-Z_][A-Z0-9_]*)(?::-([^}]*))?\}")


def _expand_env_vars(config: dict[str, Any]) -> dict[str, Any]:
    """Recursively expand ${VAR} and ${VAR:-default} patterns in config values.

    Shell-style $VAR (no braces) is left alone so step commands can still
    reference variables at run time.

    Args:
        config: Configuration dict (may contain nested structures)

    Returns:
        New dict with environment variables expanded
    """
    import os

    def _expand_string(value: str) -> str:
        """Expand ${VAR} patterns in a string."""

        def replacer(match: re.Match[str]) -> str:
            var_name = match.group(1)
            default = match.group(2)  # None if no default specified
            env_value = os.environ.get(var_name)
            if env_value is not None:
                return env_value
            if default is not None:
                return default
            # No env var and no default - keep original for the shell to expand
            return match.group(0)

        return _ENV_VAR_PATTERN.sub(replacer, value)

    def _expand_value(value: Any) -> Any:
        """Expand env vars in a single value."""
        if isinstance(value, str):
            return _expand_string(value)
        elif isinstance(value, dict):
            return {k: _expand_value(v) for k, v in value.items()}
        elif isinstance(value, list):
            return [_expand_value(item) for item in value]
        else:
            return value

    return {k: _expand_value(v) for k, v in config.items()}


def load_settings(config_path: Path) -> GantrySettings:
    """Load settings from YAML file with environment variable overrides.

    Uses Dynaconf for multi-source loading with precedence:
    1. Environment variables (GANTRY_*) - highest priority
    2. Config file (settings.yaml)
    3. Defaults from Pydantic schema - lowest priority

    Environment variable format: GANTRY_PIPELINE__TIMEOUT_SECONDS for nested keys.

    Args:
        config_path: Path to YAML configuration file

    Returns:
        Validated GantrySettings instance

    Raises:
        ValidationError: If configuration fails Pydantic validation
        FileNotFoundError: If config file doesn't exist
    """
    from dynaconf import Dynaconf

    # Explicit check for file existence (Dynaconf silently accepts missing files)
    if not config_path.exists():
        raise FileNotFoundError(f"Config file not found: {config_path}")

    dynaconf_settings = Dynaconf(
        envvar_prefix="GANTRY",
        settings_files=[str(config_path)],
        environments=False,  # No [default]/[production] sections
        load_dotenv=False,  # Don't auto-load .env
        merge_enabled=True,  # Deep merge nested dicts
    )

    # Dynaconf returns uppercase keys; convert to lowercase for Pydantic
    # Also filter out internal Dynaconf settings
    internal_keys = {"LOAD_DOTENV", "ENVIRONMENTS", "SETTINGS_FILES"}
    raw_config = {k.lower(): v for k, v in dynaconf_settings.as_dict().items() if k not in internal_keys}

    raw_config = _expand_env_vars(raw_config)

    return GantrySettings(**raw_config)


def resolve_config(settings: GantrySettings) -> dict[str, Any]:
    """Convert validated settings to a JSON-safe dict.

    This is the resolved configuration (explicit values plus defaults) used
    for the run's config_hash and for `gantry show-config`. Credentials are
    ids only, so nothing here is secret.
    """
    return settings.model_dump(mode="json")


def settings_to_yaml(settings: GantrySettings) -> str:
    """Render the resolved configuration as YAML."""
    return yaml.safe_dump(resolve_config(settings), sort_keys=False, default_flow_style=False)
