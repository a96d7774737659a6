"""
Configuration system using Pydantic for type-safe settings management.

One YAML file configures the tracker connection, the project board, the
session backend, the daemon's capacity limits, merge behaviour, the circuit
breakers, the analysis cache, and discovery.
"""

from __future__ import annotations

import hashlib
import os
import re
from pathlib import Path
from typing import Literal

import yaml
from pydantic import BaseModel, Field, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict

from repo_autopilot.exceptions import ConfigurationError


class GitHubConfig(BaseModel):
    """GitHub API connection."""

    token: SecretStr | None = Field(default=None, description="Personal access or App token")
    base_url: str = Field(default="https://api.github.com", description="REST API base URL")
    graphql_url: str = Field(default="https://api.github.com/graphql", description="GraphQL endpoint")


class RepositoryConfig(BaseModel):
    """Repository the daemon works on."""

    owner: str = Field(..., description="Repository owner/organization")
    name: str = Field(..., description="Repository name")
    default_branch: str = Field(default="main", description="Base branch PRs merge into")

    @property
    def url(self) -> str:
        return f"https://github.com/{self.owner}/{self.name}"


class ProjectConfig(BaseModel):
    """Project board whose status column drives the workflow."""

    project_id: str = Field(..., description="Projects v2 node id (PVT_...)")
    status_field: str = Field(default="Status", description="Single-select field holding the column")
    backlog_column: str = Field(default="Backlog")
    ready_column: str = Field(default="Ready")
    in_progress_column: str = Field(default="In progress")
    in_review_column: str = Field(default="In review")
    done_column: str = Field(default="Done")


class SessionBackendConfig(BaseModel):
    """Remote coding-session backend."""

    api_key: SecretStr | None = Field(default=None, description="Bearer token for the session API")
    base_url: str = Field(default="https://api.anthropic.com")
    environment_id: str | None = Field(default=None, description="Execution environment for sessions")
    model: str = Field(default="claude-opus-4-5-20251101")
    agent_name: str = Field(default="claude", description="Prefix for session branches")
    request_timeout: float = Field(default=60.0, gt=0)


class DaemonConfig(BaseModel):
    """Cycle cadence and pipeline capacity."""

    poll_interval: int = Field(default=60, ge=1, description="Seconds between cycles")
    max_ready: int = Field(default=3, ge=0)
    max_in_progress: int = Field(default=2, ge=0)
    backlog_threshold: int = Field(default=10, ge=0, description="Discovery runs only below this backlog size")
    max_task_attempts: int = Field(default=3, ge=1, description="Reverts tolerated before manual attention")
    run_once: bool = Field(default=False)


class MergeConfig(BaseModel):
    """Pull request merge behaviour."""

    merge_method: Literal["squash", "merge", "rebase"] = Field(default="squash")
    max_conflict_retries: int = Field(default=3, ge=0, description="Resolution sessions per item")
    delete_branch_after_merge: bool = Field(default=True)


class CircuitBreakerConfig(BaseModel):
    """Thresholds shared by all dependency breakers."""

    failure_threshold: int = Field(default=5, ge=1)
    reset_timeout_seconds: float = Field(default=60.0, gt=0)
    success_threshold: int = Field(default=1, ge=1)


class CacheConfig(BaseModel):
    """Persistent analysis cache."""

    enabled: bool = Field(default=True)
    cache_dir: str = Field(default=".autopilot-cache")
    max_entries: int = Field(default=100, ge=1)
    ttl_minutes: float = Field(default=30.0, gt=0)
    max_size_mb: float = Field(default=100.0, gt=0)
    persist_to_disk: bool = Field(default=True)
    use_git_invalidation: bool = Field(default=True)
    enable_incremental_analysis: bool = Field(default=True)


class DiscoveryConfig(BaseModel):
    """Marker-based discovery of new work."""

    enabled: bool = Field(default=True)
    repo_path: str = Field(default=".", description="Local checkout to scan")
    exclude_paths: list[str] = Field(default_factory=lambda: ["node_modules", ".git", "dist", "build", ".venv"])
    markers: list[str] = Field(default_factory=lambda: ["TODO", "FIXME", "HACK", "XXX"])
    file_extensions: list[str] = Field(
        default_factory=lambda: [".py", ".ts", ".tsx", ".js", ".jsx", ".go", ".rs", ".java", ".rb"]
    )
    max_issues_per_cycle: int = Field(default=3, ge=0)

    def config_hash(self) -> str:
        """Fingerprint of the options that change what a scan produces."""
        material = "|".join([",".join(sorted(self.markers)), ",".join(sorted(self.file_extensions))])
        return hashlib.sha256(material.encode("utf-8")).hexdigest()[:16]


class LabelsConfig(BaseModel):
    """Issue labels applied by the daemon."""

    automation: str = Field(default="autopilot", description="Issues opened by discovery")
    needs_attention: str = Field(default="needs-attention", description="Requires human intervention")


class AutopilotSettings(BaseSettings):
    """Main daemon settings.

    Combines all configuration sections and loads them from YAML with
    environment variable interpolation. Individual values can also be
    overridden with ``AUTOPILOT_<SECTION>__<FIELD>`` environment variables.
    """

    model_config = SettingsConfigDict(
        env_prefix="AUTOPILOT_",
        env_nested_delimiter="__",
        case_sensitive=False,
    )

    github: GitHubConfig = Field(default_factory=GitHubConfig)
    repository: RepositoryConfig
    project: ProjectConfig
    sessions: SessionBackendConfig = Field(default_factory=SessionBackendConfig)
    daemon: DaemonConfig = Field(default_factory=DaemonConfig)
    merge: MergeConfig = Field(default_factory=MergeConfig)
    circuit_breaker: CircuitBreakerConfig = Field(default_factory=CircuitBreakerConfig)
    cache: CacheConfig = Field(default_factory=CacheConfig)
    discovery: DiscoveryConfig = Field(default_factory=DiscoveryConfig)
    labels: LabelsConfig = Field(default_factory=LabelsConfig)

    @property
    def cache_dir(self) -> Path:
        """Get cache directory as Path object."""
        return Path(self.cache.cache_dir)

    @classmethod
    def from_yaml(cls, config_path: str) -> AutopilotSettings:
        """Load settings from YAML file with environment variable interpolation.

        Supports ${VAR_NAME} and ${VAR_NAME:-default} substitution.

        Args:
            config_path: Path to YAML configuration file

        Returns:
            AutopilotSettings instance

        Raises:
            ConfigurationError: If config file is invalid or missing required fields
        """
        config_file = Path(config_path)
        if not config_file.exists():
            raise ConfigurationError(f"Configuration file not found: {config_path}")

        try:
            with open(config_file) as f:
                yaml_content = f.read()
        except OSError as e:
            raise ConfigurationError(f"Cannot read configuration file: {config_path}") from e

        try:
            yaml_content = cls._interpolate_env_vars(yaml_content)
        except ValueError as e:
            raise ConfigurationError(f"Invalid environment variable reference in config: {e}") from e

        try:
            config_dict = yaml.safe_load(yaml_content)
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML syntax in {config_path}: {e}") from e
        if not isinstance(config_dict, dict):
            raise ConfigurationError("Configuration must be a YAML object, not a list or scalar")

        try:
            return cls(**config_dict)
        except TypeError as e:
            raise ConfigurationError(f"Missing or invalid configuration fields: {e}") from e
        except Exception as e:
            raise ConfigurationError(f"Failed to validate configuration: {e}") from e

    @staticmethod
    def _interpolate_env_vars(content: str) -> str:
        """Interpolate ${VAR_NAME} placeholders with environment variables.

        YAML comment lines are left untouched so documentation examples in
        comments do not need the variables to be set.

        Raises:
            ValueError: If a required environment variable is not set
        """
        pattern = re.compile(r"\$\{([A-Z_][A-Z0-9_]*)(?::-([^}]*))?\}")

        def replace_var(match: re.Match[str]) -> str:
            var_name = match.group(1)
            default_value = match.group(2)
            value = os.getenv(var_name)

            if value is not None:
                return value
            elif default_value is not None:
                return default_value
            else:
                raise ValueError(f"Environment variable {var_name} is not set")

        def process_line(line: str) -> str:
            if line.lstrip().startswith("#"):
                return line
            return pattern.sub(replace_var, line)

        return "\n".join(process_line(line) for line in content.split("\n"))
