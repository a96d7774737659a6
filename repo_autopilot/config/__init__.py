"""Configuration system for the autopilot daemon.

Key Components:
    - AutopilotSettings: Main configuration container with YAML loading support
    - GitHubConfig / RepositoryConfig / ProjectConfig: Tracker and board
    - SessionBackendConfig: Remote coding-session backend
    - DaemonConfig / MergeConfig: Cycle cadence, capacity, merge behaviour
    - CircuitBreakerConfig / CacheConfig / DiscoveryConfig: Resilience and analysis

Example:
    >>> from repo_autopilot.config import AutopilotSettings
    >>> settings = AutopilotSettings.from_yaml("autopilot.yaml")
    >>> settings.daemon.max_in_progress
    2
"""

from repo_autopilot.config.settings import (
    AutopilotSettings,
    CacheConfig,
    CircuitBreakerConfig,
    DaemonConfig,
    DiscoveryConfig,
    GitHubConfig,
    LabelsConfig,
    MergeConfig,
    ProjectConfig,
    RepositoryConfig,
    SessionBackendConfig,
)

__all__ = [
    "AutopilotSettings",
    "CacheConfig",
    "CircuitBreakerConfig",
    "DaemonConfig",
    "DiscoveryConfig",
    "GitHubConfig",
    "LabelsConfig",
    "MergeConfig",
    "ProjectConfig",
    "RepositoryConfig",
    "SessionBackendConfig",
]
