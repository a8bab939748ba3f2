"""
Configuration loading and validation for plan-guard.

This module handles:
- Loading plan-guard.yaml from the project root
- Environment variable resolution (${VAR} syntax)
- Validation of value types
- Default values for every optional field
- Resolving the active plan directory (PLAN_DIR)
- Caching of the loaded configuration

Every gate command is optional. A missing config file is not an error: it
yields a configuration where only the unconditional gates run.
"""

from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import yaml

from plan_guard.errors import ConfigError

DEFAULT_CONFIG_FILE = "plan-guard.yaml"
PLAN_DIR_ENV_VAR = "PLAN_DIR"

# Gate name -> top-level config key, in pipeline order
GATE_COMMAND_KEYS: tuple[tuple[str, str], ...] = (
    ("build", "build_command"),
    ("test", "test_command"),
    ("lint", "lint_command"),
    ("format", "format_command"),
    ("static_analysis", "static_analysis_command"),
)


@dataclass
class CommandConfig:
    """External command execution settings."""
    timeout_seconds: Optional[float] = None    # Deadline per command; None = wait forever
    kill_grace_seconds: float = 5.0            # SIGTERM -> SIGKILL grace period


@dataclass
class TrackerConfig:
    """Beads tracker CLI configuration."""
    binary: str = "bd"                         # Path to the bd binary
    timeout_seconds: int = 30                  # Per-call timeout
    sync_timeout_seconds: int = 120            # `bd sync` may hit the network


@dataclass
class VerifierConfig:
    """External quality verifier configuration."""
    kind: str = "none"                         # "none" (always pass) or "command"
    command: str = ""                          # Command reading context JSON on stdin
    timeout_seconds: Optional[float] = None


@dataclass
class GitConfig:
    """Git query configuration."""
    commit_search_depth: int = 5               # Recent commits searched for a feature id


@dataclass
class WorkConfig:
    """Work executor configuration for `plan-guard run`."""
    command: str = ""                          # e.g. "claude -p @{prompt_file}"
    timeout_seconds: Optional[float] = None


@dataclass
class WorkflowConfig:
    """Workflow compliance gate configuration."""
    enabled: bool = True
    plans_dir: str = "dev/plans"               # Supporting plan folders, relative to repo root
    exempt_types: list[str] = field(default_factory=lambda: ["bug", "chore"])
    research_prefix: str = "research:"         # Task titles exempt from planning rules
    min_description_length: int = 500


@dataclass
class LockConfig:
    """Plan directory lock configuration."""
    stale_timeout_minutes: int = 240           # Locks older than this are reclaimed


@dataclass
class PlanGuardConfig:
    """
    Main configuration for plan-guard.

    This is the top-level config loaded from plan-guard.yaml.
    """
    # Paths
    repo_root: str = "."
    plan_dir: str = "."
    logs_dir: str = ".plan-guard/logs"

    # Gate commands (each optional)
    build_command: str = ""
    test_command: str = ""
    lint_command: str = ""
    format_command: str = ""
    static_analysis_command: str = ""

    # Nested configurations
    commands: CommandConfig = field(default_factory=CommandConfig)
    tracker: TrackerConfig = field(default_factory=TrackerConfig)
    verifier: VerifierConfig = field(default_factory=VerifierConfig)
    git: GitConfig = field(default_factory=GitConfig)
    work: WorkConfig = field(default_factory=WorkConfig)
    workflow: WorkflowConfig = field(default_factory=WorkflowConfig)
    lock: LockConfig = field(default_factory=LockConfig)

    def __post_init__(self) -> None:
        """Convert paths to absolute paths based on repo_root."""
        self.repo_root = str(Path(self.repo_root).absolute())
        plan_path = Path(self.plan_dir)
        if not plan_path.is_absolute():
            plan_path = Path(self.repo_root) / plan_path
        self.plan_dir = str(plan_path.resolve())

    @property
    def plan_path(self) -> Path:
        """Absolute path to the active plan directory."""
        return Path(self.plan_dir)

    @property
    def manifest_path(self) -> Path:
        """Absolute path to the manifest file."""
        return self.plan_path / "manifest.jsonl"

    @property
    def logs_path(self) -> Path:
        """Absolute path to the JSONL log directory."""
        return Path(self.repo_root) / self.logs_dir

    @property
    def plans_root(self) -> Path:
        """Absolute path to supporting plan folders."""
        return Path(self.repo_root) / self.workflow.plans_dir

    def gate_commands(self) -> list[tuple[str, str]]:
        """Configured (gate_name, command) pairs in pipeline order."""
        commands = []
        for gate_name, key in GATE_COMMAND_KEYS:
            command = (getattr(self, key) or "").strip()
            if command:
                commands.append((gate_name, command))
        return commands


# Loaded once per process; tests reset it with clear_config_cache()
_config_cache: Optional[PlanGuardConfig] = None


_ENV_REF = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}")


def _expand_env(match: re.Match) -> str:
    name = match.group(1)
    if name not in os.environ:
        raise ConfigError(f"Config references ${{{name}}} but it is not set in the environment")
    return os.environ[name]


def _resolve_env_vars(value: Any) -> Any:
    """Substitute ${VAR} references in every string of a parsed YAML tree."""
    if isinstance(value, str):
        return _ENV_REF.sub(_expand_env, value)
    if isinstance(value, dict):
        return {key: _resolve_env_vars(item) for key, item in value.items()}
    if isinstance(value, list):
        return [_resolve_env_vars(item) for item in value]
    return value


def _section(data: dict[str, Any], name: str) -> dict[str, Any]:
    """Return a nested section, rejecting non-mapping values."""
    section = data.get(name) or {}
    if not isinstance(section, dict):
        raise ConfigError(f"Section '{name}' must be a mapping")
    return section


def _optional_seconds(value: Any, key: str) -> Optional[float]:
    """Parse an optional positive number of seconds."""
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, (int, float)) or value <= 0:
        raise ConfigError(f"{key} must be a positive number")
    return float(value)


def _command_string(value: Any, key: str) -> str:
    """Parse an optional command string."""
    if value is None:
        return ""
    if not isinstance(value, str):
        raise ConfigError(f"{key} must be a string")
    return value.strip()


def _parse_command_config(data: dict[str, Any]) -> CommandConfig:
    """Parse command execution configuration from dict."""
    return CommandConfig(
        timeout_seconds=_optional_seconds(data.get("timeout_seconds"), "commands.timeout_seconds"),
        kill_grace_seconds=data.get("kill_grace_seconds", 5.0),
    )


def _parse_tracker_config(data: dict[str, Any]) -> TrackerConfig:
    """Parse tracker configuration from dict."""
    return TrackerConfig(
        binary=data.get("binary", "bd"),
        timeout_seconds=data.get("timeout_seconds", 30),
        sync_timeout_seconds=data.get("sync_timeout_seconds", 120),
    )


def _parse_verifier_config(data: dict[str, Any]) -> VerifierConfig:
    """Parse quality verifier configuration from dict."""
    kind = data.get("kind", "none")
    if kind not in ("none", "command"):
        raise ConfigError(f"verifier.kind must be 'none' or 'command', got '{kind}'")
    command = _command_string(data.get("command"), "verifier.command")
    if kind == "command" and not command:
        raise ConfigError("verifier.command is required when verifier.kind is 'command'")
    return VerifierConfig(
        kind=kind,
        command=command,
        timeout_seconds=_optional_seconds(data.get("timeout_seconds"), "verifier.timeout_seconds"),
    )


def _parse_git_config(data: dict[str, Any]) -> GitConfig:
    """Parse git configuration from dict."""
    depth = data.get("commit_search_depth", 5)
    if not isinstance(depth, int) or isinstance(depth, bool) or depth < 1:
        raise ConfigError("git.commit_search_depth must be a positive integer")
    return GitConfig(commit_search_depth=depth)


def _parse_work_config(data: dict[str, Any]) -> WorkConfig:
    """Parse work executor configuration from dict."""
    return WorkConfig(
        command=_command_string(data.get("command"), "work.command"),
        timeout_seconds=_optional_seconds(data.get("timeout_seconds"), "work.timeout_seconds"),
    )


def _parse_workflow_config(data: dict[str, Any]) -> WorkflowConfig:
    """Parse workflow compliance configuration from dict."""
    exempt = data.get("exempt_types", ["bug", "chore"])
    if not isinstance(exempt, list):
        raise ConfigError("workflow.exempt_types must be a list")
    return WorkflowConfig(
        enabled=data.get("enabled", True),
        plans_dir=data.get("plans_dir", "dev/plans"),
        exempt_types=[str(t).lower() for t in exempt],
        research_prefix=str(data.get("research_prefix", "research:")).lower(),
        min_description_length=data.get("min_description_length", 500),
    )


def _parse_lock_config(data: dict[str, Any]) -> LockConfig:
    """Parse lock configuration from dict."""
    return LockConfig(
        stale_timeout_minutes=data.get("stale_timeout_minutes", 240),
    )


def resolve_plan_dir(explicit: Optional[str] = None, default: str = ".") -> str:
    """
    Resolve the active plan directory.

    Precedence: explicit value (--plan-dir), then the PLAN_DIR environment
    variable, then the config file value (or the current directory).
    """
    if explicit:
        return explicit
    return os.environ.get(PLAN_DIR_ENV_VAR) or default


def load_config(
    config_path: Optional[str] = None,
    plan_dir: Optional[str] = None,
) -> PlanGuardConfig:
    """
    Load configuration from plan-guard.yaml.

    Args:
        config_path: Optional path to config file. If not provided, looks for
                     plan-guard.yaml in the current directory and falls back
                     to defaults when it does not exist.
        plan_dir: Optional plan directory override.

    Returns:
        PlanGuardConfig: Loaded and validated configuration.

    Raises:
        ConfigError: If config is invalid or cannot be loaded.
    """
    explicit = config_path is not None
    path = Path(config_path or DEFAULT_CONFIG_FILE)

    if not path.exists():
        if explicit:
            raise ConfigError(f"Configuration file not found: {config_path}")
        return PlanGuardConfig(plan_dir=resolve_plan_dir(plan_dir))

    try:
        with open(path, "r") as f:
            raw_data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in config file: {e}")

    if raw_data is None:
        raw_data = {}
    if not isinstance(raw_data, dict):
        raise ConfigError("Configuration file must contain a mapping")

    data = _resolve_env_vars(raw_data)

    gate_commands = {
        key: _command_string(data.get(key), key)
        for _, key in GATE_COMMAND_KEYS
    }

    return PlanGuardConfig(
        repo_root=data.get("repo_root", str(path.absolute().parent)),
        plan_dir=resolve_plan_dir(plan_dir, default=data.get("plan_dir") or "."),
        logs_dir=data.get("logs_dir", ".plan-guard/logs"),
        commands=_parse_command_config(_section(data, "commands")),
        tracker=_parse_tracker_config(_section(data, "tracker")),
        verifier=_parse_verifier_config(_section(data, "verifier")),
        git=_parse_git_config(_section(data, "git")),
        work=_parse_work_config(_section(data, "work")),
        workflow=_parse_workflow_config(_section(data, "workflow")),
        lock=_parse_lock_config(_section(data, "lock")),
        **gate_commands,
    )


def get_config(
    config_path: Optional[str] = None,
    plan_dir: Optional[str] = None,
    force_reload: bool = False,
) -> PlanGuardConfig:
    """
    Get the cached configuration, loading it if necessary.

    Raises:
        ConfigError: If config is invalid or cannot be loaded.
    """
    global _config_cache

    if _config_cache is None or force_reload:
        _config_cache = load_config(config_path, plan_dir)

    return _config_cache


def clear_config_cache() -> None:
    """Clear the configuration cache. Useful for testing."""
    global _config_cache
    _config_cache = None
