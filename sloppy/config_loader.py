"""
Configuration loader for SLOPPY.
Merges defaults with per-repo .sloppy/config.yaml overrides.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, ValidationError

from sloppy.state import IssueType, SessionConfig


class ConfigError(Exception):
    pass


# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

class RoutingConfig(BaseModel):
    provider: str = "anthropic"
    fixer: str = "claude-sonnet-4-20250514"
    temperature: float = 0.2
    max_tokens: int = 4096
    request_timeout_seconds: float = 120.0


class LimitsConfig(BaseModel):
    max_retries: int = Field(default=3, ge=0)
    max_turns: int = Field(default=12, ge=1)
    timeout_minutes: float = Field(default=60, gt=0)
    checkpoint_every: int = Field(default=5, ge=0)
    max_tokens_per_session: int = 500_000
    max_dollars_per_session: float = 20.0
    context_token_budget: int = Field(default=6000, ge=64)


class AnalysisConfig(BaseModel):
    types: list[IssueType] = Field(default_factory=lambda: list(IssueType))
    exclude: list[str] = Field(default_factory=list)
    concurrency: int = Field(default=4, ge=1)
    max_issues: int = Field(default=0, ge=0)
    plugin_dirs: list[str] = Field(default_factory=list)
    disabled: list[str] = Field(default_factory=list)
    options: dict[str, dict[str, Any]] = Field(default_factory=dict)


class VerificationConfig(BaseModel):
    test_command: str | None = None
    lint_command: str | None = None
    build_command: str | None = None
    auto_detect: bool = True
    timeout_seconds: float = 600.0
    reanalyze: bool = True


class ToolsConfig(BaseModel):
    command_timeout_seconds: float = 120.0
    max_file_bytes: int = 200_000
    max_depth: int = 8
    max_output_chars: int = 8000
    allowed_commands: list[str] = Field(default_factory=list)
    blocked_patterns: list[str] = Field(default_factory=list)


class WorkspaceConfig(BaseModel):
    worktree_dir: str = ".sloppy/worktrees"
    log_dir: str = ".sloppy/logs"
    db_path: str = ".sloppy/sloppy.db"
    branch_prefix: str = "sloppy/"


class CommitConfig(BaseModel):
    prefix: str = "sloppy:"
    author_name: str | None = None
    author_email: str | None = None


class SloppyConfig(BaseModel):
    routing: RoutingConfig = Field(default_factory=RoutingConfig)
    limits: LimitsConfig = Field(default_factory=LimitsConfig)
    analysis: AnalysisConfig = Field(default_factory=AnalysisConfig)
    verification: VerificationConfig = Field(default_factory=VerificationConfig)
    tools: ToolsConfig = Field(default_factory=ToolsConfig)
    workspace: WorkspaceConfig = Field(default_factory=WorkspaceConfig)
    commit: CommitConfig = Field(default_factory=CommitConfig)

    def session_config(self, repo_path: Path | None = None) -> SessionConfig:
        """Snapshot the knobs a session needs, detecting verification commands."""
        verification = self.verification
        test_command = verification.test_command
        if test_command is None and verification.auto_detect and repo_path is not None:
            test_command = detect_test_command(repo_path)
        return SessionConfig(
            provider=self.routing.provider,
            model=self.routing.fixer,
            max_retries=self.limits.max_retries,
            max_turns=self.limits.max_turns,
            timeout_minutes=self.limits.timeout_minutes,
            checkpoint_every=self.limits.checkpoint_every,
            analysis_types=list(self.analysis.types),
            exclude=list(self.analysis.exclude),
            test_command=test_command,
            lint_command=verification.lint_command,
            build_command=verification.build_command,
        )


# ---------------------------------------------------------------------------
# Loader
# ---------------------------------------------------------------------------

_DEFAULT_CONFIG_PATH = Path(__file__).parent / "config.yaml"


def _deep_merge(base: dict, override: dict) -> dict:
    """Recursively merge override into base."""
    merged = base.copy()
    for key, value in override.items():
        if key in merged and isinstance(merged[key], dict) and isinstance(value, dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def _read_yaml(path: Path) -> dict[str, Any]:
    try:
        with open(path, "r") as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {path}: {e}") from e
    if not isinstance(data, dict):
        raise ConfigError(f"{path} must contain a mapping, got {type(data).__name__}")
    return data


def load_config(repo_path: Path | None = None, overrides: dict[str, Any] | None = None) -> SloppyConfig:
    """
    Load config by merging:
      1. Built-in defaults (sloppy/config.yaml)
      2. Repo-level overrides (<repo>/.sloppy/config.yaml)
      3. Explicit overrides from the caller (CLI flags)
    """
    base = _read_yaml(_DEFAULT_CONFIG_PATH)

    if repo_path:
        repo_config = Path(repo_path) / ".sloppy" / "config.yaml"
        if repo_config.exists():
            base = _deep_merge(base, _read_yaml(repo_config))

    if overrides:
        base = _deep_merge(base, overrides)

    try:
        return SloppyConfig(**base)
    except ValidationError as e:
        raise ConfigError(f"Invalid configuration: {e}") from e


def detect_test_command(repo: Path) -> str | None:
    """Auto-detect the test command based on repo contents."""
    if (repo / "Cargo.toml").exists():
        return "cargo test"
    if (repo / "package.json").exists():
        return "npm test"
    if (repo / "pyproject.toml").exists() or (repo / "setup.py").exists():
        return "python -m pytest -q"
    if (repo / "go.mod").exists():
        return "go test ./..."
    if (repo / "Makefile").exists():
        return "make test"
    return None


def validate_api_keys() -> dict[str, bool]:
    """Check which API keys are available."""
    return {
        "ANTHROPIC_API_KEY": bool(os.environ.get("ANTHROPIC_API_KEY")),
        "OPENAI_API_KEY":    bool(os.environ.get("OPENAI_API_KEY")),
        "GEMINI_API_KEY":    bool(os.environ.get("GEMINI_API_KEY")),
        "OPENROUTER_API_KEY": bool(os.environ.get("OPENROUTER_API_KEY")),
    }
