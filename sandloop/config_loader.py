"""
Configuration loader for SANDLOOP.
Merges packaged defaults with per-repo .sandloop/config.yaml overrides
and a couple of environment variables.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field


# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

class RoutingConfig(BaseModel):
    default: str = "openai/gpt-4o-mini"
    available_models: list[str] = Field(default_factory=list)
    # Per-role overrides; None falls back to the selected default model
    coder: str | None = None
    assessor: str | None = None
    compactor: str | None = None
    finisher: str | None = None
    narrator: str | None = None

    def models(self) -> list[str]:
        """Every model the user may select, default included."""
        models = list(self.available_models)
        if self.default not in models:
            models.insert(0, self.default)
        return models


class LimitsConfig(BaseModel):
    max_iterations: int = Field(default=6, ge=1)
    max_output_chars: int = Field(default=4000, ge=1)
    max_context_chars: int = Field(default=24000, ge=1)
    max_tokens: int = 4096
    temperature: float = 0.2
    request_attempts: int = Field(default=3, ge=1)


class SandboxConfig(BaseModel):
    interpreter: str | None = None  # None → the running Python
    script_name: str = "index.py"
    script_timeout: float | None = 300.0
    excluded_dirs: list[str] = Field(
        default_factory=lambda: [
            ".git", ".hg", ".svn", "node_modules", "__pycache__", ".venv", "venv",
        ]
    )
    prefer_copy_on_write: bool = True


class WorkspaceConfig(BaseModel):
    state_dir: str = "~/.sandloop"
    log_dir: str = "~/.sandloop/logs"
    transcripts: bool = True


class InterventionConfig(BaseModel):
    confirm_before_apply: bool = True
    apply_partial_on_failure: bool = False


class SandLoopConfig(BaseModel):
    routing: RoutingConfig = Field(default_factory=RoutingConfig)
    limits: LimitsConfig = Field(default_factory=LimitsConfig)
    sandbox: SandboxConfig = Field(default_factory=SandboxConfig)
    workspace: WorkspaceConfig = Field(default_factory=WorkspaceConfig)
    intervention: InterventionConfig = Field(default_factory=InterventionConfig)

    @property
    def state_path(self) -> Path:
        return Path(self.workspace.state_dir).expanduser() / "state.json"

    @property
    def log_path(self) -> Path:
        return Path(self.workspace.log_dir).expanduser()


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


def _env_overrides() -> dict[str, Any]:
    overrides: dict[str, Any] = {}
    model = os.environ.get("SANDLOOP_MODEL")
    if model and model.strip():
        overrides.setdefault("routing", {})["default"] = model.strip()
    max_iterations = os.environ.get("SANDLOOP_MAX_ITERATIONS")
    if max_iterations and max_iterations.strip().isdigit():
        overrides.setdefault("limits", {})["max_iterations"] = int(max_iterations.strip())
    return overrides


def load_config(repo_path: Path | None = None) -> SandLoopConfig:
    """
    Load config by merging:
      1. Built-in defaults (sandloop/config.yaml)
      2. Repo-level overrides (<repo>/.sandloop/config.yaml)
      3. Environment overrides (SANDLOOP_MODEL, SANDLOOP_MAX_ITERATIONS)
    """
    # 1. Built-in defaults
    with open(_DEFAULT_CONFIG_PATH, "r", encoding="utf-8") as f:
        base: dict[str, Any] = yaml.safe_load(f) or {}

    # 2. Repo overrides
    if repo_path:
        repo_config = repo_path / ".sandloop" / "config.yaml"
        if repo_config.exists():
            with open(repo_config, "r", encoding="utf-8") as f:
                overrides: dict[str, Any] = yaml.safe_load(f) or {}
            base = _deep_merge(base, overrides)

    # 3. Env
    base = _deep_merge(base, _env_overrides())

    return SandLoopConfig(**base)


def validate_api_keys() -> dict[str, bool]:
    """Check which API keys are available."""
    return {
        "ANTHROPIC_API_KEY": bool(os.environ.get("ANTHROPIC_API_KEY")),
        "OPENAI_API_KEY":    bool(os.environ.get("OPENAI_API_KEY")),
        "GOOGLE_API_KEY":    bool(os.environ.get("GOOGLE_API_KEY")),
        "GEMINI_API_KEY":    bool(os.environ.get("GEMINI_API_KEY")),
    }
