"""
Configuration loader for FORKYARD.
Merges defaults with per-repo .forkyard/config.yaml overrides
and FORKYARD_<SECTION>__<KEY> environment variables.
"""

from __future__ import annotations

import math
import os
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field

from forkyard.identity import DEFAULT_EMAIL_DOMAIN, DEFAULT_NAMESPACES, IsolationPolicy


# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

class IdentityConfig(BaseModel):
    email_domain: str = DEFAULT_EMAIL_DOMAIN
    default_policy: IsolationPolicy = IsolationPolicy.WT
    namespaces: dict[str, str] = Field(default_factory=lambda: dict(DEFAULT_NAMESPACES))

    def namespace_for(self, policy: IsolationPolicy) -> str:
        return self.namespaces.get(policy.value, policy.value)


class WorkspaceConfig(BaseModel):
    state_dir: str = ".agent"
    worktree_dir: str = "wt"

    @property
    def root(self) -> Path:
        return Path(self.state_dir) / self.worktree_dir


class SupervisorConfig(BaseModel):
    command: list[str] = Field(default_factory=lambda: ["opencode", "serve", "--port={port}"])
    host: str = "127.0.0.1"
    startup_timeout: float = 15.0
    ready_interval: float = 0.2
    poll_attempts: int = 50
    poll_interval: float = 0.2
    agent_profile: str = "build"
    quick_reply_timeout: float = 0.2
    request_timeout: float = 30.0

    @property
    def ready_attempts(self) -> int:
        if self.ready_interval <= 0:
            return 1
        return max(1, math.ceil(self.startup_timeout / self.ready_interval))


class InterceptorConfig(BaseModel):
    shell_tools: list[str] = Field(default_factory=lambda: ["bash"])


class ForkyardConfig(BaseModel):
    identity: IdentityConfig = Field(default_factory=IdentityConfig)
    workspace: WorkspaceConfig = Field(default_factory=WorkspaceConfig)
    supervisor: SupervisorConfig = Field(default_factory=SupervisorConfig)
    interceptor: InterceptorConfig = Field(default_factory=InterceptorConfig)


# ---------------------------------------------------------------------------
# Loader
# ---------------------------------------------------------------------------

_DEFAULT_CONFIG_PATH = Path(__file__).parent / "config.yaml"
_ENV_PREFIX = "FORKYARD_"


def _deep_merge(base: dict, override: dict) -> dict:
    """Recursively merge override into base."""
    merged = base.copy()
    for key, value in override.items():
        if key in merged and isinstance(merged[key], dict) and isinstance(value, dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def _env_overrides(environ: dict[str, str]) -> dict[str, Any]:
    """FORKYARD_SUPERVISOR__STARTUP_TIMEOUT=30 -> {"supervisor": {"startup_timeout": 30}}"""
    overrides: dict[str, Any] = {}
    for name, raw in environ.items():
        if not name.startswith(_ENV_PREFIX) or "__" not in name:
            continue
        path = [part.lower() for part in name[len(_ENV_PREFIX):].split("__") if part]
        if len(path) < 2:
            continue
        node = overrides
        for part in path[:-1]:
            node = node.setdefault(part, {})
        # YAML scalars give us ints, floats, bools and inline lists for free
        node[path[-1]] = yaml.safe_load(raw)
    return overrides


def load_config(repo_path: Path | None = None, environ: dict[str, str] | None = None) -> ForkyardConfig:
    """
    Load config by merging:
      1. Built-in defaults (forkyard/config.yaml)
      2. Repo-level overrides (<repo>/.forkyard/config.yaml)
      3. Environment variable overrides
    """
    with open(_DEFAULT_CONFIG_PATH, "r") as f:
        base: dict[str, Any] = yaml.safe_load(f) or {}

    if repo_path:
        repo_config = repo_path / ".forkyard" / "config.yaml"
        if repo_config.exists():
            with open(repo_config, "r") as f:
                overrides: dict[str, Any] = yaml.safe_load(f) or {}
            base = _deep_merge(base, overrides)

    base = _deep_merge(base, _env_overrides(dict(os.environ) if environ is None else environ))
    return ForkyardConfig(**base)
