"""
FORKYARD Workspace Isolation

Every session works in its own `git worktree`, checked out on a branch
named after the session's derived identity. The outer working tree never
changes branch, and nested worktrees are hidden from the outer repo by a
catch-all .gitignore at the worktrees root.
"""

from __future__ import annotations

import os
import shlex
from pathlib import Path
from typing import Any

from loguru import logger
from pydantic import BaseModel

from forkyard.config_loader import ForkyardConfig
from forkyard.identity import AgentIdentity, IsolationPolicy, derive_identity
from forkyard.workspace.git import GitRunner, WorktreeEntry
from forkyard.workspace.registry import WorkspaceRecord, WorkspaceRegistry

__all__ = [
    "GitRunner",
    "WorkspaceContext",
    "WorkspaceManager",
    "WorkspaceRecord",
    "WorkspaceRegistry",
    "WorktreeEntry",
    "normalize_target",
]


class WorkspaceContext(BaseModel):
    workspace_path: Path
    relative_path: str
    branch_name: str
    user_name: str
    user_email: str


def _is_within(path: str, root: str) -> bool:
    rel = os.path.relpath(path, root)
    return rel != ".." and not rel.startswith(".." + os.sep)


def normalize_target(workspace_root: Path, repo_root: Path, file_path: str | Path) -> str:
    """
    Map a requested file path to a path relative to the workspace.

    Paths inside the workspace are taken relative to it, paths inside the
    outer repository relative to that, and anything else is reduced to
    its base name so unrelated absolute paths never leak through.
    """
    raw = Path(file_path)
    target = os.path.normpath(raw if raw.is_absolute() else repo_root / raw)
    for root in (str(workspace_root), str(repo_root)):
        if _is_within(target, root):
            rel = os.path.relpath(target, root)
            if rel == ".":
                return os.path.basename(target)
            return rel
    return os.path.basename(target)


class WorkspaceManager:
    """
    Materializes per-session worktrees and routes tool calls into them.
    """

    def __init__(self, repo_path: Path, config: ForkyardConfig, registry: WorkspaceRegistry, git: GitRunner | None = None):
        self.repo_path = repo_path.resolve()
        self.config = config
        self.registry = registry
        self.git = git or GitRunner(self.repo_path)

    @property
    def root(self) -> Path:
        return self.repo_path / self.config.workspace.root

    def identity_for(
        self,
        seed: str,
        known_process_name: str | None = None,
        policy: IsolationPolicy | None = None,
    ) -> AgentIdentity:
        cfg = self.config.identity
        return derive_identity(
            seed,
            known_process_name=known_process_name,
            namespace=cfg.namespace_for(policy or cfg.default_policy),
            email_domain=cfg.email_domain,
        )

    def path_for(self, identity: AgentIdentity) -> Path:
        return self.root / identity.workspace_name

    def _ensure_root(self) -> None:
        self.root.mkdir(parents=True, exist_ok=True)
        gitignore = self.root / ".gitignore"
        try:
            with open(gitignore, "x") as f:
                f.write("*\n")
            logger.debug(f"[WORKSPACE] Wrote {gitignore}")
        except FileExistsError:
            pass

    async def materialize(self, session: str, identity: AgentIdentity) -> Path:
        """Ensure branch + worktree for ``identity`` exist and register them for ``session``."""
        workspace_path = self.path_for(identity)
        self._ensure_root()
        await self.git.ensure_branch(identity.branch_name)
        if (workspace_path / ".git").exists():
            logger.debug(f"[WORKSPACE] Reusing {workspace_path}")
        elif await self.git.worktree_add(workspace_path, identity.branch_name):
            logger.info(f"[WORKSPACE] Isolated workspace created for {session}: {workspace_path}")
        self.registry.register(session, workspace_path, identity.branch_name)
        return workspace_path

    async def resolve(
        self,
        session: str,
        seed: str,
        file_path: str | Path,
        known_process_name: str | None = None,
    ) -> WorkspaceContext:
        identity = self.identity_for(seed, known_process_name)
        record = self.registry.get(session)
        if record and record.opted_in and record.workspace_path:
            # Opted into another agent's worktree: commit there, under our own name
            workspace_path = record.workspace_path
            branch_name = record.branch_name or identity.branch_name
        else:
            workspace_path = await self.materialize(session, identity)
            branch_name = identity.branch_name
        return WorkspaceContext(
            workspace_path=workspace_path,
            relative_path=normalize_target(workspace_path, self.repo_path, file_path),
            branch_name=branch_name,
            user_name=identity.user_name,
            user_email=identity.user_email,
        )

    def route(self, session: str, tool: str, args: dict[str, Any], root_directory: Path | None = None) -> None:
        """Point a tool call's cwd (and shell command) at the session's workspace, in place."""
        workspace = self.registry.workspace_for(session)
        if workspace is None:
            return
        cwd = workspace if workspace.is_absolute() else (root_directory or self.repo_path) / workspace
        args["cwd"] = str(cwd)

        shell_tools = {name.lower() for name in self.config.interceptor.shell_tools}
        if tool.lower() not in shell_tools:
            return
        command = args.get("command")
        if not isinstance(command, str) or not command.strip():
            return
        prefix = f"cd {shlex.quote(str(cwd))} && "
        if not command.startswith(prefix):
            args["command"] = f"{prefix}({command})"

    async def list_workspaces(self) -> list[WorktreeEntry]:
        """Worktrees that live under the FORKYARD workspaces root."""
        root = self.root.resolve()
        return [
            entry for entry in await self.git.list_worktrees()
            if entry.path.resolve().parent == root
        ]

    async def discard(self, session: str) -> bool:
        """Force-remove the session's worktree and forget it. The branch is kept."""
        workspace = self.registry.workspace_for(session)
        if workspace is None:
            return False
        await self.git.worktree_remove(workspace)
        self.registry.opt_out(session)
        logger.info(f"[WORKSPACE] Discarded workspace for {session}")
        return True
