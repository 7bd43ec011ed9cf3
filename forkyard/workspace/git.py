"""
Async wrappers around the git commands FORKYARD consumes.

Every command runs as a subprocess with an argument list (never a shell
string), so branch names, paths and commit messages need no quoting.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from pathlib import Path

from loguru import logger

from forkyard.errors import GitOperationError


@dataclass
class WorktreeEntry:
    path: Path
    branch: str | None = None


def parse_worktree_list(output: str) -> list[WorktreeEntry]:
    """Parse `git worktree list --porcelain` output into entries."""
    entries: list[WorktreeEntry] = []
    for block in output.split("\n\n"):
        lines = [line.strip() for line in block.strip().splitlines()]
        path = next((line[len("worktree "):].strip() for line in lines if line.startswith("worktree ")), None)
        if not path:
            continue
        branch = next((line[len("branch "):].strip() for line in lines if line.startswith("branch ")), None)
        entries.append(WorktreeEntry(path=Path(path), branch=branch))
    return entries


class GitRunner:
    """Runs git against the outer repository or one of its worktrees."""

    def __init__(self, repo_path: Path):
        self.repo_path = repo_path.resolve()

    async def run(self, *args: str, cwd: Path | None = None, check: bool = True) -> str:
        cmd = ["git", *args]
        proc = await asyncio.create_subprocess_exec(
            *cmd,
            cwd=str(cwd or self.repo_path),
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        stdout, stderr = await proc.communicate()
        out = stdout.decode("utf-8", errors="replace")
        err = stderr.decode("utf-8", errors="replace")
        if check and proc.returncode != 0:
            logger.debug(f"[GIT] {' '.join(cmd)} exited {proc.returncode}: {err.strip()}")
            raise GitOperationError(cmd, proc.returncode or 0, err)
        return out

    # -- branches -----------------------------------------------------------

    async def branch_exists(self, name: str) -> bool:
        res = await self.run("branch", "--list", name)
        return bool(res.strip())

    async def ensure_branch(self, name: str) -> bool:
        """Create ``name`` at HEAD without checking it out. Returns True if created."""
        if await self.branch_exists(name):
            return False
        try:
            await self.run("branch", name)
        except GitOperationError as e:
            if "already exists" in e.stderr:
                return False
            raise
        logger.info(f"[GIT] Created branch {name}")
        return True

    # -- worktrees ----------------------------------------------------------

    async def worktree_add(self, path: Path, branch: str) -> bool:
        """Check ``branch`` out at ``path``. Returns False if it was already there."""
        try:
            await self.run("worktree", "add", str(path), branch)
        except GitOperationError as e:
            if "already exists" in e.stderr:
                return False
            raise
        logger.info(f"[GIT] Worktree added: {path} ({branch})")
        return True

    async def worktree_remove(self, path: Path) -> None:
        await self.run("worktree", "remove", "--force", str(path))
        logger.info(f"[GIT] Worktree removed: {path}")

    async def list_worktrees(self) -> list[WorktreeEntry]:
        out = await self.run("worktree", "list", "--porcelain", check=False)
        return parse_worktree_list(out)

    # -- single-file commits -------------------------------------------------

    async def stage(self, rel_path: str, cwd: Path) -> None:
        await self.run("add", "--", rel_path, cwd=cwd)

    async def staged_diff(self, rel_path: str, cwd: Path) -> str:
        return await self.run("diff", "--cached", "--", rel_path, cwd=cwd)

    async def commit(
        self,
        message: str,
        rel_path: str,
        cwd: Path,
        user_name: str | None = None,
        user_email: str | None = None,
    ) -> None:
        # -c applies the author to this one command; repo config is untouched
        overrides: list[str] = []
        if user_name and user_email:
            overrides = ["-c", f"user.name={user_name}", "-c", f"user.email={user_email}"]
        # --only keeps anything else already in the index out of this commit
        await self.run(*overrides, "commit", "--only", "-m", message, "--", rel_path, cwd=cwd)
