"""
FORKYARD Mutation Engine

Exact-match edits and whole-file writes inside a session workspace,
each followed by a commit that stages only the touched file and carries
the session's derived author.

Order within one request is fixed:
  read -> compute new content -> write -> diff -> stage -> commit
"""

from __future__ import annotations

import asyncio
import difflib
import re
from pathlib import Path

from loguru import logger
from pydantic import BaseModel

from forkyard.errors import AmbiguousMatchError, MissingArgumentError, NotFoundError
from forkyard.workspace.git import GitRunner

NO_NEWLINE_MARKER = "\\ No newline at end of file"


# ---------------------------------------------------------------------------
# Models
# ---------------------------------------------------------------------------

class EditOperation(BaseModel):
    file_path: str
    old_string: str
    new_string: str
    replace_all: bool = False


class CommitRecord(BaseModel):
    relative_path: str
    unified_diff: str
    description: str
    branch_name: str | None = None
    committed: bool = True


class MutationMetadata(BaseModel):
    file_path: str
    diff: str


class MutationResult(BaseModel):
    """What a mutation tool reports back: richer than its plain output string."""
    title: str
    output: str
    metadata: MutationMetadata


# ---------------------------------------------------------------------------
# Pure helpers
# ---------------------------------------------------------------------------

def apply_edit(content: str, op: EditOperation) -> str:
    old, new = op.old_string, op.new_string
    if not old:
        raise MissingArgumentError("old_string must not be empty")

    if op.replace_all:
        replaced = new.join(content.split(old))
        if replaced == content:
            raise NotFoundError(f"old_string not found in {op.file_path}: {old!r}")
        return replaced

    index = content.find(old)
    if index == -1:
        raise NotFoundError(f"old_string not found in {op.file_path}: {old!r}")
    if content.find(old, index + 1) != -1:
        raise AmbiguousMatchError(
            f"old_string found multiple times in {op.file_path} and requires more code context "
            "to uniquely identify the intended match. Either provide a larger string with more "
            "surrounding context to make it unique or use replace_all to change every instance."
        )
    return content[:index] + new + content[index + len(old):]


def compute_diff(label: str, before: str, after: str) -> str:
    """Unified diff of two full contents, git-compatible (no-newline markers included)."""
    lines: list[str] = []
    for line in difflib.unified_diff(
        before.splitlines(keepends=True),
        after.splitlines(keepends=True),
        fromfile=label,
        tofile=label,
    ):
        if line.endswith("\n"):
            lines.append(line)
        else:
            lines.append(f"{line}\n{NO_NEWLINE_MARKER}\n")
    return "".join(lines)


def normalize_diff_indent(diff: str) -> str:
    """
    Strip the indent shared by every non-blank body line of a diff.

    Display only: hunk headers and markers are untouched, and the raw diff
    is returned when there is nothing to strip.
    """
    lines = diff.split("\n")
    body: list[int] = []
    in_hunk = False
    for i, line in enumerate(lines):
        if line.startswith("@@"):
            in_hunk = True
        elif in_hunk and line[:1] in ("+", "-", " "):
            body.append(i)
    if not body:
        return diff

    indents = [
        len(text) - len(text.lstrip())
        for text in (lines[i][1:] for i in body)
        if text.strip()
    ]
    indent = min(indents, default=0)
    if indent == 0:
        return diff

    for i in body:
        lines[i] = lines[i][0] + lines[i][1:][indent:]
    return "\n".join(lines)


# Code-like first words keep their case: _private, $var, ALL_CAPS,
# kebab-case, snake_case, camelCase, PascalCase
_SYMBOL = re.compile(
    r"^([_$][A-Za-z0-9_$]*|[A-Z0-9_]+|[a-z0-9]+(?:[-_][a-z0-9]+)+"
    r"|[a-z][A-Za-z0-9]*[A-Z][A-Za-z0-9]*|[A-Z][a-z0-9]+(?:[A-Z][A-Za-z0-9]+)+)$"
)
_PLAIN_CAPITALIZED = re.compile(r"^[A-Z][a-z]+$")
_OPENERS = "([<{\"'"


def style_commit_message(description: str) -> str:
    """Lower-case the first letter of a commit message unless it starts with a code symbol."""
    first_word = description.split(" ")[0]
    if not first_word:
        return description
    idx = 1 if first_word[0] in _OPENERS else 0
    if idx >= len(first_word):
        return description
    if _SYMBOL.match(first_word) and not _PLAIN_CAPITALIZED.match(first_word[idx:]):
        return description
    return description[:idx] + description[idx].lower() + description[idx + 1:]


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------

def _read_text(path: Path) -> str:
    with open(path, "r", encoding="utf-8", newline="") as f:
        return f.read()


def _write_text(path: Path, content: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w", encoding="utf-8", newline="") as f:
        f.write(content)


class MutationEngine:

    def __init__(self, git: GitRunner):
        self.git = git

    async def read(self, workspace: Path, rel_path: str) -> str:
        path = workspace / rel_path
        try:
            return await asyncio.to_thread(_read_text, path)
        except FileNotFoundError:
            raise NotFoundError(f"File not found in workspace: {rel_path}") from None

    async def write(self, workspace: Path, rel_path: str, content: str) -> None:
        await asyncio.to_thread(_write_text, workspace / rel_path, content)

    async def commit(
        self,
        workspace: Path,
        rel_path: str,
        description: str,
        user_name: str | None = None,
        user_email: str | None = None,
    ) -> str:
        """
        Stage exactly ``rel_path`` and commit it with a one-shot author.

        Returns the staged diff. Nothing is committed when the file is
        unchanged; an empty string is returned instead.
        """
        await self.git.stage(rel_path, cwd=workspace)
        diff = await self.git.staged_diff(rel_path, cwd=workspace)
        if not diff.strip():
            logger.info(f"[MUTATION] Nothing to commit for {rel_path}")
            return ""
        await self.git.commit(
            style_commit_message(description), rel_path, cwd=workspace, user_name=user_name, user_email=user_email
        )
        logger.info(f"[MUTATION] Committed {rel_path} as {user_name or 'repo default'}")
        return diff

    async def edit(
        self,
        workspace: Path,
        rel_path: str,
        op: EditOperation,
        description: str,
        user_name: str | None = None,
        user_email: str | None = None,
    ) -> CommitRecord:
        before = await self.read(workspace, rel_path)
        after = apply_edit(before, op)
        await self.write(workspace, rel_path, after)
        diff = normalize_diff_indent(compute_diff(rel_path, before, after))
        staged = await self.commit(workspace, rel_path, description, user_name, user_email)
        return CommitRecord(
            relative_path=rel_path,
            unified_diff=diff,
            description=description,
            committed=bool(staged),
        )

    async def overwrite(
        self,
        workspace: Path,
        rel_path: str,
        content: str,
        description: str,
        user_name: str | None = None,
        user_email: str | None = None,
    ) -> CommitRecord:
        await self.write(workspace, rel_path, content)
        diff = await self.commit(workspace, rel_path, description, user_name, user_email)
        return CommitRecord(
            relative_path=rel_path,
            unified_diff=diff,
            description=description,
            committed=bool(diff),
        )
