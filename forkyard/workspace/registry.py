"""
In-memory map of session handle -> workspace.

Lives exactly as long as the owning Controller. Nothing is persisted:
after a restart sessions re-register on their next mutation.
"""

from __future__ import annotations

from pathlib import Path

from loguru import logger
from pydantic import BaseModel


class WorkspaceRecord(BaseModel):
    session_handle: str
    workspace_path: Path | None = None
    branch_name: str | None = None
    supervised_agent: bool = False
    opted_in: bool = False


class WorkspaceRegistry:

    def __init__(self):
        self._records: dict[str, WorkspaceRecord] = {}

    def _record(self, session: str) -> WorkspaceRecord:
        record = self._records.get(session)
        if record is None:
            record = WorkspaceRecord(session_handle=session)
            self._records[session] = record
        return record

    def register(self, session: str, workspace_path: Path, branch_name: str | None = None) -> WorkspaceRecord:
        record = self._record(session)
        record.workspace_path = workspace_path
        if branch_name is not None:
            record.branch_name = branch_name
        logger.debug(f"[WORKSPACE] {session} -> {workspace_path}")
        return record

    def get(self, session: str) -> WorkspaceRecord | None:
        return self._records.get(session)

    def workspace_for(self, session: str) -> Path | None:
        record = self._records.get(session)
        return record.workspace_path if record else None

    def mark_supervised(self, session: str) -> WorkspaceRecord:
        record = self._record(session)
        record.supervised_agent = True
        return record

    def is_supervised(self, session: str) -> bool:
        record = self._records.get(session)
        return bool(record and record.supervised_agent)

    def opt_in(self, session: str, workspace_path: Path, branch_name: str | None = None) -> WorkspaceRecord:
        record = self.register(session, workspace_path, branch_name)
        record.opted_in = True
        return record

    def opt_out(self, session: str) -> None:
        """Forget the session's workspace. Supervised sessions are refused by the caller."""
        self._records.pop(session, None)

    def sessions(self) -> list[WorkspaceRecord]:
        return list(self._records.values())

    def reset(self) -> None:
        self._records.clear()
