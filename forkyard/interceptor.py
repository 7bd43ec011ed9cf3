"""
Hooks around generic tool execution.

before(): routes the call into the session's workspace, if it has one.
after():  swaps in the richer result a mutation attached to the call,
          exactly once.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any

from loguru import logger
from pydantic import BaseModel, Field

from forkyard.mutation import MutationResult
from forkyard.workspace import WorkspaceManager


class ToolResult(BaseModel):
    title: str = ""
    output: str = ""
    metadata: dict[str, Any] = Field(default_factory=dict)


class ToolInvocation(BaseModel):
    call_id: str
    session_id: str
    tool: str
    args: dict[str, Any] = Field(default_factory=dict)
    enriched_result: MutationResult | None = None


class CallInterceptor:

    def __init__(self, manager: WorkspaceManager, root_directory: Path | None = None):
        self.manager = manager
        self.root_directory = root_directory or manager.repo_path

    def before(self, invocation: ToolInvocation) -> None:
        before_cwd = invocation.args.get("cwd")
        self.manager.route(invocation.session_id, invocation.tool, invocation.args, self.root_directory)
        if invocation.args.get("cwd") != before_cwd:
            logger.debug(f"[INTERCEPTOR] {invocation.tool} ({invocation.call_id}) -> {invocation.args['cwd']}")

    def after(self, invocation: ToolInvocation, result: ToolResult) -> ToolResult:
        enriched = invocation.enriched_result
        if enriched is None:
            return result
        invocation.enriched_result = None
        result.title = enriched.title
        result.output = enriched.output
        result.metadata = enriched.metadata.model_dump()
        return result
