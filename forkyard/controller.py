"""
FORKYARD Controller — the orchestration core.

Owns the workspace registry and the process table for its lifetime and
exposes the operations an agent's tool layer calls:

  - edit / write           exact-match edit or whole-file write, committed
  - new_agent              spawn a supervised sub-agent and hand it a task
  - send_prompt            talk to a running sub-agent
  - list_agents / kill_agent
  - jump_in / jump_out     opt a session into or out of an agent's workspace
  - before / after         tool-call interception hooks

It never merges branches. It only isolates and commits.
"""

from __future__ import annotations

import asyncio
from pathlib import Path

from loguru import logger
from pydantic import BaseModel

from forkyard.config_loader import ForkyardConfig, load_config
from forkyard.errors import MissingArgumentError, NotFoundError, WorkspacePolicyError
from forkyard.event_bus import EventBus
from forkyard.identity import IsolationPolicy, is_agent_name
from forkyard.interceptor import CallInterceptor, ToolInvocation, ToolResult
from forkyard.mutation import (
    EditOperation,
    MutationEngine,
    MutationMetadata,
    MutationResult,
)
from forkyard.supervisor import NO_REPLY, ProcessSupervisor
from forkyard.workspace import GitRunner, WorkspaceContext, WorkspaceManager, WorkspaceRegistry


class ToolContext(BaseModel):
    """Who is calling: the session handle, and the agent process it runs under, if any."""
    session_id: str
    agent: str | None = None


def _require(value: str | None, message: str) -> str:
    if value is None or not str(value).strip():
        raise MissingArgumentError(message)
    return value


class Controller:

    def __init__(
        self,
        repo_path: Path,
        config: ForkyardConfig | None = None,
        registry: WorkspaceRegistry | None = None,
        supervisor: ProcessSupervisor | None = None,
        bus: EventBus | None = None,
        git: GitRunner | None = None,
    ):
        self.repo_path = repo_path.resolve()
        self.config = config or load_config(self.repo_path)
        self.registry = registry or WorkspaceRegistry()
        self.git = git or GitRunner(self.repo_path)
        self.workspaces = WorkspaceManager(self.repo_path, self.config, self.registry, self.git)
        self.mutations = MutationEngine(self.git)
        self.supervisor = supervisor or ProcessSupervisor(self.config.supervisor)
        self.interceptor = CallInterceptor(self.workspaces)
        self.bus = bus or EventBus()
        self._background: set[asyncio.Task] = set()

    async def __aenter__(self) -> "Controller":
        return self

    async def __aexit__(self, *exc) -> None:
        await self.close()

    # ------------------------------------------------------------------
    # Identity / workspace plumbing
    # ------------------------------------------------------------------

    def _known_name(self, ctx: ToolContext) -> str | None:
        if not ctx.agent:
            return None
        summary = self.supervisor.describe(ctx.agent)
        return summary.name if summary else None

    async def _resolve(self, ctx: ToolContext, file_path: str) -> WorkspaceContext:
        return await self.workspaces.resolve(
            ctx.session_id,
            ctx.session_id,
            file_path,
            known_process_name=self._known_name(ctx),
        )

    def _finish(
        self,
        ctx: ToolContext,
        invocation: ToolInvocation | None,
        info: WorkspaceContext,
        diff: str,
        output: str,
        committed: bool,
    ) -> MutationResult:
        rel = info.relative_path
        result = MutationResult(
            title=rel,
            output=output,
            metadata=MutationMetadata(file_path=rel, diff=diff),
        )
        if committed:
            self.bus.emit("COMMIT_CREATED", ctx.session_id, {
                "file_path": rel,
                "branch": info.branch_name,
                "author": info.user_email,
            })
        if invocation is not None:
            invocation.enriched_result = result
        return result

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    async def edit(
        self,
        ctx: ToolContext,
        file_path: str,
        old_string: str,
        new_string: str,
        replace_all: bool = False,
        description: str | None = None,
        invocation: ToolInvocation | None = None,
    ) -> MutationResult:
        if not old_string:
            raise MissingArgumentError("old_string is required and must not be empty")

        info = await self._resolve(ctx, file_path)
        rel = info.relative_path
        desc = description if description and description.strip() else f"Update {rel}"
        op = EditOperation(file_path=rel, old_string=old_string, new_string=new_string, replace_all=replace_all)

        record = await self.mutations.edit(
            info.workspace_path, rel, op, desc, info.user_name, info.user_email
        )
        output = f"File edited and committed: {rel} on branch {info.branch_name}"
        return self._finish(ctx, invocation, info, record.unified_diff, output, record.committed)

    async def write(
        self,
        ctx: ToolContext,
        file_path: str,
        content: str,
        description: str | None,
        invocation: ToolInvocation | None = None,
    ) -> MutationResult:
        desc = _require(
            description,
            "The 'description' argument is required and must be a non-empty, technical "
            "one-line summary for the commit.",
        )

        info = await self._resolve(ctx, file_path)
        rel = info.relative_path
        record = await self.mutations.overwrite(
            info.workspace_path, rel, content, desc, info.user_name, info.user_email
        )
        output = f"File written and committed: {rel} on branch {info.branch_name}"
        return self._finish(ctx, invocation, info, record.unified_diff, output, record.committed)

    # ------------------------------------------------------------------
    # Sub-agents
    # ------------------------------------------------------------------

    async def new_agent(
        self,
        ctx: ToolContext,
        initial_prompt: str,
        policy: IsolationPolicy | None = None,
    ) -> str:
        _require(
            initial_prompt,
            "Initial prompt is required. Please include a detailed message describing "
            "the agent's goals and relevant context.",
        )
        policy = policy or self.config.identity.default_policy
        identity = self.workspaces.identity_for(ctx.session_id, self._known_name(ctx), policy)
        name = identity.workspace_name

        if policy is IsolationPolicy.WT:
            self.registry.mark_supervised(name)
            cwd = await self.workspaces.materialize(name, identity)
        else:
            cwd = self.repo_path

        remote = await self.supervisor.ensure_session(name, cwd=str(cwd))
        self.bus.emit("AGENT_STARTED", ctx.session_id, {
            "name": name,
            "policy": policy.value,
            "url": remote.url,
            "branch": identity.branch_name,
        })

        if policy is IsolationPolicy.LAZY:
            await self.supervisor.queue_input(name, initial_prompt)
            return f"Session {name} created"

        # Hand over the task; answer inline only if the agent replies right away
        task = asyncio.ensure_future(self.supervisor.run_prompt(name, initial_prompt))
        done, _ = await asyncio.wait({task}, timeout=self.config.supervisor.quick_reply_timeout)
        if task in done:
            if task.exception() is None:
                reply = task.result()
                if reply and reply != NO_REPLY:
                    return reply
            else:
                logger.warning(f"[CONTROLLER] Initial prompt for {name} failed: {task.exception()}")
        else:
            self._detach(name, task)
        return f"Session {name} created"

    def _detach(self, name: str, task: asyncio.Task) -> None:
        self._background.add(task)

        def _done(t: asyncio.Task) -> None:
            self._background.discard(t)
            if not t.cancelled() and t.exception() is not None:
                logger.warning(f"[CONTROLLER] Background prompt for {name} failed: {t.exception()}")

        task.add_done_callback(_done)

    async def send_prompt(self, prompt: str, name: str | None = None) -> str:
        _require(
            prompt,
            "Prompt is required. Please include a detailed message describing what you "
            "want the agent to do.",
        )
        if not name:
            active = [s for s in self.supervisor.list() if is_agent_name(s.name) and s.active]
            if not active:
                return "No active agent sessions found"
            name = active[0].name

        info = self.supervisor.describe(name)
        if info is None or not info.active:
            return f"Session {name} not running"

        reply = await self.supervisor.run_prompt(name, prompt)
        if reply and reply != NO_REPLY:
            return reply
        return f"Session {name} responded without text"

    def list_agents(self) -> str:
        agents = [s for s in self.supervisor.list() if is_agent_name(s.name)]
        if not agents:
            return "No sessions"
        return "\n".join(
            f"Session {s.name} active at {s.url}" if s.active else f"Session {s.name} exists but not active"
            for s in agents
        )

    async def kill_agent(self, name: str) -> str:
        _require(name, "Session ID is required. Please provide the session ID of the agent to kill.")
        if not await self.supervisor.shutdown(name):
            return f"Session {name} not found"
        self.bus.emit("AGENT_KILLED", name, {"name": name})
        return f"Session {name} killed"

    # ------------------------------------------------------------------
    # Isolation opt-in / opt-out
    # ------------------------------------------------------------------

    def jump_in(self, ctx: ToolContext, agent_name: str) -> str:
        _require(agent_name, "An agent session name is required to jump into its worktree.")
        if self.registry.is_supervised(ctx.session_id):
            raise WorkspacePolicyError("Worktree jumping is not available for supervised agent sessions.")
        target = self.registry.get(agent_name)
        if target is None or target.workspace_path is None:
            raise NotFoundError(f"No worktree registered for agent {agent_name}")

        self.registry.opt_in(ctx.session_id, target.workspace_path, target.branch_name)
        self.bus.emit("WORKSPACE_OPT_IN", ctx.session_id, {"agent": agent_name, "path": str(target.workspace_path)})
        return f"Jumped into {agent_name}'s worktree"

    def jump_out(self, ctx: ToolContext) -> str:
        if self.registry.is_supervised(ctx.session_id):
            raise WorkspacePolicyError("Supervised agent sessions always use their worktree.")
        self.registry.opt_out(ctx.session_id)
        self.bus.emit("WORKSPACE_OPT_OUT", ctx.session_id, {})
        return "Jumped back to the main, non-worktree session"

    async def discard(self, session: str) -> bool:
        summary = self.supervisor.describe(session)
        if summary is not None and summary.active:
            raise WorkspacePolicyError(f"Agent {session} is still running; kill it before discarding its worktree.")
        return await self.workspaces.discard(session)

    # ------------------------------------------------------------------
    # Interception
    # ------------------------------------------------------------------

    def before(self, invocation: ToolInvocation) -> None:
        self.interceptor.before(invocation)

    def after(self, invocation: ToolInvocation, result: ToolResult) -> ToolResult:
        return self.interceptor.after(invocation, result)

    # ------------------------------------------------------------------
    # Teardown
    # ------------------------------------------------------------------

    async def close(self) -> None:
        for task in list(self._background):
            task.cancel()
        self._background.clear()
        await self.supervisor.dispose()
        self.registry.reset()
