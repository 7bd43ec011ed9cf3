"""Test helpers: a throwaway git runner and stand-ins for a supervised agent server."""

from __future__ import annotations

import asyncio
import json
import shutil
import subprocess
from pathlib import Path

import httpx
import pytest


requires_git = pytest.mark.skipif(shutil.which("git") is None, reason="git is not installed")


def git(repo: Path, *args: str) -> str:
    result = subprocess.run(["git", *args], cwd=repo, check=True, capture_output=True, text=True)
    return result.stdout


class FakeProcess:
    def __init__(self):
        self.returncode: int | None = None
        self.killed = False
        self._exited = asyncio.Event()
        self.stderr = asyncio.StreamReader()
        self.stderr.feed_data(b"listening\n")
        self.stderr.feed_eof()

    def kill(self) -> None:
        self.killed = True
        self.exit(-9)

    def exit(self, code: int = 0) -> None:
        if self.returncode is None:
            self.returncode = code
            self._exited.set()

    async def wait(self) -> int:
        await self._exited.wait()
        return self.returncode


class FakeSpawner:
    def __init__(self):
        self.calls: list[tuple[tuple[str, ...], str | None]] = []
        self.processes: list[FakeProcess] = []

    async def __call__(self, *cmd: str, cwd: str | None = None) -> FakeProcess:
        process = FakeProcess()
        self.calls.append((cmd, cwd))
        self.processes.append(process)
        return process


class FakeAgentServer:
    """Answers the control API the supervisor consumes."""

    def __init__(
        self,
        ready_after: int = 0,
        session_payload: object = None,
        prompt_payload: object = None,
        messages_payload: object = None,
        messages_after: int = 0,
    ):
        self.ready_after = ready_after
        self.session_payload = {"id": "ses_1"} if session_payload is None else session_payload
        self.prompt_payload = prompt_payload
        self.messages_payload = [] if messages_payload is None else messages_payload
        self.messages_after = messages_after
        self.probes = 0
        self.polls = 0
        self.prompts: list[dict] = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        if request.method == "GET" and path == "/session":
            self.probes += 1
            if self.probes <= self.ready_after:
                return httpx.Response(503)
            return httpx.Response(200, json=[])
        if request.method == "POST" and path == "/session":
            return httpx.Response(200, json=self.session_payload)
        if request.method == "POST" and path.endswith("/message"):
            self.prompts.append(json.loads(request.content))
            if self.prompt_payload is None:
                return httpx.Response(200)
            return httpx.Response(200, json=self.prompt_payload)
        if request.method == "GET" and path.endswith("/message"):
            self.polls += 1
            if self.polls <= self.messages_after:
                return httpx.Response(200, json=[])
            return httpx.Response(200, json=self.messages_payload)
        return httpx.Response(404)

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)


class SleepRecorder:
    def __init__(self):
        self.calls: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)
        await asyncio.sleep(0)


def text_message(*texts: str) -> dict:
    return {"info": {"role": "assistant"}, "parts": [{"type": "text", "text": t} for t in texts]}
