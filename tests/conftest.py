from __future__ import annotations

from pathlib import Path

import pytest

from forkyard.config_loader import ForkyardConfig, SupervisorConfig
from helpers import FakeSpawner, SleepRecorder, git


@pytest.fixture
def git_repo(tmp_path: Path) -> Path:
    repo = tmp_path / "repo"
    repo.mkdir()
    git(repo, "init", "-q")
    git(repo, "checkout", "-q", "-b", "main")
    (repo / "README.md").write_text("# demo\n")
    git(repo, "add", "README.md")
    git(repo, "-c", "user.name=Test", "-c", "user.email=test@example.com", "commit", "-q", "-m", "init")
    return repo


@pytest.fixture
def config() -> ForkyardConfig:
    return ForkyardConfig(
        supervisor=SupervisorConfig(
            startup_timeout=1.0,
            ready_interval=0.2,
            poll_attempts=3,
            poll_interval=0.2,
            quick_reply_timeout=0.5,
        )
    )


@pytest.fixture
def spawner() -> FakeSpawner:
    return FakeSpawner()


@pytest.fixture
def sleeper() -> SleepRecorder:
    return SleepRecorder()
