from __future__ import annotations

from pathlib import Path

import pytest

from sandloop.config_loader import SandboxConfig, SandLoopConfig, WorkspaceConfig
from sandloop.router import ChatMessage, RouterResponse


class FakeRouter:
    """
    Stands in for Router. Replies are queued per role; the last queued
    reply repeats once the queue runs dry. Exceptions are raised.
    """

    def __init__(self, replies: dict[str, object]):
        self.replies = {
            role: list(value) if isinstance(value, list) else [value]
            for role, value in replies.items()
        }
        self.calls: list[tuple[str, list[ChatMessage]]] = []

    async def complete(self, role, messages, justification, **kwargs) -> RouterResponse:
        self.calls.append((role, messages))
        queue = self.replies.get(role, [""])
        reply = queue.pop(0) if len(queue) > 1 else queue[0]
        if isinstance(reply, BaseException):
            raise reply
        return RouterResponse(content=reply, model="fake/model", fragments=1)

    def prompts_for(self, role: str) -> list[str]:
        return [messages[-1].content for r, messages in self.calls if r == role]


@pytest.fixture(autouse=True)
def isolated_home(tmp_path, monkeypatch):
    home = tmp_path / "home"
    home.mkdir()
    monkeypatch.setenv("HOME", str(home))
    monkeypatch.delenv("SANDLOOP_MODEL", raising=False)
    monkeypatch.delenv("SANDLOOP_MAX_ITERATIONS", raising=False)
    return home


@pytest.fixture
def config(tmp_path) -> SandLoopConfig:
    return SandLoopConfig(
        sandbox=SandboxConfig(script_timeout=60),
        workspace=WorkspaceConfig(
            state_dir=str(tmp_path / "state"),
            log_dir=str(tmp_path / "logs"),
            transcripts=False,
        ),
    )


@pytest.fixture
def repo(tmp_path) -> Path:
    root = tmp_path / "repo"
    root.mkdir()
    (root / "README.md").write_text("# demo\n")
    (root / "c.txt").write_text("remove me\n")
    (root / "src").mkdir()
    (root / "src" / "app.py").write_text("print('app')\n")
    return root


@pytest.fixture
def fake_router():
    return FakeRouter
