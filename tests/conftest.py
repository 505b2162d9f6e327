"""Shared fixtures for the gateway supervisor tests."""

import asyncio
import shutil
import time
from pathlib import Path

import pytest

from gateway_supervisor.config import Config
from gateway_supervisor.git import FetchError


async def wait_until(predicate, timeout: float = 5.0, interval: float = 0.02):
    """Poll predicate until it is true or fail after timeout seconds."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return
        await asyncio.sleep(interval)
    raise AssertionError("condition not met within timeout")


class FakeFetcher:
    """Stands in for GitFetcher by copying a local directory."""

    def __init__(self, source: Path, revision: str = "abc123"):
        self.source = Path(source)
        self.revision = revision
        self.calls = 0
        self.tokens = []
        self.error = None

    def fetch(self, url, dest, token=None, branch=None):
        self.calls += 1
        self.tokens.append(token)
        if self.error:
            raise FetchError(self.error)
        shutil.copytree(self.source, dest)
        return self.revision


@pytest.fixture
def remote(tmp_path):
    """A fake remote checkout with a skills sub-tree."""
    root = tmp_path / "remote"
    (root / "skills" / "weather").mkdir(parents=True)
    (root / "skills" / "weather" / "SKILL.md").write_text("# Weather\n")
    (root / "skills" / "calendar.md").write_text("# Calendar\n")
    (root / "README.md").write_text("skills repo\n")
    return root


@pytest.fixture
def config(tmp_path):
    return Config(
        agent_id="employee-7",
        data_dir=tmp_path / "data",
        workspace_dir=tmp_path / "workspace",
        staging_dir=tmp_path / "staging",
        skills_sync_enabled=False,
        skills_repo_url="",
        skills_token_secret="test-skills-token",
        key_vault_name="",
        secret_backend_url="",
        gateway_install_command="",
        required_secrets=[],
        restart_delay=0.1,
        min_uptime=30,
        stop_timeout=2,
    )
