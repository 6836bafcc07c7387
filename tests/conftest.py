"""Shared fixtures: fake GitHub client, registry and loop helper."""

import asyncio
from typing import Any, Optional

import pytest

from kb_mcp.config import Config, reset_config
from kb_mcp.github import FetchError, GitHubClient
from kb_mcp.knowledge_bases import KnowledgeBase, KnowledgeBaseRegistry


def run_async(coro):
    """Run a coroutine on a fresh event loop."""
    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    try:
        return loop.run_until_complete(coro)
    finally:
        loop.close()
        asyncio.set_event_loop(None)


def tree_entry(path: str, kind: str = "blob") -> dict[str, Any]:
    return {"path": path, "type": kind}


class FakeGitHubClient(GitHubClient):
    """GitHubClient serving trees and files from memory."""

    def __init__(
        self,
        trees: Optional[dict[str, list[dict[str, Any]]]] = None,
        files: Optional[dict[str, str]] = None,
    ):
        super().__init__(token=None)
        # Copies, so edits in one test never reach the shared samples
        self.trees = {kb_id: list(entries) for kb_id, entries in (trees or {}).items()}
        self.files = dict(files or {})
        self.failing: set[str] = set()
        self.tree_calls: list[str] = []
        self.raw_calls: list[tuple[str, str]] = []
        self.tree_delay = 0.0

    async def fetch_tree(self, kb: KnowledgeBase) -> dict[str, Any]:
        self.tree_calls.append(kb.id)
        if self.tree_delay:
            await asyncio.sleep(self.tree_delay)
        if kb.id in self.failing:
            raise FetchError(self.tree_url(kb), status=500, reason="Internal Server Error")
        return {"tree": list(self.trees.get(kb.id, [])), "truncated": False}

    async def fetch_raw(self, kb: KnowledgeBase, path: str) -> str:
        self.raw_calls.append((kb.id, path))
        key = f"{kb.id}:{path}"
        if key not in self.files:
            raise FetchError(self.raw_url(kb, path), status=404, reason="Not Found")
        return self.files[key]


SAMPLE_TREES = {
    "vision": [
        tree_entry("vision", "tree"),
        tree_entry("vision/merchant-enlil-bani.md"),
        tree_entry("vision/notes", "tree"),
        tree_entry("vision/notes/a.md"),
        tree_entry("vision/diagram.png"),
        tree_entry("processes/onboarding.md"),
        tree_entry("README.md"),
    ],
    "technical-state": [
        tree_entry("technical-state/architecture.md"),
        tree_entry("technical-state/api-design.md"),
    ],
    "processes": [
        tree_entry("processes/onboarding.md"),
    ],
}

SAMPLE_FILES = {
    "vision:vision/merchant-enlil-bani.md": "# Merchant Enlil Bani\n\nBabylonian trade.",
    "vision:vision/notes/a.md": "# A\n",
    "processes:processes/onboarding.md": "# Onboarding\n",
}


@pytest.fixture
def registry():
    """The built-in knowledge bases."""
    return KnowledgeBaseRegistry()


@pytest.fixture
def fake_client():
    return FakeGitHubClient(trees=SAMPLE_TREES, files=SAMPLE_FILES)


@pytest.fixture
def config():
    return Config()


@pytest.fixture(autouse=True)
def _reset_config():
    reset_config()
    yield
    reset_config()
