#!/usr/bin/env python3
"""
Tests for repository tree scanning.
"""

from http.client import IncompleteRead
from unittest.mock import MagicMock, patch

import pytest

from conftest import FakeGitHubClient, run_async, tree_entry
from kb_mcp.discovery import DiscoveryService, documents_from_tree
from kb_mcp.errors import DiscoveryError
from kb_mcp.github import GitHubClient
from kb_mcp.knowledge_bases import KnowledgeBase

VISION = KnowledgeBase(
    id="vision", name="Acornio Vision", description="", owner="mchlkucera",
    repo="acornio", branch="main", path="./vision",
)
WHOLE_REPO = KnowledgeBase(
    id="everything", name="Everything", description="", owner="o", repo="r", path="./",
)


class TestDocumentsFromTree:
    """Tests for the tree entry filter and name mapping."""

    def test_nested_document(self):
        """Nested paths keep their separators; the title uses the last segment."""
        docs = documents_from_tree(VISION, [tree_entry("vision/notes/a.md")])
        assert len(docs) == 1
        doc = docs[0]
        assert doc.name == "notes/a"
        assert doc.title == "A"
        assert doc.path == "vision/notes/a.md"
        assert doc.knowledge_base == "vision"
        assert doc.description == "Acornio Vision: A"

    def test_title_from_slug(self):
        docs = documents_from_tree(VISION, [tree_entry("vision/merchant-enlil-bani.md")])
        assert docs[0].name == "merchant-enlil-bani"
        assert docs[0].title == "Merchant Enlil Bani"

    def test_non_markdown_and_directories_skipped(self):
        entries = [
            tree_entry("vision/diagram.png"),
            tree_entry("vision/archive.md", "tree"),
            tree_entry("vision/readme.MD"),
        ]
        assert documents_from_tree(VISION, entries) == []

    def test_out_of_scope_skipped(self):
        entries = [
            tree_entry("processes/onboarding.md"),
            tree_entry("vision-old/legacy.md"),
            tree_entry("README.md"),
        ]
        assert documents_from_tree(VISION, entries) == []

    def test_whole_repository_scope(self):
        entries = [tree_entry("README.md"), tree_entry("docs/guide.md")]
        names = [d.name for d in documents_from_tree(WHOLE_REPO, entries)]
        assert names == ["README", "docs/guide"]

    def test_tree_order_preserved(self):
        entries = [tree_entry("vision/b.md"), tree_entry("vision/a.md")]
        assert [d.name for d in documents_from_tree(VISION, entries)] == ["b", "a"]

    def test_only_trailing_extension_removed(self):
        docs = documents_from_tree(VISION, [tree_entry("vision/a.md.backup.md")])
        assert docs[0].name == "a.md.backup"

    def test_malformed_entries_skipped(self):
        entries = ["not-a-dict", {"type": "blob"}, {"path": 5, "type": "blob"}]
        assert documents_from_tree(VISION, entries) == []


class TestDiscoveryService:
    """Tests for scan() and discover()."""

    def test_scan(self, fake_client):
        docs = run_async(DiscoveryService(fake_client).scan(VISION))
        assert [d.name for d in docs] == ["merchant-enlil-bani", "notes/a"]
        assert fake_client.tree_calls == ["vision"]

    def test_scan_failure_raises(self, fake_client):
        fake_client.failing.add("vision")
        with pytest.raises(DiscoveryError, match="vision"):
            run_async(DiscoveryService(fake_client).scan(VISION))

    def test_discover_failure_returns_empty(self):
        client = FakeGitHubClient()
        client.failing.add("vision")
        assert run_async(DiscoveryService(client).discover(VISION)) == []

    def test_discover_truncated_body_returns_empty(self):
        """A listing cut off mid-read is absorbed like any other fetch failure."""
        response = MagicMock()
        response.headers = {}
        response.geturl.return_value = GitHubClient().tree_url(VISION)
        response.read.side_effect = IncompleteRead(b'{"tree": [', 100)
        response.__enter__ = MagicMock(return_value=response)
        response.__exit__ = MagicMock(return_value=False)

        with patch("kb_mcp.github.urlopen", return_value=response):
            docs = run_async(DiscoveryService(GitHubClient(max_retries=0)).discover(VISION))
        assert docs == []
