#!/usr/bin/env python3
"""
Tests for the document cache: TTL, stale fallback, single-flight and refresh.
"""

import asyncio
import json
from http.client import RemoteDisconnected
from unittest.mock import MagicMock, patch

from conftest import FakeGitHubClient, SAMPLE_FILES, SAMPLE_TREES, run_async
from kb_mcp.cache import DocumentCache
from kb_mcp.discovery import DiscoveryService
from kb_mcp.github import GitHubClient


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


def make_cache(registry, client, clock=None, ttl=300):
    return DocumentCache(registry, DiscoveryService(client), ttl=ttl, clock=clock or FakeClock())


class TestTimeToLive:
    """Tests for live and expired entries."""

    def test_live_entry_served_without_scan(self, registry, fake_client):
        clock = FakeClock()
        cache = make_cache(registry, fake_client, clock)

        first = run_async(cache.get_documents("vision"))
        clock.now += 299
        second = run_async(cache.get_documents("vision"))

        assert first == second
        assert fake_client.tree_calls == ["vision"]

    def test_expired_entry_rescanned(self, registry, fake_client):
        """An entry exactly TTL seconds old is no longer live."""
        clock = FakeClock()
        cache = make_cache(registry, fake_client, clock)

        run_async(cache.get_documents("vision"))
        clock.now += 300
        run_async(cache.get_documents("vision"))

        assert fake_client.tree_calls == ["vision", "vision"]

    def test_rescan_picks_up_new_documents(self, registry, fake_client):
        clock = FakeClock()
        cache = make_cache(registry, fake_client, clock)
        assert len(run_async(cache.get_documents("processes"))) == 1

        fake_client.trees["processes"] = fake_client.trees["processes"] + [
            {"path": "processes/hiring.md", "type": "blob"},
        ]
        clock.now += 301
        names = [d.name for d in run_async(cache.get_documents("processes"))]
        assert names == ["onboarding", "hiring"]

    def test_listing_edits_stay_local(self, registry, fake_client):
        """Editing one client's listing leaves the shared samples alone."""
        fake_client.trees["processes"].append({"path": "processes/extra.md", "type": "blob"})
        fake_client.files["processes:processes/extra.md"] = "# Extra\n"

        assert len(SAMPLE_TREES["processes"]) == 1
        assert "processes:processes/extra.md" not in SAMPLE_FILES
        fresh = FakeGitHubClient(SAMPLE_TREES, SAMPLE_FILES)
        assert len(run_async(make_cache(registry, fresh).get_documents("processes"))) == 1


class TestStaleFallback:
    """Tests for scan failures."""

    def test_stale_entry_served_on_failure(self, registry, fake_client):
        clock = FakeClock()
        cache = make_cache(registry, fake_client, clock)
        fresh = run_async(cache.get_documents("vision"))

        fake_client.failing.add("vision")
        clock.now += 1000
        stale = run_async(cache.get_documents("vision"))

        assert stale == fresh
        assert len(fake_client.tree_calls) == 2

    def test_failure_without_entry_is_empty(self, registry, fake_client):
        fake_client.failing.add("vision")
        cache = make_cache(registry, fake_client)
        assert run_async(cache.get_documents("vision")) == []

    def test_failure_does_not_cache(self, registry, fake_client):
        """A failed scan leaves nothing behind, so the next call scans again."""
        fake_client.failing.add("vision")
        cache = make_cache(registry, fake_client)
        run_async(cache.get_documents("vision"))
        fake_client.failing.clear()

        assert len(run_async(cache.get_documents("vision"))) == 2
        assert fake_client.tree_calls == ["vision", "vision"]

    def test_one_failure_does_not_hide_others(self, registry, fake_client):
        fake_client.failing.add("technical-state")
        cache = make_cache(registry, fake_client)
        docs = run_async(cache.get_documents())
        assert {d.knowledge_base for d in docs} == {"vision", "processes"}


class TestLookups:
    """Tests for id handling and aggregation."""

    def test_unknown_id_is_empty(self, registry, fake_client):
        cache = make_cache(registry, fake_client)
        assert run_async(cache.get_documents("nonexistent")) == []
        assert fake_client.tree_calls == []

    def test_all_in_configuration_order(self, registry, fake_client):
        cache = make_cache(registry, fake_client)
        docs = run_async(cache.get_documents())
        assert [d.knowledge_base for d in docs] == [
            "vision", "vision", "technical-state", "technical-state", "processes",
        ]

    def test_concurrent_misses_share_one_scan(self, registry, fake_client):
        fake_client.tree_delay = 0.01
        cache = make_cache(registry, fake_client)

        async def both():
            return await asyncio.gather(
                cache.get_documents("vision"),
                cache.get_documents("vision"),
                cache.get_documents(),
            )

        first, second, everything = run_async(both())
        assert first == second
        assert len(everything) == 5
        assert fake_client.tree_calls.count("vision") == 1


class TestRefresh:
    """Tests for refresh()."""

    def test_refresh_bypasses_ttl(self, registry, fake_client):
        cache = make_cache(registry, fake_client)
        run_async(cache.get_documents())

        counts = run_async(cache.refresh())

        assert counts == {"vision": 2, "technical-state": 2, "processes": 1}
        assert fake_client.tree_calls.count("vision") == 2

    def test_refresh_drops_stale_entries(self, registry, fake_client):
        """Entries are cleared first, so a failing scan reports zero."""
        cache = make_cache(registry, fake_client)
        run_async(cache.get_documents())
        fake_client.failing.add("vision")

        counts = run_async(cache.refresh())
        assert counts["vision"] == 0

    def test_stats(self, registry, fake_client):
        clock = FakeClock()
        cache = make_cache(registry, fake_client, clock)
        run_async(cache.get_documents("vision"))
        clock.now += 10

        stats = cache.stats()
        assert stats["ttl_seconds"] == 300
        assert stats["knowledge_bases"]["vision"] == {
            "cached": True, "documents": 2, "age_seconds": 10, "live": True,
        }
        assert stats["knowledge_bases"]["processes"] == {"cached": False}


class TestUnexpectedFailures:
    """Errors from below discovery never escape the cache."""

    def test_dropped_connection_serves_stale(self, registry):
        clock = FakeClock()
        client = GitHubClient(max_retries=0)
        cache = make_cache(registry, client, clock)
        listing = json.dumps({"tree": [{"path": "vision/a.md", "type": "blob"}]}).encode()

        def answer(request, *args, **kwargs):
            response = MagicMock()
            response.headers = {}
            response.geturl.return_value = request.full_url
            response.read.side_effect = [listing, b""]
            response.__enter__ = MagicMock(return_value=response)
            response.__exit__ = MagicMock(return_value=False)
            return response

        with patch("kb_mcp.github.urlopen", side_effect=answer):
            assert [d.name for d in run_async(cache.get_documents("vision"))] == ["a"]

        clock.now += 301
        disconnect = RemoteDisconnected("Remote end closed connection without response")
        with patch("kb_mcp.github.urlopen", side_effect=disconnect):
            assert [d.name for d in run_async(cache.get_documents("vision"))] == ["a"]

    def test_unexpected_error_without_entry_is_empty(self, registry, fake_client):
        async def broken(kb):
            raise RuntimeError("boom")

        fake_client.fetch_tree = broken
        cache = make_cache(registry, fake_client)
        assert run_async(cache.get_documents("vision")) == []
        assert cache.stats()["knowledge_bases"]["vision"] == {"cached": False}

    def test_unexpected_error_serves_stale(self, registry, fake_client):
        clock = FakeClock()
        cache = make_cache(registry, fake_client, clock)
        fresh = run_async(cache.get_documents("technical-state"))

        async def broken(kb):
            raise KeyError("tree")

        fake_client.fetch_tree = broken
        clock.now += 301
        assert run_async(cache.get_documents("technical-state")) == fresh
