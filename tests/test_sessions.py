#!/usr/bin/env python3
"""
Tests for the session registry lifecycle.

Bindings are replaced by in-memory fakes so the lifecycle rules can be
checked without the MCP transport.
"""

import asyncio

import anyio
import pytest

from conftest import run_async
from kb_mcp.errors import SessionReconnectError
from kb_mcp.sessions import SessionBinding, SessionRegistry

SCOPE = {"type": "http", "method": "POST", "headers": []}


async def receive():
    return {"type": "http.request", "body": b"", "more_body": False}


class Sent:
    """Collects ASGI messages."""

    def __init__(self):
        self.messages = []

    async def __call__(self, message):
        self.messages.append(message)

    @property
    def status(self):
        for message in self.messages:
            if message["type"] == "http.response.start":
                return message["status"]
        return None


class FakeBinding(SessionBinding):
    def __init__(self, session_id, resumed, status=200, connect_delay=0.0):
        self.session_id = session_id
        self.resumed = resumed
        self.status = status
        self.connect_delay = connect_delay
        self.connects = 0
        self.reconnects = 0
        self.requests = 0
        self.fail_reconnect = False
        self.close_on_request = False
        self.closed = False

    @property
    def is_closed(self):
        return self.closed

    async def connect(self):
        self.connects += 1
        if self.connect_delay:
            await anyio.sleep(self.connect_delay)

    async def reconnect(self):
        self.reconnects += 1
        if self.fail_reconnect:
            raise SessionReconnectError(self.session_id, "server task gone")

    async def handle_request(self, scope, receive, send):
        self.requests += 1
        if self.close_on_request:
            self.closed = True
        if self.status is None:
            return None
        await send({"type": "http.response.start", "status": self.status, "headers": []})
        await send({"type": "http.response.body", "body": b""})
        return self.status

    async def close(self):
        self.closed = True


class FakeFactory:
    def __init__(self, status=200, connect_delay=0.0):
        self.status = status
        self.connect_delay = connect_delay
        self.created = []

    def __call__(self, session_id, resumed, task_group):
        binding = FakeBinding(session_id, resumed, self.status, self.connect_delay)
        self.created.append(binding)
        return binding


def run_in_registry(registry, body):
    """Run ``body(registry)`` inside the registry's task group."""
    async def runner():
        async with registry.run():
            return await body(registry)
    return run_async(runner())


class TestCreate:
    """Tests for new sessions."""

    def test_new_session_stored_under_generated_id(self):
        factory = FakeFactory()
        registry = SessionRegistry(factory)

        async def body(reg):
            sent = Sent()
            await reg.handle_request(None, SCOPE, receive, sent)
            return sent

        sent = run_in_registry(registry, body)
        binding = factory.created[0]
        assert sent.status == 200
        assert binding.resumed is False
        assert len(binding.session_id) == 32
        assert binding.connects == 1

    def test_failed_opening_request_not_kept(self):
        factory = FakeFactory(status=400)
        registry = SessionRegistry(factory)

        async def body(reg):
            await reg.handle_request(None, SCOPE, receive, Sent())
            return len(reg)

        assert run_in_registry(registry, body) == 0
        assert factory.created[0].closed is True

    def test_opening_request_without_response_not_kept(self):
        factory = FakeFactory(status=None)
        registry = SessionRegistry(factory)

        async def body(reg):
            await reg.handle_request(None, SCOPE, receive, Sent())
            return len(reg)

        assert run_in_registry(registry, body) == 0

    def test_create_requires_running_registry(self):
        registry = SessionRegistry(FakeFactory())
        with pytest.raises(RuntimeError, match="not running"):
            run_async(registry.create())


class TestResolve:
    """Tests for requests on known session ids."""

    def test_known_session_reused(self):
        factory = FakeFactory()
        registry = SessionRegistry(factory)

        async def body(reg):
            binding = await reg.create()
            await reg.handle_request(binding.session_id, SCOPE, receive, Sent())
            await reg.handle_request(binding.session_id, SCOPE, receive, Sent())
            return binding

        binding = run_in_registry(registry, body)
        assert len(factory.created) == 1
        assert binding.requests == 2
        assert binding.reconnects == 2

    def test_resolve_unknown_is_none(self):
        registry = SessionRegistry(FakeFactory())

        async def body(reg):
            return await reg.resolve("unknown")

        assert run_in_registry(registry, body) is None

    def test_reconnect_failure_creates_fresh_binding(self):
        factory = FakeFactory()
        registry = SessionRegistry(factory)

        async def body(reg):
            broken = await reg.create()
            broken.fail_reconnect = True
            sent = Sent()
            await reg.handle_request(broken.session_id, SCOPE, receive, sent)
            return broken, reg.get(broken.session_id), sent

        broken, replacement, sent = run_in_registry(registry, body)
        assert sent.status == 200
        assert broken.closed is True
        assert broken.requests == 0
        assert replacement is not broken
        assert replacement.session_id == broken.session_id
        assert replacement.resumed is True

    def test_binding_closed_during_request_is_forgotten(self):
        factory = FakeFactory()
        registry = SessionRegistry(factory)

        async def body(reg):
            binding = await reg.create()
            binding.close_on_request = True
            await reg.handle_request(binding.session_id, SCOPE, receive, Sent())
            return binding.session_id in reg

        assert run_in_registry(registry, body) is False


class TestRecovery:
    """Tests for ids the registry has never seen."""

    def test_unknown_id_recovered_under_same_id(self):
        factory = FakeFactory()
        registry = SessionRegistry(factory)

        async def body(reg):
            sent = Sent()
            await reg.handle_request("abc123", SCOPE, receive, sent)
            return sent, reg.get("abc123")

        sent, binding = run_in_registry(registry, body)
        assert sent.status == 200
        assert binding is factory.created[0]
        assert binding.resumed is True

    def test_recovered_session_kept_even_if_request_fails(self):
        """Only sessions opened without an id are discarded on failure."""
        factory = FakeFactory(status=400)
        registry = SessionRegistry(factory)

        async def body(reg):
            await reg.handle_request("abc123", SCOPE, receive, Sent())
            return "abc123" in reg

        assert run_in_registry(registry, body) is True

    def test_racing_requests_share_one_binding(self):
        factory = FakeFactory(connect_delay=0.01)
        registry = SessionRegistry(factory)

        async def body(reg):
            first, second = Sent(), Sent()
            await asyncio.gather(
                reg.handle_request("abc123", SCOPE, receive, first),
                reg.handle_request("abc123", SCOPE, receive, second),
            )
            return first, second

        first, second = run_in_registry(registry, body)
        assert len(factory.created) == 1
        assert factory.created[0].requests == 2
        assert first.status == second.status == 200
        assert len(registry) == 0  # closed on shutdown


class TestStateless:
    """Tests for stateless mode."""

    def test_binding_never_stored(self):
        factory = FakeFactory()
        registry = SessionRegistry(factory, stateless=True)

        async def body(reg):
            await reg.handle_request(None, SCOPE, receive, Sent())
            await reg.handle_request("abc123", SCOPE, receive, Sent())
            return len(reg)

        assert run_in_registry(registry, body) == 0
        assert len(factory.created) == 2
        for binding in factory.created:
            assert binding.session_id is None
            assert binding.closed is True


class TestTerminate:
    """Tests for terminate() and shutdown."""

    def test_terminate_is_idempotent(self):
        registry = SessionRegistry(FakeFactory())

        async def body(reg):
            binding = await reg.create()
            first = await reg.terminate(binding.session_id)
            second = await reg.terminate(binding.session_id)
            return binding, first, second

        binding, first, second = run_in_registry(registry, body)
        assert first is True
        assert second is False
        assert binding.closed is True

    def test_terminate_unknown(self):
        registry = SessionRegistry(FakeFactory())

        async def body(reg):
            return await reg.terminate("never-existed")

        assert run_in_registry(registry, body) is False

    def test_shutdown_closes_everything(self):
        factory = FakeFactory()
        registry = SessionRegistry(factory)

        async def body(reg):
            await reg.create()
            await reg.create("abc123")
            return len(reg)

        assert run_in_registry(registry, body) == 2
        assert len(registry) == 0
        assert all(binding.closed for binding in factory.created)


class TestSessionLimit:
    """Tests for the max_sessions cap."""

    def test_least_recently_used_evicted(self):
        factory = FakeFactory()
        registry = SessionRegistry(factory, max_sessions=2)

        async def body(reg):
            await reg.create("first")
            await reg.create("second")
            await reg.resolve("first")
            await reg.create("third")
            return [sid for sid in ("first", "second", "third") if sid in reg]

        assert run_in_registry(registry, body) == ["first", "third"]
        evicted = factory.created[1]
        assert evicted.session_id == "second"
        assert evicted.closed is True

    def test_evicted_session_recovered_on_next_request(self):
        factory = FakeFactory()
        registry = SessionRegistry(factory, max_sessions=1)

        async def body(reg):
            await reg.create("first")
            await reg.create("second")
            sent = Sent()
            await reg.handle_request("first", SCOPE, receive, sent)
            return sent.status, "first" in reg, "second" in reg

        assert run_in_registry(registry, body) == (200, True, False)
        assert factory.created[-1].resumed is True
