#!/usr/bin/env python3
"""
Session Registry - Maps session ids to live MCP server/transport pairs.

A binding couples one MCP server instance with one streamable HTTP
transport. Its server runs as a task in the registry's task group for as
long as the transport stays connected.

Lifecycle per session id:

    absent -> bound            create() stores the binding once connected
    bound  -> bound            resolve() reconnects (a no-op while running)
    bound  -> broken -> absent reconnect failed; binding discarded
    bound  -> absent           terminate(), or the transport closed itself
    bound  -> absent           evicted as least recently used past max_sessions

A request carrying an id the registry does not know (the process was
recycled) gets a recovered binding under that same id. Its server starts
already initialized so the client can carry on without a new handshake.

In stateless mode every request gets a throwaway binding that is never
stored and is closed once the request has been answered.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from collections import OrderedDict
from contextlib import asynccontextmanager
from typing import AsyncIterator, Callable, Optional
from uuid import uuid4

import anyio
from anyio.abc import TaskGroup
from mcp.server import Server
from mcp.server.streamable_http import StreamableHTTPServerTransport
from starlette.types import Message, Receive, Scope, Send

from .constants import DEFAULT_MAX_SESSIONS
from .errors import SessionReconnectError

logger = logging.getLogger(__name__)


# =============================================================================
# Bindings
# =============================================================================

class SessionBinding(ABC):
    """One MCP server connected to one transport."""

    session_id: Optional[str]

    @property
    @abstractmethod
    def is_closed(self) -> bool:
        """True once the transport can no longer serve requests."""

    @abstractmethod
    async def connect(self) -> None:
        """Start the server on the transport."""

    @abstractmethod
    async def reconnect(self) -> None:
        """
        Make sure the binding is connected.

        Idempotent: a running binding is left alone.

        Raises:
            SessionReconnectError: If the binding cannot serve again
        """

    @abstractmethod
    async def handle_request(self, scope: Scope, receive: Receive, send: Send) -> Optional[int]:
        """Serve one HTTP request; returns the response status (None if none was sent)."""

    @abstractmethod
    async def close(self) -> None:
        """Terminate the transport. Safe to call more than once."""


class McpSessionBinding(SessionBinding):
    """
    Binding backed by the MCP SDK's StreamableHTTPServerTransport.

    Args:
        server: Fresh MCP server for this binding
        session_id: Transport session id (None for stateless bindings)
        task_group: Task group that runs the server
        json_response: Answer POSTs with JSON instead of an SSE stream
        resumed: Start the server initialized (recovered sessions)
    """

    def __init__(
        self,
        server: Server,
        session_id: Optional[str],
        task_group: TaskGroup,
        *,
        json_response: bool = False,
        resumed: bool = False,
    ) -> None:
        self.server = server
        self.session_id = session_id
        self.transport = StreamableHTTPServerTransport(
            mcp_session_id=session_id,
            is_json_response_enabled=json_response,
        )
        self._task_group = task_group
        self._stateless = session_id is None or resumed
        self._running = False

    @property
    def is_closed(self) -> bool:
        return self.transport.is_terminated

    @property
    def is_running(self) -> bool:
        """True while the server task is serving the transport."""
        return self._running

    async def _run_server(self, *, task_status=anyio.TASK_STATUS_IGNORED) -> None:
        try:
            async with self.transport.connect() as (read_stream, write_stream):
                self._running = True
                task_status.started()
                try:
                    await self.server.run(
                        read_stream,
                        write_stream,
                        self.server.create_initialization_options(),
                        stateless=self._stateless,
                    )
                except Exception:
                    logger.exception(f"Session {self.session_id} crashed")
        finally:
            # Cleared only once the transport has released its streams
            self._running = False

    async def connect(self) -> None:
        if self._running:
            return
        if self.transport.is_terminated:
            raise SessionReconnectError(self.session_id, "transport terminated")
        await self._task_group.start(self._run_server)

    async def reconnect(self) -> None:
        if self._running:
            return
        # The server lost its state when it stopped, so it comes back initialized
        self._stateless = True
        await self.connect()

    async def handle_request(self, scope: Scope, receive: Receive, send: Send) -> Optional[int]:
        status: Optional[int] = None

        async def send_with_status(message: Message) -> None:
            nonlocal status
            if message["type"] == "http.response.start":
                status = message["status"]
            await send(message)

        await self.transport.handle_request(scope, receive, send_with_status)
        return status

    async def close(self) -> None:
        if self.transport.is_terminated:
            return
        with anyio.CancelScope(shield=True):
            await self.transport.terminate()


BindingFactory = Callable[[Optional[str], bool, TaskGroup], SessionBinding]


def mcp_binding_factory(
    server_factory: Callable[[], Server],
    json_response: bool = False,
) -> BindingFactory:
    """Build a binding factory that pairs a fresh server with each transport."""

    def factory(session_id: Optional[str], resumed: bool, task_group: TaskGroup) -> SessionBinding:
        return McpSessionBinding(
            server_factory(),
            session_id,
            task_group,
            json_response=json_response,
            resumed=resumed,
        )

    return factory


# =============================================================================
# Registry
# =============================================================================

class _PendingBinding:
    """Placeholder for a binding whose connect is still in progress."""

    def __init__(self) -> None:
        self.done = anyio.Event()
        self.binding: Optional[SessionBinding] = None


class SessionRegistry:
    """
    Session id -> binding map with connection lifecycle.

    Args:
        binding_factory: Called as factory(session_id, resumed, task_group)
        stateless: Never store bindings; one throwaway binding per request
        max_sessions: Stored bindings kept before the least recently used is evicted
    """

    def __init__(
        self,
        binding_factory: BindingFactory,
        stateless: bool = False,
        max_sessions: int = DEFAULT_MAX_SESSIONS,
    ) -> None:
        self.binding_factory = binding_factory
        self.stateless = stateless
        self.max_sessions = max_sessions
        # Ordered oldest use first
        self._bindings: OrderedDict[str, SessionBinding] = OrderedDict()
        self._pending: dict[str, _PendingBinding] = {}
        self._task_group: Optional[TaskGroup] = None

    def __len__(self) -> int:
        return len(self._bindings)

    def __contains__(self, session_id: object) -> bool:
        return session_id in self._bindings

    def get(self, session_id: str) -> Optional[SessionBinding]:
        return self._bindings.get(session_id)

    @asynccontextmanager
    async def run(self) -> AsyncIterator[None]:
        """Own the task group that runs every binding's server."""
        if self._task_group is not None:
            raise RuntimeError("SessionRegistry is already running")

        async with anyio.create_task_group() as tg:
            self._task_group = tg
            mode = "stateless" if self.stateless else "stateful"
            logger.info(f"Session registry started ({mode})")
            try:
                yield
            finally:
                logger.info(f"Session registry shutting down, closing {len(self._bindings)} sessions")
                await self.close_all()
                tg.cancel_scope.cancel()
                self._task_group = None

    def _require_task_group(self) -> TaskGroup:
        if self._task_group is None:
            raise RuntimeError("Session registry is not running. Use 'async with registry.run()'.")
        return self._task_group

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def resolve(self, session_id: str) -> Optional[SessionBinding]:
        """
        Get a connected binding for a known session id.

        Returns None when the id is unknown or its binding could not be
        reconnected (the broken binding is discarded).
        """
        pending = self._pending.get(session_id)
        if pending is not None:
            await pending.done.wait()

        binding = self._bindings.get(session_id)
        if binding is None:
            return None

        try:
            await binding.reconnect()
        except Exception as e:
            error = e if isinstance(e, SessionReconnectError) else SessionReconnectError(session_id, str(e))
            logger.warning(f"{error}; starting a fresh session")
            await self._discard(session_id, binding)
            return None
        if self._bindings.get(session_id) is binding:
            self._bindings.move_to_end(session_id)
        return binding

    async def create(self, session_id: Optional[str] = None) -> SessionBinding:
        """
        Create and connect a binding.

        Args:
            session_id: Id supplied by the client, or None for a new session

        Returns:
            Connected binding (stored unless the registry is stateless)
        """
        task_group = self._require_task_group()

        if self.stateless:
            binding = self.binding_factory(None, False, task_group)
            await binding.connect()
            return binding

        if session_id is not None:
            pending = self._pending.get(session_id)
            if pending is not None:
                await pending.done.wait()
                if pending.binding is not None:
                    return pending.binding
            existing = self._bindings.get(session_id)
            if existing is not None:
                return existing

        resumed = session_id is not None
        new_id = session_id if session_id is not None else uuid4().hex
        placeholder = _PendingBinding()
        self._pending[new_id] = placeholder
        try:
            binding = self.binding_factory(new_id, resumed, task_group)
            await binding.connect()
            final_id = binding.session_id or new_id
            self._bindings[final_id] = binding
            placeholder.binding = binding
            if resumed:
                logger.info(f"Recovered session {final_id}")
            else:
                logger.info(f"Created session {final_id}")
            await self._evict_overflow()
            return binding
        finally:
            del self._pending[new_id]
            placeholder.done.set()

    async def handle_request(
        self,
        session_id: Optional[str],
        scope: Scope,
        receive: Receive,
        send: Send,
    ) -> None:
        """Route one request to its session, creating the session if needed."""
        binding = None
        if session_id is not None and not self.stateless:
            binding = await self.resolve(session_id)
        fresh = binding is None and session_id is None

        if binding is None:
            binding = await self.create(session_id)

        if self.stateless:
            try:
                await binding.handle_request(scope, receive, send)
            finally:
                await binding.close()
            return

        status: Optional[int] = None
        try:
            status = await binding.handle_request(scope, receive, send)
        finally:
            if fresh and (status is None or status >= 400):
                # Nothing was established, do not keep the session around
                logger.debug(f"Discarding session {binding.session_id}: opening request failed ({status})")
                await self._discard(binding.session_id, binding)
            elif binding.is_closed:
                await self._discard(binding.session_id, binding)

    async def terminate(self, session_id: str) -> bool:
        """
        Close and forget a session.

        Returns:
            True if the session existed
        """
        binding = self._bindings.pop(session_id, None)
        if binding is None:
            return False
        try:
            await binding.close()
        except Exception as e:
            logger.warning(f"Error closing session {session_id}: {e}")
        logger.info(f"Terminated session {session_id}")
        return True

    async def _evict_overflow(self) -> None:
        while len(self._bindings) > self.max_sessions:
            oldest_id, oldest = next(iter(self._bindings.items()))
            logger.info(f"Session limit {self.max_sessions} reached, evicting {oldest_id}")
            await self._discard(oldest_id, oldest)

    async def _discard(self, session_id: Optional[str], binding: SessionBinding) -> None:
        if session_id is not None and self._bindings.get(session_id) is binding:
            del self._bindings[session_id]
        try:
            await binding.close()
        except Exception as e:
            logger.warning(f"Error closing session {session_id}: {e}")

    async def close_all(self) -> None:
        bindings = list(self._bindings.items())
        self._bindings.clear()
        for session_id, binding in bindings:
            try:
                await binding.close()
            except Exception as e:
                logger.warning(f"Error closing session {session_id}: {e}")
