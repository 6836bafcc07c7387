#!/usr/bin/env python3
"""
HTTP Surface - Starlette app serving the MCP endpoint.

Routing on the MCP path:

    OPTIONS  204 with CORS headers (no auth)
    POST     resolve or create the session, then hand over to its transport
    GET      resume an existing session's event stream (never creates one)
    DELETE   terminate the session; always 204

Every method except OPTIONS is checked against MCP_AUTH_TOKEN (when set)
before any session work. CORS headers are added to every response.

/health reports mode, session count and cache state.
"""

from __future__ import annotations

import hmac
import logging
import re
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Optional

from starlette.applications import Starlette
from starlette.datastructures import MutableHeaders
from starlette.requests import Request
from starlette.responses import JSONResponse, Response
from starlette.routing import Route
from starlette.types import Message, Receive, Scope, Send

from .config import Config
from .constants import (
    CORS_HEADERS,
    JSONRPC_INVALID_REQUEST,
    JSONRPC_SERVER_ERROR,
    JSONRPC_UNAUTHORIZED,
    MCP_SESSION_ID_HEADER,
)
from .errors import AuthorizationError
from .server import KnowledgeServer
from .sessions import SessionRegistry, mcp_binding_factory
from .utils import parse_bearer_token

logger = logging.getLogger(__name__)

# Session ids are visible ASCII (0x21-0x7E)
_SESSION_ID_PATTERN = re.compile(r'^[\x21-\x7E]+$')

ALLOWED_METHODS = ("GET", "POST", "DELETE", "OPTIONS")


def _jsonrpc_error(status_code: int, code: int, message: str, headers: Optional[dict[str, str]] = None) -> JSONResponse:
    """JSON-RPC error body with no request id."""
    return JSONResponse(
        {"jsonrpc": "2.0", "error": {"code": code, "message": message}, "id": None},
        status_code=status_code,
        headers=headers,
    )


def _with_cors(send: Send) -> Send:
    """Wrap an ASGI send so every response carries the CORS headers."""

    async def send_with_cors(message: Message) -> None:
        if message["type"] == "http.response.start":
            headers = MutableHeaders(scope=message)
            for name, value in CORS_HEADERS.items():
                if name not in headers:
                    headers[name] = value
        await send(message)

    return send_with_cors


def check_authorization(request: Request, config: Config) -> None:
    """
    Check the request credential against the configured token.

    Raises:
        AuthorizationError: If a token is configured and the request does not carry it
    """
    if not config.auth_required:
        return
    token = parse_bearer_token(request.headers.get("authorization"))
    if token is None or not hmac.compare_digest(
        token.encode("utf-8"), config.auth_token.encode("utf-8")
    ):
        raise AuthorizationError("Unauthorized: Invalid or missing authentication token")


def _unauthorized(error: AuthorizationError) -> JSONResponse:
    return _jsonrpc_error(401, JSONRPC_UNAUTHORIZED, str(error))


class KnowledgeMcpEndpoint:
    """ASGI endpoint for the MCP path."""

    def __init__(self, sessions: SessionRegistry, config: Config) -> None:
        self.sessions = sessions
        self.config = config

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        request = Request(scope, receive)
        send = _with_cors(send)
        method = request.method

        if method == "OPTIONS":
            await Response(status_code=204)(scope, receive, send)
            return

        try:
            check_authorization(request, self.config)
        except AuthorizationError as e:
            client = request.client.host if request.client else "unknown"
            logger.warning(f"Rejected unauthorized {method} request from {client}")
            await _unauthorized(e)(scope, receive, send)
            return

        session_id = request.headers.get(MCP_SESSION_ID_HEADER)
        if session_id is not None and not _SESSION_ID_PATTERN.match(session_id):
            response = _jsonrpc_error(400, JSONRPC_INVALID_REQUEST, "Bad Request: Invalid session ID")
            await response(scope, receive, send)
            return

        if method == "POST":
            await self.sessions.handle_request(session_id, scope, receive, send)
        elif method == "GET":
            await self._handle_get(session_id, scope, receive, send)
        elif method == "DELETE":
            if session_id is not None and not self.sessions.stateless:
                await self.sessions.terminate(session_id)
            await Response(status_code=204)(scope, receive, send)
        else:
            response = _jsonrpc_error(
                405, JSONRPC_SERVER_ERROR, "Method not allowed",
                headers={"Allow": ", ".join(ALLOWED_METHODS)},
            )
            await response(scope, receive, send)

    async def _handle_get(self, session_id: Optional[str], scope: Scope, receive: Receive, send: Send) -> None:
        if self.sessions.stateless:
            response = _jsonrpc_error(
                405, JSONRPC_SERVER_ERROR, "SSE not supported in stateless mode",
                headers={"Allow": "POST, DELETE, OPTIONS"},
            )
            await response(scope, receive, send)
            return

        if session_id is None:
            response = _jsonrpc_error(400, JSONRPC_INVALID_REQUEST, "Bad Request: Missing session ID")
            await response(scope, receive, send)
            return

        binding = await self.sessions.resolve(session_id)
        if binding is None:
            response = _jsonrpc_error(404, JSONRPC_INVALID_REQUEST, "Session not found")
            await response(scope, receive, send)
            return

        await binding.handle_request(scope, receive, send)


async def health(request: Request) -> JSONResponse:
    """Report server mode, session count and cache state."""
    state = request.app.state
    try:
        check_authorization(request, state.config)
    except AuthorizationError as e:
        return _unauthorized(e)

    knowledge_server: KnowledgeServer = state.knowledge_server
    sessions: SessionRegistry = state.sessions
    body: dict[str, Any] = {
        "status": "ok",
        "mode": "stateless" if sessions.stateless else "stateful",
        "sessions": len(sessions),
        "knowledge_bases": knowledge_server.registry.ids(),
        "cache": knowledge_server.cache.stats(),
    }
    return JSONResponse(body)


def create_app(
    knowledge_server: Optional[KnowledgeServer] = None,
    config: Optional[Config] = None,
    sessions: Optional[SessionRegistry] = None,
) -> Starlette:
    """
    Build the Starlette app.

    Args:
        knowledge_server: Shared components (built from config if omitted)
        config: Configuration (defaults to the knowledge server's)
        sessions: Session registry (built from the knowledge server if omitted)

    Returns:
        ASGI application whose lifespan runs the session registry
    """
    knowledge_server = knowledge_server or KnowledgeServer(config)
    config = config or knowledge_server.config
    if sessions is None:
        sessions = SessionRegistry(
            mcp_binding_factory(knowledge_server.create_server, json_response=config.json_response),
            stateless=config.stateless,
            max_sessions=config.max_sessions,
        )

    @asynccontextmanager
    async def lifespan(app: Starlette) -> AsyncIterator[None]:
        async with sessions.run():
            yield

    app = Starlette(
        routes=[
            Route(config.mcp_path, endpoint=KnowledgeMcpEndpoint(sessions, config)),
            Route("/health", endpoint=health, methods=["GET"]),
        ],
        lifespan=lifespan,
    )
    app.state.config = config
    app.state.knowledge_server = knowledge_server
    app.state.sessions = sessions
    return app
