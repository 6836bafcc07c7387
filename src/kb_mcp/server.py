#!/usr/bin/env python3
"""
Knowledge MCP Server - Markdown knowledge bases hosted on GitHub.

Exposes remote markdown collections as MCP tools. Documents are discovered
by scanning each repository's file tree (cached per knowledge base) and
their content is fetched on demand.

Tools:
    listKnowledgeBases: Knowledge bases and their document counts
    listDocuments: Documents, optionally limited to one knowledge base
    searchDocuments: Search documents by name or title
    getDocument: Full content of one document
    refreshDocuments: Clear the document cache and rescan

Usage:
    # Streamable HTTP (default)
    kb-mcp --port 8000

    # Stateless HTTP (serverless hosts)
    kb-mcp --stateless

    # Local stdio
    kb-mcp --transport stdio

Configuration:
    GITHUB_TOKEN: Raises the GitHub API quota for tree listings
    MCP_AUTH_TOKEN: Require this bearer token on every HTTP request
    KB_CONFIG_FILE: JSON/YAML/TOML file defining the knowledge bases
    KB_CACHE_TTL: Document cache lifetime in seconds (default: 300)
    KB_MAX_SESSIONS: Sessions kept before the least recently used is evicted (default: 1000)
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
import traceback
from dataclasses import replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Optional

from mcp.server import Server
from mcp.server.stdio import stdio_server
from mcp.types import CallToolResult, TextContent, Tool

from . import __version__
from .cache import DocumentCache
from .config import Config, ConfigurationError, get_config
from .constants import SERVER_NAME
from .content import ContentFetcher
from .discovery import DiscoveryService
from .github import GitHubClient
from .knowledge_bases import KnowledgeBaseRegistry, build_registry
from .operations import OPERATIONS, OperationResult, Operations

logger = logging.getLogger(__name__)


# =============================================================================
# Logging
# =============================================================================

class _StructuredFormatter(logging.Formatter):
    """Format log records as single-line JSON objects."""

    def __init__(self, service: str = SERVER_NAME) -> None:
        super().__init__()
        self.service = service

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "service": self.service,
        }
        if record.levelno >= logging.WARNING:
            entry["location"] = {
                "file": record.pathname,
                "line": record.lineno,
                "function": record.funcName,
            }
        if record.exc_info and record.exc_info[0] is not None:
            exc_type, exc_value, exc_tb = record.exc_info
            entry["exception"] = {
                "type": exc_type.__name__,
                "message": str(exc_value),
                "traceback": "".join(traceback.format_exception(exc_type, exc_value, exc_tb)),
            }
        return json.dumps(entry, ensure_ascii=False)


def _setup_logging(level: int = logging.INFO, json_format: bool = False) -> None:
    """
    Configure the package logger to write to stderr.

    Previous handlers are removed so repeated calls do not duplicate output.
    stdout is left alone because the stdio transport speaks on it.
    """
    package_logger = logging.getLogger("kb_mcp")
    for handler in list(package_logger.handlers):
        package_logger.removeHandler(handler)

    handler = logging.StreamHandler(sys.stderr)
    if json_format:
        handler.setFormatter(_StructuredFormatter())
    else:
        handler.setFormatter(logging.Formatter(
            "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
        ))
    package_logger.addHandler(handler)
    package_logger.setLevel(level)
    package_logger.propagate = False


# =============================================================================
# Server
# =============================================================================

def _to_call_result(result: OperationResult) -> CallToolResult:
    """Convert an operation result into an MCP tool result."""
    return CallToolResult(
        content=[TextContent(type="text", text=result.text)],
        isError=result.is_error,
    )


class KnowledgeServer:
    """
    Wires the knowledge base components and builds MCP servers.

    One KnowledgeServer lives for the whole process; its cache is shared by
    every session. create_server() returns a fresh MCP server bound to the
    shared operations, one per session binding.
    """

    def __init__(
        self,
        config: Optional[Config] = None,
        registry: Optional[KnowledgeBaseRegistry] = None,
        client: Optional[GitHubClient] = None,
        clock: Optional[Callable[[], float]] = None,
    ) -> None:
        self.config = config or get_config()
        self.registry = registry or build_registry(self.config.knowledge_base_file)
        self.client = client or GitHubClient(
            token=self.config.github_token,
            max_retries=self.config.fetch_max_retries,
            max_bytes=self.config.max_download_bytes,
            https_only=self.config.https_only,
        )
        self.discovery = DiscoveryService(self.client)
        cache_kwargs: dict[str, Any] = {"ttl": self.config.cache_ttl}
        if clock is not None:
            cache_kwargs["clock"] = clock
        self.cache = DocumentCache(self.registry, self.discovery, **cache_kwargs)
        self.fetcher = ContentFetcher(self.registry, self.client)
        self.operations = Operations(self.registry, self.cache, self.fetcher)

    def tools(self) -> list[Tool]:
        kb_ids = self.registry.ids()
        return [
            Tool(
                name=operation.name,
                description=operation.description,
                inputSchema=operation.input_schema(kb_ids),
            )
            for operation in OPERATIONS.values()
        ]

    def create_server(self) -> Server:
        """Build a fresh MCP server exposing every operation."""
        server = Server(SERVER_NAME, version=__version__)

        @server.list_tools()
        async def list_tools() -> list[Tool]:
            return self.tools()

        @server.call_tool()
        async def call_tool(name: str, arguments: dict[str, Any]) -> CallToolResult:
            result = await self.operations.dispatch(name, arguments)
            return _to_call_result(result)

        return server

    async def run_stdio(self) -> None:
        """Run a single MCP server over stdio."""
        server = self.create_server()
        logger.info(f"Serving {len(self.registry)} knowledge bases over stdio")
        async with stdio_server() as (read_stream, write_stream):
            await server.run(
                read_stream,
                write_stream,
                server.create_initialization_options(),
            )


# =============================================================================
# Entry Point
# =============================================================================

def _parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Serve markdown knowledge bases over MCP")
    parser.add_argument("--transport", choices=("http", "stdio"), default="http",
                        help="MCP transport (default: http)")
    parser.add_argument("--host", type=str, help="HTTP bind address")
    parser.add_argument("--port", type=int, help="HTTP port")
    parser.add_argument("--stateless", action="store_true",
                        help="Do not keep sessions between requests")
    parser.add_argument("--json-response", action="store_true",
                        help="Answer POST requests with JSON instead of SSE")
    parser.add_argument("--config", type=Path,
                        help="Knowledge base config file (.json, .yaml, .toml)")
    parser.add_argument("--log-json", action="store_true",
                        help="Emit structured JSON logs")
    return parser.parse_args(argv)


def _apply_overrides(config: Config, args: argparse.Namespace) -> Config:
    overrides: dict[str, Any] = {}
    if args.host:
        overrides["host"] = args.host
    if args.port:
        overrides["port"] = args.port
    if args.stateless:
        overrides["stateless"] = True
    if args.json_response:
        overrides["json_response"] = True
    if args.config:
        overrides["knowledge_base_file"] = args.config
    if args.log_json:
        overrides["log_json"] = True
    if not overrides:
        return config
    updated = replace(config, **overrides)
    updated.validate()
    return updated


def main(argv: Optional[list[str]] = None) -> int:
    """Entry point."""
    args = _parse_args(argv)
    try:
        config = _apply_overrides(get_config(), args)
    except ConfigurationError as e:
        print(str(e), file=sys.stderr)
        return 2

    _setup_logging(level=getattr(logging, config.log_level), json_format=config.log_json)
    knowledge_server = KnowledgeServer(config)

    if args.transport == "stdio":
        asyncio.run(knowledge_server.run_stdio())
        return 0

    import uvicorn

    from .http_app import create_app

    app = create_app(knowledge_server)
    mode = "stateless" if config.stateless else "stateful"
    logger.info(f"MCP Knowledge Server listening on {config.host}:{config.port}{config.mcp_path} ({mode})")
    uvicorn.run(app, host=config.host, port=config.port, log_level=config.log_level.lower())
    return 0


if __name__ == "__main__":
    sys.exit(main())
