"""
Knowledge MCP Server - Markdown knowledge bases over the Model Context Protocol.

This package serves markdown documents kept in GitHub repositories to MCP
clients. Each knowledge base is one repository subpath; its documents are
discovered from the repository tree, cached for a few minutes, and read on
demand.

Architecture:
    - Configurable knowledge bases (built-in defaults or a JSON/YAML/TOML file)
    - Recursive tree listing per knowledge base, TTL cache with stale fallback
    - Raw content fetched fresh on every read
    - Streamable HTTP sessions with recovery after a process restart
    - Optional bearer token gate and stateless mode for serverless hosts

Modules:
    server: MCP server, structured logging and the kb-mcp CLI
    http_app: Starlette app (MCP endpoint, CORS, auth gate, /health)
    sessions: Session registry and MCP transport bindings
    operations: Tool table and handlers
    cache: Per-knowledge-base document cache
    discovery: Repository tree scanning
    content: Document content retrieval
    github: Hardened GitHub fetch client
    knowledge_bases: Knowledge base registry and config file loading
    status: Scan report (kb-mcp-status)
    config: Centralized configuration management
    errors: Error taxonomy
    constants: Project-wide constants
    utils: Shared utility functions

Usage:
    # Run MCP server (streamable HTTP)
    kb-mcp

    # Run over stdio
    kb-mcp --transport stdio

    # Check knowledge bases
    kb-mcp-status
"""

__version__ = "1.0.0"

from .config import Config, get_config
from .knowledge_bases import KnowledgeBase, KnowledgeBaseRegistry
from .operations import OperationResult, Operations

__all__ = [
    "Config",
    "KnowledgeBase",
    "KnowledgeBaseRegistry",
    "OperationResult",
    "Operations",
    "get_config",
    "__version__",
]
