#!/usr/bin/env python3
"""
Project constants.

Central location for remote endpoints, protocol header names and the
defaults shared by the discovery, cache and HTTP layers. Modules should
import these rather than repeating literals.
"""

from __future__ import annotations

# =============================================================================
# Remote Host
# =============================================================================

GITHUB_API_BASE = "https://api.github.com"
GITHUB_RAW_BASE = "https://raw.githubusercontent.com"
GITHUB_API_ACCEPT = "application/vnd.github.v3+json"
USER_AGENT = "MCP-Knowledge-Server"

# Hosts the fetch layer is allowed to contact
ALLOWED_URL_HOSTS = frozenset({
    "api.github.com",
    "raw.githubusercontent.com",
})

# =============================================================================
# Documents
# =============================================================================

MARKDOWN_EXTENSION = ".md"

# Tree entry type for files (directories are "tree")
TREE_BLOB = "blob"

# =============================================================================
# Cache
# =============================================================================

DEFAULT_CACHE_TTL = 5 * 60  # seconds

# =============================================================================
# Fetch Limits
# =============================================================================

DEFAULT_FETCH_TIMEOUT = 30  # seconds
DEFAULT_FETCH_MAX_RETRIES = 3
FETCH_RETRY_BASE_DELAY = 0.5  # seconds
DEFAULT_MAX_DOWNLOAD_BYTES = 10 * 1024 * 1024

# =============================================================================
# Session Protocol
# =============================================================================

SERVER_NAME = "kb-mcp"
MCP_SESSION_ID_HEADER = "mcp-session-id"
MCP_PROTOCOL_VERSION_HEADER = "mcp-protocol-version"
DEFAULT_MCP_PATH = "/mcp"
DEFAULT_MAX_SESSIONS = 1000  # least recently used session is evicted beyond this

# JSON-RPC error codes used at the HTTP boundary
JSONRPC_SERVER_ERROR = -32000
JSONRPC_UNAUTHORIZED = -32001
JSONRPC_INVALID_REQUEST = -32600

CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "GET, POST, DELETE, OPTIONS",
    "Access-Control-Allow-Headers": ", ".join(
        ("Content-Type", "Authorization", MCP_SESSION_ID_HEADER, MCP_PROTOCOL_VERSION_HEADER)
    ),
    "Access-Control-Expose-Headers": MCP_SESSION_ID_HEADER,
}
