#!/usr/bin/env python3
"""
Error taxonomy for the knowledge server.

Two families live here:

1. Failures absorbed internally (DiscoveryError, SessionReconnectError).
   These are raised inside a component so its caller can choose the
   fallback (stale cache entry, fresh session) and are logged, never
   surfaced to an MCP client.
2. Failures reported as data (UnknownKnowledgeBaseError,
   DocumentNotFoundError) or at the HTTP boundary (AuthorizationError).

Each exception exposes a stable ``kind`` string used in error results.
"""

from __future__ import annotations

from typing import Optional


class KnowledgeServerError(Exception):
    """Base class for all knowledge server errors."""

    kind = "internal_error"


class DiscoveryError(KnowledgeServerError):
    """Raised when a remote tree scan fails."""

    kind = "discovery_failure"

    def __init__(self, knowledge_base_id: str, reason: str):
        self.knowledge_base_id = knowledge_base_id
        self.reason = reason
        super().__init__(f"Discovery failed for {knowledge_base_id}: {reason}")


class UnknownKnowledgeBaseError(KnowledgeServerError):
    """Raised when a knowledge base id is not configured."""

    kind = "unknown_knowledge_base"

    def __init__(self, knowledge_base_id: str):
        self.knowledge_base_id = knowledge_base_id
        super().__init__(f"Unknown knowledge base: {knowledge_base_id}")


class DocumentNotFoundError(KnowledgeServerError):
    """Raised when document content cannot be retrieved."""

    kind = "document_not_found"

    def __init__(
        self,
        document_name: str,
        knowledge_base_id: str,
        status: Optional[int] = None,
        reason: str = "",
    ):
        self.document_name = document_name
        self.knowledge_base_id = knowledge_base_id
        self.status = status
        self.reason = reason
        detail = f"{status} {reason}".strip() if status else reason
        message = f"Document not found: {document_name} in {knowledge_base_id}"
        if detail:
            message += f" ({detail})"
        super().__init__(message)


class SessionReconnectError(KnowledgeServerError):
    """Raised when an existing session binding cannot be reconnected."""

    kind = "session_reconnect_failure"

    def __init__(self, session_id: Optional[str], reason: str = ""):
        self.session_id = session_id
        message = f"Cannot reconnect session {session_id}"
        if reason:
            message += f": {reason}"
        super().__init__(message)


class AuthorizationError(KnowledgeServerError):
    """Raised when a request carries a missing or wrong credential."""

    kind = "authorization_failure"
