#!/usr/bin/env python3
"""
Content Fetcher - Raw document text on demand.

Content is never cached: every read is a fresh fetch from the raw content
host, so an edited document can be re-read immediately.
"""

from __future__ import annotations

import logging

from .errors import DocumentNotFoundError
from .github import FetchError, GitHubClient
from .knowledge_bases import KnowledgeBaseRegistry
from .utils import document_path, is_safe_document_name

logger = logging.getLogger(__name__)


class ContentFetcher:
    """Resolve document names to remote paths and fetch their text."""

    def __init__(self, registry: KnowledgeBaseRegistry, client: GitHubClient) -> None:
        self.registry = registry
        self.client = client

    async def fetch_content(self, knowledge_base_id: str, document_name: str) -> str:
        """
        Fetch the raw text of a document.

        Args:
            knowledge_base_id: Configured knowledge base id
            document_name: Scope-relative name without the .md extension

        Returns:
            Document text

        Raises:
            UnknownKnowledgeBaseError: If the knowledge base is not configured
            DocumentNotFoundError: If the remote host does not return the document
        """
        kb = self.registry.require(knowledge_base_id)

        if not is_safe_document_name(document_name):
            raise DocumentNotFoundError(document_name, knowledge_base_id, reason="invalid document name")

        path = document_path(kb.scope, document_name)
        try:
            return await self.client.fetch_raw(kb, path)
        except FetchError as e:
            logger.info(f"Content fetch failed for {knowledge_base_id}/{document_name}: {e}")
            raise DocumentNotFoundError(
                document_name, knowledge_base_id, status=e.status, reason=e.reason
            ) from e
