#!/usr/bin/env python3
"""
Discovery Service - Map a remote repository tree to Documents.

A scan is a single recursive tree listing of the knowledge base's branch.
Entries are kept when they are files (blobs) with a markdown extension that
lie under the knowledge base's scope. Each surviving entry becomes a
Document whose name is its scope-relative path without the extension
(nested directories stay as "/" separators) and whose title comes from the
last path segment.

Example:
    vision/notes/a.md under scope "./vision" -> name "notes/a", title "A"
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Iterable

from .constants import MARKDOWN_EXTENSION, TREE_BLOB
from .errors import DiscoveryError
from .github import FetchError, GitHubClient
from .knowledge_bases import KnowledgeBase
from .utils import format_title, is_within_scope, relative_to_scope, strip_extension

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Document:
    """One markdown document within a knowledge base."""
    name: str
    title: str
    description: str
    path: str  # Full repository path, used for content retrieval
    knowledge_base: str


def documents_from_tree(kb: KnowledgeBase, entries: Iterable[dict[str, Any]]) -> list[Document]:
    """
    Convert tree entries into Documents for one knowledge base.

    Order follows the tree's enumeration order.
    """
    scope = kb.scope
    documents = []

    for entry in entries:
        if not isinstance(entry, dict):
            continue
        path = entry.get("path")
        if entry.get("type") != TREE_BLOB or not isinstance(path, str):
            continue
        if not path.endswith(MARKDOWN_EXTENSION) or not is_within_scope(path, scope):
            continue

        name = strip_extension(relative_to_scope(path, scope))
        title = format_title(name.rsplit("/", 1)[-1])
        documents.append(Document(
            name=name,
            title=title,
            description=f"{kb.name}: {title}",
            path=path,
            knowledge_base=kb.id,
        ))

    return documents


class DiscoveryService:
    """Enumerate the documents of a knowledge base from its remote tree."""

    def __init__(self, client: GitHubClient) -> None:
        self.client = client

    async def scan(self, kb: KnowledgeBase) -> list[Document]:
        """
        Scan a knowledge base, raising on failure.

        Raises:
            DiscoveryError: If the tree listing cannot be retrieved or parsed
        """
        try:
            tree = await self.client.fetch_tree(kb)
        except FetchError as e:
            raise DiscoveryError(kb.id, str(e)) from e

        if tree.get("truncated"):
            logger.warning(f"Tree listing for {kb.id} was truncated; some documents may be missing")

        documents = documents_from_tree(kb, tree["tree"])
        logger.debug(f"Discovered {len(documents)} documents in {kb.id}")
        return documents

    async def discover(self, kb: KnowledgeBase) -> list[Document]:
        """
        Scan a knowledge base, returning an empty list on failure.

        Failures are logged rather than raised so a broken collection
        lists as empty instead of aborting the caller.
        """
        try:
            return await self.scan(kb)
        except DiscoveryError as e:
            logger.error(str(e))
            return []
