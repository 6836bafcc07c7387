#!/usr/bin/env python3
"""
Operation Dispatcher - The catalog's query operations.

Every operation returns an OperationResult: either a success payload or an
error kind plus a human-readable message. Failures specific to one request
(unknown knowledge base, missing document) are results, not exceptions, so
the protocol session stays healthy.

Operations:
    listKnowledgeBases: Knowledge bases with document counts
    listDocuments: Documents grouped by knowledge base
    searchDocuments: Case-insensitive substring search on name and title
    getDocument: Raw document content
    refreshDocuments: Invalidate the cache and rescan every knowledge base

OPERATIONS is the static table from tool name to handler, description and
input schema; the MCP server is generated from it.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Optional

from .cache import DocumentCache
from .content import ContentFetcher
from .discovery import Document
from .errors import KnowledgeServerError
from .knowledge_bases import KnowledgeBaseRegistry

logger = logging.getLogger(__name__)

NO_DOCUMENTS = "No documents found."


class ErrorKind:
    """Error kinds carried by failed OperationResults."""
    UNKNOWN_KNOWLEDGE_BASE = "unknown_knowledge_base"
    DOCUMENT_NOT_FOUND = "document_not_found"
    INVALID_ARGUMENTS = "invalid_arguments"
    UNKNOWN_TOOL = "unknown_tool"
    INTERNAL_ERROR = "internal_error"


@dataclass(frozen=True)
class OperationResult:
    """Tagged result: success text, or an error kind with a message."""
    text: str
    error: Optional[str] = None

    @property
    def is_error(self) -> bool:
        return self.error is not None

    @classmethod
    def ok(cls, text: str) -> "OperationResult":
        return cls(text=text)

    @classmethod
    def fail(cls, kind: str, message: str) -> "OperationResult":
        return cls(text=f"Error: {message}", error=kind)


@dataclass(frozen=True)
class OperationSpec:
    """Static description of one operation."""
    name: str
    handler: str  # Method name on Operations
    description: str
    properties: dict[str, dict[str, Any]] = field(default_factory=dict)
    required: tuple[str, ...] = ()
    uses_knowledge_base_enum: tuple[str, ...] = ()  # Properties restricted to configured ids

    def input_schema(self, knowledge_base_ids: list[str]) -> dict[str, Any]:
        properties = {}
        for prop, schema in self.properties.items():
            schema = dict(schema)
            if prop in self.uses_knowledge_base_enum:
                schema["enum"] = list(knowledge_base_ids)
            properties[prop] = schema
        input_schema: dict[str, Any] = {"type": "object", "properties": properties}
        if self.required:
            input_schema["required"] = list(self.required)
        return input_schema


OPERATIONS: dict[str, OperationSpec] = {
    "searchDocuments": OperationSpec(
        name="searchDocuments",
        handler="search_documents",
        description="Search for documents by name across all knowledge bases",
        properties={
            "query": {"type": "string", "description": "Search query"},
            "knowledgeBase": {
                "type": "string",
                "description": "Limit to specific knowledge base",
            },
        },
        required=("query",),
        uses_knowledge_base_enum=("knowledgeBase",),
    ),
    "getDocument": OperationSpec(
        name="getDocument",
        handler="get_document",
        description="Get the full content of a document",
        properties={
            "knowledgeBase": {"type": "string", "description": "Knowledge base ID"},
            "documentName": {"type": "string", "description": "Document name (without .md)"},
        },
        required=("knowledgeBase", "documentName"),
        uses_knowledge_base_enum=("knowledgeBase",),
    ),
    "listKnowledgeBases": OperationSpec(
        name="listKnowledgeBases",
        handler="list_knowledge_bases",
        description="List all knowledge bases and their document counts",
    ),
    "listDocuments": OperationSpec(
        name="listDocuments",
        handler="list_documents",
        description="List all documents in a knowledge base",
        properties={
            "knowledgeBase": {
                "type": "string",
                "description": "Limit to specific knowledge base",
            },
        },
        uses_knowledge_base_enum=("knowledgeBase",),
    ),
    "refreshDocuments": OperationSpec(
        name="refreshDocuments",
        handler="refresh_documents",
        description="Clear the document cache and rescan every knowledge base",
    ),
}

# Tool argument name -> handler keyword
_ARGUMENT_NAMES = {
    "query": "query",
    "knowledgeBase": "knowledge_base",
    "documentName": "document_name",
}


class Operations:
    """Operation handlers over the document cache and content fetcher."""

    def __init__(
        self,
        registry: KnowledgeBaseRegistry,
        cache: DocumentCache,
        fetcher: ContentFetcher,
    ) -> None:
        self.registry = registry
        self.cache = cache
        self.fetcher = fetcher

    async def list_knowledge_bases(self) -> OperationResult:
        kbs = list(self.registry)
        counts = await asyncio.gather(*(self.cache.get_documents(kb.id) for kb in kbs))
        lines = [
            f"📚 {kb.name} ({kb.id}) - {len(docs)} documents"
            for kb, docs in zip(kbs, counts)
        ]
        return OperationResult.ok("\n".join(lines))

    async def list_documents(self, knowledge_base: Optional[str] = None) -> OperationResult:
        documents = await self.cache.get_documents(knowledge_base)
        if not documents:
            return OperationResult.ok(NO_DOCUMENTS)

        grouped: dict[str, list[Document]] = {}
        for doc in documents:
            grouped.setdefault(doc.knowledge_base, []).append(doc)

        sections = []
        for kb_id, docs in grouped.items():
            kb = self.registry.get(kb_id)
            heading = kb.name if kb is not None else kb_id
            entries = "\n".join(f"   - {d.title} ({d.name})" for d in docs)
            sections.append(f"📚 {heading}:\n{entries}")
        return OperationResult.ok("\n\n".join(sections))

    async def search_documents(self, query: str, knowledge_base: Optional[str] = None) -> OperationResult:
        documents = await self.cache.get_documents(knowledge_base)
        needle = query.lower()
        matches = [
            d for d in documents
            if needle in d.name.lower() or needle in d.title.lower()
        ]
        if not matches:
            return OperationResult.ok(NO_DOCUMENTS)
        listing = "\n".join(f"- {d.title} ({d.knowledge_base}/{d.name})" for d in matches)
        return OperationResult.ok(f"Found {len(matches)} document(s):\n{listing}")

    async def get_document(self, knowledge_base: str, document_name: str) -> OperationResult:
        try:
            content = await self.fetcher.fetch_content(knowledge_base, document_name)
        except KnowledgeServerError as e:
            logger.error(f"Error fetching document {document_name} from {knowledge_base}: {e}")
            return OperationResult.fail(e.kind, str(e))
        return OperationResult.ok(content)

    async def refresh_documents(self) -> OperationResult:
        counts = await self.cache.refresh()
        lines = [f"Refreshed {len(counts)} knowledge base(s):"]
        for kb_id, count in counts.items():
            lines.append(f"- {kb_id}: {count} documents")
        return OperationResult.ok("\n".join(lines))

    async def dispatch(self, name: str, arguments: Optional[dict[str, Any]] = None) -> OperationResult:
        """
        Run an operation by tool name.

        Argument errors and unexpected exceptions become error results; this
        method does not raise.
        """
        operation = OPERATIONS.get(name)
        if operation is None:
            return OperationResult.fail(ErrorKind.UNKNOWN_TOOL, f"Unknown tool: {name}")

        arguments = arguments or {}
        missing = [arg for arg in operation.required if arguments.get(arg) is None]
        if missing:
            return OperationResult.fail(
                ErrorKind.INVALID_ARGUMENTS,
                f"Missing required argument(s): {', '.join(missing)}",
            )

        kwargs = {}
        for arg in operation.properties:
            value = arguments.get(arg)
            if value is None:
                continue
            if not isinstance(value, str):
                return OperationResult.fail(
                    ErrorKind.INVALID_ARGUMENTS, f"Argument {arg} must be a string"
                )
            kwargs[_ARGUMENT_NAMES[arg]] = value

        try:
            return await getattr(self, operation.handler)(**kwargs)
        except Exception:
            logger.exception(f"Error in tool {name}")
            return OperationResult.fail(ErrorKind.INTERNAL_ERROR, "Internal server error")
