#!/usr/bin/env python3
"""
Document Cache - Time-bounded discovery results per knowledge base.

Lookup policy for one knowledge base:

1. A live entry (age < TTL) is returned without scanning.
2. Otherwise the knowledge base is scanned. Success replaces the entry.
3. On scan failure the stale entry is returned if one exists
   (stale-while-error), else an empty list.

Concurrent misses for the same knowledge base share one in-flight scan.
Entries are only ever replaced whole or cleared, never edited in place.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Optional

from .constants import DEFAULT_CACHE_TTL
from .discovery import DiscoveryService, Document
from .errors import DiscoveryError
from .knowledge_bases import KnowledgeBase, KnowledgeBaseRegistry

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CacheEntry:
    """Snapshot of one knowledge base's documents."""
    documents: tuple[Document, ...]
    fetched_at: float


class DocumentCache:
    """
    Per-knowledge-base cache in front of the discovery service.

    Args:
        registry: Configured knowledge bases
        discovery: Service used to scan on a miss
        ttl: Entry lifetime in seconds
        clock: Monotonic clock (injectable for tests)
    """

    def __init__(
        self,
        registry: KnowledgeBaseRegistry,
        discovery: DiscoveryService,
        ttl: float = DEFAULT_CACHE_TTL,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.registry = registry
        self.discovery = discovery
        self.ttl = ttl
        self._clock = clock
        self._entries: dict[str, CacheEntry] = {}
        self._inflight: dict[str, asyncio.Future] = {}

    def _is_live(self, entry: CacheEntry) -> bool:
        return self._clock() - entry.fetched_at < self.ttl

    async def get_documents(self, knowledge_base_id: Optional[str] = None) -> list[Document]:
        """
        Get documents for one knowledge base, or for all of them.

        With no id, every knowledge base is resolved concurrently and the
        results are concatenated in configuration order. Unknown ids yield
        an empty list.
        """
        if knowledge_base_id is None:
            results = await asyncio.gather(*(self._get_for(kb) for kb in self.registry))
            return [doc for docs in results for doc in docs]

        kb = self.registry.get(knowledge_base_id)
        if kb is None:
            logger.warning(f"Unknown knowledge base ID: {knowledge_base_id}")
            return []
        return await self._get_for(kb)

    async def _get_for(self, kb: KnowledgeBase) -> list[Document]:
        entry = self._entries.get(kb.id)
        if entry is not None and self._is_live(entry):
            return list(entry.documents)
        return await self._load(kb)

    async def _load(self, kb: KnowledgeBase) -> list[Document]:
        """Join the in-flight scan for ``kb`` or start one."""
        future = self._inflight.get(kb.id)
        if future is None:
            future = asyncio.ensure_future(self._scan_and_store(kb))
            self._inflight[kb.id] = future
            future.add_done_callback(lambda done, kb_id=kb.id: self._forget_inflight(kb_id, done))
        # Shielded so one cancelled caller does not cancel the shared scan
        documents = await asyncio.shield(future)
        return list(documents)

    def _forget_inflight(self, kb_id: str, future: asyncio.Future) -> None:
        if self._inflight.get(kb_id) is future:
            del self._inflight[kb_id]

    async def _scan_and_store(self, kb: KnowledgeBase) -> tuple[Document, ...]:
        try:
            documents = tuple(await self.discovery.scan(kb))
        except DiscoveryError as e:
            return self._fallback(kb, str(e))
        except Exception as e:
            logger.exception(f"Unexpected error scanning {kb.id}")
            return self._fallback(kb, f"Discovery failed for {kb.id}: {type(e).__name__}: {e}")

        self._entries[kb.id] = CacheEntry(documents=documents, fetched_at=self._clock())
        logger.debug(f"Cached {len(documents)} documents for {kb.id}")
        return documents

    def _fallback(self, kb: KnowledgeBase, reason: str) -> tuple[Document, ...]:
        """Stale documents for ``kb`` if any, else nothing."""
        stale = self._entries.get(kb.id)
        if stale is not None:
            logger.warning(f"{reason}; serving {len(stale.documents)} stale documents")
            return stale.documents
        logger.error(f"{reason}; no cached documents to fall back on")
        return ()

    async def refresh(self) -> dict[str, int]:
        """
        Invalidate every entry and rescan all knowledge bases now.

        This is the only path that bypasses the TTL check.

        Returns:
            Document count per knowledge base id, in configuration order
        """
        self._entries.clear()
        logger.info("Document cache invalidated, rescanning all knowledge bases")
        kbs = list(self.registry)
        results = await asyncio.gather(*(self._load(kb) for kb in kbs))
        return {kb.id: len(docs) for kb, docs in zip(kbs, results)}

    def stats(self) -> dict[str, Any]:
        """Report cache state per knowledge base."""
        now = self._clock()
        knowledge_bases = {}
        for kb in self.registry:
            entry = self._entries.get(kb.id)
            if entry is None:
                knowledge_bases[kb.id] = {"cached": False}
                continue
            knowledge_bases[kb.id] = {
                "cached": True,
                "documents": len(entry.documents),
                "age_seconds": round(now - entry.fetched_at, 3),
                "live": self._is_live(entry),
            }
        return {"ttl_seconds": self.ttl, "knowledge_bases": knowledge_bases}
