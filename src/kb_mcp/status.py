#!/usr/bin/env python3
"""
Status - Scan every knowledge base and report what it holds.

Usage:
    kb-mcp-status             # Show status
    kb-mcp-status --verbose   # List every document
    kb-mcp-status --json      # Output as JSON

Exit code is 1 when any knowledge base could not be scanned.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Optional

from .config import ConfigurationError, get_config
from .discovery import DiscoveryService
from .errors import DiscoveryError
from .github import GitHubClient
from .knowledge_bases import KnowledgeBaseRegistry, build_registry

logging.basicConfig(
    level=logging.WARNING,
    format="%(message)s",
    stream=sys.stderr
)
logger = logging.getLogger(__name__)


@dataclass
class KnowledgeBaseStatus:
    """Scan outcome for one knowledge base."""
    id: str
    name: str
    repository: str
    branch: str
    path: str
    document_count: int = 0
    documents: list[str] = field(default_factory=list)
    error: str = ""


@dataclass
class StatusResult:
    """Complete status information."""
    knowledge_bases: list[KnowledgeBaseStatus]
    authenticated: bool

    @property
    def failed(self) -> list[KnowledgeBaseStatus]:
        return [kb for kb in self.knowledge_bases if kb.error]


async def get_status(registry: KnowledgeBaseRegistry, client: GitHubClient) -> StatusResult:
    """
    Scan every knowledge base concurrently.

    Args:
        registry: Knowledge bases to scan
        client: GitHub client used for tree listings

    Returns:
        StatusResult in configuration order
    """
    discovery = DiscoveryService(client)

    async def scan_one(kb) -> KnowledgeBaseStatus:
        status = KnowledgeBaseStatus(
            id=kb.id,
            name=kb.name,
            repository=kb.full_name,
            branch=kb.branch,
            path=kb.scope or "/",
        )
        try:
            documents = await discovery.scan(kb)
        except DiscoveryError as e:
            status.error = e.reason
            return status
        status.document_count = len(documents)
        status.documents = [doc.name for doc in documents]
        return status

    results = await asyncio.gather(*(scan_one(kb) for kb in registry))
    return StatusResult(knowledge_bases=list(results), authenticated=bool(client.token))


def format_status(status: StatusResult, verbose: bool = False) -> str:
    """Format status for display."""
    lines = []

    lines.append("Knowledge Base Status")
    lines.append("=" * 70)
    lines.append("")
    lines.append(f"GitHub token: {'set' if status.authenticated else 'not set (60 requests/hour)'}")
    lines.append("")

    lines.append(f"  {'ID':<20} {'DOCS':>6}   {'SOURCE':<30}  STATUS")
    lines.append("  " + "-" * 66)
    for kb in status.knowledge_bases:
        source = f"{kb.repository}@{kb.branch}"
        status_str = f"ERROR: {kb.error[:30]}" if kb.error else "ok"
        lines.append(f"  {kb.id:<20} {kb.document_count:>6}   {source:<30}  {status_str}")

    if verbose:
        for kb in status.knowledge_bases:
            lines.append("")
            lines.append(f"{kb.name} ({kb.id}, path {kb.path}):")
            if kb.error:
                lines.append(f"  error: {kb.error}")
            elif kb.documents:
                for name in kb.documents:
                    lines.append(f"  - {name}")
            else:
                lines.append("  (none)")

    if status.failed:
        lines.append("")
        lines.append(f"{len(status.failed)} knowledge base(s) could not be scanned.")

    return "\n".join(lines)


def main(argv: Optional[list[str]] = None) -> int:
    """Main entry point."""
    parser = argparse.ArgumentParser(description="Show knowledge base status")
    parser.add_argument("--verbose", "-v", action="store_true",
                        help="List every document")
    parser.add_argument("--json", action="store_true",
                        help="Output as JSON")
    parser.add_argument("--config", type=Path,
                        help="Knowledge base config file (.json, .yaml, .toml)")
    args = parser.parse_args(argv)

    try:
        config = get_config()
        registry = build_registry(args.config or config.knowledge_base_file)
    except ConfigurationError as e:
        print(str(e), file=sys.stderr)
        return 2

    client = GitHubClient(
        token=config.github_token,
        max_retries=config.fetch_max_retries,
        max_bytes=config.max_download_bytes,
        https_only=config.https_only,
    )
    status = asyncio.run(get_status(registry, client))

    if args.json:
        print(json.dumps(asdict(status), indent=2, default=str))
    else:
        print(format_status(status, verbose=args.verbose))

    return 1 if status.failed else 0


if __name__ == "__main__":
    sys.exit(main())
