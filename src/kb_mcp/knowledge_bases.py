#!/usr/bin/env python3
"""
Knowledge Base Registry - Named, scoped collections of markdown documents.

Each knowledge base points at one remote repository, branch and subpath.
The registry is built once at process start (from the built-in defaults or
from a JSON/YAML/TOML file) and is read-only afterwards.

Config file format (YAML shown; JSON and TOML use the same keys):

    knowledge_bases:
      - id: vision
        name: Acornio Vision
        description: Vision documents for Acornio
        owner: mchlkucera
        repo: acornio
        branch: main
        path: ./vision
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Iterable, Iterator, Optional

import toml
import yaml

from .config import ConfigurationError
from .errors import UnknownKnowledgeBaseError
from .utils import normalize_path

logger = logging.getLogger(__name__)

# Security: Regex patterns for validating remote coordinates
NAME_PATTERN = re.compile(r'^[a-zA-Z0-9_.-]+$')
BRANCH_PATTERN = re.compile(r'^[a-zA-Z0-9_./=-]+$')
ID_PATTERN = re.compile(r'^[a-zA-Z0-9_-]+$')

REQUIRED_FIELDS = ("id", "name", "owner", "repo")


@dataclass(frozen=True)
class KnowledgeBase:
    """Configuration for one remote document collection."""
    id: str
    name: str
    description: str
    owner: str
    repo: str
    branch: str = "main"
    path: str = "./"  # Scoped subpath within the repository

    @property
    def scope(self) -> str:
        """Normalized scope path ("" means the whole repository)."""
        return normalize_path(self.path)

    @property
    def full_name(self) -> str:
        return f"{self.owner}/{self.repo}"


# =============================================================================
# Built-in Registry
# =============================================================================

DEFAULT_KNOWLEDGE_BASES: tuple[KnowledgeBase, ...] = (
    KnowledgeBase(
        id="vision",
        name="Acornio Vision",
        description="Vision documents for Acornio",
        owner="mchlkucera",
        repo="acornio",
        branch="main",
        path="./vision",
    ),
    KnowledgeBase(
        id="technical-state",
        name="Acornio Technical State",
        description="Technical state documents for Acornio",
        owner="mchlkucera",
        repo="acornio",
        branch="main",
        path="./technical-state",
    ),
    KnowledgeBase(
        id="processes",
        name="Acornio Processes",
        description="Process documents for Acornio",
        owner="mchlkucera",
        repo="acornio",
        branch="main",
        path="./processes",
    ),
)


class KnowledgeBaseRegistry:
    """
    Ordered, read-only collection of knowledge bases.

    Iteration and ids() follow configuration order, which is also the
    order used for listings.
    """

    def __init__(self, knowledge_bases: Optional[Iterable[KnowledgeBase]] = None):
        entries = tuple(DEFAULT_KNOWLEDGE_BASES if knowledge_bases is None else knowledge_bases)
        by_id: dict[str, KnowledgeBase] = {}
        for kb in entries:
            if kb.id in by_id:
                raise ConfigurationError(f"Duplicate knowledge base id: {kb.id}")
            by_id[kb.id] = kb
        self._entries = entries
        self._by_id = by_id

    def __iter__(self) -> Iterator[KnowledgeBase]:
        return iter(self._entries)

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, knowledge_base_id: object) -> bool:
        return knowledge_base_id in self._by_id

    def ids(self) -> list[str]:
        return [kb.id for kb in self._entries]

    def get(self, knowledge_base_id: str) -> Optional[KnowledgeBase]:
        return self._by_id.get(knowledge_base_id)

    def require(self, knowledge_base_id: str) -> KnowledgeBase:
        """
        Look up a knowledge base by id.

        Raises:
            UnknownKnowledgeBaseError: If the id is not configured
        """
        kb = self._by_id.get(knowledge_base_id)
        if kb is None:
            raise UnknownKnowledgeBaseError(knowledge_base_id)
        return kb


# =============================================================================
# Loading
# =============================================================================

def _validate_entry(entry: dict[str, Any], position: int) -> KnowledgeBase:
    """Convert one raw config entry into a KnowledgeBase."""
    if not isinstance(entry, dict):
        raise ConfigurationError(f"Knowledge base #{position} must be a mapping")

    missing = [f for f in REQUIRED_FIELDS if not entry.get(f)]
    if missing:
        raise ConfigurationError(
            f"Knowledge base #{position} is missing required fields: {', '.join(missing)}"
        )

    kb_id = str(entry["id"])
    owner = str(entry["owner"])
    repo = str(entry["repo"])
    branch = str(entry.get("branch") or "main")

    if not ID_PATTERN.match(kb_id):
        raise ConfigurationError(f"Invalid knowledge base id: {kb_id}")
    if not NAME_PATTERN.match(owner) or not NAME_PATTERN.match(repo):
        raise ConfigurationError(f"Invalid repo format: {owner}/{repo}. Expected 'owner/repo'.")
    # Prevent option-like or malformed refs
    if not BRANCH_PATTERN.match(branch) or branch.startswith("-"):
        raise ConfigurationError(f"Invalid branch format: {branch}")

    name = str(entry["name"])
    return KnowledgeBase(
        id=kb_id,
        name=name,
        description=str(entry.get("description") or name),
        owner=owner,
        repo=repo,
        branch=branch,
        path=str(entry.get("path") or "./"),
    )


def _read_config_file(path: Path) -> Any:
    """Parse a JSON, YAML or TOML file based on its suffix."""
    suffix = path.suffix.lower()
    try:
        with open(path, encoding="utf-8") as f:
            if suffix == ".json":
                return json.load(f)
            if suffix in (".yaml", ".yml"):
                return yaml.safe_load(f)
            if suffix == ".toml":
                return toml.load(f)
    except (IOError, json.JSONDecodeError, yaml.YAMLError, toml.TomlDecodeError) as e:
        raise ConfigurationError(f"Could not read knowledge base file {path}: {e}") from e
    raise ConfigurationError(f"Unsupported knowledge base file type: {path.suffix}")


def load_knowledge_bases(path: Path) -> KnowledgeBaseRegistry:
    """
    Load a knowledge base registry from a config file.

    The file holds either a top-level list of entries or a mapping with a
    "knowledge_bases" list (TOML requires the latter).

    Args:
        path: Path to a .json, .yaml, .yml or .toml file

    Returns:
        KnowledgeBaseRegistry in file order

    Raises:
        ConfigurationError: If the file is unreadable or an entry is invalid
    """
    data = _read_config_file(path)

    if isinstance(data, dict):
        data = data.get("knowledge_bases")
    if not isinstance(data, list) or not data:
        raise ConfigurationError(f"No knowledge bases defined in {path}")

    registry = KnowledgeBaseRegistry(
        _validate_entry(entry, i) for i, entry in enumerate(data, start=1)
    )
    logger.info(f"Loaded {len(registry)} knowledge bases from {path}")
    return registry


def build_registry(path: Optional[Path] = None) -> KnowledgeBaseRegistry:
    """Load the registry from ``path`` or fall back to the built-in entries."""
    if path is None:
        return KnowledgeBaseRegistry()
    return load_knowledge_bases(path)
