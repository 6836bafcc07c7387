"""
Shared Utilities - Small helpers used across modules.

Title formatting and path handling are shared by discovery and the
content fetcher so that document names resolve to the same remote paths
in both directions.
"""

from __future__ import annotations

import re
from typing import Optional

from .constants import MARKDOWN_EXTENSION

_LEADING_DOT_SLASH = re.compile(r"^\./")


# =============================================================================
# Titles
# =============================================================================

def format_title(slug: str) -> str:
    """
    Format a hyphenated slug as a title.

    Example:
        >>> format_title("merchant-enlil-bani")
        'Merchant Enlil Bani'
    """
    return " ".join(word[:1].upper() + word[1:] for word in slug.split("-"))


# =============================================================================
# Paths
# =============================================================================

def normalize_path(path: Optional[str]) -> str:
    """
    Normalize a scope path.

    Removes a leading "./" and a trailing "/". "./" and "" both normalize
    to the empty string, which means "whole repository".
    """
    if not path:
        return ""
    path = _LEADING_DOT_SLASH.sub("", path)
    if path.endswith("/"):
        path = path[:-1]
    return path


def strip_extension(path: str, extension: str = MARKDOWN_EXTENSION) -> str:
    """Remove a trailing extension (only at the end of the path)."""
    if path.endswith(extension):
        return path[: -len(extension)]
    return path


def is_within_scope(path: str, scope: str) -> bool:
    """Check whether a repository path lies under a normalized scope."""
    if not scope:
        return True
    return path.startswith(f"{scope}/")


def relative_to_scope(path: str, scope: str) -> str:
    """Return ``path`` relative to a normalized scope."""
    if not scope:
        return path
    return path[len(scope) + 1:]


def document_path(scope: str, document_name: str) -> str:
    """Build the repository path of a document from its name."""
    file_name = f"{document_name}{MARKDOWN_EXTENSION}"
    return f"{scope}/{file_name}" if scope else file_name


def is_safe_document_name(document_name: str) -> bool:
    """
    Check that a document name cannot escape its knowledge base scope.

    Rejects empty names, absolute paths and ".." segments.
    """
    if not document_name or document_name.startswith("/"):
        return False
    return ".." not in document_name.split("/")


# =============================================================================
# Credentials
# =============================================================================

def parse_bearer_token(header_value: Optional[str]) -> Optional[str]:
    """
    Extract a token from an Authorization header value.

    Both "Bearer <token>" and a bare "<token>" are accepted.
    """
    if not header_value:
        return None
    if header_value.startswith("Bearer "):
        return header_value[len("Bearer "):]
    return header_value
