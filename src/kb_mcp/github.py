#!/usr/bin/env python3
"""
GitHub Client - Tree listings and raw content retrieval.

Two remote calls are used:
- Tree listing (api.github.com): one recursive listing per discovery scan.
  The optional GITHUB_TOKEN raises the API quota.
- Raw content (raw.githubusercontent.com): one call per document read,
  no credential and no API quota.

Security features:
- URL host allowlist (SSRF protection), re-checked after redirects
- HTTPS-only unless explicitly allowed
- IP literal hosts blocked (including octal notation)
- Response size limit

Reliability features:
- Retries on transient failures (timeouts, dropped connections, 429, 5xx)
- Exponential backoff with jitter

The underlying fetch is blocking urllib; the async methods dispatch it to
the default executor so the event loop only suspends on network calls.
"""

from __future__ import annotations

import asyncio
import ipaddress
import json
import logging
import random
import re
import time
from http.client import HTTPException
from socket import timeout as SocketTimeout
from typing import Any, Optional
from urllib.error import HTTPError, URLError
from urllib.parse import quote, urlparse
from urllib.request import Request, urlopen

from .constants import (
    ALLOWED_URL_HOSTS,
    DEFAULT_FETCH_MAX_RETRIES,
    DEFAULT_FETCH_TIMEOUT,
    DEFAULT_MAX_DOWNLOAD_BYTES,
    FETCH_RETRY_BASE_DELAY,
    GITHUB_API_ACCEPT,
    GITHUB_API_BASE,
    GITHUB_RAW_BASE,
    USER_AGENT,
)
from .knowledge_bases import KnowledgeBase

logger = logging.getLogger(__name__)

_OCTAL_IP = re.compile(r'^0\d+\.')


class FetchError(Exception):
    """Raised when a remote fetch fails after validation and retries."""

    def __init__(self, url: str, status: Optional[int] = None, reason: str = ""):
        self.url = url
        self.status = status
        self.reason = reason
        detail = f"HTTP {status}" if status is not None else "request failed"
        if reason:
            detail += f": {reason}"
        super().__init__(f"{detail} ({url})")


class DownloadTooLargeError(Exception):
    """Raised when download exceeds maximum size."""
    pass


# =============================================================================
# URL Validation
# =============================================================================

def _is_ip_literal(hostname: Optional[str]) -> bool:
    """Check if hostname is an IP address literal.

    Also detects octal IP notation (e.g., 0177.0.0.1) which Python's
    ipaddress module does not parse but could bypass allowlist checks.
    """
    if not hostname:
        return False
    if _OCTAL_IP.match(hostname):
        return True
    try:
        ipaddress.ip_address(hostname)
        return True
    except ValueError:
        return False


def _validate_url_host(url: str, https_only: bool = True) -> None:
    """Validate URL host against allowlist (SSRF protection).

    Raises:
        ValueError: If the scheme or host is not allowed
    """
    parsed = urlparse(url)
    hostname = parsed.hostname

    if _is_ip_literal(hostname):
        raise ValueError(f"IP literal hosts are not allowed: {hostname}")
    if hostname not in ALLOWED_URL_HOSTS:
        raise ValueError(f"URL host not allowed: {hostname}")
    if https_only and parsed.scheme != "https":
        raise ValueError(f"HTTPS required (got {parsed.scheme}). Set KB_ALLOW_HTTP=1 to allow HTTP.")
    elif parsed.scheme not in ("http", "https"):
        raise ValueError(f"URL scheme not allowed: {parsed.scheme}")


def _is_retryable_error(error: Exception) -> bool:
    """Check if an error is retryable (transient)."""
    # HTTPError is a URLError subclass, check it first
    if isinstance(error, HTTPError):
        return error.code == 429 or error.code >= 500

    if isinstance(error, (SocketTimeout, TimeoutError, HTTPException, ConnectionError)):
        return True

    if isinstance(error, URLError):
        reason = str(error.reason).lower()
        return any(x in reason for x in ["connection reset", "connection refused",
                                          "temporary failure", "timed out"])

    return False


# =============================================================================
# Client
# =============================================================================

class GitHubClient:
    """
    Blocking fetches against GitHub with async wrappers.

    A single client is shared by discovery and content retrieval; it holds
    no per-request state.
    """

    def __init__(
        self,
        token: Optional[str] = None,
        max_retries: int = DEFAULT_FETCH_MAX_RETRIES,
        max_bytes: int = DEFAULT_MAX_DOWNLOAD_BYTES,
        https_only: bool = True,
        timeout: float = DEFAULT_FETCH_TIMEOUT,
        retry_base_delay: float = FETCH_RETRY_BASE_DELAY,
    ) -> None:
        self.token = token
        self.max_retries = max_retries
        self.max_bytes = max_bytes
        self.https_only = https_only
        self.timeout = timeout
        self.retry_base_delay = retry_base_delay

    # -------------------------------------------------------------------------
    # URLs and headers
    # -------------------------------------------------------------------------

    def api_headers(self) -> dict[str, str]:
        """Get headers for GitHub API requests."""
        headers = {
            "Accept": GITHUB_API_ACCEPT,
            "User-Agent": USER_AGENT,
        }
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        return headers

    @staticmethod
    def tree_url(kb: KnowledgeBase) -> str:
        return (
            f"{GITHUB_API_BASE}/repos/{kb.owner}/{kb.repo}"
            f"/git/trees/{quote(kb.branch, safe='')}?recursive=1"
        )

    @staticmethod
    def raw_url(kb: KnowledgeBase, path: str) -> str:
        return f"{GITHUB_RAW_BASE}/{kb.owner}/{kb.repo}/{kb.branch}/{quote(path)}"

    # -------------------------------------------------------------------------
    # Fetching
    # -------------------------------------------------------------------------

    def _fetch_url_once(self, url: str, headers: dict[str, str]) -> bytes:
        """Single fetch attempt (internal). Raises on error."""
        req = Request(url, headers=headers)
        with urlopen(req, timeout=self.timeout) as response:
            # Security: Validate final URL after redirects (SSRF protection)
            final_url = response.geturl()
            if final_url != url:
                logger.debug(f"Redirect detected: {url} -> {final_url}")
                _validate_url_host(final_url, self.https_only)

            content_length = response.headers.get("Content-Length")
            if content_length:
                try:
                    length = int(content_length)
                except ValueError:
                    length = 0  # Invalid Content-Length, checked while streaming
                if length > self.max_bytes:
                    raise DownloadTooLargeError(
                        f"Content-Length {length} exceeds limit {self.max_bytes}"
                    )

            chunks = []
            total_bytes = 0
            chunk_size = 65536  # 64 KB chunks

            while True:
                chunk = response.read(chunk_size)
                if not chunk:
                    break
                total_bytes += len(chunk)
                if total_bytes > self.max_bytes:
                    raise DownloadTooLargeError(
                        f"Download exceeded {self.max_bytes} bytes limit"
                    )
                chunks.append(chunk)

            return b"".join(chunks)

    def _backoff(self, attempt: int) -> float:
        return self.retry_base_delay * (2 ** attempt) + random.uniform(0, 0.5)

    def fetch_url(self, url: str, headers: Optional[dict[str, str]] = None) -> bytes:
        """
        Fetch URL content with retry, error handling, and size limits.

        Args:
            url: URL to fetch
            headers: Optional HTTP headers (default: no credential)

        Returns:
            Response bytes

        Raises:
            FetchError: On validation failure, non-success status,
                oversize response or exhausted retries
        """
        try:
            _validate_url_host(url, self.https_only)
        except ValueError as e:
            logger.error(f"URL validation failed: {e}")
            raise FetchError(url, reason=str(e)) from e

        if headers is None:
            headers = {"User-Agent": USER_AGENT}

        last_error: Optional[Exception] = None

        for attempt in range(self.max_retries + 1):
            try:
                return self._fetch_url_once(url, headers)

            except DownloadTooLargeError as e:
                # Don't retry size limit errors
                logger.error(f"Download too large: {e}")
                raise FetchError(url, reason=str(e)) from e

            except ValueError as e:
                # Don't retry validation errors (e.g., redirect to bad host)
                logger.error(f"Validation failed: {e}")
                raise FetchError(url, reason=str(e)) from e

            except HTTPError as e:
                last_error = e
                if _is_retryable_error(e) and attempt < self.max_retries:
                    delay = self._backoff(attempt)
                    logger.warning(
                        f"HTTP {e.code}, retrying in {delay:.1f}s "
                        f"(attempt {attempt + 1}/{self.max_retries + 1})"
                    )
                    time.sleep(delay)
                    continue
                if e.code == 403:
                    logger.error("Rate limited or forbidden. Set GITHUB_TOKEN for higher limits.")
                raise FetchError(url, status=e.code, reason=str(e.reason)) from e

            except (URLError, SocketTimeout, TimeoutError, HTTPException, ConnectionError) as e:
                last_error = e
                if _is_retryable_error(e) and attempt < self.max_retries:
                    delay = self._backoff(attempt)
                    logger.warning(
                        f"Fetch failed ({type(e).__name__}), retrying in {delay:.1f}s "
                        f"(attempt {attempt + 1}/{self.max_retries + 1})"
                    )
                    time.sleep(delay)
                    continue
                raise FetchError(url, reason=str(getattr(e, "reason", e))) from e

        # Only reachable when max_retries is negative
        raise FetchError(url, reason=f"no attempts made: {last_error}")

    def get_tree(self, kb: KnowledgeBase) -> dict[str, Any]:
        """
        Retrieve the full recursive file tree of a knowledge base's branch.

        Raises:
            FetchError: If the listing cannot be fetched or is not valid JSON
        """
        url = self.tree_url(kb)
        data = self.fetch_url(url, headers=self.api_headers())
        try:
            tree = json.loads(data)
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise FetchError(url, reason=f"malformed tree response: {e}") from e
        if not isinstance(tree, dict) or not isinstance(tree.get("tree"), list):
            raise FetchError(url, reason="malformed tree response: missing 'tree' list")
        return tree

    def get_raw(self, kb: KnowledgeBase, path: str) -> str:
        """
        Retrieve raw file content (decoded as UTF-8).

        Raises:
            FetchError: If the file cannot be fetched
        """
        data = self.fetch_url(self.raw_url(kb, path))
        return data.decode("utf-8", errors="replace")

    # -------------------------------------------------------------------------
    # Async wrappers
    # -------------------------------------------------------------------------

    async def fetch_tree(self, kb: KnowledgeBase) -> dict[str, Any]:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self.get_tree, kb)

    async def fetch_raw(self, kb: KnowledgeBase, path: str) -> str:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self.get_raw, kb, path)
