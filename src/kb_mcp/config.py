#!/usr/bin/env python3
"""
Configuration Management - Centralized, validated configuration.

This module provides a single source of truth for all configuration,
replacing scattered env var reads with a validated config object.

Usage:
    from kb_mcp.config import get_config

    cfg = get_config()
    print(cfg.cache_ttl)
    print(cfg.stateless)
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from .constants import (
    DEFAULT_CACHE_TTL,
    DEFAULT_FETCH_MAX_RETRIES,
    DEFAULT_MAX_DOWNLOAD_BYTES,
    DEFAULT_MAX_SESSIONS,
    DEFAULT_MCP_PATH,
)

logger = logging.getLogger(__name__)

_TRUE_VALUES = ("1", "true", "yes")
_LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


class ConfigurationError(Exception):
    """Raised when configuration is invalid."""
    pass


def _env_flag(name: str) -> bool:
    return os.environ.get(name, "").lower() in _TRUE_VALUES


@dataclass
class Config:
    """
    Validated configuration for the knowledge server.

    Secrets (github_token, auth_token) are never logged.
    """
    # Credentials
    github_token: Optional[str] = None
    auth_token: Optional[str] = None

    # Knowledge bases
    knowledge_base_file: Optional[Path] = None

    # Cache
    cache_ttl: float = DEFAULT_CACHE_TTL

    # Sessions / transport
    stateless: bool = False
    json_response: bool = False
    host: str = "127.0.0.1"
    port: int = 8000
    mcp_path: str = DEFAULT_MCP_PATH
    max_sessions: int = DEFAULT_MAX_SESSIONS

    # Fetch limits
    fetch_max_retries: int = DEFAULT_FETCH_MAX_RETRIES
    max_download_bytes: int = DEFAULT_MAX_DOWNLOAD_BYTES
    allow_http: bool = False

    # Logging
    log_level: str = "INFO"
    log_json: bool = False

    @property
    def https_only(self) -> bool:
        return not self.allow_http

    @property
    def auth_required(self) -> bool:
        return bool(self.auth_token)

    def validate(self) -> None:
        """
        Validate configuration values.

        Raises:
            ConfigurationError: If any validation fails
        """
        errors = []

        if self.cache_ttl < 0:
            errors.append(f"cache_ttl must not be negative, got {self.cache_ttl}")
        if not 1 <= self.port <= 65535:
            errors.append(f"port must be between 1 and 65535, got {self.port}")
        if self.fetch_max_retries < 0:
            errors.append(f"fetch_max_retries must not be negative, got {self.fetch_max_retries}")
        if self.max_download_bytes < 1:
            errors.append(f"max_download_bytes must be positive, got {self.max_download_bytes}")
        if not self.mcp_path.startswith("/"):
            errors.append(f"mcp_path must start with '/', got {self.mcp_path!r}")
        if self.max_sessions < 1:
            errors.append(f"max_sessions must be positive, got {self.max_sessions}")
        if self.log_level.upper() not in _LOG_LEVELS:
            errors.append(f"log_level must be one of {_LOG_LEVELS}, got {self.log_level!r}")
        if self.knowledge_base_file is not None and not self.knowledge_base_file.is_file():
            errors.append(f"Knowledge base file does not exist: {self.knowledge_base_file}")

        if errors:
            raise ConfigurationError(
                "Configuration validation failed:\n  - " + "\n  - ".join(errors)
            )


# Global config cache
_config: Optional[Config] = None


def load_config_from_env() -> Config:
    """
    Build a Config from environment variables (not validated).

    Raises:
        ConfigurationError: If a numeric variable cannot be parsed
    """
    try:
        cache_ttl = float(os.environ.get("KB_CACHE_TTL", str(DEFAULT_CACHE_TTL)))
        port = int(os.environ.get("KB_PORT", "8000"))
        fetch_max_retries = int(os.environ.get("KB_FETCH_MAX_RETRIES", str(DEFAULT_FETCH_MAX_RETRIES)))
        max_download_bytes = int(os.environ.get("KB_MAX_DOWNLOAD_BYTES", str(DEFAULT_MAX_DOWNLOAD_BYTES)))
        max_sessions = int(os.environ.get("KB_MAX_SESSIONS", str(DEFAULT_MAX_SESSIONS)))
    except ValueError as e:
        raise ConfigurationError(f"Invalid numeric configuration value: {e}") from e

    kb_file = os.environ.get("KB_CONFIG_FILE")

    return Config(
        github_token=os.environ.get("GITHUB_TOKEN") or None,
        auth_token=os.environ.get("MCP_AUTH_TOKEN") or None,
        knowledge_base_file=Path(kb_file).expanduser() if kb_file else None,
        cache_ttl=cache_ttl,
        stateless=_env_flag("KB_STATELESS"),
        json_response=_env_flag("KB_JSON_RESPONSE"),
        host=os.environ.get("KB_HOST", "127.0.0.1"),
        port=port,
        mcp_path=os.environ.get("KB_MCP_PATH", DEFAULT_MCP_PATH),
        max_sessions=max_sessions,
        fetch_max_retries=fetch_max_retries,
        max_download_bytes=max_download_bytes,
        allow_http=_env_flag("KB_ALLOW_HTTP"),
        log_level=os.environ.get("KB_LOG_LEVEL", "INFO").upper(),
        log_json=_env_flag("KB_LOG_JSON"),
    )


def get_config(reload: bool = False) -> Config:
    """
    Get validated configuration.

    Loads from environment variables on first call, caches for subsequent calls.

    Args:
        reload: Force reload from environment variables

    Returns:
        Validated Config object

    Raises:
        ConfigurationError: If configuration is invalid
    """
    global _config

    if _config is not None and not reload:
        return _config

    config = load_config_from_env()
    config.validate()

    # Log configuration (debug level, no secrets)
    logger.debug("Configuration loaded:")
    logger.debug(f"  knowledge_base_file: {config.knowledge_base_file}")
    logger.debug(f"  cache_ttl: {config.cache_ttl}")
    logger.debug(f"  stateless: {config.stateless}")
    logger.debug(f"  max_sessions: {config.max_sessions}")
    logger.debug(f"  auth_required: {config.auth_required}")
    logger.debug(f"  https_only: {config.https_only}")

    _config = config
    return config


def reset_config() -> None:
    """Reset cached config (for testing)."""
    global _config
    _config = None
