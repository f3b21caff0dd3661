# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""ASGI application entry point for uvicorn.

This module builds a cache from the configuration file and environment,
initializes it when the application starts and serves the admin API.

Usage:
    uvicorn attachment_cache.server:app --host 0.0.0.0 --port 8000

Environment variables:
    MAC_CONFIG: Path to an INI file with a [cache] section (optional).
    MAC_STORAGE_ROOT_OVERRIDE: Storage root winning over the file and MAC_CACHE_*.
    MAC_API_TOKEN: API authentication token.
    MAC_LOG_LEVEL: Logging level (default: INFO).
    MAC_CACHE_*: Cache settings, see ``config_loader.load_cache_config``.
"""

from __future__ import annotations

import os
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI

from .api import create_app
from .cache import AttachmentCacheBase, create_attachment_cache
from .config_loader import load_config_from_env
from .errors import StorageUnavailableError
from .logger import configure_logging, get_logger
from .prometheus import CacheMetrics

configure_logging(os.environ.get("MAC_LOG_LEVEL"))
_logger = get_logger("server")


def build_lifespan(cache: AttachmentCacheBase):
    """Create a lifespan handler that initializes ``cache`` on startup.

    A storage failure at startup is logged, not raised: the service comes
    up anyway and every lookup misses until initialization succeeds.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        _logger.info("Starting attachment cache service...")
        try:
            await cache.initialize()
        except StorageUnavailableError as exc:
            _logger.error(f"Attachment cache unavailable, serving as always-miss: {exc}")
        _logger.info("Attachment cache service started")
        yield
        _logger.info("Attachment cache service stopped")

    return lifespan


_config = load_config_from_env()
_metrics = CacheMetrics()
_cache = create_attachment_cache(_config, metrics=_metrics)

app = create_app(
    _cache,
    api_token=os.environ.get("MAC_API_TOKEN") or None,
    metrics=_metrics,
    lifespan=build_lifespan(_cache),
)
