# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""FastAPI application factory for the attachment cache admin API.

The API exposes the maintenance side of the cache: statistics, lookups,
expiry sweeps, validation, removal and clearing. Attachment bytes are never
downloaded here; they always come from the mail-retrieval layer.

Authentication is an optional shared token carried in the ``X-API-Token``
header. ``/health`` is always public.

Example:
    Creating and running the API application::

        from attachment_cache.cache import AttachmentCache
        from attachment_cache.api import create_app

        cache = AttachmentCache(storage_root="/var/cache/mail-attachments")
        app = create_app(cache, api_token="secret-token")

        # Run with uvicorn
        uvicorn.run(app, host="0.0.0.0", port=8000)
"""

from __future__ import annotations

from collections.abc import Callable
from contextlib import AbstractAsyncContextManager
from typing import Any

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Request, status
from fastapi.responses import JSONResponse, Response
from fastapi.security import APIKeyHeader
from pydantic import BaseModel

from .cache import AttachmentCacheBase
from .errors import (
    AttachmentCacheError,
    NotInitializedError,
    PayloadTooLargeError,
    StorageUnavailableError,
)
from .keys import is_valid_key
from .logger import get_logger
from .prometheus import CacheMetrics

logger = get_logger("api")

API_TOKEN_HEADER_NAME = "X-API-Token"
api_key_scheme = APIKeyHeader(name=API_TOKEN_HEADER_NAME, auto_error=False)


async def require_token(
    request: Request, api_token: str | None = Depends(api_key_scheme)
) -> None:
    """Validate the API token carried in the ``X-API-Token`` header.

    When no token has been configured through :func:`create_app` the
    dependency is effectively bypassed.
    """
    expected = getattr(request.app.state, "api_token", None)
    if expected is None:
        return
    if not api_token or api_token != expected:
        raise HTTPException(status.HTTP_401_UNAUTHORIZED, "Invalid or missing API token")


auth_dependency = Depends(require_token)


class CommandResponse(BaseModel):
    """Result of a maintenance command."""
    ok: bool
    removed: int | None = None
    error: str | None = None


def _get_cache(request: Request) -> AttachmentCacheBase:
    cache = getattr(request.app.state, "cache", None)
    if cache is None:
        raise HTTPException(500, "Cache not configured")
    return cache


def create_app(
    cache: AttachmentCacheBase,
    api_token: str | None = None,
    metrics: CacheMetrics | None = None,
    lifespan: Callable[[FastAPI], AbstractAsyncContextManager] | None = None,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        cache: The attachment cache served by this application.
        api_token: Optional secret required in ``X-API-Token`` on every
            endpoint except ``/health``.
        metrics: Optional metrics exported at ``/metrics``.
        lifespan: Optional lifespan context manager for startup/shutdown.

    Returns:
        A configured application ready to be served by uvicorn.
    """
    api = FastAPI(title="Mail Attachment Cache", lifespan=lifespan)
    api.state.cache = cache
    api.state.api_token = api_token
    api.state.metrics = metrics

    router = APIRouter(prefix="/commands", tags=["commands"], dependencies=[auth_dependency])

    @api.exception_handler(AttachmentCacheError)
    async def cache_error_handler(request: Request, exc: AttachmentCacheError):
        """Translate cache failures into HTTP status codes."""
        if isinstance(exc, PayloadTooLargeError):
            code = status.HTTP_413_REQUEST_ENTITY_TOO_LARGE
        elif isinstance(exc, (NotInitializedError, StorageUnavailableError)):
            code = status.HTTP_503_SERVICE_UNAVAILABLE
        else:
            code = status.HTTP_500_INTERNAL_SERVER_ERROR
        logger.error(f"{request.method} {request.url.path} failed: {exc}")
        return JSONResponse(status_code=code, content={"ok": False, "error": str(exc)})

    @api.get("/health")
    async def health():
        """Health check endpoint, no authentication."""
        return {"status": "ok"}

    @api.get("/stats", dependencies=[auth_dependency])
    async def stats(request: Request) -> dict[str, Any]:
        """Return the cache statistics with camelCase field names."""
        result = await _get_cache(request).stats()
        return result.to_json()

    @api.get("/entries", dependencies=[auth_dependency])
    async def lookup(request: Request, filename: str, size: int, owner: str) -> dict[str, Any]:
        """Look up an attachment by filename, size and owner mailbox."""
        entry = await _get_cache(request).get(filename, size, owner)
        if entry is None:
            raise HTTPException(404, "Not cached")
        return entry.to_json()

    @api.get("/entries/payload", dependencies=[auth_dependency])
    async def payload(request: Request, filename: str, size: int, owner: str):
        """Return the cached bytes of an attachment."""
        cache = _get_cache(request)
        entry = await cache.get(filename, size, owner)
        data = await cache.read_payload(entry) if entry is not None else None
        if data is None:
            raise HTTPException(404, "Not cached")
        return Response(content=data, media_type=entry.mime_type or "application/octet-stream")

    @api.delete("/entries/{key}", response_model=CommandResponse, dependencies=[auth_dependency])
    async def remove(request: Request, key: str):
        """Remove one entry by cache key."""
        if not is_valid_key(key):
            raise HTTPException(400, "Invalid cache key")
        await _get_cache(request).remove(key)
        return CommandResponse(ok=True)

    @router.post("/sweep", response_model=CommandResponse, response_model_exclude_none=True)
    async def sweep(request: Request):
        """Remove every expired entry."""
        removed = await _get_cache(request).sweep_expired()
        return CommandResponse(ok=True, removed=removed)

    @router.post("/validate", response_model=CommandResponse, response_model_exclude_none=True)
    async def validate(request: Request):
        """Drop entries whose payload is missing or has the wrong size."""
        removed = await _get_cache(request).validate()
        return CommandResponse(ok=True, removed=removed)

    @router.post("/clear", response_model=CommandResponse, response_model_exclude_none=True)
    async def clear(request: Request):
        """Delete every cached payload and the index."""
        await _get_cache(request).clear()
        return CommandResponse(ok=True)

    @api.get("/metrics")
    async def export_metrics(request: Request):
        """Expose Prometheus metrics in text format."""
        collector = getattr(request.app.state, "metrics", None)
        if collector is None:
            raise HTTPException(404, "Metrics not enabled")
        return Response(content=collector.generate_latest(), media_type="text/plain; version=0.0.4")

    api.include_router(router)
    return api
