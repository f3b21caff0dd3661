"""Tests for the FastAPI admin API."""

import asyncio

import pytest
from fastapi.testclient import TestClient
from prometheus_client import CollectorRegistry

from attachment_cache.api import API_TOKEN_HEADER_NAME, create_app
from attachment_cache.cache import AttachmentCache, NullAttachmentCache
from attachment_cache.keys import derive_key
from attachment_cache.prometheus import CacheMetrics

API_TOKEN = "secret-token"
OWNER = "a@example.com"


def seed(root, clock, *attachments):
    """Write attachments through a separate cache instance."""

    async def run():
        cache = AttachmentCache(storage_root=root, clock=clock)
        for filename, mime_type, data in attachments:
            await cache.put(filename, mime_type, len(data), OWNER, data)

    asyncio.run(run())


@pytest.fixture
def metrics():
    return CacheMetrics(registry=CollectorRegistry())


@pytest.fixture
def client(make_cache, metrics):
    app = create_app(make_cache(metrics=metrics), api_token=API_TOKEN, metrics=metrics)
    with TestClient(app) as test_client:
        test_client.headers.update({API_TOKEN_HEADER_NAME: API_TOKEN})
        yield test_client


def lookup_params(filename="invoice.pdf", size=7):
    return {"filename": filename, "size": size, "owner": OWNER}


class TestAuthentication:
    """Tests for the X-API-Token header."""

    def test_health_is_public(self, make_cache):
        with TestClient(create_app(make_cache(), api_token=API_TOKEN)) as test_client:
            response = test_client.get("/health")
        assert response.status_code == 200
        assert response.json() == {"status": "ok"}

    def test_rejects_missing_token(self, make_cache):
        with TestClient(create_app(make_cache(), api_token=API_TOKEN)) as test_client:
            response = test_client.get("/stats")
        assert response.status_code == 401
        assert response.json()["detail"] == "Invalid or missing API token"

    def test_rejects_wrong_token(self, make_cache):
        with TestClient(create_app(make_cache(), api_token=API_TOKEN)) as test_client:
            response = test_client.post("/commands/sweep", headers={API_TOKEN_HEADER_NAME: "nope"})
        assert response.status_code == 401

    def test_open_without_configured_token(self, make_cache):
        with TestClient(create_app(make_cache())) as test_client:
            assert test_client.get("/stats").status_code == 200


class TestEntries:
    """Tests for lookup, payload and removal endpoints."""

    def test_stats(self, client, cache_root, clock):
        seed(cache_root, clock, ("invoice.pdf", "application/pdf", b"%PDF-1."))
        assert client.get("/stats").json()["isInitialized"] is False

        client.get("/entries", params=lookup_params())
        data = client.get("/stats").json()
        assert data["totalFiles"] == 1
        assert data["totalSizeBytes"] == 7
        assert data["filesByType"] == {"pdf": 1}
        assert data["isInitialized"] is True

    def test_lookup_hit_and_miss(self, client, cache_root, clock):
        seed(cache_root, clock, ("invoice.pdf", "application/pdf", b"%PDF-1."))

        response = client.get("/entries", params=lookup_params())
        assert response.status_code == 200
        assert response.json()["key"] == derive_key("invoice.pdf", 7, OWNER)
        assert response.json()["mimeType"] == "application/pdf"

        assert client.get("/entries", params=lookup_params(size=8)).status_code == 404

    def test_payload(self, client, cache_root, clock):
        seed(cache_root, clock, ("notes.txt", "text/plain", b"hello"))

        response = client.get("/entries/payload", params=lookup_params("notes.txt", 5))
        assert response.status_code == 200
        assert response.content == b"hello"
        assert response.headers["content-type"].startswith("text/plain")

        missing = client.get("/entries/payload", params=lookup_params("other.txt", 5))
        assert missing.status_code == 404

    def test_delete_entry(self, client, cache_root, clock):
        seed(cache_root, clock, ("invoice.pdf", "application/pdf", b"%PDF-1."))
        key = derive_key("invoice.pdf", 7, OWNER)

        response = client.delete(f"/entries/{key}")
        assert response.status_code == 200
        assert response.json()["ok"] is True
        assert client.get("/entries", params=lookup_params()).status_code == 404

    def test_delete_rejects_invalid_key(self, client):
        assert client.delete("/entries/not-a-key").status_code == 400


class TestCommands:
    """Tests for maintenance commands."""

    def test_sweep(self, client, cache_root, clock):
        seed(cache_root, clock, ("invoice.pdf", "application/pdf", b"%PDF-1."))
        clock.advance(hours=37)
        assert client.post("/commands/sweep").json() == {"ok": True, "removed": 1}

    def test_validate(self, client, cache_root, clock):
        seed(cache_root, clock, ("invoice.pdf", "application/pdf", b"%PDF-1."))
        assert client.get("/entries", params=lookup_params()).status_code == 200
        for path in cache_root.glob("*invoice.pdf"):
            path.unlink()
        assert client.post("/commands/validate").json() == {"ok": True, "removed": 1}

    def test_clear(self, client, cache_root, clock):
        seed(
            cache_root, clock,
            ("invoice.pdf", "application/pdf", b"%PDF-1."),
            ("notes.txt", "text/plain", b"hello"),
        )
        assert client.post("/commands/clear").json() == {"ok": True}
        assert client.get("/stats").json()["totalFiles"] == 0

    def test_storage_failure_returns_503(self, make_cache, tmp_path):
        blocker = tmp_path / "blocker"
        blocker.write_text("x")
        cache = make_cache(storage_root=blocker / "cache", max_init_attempts=1)
        with TestClient(create_app(cache)) as test_client:
            response = test_client.post("/commands/sweep")
            assert response.status_code == 503
            assert response.json()["ok"] is False

            # Lookups degrade to misses instead of failing
            assert test_client.get("/entries", params=lookup_params()).status_code == 404


class TestMetrics:
    """Tests for the /metrics endpoint."""

    def test_metrics_exported(self, client, cache_root, clock):
        seed(cache_root, clock, ("invoice.pdf", "application/pdf", b"%PDF-1."))
        client.get("/entries", params=lookup_params())
        response = client.get("/metrics")
        assert response.status_code == 200
        assert "mac_cache_hits_total 1.0" in response.text

    def test_metrics_disabled(self):
        with TestClient(create_app(NullAttachmentCache())) as test_client:
            assert test_client.get("/metrics").status_code == 404
