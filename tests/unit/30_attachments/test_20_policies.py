"""Tests for integrity validation, eviction and expiry policies."""

from datetime import datetime, timedelta, timezone

import pytest

from attachment_cache.errors import IntegrityMismatchError
from attachment_cache.eviction import EvictionPolicy
from attachment_cache.expiry import ExpirySweeper
from attachment_cache.integrity import IntegrityValidator
from attachment_cache.models import CacheEntry, FileType
from attachment_cache.storage import PayloadStore

NOW = datetime(2025, 3, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def store(tmp_path):
    return PayloadStore(tmp_path)


def write_entry(store: PayloadStore, key: str, size: int, age_minutes: int = 0,
                recorded_size: int | None = None) -> CacheEntry:
    """Create a payload of ``size`` bytes and the entry describing it."""
    path = store.payload_path(key, f"{key}.bin")
    path.write_bytes(b"x" * size)
    cached_at = NOW - timedelta(minutes=age_minutes)
    return CacheEntry(
        key=key,
        filename=f"{key}.bin",
        mime_type="application/octet-stream",
        storage_path=str(path),
        size_bytes=size if recorded_size is None else recorded_size,
        cached_at=cached_at,
        expires_at=cached_at + timedelta(hours=36),
        file_type=FileType.UNKNOWN,
    )


class TestIntegrityValidator:
    """Tests for IntegrityValidator."""

    @pytest.mark.asyncio
    async def test_check_passes_for_intact_entry(self, store):
        await IntegrityValidator(store).check(write_entry(store, "a", 10))

    @pytest.mark.asyncio
    async def test_check_reports_missing_payload(self, store):
        entry = write_entry(store, "a", 10)
        store.payload_path("a", "a.bin").unlink()
        with pytest.raises(IntegrityMismatchError) as exc_info:
            await IntegrityValidator(store).check(entry)
        assert exc_info.value.payload_missing
        assert exc_info.value.key == "a"

    @pytest.mark.asyncio
    async def test_check_reports_size_mismatch(self, store):
        entry = write_entry(store, "a", 10, recorded_size=12)
        with pytest.raises(IntegrityMismatchError) as exc_info:
            await IntegrityValidator(store).check(entry)
        assert not exc_info.value.payload_missing

    @pytest.mark.asyncio
    async def test_validate_drops_defective_entries(self, store):
        good = write_entry(store, "good", 5)
        missing = write_entry(store, "missing", 5)
        store.payload_path("missing", "missing.bin").unlink()
        wrong = write_entry(store, "wrong", 5, recorded_size=9)
        entries = {"good": good, "missing": missing, "wrong": wrong}

        cleaned = await IntegrityValidator(store).validate(entries)

        assert cleaned == {"good": good}
        assert len(entries) == 3
        assert not store.payload_path("wrong", "wrong.bin").exists()

    @pytest.mark.asyncio
    async def test_validate_keeps_entries_it_cannot_check(self, store, monkeypatch):
        entry = write_entry(store, "a", 5)

        async def failing_size(path):
            raise PermissionError("denied")

        monkeypatch.setattr(store, "size", failing_size)
        assert await IntegrityValidator(store).validate({"a": entry}) == {"a": entry}


class TestEvictionPolicy:
    """Tests for EvictionPolicy."""

    @pytest.mark.asyncio
    async def test_under_limit_is_untouched(self, store):
        entries = {k: write_entry(store, k, 10) for k in ("a", "b")}
        assert await EvictionPolicy(store).enforce_limit(entries, 20) == entries

    @pytest.mark.asyncio
    async def test_oldest_written_are_evicted_first(self, store):
        entries = {
            "old": write_entry(store, "old", 10, age_minutes=30),
            "mid": write_entry(store, "mid", 10, age_minutes=20),
            "new": write_entry(store, "new", 10, age_minutes=10),
        }
        remaining = await EvictionPolicy(store).enforce_limit(entries, 20)
        assert set(remaining) == {"mid", "new"}
        assert not store.payload_path("old", "old.bin").exists()
        assert store.payload_path("mid", "mid.bin").exists()

    @pytest.mark.asyncio
    async def test_ties_are_broken_by_key(self, store):
        entries = {k: write_entry(store, k, 10) for k in ("c", "a", "b")}
        remaining = await EvictionPolicy(store).enforce_limit(entries, 20)
        assert set(remaining) == {"b", "c"}

    @pytest.mark.asyncio
    async def test_protected_key_survives(self, store):
        entries = {
            "old": write_entry(store, "old", 10, age_minutes=30),
            "new": write_entry(store, "new", 10, age_minutes=10),
        }
        remaining = await EvictionPolicy(store).enforce_limit(entries, 10, protected=["old"])
        assert set(remaining) == {"old"}

    @pytest.mark.asyncio
    async def test_sizes_are_measured_on_disk(self, store):
        # Index claims 1 byte each, the files hold 10.
        entries = {
            "a": write_entry(store, "a", 10, age_minutes=2, recorded_size=1),
            "b": write_entry(store, "b", 10, age_minutes=1, recorded_size=1),
        }
        remaining = await EvictionPolicy(store).enforce_limit(entries, 15)
        assert set(remaining) == {"b"}

    @pytest.mark.asyncio
    async def test_missing_payload_counts_as_zero(self, store):
        ghost = write_entry(store, "ghost", 50, age_minutes=5)
        store.payload_path("ghost", "ghost.bin").unlink()
        entries = {"ghost": ghost, "a": write_entry(store, "a", 10)}
        assert await EvictionPolicy(store).enforce_limit(entries, 10) == entries

    @pytest.mark.asyncio
    async def test_empty_index(self, store):
        assert await EvictionPolicy(store).enforce_limit({}, 0) == {}


class TestExpirySweeper:
    """Tests for ExpirySweeper."""

    @pytest.mark.asyncio
    async def test_removes_expired_entries_and_payloads(self, store):
        fresh = write_entry(store, "fresh", 3, age_minutes=60)
        stale = write_entry(store, "stale", 3, age_minutes=36 * 60)
        remaining = await ExpirySweeper(store).sweep_expired(
            {"fresh": fresh, "stale": stale}, NOW
        )
        assert remaining == {"fresh": fresh}
        assert not store.payload_path("stale", "stale.bin").exists()

    @pytest.mark.asyncio
    async def test_nothing_expired(self, store):
        entries = {"a": write_entry(store, "a", 3)}
        assert await ExpirySweeper(store).sweep_expired(entries, NOW) == entries
