"""Shared fixtures for the attachment cache tests."""

from datetime import datetime, timedelta, timezone

import pytest

from attachment_cache.cache import AttachmentCache

START = datetime(2025, 3, 1, 9, 0, 0, tzinfo=timezone.utc)


class FakeClock:
    """Manually advanced UTC clock."""

    def __init__(self, start: datetime = START):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def cache_root(tmp_path):
    return tmp_path / "attachment_cache"


@pytest.fixture
def make_cache(cache_root, clock):
    """Factory for caches sharing the same root and clock."""

    def factory(**kwargs):
        kwargs.setdefault("storage_root", cache_root)
        kwargs.setdefault("clock", clock)
        return AttachmentCache(**kwargs)

    return factory
