# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Prometheus metrics for monitoring the attachment cache.

All metrics use the ``mac_`` prefix (mail-attachment-cache).

Metrics exposed:
    - ``mac_cache_hits_total``: Counter of ``get`` calls served from cache.
    - ``mac_cache_misses_total``: Counter of ``get`` calls that missed.
    - ``mac_cache_writes_total``: Counter of successful ``put`` calls.
    - ``mac_cache_write_errors_total``: Counter of failed ``put`` calls.
    - ``mac_cache_removals_total``: Counter of removed entries per reason
      (explicit, expired, evicted, integrity, cleared).
    - ``mac_cache_entries``: Gauge of indexed entries.
    - ``mac_cache_size_bytes``: Gauge of recorded payload bytes.

Example:
    Accessing metrics via the REST API::

        GET /metrics
"""

from prometheus_client import CollectorRegistry, Counter, Gauge, generate_latest

REMOVAL_REASONS = ("explicit", "expired", "evicted", "integrity", "cleared")


class CacheMetrics:
    """Prometheus metrics collector for the attachment cache.

    Attributes:
        registry: The Prometheus CollectorRegistry holding all metrics.
        hits: Counter of cache hits.
        misses: Counter of cache misses.
        writes: Counter of cached payloads.
        write_errors: Counter of payloads that could not be cached.
        removals: Counter of removed entries labeled by reason.
        entries: Gauge of indexed entries.
        size_bytes: Gauge of recorded payload bytes.
    """

    def __init__(self, registry: CollectorRegistry | None = None):
        """Initialize metrics with an optional custom registry.

        Args:
            registry: Optional Prometheus CollectorRegistry. If not provided,
                a new registry is created. Use a custom registry for testing
                or when multiple caches live in one process.
        """
        self.registry = registry or CollectorRegistry()
        self.hits = Counter(
            "mac_cache_hits_total",
            "Total cache hits",
            registry=self.registry,
        )
        self.misses = Counter(
            "mac_cache_misses_total",
            "Total cache misses",
            registry=self.registry,
        )
        self.writes = Counter(
            "mac_cache_writes_total",
            "Total cached payloads",
            registry=self.registry,
        )
        self.write_errors = Counter(
            "mac_cache_write_errors_total",
            "Total payloads that could not be cached",
            registry=self.registry,
        )
        self.removals = Counter(
            "mac_cache_removals_total",
            "Total removed cache entries",
            ["reason"],
            registry=self.registry,
        )
        self.entries = Gauge(
            "mac_cache_entries",
            "Current indexed cache entries",
            registry=self.registry,
        )
        self.size_bytes = Gauge(
            "mac_cache_size_bytes",
            "Current recorded payload bytes",
            registry=self.registry,
        )

    def inc_hit(self) -> None:
        self.hits.inc()

    def inc_miss(self) -> None:
        self.misses.inc()

    def inc_write(self) -> None:
        self.writes.inc()

    def inc_write_error(self) -> None:
        self.write_errors.inc()

    def inc_removed(self, reason: str, count: int = 1) -> None:
        """Increment the removal counter.

        Args:
            reason: One of ``REMOVAL_REASONS``.
            count: Number of removed entries. Zero is ignored.
        """
        if count > 0:
            self.removals.labels(reason=reason).inc(count)

    def set_usage(self, entries: int, size_bytes: int) -> None:
        """Set the entry count and recorded size gauges."""
        self.entries.set(entries)
        self.size_bytes.set(size_bytes)

    def generate_latest(self) -> bytes:
        """Export all metrics in Prometheus text exposition format."""
        return generate_latest(self.registry)
