# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Configuration loader for the attachment cache.

Settings come from an INI-style configuration file, environment variables
or built-in defaults. They are process-wide: the cache is configured once
at startup, never per call.

Example:
    Configuration file format (config.ini)::

        [cache]
        backend = filesystem
        storage_root = /var/cache/mail-attachments
        max_size_mb = 100
        ttl_hours = 36
        io_timeout_seconds = 5
        max_init_attempts = 3
        sweep_interval_seconds = 300

    Loading cache configuration::

        config = load_cache_config("/etc/attachment-cache/config.ini")
        # Returns CacheConfig dataclass
"""

from __future__ import annotations

import configparser
import os
import tempfile
from dataclasses import dataclass
from datetime import timedelta
from pathlib import Path

from .logger import get_logger
from .models import MIB

DEFAULT_CACHE_FOLDER = "attachment_cache"
BACKENDS = ("filesystem", "null")
STORAGE_ROOT_OVERRIDE_ENV = "MAC_STORAGE_ROOT_OVERRIDE"


@dataclass
class CacheConfig:
    """Configuration for the attachment cache.

    Attributes:
        backend: "filesystem" for the persistent cache, "null" for the
            degenerate always-miss cache.
        storage_root: Directory for the index and payloads. None uses
            ``<system temp dir>/attachment_cache``.
        max_size_mb: Max total payload size in MB.
        ttl_hours: Lifetime of an entry from its write time.
        io_timeout_seconds: Bound for each blocking filesystem call.
        max_init_attempts: Consecutive lazy initialization failures before
            operations fail fast with NotInitializedError.
        sweep_interval_seconds: Minimum delay between opportunistic expiry
            sweeps on the read path.
    """

    backend: str = "filesystem"
    storage_root: str | None = None
    max_size_mb: float = 100.0
    ttl_hours: float = 36.0
    io_timeout_seconds: float = 5.0
    max_init_attempts: int = 3
    sweep_interval_seconds: int = 300

    @property
    def persistent(self) -> bool:
        """Check if the filesystem backend is selected."""
        return self.backend == "filesystem"

    @property
    def max_size_bytes(self) -> int:
        return int(self.max_size_mb * MIB)

    @property
    def ttl(self) -> timedelta:
        return timedelta(hours=self.ttl_hours)

    @property
    def resolved_storage_root(self) -> Path:
        """The storage root, defaulting to a folder in the system temp dir."""
        if self.storage_root:
            return Path(self.storage_root).expanduser()
        return Path(tempfile.gettempdir()) / DEFAULT_CACHE_FOLDER


logger = get_logger("config_loader")

_DEFAULTS = CacheConfig()

ENV_MAPPING = {
    "backend": ("MAC_CACHE_BACKEND", str, _DEFAULTS.backend),
    "storage_root": ("MAC_CACHE_STORAGE_ROOT", str, _DEFAULTS.storage_root),
    "max_size_mb": ("MAC_CACHE_MAX_SIZE_MB", float, _DEFAULTS.max_size_mb),
    "ttl_hours": ("MAC_CACHE_TTL_HOURS", float, _DEFAULTS.ttl_hours),
    "io_timeout_seconds": ("MAC_CACHE_IO_TIMEOUT_SECONDS", float, _DEFAULTS.io_timeout_seconds),
    "max_init_attempts": ("MAC_CACHE_MAX_INIT_ATTEMPTS", int, _DEFAULTS.max_init_attempts),
    "sweep_interval_seconds": (
        "MAC_CACHE_SWEEP_INTERVAL_SECONDS", int, _DEFAULTS.sweep_interval_seconds,
    ),
}


def load_cache_config(
    config_path: str | None = None, storage_root: str | None = None
) -> CacheConfig:
    """Load cache configuration from config file or environment.

    Priority: explicit ``storage_root`` argument > config file >
    environment variables > defaults.

    Environment variables:
        MAC_CACHE_BACKEND: "filesystem" or "null"
        MAC_CACHE_STORAGE_ROOT: Directory for the index and payloads
        MAC_CACHE_MAX_SIZE_MB: Max total payload size in MB
        MAC_CACHE_TTL_HOURS: Entry lifetime in hours
        MAC_CACHE_IO_TIMEOUT_SECONDS: Timeout for each filesystem call
        MAC_CACHE_MAX_INIT_ATTEMPTS: Lazy initialization attempts
        MAC_CACHE_SWEEP_INTERVAL_SECONDS: Delay between expiry sweeps

    Args:
        config_path: Optional path to config.ini file
        storage_root: Optional storage root overriding file and environment,
            as given on the command line.

    Returns:
        CacheConfig with parsed settings, using defaults for missing values.
    """
    config_values: dict = {}

    for key, (env_var, type_fn, default) in ENV_MAPPING.items():
        env_value = os.environ.get(env_var)
        if env_value is not None:
            try:
                config_values[key] = type_fn(env_value)
            except (ValueError, TypeError):
                logger.warning(f"Invalid value for {env_var}, using default")
                config_values[key] = default
        else:
            config_values[key] = default

    if config_path and Path(config_path).exists():
        config = configparser.ConfigParser()
        config.read(config_path)

        if config.has_section("cache"):
            def get_float(key: str, default: float) -> float:
                try:
                    return config.getfloat("cache", key, fallback=default)
                except ValueError:
                    return default

            def get_int(key: str, default: int) -> int:
                try:
                    return config.getint("cache", key, fallback=default)
                except ValueError:
                    return default

            def get_str(key: str, default: str | None = None) -> str | None:
                value = config.get("cache", key, fallback=default)
                return value.strip() if value else default

            config_values["backend"] = get_str("backend", config_values["backend"])
            config_values["storage_root"] = get_str("storage_root", config_values["storage_root"])
            config_values["max_size_mb"] = get_float("max_size_mb", config_values["max_size_mb"])
            config_values["ttl_hours"] = get_float("ttl_hours", config_values["ttl_hours"])
            config_values["io_timeout_seconds"] = get_float(
                "io_timeout_seconds", config_values["io_timeout_seconds"]
            )
            config_values["max_init_attempts"] = get_int(
                "max_init_attempts", config_values["max_init_attempts"]
            )
            config_values["sweep_interval_seconds"] = get_int(
                "sweep_interval_seconds", config_values["sweep_interval_seconds"]
            )
    elif config_path:
        logger.warning(f"Config file {config_path} not found, using environment and defaults")

    backend = (config_values["backend"] or "").strip().lower()
    if backend not in BACKENDS:
        logger.warning(f"Unknown cache backend {backend!r}, using filesystem")
        backend = "filesystem"
    config_values["backend"] = backend

    for key in ("max_size_mb", "ttl_hours"):
        if config_values[key] < 0:
            logger.warning(f"Negative {key} {config_values[key]}, using default")
            config_values[key] = ENV_MAPPING[key][2]

    if storage_root:
        config_values["storage_root"] = storage_root

    return CacheConfig(**config_values)


def load_config_from_env() -> CacheConfig:
    """Load the configuration named by ``MAC_CONFIG``.

    ``MAC_STORAGE_ROOT_OVERRIDE`` carries a command-line storage root into
    a server process and wins over both the file and ``MAC_CACHE_STORAGE_ROOT``.
    """
    return load_cache_config(
        os.environ.get("MAC_CONFIG") or None,
        storage_root=os.environ.get(STORAGE_ROOT_OVERRIDE_ENV) or None,
    )
