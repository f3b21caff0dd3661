# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Command-line interface for the attachment cache.

This module provides a CLI for inspecting and maintaining a cache directory
directly, without going through the HTTP API.

Usage:
    attachment-cache stats
    attachment-cache --root /var/cache/mail-attachments stats --json
    attachment-cache key invoice.pdf 2000000 a@example.com
    attachment-cache put ./invoice.pdf --owner a@example.com
    attachment-cache get invoice.pdf 2000000 a@example.com --output /tmp/invoice.pdf
    attachment-cache remove <key>
    attachment-cache sweep
    attachment-cache validate
    attachment-cache clear --yes
    attachment-cache serve --port 8000
"""

from __future__ import annotations

import asyncio
import json
import os
import sys
from pathlib import Path
from typing import Any

import click
from rich.console import Console
from rich.table import Table

from .cache import AttachmentCacheBase, create_attachment_cache
from .config_loader import STORAGE_ROOT_OVERRIDE_ENV, CacheConfig, load_cache_config
from .errors import AttachmentCacheError
from .file_types import guess_mime_type
from .keys import derive_key
from .logger import configure_logging

console = Console()
err_console = Console(stderr=True)


def run_async(coro):
    """Execute an async coroutine synchronously from CLI context."""
    return asyncio.run(coro)


def print_error(message: str) -> None:
    err_console.print(f"[red]Error:[/red] {message}")


def print_success(message: str) -> None:
    console.print(f"[green]✓[/green] {message}")


def print_json(data: Any) -> None:
    console.print_json(json.dumps(data, indent=2, default=str))


async def _open_cache(config: CacheConfig) -> AttachmentCacheBase:
    cache = create_attachment_cache(config)
    await cache.initialize()
    return cache


def _run_command(config: CacheConfig, action):
    """Open the cache, run ``action(cache)`` and map cache errors to exit 1."""

    async def runner():
        cache = await _open_cache(config)
        return await action(cache)

    try:
        return run_async(runner())
    except AttachmentCacheError as exc:
        print_error(str(exc))
        sys.exit(1)


@click.group()
@click.option("--config", "config_path", type=click.Path(dir_okay=False), default=None,
              envvar="MAC_CONFIG", help="INI file with a [cache] section.")
@click.option("--root", "storage_root", type=click.Path(file_okay=False), default=None,
              help="Storage root, overrides the configuration.")
@click.option("--log-level", default="WARNING", show_default=True, envvar="MAC_LOG_LEVEL",
              help="Logging level.")
@click.pass_context
def cli(ctx: click.Context, config_path: str | None, storage_root: str | None,
        log_level: str) -> None:
    """Inspect and maintain the mail attachment cache."""
    configure_logging(log_level)
    config = load_cache_config(config_path, storage_root=storage_root)
    ctx.obj = {"config": config, "config_path": config_path, "storage_root": storage_root}


@cli.command()
@click.option("--json", "output_json", is_flag=True, help="Output as JSON")
@click.pass_obj
def stats(obj: dict, output_json: bool) -> None:
    """Show cache statistics."""
    config: CacheConfig = obj["config"]

    async def action(cache: AttachmentCacheBase):
        return await cache.stats()

    result = _run_command(config, action)
    if output_json:
        print_json(result.to_json())
        return

    table = Table(title=f"Attachment cache ({result.platform})")
    table.add_column("Metric", style="cyan")
    table.add_column("Value", justify="right")
    table.add_row("Storage root", str(config.resolved_storage_root))
    table.add_row("Files", str(result.total_files))
    table.add_row("Size", f"{result.total_size_mb:.2f} MB / {result.max_size_mb:.2f} MB")
    table.add_row("Usage", f"{result.usage_percent}%")
    table.add_row("Expired", str(result.expired_files))
    table.add_row("TTL", f"{result.ttl_seconds // 3600} h")
    for file_type, count in sorted(result.files_by_type.items(), key=lambda kv: kv[0].value):
        table.add_row(f"  {file_type.value}", str(count))
    console.print(table)


@cli.command()
@click.argument("filename")
@click.argument("size", type=int)
@click.argument("owner")
def key(filename: str, size: int, owner: str) -> None:
    """Print the cache key of an attachment."""
    click.echo(derive_key(filename, size, owner))


@cli.command()
@click.argument("file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--owner", required=True, help="Mailbox address owning the attachment.")
@click.option("--mime-type", default=None, help="MIME type (guessed from the name if omitted).")
@click.option("--filename", default=None, help="Attachment filename (defaults to FILE name).")
@click.pass_obj
def put(obj: dict, file: Path, owner: str, mime_type: str | None, filename: str | None) -> None:
    """Cache FILE as an attachment of OWNER."""
    data = file.read_bytes()
    name = filename or file.name
    mime = mime_type or guess_mime_type(name)

    async def action(cache: AttachmentCacheBase):
        return await cache.put(name, mime, len(data), owner, data)

    entry = _run_command(obj["config"], action)
    print_success(f"Cached {name} ({entry.size_bytes} bytes) as {entry.key}")


@cli.command()
@click.argument("filename")
@click.argument("size", type=int)
@click.argument("owner")
@click.option("--output", type=click.Path(dir_okay=False, path_type=Path), default=None,
              help="Write the cached bytes to this file.")
@click.pass_obj
def get(obj: dict, filename: str, size: int, owner: str, output: Path | None) -> None:
    """Look up an attachment by FILENAME, SIZE and OWNER."""

    async def action(cache: AttachmentCacheBase):
        entry = await cache.get(filename, size, owner)
        if entry is None or output is None:
            return entry, None
        return entry, await cache.read_payload(entry)

    entry, data = _run_command(obj["config"], action)
    if entry is None:
        print_error(f"{filename} is not cached")
        sys.exit(1)
    if output is None:
        print_json(entry.to_json())
        return
    if data is None:
        print_error(f"Cached payload for {filename} is not readable")
        sys.exit(1)
    output.write_bytes(data)
    print_success(f"Wrote {len(data)} bytes to {output}")


@cli.command()
@click.argument("cache_key")
@click.pass_obj
def remove(obj: dict, cache_key: str) -> None:
    """Remove the entry with CACHE_KEY."""

    async def action(cache: AttachmentCacheBase):
        await cache.remove(cache_key)

    _run_command(obj["config"], action)
    print_success(f"Removed {cache_key}")


@cli.command()
@click.pass_obj
def sweep(obj: dict) -> None:
    """Remove expired entries."""

    async def action(cache: AttachmentCacheBase):
        return await cache.sweep_expired()

    removed = _run_command(obj["config"], action)
    print_success(f"Removed {removed} expired entries")


@cli.command()
@click.pass_obj
def validate(obj: dict) -> None:
    """Drop entries whose payload is missing or has the wrong size."""

    async def action(cache: AttachmentCacheBase):
        # Opening the cache already validated the index once
        return cache.last_validation_removed + await cache.validate()

    removed = _run_command(obj["config"], action)
    print_success(f"Removed {removed} invalid entries")


@cli.command()
@click.option("--yes", is_flag=True, help="Do not ask for confirmation.")
@click.pass_obj
def clear(obj: dict, yes: bool) -> None:
    """Delete every cached attachment."""
    config: CacheConfig = obj["config"]
    if not yes:
        click.confirm(f"Delete every cached attachment in {config.resolved_storage_root}?",
                      abort=True)

    async def action(cache: AttachmentCacheBase):
        await cache.clear()

    _run_command(config, action)
    print_success("Cache cleared")


@cli.command()
@click.option("--host", default="0.0.0.0", show_default=True)
@click.option("--port", default=8000, show_default=True, type=int)
@click.pass_obj
def serve(obj: dict, host: str, port: int) -> None:
    """Serve the admin HTTP API with uvicorn."""
    import uvicorn

    if obj.get("config_path"):
        os.environ["MAC_CONFIG"] = obj["config_path"]
    if obj.get("storage_root"):
        os.environ[STORAGE_ROOT_OVERRIDE_ENV] = obj["storage_root"]
    uvicorn.run("attachment_cache.server:app", host=host, port=port)


def main() -> None:
    """Console script entry point."""
    cli()


if __name__ == "__main__":
    main()
