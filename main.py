#!/usr/bin/env python3
"""
digest command line driver

Runs the agent tool server on stdio or performs one-shot maintenance tasks
against the local database, subscription outline and change-log vault:

- serve: JSON-RPC tool server for an agent host
- fetch: sync every feed (or one with --url) and print the summary
- status / compact: database statistics and VACUUM
- sync-init / sync / sync-status: encrypted replication between devices
- export-opml: write the subscription outline to stdout or a file

Results are printed as JSON on stdout; logs go to stderr.
"""

import argparse
import asyncio
import json
import sys
from typing import Any, Dict, Optional

from config import config, get_logger
from errors import DigestError
from server import DigestApp, serve
from sync_config import config_exists, init_config
from telemetry import init_telemetry, trace_span

# Module-specific logger
logger = get_logger("main")


def _print_json(data: Any) -> None:
    print(json.dumps(data, indent=2, default=str))


class DigestCommands:
    """One-shot CLI operations sharing a DigestApp."""

    def __init__(self, with_sync: bool = False) -> None:
        self.app = DigestApp(with_sync=with_sync)

    async def __aenter__(self) -> "DigestCommands":
        await self.app.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.app.stop()

    @trace_span("cli.fetch", tracer_name="main", attr_from_args=lambda self, url=None, force=False: {"feed.url": url or "", "fetch.force": force})
    async def fetch(self, url: Optional[str] = None, force: bool = False) -> Dict[str, Any]:
        logger.info("📡 Syncing feeds" if not url else f"📡 Syncing {url}")
        result = await self.app.tools.sync_feeds(url=url, force=force)
        logger.info(
            f"✅ {result['total_feeds']} feeds: {result['total_new']} new entries, "
            f"{result['total_cached']} cached, {result['total_errors']} errors"
        )
        return result

    async def status(self) -> Dict[str, Any]:
        stats = await self.app.tools.stats_resource()
        stats = stats["data"]
        stats["paths"] = {
            "database": config.DATABASE_PATH,
            "opml": config.OPML_PATH,
            "sync_config": config.SYNC_CONFIG_PATH,
        }
        return stats

    async def compact(self) -> Dict[str, Any]:
        await self.app.store.execute('compact')
        return {"success": True, "database": config.DATABASE_PATH}

    @trace_span("cli.sync", tracer_name="main")
    async def sync(self) -> Dict[str, Any]:
        return await self.app.syncer.sync()

    async def sync_status(self) -> Dict[str, Any]:
        status = await self.app.syncer.status()
        status["config_path"] = config.SYNC_CONFIG_PATH
        status["config_exists"] = config_exists()
        return status

    async def export_opml(self) -> bytes:
        async with self.app.outline.read() as document:
            return document.to_bytes()


async def _run_command(mode: str, args: argparse.Namespace) -> Any:
    with_sync = mode in ('sync', 'sync-status')
    async with DigestCommands(with_sync=with_sync) as commands:
        if mode == 'fetch':
            return await commands.fetch(url=args.url, force=args.force)
        if mode == 'status':
            return await commands.status()
        if mode == 'compact':
            return await commands.compact()
        if mode == 'sync':
            return await commands.sync()
        if mode == 'sync-status':
            return await commands.sync_status()
        if mode == 'export-opml':
            return await commands.export_opml()
    raise ValueError(f"unknown mode: {mode}")


def _write_opml(data: bytes, output: Optional[str]) -> None:
    if output:
        with open(output, 'wb') as f:
            f.write(data)
        logger.info(f"Outline written to {output}")
    else:
        sys.stdout.buffer.write(data)
        sys.stdout.flush()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description='digest: personal feed reader for agents')
    parser.add_argument('mode', choices=['serve', 'fetch', 'status', 'compact', 'sync-init', 'sync',
                                         'sync-status', 'export-opml'],
                        help='Operation mode')
    parser.add_argument('--url', type=str,
                        help='fetch: only sync the feed with this URL')
    parser.add_argument('--force', action='store_true',
                        help='fetch: ignore cached validators and download feeds in full')
    parser.add_argument('--seed', type=str,
                        help='sync-init: recovery phrase shared by all devices')
    parser.add_argument('--server', type=str, default='',
                        help='sync-init: relay base URL')
    parser.add_argument('--user-id', type=str, default='',
                        help='sync-init: relay account id')
    parser.add_argument('--token', type=str, default='',
                        help='sync-init: relay bearer token')
    parser.add_argument('--output', '-o', type=str,
                        help='export-opml: write to this file instead of stdout')
    return parser


def main(argv: Optional[list] = None) -> None:
    """Main entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        if args.mode == 'serve':
            asyncio.run(serve())
            return

        init_telemetry("digest-cli")

        if args.mode == 'sync-init':
            if not args.seed:
                parser.error("sync-init requires --seed")
            sync_config = init_config(args.seed, server=args.server, user_id=args.user_id, token=args.token)
            _print_json({"success": True, "path": config.SYNC_CONFIG_PATH, **sync_config.redacted()})
            return

        result = asyncio.run(_run_command(args.mode, args))
        if args.mode == 'export-opml':
            _write_opml(result, args.output)
        else:
            _print_json(result)

    except KeyboardInterrupt:
        logger.info("👋 digest shutting down")
    except DigestError as e:
        logger.error(f"❌ {args.mode} failed: {e}")
        sys.exit(1)
    except Exception as e:
        logger.error(f"💥 Unexpected error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
