from __future__ import annotations

import argparse
import asyncio
import logging

from field_sync.config import YamlConfigLoader
from field_sync.config.models import AppConfig, ConfigLoadRequest
from field_sync.core.errors import FieldSyncError
from field_sync.logging import init_logging
from field_sync.runtime import FieldSyncRuntime

logger = logging.getLogger(__name__)


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="field-sync", description="Offline cache and sync queue tooling")
    parser.add_argument(
        "--config",
        default="data/config/config.yaml",
        help="Path to config.yaml (default: data/config/config.yaml)",
    )
    subparsers = parser.add_subparsers(dest="command", required=True, help="Command to run")

    # Command: status
    subparsers.add_parser("status", help="Show cache statistics and queued mutations")

    # Command: sync
    subparsers.add_parser("sync", help="Probe connectivity and drain the mutation queue once")

    # Command: check-update
    update_parser = subparsers.add_parser("check-update", help="Check for a newer asset generation")
    update_parser.add_argument(
        "--activate",
        action="store_true",
        help="Activate the new generation immediately when one is staged.",
    )

    return parser


async def _load_config(args: argparse.Namespace) -> AppConfig:
    loader = YamlConfigLoader()
    request = ConfigLoadRequest(
        yaml_path=args.config,
    )
    return await loader.load(request)


async def _show_status(runtime: FieldSyncRuntime) -> None:
    stats = runtime.cache_stats()
    print(f"generation: {stats.active_generation}")
    print(f"cache entries: {stats.entries} ({stats.payload_bytes} payload bytes)")
    print(f"cache storage: {stats.stored_bytes}/{stats.budget_bytes} bytes")
    for generation, count in sorted(stats.entries_by_generation.items()):
        print(f"  generation {generation}: {count}")
    print(f"storage: {stats.storage_usage_bytes}/{stats.storage_capacity_bytes} bytes")
    print(f"cache write failures: {stats.write_failures}")

    pending = runtime.pending_mutations()
    failed = runtime.failed_mutations()
    print(f"queued mutations: {len(pending)} (needing resolution: {len(failed)})")
    for mutation in failed:
        print(
            f"  {mutation.id} {mutation.operation.value} {mutation.resource_key} "
            f"attempts={mutation.attempts} error={mutation.last_error.value if mutation.last_error else '-'}"
        )


async def _run_sync(runtime: FieldSyncRuntime) -> None:
    online = await runtime.connectivity.probe()
    if not online:
        print("offline: server unreachable, mutations remain queued")
        return
    report = await runtime.sync_now()
    if report is None:
        print("sync skipped")
        return
    print(
        f"synced={report.synced} failed={report.failed} "
        f"remaining={report.remaining} interrupted={report.interrupted}"
    )
    if runtime.orchestrator.auth_required:
        print("server requires login before the remaining mutations can be sent")


async def _check_update(runtime: FieldSyncRuntime, *, activate: bool) -> None:
    available = await runtime.check_for_update()
    if not available:
        print(f"up to date (generation {runtime.cache.active_generation})")
        return
    print(f"generation {runtime.updates.staged_generation} staged")
    if activate:
        await runtime.activate_new_generation()
        print(f"generation {runtime.cache.active_generation} active")


async def _main_async() -> None:
    parser = _build_parser()
    args = parser.parse_args()

    config = await _load_config(args)
    init_logging(config.logging)

    async with FieldSyncRuntime(config) as runtime:
        try:
            if args.command == "status":
                await _show_status(runtime)
            elif args.command == "sync":
                await _run_sync(runtime)
            elif args.command == "check-update":
                await _check_update(runtime, activate=args.activate)
        except FieldSyncError as e:
            logger.error("Command failed. command=%s error=%s", args.command, e)
            raise SystemExit(1) from e


def main() -> None:
    try:
        asyncio.run(_main_async())
    except KeyboardInterrupt:
        logger.info("Interrupted by user.")


if __name__ == "__main__":
    main()
