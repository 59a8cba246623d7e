"""
CLI entry point to bootstrap the local cache against the remote store.

Example:
    python -m league_funnel.sync --api-url http://localhost:3001/api/ml --migrate
"""

from __future__ import annotations

import argparse
import asyncio
from pathlib import Path
from typing import Optional

import httpx

from .app.settings import Settings
from .services.local_store import LocalStore
from .services.migration import MigrationImporter
from .services.persistence import JsonKeyValueCache
from .services.reconciler import Reconciler
from .services.remote_api import RemoteApiClient
from .services.server_sync import ServerSync


def _parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Sync the local funnel cache with the remote store.")
    parser.add_argument(
        "--api-url",
        default=None,
        help="Remote store base URL (defaults to settings).",
    )
    parser.add_argument(
        "--cache-dir",
        type=Path,
        default=None,
        help="Override the local cache directory (defaults to settings).",
    )
    parser.add_argument(
        "--migrate",
        action="store_true",
        help="Import legacy local data when the remote store is empty.",
    )
    parser.add_argument(
        "--force",
        action="store_true",
        help="Push every local entity regardless of the last synced state.",
    )
    return parser.parse_args()


async def _run(
    *,
    api_url: Optional[str],
    cache_dir: Optional[Path],
    migrate: bool,
    force: bool = False,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> int:
    settings_kwargs: dict[str, object] = {}
    if api_url is not None:
        settings_kwargs["api_base_url"] = api_url
    if cache_dir is not None:
        settings_kwargs["cache_dir"] = cache_dir

    settings = Settings(**settings_kwargs)
    settings.ensure_directories()

    cache = JsonKeyValueCache(settings.cache_dir)
    store = LocalStore(
        cache,
        state_key=settings.state_key,
        limits=settings.tier_limits(),
        thresholds=settings.phase_thresholds(),
    )
    store.load()

    async with RemoteApiClient(
        settings.api_base_url,
        timeout=settings.request_timeout_seconds,
        transport=transport,
    ) as api:
        reconciler = Reconciler(
            store,
            api,
            cache=cache,
            snapshot_key=settings.snapshot_key,
            debounce_seconds=settings.sync_debounce_seconds,
        )
        migrator = MigrationImporter(
            cache,
            api,
            state_key=settings.state_key,
            settings_key=settings.legacy_settings_key,
        )
        bootstrap = ServerSync(store, api, reconciler, migrator)
        reconciler.start()
        try:
            state = await bootstrap.initialize()
            if state.migration_needed and migrate:
                state = await bootstrap.migrate_to_server()
            if state.server_available and not state.migration_needed:
                status = await (reconciler.force_sync_all() if force else reconciler.flush())
            else:
                status = reconciler.status
        finally:
            reconciler.stop()

    print(f"server        : {'available' if state.server_available else 'unavailable'}")
    print(f"migration     : {'needed' if state.migration_needed else 'not needed'}")
    print(f"themes        : {len(store.themes)}")
    print(f"sessions      : {len(store.sessions)}")
    print(f"saved_songs   : {len(store.saved_songs)}")
    print(f"last_sync     : {status.last_sync_time.isoformat() if status.last_sync_time else 'never'}")
    print(f"pending       : {status.pending_changes}")
    if state.error or status.sync_error:
        print(f"error         : {state.error or status.sync_error}")
        return 1
    return 0


def main() -> None:
    args = _parse_args()
    exit_code = asyncio.run(
        _run(
            api_url=args.api_url,
            cache_dir=args.cache_dir,
            migrate=args.migrate,
            force=args.force,
        )
    )
    raise SystemExit(exit_code)


if __name__ == "__main__":
    main()
