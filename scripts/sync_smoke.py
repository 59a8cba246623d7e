#!/usr/bin/env python3
"""
Quick smoke test for the local-first sync path.

Builds a throwaway funnel in a temporary cache, pushes it to a remote store
and compares what the server holds with the local state. Without
``--api-url`` an in-process store is used so contributors can verify the
client and server halves together.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
import tempfile
import time
from pathlib import Path
from typing import Optional
from uuid import uuid4

REPO_ROOT = Path(__file__).resolve().parents[1]
SRC_DIR = REPO_ROOT / "engine" / "src"
if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run a standalone sync smoke test.")
    parser.add_argument(
        "--theme",
        default="Songs about the weather",
        help="Raw theme text used for the throwaway funnel.",
    )
    parser.add_argument(
        "--songs",
        type=int,
        default=6,
        help="Number of candidates to add (1-30).",
    )
    parser.add_argument(
        "--api-url",
        default=None,
        help="Remote store base URL; an in-process store is used when omitted.",
    )
    return parser.parse_args()


async def run_smoke(args: argparse.Namespace) -> None:
    import httpx

    from league_funnel.app.main import API_PREFIX, create_app
    from league_funnel.app.models import FunnelTier, Song
    from league_funnel.app.settings import Settings
    from league_funnel.services.local_store import LocalStore
    from league_funnel.services.persistence import JsonKeyValueCache
    from league_funnel.services.reconciler import Reconciler
    from league_funnel.services.remote_api import RemoteApiClient

    with tempfile.TemporaryDirectory(prefix="league-funnel-smoke-") as tmp:
        cache = JsonKeyValueCache(Path(tmp))
        transport: Optional[httpx.AsyncBaseTransport] = None
        base_url = args.api_url
        if base_url is None:
            transport = httpx.ASGITransport(app=create_app(settings=Settings(cache_dir=Path(tmp))))
            base_url = f"http://smoke{API_PREFIX}"

        async with RemoteApiClient(base_url, transport=transport) as api:
            store = LocalStore(cache)
            reconciler = Reconciler(store, api, cache=cache)
            reconciler.start()

            theme_id = store.create_theme(f"{args.theme} ({uuid4().hex[:6]})")
            songs = [
                Song(id=str(uuid4()), title=f"Smoke {index}", artist="Sync Check")
                for index in range(max(1, min(args.songs, 30)))
            ]
            for song in songs:
                store.add_candidate(theme_id, song)
            store.promote(theme_id, songs[0], FunnelTier.SEMIFINALISTS, "smoke")

            start = time.perf_counter()
            status = await reconciler.flush()
            elapsed = time.perf_counter() - start

            remote = await api.get_theme(theme_id)
            reconciler.stop()

        local = store.get_theme(theme_id)
        payload = {
            "theme_id": theme_id,
            "phase": local.phase.value,
            "remote_version": remote.version,
            "sync_error": status.sync_error,
            "push_seconds": round(elapsed, 3),
            "converged": remote.value == local,
        }
        print(json.dumps(payload, indent=2))

        if status.sync_error or remote.value != local:
            print("Remote copy diverged from the local funnel.", file=sys.stderr)
            sys.exit(3)
        print("Local and remote funnels converged.", file=sys.stderr)


def main() -> None:
    args = parse_args()
    try:
        asyncio.run(run_smoke(args))
    except KeyboardInterrupt:  # pragma: no cover - operator friendly exit
        print("Cancelled smoke test.", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
