from __future__ import annotations

from pathlib import Path
from typing import AsyncIterator, Tuple

import httpx
import pytest
import pytest_asyncio

from league_funnel.app.main import API_PREFIX, create_app
from league_funnel.app.models import Song, Theme
from league_funnel.app.settings import Settings
from league_funnel.services.local_store import LocalStore
from league_funnel.services.migration import LEGACY_STATE_KEY, MigrationImporter
from league_funnel.services.reconciler import Reconciler
from league_funnel.services.remote_api import RemoteApiClient
from league_funnel.services.server_sync import SERVER_UNAVAILABLE, ServerSync

LEGACY_BLOB = {
    "state": {
        "themes": [
            {"id": "old-1", "rawTheme": "Covers", "title": "Covers"},
            {"id": "old-2", "rawTheme": "Duets", "title": "Duets"},
            {"id": "old-3", "rawTheme": "B-sides", "title": "B-sides"},
        ],
        "sessions": [],
    }
}


@pytest_asyncio.fixture
async def api(tmp_path: Path) -> AsyncIterator[RemoteApiClient]:
    app = create_app(settings=Settings(cache_dir=tmp_path))
    async with RemoteApiClient(f"http://test{API_PREFIX}", transport=httpx.ASGITransport(app=app)) as client:
        yield client


def _bootstrap(api, memory_cache, manual_scheduler) -> Tuple[LocalStore, Reconciler, ServerSync]:
    store = LocalStore(memory_cache)
    store.load()
    reconciler = Reconciler(store, api, scheduler=manual_scheduler, cache=memory_cache)
    reconciler.start()
    return store, reconciler, ServerSync(store, api, reconciler, MigrationImporter(memory_cache, api))


@pytest.mark.asyncio
async def test_unreachable_server_keeps_local_mode(memory_cache, manual_scheduler) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("refused", request=request)

    async with RemoteApiClient("http://test/api/ml", transport=httpx.MockTransport(handler)) as offline:
        store, _, bootstrap = _bootstrap(offline, memory_cache, manual_scheduler)
        theme_id = store.create_theme("Still editable")
        state = await bootstrap.initialize()

    assert state.is_initialized is True
    assert state.server_available is False
    assert state.error == SERVER_UNAVAILABLE
    assert store.get_theme(theme_id).title == "Still editable"


@pytest.mark.asyncio
async def test_empty_server_with_legacy_data_offers_migration(api, memory_cache, manual_scheduler) -> None:
    memory_cache.set(LEGACY_STATE_KEY, LEGACY_BLOB)
    store, reconciler, bootstrap = _bootstrap(api, memory_cache, manual_scheduler)

    state = await bootstrap.initialize()
    assert state.migration_needed is True
    assert state.is_initialized is False

    state = await bootstrap.migrate_to_server()
    assert state.migration_needed is False
    assert state.is_initialized is True
    assert len(await api.list_themes()) == 3
    assert sorted(theme.id for theme in store.themes) == ["old-1", "old-2", "old-3"]
    assert reconciler.diff(store.snapshot()) == []


@pytest.mark.asyncio
async def test_hydration_does_not_echo_back(api, memory_cache, manual_scheduler) -> None:
    await api.create_theme(Theme(id="remote-1", raw_theme="Night drives", title="Night drives"))
    store, reconciler, bootstrap = _bootstrap(api, memory_cache, manual_scheduler)

    state = await bootstrap.initialize()
    assert state.error is None
    assert [theme.id for theme in store.themes] == ["remote-1"]
    assert manual_scheduler.pending == []
    assert reconciler.diff(store.snapshot()) == []

    store.add_candidate("remote-1", Song(id="s1", title="Fresh", artist="Edit"))
    await manual_scheduler.fire()
    remote = await api.get_theme("remote-1")
    assert [song.id for song in remote.value.candidates] == ["s1"]
    assert remote.version == 2


@pytest.mark.asyncio
async def test_unreachable_server_serves_previously_cached_themes(memory_cache, manual_scheduler) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("refused", request=request)

    memory_cache.set(LEGACY_STATE_KEY, LEGACY_BLOB)
    async with RemoteApiClient("http://test/api/ml", transport=httpx.MockTransport(handler)) as offline:
        store, _, bootstrap = _bootstrap(offline, memory_cache, manual_scheduler)
        state = await bootstrap.initialize()

    assert state.error == SERVER_UNAVAILABLE
    assert sorted(theme.id for theme in store.themes) == ["old-1", "old-2", "old-3"]
    store.add_candidate("old-2", Song(id="s1", title="Offline", artist="Edit"))
    assert store.locate_song("s1") is not None


@pytest.mark.asyncio
async def test_skip_migration_pushes_local_state(api, memory_cache, manual_scheduler) -> None:
    memory_cache.set(LEGACY_STATE_KEY, LEGACY_BLOB)
    store, _, bootstrap = _bootstrap(api, memory_cache, manual_scheduler)
    store.create_theme("Started fresh")

    assert (await bootstrap.initialize()).migration_needed is True
    state = await bootstrap.skip_migration()

    assert state.migration_needed is False
    assert state.is_initialized is True
    assert state.error is None
    local_titles = sorted(theme.title for theme in store.themes)
    assert local_titles == ["B-sides", "Covers", "Duets", "Started fresh"]
    assert sorted(item.value.title for item in await api.list_themes()) == local_titles
    assert memory_cache.exists(LEGACY_STATE_KEY)


@pytest.mark.asyncio
async def test_retry_after_outage(memory_cache, manual_scheduler, tmp_path: Path) -> None:
    app = create_app(settings=Settings(cache_dir=tmp_path))
    asgi = httpx.ASGITransport(app=app)
    online = {"value": False}

    async def handler(request: httpx.Request) -> httpx.Response:
        if not online["value"]:
            raise httpx.ConnectError("refused", request=request)
        return await asgi.handle_async_request(request)

    async with RemoteApiClient(f"http://test{API_PREFIX}", transport=httpx.MockTransport(handler)) as flaky:
        _, _, bootstrap = _bootstrap(flaky, memory_cache, manual_scheduler)
        assert (await bootstrap.initialize()).server_available is False

        online["value"] = True
        state = await bootstrap.retry()
        assert state.server_available is True
        assert state.error is None
