from __future__ import annotations

import asyncio
from typing import Dict, Optional

from loguru import logger

from .exceptions import MigrationFailedError, SyncError
from .local_store import EntityRef, LocalStore
from .migration import MigrationImporter
from .reconciler import Reconciler
from .remote_api import RemoteApiClient
from .types import BootstrapState, EntityKind

SERVER_UNAVAILABLE = "Server unavailable. Using local data only."


class ServerSync:
    """Startup handshake between the local store and the remote store."""

    def __init__(
        self,
        store: LocalStore,
        api: RemoteApiClient,
        reconciler: Reconciler,
        migrator: MigrationImporter,
    ) -> None:
        self._store = store
        self._api = api
        self._reconciler = reconciler
        self._migrator = migrator
        self.state = BootstrapState()
        self._migration_skipped = False

    async def initialize(self) -> BootstrapState:
        self.state = BootstrapState(is_loading=True)
        try:
            await self._api.health()
        except SyncError as exc:
            logger.warning("Remote store health check failed: {}", exc)
            self.state = BootstrapState(is_initialized=True, error=SERVER_UNAVAILABLE)
            return self.state
        self.state.server_available = True
        try:
            has_data = await self._api.has_data()
            if not has_data and not self._migration_skipped and self._migrator.needs_migration():
                logger.info("Remote store is empty and legacy data exists; migration offered")
                self.state.migration_needed = True
                self.state.is_loading = False
                return self.state
            if not has_data and self._store.has_local_data():
                logger.info("Remote store is empty; pushing cached local data")
                await self._reconciler.force_sync_all()
            else:
                await self._hydrate()
        except SyncError as exc:
            logger.error("Failed to load data from the remote store: {}", exc)
            self.state.error = f"Failed to load data from server: {exc}"
        self.state.is_loading = False
        self.state.is_initialized = True
        return self.state

    async def _hydrate(self) -> None:
        themes, sessions, profile, saved = await asyncio.gather(
            self._api.list_themes(),
            self._api.list_sessions(),
            self._api.get_profile(),
            self._api.list_saved_songs(),
        )
        versions: Dict[EntityRef, int] = {}
        for item in themes:
            if item.version is not None:
                versions[(EntityKind.THEME, item.value.id)] = item.version
        for item in sessions:
            if item.version is not None:
                versions[(EntityKind.SESSION, item.value.id)] = item.version
        self._store.hydrate(
            themes=[item.value for item in themes],
            sessions=[item.value for item in sessions],
            user_profile=profile,
            saved_songs=saved,
        )
        self._reconciler.reset(self._store.snapshot(), versions)
        logger.info(
            "Hydrated {} theme(s), {} session(s) and {} saved song(s) from the remote store",
            len(themes),
            len(sessions),
            len(saved),
        )

    async def migrate_to_server(self) -> BootstrapState:
        self.state.is_migrating = True
        try:
            await self._migrator.migrate()
        except MigrationFailedError as exc:
            self.state.is_migrating = False
            self.state.error = f"Migration failed: {exc}"
            return self.state
        self.state.is_migrating = False
        self.state.migration_needed = False
        return await self.initialize()

    async def skip_migration(self) -> BootstrapState:
        """Decline the import; the legacy blob stays where it is."""

        self._migration_skipped = True
        logger.info("Migration skipped; legacy data left untouched")
        return await self.initialize()

    async def retry(self) -> BootstrapState:
        return await self.initialize()

    @property
    def error(self) -> Optional[str]:
        return self.state.error
