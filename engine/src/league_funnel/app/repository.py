from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Dict, Generic, List, Optional, Tuple, TypeVar
from uuid import uuid4

from loguru import logger

from ..services.exceptions import UnknownSessionError, UnknownThemeError
from .models import MigrationPayload, MigrationResult, SavedSong, Session, Theme, UserProfile

EntityT = TypeVar("EntityT", Theme, Session)


class StaleVersionError(Exception):
    """Raised when an update names a version older than the stored one."""

    def __init__(self, entity_id: str, current_version: int) -> None:
        super().__init__(f"{entity_id} is at version {current_version}")
        self.entity_id = entity_id
        self.current_version = current_version


class UnknownSavedSongError(Exception):
    def __init__(self, song_id: str) -> None:
        super().__init__(song_id)
        self.song_id = song_id


@dataclass
class VersionedRecord(Generic[EntityT]):
    value: EntityT
    version: int


class FunnelRepository:
    """In-memory authoritative store guarded by a single lock.

    Themes and sessions carry a version that grows on every write; updates may
    name the version they were based on and are refused when it is stale.
    """

    def __init__(self) -> None:
        self._themes: Dict[str, VersionedRecord[Theme]] = {}
        self._sessions: Dict[str, VersionedRecord[Session]] = {}
        self._profile: Optional[UserProfile] = None
        self._saved_songs: Dict[str, SavedSong] = {}
        self._settings: Dict[str, object] = {}
        self._competitor_analysis: Optional[Dict[str, object]] = None
        self._lock = asyncio.Lock()

    @staticmethod
    def _put(
        records: Dict[str, VersionedRecord[EntityT]],
        value: EntityT,
        expected_version: Optional[int] = None,
    ) -> VersionedRecord[EntityT]:
        existing = records.get(value.id)
        if existing is not None and expected_version is not None and expected_version != existing.version:
            raise StaleVersionError(value.id, existing.version)
        record = VersionedRecord(value=value, version=(existing.version if existing else 0) + 1)
        records[value.id] = record
        return record

    # Themes

    async def list_themes(self) -> List[VersionedRecord[Theme]]:
        async with self._lock:
            return sorted(self._themes.values(), key=lambda record: record.value.created_at, reverse=True)

    async def get_theme(self, theme_id: str) -> VersionedRecord[Theme]:
        async with self._lock:
            record = self._themes.get(theme_id)
            if record is None:
                raise UnknownThemeError(theme_id)
            return record

    async def upsert_theme(self, theme: Theme) -> VersionedRecord[Theme]:
        async with self._lock:
            return self._put(self._themes, theme)

    async def update_theme(
        self, theme: Theme, expected_version: Optional[int] = None
    ) -> VersionedRecord[Theme]:
        async with self._lock:
            if theme.id not in self._themes:
                raise UnknownThemeError(theme.id)
            return self._put(self._themes, theme, expected_version)

    async def delete_theme(self, theme_id: str) -> int:
        """Delete a theme and its sessions; returns the number of sessions removed."""

        async with self._lock:
            if self._themes.pop(theme_id, None) is None:
                raise UnknownThemeError(theme_id)
            orphaned = [key for key, record in self._sessions.items() if record.value.theme_id == theme_id]
            for key in orphaned:
                del self._sessions[key]
            return len(orphaned)

    # Sessions

    async def list_sessions(self) -> List[VersionedRecord[Session]]:
        async with self._lock:
            return sorted(self._sessions.values(), key=lambda record: record.value.created_at, reverse=True)

    async def get_session(self, session_id: str) -> VersionedRecord[Session]:
        async with self._lock:
            record = self._sessions.get(session_id)
            if record is None:
                raise UnknownSessionError(session_id)
            return record

    async def upsert_session(self, session: Session) -> VersionedRecord[Session]:
        async with self._lock:
            return self._put(self._sessions, session)

    async def update_session(
        self, session: Session, expected_version: Optional[int] = None
    ) -> VersionedRecord[Session]:
        async with self._lock:
            if session.id not in self._sessions:
                raise UnknownSessionError(session.id)
            return self._put(self._sessions, session, expected_version)

    async def delete_session(self, session_id: str) -> None:
        async with self._lock:
            if self._sessions.pop(session_id, None) is None:
                raise UnknownSessionError(session_id)

    # Profile

    async def get_profile(self) -> Optional[UserProfile]:
        async with self._lock:
            return self._profile

    async def put_profile(self, profile: UserProfile) -> UserProfile:
        async with self._lock:
            self._profile = profile
            return profile

    # Saved songs

    async def list_saved_songs(self) -> List[SavedSong]:
        async with self._lock:
            return sorted(self._saved_songs.values(), key=lambda song: song.saved_at, reverse=True)

    async def upsert_saved_song(self, song: SavedSong) -> SavedSong:
        async with self._lock:
            if not song.id:
                song = song.model_copy(update={"id": str(uuid4())})
            self._saved_songs[song.id] = song
            return song

    async def delete_saved_song(self, song_id: str) -> None:
        async with self._lock:
            if self._saved_songs.pop(song_id, None) is None:
                raise UnknownSavedSongError(song_id)

    # Bulk

    async def has_data(self) -> bool:
        async with self._lock:
            return bool(self._themes)

    async def counts(self) -> Tuple[int, int]:
        async with self._lock:
            return len(self._themes), len(self._sessions)

    async def migrate(self, payload: MigrationPayload) -> MigrationResult:
        """Upsert everything in ``payload`` as one atomic step."""

        themes = payload.themes
        sessions = payload.sessions
        saved = [s if s.id else s.model_copy(update={"id": str(uuid4())}) for s in payload.saved_songs]
        async with self._lock:
            for theme in themes:
                self._put(self._themes, theme)
            for session in sessions:
                self._put(self._sessions, session)
            for song in saved:
                self._saved_songs[song.id] = song
            if payload.user_profile is not None:
                self._profile = payload.user_profile
            if payload.settings:
                self._settings = dict(payload.settings)
            if payload.competitor_analysis is not None:
                self._competitor_analysis = dict(payload.competitor_analysis)
        logger.info(
            "Migrated {} theme(s), {} session(s), {} saved song(s)",
            len(themes),
            len(sessions),
            len(saved),
        )
        return MigrationResult(
            success=True,
            message="Migration completed successfully",
            themes=len(themes),
            sessions=len(sessions),
            saved_songs=len(saved),
        )
