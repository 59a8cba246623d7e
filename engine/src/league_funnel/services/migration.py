"""One-time transfer of legacy locally cached data to the remote store."""

from __future__ import annotations

from typing import Any, Dict, List, Optional, Type, TypeVar
from uuid import uuid4

from loguru import logger
from pydantic import BaseModel, ValidationError

from ..app.models import MigrationPayload, MigrationResult, SavedSong, Session, Theme, UserProfile
from .exceptions import MigrationFailedError, SyncError
from .local_store import DEFAULT_STATE_KEY
from .persistence import KeyValueCache
from .remote_api import RemoteApiClient

LEGACY_STATE_KEY = DEFAULT_STATE_KEY
LEGACY_SETTINGS_KEY = "music-league-settings"

_SONG_LISTS = ("candidates", "semifinalists", "finalists", "workingCandidates")
_SONG_SLOTS = ("pick", "finalPick")

ModelT = TypeVar("ModelT", bound=BaseModel)


def _with_id(item: Dict[str, Any]) -> Dict[str, Any]:
    if item.get("id"):
        return item
    return {**item, "id": str(uuid4())}


def _fill_ids(entity: Dict[str, Any]) -> Dict[str, Any]:
    filled = _with_id(entity)
    for key in _SONG_LISTS:
        if isinstance(filled.get(key), list):
            filled[key] = [_with_id(song) for song in filled[key] if isinstance(song, dict)]
    for key in _SONG_SLOTS:
        if isinstance(filled.get(key), dict):
            filled[key] = _with_id(filled[key])
    return filled


def _parse_entities(model: Type[ModelT], items: Any, label: str) -> List[ModelT]:
    parsed: List[ModelT] = []
    for item in items or []:
        if not isinstance(item, dict):
            continue
        try:
            parsed.append(model.model_validate(_fill_ids(item)))
        except ValidationError as exc:
            logger.warning("Skipping legacy {} that failed validation: {}", label, exc.errors()[:1])
    return parsed


class MigrationImporter:
    """Moves the legacy state blob into the remote store exactly once.

    Entities keep their ids (fresh UUIDs are assigned where missing) and the
    server upserts by id, so replaying a migration never duplicates data.
    """

    def __init__(
        self,
        cache: KeyValueCache,
        api: RemoteApiClient,
        *,
        state_key: str = LEGACY_STATE_KEY,
        settings_key: str = LEGACY_SETTINGS_KEY,
    ) -> None:
        self._cache = cache
        self._api = api
        self._state_key = state_key
        self._settings_key = settings_key

    def _legacy_state(self) -> Optional[Dict[str, Any]]:
        blob = self._cache.get(self._state_key)
        if not isinstance(blob, dict):
            return None
        state = blob.get("state")
        return state if isinstance(state, dict) else None

    def _legacy_settings(self) -> Optional[Dict[str, Any]]:
        blob = self._cache.get(self._settings_key)
        if not isinstance(blob, dict):
            return None
        state = blob.get("state", blob)
        return state if isinstance(state, dict) else None

    def needs_migration(self) -> bool:
        state = self._legacy_state()
        if state is None:
            return False
        return bool(state.get("themes") or state.get("sessions"))

    def build_payload(self) -> MigrationPayload:
        state = self._legacy_state() or {}
        profile: Optional[UserProfile] = None
        if isinstance(state.get("userProfile"), dict):
            try:
                profile = UserProfile.model_validate(state["userProfile"])
            except ValidationError:
                logger.warning("Legacy user profile is malformed; it will not be migrated")
        saved_raw = state.get("savedSongs") or state.get("songsILike") or []
        competitor = state.get("competitorAnalysis")
        return MigrationPayload(
            themes=_parse_entities(Theme, state.get("themes"), "theme"),
            sessions=_parse_entities(Session, state.get("sessions"), "session"),
            user_profile=profile,
            saved_songs=_parse_entities(SavedSong, saved_raw, "saved song"),
            settings=self._legacy_settings(),
            competitor_analysis=competitor if isinstance(competitor, dict) else None,
        )

    async def migrate(self) -> MigrationResult:
        payload = self.build_payload()
        logger.info(
            "Migrating {} theme(s), {} session(s) and {} saved song(s)",
            len(payload.themes),
            len(payload.sessions),
            len(payload.saved_songs),
        )
        try:
            result = await self._api.migrate(payload)
        except SyncError as exc:
            logger.error("Migration failed; local data kept: {}", exc)
            raise MigrationFailedError(str(exc)) from exc
        if not result.success:
            logger.error("Migration rejected by server: {}", result.message)
            raise MigrationFailedError(result.message)
        self._cache.remove(self._state_key)
        self._cache.remove(self._settings_key)
        logger.info("Migration complete: {}", result.message)
        return result
