"""Debounced diff-and-push of local state to the remote store."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence, Tuple

from loguru import logger
from pydantic import ValidationError

from ..app.models import SavedSong, Session, Theme, UserProfile
from .exceptions import ServerError, SyncConflictError, SyncError
from .local_store import PROFILE_REF, EntityRef, LocalStore, StoreChange, StoreSnapshot
from .persistence import KeyValueCache
from .remote_api import RemoteApiClient
from .scheduler import AsyncioScheduler, ScheduledCall, Scheduler
from .types import EntityKind, EntityStatus, EntitySyncState, SyncStatus

DEFAULT_SNAPSHOT_KEY = "music-league-sync-snapshot"


class SyncAction(str, Enum):
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


@dataclass(frozen=True)
class SyncOperation:
    kind: EntityKind
    entity_id: str
    action: SyncAction
    value: Any = None
    force: bool = False

    @property
    def ref(self) -> EntityRef:
        return (self.kind, self.entity_id)


@dataclass
class _SyncedState:
    themes: Dict[str, Theme] = field(default_factory=dict)
    sessions: Dict[str, Session] = field(default_factory=dict)
    user_profile: Optional[UserProfile] = None
    saved_songs: Dict[str, SavedSong] = field(default_factory=dict)
    versions: Dict[EntityRef, int] = field(default_factory=dict)


def _now() -> datetime:
    return datetime.now(tz=UTC)


def _version_key(ref: EntityRef) -> str:
    return f"{ref[0].value}:{ref[1]}"


class Reconciler:
    """Keeps the remote store converged with the local store.

    Local edits mark entities dirty and (re)arm a debounce timer. When it
    fires, the current store snapshot is diffed against the last state the
    remote store acknowledged and the resulting creates, updates and deletes
    are sent concurrently. Only acknowledged operations advance the synced
    state, so failed ones are re-sent by the next cycle.
    """

    def __init__(
        self,
        store: LocalStore,
        api: RemoteApiClient,
        *,
        scheduler: Optional[Scheduler] = None,
        cache: Optional[KeyValueCache] = None,
        snapshot_key: str = DEFAULT_SNAPSHOT_KEY,
        debounce_seconds: float = 1.0,
    ) -> None:
        self._store = store
        self._api = api
        self._scheduler = scheduler or AsyncioScheduler()
        self._cache = cache
        self._snapshot_key = snapshot_key
        self.debounce_seconds = debounce_seconds
        self._synced = _SyncedState()
        self._states: Dict[EntityRef, EntityStatus] = {}
        self._pending: Optional[ScheduledCall] = None
        self._unsubscribe: Optional[Any] = None
        self._flush_lock = asyncio.Lock()
        self.status = SyncStatus()

    # ------------------------------------------------------------------
    # Lifecycle

    def start(self) -> None:
        if self._unsubscribe is None:
            self._load_snapshot()
            self._unsubscribe = self._store.subscribe(self._on_change)

    def stop(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        self._cancel_pending()

    def _cancel_pending(self) -> None:
        if self._pending is not None:
            self._pending.cancel()
            self._pending = None

    def _schedule(self) -> None:
        self._cancel_pending()
        self._pending = self._scheduler.call_later(self.debounce_seconds, self.flush)

    def _on_change(self, change: StoreChange) -> None:
        if change.hydrated:
            return
        for ref in change.changed:
            self._set_state(ref, EntitySyncState.DIRTY, keep_conflict=True)
        self.status.pending_changes = True
        self._schedule()

    # ------------------------------------------------------------------
    # Status

    def _set_state(
        self,
        ref: EntityRef,
        state: EntitySyncState,
        error: Optional[str] = None,
        *,
        keep_conflict: bool = False,
    ) -> None:
        current = self._states.get(ref)
        if keep_conflict and current is not None and current.state == EntitySyncState.CONFLICT:
            return
        self._states[ref] = EntityStatus(kind=ref[0], entity_id=ref[1], state=state, error=error)

    def entity_state(self, kind: EntityKind, entity_id: str) -> EntitySyncState:
        status = self._states.get((kind, entity_id))
        return status.state if status else EntitySyncState.CLEAN

    def entity_statuses(self) -> List[EntityStatus]:
        return list(self._states.values())

    def version_of(self, kind: EntityKind, entity_id: str) -> Optional[int]:
        return self._synced.versions.get((kind, entity_id))

    def _is_conflicted(self, ref: EntityRef) -> bool:
        return self.entity_state(*ref) == EntitySyncState.CONFLICT

    # ------------------------------------------------------------------
    # Diffing

    def diff(self, current: StoreSnapshot, *, force: bool = False) -> List[SyncOperation]:
        """Operations needed to bring the remote store to ``current``."""

        ops: List[SyncOperation] = []
        collections: Sequence[Tuple[EntityKind, Dict[str, Any], Dict[str, Any]]] = (
            (EntityKind.THEME, current.themes, self._synced.themes),
            (EntityKind.SESSION, current.sessions, self._synced.sessions),
        )
        for kind, now, before in collections:
            for entity_id, value in now.items():
                if not force and self._is_conflicted((kind, entity_id)):
                    continue
                previous = before.get(entity_id)
                if previous is None and not force:
                    ops.append(SyncOperation(kind, entity_id, SyncAction.CREATE, value))
                elif force or previous != value:
                    ops.append(SyncOperation(kind, entity_id, SyncAction.UPDATE, value, force=force))
            for entity_id in before:
                if entity_id not in now and (force or not self._is_conflicted((kind, entity_id))):
                    ops.append(SyncOperation(kind, entity_id, SyncAction.DELETE))
        for song_id, song in current.saved_songs.items():
            if force or self._synced.saved_songs.get(song_id) != song:
                ops.append(SyncOperation(EntityKind.SAVED_SONG, song_id, SyncAction.CREATE, song))
        for song_id in self._synced.saved_songs:
            if song_id not in current.saved_songs:
                ops.append(SyncOperation(EntityKind.SAVED_SONG, song_id, SyncAction.DELETE))
        profile = current.user_profile
        if profile is not None and (force or profile != self._synced.user_profile):
            ops.append(SyncOperation(EntityKind.PROFILE, PROFILE_REF[1], SyncAction.UPDATE, profile))
        return ops

    # ------------------------------------------------------------------
    # Pushing

    async def _send(self, op: SyncOperation) -> Optional[int]:
        if_match = None if op.force else self._synced.versions.get(op.ref)
        if op.kind == EntityKind.THEME:
            if op.action == SyncAction.CREATE:
                return (await self._api.create_theme(op.value)).version
            if op.action == SyncAction.UPDATE:
                try:
                    return (await self._api.update_theme(op.value, if_match=if_match)).version
                except ServerError as exc:
                    if exc.status_code != 404:
                        raise
                    return (await self._api.create_theme(op.value)).version
            await self._api.delete_theme(op.entity_id)
            return None
        if op.kind == EntityKind.SESSION:
            if op.action == SyncAction.CREATE:
                return (await self._api.create_session(op.value)).version
            if op.action == SyncAction.UPDATE:
                try:
                    return (await self._api.update_session(op.value, if_match=if_match)).version
                except ServerError as exc:
                    if exc.status_code != 404:
                        raise
                    return (await self._api.create_session(op.value)).version
            await self._api.delete_session(op.entity_id)
            return None
        if op.kind == EntityKind.SAVED_SONG:
            if op.action == SyncAction.DELETE:
                await self._api.delete_saved_song(op.entity_id)
            else:
                await self._api.create_saved_song(op.value)
            return None
        await self._api.put_profile(op.value)
        return None

    def _acknowledge(self, op: SyncOperation, version: Optional[int]) -> None:
        synced = self._synced
        if op.kind == EntityKind.THEME:
            target: Optional[Dict[str, Any]] = synced.themes
        elif op.kind == EntityKind.SESSION:
            target = synced.sessions
        elif op.kind == EntityKind.SAVED_SONG:
            target = synced.saved_songs
        else:
            target = None
            synced.user_profile = op.value
        if target is not None:
            if op.action == SyncAction.DELETE:
                target.pop(op.entity_id, None)
            else:
                target[op.entity_id] = op.value
        if op.action == SyncAction.DELETE:
            synced.versions.pop(op.ref, None)
        elif version is not None:
            synced.versions[op.ref] = version

    async def _push(self, ops: Sequence[SyncOperation]) -> List[str]:
        for op in ops:
            self._set_state(op.ref, EntitySyncState.SYNCING)
        results = await asyncio.gather(*(self._send(op) for op in ops), return_exceptions=True)
        errors: List[str] = []
        for op, result in zip(ops, results):
            if isinstance(result, SyncConflictError):
                logger.warning("Conflict pushing {} {}: {}", op.kind.value, op.entity_id, result)
                self._set_state(op.ref, EntitySyncState.CONFLICT, str(result))
                errors.append(str(result))
            elif isinstance(result, SyncError):
                logger.warning("Failed to {} {} {}: {}", op.action.value, op.kind.value, op.entity_id, result)
                self._set_state(op.ref, EntitySyncState.FAILED, str(result))
                errors.append(str(result))
            elif isinstance(result, Exception):
                logger.opt(exception=result).error(
                    "Unexpected error pushing {} {}", op.kind.value, op.entity_id
                )
                self._set_state(op.ref, EntitySyncState.FAILED, repr(result))
                errors.append(repr(result))
            elif isinstance(result, BaseException):
                raise result
            else:
                self._acknowledge(op, result)
                edited_since = self._current_value(op) != op.value
                self._set_state(op.ref, EntitySyncState.DIRTY if edited_since else EntitySyncState.CLEAN)
        return errors

    def _current_value(self, op: SyncOperation) -> Any:
        snapshot = self._store.snapshot()
        if op.kind == EntityKind.THEME:
            return snapshot.themes.get(op.entity_id)
        if op.kind == EntityKind.SESSION:
            return snapshot.sessions.get(op.entity_id)
        if op.kind == EntityKind.SAVED_SONG:
            return snapshot.saved_songs.get(op.entity_id)
        return snapshot.user_profile

    async def _run(self, *, force: bool) -> SyncStatus:
        async with self._flush_lock:
            current = self._store.snapshot()
            ops = self.diff(current, force=force)
            if not ops:
                self.status.pending_changes = False
                return self.status
            self.status.is_syncing = True
            logger.debug("Pushing {} change(s) to the remote store", len(ops))
            try:
                errors = await self._push(ops)
            finally:
                self.status.is_syncing = False
            self._save_snapshot()
            self.status.conflicts = sorted(
                _version_key(ref)
                for ref, status in self._states.items()
                if status.state == EntitySyncState.CONFLICT
            )
            if errors:
                self.status.sync_error = errors[0]
            else:
                self.status.sync_error = None
                self.status.last_sync_time = _now()
            self.status.pending_changes = bool(self.diff(self._store.snapshot()))
            return self.status

    async def flush(self) -> SyncStatus:
        """Push every pending difference now; also the manual retry action."""

        self._cancel_pending()
        return await self._run(force=False)

    async def force_sync_all(self) -> SyncStatus:
        """Push every local entity regardless of the synced state."""

        self._cancel_pending()
        logger.info("Forcing a full push to the remote store")
        return await self._run(force=True)

    async def resolve_conflict(self, kind: EntityKind, entity_id: str, *, keep_local: bool) -> None:
        """Settle a conflicted theme or session.

        ``keep_local`` overwrites the remote copy; otherwise the remote copy
        replaces the local entity.
        """

        ref = (kind, entity_id)
        if kind not in (EntityKind.THEME, EntityKind.SESSION):
            raise ValueError(f"{kind.value} entities cannot conflict")
        async with self._flush_lock:
            if keep_local:
                snapshot = self._store.snapshot()
                collection = snapshot.themes if kind == EntityKind.THEME else snapshot.sessions
                value = collection.get(entity_id)
                action = SyncAction.UPDATE if value is not None else SyncAction.DELETE
                op = SyncOperation(kind, entity_id, action, value, force=True)
                version = await self._send(op)
                self._acknowledge(op, version)
            else:
                await self._adopt_remote(kind, entity_id)
            self._set_state(ref, EntitySyncState.CLEAN)
            self.status.conflicts = [key for key in self.status.conflicts if key != _version_key(ref)]
            self._save_snapshot()
        logger.info("Resolved conflict on {} {} keeping {}", kind.value, entity_id, "local" if keep_local else "remote")

    async def _adopt_remote(self, kind: EntityKind, entity_id: str) -> None:
        try:
            remote = (
                await self._api.get_theme(entity_id)
                if kind == EntityKind.THEME
                else await self._api.get_session(entity_id)
            )
        except ServerError as exc:
            if exc.status_code != 404:
                raise
            if kind == EntityKind.THEME:
                self._store.apply_remote(removed_themes=[entity_id])
                self._synced.themes.pop(entity_id, None)
            else:
                self._store.apply_remote(removed_sessions=[entity_id])
                self._synced.sessions.pop(entity_id, None)
            self._synced.versions.pop((kind, entity_id), None)
            return
        if kind == EntityKind.THEME:
            self._store.apply_remote(themes=[remote.value])
            self._synced.themes[entity_id] = self._store.get_theme(entity_id)
        else:
            self._store.apply_remote(sessions=[remote.value])
            self._synced.sessions[entity_id] = self._store.get_session(entity_id)
        if remote.version is not None:
            self._synced.versions[(kind, entity_id)] = remote.version

    # ------------------------------------------------------------------
    # Synced-state bookkeeping

    def reset(self, snapshot: StoreSnapshot, versions: Optional[Dict[EntityRef, int]] = None) -> None:
        """Treat ``snapshot`` as already pushed, e.g. right after hydration."""

        self._cancel_pending()
        self._synced = _SyncedState(
            themes=dict(snapshot.themes),
            sessions=dict(snapshot.sessions),
            user_profile=snapshot.user_profile,
            saved_songs=dict(snapshot.saved_songs),
            versions=dict(versions or {}),
        )
        self._states = {}
        self.status.pending_changes = False
        self.status.sync_error = None
        self.status.conflicts = []
        self._save_snapshot()

    def _save_snapshot(self) -> None:
        if self._cache is None:
            return
        synced = self._synced
        blob = {
            "themes": [theme.to_wire() for theme in synced.themes.values()],
            "sessions": [session.to_wire() for session in synced.sessions.values()],
            "userProfile": synced.user_profile.to_wire() if synced.user_profile else None,
            "savedSongs": [song.to_wire() for song in synced.saved_songs.values()],
            "versions": {_version_key(ref): version for ref, version in synced.versions.items()},
        }
        try:
            self._cache.set(self._snapshot_key, blob)
        except OSError:
            logger.exception("Failed to write sync snapshot")

    def _load_snapshot(self) -> None:
        if self._cache is None:
            return
        blob = self._cache.get(self._snapshot_key)
        if not isinstance(blob, dict):
            return
        try:
            themes = [Theme.model_validate(item) for item in blob.get("themes", [])]
            sessions = [Session.model_validate(item) for item in blob.get("sessions", [])]
            saved = [SavedSong.model_validate(item) for item in blob.get("savedSongs", [])]
            profile = UserProfile.model_validate(blob["userProfile"]) if blob.get("userProfile") else None
        except ValidationError:
            logger.warning("Discarding unreadable sync snapshot")
            return
        versions: Dict[EntityRef, int] = {}
        for key, version in (blob.get("versions") or {}).items():
            kind, _, entity_id = str(key).partition(":")
            try:
                versions[(EntityKind(kind), entity_id)] = int(version)
            except ValueError:
                continue
        self._synced = _SyncedState(
            themes={theme.id: theme for theme in themes},
            sessions={session.id: session for session in sessions},
            user_profile=profile,
            saved_songs={song.id: song for song in saved},
            versions=versions,
        )
        logger.debug("Restored sync snapshot with {} theme(s)", len(self._synced.themes))
