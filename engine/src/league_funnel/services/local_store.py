"""Single-writer container for the locally held funnel state."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence

from loguru import logger
from pydantic import ValidationError

from ..app.models import (
    ConversationRole,
    FunnelTier,
    HallPassType,
    LongTermPreference,
    PlaylistLink,
    RejectedSong,
    SavedSong,
    Session,
    SessionPreference,
    Song,
    Theme,
    ThemeStatus,
    UserProfile,
)
from . import funnel, ranking
from . import sessions as session_ops
from .exceptions import InvalidMoveError, UnknownSessionError, UnknownThemeError
from .persistence import KeyValueCache
from .phase import with_derived_phase
from .summary import export_funnel_summary
from .types import (
    DEFAULT_LIMITS,
    DEFAULT_THRESHOLDS,
    EntityKind,
    PhaseThresholds,
    SongLocation,
    TierLimits,
)

DEFAULT_STATE_KEY = "music-league-strategist"
STATE_VERSION = 2
TIER_FIELDS = frozenset(
    {"id", "candidates", "semifinalists", "finalists", "pick", "hall_passes_used", "phase"}
)

EntityRef = tuple[EntityKind, str]
PROFILE_REF: EntityRef = (EntityKind.PROFILE, "profile")


@dataclass(frozen=True)
class StoreSnapshot:
    """Consistent read-only view of every synced collection."""

    themes: Dict[str, Theme] = field(default_factory=dict)
    sessions: Dict[str, Session] = field(default_factory=dict)
    user_profile: Optional[UserProfile] = None
    saved_songs: Dict[str, SavedSong] = field(default_factory=dict)


@dataclass(frozen=True)
class StoreChange:
    changed: frozenset[EntityRef]
    hydrated: bool = False


Listener = Callable[[StoreChange], None]


def _now() -> datetime:
    return datetime.now(tz=UTC)


def _parse_all(model: type, items: Iterable[Any], label: str) -> List[Any]:
    parsed = []
    for item in items or []:
        try:
            parsed.append(model.model_validate(item))
        except ValidationError as exc:
            logger.warning("Skipping malformed cached {}: {}", label, exc.errors()[:1])
    return parsed


class LocalStore:
    """Holds themes, sessions, the profile and saved songs.

    Every mutation is applied synchronously in one commit: derived phases and
    the song location index are refreshed, the state is written to the local
    cache and subscribers are notified with the set of entities that changed.
    """

    def __init__(
        self,
        cache: Optional[KeyValueCache] = None,
        *,
        state_key: str = DEFAULT_STATE_KEY,
        limits: TierLimits = DEFAULT_LIMITS,
        thresholds: PhaseThresholds = DEFAULT_THRESHOLDS,
    ) -> None:
        self._cache = cache
        self._state_key = state_key
        self.limits = limits
        self.thresholds = thresholds
        self._themes: Dict[str, Theme] = {}
        self._sessions: Dict[str, Session] = {}
        self._profile: Optional[UserProfile] = None
        self._saved_songs: Dict[str, SavedSong] = {}
        self._active_theme_id: Optional[str] = None
        self._active_session_id: Optional[str] = None
        self._locations: Dict[str, SongLocation] = {}
        self._listeners: List[Listener] = []

    # ------------------------------------------------------------------
    # Loading and persistence

    def load(self) -> bool:
        """Restore state from the local cache; returns ``False`` when empty."""

        if self._cache is None:
            return False
        blob = self._cache.get(self._state_key)
        if not isinstance(blob, dict) or not isinstance(blob.get("state"), dict):
            return False
        state = blob["state"]
        themes = _parse_all(Theme, state.get("themes", []), "theme")
        sessions = _parse_all(Session, state.get("sessions", []), "session")
        saved = _parse_all(SavedSong, state.get("songsILike") or state.get("savedSongs") or [], "saved song")
        profile = None
        if state.get("userProfile"):
            try:
                profile = UserProfile.model_validate(state["userProfile"])
            except ValidationError:
                logger.warning("Discarding malformed cached user profile")
        self._themes = {theme.id: with_derived_phase(theme, self.thresholds) for theme in themes}
        self._sessions = {session.id: session for session in sessions}
        self._saved_songs = {song.id: song for song in saved if song.id}
        self._profile = profile
        self._active_theme_id = state.get("activeThemeId")
        self._active_session_id = state.get("activeSessionId")
        self._reindex(self._themes)
        logger.info(
            "Loaded {} theme(s) and {} session(s) from local cache",
            len(self._themes),
            len(self._sessions),
        )
        return True

    def to_blob(self) -> Dict[str, Any]:
        return {
            "state": {
                "themes": [theme.to_wire() for theme in self._themes.values()],
                "sessions": [session.to_wire() for session in self._sessions.values()],
                "userProfile": self._profile.to_wire() if self._profile else None,
                "songsILike": [song.to_wire() for song in self._saved_songs.values()],
                "activeThemeId": self._active_theme_id,
                "activeSessionId": self._active_session_id,
            },
            "version": STATE_VERSION,
        }

    def _persist(self) -> None:
        if self._cache is None:
            return
        try:
            self._cache.set(self._state_key, self.to_blob())
        except OSError:
            logger.exception("Failed to write local cache {}", self._state_key)

    # ------------------------------------------------------------------
    # Subscription

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    def _notify(self, change: StoreChange) -> None:
        for listener in list(self._listeners):
            try:
                listener(change)
            except Exception:  # noqa: BLE001
                logger.exception("Store listener failed")

    # ------------------------------------------------------------------
    # Commit

    def _reindex(self, themes: Dict[str, Theme], removed: Iterable[str] = ()) -> None:
        stale = set(themes) | set(removed)
        locations = {
            song_id: location
            for song_id, location in self._locations.items()
            if location.theme_id not in stale
        }
        for theme in themes.values():
            for song_id, tier in funnel.tier_index(theme).items():
                locations[song_id] = SongLocation(theme_id=theme.id, tier=tier)
        self._locations = locations

    def _commit(
        self,
        *,
        themes: Optional[Dict[str, Theme]] = None,
        removed_themes: Sequence[str] = (),
        sessions: Optional[Dict[str, Session]] = None,
        removed_sessions: Sequence[str] = (),
        profile: Optional[UserProfile] = None,
        saved: Optional[Dict[str, SavedSong]] = None,
        removed_saved: Sequence[str] = (),
        prepend: bool = False,
        remote: bool = False,
    ) -> None:
        changed: set[EntityRef] = set()
        if themes or removed_themes:
            derived = {
                theme_id: with_derived_phase(theme, self.thresholds)
                for theme_id, theme in (themes or {}).items()
            }
            merged = dict(derived) if prepend else {}
            for theme_id, theme in self._themes.items():
                if theme_id in removed_themes:
                    continue
                merged[theme_id] = derived.get(theme_id, theme)
            for theme_id, theme in derived.items():
                merged.setdefault(theme_id, theme)
            self._themes = merged
            self._reindex(derived, removed_themes)
            changed.update((EntityKind.THEME, theme_id) for theme_id in derived)
            changed.update((EntityKind.THEME, theme_id) for theme_id in removed_themes)
        if sessions or removed_sessions:
            merged_sessions = dict(sessions or {}) if prepend else {}
            for session_id, session in self._sessions.items():
                if session_id in removed_sessions:
                    continue
                merged_sessions[session_id] = (sessions or {}).get(session_id, session)
            for session_id, session in (sessions or {}).items():
                merged_sessions.setdefault(session_id, session)
            self._sessions = merged_sessions
            changed.update((EntityKind.SESSION, session_id) for session_id in sessions or {})
            changed.update((EntityKind.SESSION, session_id) for session_id in removed_sessions)
        if profile is not None:
            self._profile = profile
            changed.add(PROFILE_REF)
        if saved or removed_saved:
            kept = {key: value for key, value in self._saved_songs.items() if key not in removed_saved}
            kept.update(saved or {})
            self._saved_songs = kept
            changed.update((EntityKind.SAVED_SONG, song_id) for song_id in saved or {})
            changed.update((EntityKind.SAVED_SONG, song_id) for song_id in removed_saved)
        if not changed:
            return
        self._persist()
        self._notify(StoreChange(changed=frozenset(changed), hydrated=remote))

    def hydrate(
        self,
        *,
        themes: Sequence[Theme],
        sessions: Sequence[Session],
        user_profile: Optional[UserProfile],
        saved_songs: Sequence[SavedSong],
    ) -> None:
        """Replace every collection with data loaded from the remote store."""

        self._themes = {theme.id: with_derived_phase(theme, self.thresholds) for theme in themes}
        self._sessions = {session.id: session for session in sessions}
        self._profile = user_profile
        self._saved_songs = {song.id: song for song in saved_songs}
        if self._active_theme_id not in self._themes:
            self._active_theme_id = next(
                (theme.id for theme in self._themes.values() if theme.status == ThemeStatus.ACTIVE),
                None,
            )
        if self._active_session_id not in self._sessions:
            self._active_session_id = None
        self._locations = {}
        self._reindex(self._themes)
        self._persist()
        refs = {(EntityKind.THEME, key) for key in self._themes}
        refs.update((EntityKind.SESSION, key) for key in self._sessions)
        refs.update((EntityKind.SAVED_SONG, key) for key in self._saved_songs)
        if user_profile is not None:
            refs.add(PROFILE_REF)
        self._notify(StoreChange(changed=frozenset(refs), hydrated=True))

    def apply_remote(
        self,
        *,
        themes: Sequence[Theme] = (),
        sessions: Sequence[Session] = (),
        removed_themes: Sequence[str] = (),
        removed_sessions: Sequence[str] = (),
    ) -> None:
        """Overwrite individual entities with their remote copies."""

        self._commit(
            themes={theme.id: theme for theme in themes},
            removed_themes=removed_themes,
            sessions={session.id: session for session in sessions},
            removed_sessions=removed_sessions,
            remote=True,
        )

    # ------------------------------------------------------------------
    # Reads

    def snapshot(self) -> StoreSnapshot:
        return StoreSnapshot(
            themes=dict(self._themes),
            sessions=dict(self._sessions),
            user_profile=self._profile,
            saved_songs=dict(self._saved_songs),
        )

    @property
    def themes(self) -> List[Theme]:
        return list(self._themes.values())

    @property
    def sessions(self) -> List[Session]:
        return list(self._sessions.values())

    @property
    def user_profile(self) -> Optional[UserProfile]:
        return self._profile

    @property
    def saved_songs(self) -> List[SavedSong]:
        return list(self._saved_songs.values())

    @property
    def active_theme_id(self) -> Optional[str]:
        return self._active_theme_id

    @property
    def active_session_id(self) -> Optional[str]:
        return self._active_session_id

    def has_local_data(self) -> bool:
        return bool(self._themes or self._sessions)

    def get_theme(self, theme_id: str) -> Theme:
        theme = self._themes.get(theme_id)
        if theme is None:
            raise UnknownThemeError(theme_id)
        return theme

    def get_session(self, session_id: str) -> Session:
        session = self._sessions.get(session_id)
        if session is None:
            raise UnknownSessionError(session_id)
        return session

    def active_theme(self) -> Optional[Theme]:
        if self._active_theme_id is None:
            return None
        return self._themes.get(self._active_theme_id)

    def active_session(self) -> Optional[Session]:
        if self._active_session_id is None:
            return None
        return self._sessions.get(self._active_session_id)

    def theme_sessions(self, theme_id: str) -> List[Session]:
        return [session for session in self._sessions.values() if session.theme_id == theme_id]

    def locate_song(self, song_id: str) -> Optional[SongLocation]:
        return self._locations.get(song_id)

    def check_invariants(self) -> List[str]:
        problems: List[str] = []
        for theme in self._themes.values():
            problems.extend(f"{theme.id}: {issue}" for issue in funnel.check_invariants(theme, self.limits))
            for song_id, tier in funnel.tier_index(theme).items():
                location = self._locations.get(song_id)
                if location != SongLocation(theme_id=theme.id, tier=tier):
                    problems.append(f"{theme.id}: index is stale for song {song_id}")
        return problems

    def export_summary(self, theme_id: str) -> str:
        return export_funnel_summary(self.get_theme(theme_id), self.limits)

    # ------------------------------------------------------------------
    # Theme management

    def _put_theme(self, theme: Theme) -> Theme:
        self._commit(themes={theme.id: theme})
        return self._themes[theme.id]

    def create_theme(self, raw_theme: str) -> str:
        theme = session_ops.new_theme(raw_theme)
        self._active_theme_id = theme.id
        self._commit(themes={theme.id: theme}, prepend=True)
        logger.info("Created theme {} ({})", theme.id, theme.title)
        return theme.id

    def update_theme(self, theme_id: str, **changes: Any) -> Theme:
        blocked = TIER_FIELDS.intersection(changes)
        if blocked:
            raise InvalidMoveError(f"use funnel operations to change {', '.join(sorted(blocked))}")
        theme = self.get_theme(theme_id)
        updated = Theme.model_validate({**theme.model_dump(), **changes, "updated_at": _now()})
        return self._put_theme(updated)

    def set_active_theme(self, theme_id: Optional[str]) -> None:
        if theme_id is not None:
            self.get_theme(theme_id)
        self._active_theme_id = theme_id
        self._persist()

    def archive_theme(self, theme_id: str) -> Theme:
        return self.update_theme(theme_id, status=ThemeStatus.ARCHIVED)

    def set_deadline(self, theme_id: str, deadline: Optional[datetime]) -> Theme:
        return self.update_theme(theme_id, deadline=deadline)

    def link_playlist(self, theme_id: str, link: Optional[PlaylistLink]) -> Theme:
        return self.update_theme(theme_id, spotify_playlist=link)

    def delete_theme(self, theme_id: str) -> None:
        self.get_theme(theme_id)
        orphaned = [session.id for session in self.theme_sessions(theme_id)]
        if self._active_theme_id == theme_id:
            self._active_theme_id = next(
                (
                    theme.id
                    for theme in self._themes.values()
                    if theme.id != theme_id and theme.status == ThemeStatus.ACTIVE
                ),
                None,
            )
        if self._active_session_id in orphaned:
            self._active_session_id = None
        self._commit(removed_themes=[theme_id], removed_sessions=orphaned)
        logger.info("Deleted theme {} and {} session(s)", theme_id, len(orphaned))

    # ------------------------------------------------------------------
    # Funnel operations

    def promote(self, theme_id: str, song: Song, to_tier: FunnelTier, reason: Optional[str] = None) -> Theme:
        theme = self.get_theme(theme_id)
        return self._put_theme(funnel.promote(theme, song, to_tier, reason, limits=self.limits))

    def demote(self, theme_id: str, song: Song, to_tier: FunnelTier, reason: Optional[str] = None) -> Theme:
        theme = self.get_theme(theme_id)
        return self._put_theme(funnel.demote(theme, song, to_tier, reason, limits=self.limits))

    def remove_song(self, theme_id: str, song_id: str, tier: FunnelTier) -> Theme:
        theme = self.get_theme(theme_id)
        updated = funnel.remove(theme, song_id, tier)
        if updated is theme:
            return theme
        return self._put_theme(updated)

    def add_candidate(self, theme_id: str, song: Song) -> Theme:
        theme = self.get_theme(theme_id)
        return self._put_theme(
            funnel.add_candidate(theme, song, session_id=self._active_session_id, limits=self.limits)
        )

    def set_pick(self, theme_id: str, song: Optional[Song]) -> Theme:
        return self._put_theme(funnel.set_pick(self.get_theme(theme_id), song))

    def update_song(self, theme_id: str, song_id: str, **changes: Any) -> Theme:
        theme = self.get_theme(theme_id)
        updated = funnel.update_song(theme, song_id, **changes)
        if updated is theme:
            return theme
        return self._put_theme(updated)

    def use_hall_pass(
        self,
        theme_id: str,
        song: Song,
        pass_type: HallPassType,
        reason: Optional[str] = None,
    ) -> Theme:
        theme = self.get_theme(theme_id)
        return self._put_theme(funnel.use_hall_pass(theme, song, pass_type, reason, limits=self.limits))

    def reorder(self, theme_id: str, tier: FunnelTier, ordered_song_ids: Sequence[str]) -> Theme:
        return self._put_theme(ranking.reorder(self.get_theme(theme_id), tier, ordered_song_ids))

    # ------------------------------------------------------------------
    # Sessions

    def _put_session(self, session: Session) -> Session:
        self._commit(sessions={session.id: session})
        return session

    def _resolve_session(self, session_id: Optional[str]) -> Session:
        target = session_id or self._active_session_id
        if target is None:
            raise UnknownSessionError("<none>")
        return self.get_session(target)

    def create_session(self, theme_id: Optional[str] = None) -> str:
        effective = theme_id or self._active_theme_id
        if effective is not None:
            self.get_theme(effective)
        session = session_ops.new_session(effective, self._sessions.values())
        self._active_session_id = session.id
        self._commit(sessions={session.id: session}, prepend=True)
        return session.id

    def set_active_session(self, session_id: Optional[str]) -> None:
        if session_id is not None:
            self.get_session(session_id)
        self._active_session_id = session_id
        self._persist()

    def rename_session(self, session_id: str, title: str) -> Session:
        session = self.get_session(session_id)
        return self._put_session(session.model_copy(update={"title": title, "updated_at": _now()}))

    def delete_session(self, session_id: str) -> None:
        self.get_session(session_id)
        if self._active_session_id == session_id:
            self._active_session_id = None
        self._commit(removed_sessions=[session_id])

    def set_working_candidates(self, songs: Sequence[Song], session_id: Optional[str] = None) -> Session:
        return self._put_session(session_ops.set_working_candidates(self._resolve_session(session_id), songs))

    def add_turn(self, role: ConversationRole, content: str, session_id: Optional[str] = None) -> Session:
        return self._put_session(session_ops.add_turn(self._resolve_session(session_id), role, content))

    def increment_iteration(self, session_id: Optional[str] = None) -> Session:
        return self._put_session(session_ops.increment_iteration(self._resolve_session(session_id)))

    def reject_songs(self, rejected: Sequence[RejectedSong], session_id: Optional[str] = None) -> Session:
        return self._put_session(session_ops.reject_songs(self._resolve_session(session_id), rejected))

    def add_session_preferences(
        self,
        prefs: Sequence[SessionPreference],
        session_id: Optional[str] = None,
    ) -> Session:
        return self._put_session(session_ops.add_session_preferences(self._resolve_session(session_id), prefs))

    def clear_session_preferences(self, session_id: Optional[str] = None) -> Session:
        return self._put_session(session_ops.clear_session_preferences(self._resolve_session(session_id)))

    def set_final_pick(self, song: Song, session_id: Optional[str] = None) -> Session:
        return self._put_session(session_ops.set_final_pick(self._resolve_session(session_id), song))

    def is_rejected(self, title: str, artist: str) -> bool:
        return session_ops.is_rejected(self.active_session(), title, artist)

    def aggregated_rejected(self, theme_id: str) -> List[RejectedSong]:
        return session_ops.aggregate_rejected(self._sessions.values(), theme_id)

    def aggregated_preferences(self, theme_id: str) -> List[SessionPreference]:
        return session_ops.aggregate_preferences(self._sessions.values(), theme_id)

    # ------------------------------------------------------------------
    # Profile and saved songs

    def set_user_profile(self, profile: UserProfile) -> None:
        self._commit(profile=profile)

    def add_long_term_preferences(self, prefs: Sequence[LongTermPreference]) -> UserProfile:
        profile = session_ops.add_long_term_preferences(self._profile, prefs)
        self._commit(profile=profile)
        return profile

    def remove_long_term_preference(self, statement: str) -> Optional[UserProfile]:
        profile = session_ops.remove_long_term_preference(self._profile, statement)
        if profile is not None:
            self._commit(profile=profile)
        return profile

    def save_song(
        self,
        song: Song,
        *,
        tags: Sequence[str] = (),
        notes: Optional[str] = None,
        source_theme_id: Optional[str] = None,
    ) -> SavedSong:
        existing = next(
            (saved for saved in self._saved_songs.values() if saved.matches(song.title, song.artist)),
            None,
        )
        if existing is not None:
            logger.debug("{} by {} is already saved", song.title, song.artist)
            return existing
        saved = SavedSong.model_validate(
            {
                **song.model_dump(),
                "id": song.id or funnel.generate_song_id(),
                "tags": list(tags),
                "notes": notes,
                "source_theme_id": source_theme_id,
            }
        )
        self._commit(saved={saved.id: saved})
        return saved

    def remove_saved_song(self, song_id: str) -> None:
        if song_id not in self._saved_songs:
            logger.warning("Saved song {} not found", song_id)
            return
        self._commit(removed_saved=[song_id])
