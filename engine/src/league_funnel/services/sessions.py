"""Theme, session and profile helpers that sit beside the funnel itself."""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Iterable, List, Optional, Sequence
from uuid import uuid4

from ..app.models import (
    Confidence,
    ConversationRole,
    ConversationTurn,
    LongTermPreference,
    RejectedSong,
    Session,
    SessionPreference,
    Song,
    Theme,
    ThemePhase,
    UserProfile,
)
from .funnel import generate_song_id

TITLE_MAX_CHARS = 50
_CONFIDENCE_ORDER = {Confidence.HIGH: 0, Confidence.MEDIUM: 1, Confidence.LOW: 2}


def _now() -> datetime:
    return datetime.now(tz=UTC)


def generate_theme_title(raw_theme: str) -> str:
    lines = raw_theme.splitlines()
    first_line = lines[0].strip() if lines else ""
    if not first_line:
        return "Untitled"
    if len(first_line) > TITLE_MAX_CHARS:
        return first_line[: TITLE_MAX_CHARS - 3] + "..."
    return first_line


def new_theme(raw_theme: str, theme_id: Optional[str] = None) -> Theme:
    return Theme(
        id=theme_id or f"theme-{uuid4().hex[:12]}",
        raw_theme=raw_theme,
        title=generate_theme_title(raw_theme),
    )


def new_session(theme_id: Optional[str], existing: Iterable[Session]) -> Session:
    siblings = sum(1 for session in existing if session.theme_id == theme_id)
    return Session(
        id=str(uuid4()),
        theme_id=theme_id,
        title=f"Session {siblings + 1}",
    )


def _touch(session: Session, **changes: object) -> Session:
    return session.model_copy(update={**changes, "updated_at": _now()})


def set_working_candidates(session: Session, songs: Sequence[Song]) -> Session:
    working = [
        song if song.id else song.model_copy(update={"id": generate_song_id()})
        for song in songs
    ]
    return _touch(session, working_candidates=working)


def add_turn(session: Session, role: ConversationRole, content: str) -> Session:
    turn = ConversationTurn(role=role, content=content)
    return _touch(session, conversation_history=[*session.conversation_history, turn])


def increment_iteration(session: Session) -> Session:
    return _touch(session, iteration_count=session.iteration_count + 1)


def reject_songs(session: Session, rejected: Sequence[RejectedSong]) -> Session:
    return _touch(session, rejected_songs=[*session.rejected_songs, *rejected])


def add_session_preferences(session: Session, prefs: Sequence[SessionPreference]) -> Session:
    return _touch(session, session_preferences=[*session.session_preferences, *prefs])


def clear_session_preferences(session: Session) -> Session:
    return _touch(session, session_preferences=[])


def set_final_pick(session: Session, song: Song) -> Session:
    return _touch(session, final_pick=song, phase=ThemePhase.COMPLETE)


def is_rejected(session: Optional[Session], title: str, artist: str) -> bool:
    if session is None:
        return False
    probe = (title.strip().lower(), artist.strip().lower())
    return any(
        (item.title.strip().lower(), item.artist.strip().lower()) == probe
        for item in session.rejected_songs
    )


def aggregate_rejected(sessions: Iterable[Session], theme_id: str) -> List[RejectedSong]:
    """Rejected songs across a theme's sessions, first occurrence wins."""

    seen: set[tuple[str, str]] = set()
    result: List[RejectedSong] = []
    for session in sessions:
        if session.theme_id != theme_id:
            continue
        for item in session.rejected_songs:
            key = (item.title.lower(), item.artist.lower())
            if key in seen:
                continue
            seen.add(key)
            result.append(item)
    return result


def aggregate_preferences(sessions: Iterable[Session], theme_id: str) -> List[SessionPreference]:
    """Session preferences across a theme, high confidence and most recent first."""

    prefs = [
        pref
        for session in sessions
        if session.theme_id == theme_id
        for pref in session.session_preferences
    ]
    return sorted(
        prefs,
        key=lambda pref: (_CONFIDENCE_ORDER[pref.confidence], -pref.timestamp.timestamp()),
    )


def add_long_term_preferences(
    profile: Optional[UserProfile],
    prefs: Sequence[LongTermPreference],
) -> UserProfile:
    if profile is None:
        return UserProfile(
            summary="Preference profile being built",
            long_term_preferences=list(prefs),
            evidence_count=len(prefs),
        )
    known = {pref.statement.lower() for pref in profile.long_term_preferences}
    fresh: List[LongTermPreference] = []
    for pref in prefs:
        key = pref.statement.lower()
        if key in known:
            continue
        known.add(key)
        fresh.append(pref)
    return profile.model_copy(
        update={
            "long_term_preferences": [*profile.long_term_preferences, *fresh],
            "evidence_count": profile.evidence_count + len(fresh),
            "updated_at": _now(),
        }
    )


def remove_long_term_preference(profile: Optional[UserProfile], statement: str) -> Optional[UserProfile]:
    if profile is None:
        return None
    return profile.model_copy(
        update={
            "long_term_preferences": [
                pref for pref in profile.long_term_preferences if pref.statement != statement
            ],
            "updated_at": _now(),
        }
    )
