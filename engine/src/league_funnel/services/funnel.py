"""Pure tier transitions for a theme's candidate funnel.

Every public function takes a :class:`Theme` and returns a new one. Rejected
operations raise a :class:`FunnelError` subclass before anything is built, so
the caller's theme is never partially modified.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any, Dict, List, Optional, Tuple, Union
from uuid import uuid4

from loguru import logger

from ..app.models import (
    TIER_ORDER,
    WORKING_SET,
    FunnelTier,
    HallPassType,
    PromotionRecord,
    Song,
    Theme,
)
from .exceptions import (
    CapacityFullError,
    DuplicateSongError,
    HallPassUnavailableError,
    InvalidMoveError,
)
from .types import DEFAULT_LIMITS, TierLimits

PROMOTION_SEARCH_ORDER = (
    FunnelTier.CANDIDATES,
    FunnelTier.SEMIFINALISTS,
    FunnelTier.FINALISTS,
)
DEMOTION_SEARCH_ORDER = (
    FunnelTier.PICK,
    FunnelTier.FINALISTS,
    FunnelTier.SEMIFINALISTS,
    FunnelTier.CANDIDATES,
)

# Fields owned by the tier bookkeeping; metadata edits may not touch them.
PROTECTED_FIELDS = frozenset({"id", "current_tier", "rank", "promotion_history"})

_HALL_PASS_TIERS = {
    HallPassType.SEMIFINALS: FunnelTier.SEMIFINALISTS,
    HallPassType.FINALS: FunnelTier.FINALISTS,
}

SourceTier = Union[FunnelTier, str]


def generate_song_id() -> str:
    return f"song-{uuid4().hex[:12]}"


def _now() -> datetime:
    return datetime.now(tz=UTC)


def _tier_position(tier: FunnelTier) -> int:
    return TIER_ORDER.index(tier)


def locate(theme: Theme, song_id: str, order: Tuple[FunnelTier, ...] = TIER_ORDER) -> Optional[FunnelTier]:
    """Return the tier holding ``song_id`` or ``None`` for the working set."""

    if not song_id:
        return None
    for tier in order:
        if any(song.id == song_id for song in theme.songs_in(tier)):
            return tier
    return None


def tier_index(theme: Theme) -> Dict[str, FunnelTier]:
    index: Dict[str, FunnelTier] = {}
    for tier in TIER_ORDER:
        for song in theme.songs_in(tier):
            index[song.id] = tier
    return index


def occupancy(theme: Theme) -> Dict[FunnelTier, int]:
    return {tier: len(theme.songs_in(tier)) for tier in TIER_ORDER}


def check_invariants(theme: Theme, limits: TierLimits = DEFAULT_LIMITS) -> List[str]:
    """Describe every structural violation found in ``theme``."""

    problems: List[str] = []
    seen: Dict[str, FunnelTier] = {}
    for tier in TIER_ORDER:
        songs = theme.songs_in(tier)
        limit = limits.for_tier(tier)
        if len(songs) > limit:
            problems.append(f"{tier.value} holds {len(songs)} songs (limit {limit})")
        for song in songs:
            if song.id in seen:
                problems.append(
                    f"song {song.id} appears in {seen[song.id].value} and {tier.value}"
                )
            else:
                seen[song.id] = tier
    return problems


def _replace_tier(theme: Theme, tier: FunnelTier, songs: List[Song]) -> Theme:
    if tier == FunnelTier.PICK:
        return theme.model_copy(update={"pick": songs[0] if songs else None})
    return theme.model_copy(update={tier.value: songs})


def _detach(theme: Theme, song_id: str, tier: FunnelTier) -> Theme:
    remaining = [song for song in theme.songs_in(tier) if song.id != song_id]
    return _replace_tier(theme, tier, remaining)


def _ensure_capacity(theme: Theme, tier: FunnelTier, limits: TierLimits) -> None:
    limit = limits.for_tier(tier)
    if len(theme.songs_in(tier)) >= limit:
        raise CapacityFullError(tier.value, limit)


def _moved(song: Song, source: SourceTier, destination: FunnelTier, reason: Optional[str]) -> Song:
    record = PromotionRecord(
        from_tier=source.value if isinstance(source, FunnelTier) else source,
        to_tier=destination,
        reason=reason,
        timestamp=_now(),
    )
    return song.model_copy(
        update={
            "id": song.id or generate_song_id(),
            "current_tier": destination,
            "rank": None,
            "promotion_history": [*song.promotion_history, record],
        }
    )


def _current_copy(theme: Theme, song: Song, tier: Optional[FunnelTier]) -> Song:
    # The theme's copy carries the authoritative history.
    if tier is None:
        return song
    for existing in theme.songs_in(tier):
        if existing.id == song.id:
            return existing
    return song


def _move(
    theme: Theme,
    song: Song,
    source: Optional[FunnelTier],
    destination: FunnelTier,
    reason: Optional[str],
) -> Theme:
    current = _current_copy(theme, song, source)
    updated = theme if source is None else _detach(theme, current.id, source)
    moved = _moved(current, source or WORKING_SET, destination, reason)
    placed = _replace_tier(updated, destination, [*updated.songs_in(destination), moved])
    return placed.model_copy(update={"updated_at": _now()})


def promote(
    theme: Theme,
    song: Song,
    to_tier: FunnelTier,
    reason: Optional[str] = None,
    *,
    limits: TierLimits = DEFAULT_LIMITS,
) -> Theme:
    """Move ``song`` one tier up, or insert it from the working set."""

    if locate(theme, song.id, (FunnelTier.PICK,)) is not None:
        raise InvalidMoveError("the pick cannot be promoted further")
    source = locate(theme, song.id, PROMOTION_SEARCH_ORDER)
    if source is not None:
        expected = _tier_position(source) + 1
        if _tier_position(to_tier) != expected:
            raise InvalidMoveError(
                f"{source.value} songs can only be promoted to {TIER_ORDER[expected].value}"
            )
    _ensure_capacity(theme, to_tier, limits)
    result = _move(theme, song, source, to_tier, reason)
    logger.debug(
        "Promoted {} from {} to {} in theme {}",
        song.id or song.title,
        source.value if source else WORKING_SET,
        to_tier.value,
        theme.id,
    )
    return result


def demote(
    theme: Theme,
    song: Song,
    to_tier: FunnelTier,
    reason: Optional[str] = None,
    *,
    limits: TierLimits = DEFAULT_LIMITS,
) -> Theme:
    """Move ``song`` to any strictly lower tier."""

    source = locate(theme, song.id, DEMOTION_SEARCH_ORDER)
    if source is not None and _tier_position(to_tier) >= _tier_position(source):
        raise InvalidMoveError(
            f"cannot demote from {source.value} to {to_tier.value}"
        )
    _ensure_capacity(theme, to_tier, limits)
    result = _move(theme, song, source, to_tier, reason)
    logger.debug(
        "Demoted {} from {} to {} in theme {}",
        song.id or song.title,
        source.value if source else WORKING_SET,
        to_tier.value,
        theme.id,
    )
    return result


def remove(theme: Theme, song_id: str, tier: FunnelTier) -> Theme:
    if not any(song.id == song_id for song in theme.songs_in(tier)):
        logger.warning("Song {} not found in {} of theme {}", song_id, tier.value, theme.id)
        return theme
    return _detach(theme, song_id, tier).model_copy(update={"updated_at": _now()})


def add_candidate(
    theme: Theme,
    song: Song,
    *,
    session_id: Optional[str] = None,
    limits: TierLimits = DEFAULT_LIMITS,
) -> Theme:
    _ensure_capacity(theme, FunnelTier.CANDIDATES, limits)
    if any(existing.matches(song.title, song.artist) for existing in theme.candidates):
        raise DuplicateSongError(song.title, song.artist)
    if song.id and locate(theme, song.id) is not None:
        raise DuplicateSongError(song.title, song.artist)
    candidate = song.model_copy(
        update={
            "id": song.id or generate_song_id(),
            "current_tier": FunnelTier.CANDIDATES,
            "added_in_session_id": session_id or song.added_in_session_id,
        }
    )
    return theme.model_copy(
        update={"candidates": [*theme.candidates, candidate], "updated_at": _now()}
    )


def set_pick(theme: Theme, song: Optional[Song]) -> Theme:
    """Overwrite the pick slot; the previous pick is dropped."""

    if song is None:
        return theme.model_copy(update={"pick": None, "updated_at": _now()})
    updated = theme
    source = locate(theme, song.id, PROMOTION_SEARCH_ORDER)
    if source is not None:
        updated = _detach(updated, song.id, source)
    pick = song.model_copy(
        update={
            "id": song.id or generate_song_id(),
            "current_tier": FunnelTier.PICK,
            "rank": None,
        }
    )
    return updated.model_copy(update={"pick": pick, "updated_at": _now()})


def update_song(theme: Theme, song_id: str, **changes: Any) -> Theme:
    blocked = PROTECTED_FIELDS.intersection(changes)
    if blocked:
        raise InvalidMoveError(f"cannot edit tier fields: {', '.join(sorted(blocked))}")
    tier = locate(theme, song_id)
    if tier is None:
        logger.warning("Song {} not found in theme {}", song_id, theme.id)
        return theme
    songs = [
        Song.model_validate({**song.model_dump(), **changes}) if song.id == song_id else song
        for song in theme.songs_in(tier)
    ]
    return _replace_tier(theme, tier, songs).model_copy(update={"updated_at": _now()})


def hall_passes_available(theme: Theme) -> Dict[HallPassType, bool]:
    return {
        HallPassType.SEMIFINALS: not theme.hall_passes_used.semifinals,
        HallPassType.FINALS: not theme.hall_passes_used.finals,
    }


def use_hall_pass(
    theme: Theme,
    song: Song,
    pass_type: HallPassType,
    reason: Optional[str] = None,
    *,
    limits: TierLimits = DEFAULT_LIMITS,
) -> Theme:
    """Insert ``song`` straight into the pass's tier, spending the pass."""

    if not hall_passes_available(theme)[pass_type]:
        raise HallPassUnavailableError(pass_type.value)
    destination = _HALL_PASS_TIERS[pass_type]
    source = locate(theme, song.id)
    if source is not None and _tier_position(source) >= _tier_position(destination):
        raise InvalidMoveError(
            f"{pass_type.value} hall pass cannot move a song out of {source.value}"
        )
    _ensure_capacity(theme, destination, limits)
    moved = _move(theme, song, source, destination, reason or f"{pass_type.value} hall pass")
    passes = theme.hall_passes_used.model_copy(update={pass_type.value: True})
    logger.info("Hall pass {} used on theme {}", pass_type.value, theme.id)
    return moved.model_copy(update={"hall_passes_used": passes})
