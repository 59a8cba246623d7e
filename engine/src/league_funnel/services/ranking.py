from __future__ import annotations

from datetime import UTC, datetime
from typing import Dict, Iterable, List, Sequence

from loguru import logger

from ..app.models import FunnelTier, Song, Theme
from .exceptions import InvalidMoveError

RANKED_TIERS = frozenset({FunnelTier.SEMIFINALISTS, FunnelTier.FINALISTS})


def reorder(theme: Theme, tier: FunnelTier, ordered_song_ids: Sequence[str]) -> Theme:
    """Assign dense ranks 1..N to ``tier`` following ``ordered_song_ids``.

    Members of the tier that are missing from the list are dropped from it.
    """

    if tier not in RANKED_TIERS:
        raise InvalidMoveError(f"{tier.value} does not carry ranks")
    members: Dict[str, Song] = {song.id: song for song in theme.songs_in(tier)}
    ranked: List[Song] = []
    used: set[str] = set()
    for song_id in ordered_song_ids:
        if song_id in used:
            logger.warning("Ignoring repeated song {} in {} ordering", song_id, tier.value)
            continue
        song = members.get(song_id)
        if song is None:
            logger.warning("Ignoring unknown song {} in {} ordering", song_id, tier.value)
            continue
        used.add(song_id)
        ranked.append(song.model_copy(update={"rank": len(ranked) + 1}))
    dropped = [song_id for song_id in members if song_id not in used]
    if dropped:
        logger.info("Reorder of {} dropped {} song(s) from theme {}", tier.value, len(dropped), theme.id)
    return theme.model_copy(update={tier.value: ranked, "updated_at": datetime.now(tz=UTC)})


def sort_by_rank(songs: Iterable[Song]) -> List[Song]:
    items = list(songs)
    ranked = sorted((song for song in items if song.rank is not None), key=lambda song: song.rank)
    return ranked + [song for song in items if song.rank is None]


def ranks_are_dense(songs: Sequence[Song]) -> bool:
    ranks = sorted(song.rank for song in songs if song.rank is not None)
    return ranks == list(range(1, len(ranks) + 1))
