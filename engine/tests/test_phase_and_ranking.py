from __future__ import annotations

import pytest

from league_funnel.app.models import FunnelTier, Song, Theme, ThemePhase
from league_funnel.services.exceptions import InvalidMoveError
from league_funnel.services.phase import derive_phase, phase_progress
from league_funnel.services.ranking import ranks_are_dense, reorder, sort_by_rank


def _songs(count: int, prefix: str = "s") -> list[Song]:
    return [Song(id=f"{prefix}{i}", title=f"Title {i}", artist="Band") for i in range(count)]


def test_derive_phase_follows_occupancy() -> None:
    assert derive_phase(None) == ThemePhase.IDLE
    assert derive_phase(Theme(id="t")) == ThemePhase.BRAINSTORM
    assert derive_phase(Theme(id="t", candidates=_songs(8))) == ThemePhase.REFINE
    assert derive_phase(Theme(id="t", semifinalists=_songs(4))) == ThemePhase.DECIDE
    assert derive_phase(Theme(id="t", pick=_songs(1)[0])) == ThemePhase.COMPLETE


def test_phase_can_move_backwards() -> None:
    theme = Theme(id="t", candidates=_songs(8))
    assert derive_phase(theme) == ThemePhase.REFINE
    shrunk = theme.model_copy(update={"candidates": _songs(7)})
    assert derive_phase(shrunk) == ThemePhase.BRAINSTORM


def test_phase_progress_reports_next_target() -> None:
    theme = Theme(id="t", candidates=_songs(3))
    assert phase_progress(theme) == (3, 8)
    refine = Theme(id="t", candidates=_songs(9), semifinalists=_songs(2, "x"))
    assert phase_progress(refine) == (2, 4)
    assert phase_progress(None) == (0, 0)


def test_reorder_finalists_assigns_dense_ranks() -> None:
    theme = Theme(id="t", finalists=_songs(4))
    updated = reorder(theme, FunnelTier.FINALISTS, ["s3", "s1", "s0", "s2"])
    assert [(song.id, song.rank) for song in updated.finalists] == [
        ("s3", 1),
        ("s1", 2),
        ("s0", 3),
        ("s2", 4),
    ]
    assert ranks_are_dense(updated.finalists)


def test_reorder_drops_omitted_and_ignores_unknown() -> None:
    theme = Theme(id="t", semifinalists=_songs(3))
    updated = reorder(theme, FunnelTier.SEMIFINALISTS, ["s2", "ghost", "s2", "s0"])
    assert [(song.id, song.rank) for song in updated.semifinalists] == [("s2", 1), ("s0", 2)]


def test_reorder_rejects_unranked_tier() -> None:
    with pytest.raises(InvalidMoveError):
        reorder(Theme(id="t", candidates=_songs(2)), FunnelTier.CANDIDATES, ["s0", "s1"])


def test_sort_by_rank_puts_unranked_last() -> None:
    songs = [
        Song(id="a", title="A", artist="X"),
        Song(id="b", title="B", artist="X", rank=2),
        Song(id="c", title="C", artist="X"),
        Song(id="d", title="D", artist="X", rank=1),
    ]
    assert [song.id for song in sort_by_rank(songs)] == ["d", "b", "a", "c"]
