from __future__ import annotations

import pytest

from league_funnel.app.models import FunnelTier, HallPassType, Song, Theme
from league_funnel.services import funnel
from league_funnel.services.exceptions import (
    CapacityFullError,
    DuplicateSongError,
    HallPassUnavailableError,
    InvalidMoveError,
)
from league_funnel.services.types import TierLimits


def _song(index: int, **overrides: object) -> Song:
    data: dict[str, object] = {
        "id": f"s{index}",
        "title": f"Song {index}",
        "artist": f"Artist {index}",
    }
    data.update(overrides)
    return Song(**data)


def _theme(**tiers: object) -> Theme:
    return Theme(id="t1", raw_theme="Songs about weather", title="Songs about weather", **tiers)


def test_add_candidate_rejects_when_candidates_full() -> None:
    theme = _theme(candidates=[_song(i) for i in range(30)])
    with pytest.raises(CapacityFullError) as excinfo:
        funnel.add_candidate(theme, _song(99))
    assert excinfo.value.limit == 30
    assert len(theme.candidates) == 30


def test_add_candidate_assigns_id_and_session() -> None:
    theme = _theme()
    updated = funnel.add_candidate(theme, Song(title="Thunder", artist="Imagine Dragons"), session_id="sess-1")
    added = updated.candidates[0]
    assert added.id
    assert added.current_tier == FunnelTier.CANDIDATES
    assert added.added_in_session_id == "sess-1"
    assert theme.candidates == []


def test_add_candidate_rejects_case_insensitive_duplicate() -> None:
    theme = _theme(candidates=[_song(1, title="Thunder", artist="Imagine Dragons")])
    with pytest.raises(DuplicateSongError):
        funnel.add_candidate(theme, Song(title="thunder ", artist="IMAGINE DRAGONS"))


def test_add_candidate_rejects_id_already_in_funnel() -> None:
    theme = _theme(finalists=[_song(1)])
    with pytest.raises(DuplicateSongError):
        funnel.add_candidate(theme, _song(1, title="Renamed"))


def test_promotion_history_tracks_each_move() -> None:
    thunder = _song(1, title="Thunder", artist="Imagine Dragons")
    theme = funnel.add_candidate(_theme(), thunder)
    theme = funnel.promote(theme, thunder, FunnelTier.SEMIFINALISTS, "strong hook")
    theme = funnel.promote(theme, thunder, FunnelTier.FINALISTS)
    theme = funnel.demote(theme, thunder, FunnelTier.SEMIFINALISTS, "second thoughts")

    assert [song.id for song in theme.semifinalists] == ["s1"]
    assert theme.finalists == []
    history = theme.semifinalists[0].promotion_history
    assert [(record.from_tier, record.to_tier) for record in history] == [
        ("candidates", FunnelTier.SEMIFINALISTS),
        ("semifinalists", FunnelTier.FINALISTS),
        ("finalists", FunnelTier.SEMIFINALISTS),
    ]
    assert history[0].reason == "strong hook"
    assert theme.semifinalists[0].current_tier == FunnelTier.SEMIFINALISTS


def test_promote_from_working_set_records_working_source() -> None:
    theme = funnel.promote(_theme(), _song(5), FunnelTier.FINALISTS)
    assert theme.finalists[0].promotion_history[0].from_tier == "working"


def test_promote_cannot_skip_tiers() -> None:
    theme = _theme(candidates=[_song(1)])
    with pytest.raises(InvalidMoveError):
        funnel.promote(theme, _song(1), FunnelTier.FINALISTS)


def test_promote_pick_is_rejected() -> None:
    theme = _theme(pick=_song(1))
    with pytest.raises(InvalidMoveError):
        funnel.promote(theme, _song(1), FunnelTier.PICK)


def test_promote_into_full_tier_leaves_theme_unchanged() -> None:
    theme = _theme(
        candidates=[_song(1)],
        semifinalists=[_song(i) for i in range(10, 18)],
    )
    with pytest.raises(CapacityFullError):
        funnel.promote(theme, _song(1), FunnelTier.SEMIFINALISTS)
    assert [song.id for song in theme.candidates] == ["s1"]


def test_promote_clears_rank() -> None:
    theme = _theme(semifinalists=[_song(1, rank=2)])
    updated = funnel.promote(theme, _song(1), FunnelTier.FINALISTS)
    assert updated.finalists[0].rank is None


def test_demote_requires_lower_tier() -> None:
    theme = _theme(semifinalists=[_song(1)])
    with pytest.raises(InvalidMoveError):
        funnel.demote(theme, _song(1), FunnelTier.FINALISTS)


def test_demote_from_pick_empties_slot() -> None:
    theme = _theme(pick=_song(1))
    updated = funnel.demote(theme, _song(1), FunnelTier.CANDIDATES)
    assert updated.pick is None
    assert [song.id for song in updated.candidates] == ["s1"]


def test_demote_into_full_tier_is_rejected() -> None:
    limits = TierLimits(candidates=1)
    theme = _theme(candidates=[_song(1)], finalists=[_song(2)])
    with pytest.raises(CapacityFullError):
        funnel.demote(theme, _song(2), FunnelTier.CANDIDATES, limits=limits)


def test_remove_missing_song_is_noop() -> None:
    theme = _theme(candidates=[_song(1)])
    assert funnel.remove(theme, "missing", FunnelTier.CANDIDATES) is theme


def test_remove_detaches_song() -> None:
    theme = _theme(candidates=[_song(1), _song(2)])
    updated = funnel.remove(theme, "s1", FunnelTier.CANDIDATES)
    assert [song.id for song in updated.candidates] == ["s2"]


def test_set_pick_keeps_song_in_one_tier() -> None:
    theme = _theme(finalists=[_song(1), _song(2)], pick=_song(3))
    updated = funnel.set_pick(theme, _song(1))
    assert updated.pick is not None and updated.pick.id == "s1"
    assert [song.id for song in updated.finalists] == ["s2"]
    assert funnel.check_invariants(updated) == []


def test_update_song_edits_metadata_only() -> None:
    theme = _theme(candidates=[_song(1)])
    updated = funnel.update_song(theme, "s1", is_favorite=True, user_notes="great bridge")
    assert updated.candidates[0].is_favorite is True
    assert updated.candidates[0].user_notes == "great bridge"
    with pytest.raises(InvalidMoveError):
        funnel.update_song(theme, "s1", current_tier=FunnelTier.PICK)


def test_hall_pass_skips_order_once() -> None:
    theme = _theme(candidates=[_song(1), _song(2)])
    updated = funnel.use_hall_pass(theme, _song(1), HallPassType.FINALS)
    assert [song.id for song in updated.finalists] == ["s1"]
    assert updated.hall_passes_used.finals is True
    assert funnel.hall_passes_available(updated)[HallPassType.SEMIFINALS] is True

    with pytest.raises(HallPassUnavailableError):
        funnel.use_hall_pass(updated, _song(2), HallPassType.FINALS)

    demoted = funnel.demote(updated, _song(1), FunnelTier.CANDIDATES)
    assert demoted.hall_passes_used.finals is True


def test_failed_hall_pass_keeps_flag() -> None:
    theme = _theme(semifinalists=[_song(i) for i in range(8)])
    with pytest.raises(CapacityFullError):
        funnel.use_hall_pass(theme, _song(50), HallPassType.SEMIFINALS)
    assert theme.hall_passes_used.semifinals is False


def test_check_invariants_reports_duplicates_and_overflow() -> None:
    theme = _theme(
        candidates=[_song(1)],
        finalists=[_song(1), _song(2), _song(3), _song(4), _song(5)],
    )
    problems = funnel.check_invariants(theme)
    assert any("finalists holds 5" in problem for problem in problems)
    assert any("s1 appears in candidates and finalists" in problem for problem in problems)


def test_occupancy_counts_every_tier() -> None:
    theme = _theme(candidates=[_song(1), _song(2)], finalists=[_song(3)], pick=_song(4))
    assert funnel.occupancy(theme) == {
        FunnelTier.CANDIDATES: 2,
        FunnelTier.SEMIFINALISTS: 0,
        FunnelTier.FINALISTS: 1,
        FunnelTier.PICK: 1,
    }
