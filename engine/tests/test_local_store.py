from __future__ import annotations

from pathlib import Path

import pytest

from league_funnel.app.models import FunnelTier, HallPassType, Song, ThemePhase, ThemeStatus
from league_funnel.services.exceptions import CapacityFullError, InvalidMoveError, UnknownThemeError
from league_funnel.services.local_store import LocalStore, StoreChange
from league_funnel.services.persistence import JsonKeyValueCache
from league_funnel.services.types import EntityKind, SongLocation


def _song(index: int) -> Song:
    return Song(id=f"s{index}", title=f"Song {index}", artist=f"Artist {index}")


def test_mutations_notify_with_changed_entities(memory_cache) -> None:
    store = LocalStore(memory_cache)
    changes: list[StoreChange] = []
    store.subscribe(changes.append)

    theme_id = store.create_theme("Songs about rain\nbring an umbrella")
    store.add_candidate(theme_id, _song(1))

    assert len(changes) == 2
    assert changes[-1].changed == frozenset({(EntityKind.THEME, theme_id)})
    assert store.get_theme(theme_id).title == "Songs about rain"
    assert store.active_theme_id == theme_id
    assert memory_cache.writes


def test_store_writes_derived_phase_on_commit() -> None:
    store = LocalStore()
    theme_id = store.create_theme("Phase test")
    for index in range(8):
        store.add_candidate(theme_id, _song(index))
    assert store.get_theme(theme_id).phase == ThemePhase.REFINE

    store.remove_song(theme_id, "s0", FunnelTier.CANDIDATES)
    assert store.get_theme(theme_id).phase == ThemePhase.BRAINSTORM


def test_location_index_follows_moves() -> None:
    store = LocalStore()
    theme_id = store.create_theme("Index test")
    store.add_candidate(theme_id, _song(1))
    assert store.locate_song("s1") == SongLocation(theme_id=theme_id, tier=FunnelTier.CANDIDATES)

    store.promote(theme_id, _song(1), FunnelTier.SEMIFINALISTS)
    assert store.locate_song("s1") == SongLocation(theme_id=theme_id, tier=FunnelTier.SEMIFINALISTS)

    store.use_hall_pass(theme_id, _song(2), HallPassType.FINALS)
    assert store.locate_song("s2") == SongLocation(theme_id=theme_id, tier=FunnelTier.FINALISTS)
    assert store.check_invariants() == []

    store.delete_theme(theme_id)
    assert store.locate_song("s1") is None


def test_rejected_operation_does_not_notify() -> None:
    store = LocalStore()
    theme_id = store.create_theme("Rejections")
    store.add_candidate(theme_id, _song(1))
    changes: list[StoreChange] = []
    store.subscribe(changes.append)

    with pytest.raises(InvalidMoveError):
        store.promote(theme_id, _song(1), FunnelTier.PICK)
    assert changes == []


def test_delete_theme_cascades_sessions() -> None:
    store = LocalStore()
    keep = store.create_theme("Keep me")
    doomed = store.create_theme("Delete me")
    store.create_session(doomed)
    other = store.create_session(keep)

    store.delete_theme(doomed)

    assert [session.id for session in store.sessions] == [other]
    assert store.active_theme_id == keep
    with pytest.raises(UnknownThemeError):
        store.get_theme(doomed)


def test_update_theme_refuses_tier_fields() -> None:
    store = LocalStore()
    theme_id = store.create_theme("Guarded")
    with pytest.raises(InvalidMoveError):
        store.update_theme(theme_id, candidates=[])
    archived = store.archive_theme(theme_id)
    assert archived.status == ThemeStatus.ARCHIVED


def test_session_helpers_use_active_session() -> None:
    store = LocalStore()
    theme_id = store.create_theme("Sessions")
    session_id = store.create_session()
    store.set_working_candidates([Song(title="Untracked", artist="Nobody")])
    store.increment_iteration()

    session = store.get_session(session_id)
    assert session.theme_id == theme_id
    assert session.title == "Session 1"
    assert session.iteration_count == 1
    assert session.working_candidates[0].id


def test_save_song_skips_duplicates() -> None:
    store = LocalStore()
    first = store.save_song(_song(1), tags=["summer"])
    second = store.save_song(Song(title="song 1", artist="ARTIST 1"))
    assert first.id == second.id
    assert len(store.saved_songs) == 1
    store.remove_saved_song(first.id)
    assert store.saved_songs == []


def test_capacity_respects_configured_limits() -> None:
    from league_funnel.services.types import TierLimits

    store = LocalStore(limits=TierLimits(candidates=2))
    theme_id = store.create_theme("Tiny")
    store.add_candidate(theme_id, _song(1))
    store.add_candidate(theme_id, _song(2))
    with pytest.raises(CapacityFullError):
        store.add_candidate(theme_id, _song(3))


def test_state_round_trips_through_json_cache(tmp_path: Path) -> None:
    cache = JsonKeyValueCache(tmp_path / "cache")
    store = LocalStore(cache)
    theme_id = store.create_theme("Persisted")
    store.add_candidate(theme_id, _song(1))
    store.create_session(theme_id)

    restored = LocalStore(cache)
    assert restored.load() is True
    assert restored.get_theme(theme_id).candidates[0].title == "Song 1"
    assert len(restored.sessions) == 1
    assert restored.locate_song("s1") == SongLocation(theme_id=theme_id, tier=FunnelTier.CANDIDATES)
    assert restored.active_theme_id == theme_id


def test_load_accepts_legacy_epoch_millis(memory_cache) -> None:
    memory_cache.set(
        "music-league-strategist",
        {
            "state": {
                "themes": [
                    {
                        "id": "legacy",
                        "rawTheme": "Old theme",
                        "title": "Old theme",
                        "createdAt": 1700000000000,
                        "updatedAt": 1700000000000,
                        "candidates": [{"id": "c1", "title": "Old", "artist": "Timer"}],
                        "pick": None,
                        "status": "active",
                    }
                ],
                "sessions": [],
            }
        },
    )
    store = LocalStore(memory_cache)
    assert store.load()
    theme = store.get_theme("legacy")
    assert theme.created_at.year == 2023
    assert theme.phase == ThemePhase.BRAINSTORM
