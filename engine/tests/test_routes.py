from __future__ import annotations

import json
from pathlib import Path

from fastapi.testclient import TestClient

from league_funnel.app.main import API_PREFIX, create_app
from league_funnel.app.settings import Settings


def _client(tmp_path: Path) -> TestClient:
    return TestClient(create_app(settings=Settings(cache_dir=tmp_path)))


def _theme_body(theme_id: str = "t1", **extra: object) -> dict[str, object]:
    body: dict[str, object] = {
        "id": theme_id,
        "rawTheme": "Songs about weather",
        "title": "Songs about weather",
        "candidates": [{"id": "s1", "title": "Thunder", "artist": "Imagine Dragons"}],
    }
    body.update(extra)
    return body


def test_create_app(tmp_path: Path) -> None:
    app = create_app(settings=Settings(cache_dir=tmp_path))
    assert app.title == "League Funnel Store"


def test_health_and_has_data(tmp_path: Path) -> None:
    with _client(tmp_path) as client:
        response = client.get(f"{API_PREFIX}/health")
        assert response.status_code == 200
        assert response.json()["status"] == "ok"
        assert client.get(f"{API_PREFIX}/has-data").json() == {"hasData": False}

        client.post(f"{API_PREFIX}/themes", json=_theme_body())
        assert client.get(f"{API_PREFIX}/has-data").json() == {"hasData": True}
        assert client.get(f"{API_PREFIX}/health").json()["themeCount"] == 1


def test_theme_post_is_upsert_with_versions(tmp_path: Path) -> None:
    with _client(tmp_path) as client:
        first = client.post(f"{API_PREFIX}/themes", json=_theme_body())
        second = client.post(f"{API_PREFIX}/themes", json=_theme_body(title="Renamed"))
        assert first.headers["ETag"] == '"1"'
        assert second.headers["ETag"] == '"2"'

        listing = client.get(f"{API_PREFIX}/themes")
        assert len(listing.json()) == 1
        assert listing.json()[0]["title"] == "Renamed"
        assert listing.json()[0]["candidates"][0]["title"] == "Thunder"
        assert json.loads(listing.headers["X-Entity-Versions"]) == {"t1": 2}


def test_put_with_stale_version_conflicts(tmp_path: Path) -> None:
    with _client(tmp_path) as client:
        client.post(f"{API_PREFIX}/themes", json=_theme_body())
        ok = client.put(f"{API_PREFIX}/themes/t1", json=_theme_body(title="A"), headers={"If-Match": '"1"'})
        assert ok.status_code == 200
        assert ok.headers["ETag"] == '"2"'

        stale = client.put(f"{API_PREFIX}/themes/t1", json=_theme_body(title="B"), headers={"If-Match": '"1"'})
        assert stale.status_code == 409
        assert stale.headers["ETag"] == '"2"'
        assert client.get(f"{API_PREFIX}/themes/t1").json()["title"] == "A"


def test_unknown_entities_map_to_404(tmp_path: Path) -> None:
    with _client(tmp_path) as client:
        assert client.get(f"{API_PREFIX}/themes/missing").status_code == 404
        assert client.put(f"{API_PREFIX}/themes/missing", json=_theme_body("missing")).status_code == 404
        assert client.delete(f"{API_PREFIX}/sessions/missing").status_code == 404
        assert client.delete(f"{API_PREFIX}/saved-songs/missing").status_code == 404


def test_malformed_payload_is_422(tmp_path: Path) -> None:
    with _client(tmp_path) as client:
        response = client.post(f"{API_PREFIX}/themes", json={"rawTheme": "no id"})
        assert response.status_code == 422
        mismatch = client.put(f"{API_PREFIX}/themes/other", json=_theme_body())
        assert mismatch.status_code == 422


def test_delete_theme_removes_its_sessions(tmp_path: Path) -> None:
    with _client(tmp_path) as client:
        client.post(f"{API_PREFIX}/themes", json=_theme_body())
        client.post(f"{API_PREFIX}/sessions", json={"id": "sess-1", "themeId": "t1"})
        client.post(f"{API_PREFIX}/sessions", json={"id": "sess-2", "themeId": "other"})

        assert client.delete(f"{API_PREFIX}/themes/t1").status_code == 204
        remaining = [session["id"] for session in client.get(f"{API_PREFIX}/sessions").json()]
        assert remaining == ["sess-2"]


def test_profile_and_saved_songs(tmp_path: Path) -> None:
    with _client(tmp_path) as client:
        assert client.get(f"{API_PREFIX}/profile").json() is None
        profile = client.put(f"{API_PREFIX}/profile", json={"summary": "likes synths"})
        assert profile.json()["summary"] == "likes synths"
        assert "genres" in profile.json()["categories"]

        client.post(f"{API_PREFIX}/saved-songs", json={"id": "x1", "title": "Song", "artist": "Band", "tags": ["fun"]})
        assert [song["id"] for song in client.get(f"{API_PREFIX}/saved-songs").json()] == ["x1"]
        assert client.delete(f"{API_PREFIX}/saved-songs/x1").status_code == 204


def test_migrate_twice_creates_no_duplicates(tmp_path: Path) -> None:
    payload = {
        "themes": [_theme_body("t1"), _theme_body("t2")],
        "sessions": [{"id": "sess-1", "themeId": "t1"}],
        "userProfile": {"summary": "imported"},
        "savedSongs": [{"id": "x1", "title": "Song", "artist": "Band"}],
        "settings": {"strategistModel": "some-model"},
        "competitorAnalysis": None,
    }
    with _client(tmp_path) as client:
        first = client.post(f"{API_PREFIX}/migrate", json=payload)
        second = client.post(f"{API_PREFIX}/migrate", json=payload)
        assert first.json()["success"] is True
        assert second.json()["themes"] == 2
        assert len(client.get(f"{API_PREFIX}/themes").json()) == 2
        assert len(client.get(f"{API_PREFIX}/sessions").json()) == 1
        assert len(client.get(f"{API_PREFIX}/saved-songs").json()) == 1
