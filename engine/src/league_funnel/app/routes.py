from __future__ import annotations

import json
from typing import Any, Optional, cast

from fastapi import APIRouter, Header, HTTPException, Request, Response, status
from fastapi.responses import JSONResponse

from ..services.exceptions import UnknownSessionError, UnknownThemeError
from ..services.remote_api import VERSIONS_HEADER, format_etag, parse_etag
from .models import (
    HasDataResponse,
    HealthResponse,
    MigrationPayload,
    SavedSong,
    Session,
    Theme,
    UserProfile,
)
from .repository import FunnelRepository, StaleVersionError, UnknownSavedSongError, VersionedRecord

router = APIRouter()


def get_repository(request: Request) -> FunnelRepository:
    return cast(FunnelRepository, request.app.state.repository)


def _versioned(record: VersionedRecord[Any]) -> JSONResponse:
    return JSONResponse(content=record.value.to_wire(), headers={"ETag": format_etag(record.version)})


def _versioned_list(records: list[VersionedRecord[Any]]) -> JSONResponse:
    versions = {record.value.id: record.version for record in records}
    return JSONResponse(
        content=[record.value.to_wire() for record in records],
        headers={VERSIONS_HEADER: json.dumps(versions, separators=(",", ":"))},
    )


def _stale(exc: StaleVersionError) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_409_CONFLICT,
        detail=f"{exc.entity_id} was modified (version {exc.current_version})",
        headers={"ETag": format_etag(exc.current_version)},
    )


@router.get("/health")
async def health(request: Request) -> dict[str, Any]:
    themes, sessions = await get_repository(request).counts()
    return HealthResponse(theme_count=themes, session_count=sessions).to_wire()


@router.get("/has-data")
async def has_data(request: Request) -> dict[str, Any]:
    return HasDataResponse(has_data=await get_repository(request).has_data()).to_wire()


# Themes


@router.get("/themes")
async def list_themes(request: Request) -> JSONResponse:
    return _versioned_list(await get_repository(request).list_themes())


@router.post("/themes")
async def create_theme(payload: Theme, request: Request) -> JSONResponse:
    return _versioned(await get_repository(request).upsert_theme(payload))


@router.get("/themes/{theme_id}")
async def fetch_theme(theme_id: str, request: Request) -> JSONResponse:
    try:
        record = await get_repository(request).get_theme(theme_id)
    except UnknownThemeError as exc:
        raise HTTPException(status_code=404, detail=f"theme {exc.theme_id} not found") from exc
    return _versioned(record)


@router.put("/themes/{theme_id}")
async def update_theme(
    theme_id: str,
    payload: Theme,
    request: Request,
    if_match: Optional[str] = Header(default=None),
) -> JSONResponse:
    if payload.id != theme_id:
        raise HTTPException(status_code=422, detail="theme id does not match the path")
    try:
        record = await get_repository(request).update_theme(payload, parse_etag(if_match))
    except UnknownThemeError as exc:
        raise HTTPException(status_code=404, detail=f"theme {exc.theme_id} not found") from exc
    except StaleVersionError as exc:
        raise _stale(exc) from exc
    return _versioned(record)


@router.delete("/themes/{theme_id}", status_code=204)
async def delete_theme(theme_id: str, request: Request) -> Response:
    try:
        await get_repository(request).delete_theme(theme_id)
    except UnknownThemeError as exc:
        raise HTTPException(status_code=404, detail=f"theme {exc.theme_id} not found") from exc
    return Response(status_code=204)


# Sessions


@router.get("/sessions")
async def list_sessions(request: Request) -> JSONResponse:
    return _versioned_list(await get_repository(request).list_sessions())


@router.post("/sessions")
async def create_session(payload: Session, request: Request) -> JSONResponse:
    return _versioned(await get_repository(request).upsert_session(payload))


@router.get("/sessions/{session_id}")
async def fetch_session(session_id: str, request: Request) -> JSONResponse:
    try:
        record = await get_repository(request).get_session(session_id)
    except UnknownSessionError as exc:
        raise HTTPException(status_code=404, detail=f"session {exc.session_id} not found") from exc
    return _versioned(record)


@router.put("/sessions/{session_id}")
async def update_session(
    session_id: str,
    payload: Session,
    request: Request,
    if_match: Optional[str] = Header(default=None),
) -> JSONResponse:
    if payload.id != session_id:
        raise HTTPException(status_code=422, detail="session id does not match the path")
    try:
        record = await get_repository(request).update_session(payload, parse_etag(if_match))
    except UnknownSessionError as exc:
        raise HTTPException(status_code=404, detail=f"session {exc.session_id} not found") from exc
    except StaleVersionError as exc:
        raise _stale(exc) from exc
    return _versioned(record)


@router.delete("/sessions/{session_id}", status_code=204)
async def delete_session(session_id: str, request: Request) -> Response:
    try:
        await get_repository(request).delete_session(session_id)
    except UnknownSessionError as exc:
        raise HTTPException(status_code=404, detail=f"session {exc.session_id} not found") from exc
    return Response(status_code=204)


# Profile


@router.get("/profile")
async def fetch_profile(request: Request) -> Optional[dict[str, Any]]:
    profile = await get_repository(request).get_profile()
    return profile.to_wire() if profile is not None else None


@router.put("/profile")
async def update_profile(payload: UserProfile, request: Request) -> dict[str, Any]:
    return (await get_repository(request).put_profile(payload)).to_wire()


# Saved songs


@router.get("/saved-songs")
async def list_saved_songs(request: Request) -> list[dict[str, Any]]:
    return [song.to_wire() for song in await get_repository(request).list_saved_songs()]


@router.post("/saved-songs")
async def create_saved_song(payload: SavedSong, request: Request) -> dict[str, Any]:
    return (await get_repository(request).upsert_saved_song(payload)).to_wire()


@router.delete("/saved-songs/{song_id}", status_code=204)
async def delete_saved_song(song_id: str, request: Request) -> Response:
    try:
        await get_repository(request).delete_saved_song(song_id)
    except UnknownSavedSongError as exc:
        raise HTTPException(status_code=404, detail=f"saved song {exc.song_id} not found") from exc
    return Response(status_code=204)


# Migration


@router.post("/migrate")
async def migrate(payload: MigrationPayload, request: Request) -> dict[str, Any]:
    result = await get_repository(request).migrate(payload)
    return result.to_wire()
