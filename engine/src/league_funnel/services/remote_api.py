"""Async client for the remote funnel store."""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, Dict, Generic, List, Optional, Type, TypeVar

import httpx
from loguru import logger
from pydantic import BaseModel, ValidationError

from ..app.models import (
    HealthResponse,
    MigrationPayload,
    MigrationResult,
    SavedSong,
    Session,
    Theme,
    UserProfile,
)
from .exceptions import NetworkUnavailableError, ServerError, SyncConflictError

VERSIONS_HEADER = "X-Entity-Versions"

ModelT = TypeVar("ModelT", bound=BaseModel)


@dataclass(frozen=True)
class Versioned(Generic[ModelT]):
    value: ModelT
    version: Optional[int] = None


def parse_etag(value: Optional[str]) -> Optional[int]:
    if not value:
        return None
    try:
        return int(value.strip().strip('"').removeprefix("W/").strip('"'))
    except ValueError:
        return None


def format_etag(version: int) -> str:
    return f'"{version}"'


class RemoteApiClient:
    """Thin typed wrapper over ``httpx.AsyncClient``.

    Transport failures surface as :class:`NetworkUnavailableError`, version
    mismatches as :class:`SyncConflictError` and any other non-2xx answer as
    :class:`ServerError`.
    """

    def __init__(
        self,
        base_url: str,
        *,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=timeout,
            transport=transport,
            headers={"Accept": "application/json"},
        )

    async def __aenter__(self) -> "RemoteApiClient":
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _request(
        self,
        method: str,
        path: str,
        *,
        payload: Any = None,
        if_match: Optional[int] = None,
        entity_id: Optional[str] = None,
    ) -> httpx.Response:
        headers: Dict[str, str] = {}
        if if_match is not None:
            headers["If-Match"] = format_etag(if_match)
        try:
            response = await self._client.request(method, path, json=payload, headers=headers)
        except httpx.TransportError as exc:
            logger.debug("{} {} failed: {}", method, path, exc)
            raise NetworkUnavailableError(f"{method} {path}: {exc}") from exc
        if response.status_code == 409:
            raise SyncConflictError(entity_id or path, parse_etag(response.headers.get("ETag")))
        if response.is_error:
            raise ServerError(response.status_code, _detail(response))
        return response

    @staticmethod
    def _parse(model: Type[ModelT], data: Any) -> ModelT:
        try:
            return model.model_validate(data)
        except ValidationError as exc:
            raise ServerError(200, f"malformed {model.__name__}: {exc.errors()[:1]}") from exc

    def _parse_list(self, model: Type[ModelT], response: httpx.Response) -> List[Versioned[ModelT]]:
        versions: Dict[str, int] = {}
        raw_versions = response.headers.get(VERSIONS_HEADER)
        if raw_versions:
            try:
                versions = {str(key): int(value) for key, value in json.loads(raw_versions).items()}
            except (ValueError, AttributeError):
                logger.warning("Ignoring malformed {} header", VERSIONS_HEADER)
        items = []
        for data in response.json():
            value = self._parse(model, data)
            items.append(Versioned(value=value, version=versions.get(getattr(value, "id", ""))))
        return items

    def _versioned(self, model: Type[ModelT], response: httpx.Response) -> Versioned[ModelT]:
        return Versioned(
            value=self._parse(model, response.json()),
            version=parse_etag(response.headers.get("ETag")),
        )

    # Health

    async def health(self) -> HealthResponse:
        response = await self._request("GET", "/health")
        return self._parse(HealthResponse, response.json())

    async def has_data(self) -> bool:
        response = await self._request("GET", "/has-data")
        return bool(response.json().get("hasData", False))

    # Themes

    async def list_themes(self) -> List[Versioned[Theme]]:
        return self._parse_list(Theme, await self._request("GET", "/themes"))

    async def get_theme(self, theme_id: str) -> Versioned[Theme]:
        response = await self._request("GET", f"/themes/{theme_id}", entity_id=theme_id)
        return self._versioned(Theme, response)

    async def create_theme(self, theme: Theme) -> Versioned[Theme]:
        response = await self._request("POST", "/themes", payload=theme.to_wire(), entity_id=theme.id)
        return self._versioned(Theme, response)

    async def update_theme(self, theme: Theme, *, if_match: Optional[int] = None) -> Versioned[Theme]:
        response = await self._request(
            "PUT",
            f"/themes/{theme.id}",
            payload=theme.to_wire(),
            if_match=if_match,
            entity_id=theme.id,
        )
        return self._versioned(Theme, response)

    async def delete_theme(self, theme_id: str) -> None:
        await self._delete(f"/themes/{theme_id}", theme_id)

    # Sessions

    async def list_sessions(self) -> List[Versioned[Session]]:
        return self._parse_list(Session, await self._request("GET", "/sessions"))

    async def get_session(self, session_id: str) -> Versioned[Session]:
        response = await self._request("GET", f"/sessions/{session_id}", entity_id=session_id)
        return self._versioned(Session, response)

    async def create_session(self, session: Session) -> Versioned[Session]:
        response = await self._request(
            "POST", "/sessions", payload=session.to_wire(), entity_id=session.id
        )
        return self._versioned(Session, response)

    async def update_session(
        self, session: Session, *, if_match: Optional[int] = None
    ) -> Versioned[Session]:
        response = await self._request(
            "PUT",
            f"/sessions/{session.id}",
            payload=session.to_wire(),
            if_match=if_match,
            entity_id=session.id,
        )
        return self._versioned(Session, response)

    async def delete_session(self, session_id: str) -> None:
        await self._delete(f"/sessions/{session_id}", session_id)

    # Profile

    async def get_profile(self) -> Optional[UserProfile]:
        response = await self._request("GET", "/profile")
        data = response.json()
        if not data:
            return None
        return self._parse(UserProfile, data)

    async def put_profile(self, profile: UserProfile) -> UserProfile:
        response = await self._request("PUT", "/profile", payload=profile.to_wire())
        return self._parse(UserProfile, response.json())

    # Saved songs

    async def list_saved_songs(self) -> List[SavedSong]:
        response = await self._request("GET", "/saved-songs")
        return [self._parse(SavedSong, item) for item in response.json()]

    async def create_saved_song(self, song: SavedSong) -> SavedSong:
        response = await self._request(
            "POST", "/saved-songs", payload=song.to_wire(), entity_id=song.id
        )
        return self._parse(SavedSong, response.json())

    async def delete_saved_song(self, song_id: str) -> None:
        await self._delete(f"/saved-songs/{song_id}", song_id)

    # Migration

    async def migrate(self, payload: MigrationPayload) -> MigrationResult:
        response = await self._request("POST", "/migrate", payload=payload.to_wire())
        return self._parse(MigrationResult, response.json())

    async def _delete(self, path: str, entity_id: str) -> None:
        try:
            await self._request("DELETE", path, entity_id=entity_id)
        except ServerError as exc:
            if exc.status_code != 404:
                raise
            logger.debug("{} already absent on the server", entity_id)


def _detail(response: httpx.Response) -> Optional[str]:
    try:
        body = response.json()
    except ValueError:
        return response.text or None
    if isinstance(body, dict):
        detail = body.get("detail") or body.get("error")
        return str(detail) if detail is not None else None
    return None
