"""Shared service-layer exceptions."""

from __future__ import annotations

from typing import Optional


class FunnelError(Exception):
    """Expected rejection of a funnel operation; the theme is left unchanged."""


class CapacityFullError(FunnelError):
    def __init__(self, tier: str, limit: int) -> None:
        super().__init__(f"{tier} is full ({limit})")
        self.tier = tier
        self.limit = limit


class DuplicateSongError(FunnelError):
    def __init__(self, title: str, artist: str) -> None:
        super().__init__(f'"{title}" by {artist} is already in the funnel')
        self.title = title
        self.artist = artist


class InvalidMoveError(FunnelError):
    """Raised when a move does not follow the funnel ordering."""


class HallPassUnavailableError(FunnelError):
    def __init__(self, pass_type: str) -> None:
        super().__init__(f"{pass_type} hall pass already used")
        self.pass_type = pass_type


class UnknownThemeError(Exception):
    """Raised when a theme lookup fails."""

    def __init__(self, theme_id: str) -> None:
        super().__init__(theme_id)
        self.theme_id = theme_id


class UnknownSessionError(Exception):
    """Raised when a session lookup fails."""

    def __init__(self, session_id: str) -> None:
        super().__init__(session_id)
        self.session_id = session_id


class SyncError(Exception):
    """Failure talking to the remote store."""


class NetworkUnavailableError(SyncError):
    """The remote store could not be reached."""


class ServerError(SyncError):
    def __init__(self, status_code: int, detail: Optional[str] = None) -> None:
        super().__init__(f"server responded {status_code}: {detail or 'no detail'}")
        self.status_code = status_code
        self.detail = detail


class SyncConflictError(SyncError):
    """The remote copy changed since the version this client last saw."""

    def __init__(self, entity_id: str, remote_version: Optional[int] = None) -> None:
        super().__init__(f"remote copy of {entity_id} has changed")
        self.entity_id = entity_id
        self.remote_version = remote_version


class MigrationFailedError(Exception):
    """Bulk import aborted; local data was preserved."""
