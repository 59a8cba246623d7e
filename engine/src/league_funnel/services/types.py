"""Shared service data structures."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any, Dict, Optional

from ..app.models import FunnelTier


@dataclass(frozen=True)
class TierLimits:
    candidates: int = 30
    semifinalists: int = 8
    finalists: int = 4
    pick: int = 1

    def for_tier(self, tier: FunnelTier) -> int:
        return int(getattr(self, tier.value))


DEFAULT_LIMITS = TierLimits()


@dataclass(frozen=True)
class PhaseThresholds:
    refine_candidates: int = 8
    decide_semifinalists: int = 4
    decide_finalists_target: int = 4


DEFAULT_THRESHOLDS = PhaseThresholds()


@dataclass(frozen=True)
class SongLocation:
    theme_id: str
    tier: FunnelTier


class EntityKind(str, Enum):
    THEME = "theme"
    SESSION = "session"
    SAVED_SONG = "saved_song"
    PROFILE = "profile"


class EntitySyncState(str, Enum):
    CLEAN = "clean"
    DIRTY = "dirty"
    SYNCING = "syncing"
    FAILED = "failed"
    CONFLICT = "conflict"


@dataclass
class EntityStatus:
    kind: EntityKind
    entity_id: str
    state: EntitySyncState = EntitySyncState.DIRTY
    error: Optional[str] = None
    updated_at: datetime = field(default_factory=lambda: datetime.now(tz=UTC))

    def as_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "kind": self.kind.value,
            "id": self.entity_id,
            "state": self.state.value,
            "updated_at": self.updated_at.isoformat(),
        }
        if self.error is not None:
            payload["error"] = self.error
        return payload


@dataclass
class SyncStatus:
    is_syncing: bool = False
    pending_changes: bool = False
    last_sync_time: Optional[datetime] = None
    sync_error: Optional[str] = None
    conflicts: list[str] = field(default_factory=list)


@dataclass
class BootstrapState:
    is_initialized: bool = False
    is_loading: bool = False
    error: Optional[str] = None
    migration_needed: bool = False
    is_migrating: bool = False
    server_available: bool = False
