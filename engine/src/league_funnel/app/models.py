from __future__ import annotations

from datetime import UTC, datetime
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


def _utc_now() -> datetime:
    return datetime.now(tz=UTC)


class FunnelTier(str, Enum):
    CANDIDATES = "candidates"
    SEMIFINALISTS = "semifinalists"
    FINALISTS = "finalists"
    PICK = "pick"


WORKING_SET = "working"

TIER_ORDER: tuple[FunnelTier, ...] = (
    FunnelTier.CANDIDATES,
    FunnelTier.SEMIFINALISTS,
    FunnelTier.FINALISTS,
    FunnelTier.PICK,
)


class ThemePhase(str, Enum):
    IDLE = "idle"
    BRAINSTORM = "brainstorm"
    REFINE = "refine"
    DECIDE = "decide"
    COMPLETE = "complete"


class ThemeStatus(str, Enum):
    ACTIVE = "active"
    ARCHIVED = "archived"
    SUBMITTED = "submitted"


class HallPassType(str, Enum):
    SEMIFINALS = "semifinals"
    FINALS = "finals"


class Confidence(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class Specificity(str, Enum):
    GENERAL = "general"
    SPECIFIC = "specific"


class ConversationRole(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"


class WireModel(BaseModel):
    """Immutable value object serialised with camelCase keys."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        frozen=True,
    )

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


class PromotionRecord(WireModel):
    from_tier: str
    to_tier: FunnelTier
    reason: Optional[str] = None
    timestamp: datetime = Field(default_factory=_utc_now)


class SongRatings(WireModel):
    theme: int = Field(..., ge=1, le=5)
    general: int = Field(..., ge=1, le=5)


class Song(WireModel):
    id: str = ""
    title: str = Field(..., min_length=1, max_length=255)
    artist: str = Field(..., min_length=1, max_length=255)
    album: Optional[str] = Field(default=None, max_length=255)
    year: Optional[int] = Field(default=None, ge=1000, le=3000)
    genre: Optional[str] = Field(default=None, max_length=100)
    reason: str = ""
    question: Optional[str] = None
    rank: Optional[int] = Field(default=None, ge=1)
    is_favorite: bool = False
    is_muted: bool = False
    is_eliminated: bool = False
    youtube_video_id: Optional[str] = None
    youtube_url: Optional[str] = None
    spotify_track_id: Optional[str] = None
    spotify_uri: Optional[str] = None
    user_notes: Optional[str] = None
    ratings: Optional[SongRatings] = None
    ai_description: Optional[str] = None
    added_in_session_id: Optional[str] = None
    current_tier: Optional[FunnelTier] = None
    promotion_history: list[PromotionRecord] = Field(default_factory=list)

    def matches(self, title: str, artist: str) -> bool:
        return (
            self.title.strip().lower() == title.strip().lower()
            and self.artist.strip().lower() == artist.strip().lower()
        )


class HallPassesUsed(WireModel):
    semifinals: bool = False
    finals: bool = False


class PlaylistLink(WireModel):
    playlist_id: str
    playlist_url: str
    synced_tier: FunnelTier
    last_sync_at: datetime = Field(default_factory=_utc_now)


class Theme(WireModel):
    id: str = Field(..., min_length=1, max_length=128)
    raw_theme: str = ""
    title: str = Field(default="Untitled", max_length=255)
    interpretation: Optional[str] = None
    strategy: Optional[str] = None
    deadline: Optional[datetime] = None
    status: ThemeStatus = ThemeStatus.ACTIVE
    phase: ThemePhase = ThemePhase.BRAINSTORM
    hall_passes_used: HallPassesUsed = Field(default_factory=HallPassesUsed)
    candidates: list[Song] = Field(default_factory=list)
    semifinalists: list[Song] = Field(default_factory=list)
    finalists: list[Song] = Field(default_factory=list)
    pick: Optional[Song] = None
    spotify_playlist: Optional[PlaylistLink] = None
    created_at: datetime = Field(default_factory=_utc_now)
    updated_at: datetime = Field(default_factory=_utc_now)

    def songs_in(self, tier: FunnelTier) -> list[Song]:
        if tier == FunnelTier.PICK:
            return [self.pick] if self.pick is not None else []
        return list(getattr(self, tier.value))

    def all_songs(self) -> list[Song]:
        songs: list[Song] = []
        for tier in TIER_ORDER:
            songs.extend(self.songs_in(tier))
        return songs


class RejectedSong(WireModel):
    title: str
    artist: str
    reason: str = ""
    timestamp: datetime = Field(default_factory=_utc_now)


class SessionPreference(WireModel):
    statement: str = Field(..., min_length=1)
    confidence: Confidence = Confidence.MEDIUM
    source: str = ""
    timestamp: datetime = Field(default_factory=_utc_now)


class ConversationTurn(WireModel):
    role: ConversationRole
    content: str
    timestamp: datetime = Field(default_factory=_utc_now)


class PlaylistCreated(WireModel):
    platform: str = Field(..., pattern="^(youtube|spotify)$")
    playlist_id: str
    playlist_url: str
    created_at: datetime = Field(default_factory=_utc_now)


class Session(WireModel):
    id: str = Field(..., min_length=1, max_length=128)
    theme_id: Optional[str] = None
    title: str = "Session 1"
    phase: ThemePhase = ThemePhase.BRAINSTORM
    working_candidates: list[Song] = Field(default_factory=list)
    rejected_songs: list[RejectedSong] = Field(default_factory=list)
    session_preferences: list[SessionPreference] = Field(default_factory=list)
    conversation_history: list[ConversationTurn] = Field(default_factory=list)
    iteration_count: int = Field(default=0, ge=0)
    final_pick: Optional[Song] = None
    playlist_created: Optional[PlaylistCreated] = None
    created_at: datetime = Field(default_factory=_utc_now)
    updated_at: datetime = Field(default_factory=_utc_now)


class LongTermPreference(WireModel):
    statement: str = Field(..., min_length=1)
    specificity: Specificity = Specificity.GENERAL
    weight: float = Field(default=0.5, ge=0.0, le=1.0)
    added_at: datetime = Field(default_factory=_utc_now)
    last_confirmed: Optional[datetime] = None


def _empty_categories() -> dict[str, list[str]]:
    return {
        name: []
        for name in (
            "genres",
            "eras",
            "moods",
            "instrumentation",
            "vocals",
            "lyrics",
            "riskAppetite",
            "nostalgia",
            "dislikes",
            "misc",
        )
    }


class UserProfile(WireModel):
    summary: str = ""
    categories: dict[str, list[str]] = Field(default_factory=_empty_categories)
    long_term_preferences: list[LongTermPreference] = Field(default_factory=list)
    evidence_count: int = Field(default=0, ge=0)
    weight: float = Field(default=0.5, ge=0.0, le=1.0)
    updated_at: datetime = Field(default_factory=_utc_now)


class SavedSong(Song):
    tags: list[str] = Field(default_factory=list)
    notes: Optional[str] = None
    source_theme_id: Optional[str] = None
    saved_at: datetime = Field(default_factory=_utc_now)


class MigrationPayload(WireModel):
    themes: list[Theme] = Field(default_factory=list)
    sessions: list[Session] = Field(default_factory=list)
    user_profile: Optional[UserProfile] = None
    saved_songs: list[SavedSong] = Field(default_factory=list)
    settings: Optional[dict[str, Any]] = None
    competitor_analysis: Optional[dict[str, Any]] = None


class MigrationResult(WireModel):
    success: bool
    message: str
    themes: int = 0
    sessions: int = 0
    saved_songs: int = 0


class HasDataResponse(WireModel):
    has_data: bool


class HealthResponse(WireModel):
    status: str = "ok"
    timestamp: datetime = Field(default_factory=_utc_now)
    theme_count: int = 0
    session_count: int = 0
